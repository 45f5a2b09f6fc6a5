"""SE(3) poses, Bundler calibration and the pinhole camera model."""
