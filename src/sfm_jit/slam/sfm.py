# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Structure-from-motion problems as factor graphs.

An :class:`SfmData` holds cameras and tracks; each track is a 3D point with
the pixels at which it was observed. ``build_sfm_graph`` turns it into a
reprojection factor graph and ``initial_estimate`` into the matching
:class:`Values`, with camera ``i`` under ``camera_key(i)`` and the point
of track ``j`` under ``point_key(j)``.

Camera models (``SfmGraphConfig.model``):

    "pinhole"   PinholeCamera variables (pose + Bundler calibration, 9 dof)
    "pose"      Pose3 variables, calibration held fixed
    "snavely"   9-vector Bundler / BAL cameras with autodiff Jacobians;
                measurements are flipped to (x, -y) because those cameras
                look down their negative z-axis

The gauge (global pose and scale) is fixed by priors on camera 0 and on
the point of track 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import jax.numpy as jnp

from sfm_jit.core.factor_graph import FactorGraph
from sfm_jit.core.noise import GaussianNoise
from sfm_jit.core.types import JacobianProvider, camera_key, point_key
from sfm_jit.core.values import Values
from sfm_jit.geometry.calibration import Cal3Bundler
from sfm_jit.geometry.camera import PinholeCamera, camera_to_snavely
from sfm_jit.slam.measurements import prior_factor, projection_factor, snavely_factor

logger = logging.getLogger(__name__)

SFM_MODELS = ("pinhole", "pose", "snavely")


@dataclass(frozen=True)
class SfmMeasurement:
    camera_index: int
    pixel: jnp.ndarray


@dataclass
class SfmTrack:
    point: jnp.ndarray
    measurements: List[SfmMeasurement] = field(default_factory=list)

    def add(self, camera_index: int, pixel) -> None:
        self.measurements.append(SfmMeasurement(camera_index, jnp.asarray(pixel, dtype=jnp.float64)))


@dataclass
class SfmData:
    cameras: List[PinholeCamera] = field(default_factory=list)
    tracks: List[SfmTrack] = field(default_factory=list)

    @property
    def number_cameras(self) -> int:
        return len(self.cameras)

    @property
    def number_tracks(self) -> int:
        return len(self.tracks)

    @property
    def number_measurements(self) -> int:
        return sum(len(t.measurements) for t in self.tracks)


@dataclass
class SfmGraphConfig:
    pixel_sigma: float = 1.0
    model: str = "pinhole"
    provider: JacobianProvider = JacobianProvider.ANALYTIC
    add_gauge_priors: bool = True
    prior_sigma: float = 0.1
    fixed_calibration: Optional[Cal3Bundler] = None  # "pose" model only; default per camera


def _check_model(config: SfmGraphConfig) -> None:
    if config.model not in SFM_MODELS:
        raise ValueError(f"Unknown SfM camera model '{config.model}', expected one of {SFM_MODELS}")


def _camera_value(camera: PinholeCamera, config: SfmGraphConfig):
    if config.model == "pinhole":
        return camera
    if config.model == "pose":
        return camera.pose
    return camera_to_snavely(camera)


def build_sfm_graph(data: SfmData, config: Optional[SfmGraphConfig] = None) -> FactorGraph:
    """
    One reprojection factor per measurement, tracks in order, plus the gauge
    priors when enabled.
    """
    config = config or SfmGraphConfig()
    _check_model(config)
    noise = GaussianNoise.isotropic(2, config.pixel_sigma)
    graph = FactorGraph()

    for j, track in enumerate(data.tracks):
        for m in track.measurements:
            i = m.camera_index
            if not 0 <= i < data.number_cameras:
                raise ValueError(f"Track {j} references camera {i}, only {data.number_cameras} cameras")
            pixel = jnp.asarray(m.pixel, dtype=jnp.float64)
            if config.model == "snavely":
                z = pixel - data.cameras[i].calibration.principal_point()
                graph.add(snavely_factor(camera_key(i), point_key(j), jnp.stack([z[0], -z[1]]), noise))
            elif config.model == "pose":
                calibration = config.fixed_calibration or data.cameras[i].calibration
                graph.add(projection_factor(
                    camera_key(i), point_key(j), pixel, noise,
                    calibration=calibration, provider=config.provider,
                ))
            else:
                graph.add(projection_factor(camera_key(i), point_key(j), pixel, noise, provider=config.provider))

    if config.add_gauge_priors and data.number_cameras and data.number_tracks:
        camera0 = _camera_value(data.cameras[0], config)
        dim = 6 if config.model == "pose" else 9
        graph.add(prior_factor(camera_key(0), camera0, GaussianNoise.isotropic(dim, config.prior_sigma)))
        graph.add(prior_factor(point_key(0), data.tracks[0].point, GaussianNoise.isotropic(3, config.prior_sigma)))

    logger.info(
        "Built SfM graph (%s): %d cameras, %d tracks, %d factors",
        config.model, data.number_cameras, data.number_tracks, len(graph),
    )
    return graph


def initial_estimate(data: SfmData, config: Optional[SfmGraphConfig] = None) -> Values:
    config = config or SfmGraphConfig()
    _check_model(config)
    values = Values()
    for i, camera in enumerate(data.cameras):
        values.insert(camera_key(i), _camera_value(camera, config))
    for j, track in enumerate(data.tracks):
        values.insert(point_key(j), track.point)
    return values
