# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Synthetic SfM scenes for tests and benchmarks.

Cameras sit on a horizontal circle around the origin, all looking at it,
and points are drawn uniformly from a cube centred on the origin.
Measurements are exact projections, so the ground truth has zero error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import jax
import jax.numpy as jnp

from sfm_jit.core.values import Values
from sfm_jit.geometry.calibration import Cal3Bundler
from sfm_jit.geometry.camera import PinholeCamera
from sfm_jit.slam import manifold
from sfm_jit.slam.sfm import SfmData, SfmTrack


@dataclass
class SyntheticSceneConfig:
    num_cameras: int = 3
    num_points: int = 5
    radius: float = 10.0
    point_extent: float = 1.0   # half side of the point cube
    height: float = 0.0         # camera height above the circle plane
    focal: float = 500.0
    k1: float = 0.0
    k2: float = 0.0
    seed: int = 0


def make_synthetic_scene(config: Optional[SyntheticSceneConfig] = None) -> SfmData:
    config = config or SyntheticSceneConfig()
    calibration = Cal3Bundler(config.focal, config.k1, config.k2)
    up = jnp.array([0.0, 0.0, 1.0])
    target = jnp.zeros(3)

    cameras = []
    for i in range(config.num_cameras):
        angle = 2.0 * math.pi * i / config.num_cameras
        eye = jnp.array([
            config.radius * math.cos(angle),
            config.radius * math.sin(angle),
            config.height,
        ])
        cameras.append(PinholeCamera.lookat(eye, target, up, calibration))

    key = jax.random.PRNGKey(config.seed)
    points = jax.random.uniform(
        key, (config.num_points, 3), minval=-config.point_extent, maxval=config.point_extent,
    )

    tracks = []
    for j in range(config.num_points):
        track = SfmTrack(points[j])
        for i, camera in enumerate(cameras):
            track.add(i, camera.project(points[j]).pixel)
        tracks.append(track)
    return SfmData(cameras, tracks)


def perturb_values(values: Values, sigma: float, seed: int = 0) -> Values:
    """Retract every variable by an independent N(0, sigma²) tangent vector."""
    key = jax.random.PRNGKey(seed)
    out = Values()
    for k, value in values.items():
        key, sub = jax.random.split(key)
        delta = sigma * jax.random.normal(sub, (manifold.dim(value),))
        out.insert(k, manifold.retract(value, delta))
    return out
