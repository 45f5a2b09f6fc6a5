# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Residual models (measurement factors) for SFM-JIT.

This module defines the *measurement-level* building blocks used by the
factor graph:

    • Each residual here is a pure JAX function
          r = fn(params, *variables) ∈ ℝᵏ
      where ``params`` holds the measurement and any fixed constants and the
      variables are manifold values taken from `core.values.Values`.

    • A residual model wraps such a function behind the capability
      interface expected by `core.factors.Factor`:
          model(variables, mode) -> ResidualResult

    • Factory functions (``prior_factor``, ``projection_factor``, ...) bind
      a model to keys and a noise model.

Broadly, the residuals fall into three families:

1. Priors and relative constraints
----------------------------------
    • `prior_residual`:
        r = local_coordinates(prior, x)
      on any manifold; anchors the gauge of SfM and pose-graph problems.

    • `between_residual`:
        r = local_coordinates(measured, a⁻¹ ∘ b)      for Pose3
        r = (b - a) - measured                        for vectors
      odometry and loop closures in pose-graph SLAM.

2. Camera measurements
----------------------
    • `ProjectionModel`:
        r = project(camera, point) - measured
      with closed-form Jacobians (`JacobianProvider.ANALYTIC`) or
      ``jax.jacfwd`` (`JacobianProvider.AUTODIFF`). Three variable layouts
      are supported:
          (camera, point)             PinholeCamera with its own calibration
          (pose, point)               Pose3 with a fixed calibration
          (pose, calibration, point)  shared, optimized calibration

    • `snavely_residual`:
        r = snavely_project(camera9, point) - measured
      on the 9-vector Bundler / BAL camera, always differentiated with
      autodiff.

3. Inequality constraints (r ≤ 0)
---------------------------------
    • `upper_bound_residual`:   x[index] - bound
    • `max_range_residual`:     ||point - center|| - max_range

Notes
-----
All residuals are written to be compatible with `jax.jit` and
`jax.jacfwd`. Checks that need concrete values (a point behind the camera)
run eagerly before the compiled evaluator and raise ``CheiralityError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import jax.numpy as jnp

from sfm_jit.core.errors import CheiralityError
from sfm_jit.core.factors import Factor
from sfm_jit.core.noise import GaussianNoise
from sfm_jit.core.types import FactorKind, JacobianMode, JacobianProvider, Key, ResidualResult
from sfm_jit.geometry.calibration import Cal3Bundler
from sfm_jit.geometry.camera import (
    PinholeCamera,
    project_autodiff,
    snavely_depth,
    snavely_project,
)
from sfm_jit.geometry.pose import Pose3
from sfm_jit.optimization.jit_wrappers import autodiff_jacobian_fn, jitted_residual
from sfm_jit.slam import manifold


@dataclass(frozen=True, eq=False)
class AutodiffModel:
    """
    Residual model backed by a pure function ``fn(params, *variables)``.

    ``precondition``, if given, is called eagerly with the same arguments
    before every evaluation and may raise (e.g. ``CheiralityError``).
    """
    fn: Callable[..., jnp.ndarray]
    params: Any = None
    precondition: Optional[Callable[..., None]] = None

    def __call__(self, variables: Sequence[Any], mode: JacobianMode = JacobianMode.VALUE) -> ResidualResult:
        variables = tuple(variables)
        if self.precondition is not None:
            self.precondition(self.params, *variables)
        if mode is JacobianMode.VALUE:
            return ResidualResult(jitted_residual(self.fn)(self.params, variables))
        error, jacobians = autodiff_jacobian_fn(self.fn)(self.params, variables)
        return ResidualResult(error, jacobians)


# --- residual functions ---

def prior_residual(prior: Any, x: Any) -> jnp.ndarray:
    """
    Prior on a single variable of any manifold:
        residual = local_coordinates(prior, x)
    """
    return manifold.local_coordinates(prior, x)


def between_residual(measured: Any, a: Any, b: Any) -> jnp.ndarray:
    """
    Relative measurement between two variables.

    For poses the predicted relative pose ``a⁻¹ ∘ b`` is compared with the
    measurement in the tangent space of the measurement; vectors use the
    plain difference.
    """
    if isinstance(a, Pose3):
        return measured.local_coordinates(a.between(b))
    return (b - a) - measured


def snavely_residual(measured: jnp.ndarray, camera: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    return snavely_project(camera, point) - measured


def upper_bound_residual(params, x: jnp.ndarray) -> jnp.ndarray:
    """
    Scalar bound on one coordinate of a vector variable:
        r = x[index] - bound ≤ 0
    """
    index, bound = params
    return jnp.atleast_1d(x[index] - bound)


def max_range_residual(max_range, pose: Any, point: jnp.ndarray) -> jnp.ndarray:
    """
    Keep a point within ``max_range`` of a pose or camera center:
        r = ||point - center|| - max_range ≤ 0
    """
    if isinstance(pose, PinholeCamera):
        pose = pose.pose
    return jnp.atleast_1d(jnp.linalg.norm(point - pose.translation) - max_range)


def _check_snavely_depth(measured, camera, point) -> None:
    depth = float(snavely_depth(camera, point))
    if not depth > 0.0:
        raise CheiralityError(depth)


# --- projection ---

@dataclass(frozen=True, eq=False)
class ProjectionModel:
    measured: jnp.ndarray
    calibration: Optional[Cal3Bundler] = None
    provider: JacobianProvider = JacobianProvider.ANALYTIC

    def _camera(self, variables: Sequence[Any]):
        if len(variables) == 2 and isinstance(variables[0], PinholeCamera):
            return variables[0], variables[1]
        if len(variables) == 2 and isinstance(variables[0], Pose3):
            if self.calibration is None:
                raise ValueError("Projection on a Pose3 variable needs a fixed calibration")
            return PinholeCamera(variables[0], self.calibration), variables[1]
        if len(variables) == 3 and isinstance(variables[0], Pose3) and isinstance(variables[1], Cal3Bundler):
            return PinholeCamera(variables[0], variables[1]), variables[2]
        raise TypeError(
            "Projection expects (camera, point), (pose, point) or (pose, calibration, point), got "
            + ", ".join(type(v).__name__ for v in variables)
        )

    def __call__(self, variables: Sequence[Any], mode: JacobianMode = JacobianMode.VALUE) -> ResidualResult:
        camera, point = self._camera(variables)
        if mode is JacobianMode.VALUE:
            return ResidualResult(camera.project(point).pixel - self.measured)

        if self.provider is JacobianProvider.ANALYTIC:
            result = camera.project(point, JacobianMode.VALUE_AND_JACOBIANS)
        elif self.provider is JacobianProvider.AUTODIFF:
            result = project_autodiff(camera, point)
        else:
            raise ValueError(f"Unknown Jacobian provider '{self.provider}'")

        error = result.pixel - self.measured
        if isinstance(variables[0], PinholeCamera):
            return ResidualResult(error, (result.d_camera, result.d_point))
        if len(variables) == 2:
            return ResidualResult(error, (result.d_pose, result.d_point))
        return ResidualResult(error, (result.d_pose, result.d_calibration, result.d_point))


# --- factories ---

def prior_factor(key: Key, prior: Any, noise: Optional[GaussianNoise] = None) -> Factor:
    prior = manifold.as_value(prior)
    noise = noise or GaussianNoise.unit(manifold.dim(prior))
    return Factor((key,), AutodiffModel(prior_residual, prior), noise)


def between_factor(key1: Key, key2: Key, measured: Any, noise: Optional[GaussianNoise] = None) -> Factor:
    measured = manifold.as_value(measured)
    noise = noise or GaussianNoise.unit(manifold.dim(measured))
    return Factor((key1, key2), AutodiffModel(between_residual, measured), noise)


def projection_factor(
    camera_key: Key,
    point_key: Key,
    measured,
    noise: Optional[GaussianNoise] = None,
    calibration: Optional[Cal3Bundler] = None,
    calibration_key: Optional[Key] = None,
    provider: JacobianProvider = JacobianProvider.ANALYTIC,
) -> Factor:
    """
    Reprojection factor on a world point.

    ``camera_key`` refers to a PinholeCamera, or to a Pose3 when either a
    fixed ``calibration`` or a ``calibration_key`` is given.
    """
    if calibration is not None and calibration_key is not None:
        raise ValueError("Pass either a fixed calibration or a calibration key, not both")
    measured = jnp.asarray(measured, dtype=jnp.float64)
    noise = noise or GaussianNoise.unit(2)
    model = ProjectionModel(measured, calibration, provider)
    if calibration_key is not None:
        keys = (camera_key, calibration_key, point_key)
    else:
        keys = (camera_key, point_key)
    return Factor(keys, model, noise)


def snavely_factor(camera_key: Key, point_key: Key, measured, noise: Optional[GaussianNoise] = None) -> Factor:
    measured = jnp.asarray(measured, dtype=jnp.float64)
    noise = noise or GaussianNoise.unit(2)
    model = AutodiffModel(snavely_residual, measured, precondition=_check_snavely_depth)
    return Factor((camera_key, point_key), model, noise)


def upper_bound_factor(
    key: Key,
    index: int,
    bound: float,
    dual_key: Optional[Key] = None,
    sigma: float = 1.0,
) -> Factor:
    model = AutodiffModel(upper_bound_residual, (index, float(bound)))
    return Factor((key,), model, GaussianNoise.isotropic(1, sigma), FactorKind.INEQUALITY, dual_key)


def max_range_factor(
    pose_key: Key,
    point_key: Key,
    max_range: float,
    dual_key: Optional[Key] = None,
    sigma: float = 1.0,
) -> Factor:
    model = AutodiffModel(max_range_residual, float(max_range))
    return Factor((pose_key, point_key), model, GaussianNoise.isotropic(1, sigma), FactorKind.INEQUALITY, dual_key)
