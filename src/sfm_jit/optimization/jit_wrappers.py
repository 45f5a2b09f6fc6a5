# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
JIT-compiled residual and Jacobian builders for SFM-JIT.

Residuals in `slam.measurements` are written as pure JAX functions

    fn(params, *variables) -> r

where each variable is a manifold value (``Pose3``, ``PinholeCamera``,
``Cal3Bundler``) or a 1-D vector. This module turns such a function into a
compiled ``(params, variables) -> (r, (H_1, ..., H_n))`` evaluator:

    • every variable is perturbed in its own tangent space,
          x_k ⊕ δ_k = manifold.retract(x_k, δ_k)
    • the Jacobian blocks are ``∂r / ∂δ_k`` at ``δ = 0``, computed with
      ``jax.jacfwd``
    • the whole evaluator is wrapped in ``jax.jit``

The compiled evaluator is cached per residual function, so all factors of
the same type share one trace per argument shape.

Typical Usage
-------------
    >>> jac = autodiff_jacobian_fn(snavely_residual)
    >>> r, (H_cam, H_point) = jac(measured, (camera, point))

Notes
-----
The manifold kind of every variable is recovered from its Python type while
tracing, so the evaluator retraces only when the variable types or shapes
change. Checks that need concrete values (e.g. cheirality) cannot run
inside the trace; callers do them eagerly before invoking the evaluator.
"""

from __future__ import annotations

import functools
from typing import Any, Callable, Sequence, Tuple

import jax
import jax.numpy as jnp

from sfm_jit.slam import manifold

ResidualFn = Callable[..., jnp.ndarray]


@functools.lru_cache(maxsize=None)
def autodiff_jacobian_fn(fn: ResidualFn) -> Callable[[Any, Sequence[Any]], Tuple[jnp.ndarray, Tuple[jnp.ndarray, ...]]]:
    """
    Compiled value-and-Jacobians evaluator for ``fn(params, *variables)``.
    """

    def local(deltas, params, variables):
        moved = tuple(manifold.retract(v, d) for v, d in zip(variables, deltas))
        return fn(params, *moved)

    jac = jax.jacfwd(local, argnums=0)

    def value_and_jacobians(params, variables):
        variables = tuple(variables)
        zeros = tuple(jnp.zeros(manifold.dim(v)) for v in variables)
        return fn(params, *variables), tuple(jac(zeros, params, variables))

    return jax.jit(value_and_jacobians)


@functools.lru_cache(maxsize=None)
def jitted_residual(fn: ResidualFn) -> Callable[[Any, Sequence[Any]], jnp.ndarray]:
    """Compiled value-only evaluator for ``fn(params, *variables)``."""

    def value(params, variables):
        return fn(params, *tuple(variables))

    return jax.jit(value)
