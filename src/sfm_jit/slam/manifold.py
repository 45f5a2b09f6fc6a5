# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Manifold dispatch for the values held in `core.values.Values`.

The optimizer works in a local tangent space while each variable lives on
its own manifold. This module maps every supported value type to a manifold
kind and dispatches the three operations the optimizer needs:

    • ``dim(value)``                     tangent dimension
    • ``retract(value, delta)``          value ⊕ delta
    • ``local_coordinates(value, other)`` other ⊖ value

Manifold kinds
--------------
``TYPE_TO_MANIFOLD`` is the closed set of structured value types:

    Pose3          -> "se3"          (6)
    Cal3Bundler    -> "calibration"  (3)
    PinholeCamera  -> "camera"       (9 = pose 6 + calibration 3)

Anything else is treated as a 1-D Euclidean vector (points, 9-vector
Snavely cameras, scalars wrapped as length-1 arrays) with additive
retraction. Dispatch is on the Python type, which is preserved under
``jax.jit`` for the registered pytrees, so the same functions work inside
traced code.
"""

from __future__ import annotations

from typing import Any, Dict

import jax.numpy as jnp

from sfm_jit.geometry.calibration import Cal3Bundler
from sfm_jit.geometry.camera import PinholeCamera
from sfm_jit.geometry.pose import Pose3

TYPE_TO_MANIFOLD: Dict[type, str] = {
    Pose3: "se3",
    Cal3Bundler: "calibration",
    PinholeCamera: "camera",
}

_STRUCTURED = frozenset(TYPE_TO_MANIFOLD.values())


def get_manifold(value: Any) -> str:
    return TYPE_TO_MANIFOLD.get(type(value), "euclidean")


def as_value(value: Any) -> Any:
    """Normalize a value for storage: structured types pass through, vectors become 1-D float64 arrays."""
    if get_manifold(value) in _STRUCTURED:
        return value
    arr = jnp.asarray(value, dtype=jnp.float64)
    if arr.ndim > 1:
        raise ValueError(f"Euclidean values must be 1-D vectors, got shape {arr.shape}")
    return jnp.atleast_1d(arr)


def dim(value: Any) -> int:
    kind = get_manifold(value)
    if kind in _STRUCTURED:
        return type(value).dim
    if kind == "euclidean":
        return int(jnp.shape(value)[0])
    raise ValueError(f"Unknown manifold kind '{kind}'")


def retract(value: Any, delta: jnp.ndarray) -> Any:
    kind = get_manifold(value)
    if kind in _STRUCTURED:
        return value.retract(delta)
    if kind == "euclidean":
        return value + delta
    raise ValueError(f"Unknown manifold kind '{kind}'")


def local_coordinates(value: Any, other: Any) -> jnp.ndarray:
    kind = get_manifold(value)
    if get_manifold(other) != kind:
        raise ValueError(
            f"Cannot take local coordinates between '{kind}' and '{get_manifold(other)}' values"
        )
    if kind in _STRUCTURED:
        return value.local_coordinates(other)
    if kind == "euclidean":
        return other - value
    raise ValueError(f"Unknown manifold kind '{kind}'")
