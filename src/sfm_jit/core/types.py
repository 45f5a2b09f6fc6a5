# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Core typed data structures for SFM-JIT.

This module defines the lightweight identifiers and tags shared by the
geometry, factor and optimization layers. They carry no numerics; all
heavy lifting happens in JAX functions elsewhere.

Contents
--------
Key
    Opaque integer identifier of an unknown variable. Keys are totally
    ordered, which fixes the column layout of every linear system.

symbol(chr, index)
    Packs a one-character tag and an index into a Key, e.g. ``c3`` for the
    fourth camera or ``p17`` for a landmark.

FactorKind
    Explicit discriminant for equality (least-squares) and inequality
    (feasibility, ``r <= 0``) factors.

JacobianMode
    Whether a residual or projection should return its value only or its
    value plus Jacobian blocks.

JacobianProvider
    Hand-derived closed-form Jacobians or ``jax.jacfwd``.

ResidualResult
    Tagged result of a residual evaluation.
"""

from __future__ import annotations

import enum
from typing import NamedTuple, NewType, Optional, Tuple

import jax.numpy as jnp

Key = NewType("Key", int)

_CHR_BITS = 8
_INDEX_BITS = 64 - _CHR_BITS
_INDEX_MASK = (1 << _INDEX_BITS) - 1


def symbol(chr: str, index: int) -> Key:
    """Pack a character tag and an index into a single Key."""
    if len(chr) != 1:
        raise ValueError(f"Symbol tag must be a single character, got '{chr}'")
    if index < 0 or index > _INDEX_MASK:
        raise ValueError(f"Symbol index out of range: {index}")
    return Key((ord(chr) << _INDEX_BITS) | index)


def symbol_chr(key: Key) -> str:
    return chr(key >> _INDEX_BITS)


def symbol_index(key: Key) -> int:
    return key & _INDEX_MASK


def format_key(key: Key) -> str:
    """Human-readable key, e.g. ``c3``; plain integers print as-is."""
    tag = key >> _INDEX_BITS
    if 0 < tag < 128 and chr(tag).isprintable():
        return f"{chr(tag)}{symbol_index(key)}"
    return str(key)


def camera_key(i: int) -> Key:
    return symbol("c", i)


def point_key(j: int) -> Key:
    return symbol("p", j)


def pose_key(i: int) -> Key:
    return symbol("x", i)


def calibration_key(i: int) -> Key:
    return symbol("k", i)


def dual_key(i: int) -> Key:
    return symbol("d", i)


class FactorKind(enum.Enum):
    EQUALITY = "equality"
    INEQUALITY = "inequality"


class JacobianMode(enum.Enum):
    VALUE = "value"
    VALUE_AND_JACOBIANS = "value_and_jacobians"


class JacobianProvider(enum.Enum):
    ANALYTIC = "analytic"
    AUTODIFF = "autodiff"


class ResidualResult(NamedTuple):
    """
    Residual evaluated at a set of variables.

    ``jacobians`` is None when the residual was evaluated with
    ``JacobianMode.VALUE``; otherwise it holds one (m, dim_k) block per
    variable, in the order the variables were passed.
    """
    error: jnp.ndarray
    jacobians: Optional[Tuple[jnp.ndarray, ...]] = None
