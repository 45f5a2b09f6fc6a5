# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Error taxonomy for SFM-JIT.

Numerical conditions the optimizer can recover from (a point behind a
camera, a rank-deficient linear system) are handled inside the
optimization loop by raising damping and retrying. Structural problems
(a factor referencing a key that has no value) abort the run.
"""

from __future__ import annotations

from typing import Optional

from .types import format_key


class OptimizationError(Exception):
    """Base class for errors raised by the estimation engine."""


class CheiralityError(OptimizationError):
    """A 3D point lies on or behind the image plane of a camera."""

    def __init__(self, depth: Optional[float] = None) -> None:
        self.depth = depth
        if depth is None:
            message = "Cheirality exception: point is behind the camera"
        else:
            message = f"Cheirality exception: point depth {depth:.6g} is not positive"
        super().__init__(message)


class MissingKeyError(OptimizationError, KeyError):
    """A factor or update references a key that is absent from Values."""

    def __init__(self, key: int, where: str = "values") -> None:
        self.key = key
        super().__init__(f"Key {format_key(key)} is not present in {where}")

    def __str__(self) -> str:
        return str(self.args[0])


class SingularSystemError(OptimizationError):
    """The linear solver could not produce a finite, consistent update."""


class NonConvergenceWarning(UserWarning):
    """The iteration budget or damping bound was hit before convergence."""
