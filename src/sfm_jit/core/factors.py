# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Nonlinear factors.

A :class:`Factor` ties an ordered tuple of keys to a residual model and a
noise model. The residual model is any callable with the signature

    model(variables, mode) -> ResidualResult

where ``variables`` are the values of the factor's keys, in key-tuple order,
and ``mode`` is a :class:`JacobianMode`. Concrete models live in
`slam.measurements`.

Each factor is either an EQUALITY factor (a least-squares term, ``r ≈ 0``)
or an INEQUALITY factor (a scalar feasibility constraint, ``r ≤ 0``). Only
inequality factors may carry the key of their dual variable.

Linearization
-------------
Around a linearization point the factor is replaced by its whitened
first-order model

    || Σ_k A_k dx_k - b ||²,   A_k = W H_k,   b = -W r

with ``W`` the square-root information of the noise model. The Jacobians
come from the residual model; a point behind a camera propagates as
``CheiralityError`` and is never replaced by a zero Jacobian.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, Tuple

import jax.numpy as jnp
import numpy as np

from sfm_jit.core.linear import JacobianFactor
from sfm_jit.core.noise import GaussianNoise
from sfm_jit.core.types import FactorKind, JacobianMode, Key, ResidualResult, format_key
from sfm_jit.core.values import Values


class ResidualModel(Protocol):
    def __call__(self, variables: Sequence[Any], mode: JacobianMode) -> ResidualResult:
        ...


@dataclass(frozen=True, eq=False)
class Factor:
    keys: Tuple[Key, ...]
    model: ResidualModel
    noise: GaussianNoise
    kind: FactorKind = FactorKind.EQUALITY
    dual_key: Optional[Key] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "keys", tuple(self.keys))
        if not self.keys:
            raise ValueError("A factor needs at least one key")
        if self.kind is FactorKind.EQUALITY:
            if self.dual_key is not None:
                raise ValueError("Equality factors do not carry a dual key")
        elif self.kind is FactorKind.INEQUALITY:
            if self.noise.dim != 1:
                raise ValueError(
                    f"Inequality factors must be scalar, got noise dimension {self.noise.dim}"
                )
        else:
            raise ValueError(f"Unknown factor kind '{self.kind}'")

    def _variables(self, values: Values) -> Tuple[Any, ...]:
        return tuple(values.at(k) for k in self.keys)

    def evaluate(self, values: Values, mode: JacobianMode = JacobianMode.VALUE) -> ResidualResult:
        """Raw model output at ``values``."""
        result = self.model(self._variables(values), mode)
        if result.error.shape != (self.noise.dim,):
            raise ValueError(
                f"Residual of shape {result.error.shape} does not match noise dimension {self.noise.dim}"
            )
        return result

    def unwhitened_error(self, values: Values) -> jnp.ndarray:
        return self.evaluate(values).error

    def whitened_error(self, values: Values) -> jnp.ndarray:
        return self.noise.whiten(self.unwhitened_error(values))

    def error(self, values: Values) -> float:
        """Squared whitened residual norm."""
        w = self.whitened_error(values)
        return float(jnp.dot(w, w))

    def linearize(self, values: Values) -> JacobianFactor:
        result = self.evaluate(values, JacobianMode.VALUE_AND_JACOBIANS)
        if result.jacobians is None or len(result.jacobians) != len(self.keys):
            raise ValueError("Residual model did not return one Jacobian block per key")
        blocks = tuple(
            np.asarray(self.noise.whiten_jacobian(H), dtype=np.float64)
            for H in result.jacobians
        )
        b = -np.asarray(self.noise.whiten(result.error), dtype=np.float64)
        return JacobianFactor(self.keys, blocks, b, self.kind, self.dual_key)

    # --- inequality factors ---

    def dual(self) -> Optional[Key]:
        """Key of the dual variable; only inequality factors have one."""
        if self.kind is FactorKind.EQUALITY:
            raise ValueError("Equality factors have no dual variable")
        return self.dual_key

    def is_active(self, values: Values, tol: float = 1e-9) -> bool:
        """An inequality constraint is active when its residual is zero within ``tol``."""
        if self.kind is FactorKind.EQUALITY:
            raise ValueError("Only inequality factors can be active or inactive")
        return abs(float(self.unwhitened_error(values)[0])) <= tol

    def __repr__(self) -> str:
        keys = ", ".join(format_key(k) for k in self.keys)
        return f"Factor({self.kind.value}, [{keys}])"
