# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Nonlinear factor graph for SFM-JIT.

The FactorGraph is an ordered list of :class:`Factor` objects. It does not
own any variable values: every query takes a :class:`Values` assignment
explicitly, so the same graph can be evaluated at the accepted estimate and
at a candidate step without interference.

Primary Methods
---------------
error(values)
    Total cost ``Σ ||whitened residual||²`` over the equality factors.
    Inequality factors are feasibility constraints and are tracked apart.

linearize(values)
    First-order model of every factor at ``values`` as a
    :class:`LinearFactorGraph`. Factor order, equality / inequality kind and
    dual keys are preserved. A factor referencing a key that has no value
    raises ``MissingKeyError`` before any factor is evaluated.

check_feasibility_and_complementarity(values, duals, tol)
    Pure predicate over the inequality factors:

        • primal feasibility: every residual r ≤ tol
        • a constraint with an entry in ``duals`` is active (|r| ≤ tol)
          and complementary (|λ r| ≤ tol)

    A constraint without a dual entry is taken to be inactive and is only
    checked for feasibility.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List

import numpy as np

from sfm_jit.core.errors import MissingKeyError
from sfm_jit.core.factors import Factor
from sfm_jit.core.linear import LinearFactorGraph
from sfm_jit.core.types import FactorKind, Key
from sfm_jit.core.values import Values, VectorValues

logger = logging.getLogger(__name__)


@dataclass
class FactorGraph:
    factors: List[Factor] = field(default_factory=list)

    def add(self, factor: Factor) -> None:
        self.factors.append(factor)

    def extend(self, factors) -> None:
        for f in factors:
            self.add(f)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[Factor]:
        return iter(self.factors)

    def __getitem__(self, i: int) -> Factor:
        return self.factors[i]

    def keys(self) -> List[Key]:
        """Every key referenced by some factor, in key order."""
        return sorted({k for f in self.factors for k in f.keys})

    def equality_factors(self) -> List[Factor]:
        return [f for f in self.factors if f.kind is FactorKind.EQUALITY]

    def inequality_factors(self) -> List[Factor]:
        return [f for f in self.factors if f.kind is FactorKind.INEQUALITY]

    def has_inequalities(self) -> bool:
        return any(f.kind is FactorKind.INEQUALITY for f in self.factors)

    # --- evaluation ---

    def _check_keys(self, values: Values) -> None:
        for key in self.keys():
            if not values.exists(key):
                raise MissingKeyError(key)

    def error(self, values: Values) -> float:
        self._check_keys(values)
        return float(sum(f.error(values) for f in self.equality_factors()))

    def linearize(self, values: Values) -> LinearFactorGraph:
        self._check_keys(values)
        linear = LinearFactorGraph()
        for factor in self.factors:
            linear.add(factor.linearize(values))
        return linear

    def constraint_violation(self, values: Values) -> Dict[int, float]:
        """Positive part of each inequality residual, by factor index."""
        self._check_keys(values)
        out: Dict[int, float] = {}
        for i, factor in enumerate(self.factors):
            if factor.kind is FactorKind.INEQUALITY:
                r = float(factor.unwhitened_error(values)[0])
                out[i] = max(r, 0.0)
        return out

    def check_feasibility_and_complementarity(
        self,
        values: Values,
        duals: VectorValues,
        tol: float = 1e-9,
    ) -> bool:
        """
        True when every inequality factor is satisfied at ``values``.

        A factor with an entry in ``duals`` must also be active
        (``|r| <= tol``) and complementary (``|lambda * r| <= tol``). A
        factor without one is taken as inactive: once ``r <= tol`` it is
        not checked further, so "no dual computed" and "dual is zero" are
        treated alike.
        """
        self._check_keys(values)
        for factor in self.inequality_factors():
            r = float(factor.unwhitened_error(values)[0])
            if r > tol:
                logger.debug("Constraint %r violated: r=%.3e", factor, r)
                return False

            dual = factor.dual()
            if dual is None or not duals.exists(dual):
                continue

            if abs(r) > tol:
                logger.debug("Constraint %r has a dual but is inactive: r=%.3e", factor, r)
                return False
            lam = float(np.asarray(duals.at(dual))[0])
            if abs(lam * r) > tol:
                logger.debug("Constraint %r not complementary: lambda*r=%.3e", factor, lam * r)
                return False
        return True
