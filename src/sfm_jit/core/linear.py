# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Linearized factor graphs.

A `JacobianFactor` is the first-order model of one nonlinear factor around
a linearization point, already whitened by its noise model:

    f(dx) = || Σ_k A_k dx_k - b ||²,      b = -whitened error

A `LinearFactorGraph` is the ordered collection of those factors. It keeps
the equality / inequality tag and the dual key of each originating factor,
and assembles the sparse least-squares system consumed by the linear
solvers:

    • rows follow the factor order
    • columns follow the key order, one contiguous block per key

Both orders are fixed, and ``AᵀA`` is formed by scipy from that single
layout, so the normal equations accumulate in the same order on every run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from sfm_jit.core.types import FactorKind, Key
from sfm_jit.core.values import VectorValues


@dataclass(frozen=True, eq=False)
class JacobianFactor:
    keys: Tuple[Key, ...]
    blocks: Tuple[np.ndarray, ...]  # whitened (rows, dim_k) per key
    b: np.ndarray                   # whitened right-hand side, -r
    kind: FactorKind = FactorKind.EQUALITY
    dual_key: Optional[Key] = None

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def residual(self, delta: VectorValues) -> np.ndarray:
        """A dx - b; keys missing from ``delta`` contribute nothing."""
        r = -self.b.copy()
        for key, A in zip(self.keys, self.blocks):
            if delta.exists(key):
                r = r + A @ np.asarray(delta.at(key))
        return r

    def error(self, delta: VectorValues) -> float:
        r = self.residual(delta)
        return float(r @ r)


@dataclass
class LinearFactorGraph:
    factors: List[JacobianFactor] = field(default_factory=list)

    def add(self, factor: JacobianFactor) -> None:
        self.factors.append(factor)

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self) -> Iterator[JacobianFactor]:
        return iter(self.factors)

    def equality_factors(self) -> List[JacobianFactor]:
        return [f for f in self.factors if f.kind is FactorKind.EQUALITY]

    def inequality_factors(self) -> List[JacobianFactor]:
        return [f for f in self.factors if f.kind is FactorKind.INEQUALITY]

    def _select(self, kind: Optional[FactorKind]) -> List[JacobianFactor]:
        if kind is None:
            return list(self.factors)
        return [f for f in self.factors if f.kind is kind]

    def dims(self, kind: Optional[FactorKind] = None) -> Dict[Key, int]:
        """Tangent dimension of every key touched by the selected factors, in key order."""
        dims: Dict[Key, int] = {}
        for factor in self._select(kind):
            for key, A in zip(factor.keys, factor.blocks):
                d = int(A.shape[1])
                if dims.setdefault(key, d) != d:
                    raise ValueError(f"Inconsistent dimension for key {key}: {dims[key]} vs {d}")
        return {k: dims[k] for k in sorted(dims)}

    def keys(self, kind: Optional[FactorKind] = None) -> List[Key]:
        return list(self.dims(kind))

    def ordering(self, dims: Dict[Key, int]) -> Dict[Key, Tuple[int, int]]:
        """Key -> (column offset, dim), in key order."""
        index: Dict[Key, Tuple[int, int]] = {}
        offset = 0
        for key in sorted(dims):
            index[key] = (offset, dims[key])
            offset += dims[key]
        return index

    def sparse_system(
        self,
        kind: Optional[FactorKind] = FactorKind.EQUALITY,
    ) -> Tuple[sp.csr_matrix, np.ndarray, Dict[Key, Tuple[int, int]]]:
        """
        Stack the selected factors into ``(A, b, index)``.

        ``A`` is a CSR matrix with one row block per factor and one column
        block per key; ``index`` maps each key to its (offset, dim).
        """
        factors = self._select(kind)
        index = self.ordering(self.dims(kind))
        n_cols = sum(d for _, d in index.values())

        rows, cols, data, rhs = [], [], [], []
        row_offset = 0
        for factor in factors:
            for key, A in zip(factor.keys, factor.blocks):
                col_offset, d = index[key]
                r_idx, c_idx = np.nonzero(np.ones_like(A, dtype=bool))
                rows.append(r_idx + row_offset)
                cols.append(c_idx + col_offset)
                data.append(A.ravel())
            rhs.append(factor.b)
            row_offset += factor.rows

        if rows:
            A = sp.coo_matrix(
                (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
                shape=(row_offset, n_cols),
            ).tocsr()
            b = np.concatenate(rhs)
        else:
            A = sp.csr_matrix((row_offset, n_cols))
            b = np.zeros(row_offset)
        return A, b, index

    def hessian(
        self,
        kind: Optional[FactorKind] = FactorKind.EQUALITY,
    ) -> Tuple[sp.csc_matrix, np.ndarray, Dict[Key, Tuple[int, int]]]:
        """Normal equations ``(AᵀA, Aᵀb, index)``."""
        A, b, index = self.sparse_system(kind)
        At = A.T.tocsr()
        return (At @ A).tocsc(), At @ b, index

    def error(self, delta: VectorValues) -> float:
        """Linearized cost of the equality factors at ``delta``."""
        return sum(f.error(delta) for f in self.equality_factors())
