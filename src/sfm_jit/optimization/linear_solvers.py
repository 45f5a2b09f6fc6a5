# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Linear least-squares solvers for linearized factor graphs.

Every solver takes the equality part of a :class:`LinearFactorGraph` and a
damping value and returns the tangent update as :class:`VectorValues`:

    (AᵀA + λ D) dx = Aᵀb

with ``D = I`` or, with ``diagonal_damping``, ``D = diag(AᵀA)`` clamped to
``[1e-6, 1e32]``.

Available methods (``LINEAR_SOLVERS``):

    "sparse"    scipy ``splu`` on the sparse normal equations
    "cholesky"  dense Cholesky of the normal equations (jax.scipy)
    "qr"        dense QR of the damping-augmented Jacobian (jax.numpy)

A rank-deficient system, or one whose solution is not finite, raises
``SingularSystemError``. The optimizer treats that as a rejected trial.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Tuple

import jax.numpy as jnp
import jax.scipy.linalg as jsl
import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from sfm_jit.core.errors import SingularSystemError
from sfm_jit.core.linear import LinearFactorGraph
from sfm_jit.core.types import FactorKind, Key
from sfm_jit.core.values import VectorValues

logger = logging.getLogger(__name__)

_MIN_DIAGONAL = 1e-6
_MAX_DIAGONAL = 1e32
_RESIDUAL_RTOL = 1e-6


def damping_diagonal(H, diagonal_damping: bool) -> np.ndarray:
    n = H.shape[0]
    if not diagonal_damping:
        return np.ones(n)
    return np.clip(np.asarray(H.diagonal()).ravel(), _MIN_DIAGONAL, _MAX_DIAGONAL)


def _to_vector_values(x: np.ndarray, index: Dict[Key, Tuple[int, int]]) -> VectorValues:
    if not np.all(np.isfinite(x)):
        raise SingularSystemError("Linear solve produced a non-finite update")
    dims = {k: d for k, (_, d) in index.items()}
    return VectorValues.from_vector(x, dims, ordering=list(index))


def _check_residual(H, g: np.ndarray, x: np.ndarray) -> None:
    residual = np.linalg.norm(H @ x - g)
    scale = max(np.linalg.norm(g), 1.0)
    if residual > _RESIDUAL_RTOL * scale:
        raise SingularSystemError(
            f"Normal equations not satisfied (residual {residual:.3e}); system is rank deficient"
        )


def solve_sparse(linear: LinearFactorGraph, damping: float, diagonal_damping: bool) -> VectorValues:
    H, g, index = linear.hessian(FactorKind.EQUALITY)
    if H.shape[0] == 0:
        return VectorValues()
    if damping > 0.0:
        H = (H + sp.diags(damping * damping_diagonal(H, diagonal_damping))).tocsc()
    try:
        x = spla.splu(H).solve(g)
    except RuntimeError as exc:
        raise SingularSystemError(f"Sparse factorization failed: {exc}") from exc
    if not np.all(np.isfinite(x)):
        raise SingularSystemError("Linear solve produced a non-finite update")
    _check_residual(H, g, x)
    return _to_vector_values(x, index)


def solve_cholesky(linear: LinearFactorGraph, damping: float, diagonal_damping: bool) -> VectorValues:
    H, g, index = linear.hessian(FactorKind.EQUALITY)
    if H.shape[0] == 0:
        return VectorValues()
    H = H.toarray()
    if damping > 0.0:
        H = H + np.diag(damping * damping_diagonal(H, diagonal_damping))
    c, lower = jsl.cho_factor(jnp.asarray(H))
    if not bool(jnp.all(jnp.isfinite(c))):
        raise SingularSystemError("Cholesky factorization failed; system is not positive definite")
    x = np.asarray(jsl.cho_solve((c, lower), jnp.asarray(g)))
    if not np.all(np.isfinite(x)):
        raise SingularSystemError("Linear solve produced a non-finite update")
    _check_residual(H, g, x)
    return _to_vector_values(x, index)


def solve_qr(linear: LinearFactorGraph, damping: float, diagonal_damping: bool) -> VectorValues:
    A, b, index = linear.sparse_system(FactorKind.EQUALITY)
    n = A.shape[1]
    if n == 0:
        return VectorValues()
    A = A.toarray()
    if damping > 0.0:
        H_diag = np.einsum("ij,ij->j", A, A)
        if diagonal_damping:
            d = np.clip(H_diag, _MIN_DIAGONAL, _MAX_DIAGONAL)
        else:
            d = np.ones(n)
        A = np.vstack([A, np.diag(np.sqrt(damping * d))])
        b = np.concatenate([b, np.zeros(n)])
    if A.shape[0] < n:
        raise SingularSystemError(f"Underdetermined system: {A.shape[0]} rows for {n} unknowns")

    Q, R = jnp.linalg.qr(jnp.asarray(A))
    diag = jnp.abs(jnp.diag(R))
    if float(jnp.min(diag)) <= np.finfo(np.float64).eps * max(float(jnp.max(diag)), 1.0) * n:
        raise SingularSystemError("QR factor is rank deficient")
    x = jsl.solve_triangular(R, Q.T @ jnp.asarray(b), lower=False)
    return _to_vector_values(np.asarray(x), index)


LINEAR_SOLVERS: Dict[str, Callable[[LinearFactorGraph, float, bool], VectorValues]] = {
    "sparse": solve_sparse,
    "cholesky": solve_cholesky,
    "qr": solve_qr,
}


def solve(
    linear: LinearFactorGraph,
    damping: float = 0.0,
    diagonal_damping: bool = False,
    method: str = "sparse",
) -> VectorValues:
    """
    Solve the damped least-squares problem of the equality factors of ``linear``.

    Raises ``ValueError`` for an unknown method and ``SingularSystemError``
    when no finite, consistent update exists.
    """
    try:
        solver = LINEAR_SOLVERS[method]
    except KeyError:
        raise ValueError(
            f"Unknown linear solver '{method}', expected one of {sorted(LINEAR_SOLVERS)}"
        ) from None
    logger.debug("Solving linear system with '%s' (lambda=%.3e)", method, damping)
    return solver(linear, float(damping), diagonal_damping)
