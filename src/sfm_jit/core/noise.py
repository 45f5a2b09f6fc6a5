"""
Gaussian noise models.

A noise model whitens residuals and Jacobians by the square root of the
information matrix, so that ``||whiten(r)||²`` is the Mahalanobis distance
``rᵀ Σ⁻¹ r``:

    • `GaussianNoise.from_sigmas`     diagonal covariance
    • `GaussianNoise.isotropic`       sigma * I
    • `GaussianNoise.unit`            I
    • `GaussianNoise.from_covariance` full covariance (upper Cholesky factor of Σ⁻¹)

Noise models are plain immutable objects; graph builders receive them (or
the sigmas to build them) explicitly, never through shared module state.
"""

from __future__ import annotations

from dataclasses import dataclass

import jax.numpy as jnp


def sigma_to_weight(sigma):
    """
    Convert standard deviation sigma (or vector of sigmas) to an information weight.

    For scalar sigma:
        w = 1 / sigma^2

    For vector sigma (per-component std devs):
        w[i] = 1 / sigma[i]^2
    """
    s = jnp.asarray(sigma)
    return 1.0 / (s * s)


@dataclass(frozen=True, eq=False)
class GaussianNoise:
    sqrt_information: jnp.ndarray  # (d, d), R with Rᵀ R = Σ⁻¹

    @property
    def dim(self) -> int:
        return int(self.sqrt_information.shape[0])

    @staticmethod
    def from_sigmas(sigmas) -> "GaussianNoise":
        sigmas = jnp.atleast_1d(jnp.asarray(sigmas, dtype=jnp.float64))
        if bool(jnp.any(sigmas <= 0.0)):
            raise ValueError(f"Noise sigmas must be positive, got {sigmas}")
        return GaussianNoise(jnp.diag(jnp.sqrt(sigma_to_weight(sigmas))))

    @staticmethod
    def isotropic(dim: int, sigma: float) -> "GaussianNoise":
        return GaussianNoise.from_sigmas(jnp.full(dim, sigma))

    @staticmethod
    def unit(dim: int) -> "GaussianNoise":
        return GaussianNoise(jnp.eye(dim))

    @staticmethod
    def from_covariance(covariance) -> "GaussianNoise":
        covariance = jnp.asarray(covariance, dtype=jnp.float64)
        information = jnp.linalg.inv(covariance)
        L = jnp.linalg.cholesky(information)
        if not bool(jnp.all(jnp.isfinite(L))):
            raise ValueError("Covariance must be symmetric positive definite")
        return GaussianNoise(L.T)

    def whiten(self, v: jnp.ndarray) -> jnp.ndarray:
        return self.sqrt_information @ v

    def whiten_jacobian(self, H: jnp.ndarray) -> jnp.ndarray:
        return self.sqrt_information @ H

    def distance(self, v: jnp.ndarray) -> float:
        w = self.whiten(v)
        return float(jnp.dot(w, w))
