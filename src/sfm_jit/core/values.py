# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Variable assignments.

``Values``
    Key -> manifold value (Pose3, Cal3Bundler, PinholeCamera or a 1-D
    vector). Iteration is always in key order so that the column layout of
    every linearization is reproducible. ``retract`` is pure: it returns a
    new Values and leaves both inputs untouched, which lets the optimizer
    score a candidate step before committing to it.

``VectorValues``
    Key -> tangent vector. Produced by the linear solver, consumed by
    ``Values.retract``. Also used for dual variables of inequality factors.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import jax.numpy as jnp
import numpy as np

from sfm_jit.core.errors import MissingKeyError
from sfm_jit.core.types import Key, format_key
from sfm_jit.slam import manifold


class Values:
    def __init__(self, items: Optional[Mapping[Key, Any]] = None) -> None:
        self._values: Dict[Key, Any] = {}
        if items is not None:
            for key, value in items.items():
                self.insert(key, value)

    def insert(self, key: Key, value: Any) -> None:
        if key in self._values:
            raise ValueError(f"Key {format_key(key)} already exists in Values")
        self._values[key] = manifold.as_value(value)

    def update(self, key: Key, value: Any) -> None:
        if key not in self._values:
            raise MissingKeyError(key)
        self._values[key] = manifold.as_value(value)

    def at(self, key: Key) -> Any:
        try:
            return self._values[key]
        except KeyError:
            raise MissingKeyError(key) from None

    def exists(self, key: Key) -> bool:
        return key in self._values

    def __contains__(self, key: Key) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys())

    def keys(self) -> List[Key]:
        return sorted(self._values)

    def items(self) -> List[Tuple[Key, Any]]:
        return [(k, self._values[k]) for k in self.keys()]

    def dims(self) -> Dict[Key, int]:
        return {k: manifold.dim(v) for k, v in self.items()}

    def retract(self, delta: "VectorValues") -> "Values":
        """
        Apply ``delta`` key by key. Keys without an entry in ``delta`` are
        carried over unchanged; a delta for an unknown key is an error.
        """
        for key in delta.keys():
            if key not in self._values:
                raise MissingKeyError(key)
        result = Values()
        for key, value in self.items():
            if delta.exists(key):
                result._values[key] = manifold.retract(value, delta.at(key))
            else:
                result._values[key] = value
        return result

    def local_coordinates(self, other: "Values") -> "VectorValues":
        """Tangent vectors taking each of our values to the matching entry of ``other``."""
        out = VectorValues()
        for key, value in self.items():
            out.insert(key, manifold.local_coordinates(value, other.at(key)))
        return out

    def zero_vectors(self) -> "VectorValues":
        return VectorValues.zero(self.dims())

    def __repr__(self) -> str:
        body = ", ".join(format_key(k) for k in self.keys())
        return f"Values([{body}])"


class VectorValues:
    def __init__(self, items: Optional[Mapping[Key, Any]] = None) -> None:
        self._vectors: Dict[Key, jnp.ndarray] = {}
        if items is not None:
            for key, vec in items.items():
                self.insert(key, vec)

    @staticmethod
    def zero(dims: Mapping[Key, int]) -> "VectorValues":
        return VectorValues({k: jnp.zeros(d) for k, d in dims.items()})

    @staticmethod
    def from_vector(x, dims: Mapping[Key, int], ordering: Optional[Sequence[Key]] = None) -> "VectorValues":
        """Split a stacked vector back into per-key blocks, in ``ordering`` (default: sorted keys)."""
        x = jnp.asarray(x, dtype=jnp.float64)
        out = VectorValues()
        offset = 0
        for key in (ordering if ordering is not None else sorted(dims)):
            d = dims[key]
            out._vectors[key] = x[offset:offset + d]
            offset += d
        if offset != x.shape[0]:
            raise ValueError(f"Vector of length {x.shape[0]} does not match total dimension {offset}")
        return out

    def insert(self, key: Key, vec) -> None:
        if key in self._vectors:
            raise ValueError(f"Key {format_key(key)} already exists in VectorValues")
        self._vectors[key] = jnp.atleast_1d(jnp.asarray(vec, dtype=jnp.float64))

    def at(self, key: Key) -> jnp.ndarray:
        try:
            return self._vectors[key]
        except KeyError:
            raise MissingKeyError(key, "vector values") from None

    def exists(self, key: Key) -> bool:
        return key in self._vectors

    def __contains__(self, key: Key) -> bool:
        return key in self._vectors

    def __len__(self) -> int:
        return len(self._vectors)

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys())

    def keys(self) -> List[Key]:
        return sorted(self._vectors)

    def items(self) -> List[Tuple[Key, jnp.ndarray]]:
        return [(k, self._vectors[k]) for k in self.keys()]

    def dims(self) -> Dict[Key, int]:
        return {k: int(v.shape[0]) for k, v in self.items()}

    def vector(self, ordering: Optional[Sequence[Key]] = None) -> jnp.ndarray:
        keys = ordering if ordering is not None else self.keys()
        if not keys:
            return jnp.zeros(0)
        return jnp.concatenate([self.at(k) for k in keys])

    def norm(self) -> float:
        return float(np.sqrt(sum(float(jnp.dot(v, v)) for _, v in self.items())))

    def dot(self, other: "VectorValues") -> float:
        return float(sum(float(jnp.dot(v, other.at(k))) for k, v in self.items()))

    def scale(self, alpha: float) -> "VectorValues":
        return VectorValues({k: alpha * v for k, v in self.items()})

    def __add__(self, other: "VectorValues") -> "VectorValues":
        out = VectorValues(dict(self.items()))
        for key, vec in other.items():
            if key in out._vectors:
                out._vectors[key] = out._vectors[key] + vec
            else:
                out._vectors[key] = vec
        return out

    def __neg__(self) -> "VectorValues":
        return self.scale(-1.0)

    def __repr__(self) -> str:
        body = ", ".join(f"{format_key(k)}: {np.asarray(v).tolist()}" for k, v in self.items())
        return f"VectorValues({{{body}}})"
