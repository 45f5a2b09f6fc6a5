from __future__ import annotations

import jax.numpy as jnp
import pytest

from sfm_jit.core.errors import MissingKeyError
from sfm_jit.core.types import camera_key, format_key, point_key, pose_key, symbol, symbol_chr, symbol_index
from sfm_jit.core.values import Values, VectorValues
from sfm_jit.geometry.pose import Pose3


def _values() -> Values:
    values = Values()
    values.insert(point_key(1), jnp.array([1.0, 2.0, 3.0]))
    values.insert(pose_key(0), Pose3.identity())
    values.insert(point_key(0), jnp.array([0.0, 0.0, 1.0]))
    return values


def test_symbols():
    key = camera_key(3)
    assert symbol_chr(key) == "c"
    assert symbol_index(key) == 3
    assert format_key(key) == "c3"
    assert symbol("p", 7) == point_key(7)
    assert format_key(42) == "42"


def test_insert_and_at():
    values = _values()
    assert len(values) == 3
    assert values.exists(point_key(0))
    assert point_key(1) in values
    assert jnp.allclose(values.at(point_key(1)), jnp.array([1.0, 2.0, 3.0]))


def test_duplicate_insert_raises():
    values = _values()
    with pytest.raises(ValueError):
        values.insert(point_key(0), jnp.zeros(3))


def test_missing_key_raises():
    values = _values()
    with pytest.raises(MissingKeyError) as info:
        values.at(point_key(9))
    assert info.value.key == point_key(9)
    assert "p9" in str(info.value)
    # also a KeyError
    with pytest.raises(KeyError):
        values.update(camera_key(0), jnp.zeros(3))


def test_keys_are_sorted():
    values = _values()
    assert values.keys() == sorted([point_key(0), point_key(1), pose_key(0)])
    assert list(values) == values.keys()
    assert values.dims() == {point_key(0): 3, point_key(1): 3, pose_key(0): 6}


def test_retract_is_pure():
    values = _values()
    delta = VectorValues({point_key(0): jnp.array([1.0, 0.0, 0.0])})

    moved = values.retract(delta)

    assert jnp.allclose(moved.at(point_key(0)), jnp.array([1.0, 0.0, 1.0]))
    assert jnp.allclose(values.at(point_key(0)), jnp.array([0.0, 0.0, 1.0]))
    # keys without a delta are carried over
    assert moved.at(pose_key(0)).equals(Pose3.identity())
    assert jnp.allclose(delta.at(point_key(0)), jnp.array([1.0, 0.0, 0.0]))


def test_retract_unknown_delta_key_raises():
    with pytest.raises(MissingKeyError):
        _values().retract(VectorValues({camera_key(5): jnp.zeros(9)}))


def test_local_coordinates_roundtrip():
    values = _values()
    delta = VectorValues({
        point_key(0): jnp.array([0.1, 0.2, 0.3]),
        point_key(1): jnp.array([-1.0, 0.0, 0.5]),
        pose_key(0): jnp.array([0.1, 0.0, -0.1, 0.01, 0.02, 0.03]),
    })
    moved = values.retract(delta)
    back = values.local_coordinates(moved)
    assert jnp.allclose(back.vector(), delta.vector(), atol=1e-12)


def test_vector_values_stacking():
    dims = {point_key(1): 2, point_key(0): 3}
    x = jnp.arange(5.0)
    vv = VectorValues.from_vector(x, dims)

    assert vv.keys() == [point_key(0), point_key(1)]
    assert jnp.allclose(vv.at(point_key(0)), jnp.array([0.0, 1.0, 2.0]))
    assert jnp.allclose(vv.vector(), x)
    assert vv.norm() == pytest.approx(float(jnp.linalg.norm(x)))
    assert vv.dot(vv) == pytest.approx(30.0)

    with pytest.raises(ValueError):
        VectorValues.from_vector(jnp.zeros(4), dims)


def test_vector_values_arithmetic():
    a = VectorValues({point_key(0): jnp.array([1.0, 2.0])})
    b = VectorValues({point_key(0): jnp.array([1.0, 1.0]), point_key(1): jnp.array([3.0])})

    s = a + b
    assert jnp.allclose(s.at(point_key(0)), jnp.array([2.0, 3.0]))
    assert jnp.allclose(s.at(point_key(1)), jnp.array([3.0]))
    assert jnp.allclose((-a).at(point_key(0)), jnp.array([-1.0, -2.0]))
    assert jnp.allclose(a.scale(2.0).at(point_key(0)), jnp.array([2.0, 4.0]))
    assert VectorValues.zero({point_key(0): 2}).norm() == 0.0

    with pytest.raises(MissingKeyError):
        a.at(point_key(1))
