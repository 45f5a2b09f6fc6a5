"""Manifold dispatch, measurement models and problem builders."""
