# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.
"""
Pose-graph SLAM: SE(3) poses linked by relative-pose measurements.

Pose ``i`` lives under ``pose_key(i)``. Odometry and loop closures are both
``between`` factors; a prior on the first pose fixes the gauge.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from sfm_jit.core.factor_graph import FactorGraph
from sfm_jit.core.noise import GaussianNoise
from sfm_jit.core.types import pose_key
from sfm_jit.core.values import Values
from sfm_jit.geometry.pose import Pose3
from sfm_jit.slam.measurements import between_factor, prior_factor


@dataclass(frozen=True)
class PoseGraphEdge:
    i: int
    j: int
    measured: Pose3  # pose j expressed in the frame of pose i
    noise: Optional[GaussianNoise] = None


def build_pose_graph(
    initial_poses: Sequence[Pose3],
    edges: Sequence[PoseGraphEdge],
    prior_noise: Optional[GaussianNoise] = None,
) -> Tuple[FactorGraph, Values]:
    """
    Factor graph and initial Values for a pose graph.

    The first pose is anchored at its initial value with ``prior_noise``
    (unit noise by default).
    """
    values = Values()
    for i, pose in enumerate(initial_poses):
        values.insert(pose_key(i), pose)

    graph = FactorGraph()
    for edge in edges:
        for idx in (edge.i, edge.j):
            if not 0 <= idx < len(initial_poses):
                raise ValueError(f"Edge ({edge.i}, {edge.j}) references unknown pose {idx}")
        graph.add(between_factor(pose_key(edge.i), pose_key(edge.j), edge.measured, edge.noise))

    if initial_poses:
        graph.add(prior_factor(pose_key(0), initial_poses[0], prior_noise or GaussianNoise.unit(6)))
    return graph, values
