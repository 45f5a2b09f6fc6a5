# Copyright (c) 2025.
# This file is part of SFM-JIT, released under the MIT License.

import time

from sfm_jit.core.types import JacobianProvider
from sfm_jit.optimization.solvers import LMConfig, levenberg_marquardt
from sfm_jit.slam.sfm import SfmGraphConfig, build_sfm_graph, initial_estimate
from sfm_jit.slam.synthetic import SyntheticSceneConfig, make_synthetic_scene, perturb_values


def build_problem(num_cameras: int, num_points: int, model: str, provider: JacobianProvider):
    """
    Synthetic ring of cameras looking at a cloud of points, every point seen
    by every camera. The initial estimate is the ground truth perturbed by
    small tangent-space noise.
    """
    data = make_synthetic_scene(SyntheticSceneConfig(
        num_cameras=num_cameras, num_points=num_points, point_extent=2.0, k1=0.01,
    ))
    config = SfmGraphConfig(model=model, provider=provider)
    graph = build_sfm_graph(data, config)
    initial = perturb_values(initial_estimate(data, config), 1e-3, seed=0)
    return graph, initial


def run_benchmark(num_cameras: int = 5, num_points: int = 40, max_iters: int = 10):
    print("=== SfM Levenberg-Marquardt Benchmark ===")
    print(f"num_cameras = {num_cameras}, num_points = {num_points}, max_iters = {max_iters}")

    cfg = LMConfig(max_iters=max_iters)
    runs = [
        ("pinhole / analytic", "pinhole", JacobianProvider.ANALYTIC),
        ("pinhole / autodiff", "pinhole", JacobianProvider.AUTODIFF),
        ("snavely / autodiff", "snavely", JacobianProvider.AUTODIFF),
    ]

    for label, model, provider in runs:
        graph, initial = build_problem(num_cameras, num_points, model, provider)

        # Warmup: the first linearization traces and compiles the jitted kernels
        graph.linearize(initial)

        t0 = time.time()
        result = levenberg_marquardt(graph, initial, cfg)
        t1 = time.time()

        elapsed = t1 - t0
        print(f"[{label}] {elapsed * 1000:.3f} ms, {result.iterations} iterations, "
              f"status = {result.status.value}")
        print(f"[{label}] error: {result.error_history[0]:.6e} -> {result.error:.6e}")


if __name__ == "__main__":
    run_benchmark(num_cameras=5, num_points=40, max_iters=10)
