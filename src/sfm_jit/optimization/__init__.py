"""Linear solvers and the nonlinear optimization loops."""
