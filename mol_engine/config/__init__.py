from .solver_config import MethodLike, SolverMethod, SolverOptions, Tolerances, as_method

__all__ = ["MethodLike", "SolverMethod", "SolverOptions", "Tolerances", "as_method"]
