from .trajectory_results import TrajectoryResults
from .io import save_results, load_results, save_npz, load_npz, save_all

__all__ = ["TrajectoryResults", "save_results", "load_results", "save_npz", "load_npz", "save_all"]
