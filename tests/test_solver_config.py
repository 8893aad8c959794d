import numpy as np
import pytest

from mol_engine.config import SolverMethod, SolverOptions, Tolerances, as_method
from mol_engine.errors import ConfigurationError


def test_method_selector_accepts_strings_and_enum():
    assert as_method("explicit") is SolverMethod.EXPLICIT
    assert as_method("IMPLICIT") is SolverMethod.IMPLICIT
    assert as_method(SolverMethod.AUTO) is SolverMethod.AUTO

    with pytest.raises(ConfigurationError):
        as_method("rk4")


def test_tolerances_validation():
    tol = Tolerances(rtol=1e-4, atol=1e-7)
    assert tol.rtol == 1e-4

    with pytest.raises(ConfigurationError):
        Tolerances(rtol=0.0)
    with pytest.raises(ConfigurationError):
        Tolerances(atol=-1.0)
    with pytest.raises(ConfigurationError):
        Tolerances(rtol=np.nan)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"first_step": 0.0},
        {"max_step": 0.0},
        {"min_step": 1.0, "max_step": 0.5},
        {"safety": 1.2},
        {"min_factor": 0.0},
        {"max_factor": 1.0},
        {"max_rejections": 0},
        {"max_steps": 0},
        {"max_order": 6},
        {"newton_maxiter": 0},
        {"krylov_dim": 0},
        {"krylov_tol": 1.0},
        {"stiffness_window": 0},
        {"shrink_threshold": 1.5},
    ],
)
def test_solver_options_validation(kwargs):
    with pytest.raises(ConfigurationError):
        SolverOptions(**kwargs)


def test_solver_options_to_dict():
    d = SolverOptions(max_steps=100).to_dict()

    assert d["max_steps"] == 100
    assert d["first_step"] is None
    assert d["max_order"] == 5
    assert np.isinf(d["max_step"])
