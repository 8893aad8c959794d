import tracemalloc

import numpy as np
import pytest

from mol_engine.config import SolverOptions, Tolerances
from mol_engine.domain import Grid
from mol_engine.pde import BDFStepper, DormandPrinceStepper, ReactionDiffusionSystem
from mol_engine.reactions import gierer_meinhardt, gierer_meinhardt_steady_state
from mol_engine.state import Workspace

N = 10_000
PARAMS = {"a": 1.0, "alpha": 1.0, "ubar": 1.0, "beta": 10.0}
TOL = Tolerances(rtol=1e-4, atol=1e-8)


def _large_system(n=N, mode="composed"):
    system = ReactionDiffusionSystem(
        Grid.from_length(n, boundaries="no-flux"),
        ["u", "v"],
        {"u": 1e-3, "v": 1e-3},
        reaction=gierer_meinhardt(),
        params=PARAMS,
        mode=mode,
    )
    uss, vss = gierer_meinhardt_steady_state(PARAMS)
    y0 = np.empty(system.state_shape)
    y0[0] = uss * (1.0 + 0.01 * np.random.default_rng(0).uniform(-1.0, 1.0, size=n))
    y0[1] = vss
    return system, y0.reshape(-1)


def _peak_while_stepping(stepper, t_bound, n_steps):
    tracemalloc.start()
    try:
        for _ in range(n_steps):
            stepper.step(t_bound)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()
    return peak


@pytest.mark.parametrize("stepper_cls", [DormandPrinceStepper, BDFStepper])
def test_steady_stepping_allocates_nothing(stepper_cls):
    system, y0 = _large_system()
    ws = Workspace()

    def fun(t, y, out):
        system.evaluate(t, y, out, ws)

    stepper = stepper_cls(fun, 0.0, y0, TOL, SolverOptions(), ws, 100.0)
    stepper.step(100.0)
    allocations = ws.n_allocations
    buffers = ws.nbytes

    peak = _peak_while_stepping(stepper, 100.0, 10)

    assert ws.n_allocations == allocations
    assert ws.nbytes == buffers
    # nothing of state-vector size is created per step
    assert peak < y0.nbytes // 4
    assert stepper.t > 0.0


@pytest.mark.parametrize("stepper_cls", [DormandPrinceStepper, BDFStepper])
def test_loop_mode_stepping_allocates_nothing(stepper_cls):
    # per-point evaluation is slow, so a smaller grid and fewer steps
    system, y0 = _large_system(n=3_000, mode="loop")
    ws = Workspace()

    def fun(t, y, out):
        system.evaluate(t, y, out, ws)

    stepper = stepper_cls(fun, 0.0, y0, TOL, SolverOptions(), ws, 100.0)
    stepper.step(100.0)
    allocations = ws.n_allocations
    buffers = ws.nbytes

    peak = _peak_while_stepping(stepper, 100.0, 3)

    assert ws.n_allocations == allocations
    assert ws.nbytes == buffers
    assert peak < y0.nbytes // 4
    assert stepper.t > 0.0


def test_implicit_stepping_after_switch_allocates_nothing():
    system, y0 = _large_system()
    ws = Workspace()

    def fun(t, y, out):
        system.evaluate(t, y, out, ws)

    explicit = DormandPrinceStepper(fun, 0.0, y0, TOL, SolverOptions(), ws, 100.0)
    for _ in range(3):
        explicit.step(100.0)

    # same hand-over as the driver's explicit-to-implicit switch
    stepper = BDFStepper(
        fun, explicit.t, explicit.y, TOL, SolverOptions(), ws, 100.0 - explicit.t,
        jacobian_diagonal=system.laplacian_diagonal(),
        first_step=explicit.h_abs,
    )
    t_switch = stepper.t
    stepper.step(100.0)
    allocations = ws.n_allocations
    buffers = ws.nbytes

    peak = _peak_while_stepping(stepper, 100.0, 10)

    assert ws.n_allocations == allocations
    assert ws.nbytes == buffers
    assert peak < y0.nbytes // 4
    assert stepper.t > t_switch


def test_rhs_evaluation_allocates_nothing_after_first_call():
    system, y0 = _large_system()
    ws = Workspace()
    out = np.empty_like(y0)
    system.evaluate(0.0, y0, out, ws)
    allocations = ws.n_allocations

    tracemalloc.start()
    try:
        for _ in range(20):
            system.evaluate(0.0, y0, out, ws)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert ws.n_allocations == allocations
    assert peak < y0.nbytes // 4
