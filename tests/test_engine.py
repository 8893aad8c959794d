import threading

import numpy as np
import pytest
from scipy.integrate import solve_ivp

from mol_engine import (
    ConfigurationError,
    FieldState,
    Grid,
    NonconvergenceError,
    NumericalDivergence,
    PointwiseReaction,
    ReactionDiffusionSystem,
    RunStatus,
    SolverMethod,
    SolverOptions,
    Tolerances,
    dirichlet,
    integrate,
)
from mol_engine.reactions import gierer_meinhardt, gierer_meinhardt_steady_state, linear_decay

GM_PARAMS = {"a": 1.0, "alpha": 1.0, "ubar": 1.0, "beta": 10.0}


def heat_system(n=9, boundaries="dirichlet", D=1.0):
    return ReactionDiffusionSystem(Grid.from_length(n, boundaries=boundaries), ["u"], {"u": D})


def gm_system(n, Du, Dv, params=GM_PARAMS):
    return ReactionDiffusionSystem(
        Grid.from_length(n, boundaries="no-flux"),
        ["u", "v"],
        {"u": Du, "v": Dv},
        reaction=gierer_meinhardt(),
        params=params,
    )


def gm_initial(system, noise=0.01, seed=0, params=GM_PARAMS):
    uss, vss = gierer_meinhardt_steady_state(params)
    rng = np.random.default_rng(seed)
    state = FieldState.full(system.grid, {"u": uss, "v": vss})
    state["u"] *= 1.0 + noise * rng.uniform(-1.0, 1.0, size=system.grid.shape)
    return state


# ------------------------------------------------------------------
# scenarios
# ------------------------------------------------------------------
@pytest.mark.parametrize("method", ["explicit", "implicit", "auto"])
def test_dirichlet_zero_decays(method):
    system = heat_system()
    u0 = np.random.default_rng(1).uniform(1.0, 3.0, size=(1, 9))

    res = integrate(system, u0, (0.0, 0.5), method=method, save_points=np.linspace(0.0, 0.5, 6)).collect()

    norms = np.linalg.norm(res.channel("u"), axis=0)
    assert res.status == "completed"
    assert np.all(np.diff(norms) < 0)
    assert np.max(np.abs(res.final_state()["u"])) < 0.1


@pytest.mark.parametrize("method", ["explicit", "implicit"])
def test_dirichlet_steady_state_is_linear(method):
    n = 9
    system = ReactionDiffusionSystem(
        Grid.from_length(n, boundaries=(dirichlet(3.0), dirichlet(0.0))), ["u"], {"u": 1.0}
    )
    u0 = np.random.default_rng(2).uniform(0.0, 1.0, size=(1, n))

    res = integrate(system, u0, (0.0, 5.0), method=method, save_points=[5.0]).collect()

    expected = 3.0 * (1.0 - np.arange(1, n + 1) / (n + 1))
    assert res.n_steps == 1
    assert np.allclose(res.final_state()["u"], expected, atol=1e-2)


def test_gierer_meinhardt_stays_near_steady_state():
    system = gm_system(20, 0.001, 100.0)
    uss, vss = gierer_meinhardt_steady_state(GM_PARAMS)

    res = integrate(
        system, gm_initial(system), (0.0, 1.0), method="implicit", save_points=np.linspace(0.0, 1.0, 11)
    ).collect()

    assert res.status == "completed"
    assert np.all(np.isfinite(res.data))
    assert np.max(np.abs(res.channel("u") - uss)) < 0.1 * uss
    assert np.max(np.abs(res.channel("v") - vss)) < 0.1 * vss


# ------------------------------------------------------------------
# accuracy
# ------------------------------------------------------------------
@pytest.mark.parametrize("method, rtol", [("explicit", 1e-10), ("implicit", 1e-6)])
def test_no_flux_diffusion_conserves_mass(method, rtol):
    system = heat_system(n=(12, 10), boundaries="no-flux", D=0.5)
    u0 = np.random.default_rng(3).uniform(0.0, 2.0, size=(1, 12, 10))

    res = integrate(
        system, u0, (0.0, 0.2), method=method,
        tolerances=Tolerances(rtol=1e-8, atol=1e-10),
        save_points=np.linspace(0.0, 0.2, 5),
    ).collect()

    mass = res.mass()[0]
    assert np.allclose(mass, mass[0], rtol=rtol)


def test_explicit_and_implicit_agree():
    system = gm_system(16, 0.01, 1.0)
    y0 = gm_initial(system, noise=0.05)
    tol = Tolerances(rtol=1e-8, atol=1e-10)

    explicit = integrate(system, y0, (0.0, 2.0), method="explicit", tolerances=tol, save_points=[2.0]).collect()
    implicit = integrate(system, y0, (0.0, 2.0), method="implicit", tolerances=tol, save_points=[2.0]).collect()

    assert np.allclose(explicit.data, implicit.data, rtol=1e-4)


def test_implicit_matches_scipy_bdf():
    system = gm_system(12, 0.01, 1.0)
    y0 = system.pack(gm_initial(system, noise=0.05))

    ref = solve_ivp(
        system, (0.0, 1.0), y0, method="BDF", rtol=1e-9, atol=1e-11,
        jac_sparsity=system.jacobian_sparsity(),
    )
    assert ref.success

    res = integrate(
        system, y0, (0.0, 1.0), method="implicit", tolerances=Tolerances(rtol=1e-8, atol=1e-10), save_points=[1.0]
    ).collect()

    assert np.allclose(res.final_state().ravel(), ref.y[:, -1], rtol=1e-4)


def test_composed_and_loop_modes_give_the_same_trajectory():
    system = gm_system(10, 0.01, 1.0)
    y0 = gm_initial(system)
    pts = np.linspace(0.0, 0.5, 3)

    composed = integrate(system, y0, (0.0, 0.5), method="explicit", save_points=pts).collect()
    loop = integrate(system.with_mode("loop"), y0, (0.0, 0.5), method="explicit", save_points=pts).collect()

    assert np.allclose(composed.data, loop.data, rtol=1e-5)


# ------------------------------------------------------------------
# method selection
# ------------------------------------------------------------------
def test_auto_switches_to_implicit_on_stiff_diffusion():
    system = heat_system(n=50, boundaries="no-flux", D=1.0)
    x = system.grid.coordinates(0)
    u0 = np.cos(np.pi * x)[None, :]

    traj = integrate(
        system, u0, (0.0, 1.0), method="auto",
        tolerances=Tolerances(rtol=1e-4, atol=1e-8),
        options=SolverOptions(stiffness_window=5),
        save_points=[1.0],
    )
    res = traj.collect()

    assert traj.run_state.method is SolverMethod.IMPLICIT
    assert traj.run_state.stiff
    assert 0.0 < traj.run_state.switch_time < 1.0
    assert res.stats["switch_time"] == traj.run_state.switch_time

    reference = integrate(
        system, u0, (0.0, 1.0), method="implicit", tolerances=Tolerances(rtol=1e-6, atol=1e-10), save_points=[1.0]
    ).collect()
    assert np.allclose(res.data, reference.data, atol=1e-3)


def test_explicit_run_on_non_stiff_problem_stays_explicit():
    system = ReactionDiffusionSystem(
        Grid.from_length(8, boundaries="no-flux"), ["u"], {"u": 1e-3},
        reaction=linear_decay("u"), params={"k": 1.0},
    )
    traj = integrate(system, np.ones((1, 8)), (0.0, 1.0), method="auto", save_points=[1.0])
    res = traj.collect()

    assert traj.run_state.method is SolverMethod.EXPLICIT
    assert traj.run_state.switch_time is None
    assert np.allclose(res.final_state()["u"], np.exp(-1.0), rtol=1e-5)
    assert res.stats["n_steps"] > 0


# ------------------------------------------------------------------
# sampling
# ------------------------------------------------------------------
def test_save_points_are_hit_exactly():
    system = heat_system()
    pts = np.array([0.0, 0.013, 0.1, 0.25, 0.5])

    res = integrate(system, np.ones((1, 9)), (0.0, 0.5), method="explicit", save_points=pts).collect()

    assert np.array_equal(res.time, pts)
    assert res.data.shape == (1, 9, 5)
    assert np.allclose(res.state_at(0)["u"], 1.0)


def test_save_points_after_start_skip_initial_sample():
    system = heat_system()
    res = integrate(system, np.ones((1, 9)), (0.0, 0.5), method="implicit", save_points=[0.2, 0.4]).collect()

    assert np.array_equal(res.time, [0.2, 0.4])


def test_every_accepted_step_is_sampled():
    system = heat_system()
    traj = integrate(system, np.ones((1, 9)), (0.0, 0.1), method="explicit")
    res = traj.collect()

    assert res.time[0] == 0.0
    assert res.time[-1] == 0.1
    assert np.all(np.diff(res.time) > 0)
    assert res.n_steps == traj.run_state.n_steps + 1


def test_emitted_states_are_independent_copies():
    system = heat_system()
    traj = integrate(system, np.ones((1, 9)), (0.0, 0.1), method="explicit", save_points=[0.0, 0.05, 0.1])

    samples = list(traj)
    before = [s.data.copy() for _, s in samples]
    samples[0][1]["u"][:] = -1.0

    assert not np.shares_memory(samples[1][1].data, samples[2][1].data)
    assert np.array_equal(samples[1][1].data, before[1])
    assert not np.allclose(samples[1][1].data, samples[2][1].data)


def test_cached_trajectory_replays_first_run():
    system = heat_system()
    traj = integrate(system, np.ones((1, 9)), (0.0, 0.1), method="explicit", save_points=[0.05, 0.1], cache=True)

    first = list(traj)
    run_state = traj.run_state
    first[0][1]["u"][:] = 99.0
    second = list(traj)

    assert traj.run_state is run_state
    assert [t for t, _ in second] == [0.05, 0.1]
    assert not np.allclose(second[0][1]["u"], 99.0)


def test_uncached_trajectory_reruns_deterministically():
    system = heat_system()
    traj = integrate(system, np.ones((1, 9)), (0.0, 0.1), method="implicit", save_points=[0.1])

    a = traj.collect()
    state_a = traj.run_state
    b = traj.collect()

    assert traj.run_state is not state_a
    assert np.array_equal(a.data, b.data)
    assert a.stats == b.stats


# ------------------------------------------------------------------
# run control
# ------------------------------------------------------------------
def test_stop_event_cancels_between_steps():
    system = heat_system()
    stop = threading.Event()
    traj = integrate(system, np.ones((1, 9)), (0.0, 1.0), method="explicit", stop_event=stop)

    samples = []
    for t, state in traj:
        samples.append(t)
        stop.set()

    assert samples == [0.0]
    assert traj.status is RunStatus.CANCELLED

    res = traj.collect()
    assert res.status == "cancelled"
    assert res.n_steps == 1


def test_max_steps_is_fatal():
    system = heat_system()
    traj = integrate(
        system, np.ones((1, 9)), (0.0, 1.0), method="explicit", options=SolverOptions(max_steps=3), save_points=[1.0]
    )

    with pytest.raises(NumericalDivergence) as info:
        traj.collect()

    assert traj.run_state.n_steps == 3
    assert traj.status is RunStatus.FAILED
    assert isinstance(info.value.last_state, FieldState)
    assert info.value.partial.n_steps == 0


# ------------------------------------------------------------------
# failures
# ------------------------------------------------------------------
def test_blow_up_reports_partial_trajectory():
    reaction = PointwiseReaction.from_function(["u"], lambda U, p: U * U)
    system = ReactionDiffusionSystem(Grid.from_length(3, boundaries="no-flux"), ["u"], {"u": 1.0}, reaction=reaction)

    traj = integrate(system, np.ones((1, 3)), (0.0, 2.0), method="explicit", save_points=np.linspace(0.0, 2.0, 21))
    with pytest.raises(NumericalDivergence) as info:
        traj.collect()

    err = info.value
    assert 0.9 <= err.last_time < 1.0
    assert err.partial.status == "failed"
    assert err.partial.n_steps == 10
    assert np.allclose(err.partial.time, np.linspace(0.0, 0.9, 10))
    assert np.all(np.isfinite(err.last_state.data))


def test_newton_failure_surfaces_as_nonconvergence():
    system = gm_system(8, 0.01, 1.0)
    traj = integrate(
        system, gm_initial(system), (0.0, 1.0), method="implicit",
        options=SolverOptions(newton_maxiter=1, max_rejections=2),
    )

    with pytest.raises(NonconvergenceError) as info:
        traj.collect()

    assert info.value.last_time == 0.0
    assert info.value.partial.n_steps == 1
    assert traj.status is RunStatus.FAILED


def test_non_finite_initial_state_fails_before_stepping():
    system = heat_system()
    u0 = np.ones((1, 9))
    u0[0, 4] = np.nan

    with pytest.raises(NumericalDivergence) as info:
        integrate(system, u0, (0.0, 1.0), method="explicit").collect()

    assert info.value.partial.n_steps == 0
    assert isinstance(info.value.last_state, FieldState)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"t_span": (1.0, 0.0)},
        {"t_span": (0.0, 1.0, 2.0)},
        {"save_points": [0.5, 0.2]},
        {"save_points": [0.5, 2.0]},
        {"save_points": []},
        {"method": "rk45"},
    ],
)
def test_bad_arguments_raise_configuration_error(kwargs):
    system = heat_system()
    args = {"t_span": (0.0, 1.0), "save_points": None, "method": "auto"}
    args.update(kwargs)

    with pytest.raises(ConfigurationError):
        integrate(system, np.ones((1, 9)), **args)


def test_initial_state_must_match_system():
    system = gm_system(8, 0.01, 1.0)

    with pytest.raises(ConfigurationError):
        integrate(system, np.ones(10), (0.0, 1.0))
    with pytest.raises(ConfigurationError):
        integrate(system, FieldState.full(system.grid, {"u": 1.0}), (0.0, 1.0))
