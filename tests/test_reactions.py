import numpy as np
import pytest

from mol_engine.errors import ConfigurationError
from mol_engine.reactions import (
    PointwiseReaction,
    describe_reaction,
    gierer_meinhardt,
    gierer_meinhardt_steady_state,
    linear_decay,
    schnakenberg,
)


def test_gierer_meinhardt_steady_state_is_a_fixed_point():
    params = {"a": 1.0, "alpha": 1.0, "ubar": 1.0, "beta": 10.0}
    uss, vss = gierer_meinhardt_steady_state(params)

    assert np.isclose(uss, 11.0)
    assert np.isclose(vss, 12.1)
    assert np.allclose(gierer_meinhardt().evaluate_point([uss, vss], params), 0.0)


def test_gierer_meinhardt_values():
    params = {"a": 2.0, "alpha": 0.5, "ubar": 0.1, "beta": 3.0}
    du, dv = gierer_meinhardt().evaluate_point([2.0, 4.0], params)

    assert np.isclose(du, 2.0 * 4.0 / 4.0 + 0.1 - 0.5 * 2.0)
    assert np.isclose(dv, 2.0 * 4.0 - 3.0 * 4.0)


def test_schnakenberg_steady_state():
    a, b = 0.1, 0.9
    us, vs = a + b, b / (a + b) ** 2

    assert np.allclose(schnakenberg().evaluate_point([us, vs], {"a": a, "b": b}), 0.0)


def test_inplace_reaction_is_elementwise():
    U = np.array([1.0, 2.0, 3.0])
    V = np.array([2.0, 2.0, 2.0])
    out = {"u": np.zeros(3), "v": np.zeros(3)}
    scratch = (np.zeros(3), np.zeros(3))
    params = {"a": 1.0, "alpha": 1.0, "ubar": 0.0, "beta": 1.0}

    gierer_meinhardt().evaluate({"u": U, "v": V}, params, out, scratch)

    for i in range(3):
        du, dv = gierer_meinhardt().evaluate_point([U[i], V[i]], params)
        assert np.isclose(out["u"][i], du)
        assert np.isclose(out["v"][i], dv)


def test_functional_reaction_single_channel_and_wrong_arity():
    r = PointwiseReaction.from_function(["u"], lambda U, p: -p["k"] * U)
    assert np.allclose(r.evaluate_point([3.0], {"k": 2.0}), [-6.0])

    bad = PointwiseReaction.from_function(["u", "v"], lambda U, V, p: (U,))
    with pytest.raises(ValueError):
        bad.evaluate_point([1.0, 1.0], None)


def test_linear_decay_and_description():
    r = linear_decay("c", rate_key="gamma")
    assert np.allclose(r.evaluate_point([4.0], {"gamma": 0.5}), [-2.0])

    d = describe_reaction(r)
    assert d["channels"] == ["c"]
    assert d["label"] == "linear-decay"
    assert describe_reaction(None) == {"label": None, "channels": []}


def test_reaction_validation():
    with pytest.raises(ConfigurationError):
        PointwiseReaction(channels=(), fn=lambda *a: None)
    with pytest.raises(ConfigurationError):
        PointwiseReaction(channels=("u", "u"), fn=lambda *a: None)
