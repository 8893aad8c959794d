import numpy as np
import pytest

from mol_engine.domain import Grid
from mol_engine.errors import ConfigurationError
from mol_engine.state import FieldState, Workspace


def test_field_state_channels_are_views():
    grid = Grid.from_length((4, 3))
    state = FieldState.zeros(grid, ["u", "v"])

    state["v"][1, 2] = 7.0

    assert state.shape == (4, 3)
    assert state.n_channels == 2
    assert state.data[1, 1, 2] == 7.0
    assert state.ravel().shape == (24,)
    state.assert_consistent(grid, ["u", "v"])


def test_field_state_copy_is_independent():
    grid = Grid.from_length(5)
    state = FieldState.full(grid, {"u": 1.0, "v": 2.0})
    snap = state.copy()

    state["u"][:] = 0.0

    assert np.allclose(snap["u"], 1.0)
    assert np.allclose(snap["v"], 2.0)


def test_field_state_validation():
    with pytest.raises(ConfigurationError):
        FieldState(["u", "u"], np.zeros((2, 3)))
    with pytest.raises(ConfigurationError):
        FieldState(["u"], np.zeros((2, 3)))
    with pytest.raises(ConfigurationError):
        FieldState.from_fields({"u": np.zeros(3), "v": np.zeros(4)})
    with pytest.raises(KeyError):
        FieldState.zeros(Grid.from_length(3), ["u"])["w"]

    state = FieldState.zeros(Grid.from_length(3), ["u"])
    with pytest.raises(ConfigurationError):
        state.assert_consistent(Grid.from_length(4))


def test_field_state_is_finite():
    state = FieldState(["u"], np.array([[1.0, np.nan]]))
    assert not state.is_finite()


def test_workspace_allocates_once_per_name():
    ws = Workspace()
    a = ws.get("a", (3, 4))
    b = ws.get("a", (3, 4))

    assert a is b
    assert ws.n_allocations == 1
    assert "a" in ws
    assert len(ws) == 1
    assert ws.nbytes == 3 * 4 * 8

    ws.get("a", (5,))
    assert ws.n_allocations == 2

    calls = []
    bundle = ws.bundle("k", lambda w: calls.append(1) or {"x": w.get("x", (2,))})
    again = ws.bundle("k", lambda w: calls.append(1) or {})
    assert bundle is again
    assert calls == [1]
    assert ws.names() == ["a", "x"]
