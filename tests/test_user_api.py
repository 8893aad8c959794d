import numpy as np
import pytest

from mol_engine import ConfigurationError, ReactionDiffusionModel
from mol_engine.reactions import gierer_meinhardt, gierer_meinhardt_steady_state

PARAMS = {"a": 1.0, "alpha": 1.0, "ubar": 1.0, "beta": 10.0}


def _gm_model(mode="composed"):
    return (
        ReactionDiffusionModel(["u", "v"])
        .grid(shape=12, length=1.0)
        .boundary("no-flux")
        .diffusion(u=0.01, v=1.0)
        .reaction_terms(lambda U, V, p: (
            p["a"] * U ** 2 / V + p["ubar"] - p["alpha"] * U,
            p["a"] * U ** 2 - p["beta"] * V,
        ))
        .build(params=PARAMS, mode=mode)
    )


def test_lambda_model_matches_library_reaction():
    uss, vss = gierer_meinhardt_steady_state(PARAMS)
    u0 = uss * (1.0 + 0.01 * np.random.default_rng(0).uniform(-1.0, 1.0, size=12))
    pts = np.linspace(0.0, 0.5, 6)

    lam = _gm_model().run({"u": u0, "v": vss}, t_span=(0.0, 0.5), save_points=pts, method="explicit")

    lib_model = (
        ReactionDiffusionModel(["u", "v"])
        .grid(shape=12)
        .diffusion(u=0.01, v=1.0)
        .reaction_terms(gierer_meinhardt())
        .build(params=PARAMS)
    )
    lib = lib_model.run({"u": u0, "v": vss}, t_span=(0.0, 0.5), save_points=pts, method="explicit")

    assert lam.data.shape == (2, 12, 6)
    assert np.allclose(lam.data, lib.data, rtol=1e-5)
    assert np.allclose(lam.channel("v")[:, 0], vss)


def test_run_accepts_stacked_array():
    model = _gm_model()
    uss, vss = gierer_meinhardt_steady_state(PARAMS)
    y0 = np.stack([np.full(12, uss), np.full(12, vss)])

    res = model.run(y0, t_span=(0.0, 0.1), save_points=[0.1], method="implicit")

    # the homogeneous steady state is a fixed point
    assert np.allclose(res.final_state()["u"], uss, rtol=1e-6)
    assert np.allclose(res.final_state()["v"], vss, rtol=1e-6)

    with pytest.raises(ConfigurationError):
        model.run(np.ones((2, 11)), t_span=(0.0, 0.1))


def test_run_ensemble_mean():
    model = _gm_model()
    uss, vss = gierer_meinhardt_steady_state(PARAMS)

    def make_initial(rng):
        return {"u": uss * (1.0 + 0.01 * rng.uniform(-1.0, 1.0, size=12)), "v": vss}

    mean = model.run_ensemble(
        make_initial, t_span=(0.0, 0.1), save_points=[0.0, 0.1], repeats=3, method="explicit", progress=False
    )

    assert mean.stats["repeats"] == 3
    assert mean.data.shape == (2, 12, 2)
    assert np.allclose(mean.channel("u"), uss, rtol=0.02)


def test_metadata_and_build_checks():
    model = _gm_model(mode="loop")
    meta = model.metadata()

    assert meta["channels"] == ["u", "v"]
    assert meta["diffusion"] == {"u": 0.01, "v": 1.0}
    assert meta["params"] == PARAMS
    assert meta["mode"] == "loop"
    assert meta["grid"]["shape"] == [12]

    with pytest.raises(RuntimeError):
        ReactionDiffusionModel(["u"]).system
    with pytest.raises(ConfigurationError):
        ReactionDiffusionModel(["u"]).build()
    with pytest.raises(ConfigurationError):
        ReactionDiffusionModel(["u", "v"]).diffusion(u=1.0)
    with pytest.raises(ConfigurationError):
        ReactionDiffusionModel(["u", "u"])


def test_metadata_keeps_non_numeric_params():
    model = (
        ReactionDiffusionModel(["u"])
        .grid(shape=8)
        .diffusion(u=0.1)
        .reaction_terms(lambda U, p: -p["k"] * U)
        .build(params={"k": 1.0, "label": "decay", "cache": np.zeros(3)})
    )

    params = model.metadata()["params"]

    assert params["k"] == 1.0
    assert params["label"] == repr("decay")
    assert params["cache"] == repr(np.zeros(3))
