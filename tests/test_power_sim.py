import threading

import numpy as np
import pandas as pd
import pytest

import survival_power.power_sim as power_sim
from survival_power import evaluate_survival_power
from survival_power.power_sim import SurvivalPowerSim
from survival_power.utils import (
    FitFailure,
    InvalidArgumentError,
    InvalidCoefficientCount,
    ResourceTeardownFailure,
)


@pytest.fixture
def design():
    """Two-level factor design with 15 runs"""
    return pd.DataFrame({"a": [-1, 1] * 7 + [1]})


def test_power_estimation(design):
    """Exponential right-censored example"""
    try:
        power = evaluate_survival_power(
            design,
            "~ a",
            alpha=0.05,
            nsim=100,
            distribution="exponential",
            censor_point=5,
            censor_type="right",
            seed=1,
        )
    except Exception as e:
        pytest.fail(f" raised an exception: {e}")

    assert list(power.columns) == ["parameter", "type", "power"]
    assert list(power["parameter"]) == ["Intercept", "a"]
    assert (power["type"] == "parameter.power.mc").all()
    assert power["power"].between(0, 1).all()
    assert power.attrs["estimates"].shape == (100, 2)
    assert power.attrs["pvals"].shape == (100, 2)
    assert power.attrs["modelmatrix"].shape == (15, 2)
    np.testing.assert_allclose(power.attrs["anticoef"], [1.0, 1.0])


@pytest.mark.parametrize("distribution, censor_point", [("gaussian", 2.5), ("lognormal", 20)])
def test_power_other_distributions(design, distribution, censor_point):
    p = SurvivalPowerSim(alpha=0.05, nsim=30, distribution=distribution, censor_point=censor_point, seed=3)
    power = p.get_power(design, "~ a")

    assert power["power"].between(0, 1).all()
    assert np.isfinite(power.attrs["estimates"].to_numpy()).all()


def test_power_matches_pvalues(design):
    """Power is the fraction of replicates with p-value below alpha"""
    p = SurvivalPowerSim(alpha=0.1, nsim=40, distribution="gaussian", seed=5)
    power = p.get_power(design, "~ a", effect_size=1)

    expected = (power.attrs["pvals"] < 0.1).mean().to_numpy()
    np.testing.assert_allclose(power["power"], expected)


def test_detailed_output(design):
    p = SurvivalPowerSim(alpha=0.05, nsim=10, distribution="lognormal", detailed_output=True, seed=2)
    power = p.get_power(design, "~ a", effect_size=[1, 2])

    assert {"anticoef", "alpha", "distribution", "trials", "nsim"} <= set(power.columns)
    np.testing.assert_allclose(power["anticoef"], [0.5 * np.log(2)] * 2)
    assert (power["trials"] == 15).all()
    assert (power["nsim"] == 10).all()


def test_power_increases_with_effect(design):
    """A larger anticipated coefficient does not lower power"""
    p = SurvivalPowerSim(alpha=0.05, nsim=200, distribution="gaussian", seed=11)
    small = p.get_power(design, "~ a", anticoef=[0.0, 0.3])
    large = p.get_power(design, "~ a", anticoef=[0.0, 1.0])

    assert large["power"].iloc[1] > small["power"].iloc[1]
    assert large["power"].iloc[1] > 0.8


def test_serial_and_parallel_agree(design):
    """Both strategies use the same per-replicate streams"""
    serial = SurvivalPowerSim(alpha=0.05, nsim=50, distribution="exponential", censor_point=5, seed=21)
    parallel = SurvivalPowerSim(
        alpha=0.05, nsim=50, distribution="exponential", censor_point=5, seed=21, parallel=True, cores=4
    )
    a = serial.get_power(design, "~ a")
    b = parallel.get_power(design, "~ a")

    np.testing.assert_allclose(a["power"], b["power"])
    np.testing.assert_allclose(a.attrs["estimates"], b.attrs["estimates"])


def test_replicates_use_independent_streams(design):
    """Every replicate draws its own data, and the seed changes the draws"""
    first = SurvivalPowerSim(alpha=0.05, nsim=20, distribution="gaussian", seed=4).get_power(design, "~ a")
    again = SurvivalPowerSim(alpha=0.05, nsim=20, distribution="gaussian", seed=4).get_power(design, "~ a")
    other = SurvivalPowerSim(alpha=0.05, nsim=20, distribution="gaussian", seed=5).get_power(design, "~ a")

    estimates = first.attrs["estimates"]
    assert not estimates.duplicated().any()
    np.testing.assert_allclose(estimates, again.attrs["estimates"])
    assert not np.allclose(estimates, other.attrs["estimates"])

    parallel = SurvivalPowerSim(alpha=0.05, nsim=20, distribution="gaussian", seed=4, parallel=True, cores=3)
    assert not parallel.get_power(design, "~ a").attrs["estimates"].duplicated().any()


def test_wrong_anticoef_length_fails_before_simulation(design):
    calls = []

    def rfunction(X, b):
        calls.append(1)
        return np.exp(X @ b), np.ones(X.shape[0], dtype=bool)

    with pytest.raises(InvalidCoefficientCount):
        evaluate_survival_power(
            design,
            "~ a",
            alpha=0.05,
            nsim=10,
            distribution="lognormal",
            rfunction_surv=rfunction,
            anticoef=[1, 2, 3],
        )
    assert calls == []


def test_deprecated_argument(design):
    with pytest.raises(InvalidArgumentError, match="RunMatrix"):
        evaluate_survival_power(design, "~ a", alpha=0.05, nsim=10, RunMatrix=design)


@pytest.mark.parametrize(
    "kwargs",
    [{"alpha": 1.5}, {"nsim": 0}, {"censor_type": "interval"}, {"distribution": "poisson"}, {"cores": 0}],
)
def test_invalid_arguments(kwargs):
    settings = {"alpha": 0.05, "nsim": 10} | kwargs
    with pytest.raises(InvalidArgumentError):
        SurvivalPowerSim(**settings)


def test_custom_generator(design):
    """A custom generator with a fixed scale fit, as survreg(scale=0.4)"""

    def rlognorm(X, b, rng):
        y = rng.lognormal(X @ b, 0.4)
        censored = y > 1.2
        return np.where(censored, 1.2, y), ~censored

    p = SurvivalPowerSim(alpha=0.2, nsim=30, distribution="lognormal", rfunction_surv=rlognorm, seed=8, scale=0.4)
    power = p.get_power(design, "~ a", anticoef=[0.184, 0.101])

    assert power["power"].between(0, 1).all()


def test_fit_failure_aborts_serial_run(design):
    def rzero(X, b):
        return np.zeros(X.shape[0]), np.ones(X.shape[0], dtype=bool)

    p = SurvivalPowerSim(alpha=0.05, nsim=10, distribution="lognormal", rfunction_surv=rzero)
    with pytest.raises(FitFailure):
        p.get_power(design, "~ a")


def test_fit_failure_aborts_parallel_run(design):
    def rzero(X, b):
        return np.zeros(X.shape[0]), np.ones(X.shape[0], dtype=bool)

    p = SurvivalPowerSim(alpha=0.05, nsim=10, distribution="lognormal", rfunction_surv=rzero, parallel=True, cores=2)
    with pytest.raises(FitFailure):
        p.get_power(design, "~ a")


@pytest.mark.parametrize("nsim, expected_calls", [(20, 20), (120, 50)])
def test_progress_callback(design, nsim, expected_calls):
    updates = []
    p = SurvivalPowerSim(alpha=0.05, nsim=nsim, progress_callback=updates.append, seed=4)
    p.get_power(design, "~ a")

    assert len(updates) == expected_calls
    assert sum(updates) == pytest.approx(1.0)


class FakePool:
    """Stand-in for the thread pool that records how it is released"""

    instances = []

    def __init__(self, processes=None, fail_map=False, fail_release=False):
        self.processes = processes
        self.fail_map = fail_map
        self.fail_release = fail_release
        self.calls = []
        FakePool.instances.append(self)

    def map(self, func, iterable):
        if self.fail_map:
            raise FitFailure("did not converge")
        return [func(x) for x in iterable]

    def close(self):
        self.calls.append("close")
        if self.fail_release:
            raise OSError("cannot close")

    def terminate(self):
        self.calls.append("terminate")
        if self.fail_release:
            raise OSError("cannot terminate")

    def join(self):
        self.calls.append("join")


@pytest.fixture
def fake_pool(monkeypatch):
    FakePool.instances = []

    def install(**kwargs):
        monkeypatch.setattr(power_sim, "ThreadPool", lambda processes=None: FakePool(processes, **kwargs))

    return install


def test_pool_released_after_success(design, fake_pool):
    fake_pool()
    p = SurvivalPowerSim(alpha=0.05, nsim=5, parallel=True, cores=3, seed=1)
    p.get_power(design, "~ a")

    pool = FakePool.instances[0]
    assert pool.processes == 3
    assert pool.calls == ["close", "join"]


def test_pool_terminated_after_fit_failure(design, fake_pool):
    fake_pool(fail_map=True)
    p = SurvivalPowerSim(alpha=0.05, nsim=5, parallel=True, cores=2)
    with pytest.raises(FitFailure):
        p.get_power(design, "~ a")

    assert FakePool.instances[0].calls == ["terminate", "join"]


def test_teardown_failure_does_not_mask_fit_failure(design, fake_pool):
    fake_pool(fail_map=True, fail_release=True)
    p = SurvivalPowerSim(alpha=0.05, nsim=5, parallel=True, cores=2)
    with pytest.raises(FitFailure):
        p.get_power(design, "~ a")


def test_teardown_failure_after_success(design, fake_pool):
    fake_pool(fail_release=True)
    p = SurvivalPowerSim(alpha=0.05, nsim=5, parallel=True, cores=2, seed=1)
    with pytest.raises(ResourceTeardownFailure):
        p.get_power(design, "~ a")


def test_cores_from_environment(monkeypatch):
    monkeypatch.setenv("SURVIVAL_POWER_CORES", "3")
    assert SurvivalPowerSim(alpha=0.05, nsim=10, parallel=True).cores == 3


def test_malformed_cores_variable_only_affects_parallel_runs(design, monkeypatch):
    """Serial runs never read the pool size"""
    monkeypatch.setenv("SURVIVAL_POWER_CORES", "many")
    power = SurvivalPowerSim(alpha=0.05, nsim=5, seed=1).get_power(design, "~ a")
    assert power.shape[0] == 2

    with pytest.raises(InvalidArgumentError, match="SURVIVAL_POWER_CORES"):
        SurvivalPowerSim(alpha=0.05, nsim=5, parallel=True)


def test_grid_sim_power(design):
    """Test power over a grid of scenarios"""
    p = SurvivalPowerSim(alpha=0.05, nsim=20, distribution="exponential", seed=9)
    try:
        grid = p.grid_sim_power(design, "~ a", effect_sizes=[1, 2], censor_points=[None, 5], threads=2, plot=False)
    except Exception as e:
        pytest.fail(f" raised an exception: {e}")

    assert grid.shape[0] == 4
    assert {"Intercept", "a", "effect_size", "censor_point"} <= set(grid.columns)
    assert grid[["Intercept", "a"]].stack().between(0, 1).all()


def test_grid_builds_simulators_in_calling_thread(design, monkeypatch):
    """Loggers are configured before the scenario threads start"""
    threads = []
    get_logger = power_sim.get_logger

    def recording_get_logger(name):
        threads.append(threading.current_thread())
        return get_logger(name)

    monkeypatch.setattr(power_sim, "get_logger", recording_get_logger)
    p = SurvivalPowerSim(alpha=0.05, nsim=5, distribution="gaussian", seed=2)
    grid = p.grid_sim_power(design, "~ a", effect_sizes=[1, 2], censor_points=[None, 2.0], threads=4)

    assert grid.shape[0] == 4
    assert len(threads) == 3
    assert all(t is threading.main_thread() for t in threads)
