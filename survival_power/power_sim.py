"""
SurvivalPowerSim class for Monte Carlo power analysis of censored responses.
"""

import os
import warnings
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from multiprocess.pool import ThreadPool

from .coefficients import DEFAULT_EFFECT_SIZE, resolve_anticoef
from .design import build_model_matrix, check_deprecated_arguments
from .fitting import fit_survival_model, get_error_distribution
from .generators import CensoringRule, ResponseGenerator
from .results import aggregate_power
from .utils import FitFailure, ResourceTeardownFailure, expand_grid, get_logger, log_and_raise_error

CORES_ENV = "SURVIVAL_POWER_CORES"
PROGRESS_UPDATES = 50


@dataclass(frozen=True)
class ReplicateRecord:
    """Significance indicators, estimates and p-values of one replicate."""

    significant: np.ndarray
    coefficients: np.ndarray
    pvalues: np.ndarray


def simulate_replicate(
    seed: np.random.SeedSequence,
    model_matrix: np.ndarray,
    anticoef: np.ndarray,
    generator: ResponseGenerator,
    distribution: str,
    alpha: float,
    fitter_options: dict,
) -> ReplicateRecord:
    """
    Generate one censored response, fit it and test every parameter.
    """
    rng = np.random.default_rng(seed)
    response = generator(model_matrix, anticoef, rng)
    fit = fit_survival_model(response, model_matrix, distribution, **fitter_options)
    return ReplicateRecord(significant=fit.pvalues < alpha, coefficients=fit.coefficients, pvalues=fit.pvalues)


def default_cores() -> int:
    """Pool size from SURVIVAL_POWER_CORES, otherwise the number of CPUs."""
    value = os.environ.get(CORES_ENV)
    if value:
        try:
            return int(value)
        except ValueError:
            log_and_raise_error(
                get_logger("Survival Power Simulator"), f"{CORES_ENV} must be an integer, got '{value}'"
            )
    return os.cpu_count() or 1


class SurvivalPowerSim:
    """
    SurvivalPowerSim class for simulation of power analysis with censored responses.
    """

    def __init__(
        self,
        alpha: float = 0.05,
        nsim: int = 1000,
        distribution: str = "gaussian",
        censor_point: float | None = None,
        censor_type: str = "right",
        rfunction_surv: Callable | None = None,
        parallel: bool = False,
        cores: int | None = None,
        detailed_output: bool = False,
        progress_callback: Callable[[float], None] | None = None,
        seed: int | None = None,
        **fitter_options,
    ) -> None:
        """
        SurvivalPowerSim class for simulation of power analysis with censored responses.

        Parameters
        ----------
        alpha : float
            Type-I error rate; a parameter is significant when its p-value is below alpha.
        nsim : int
            Number of replicates to simulate power
        distribution : str
            Distribution used to fit the data: 'gaussian', 'exponential' or 'lognormal' have
            built-in generators; 'weibull', 'logistic' and 'loglogistic' need rfunction_surv.
        censor_point : float
            Values past this point (above for right, below for left censoring) are censored.
            None means no censoring. Ignored by custom generators.
        censor_type : str
            'right' or 'left'
        rfunction_surv : callable
            Custom generator f(X, b) returning a SurvivalResponse or a (time, event) pair.
            It receives ``rng`` as a keyword when it accepts one.
        parallel : bool
            Distribute the replicates over a thread pool.
        cores : int
            Pool size for parallel runs, by default SURVIVAL_POWER_CORES or the number of CPUs.
        detailed_output : bool
            Repeat the anticipated coefficients, alpha, distribution, trials and nsim on every row.
        progress_callback : callable
            Called with the fraction of work done since the last call (serial runs only).
        seed : int
            Seed for the per-replicate random streams.
        **fitter_options
            Passed to the survival fit, e.g. ``scale=0.4`` or ``method="newton"``.
        """

        self.logger = get_logger("Survival Power Simulator")
        check_deprecated_arguments(fitter_options)
        self.alpha = alpha
        self.nsim = nsim
        self.distribution = distribution
        self.censor_point = censor_point
        self.censor_type = censor_type
        self.rfunction_surv = rfunction_surv
        self.parallel = parallel
        self.cores = default_cores() if cores is None and parallel else cores
        self.detailed_output = detailed_output
        self.progress_callback = progress_callback
        self.seed = seed
        self.fitter_options = fitter_options
        self.__check_input()
        self.censoring = CensoringRule.from_censor_point(censor_point, censor_type)
        self.generator = ResponseGenerator.create(distribution, self.censoring, rfunction_surv)

    def __check_input(self) -> None:
        if not 0 < self.alpha < 1:
            log_and_raise_error(self.logger, "alpha should be between 0 and 1!")
        if isinstance(self.nsim, bool) or not isinstance(self.nsim, int | np.integer) or self.nsim < 1:
            log_and_raise_error(self.logger, "nsim should be a positive integer!")
        if self.cores is not None and (not isinstance(self.cores, int | np.integer) or self.cores < 1):
            log_and_raise_error(self.logger, "cores should be a positive integer!")
        scale = self.fitter_options.get("scale")
        if scale is not None and scale <= 0:
            log_and_raise_error(self.logger, "scale should be positive!")
        get_error_distribution(self.distribution)

    def get_power(
        self,
        design: pd.DataFrame,
        model: str,
        anticoef: list[float] | None = None,
        effect_size: float | list[float] | None = None,
        contrasts="Sum",
    ) -> pd.DataFrame:
        """
        Estimate power using simulation.

        Parameters
        ----------
        design : pd.DataFrame
            Experimental design. Numeric columns are rescaled to [-1, 1].
        model : str
            Model formula, e.g. ``"~ a + b"``.
        anticoef : list
            Anticipated coefficients in model-matrix order. Overrides effect_size.
        effect_size : float or list
            One value (change in the linear predictor) or a (low, high) pair (change in
            the mean response) used to generate the anticipated coefficients. Default 2.
        contrasts : str or patsy contrast
            Coding for categorical columns without a preset contrast, by default 'Sum'.

        Returns
        -------
        pd.DataFrame
            One row per parameter with its power. ``attrs`` holds the replicate
            estimates, p-values, anticipated coefficients and model matrix.
        """

        frame = build_model_matrix(design, model, contrasts)
        anticoef = resolve_anticoef(
            anticoef,
            effect_size,
            frame.baseline,
            self.distribution,
            frame.has_intercept,
            frame.nparams,
            self.logger,
        )

        mode = f"parallel on {self.cores} threads" if self.parallel else "serial"
        self.logger.info(
            f"Simulating {self.nsim} replicates of {frame.trials} runs ({self.distribution}, "
            f"censoring: {self.censoring.direction}, {mode})"
        )

        task = partial(
            simulate_replicate,
            model_matrix=frame.model_matrix,
            anticoef=anticoef,
            generator=self.generator,
            distribution=self.distribution,
            alpha=self.alpha,
            fitter_options=self.fitter_options,
        )
        seeds = np.random.SeedSequence(self.seed).spawn(self.nsim)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            if self.parallel:
                power, estimates, pvalues = self.__run_parallel(task, seeds)
            else:
                power, estimates, pvalues = self.__run_serial(task, seeds, frame.nparams)

        details = None
        if self.detailed_output:
            details = {
                "alpha": self.alpha,
                "distribution": self.distribution,
                "trials": frame.trials,
                "nsim": self.nsim,
            }
        results = aggregate_power(
            frame.parameter_names, power, estimates, pvalues, anticoef, frame.model_matrix, details
        )
        self.logger.info(f"Achieved power: {dict(zip(frame.parameter_names, np.round(power, 3), strict=True))}")
        return results

    def __progress_points(self, nsim: int) -> set[int]:
        return set(np.floor(np.linspace(1, nsim, PROGRESS_UPDATES)).astype(int))

    def __run_serial(
        self, task: Callable, seeds: list[np.random.SeedSequence], nparams: int
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        nsim = len(seeds)
        significant = np.zeros(nparams)
        estimates = np.zeros((nsim, nparams))
        pvalues = np.zeros((nsim, nparams))
        updates = self.__progress_points(nsim)

        for j, seed in enumerate(seeds):
            if self.progress_callback is not None:
                if nsim > PROGRESS_UPDATES:
                    if j + 1 in updates:
                        self.progress_callback(1 / PROGRESS_UPDATES)
                else:
                    self.progress_callback(1 / nsim)

            try:
                record = task(seed)
            except FitFailure:
                self.logger.error(f"Simulation aborted at replicate {j + 1} of {nsim}")
                raise

            significant += record.significant
            estimates[j, :] = record.coefficients
            pvalues[j, :] = record.pvalues

        return significant / nsim, estimates, pvalues

    def __run_parallel(
        self, task: Callable, seeds: list[np.random.SeedSequence]
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        pool = ThreadPool(processes=self.cores)
        failure = None
        try:
            records = pool.map(task, seeds)
        except Exception as e:
            failure = e
            raise
        finally:
            self.__release_pool(pool, failure)

        significant = np.vstack([r.significant for r in records]).sum(axis=0)
        estimates = np.vstack([r.coefficients for r in records])
        pvalues = np.vstack([r.pvalues for r in records])
        return significant / len(seeds), estimates, pvalues

    def __release_pool(self, pool: ThreadPool, failure: Exception | None) -> None:
        try:
            if failure is None:
                pool.close()
            else:
                pool.terminate()
            pool.join()
        except Exception as e:
            if failure is not None:
                # the original failure keeps propagating
                self.logger.error(f"Failed to release worker pool after '{failure}': {e}")
                return
            log_and_raise_error(self.logger, f"Failed to release worker pool: {e}", ResourceTeardownFailure)

    def __scenario_sim(self, censor_point: float | None) -> "SurvivalPowerSim":
        return SurvivalPowerSim(
            alpha=self.alpha,
            nsim=self.nsim,
            distribution=self.distribution,
            censor_point=censor_point,
            censor_type=self.censor_type,
            rfunction_surv=self.rfunction_surv,
            seed=self.seed,
            **self.fitter_options,
        )

    @staticmethod
    def __scenario_power(
        design: pd.DataFrame, model: str, sim: "SurvivalPowerSim", effect_size: float | list[float]
    ) -> pd.Series:
        power = sim.get_power(design, model, effect_size=effect_size)
        return power.set_index("parameter")["power"]

    def grid_sim_power(
        self,
        design: pd.DataFrame,
        model: str,
        effect_sizes: list[float | list[float]] = None,
        censor_points: list[float | None] = None,
        threads: int = 3,
        plot: bool = False,
    ) -> pd.DataFrame:
        """
        Return Pandas DataFrame with scenario combinations and statistical power

        Parameters
        ----------
        design : pd.DataFrame
            Experimental design.
        model : str
            Model formula.
        effect_sizes : list
            Effect sizes to evaluate (single values or (low, high) pairs).
        censor_points : list
            Censor points to evaluate; None means no censoring.
        threads : int
            Number of threads for parallelization.
        plot : bool
            Whether to plot the results.
        """

        if effect_sizes is None:
            effect_sizes = [DEFAULT_EFFECT_SIZE]
        if censor_points is None:
            censor_points = [self.censor_point]
        grid = expand_grid({"effect_size": effect_sizes, "censor_point": censor_points})
        # built in the calling thread: get_logger resets handlers on a shared logger
        sims = [self.__scenario_sim(c) for c in censor_points]
        parameters = [(sim, e) for e in effect_sizes for sim in sims]

        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            pool = ThreadPool(processes=threads)
            try:
                results = pool.starmap(partial(self.__scenario_power, design, model), parameters)
            finally:
                pool.close()
                pool.join()

        grid["nsim"] = self.nsim
        grid["alpha"] = self.alpha
        grid["distribution"] = self.distribution
        grid["censor_type"] = self.censor_type
        grid = pd.concat([grid, pd.DataFrame(results).reset_index(drop=True)], axis=1)
        grid.effect_size = grid.effect_size.map(str)
        if plot:
            self.plot_power(grid)
        return grid

    def plot_power(self, data: pd.DataFrame) -> None:
        """
        Plot statistical power by scenario
        """

        cols = ["effect_size", "censor_point", "nsim", "alpha", "distribution", "censor_type"]
        value_vars = [c for c in data.columns if c not in cols]
        temp = pd.melt(data, id_vars=cols, var_name="parameter", value_name="power", value_vars=value_vars)
        temp["censor_point"] = temp["censor_point"].map(str)

        for i in temp.censor_point.unique():
            plot = sns.lineplot(
                x="effect_size",
                y="power",
                hue="parameter",
                errorbar=None,
                data=temp[temp["censor_point"] == i],
                legend="full",
            )
            plt.hlines(y=0.8, linestyles="dashed", xmin=0, xmax=len(temp.effect_size.unique()) - 1, colors="gray")
            plt.title(
                f"Simulated power for {self.distribution} responses, censor point {i} ({self.censor_type})\n"
                f" (sims per scenario:{self.nsim})"
            )
            plt.legend(bbox_to_anchor=(1.05, 1), title="parameter", loc="upper left")
            plt.xlabel("\n effect size")
            plt.ylabel("power\n")
            plt.setp(plot.get_xticklabels(), rotation=45)
            plt.show()


def evaluate_survival_power(
    design: pd.DataFrame,
    model: str,
    alpha: float,
    nsim: int = 1000,
    distribution: str = "gaussian",
    censor_point: float | None = None,
    censor_type: str = "right",
    rfunction_surv: Callable | None = None,
    anticoef: list[float] | None = None,
    effect_size: float | list[float] | None = None,
    contrasts="Sum",
    parallel: bool = False,
    detailed_output: bool = False,
    progress_callback: Callable[[float], None] | None = None,
    cores: int | None = None,
    seed: int | None = None,
    **fitter_options,
) -> pd.DataFrame:
    """
    Evaluate the power of a design with a censored response by Monte Carlo simulation.

    See SurvivalPowerSim and SurvivalPowerSim.get_power for the arguments.

    Examples
    --------
    >>> design = pd.DataFrame({"a": [-1, 1] * 7 + [1]})
    >>> evaluate_survival_power(design, "~ a", alpha=0.05, nsim=100, distribution="exponential",
    ...                         censor_point=5, censor_type="right")
    """
    sim = SurvivalPowerSim(
        alpha=alpha,
        nsim=nsim,
        distribution=distribution,
        censor_point=censor_point,
        censor_type=censor_type,
        rfunction_surv=rfunction_surv,
        parallel=parallel,
        cores=cores,
        detailed_output=detailed_output,
        progress_callback=progress_callback,
        seed=seed,
        **fitter_options,
    )
    return sim.get_power(design, model, anticoef=anticoef, effect_size=effect_size, contrasts=contrasts)
