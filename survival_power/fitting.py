"""
Parametric survival regression for censored responses.

The likelihood follows the accelerated failure time model fitted by
``survival::survreg``: ``g(T) = X b + scale * W`` where ``g`` is the identity or
the log, and ``W`` has a standard normal, logistic or minimum extreme value
distribution.
"""

from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
import pandas as pd
import patsy
from scipy import stats
from statsmodels.base.model import GenericLikelihoodModel
from statsmodels.tools.numdiff import approx_fprime

from .design import model_rhs
from .generators import SurvivalResponse
from .utils import FitFailure, get_logger, log_and_raise_error

logger = get_logger("Survival Fit")

GRADIENT_TOLERANCE = 1e-3


@dataclass(frozen=True)
class ErrorDistribution:
    name: str
    dist: stats.rv_continuous
    log_time: bool
    dlogpdf: Callable[[np.ndarray], np.ndarray]
    fixed_scale: float | None = None


ERROR_DISTRIBUTIONS = {
    "gaussian": ErrorDistribution("gaussian", stats.norm, False, lambda z: -z),
    "logistic": ErrorDistribution("logistic", stats.logistic, False, lambda z: -np.tanh(z / 2)),
    "lognormal": ErrorDistribution("lognormal", stats.norm, True, lambda z: -z),
    "loglogistic": ErrorDistribution("loglogistic", stats.logistic, True, lambda z: -np.tanh(z / 2)),
    "weibull": ErrorDistribution("weibull", stats.gumbel_l, True, lambda z: 1 - np.exp(z)),
    "exponential": ErrorDistribution("exponential", stats.gumbel_l, True, lambda z: 1 - np.exp(z), 1.0),
}


def get_error_distribution(distribution: str) -> ErrorDistribution:
    if distribution not in ERROR_DISTRIBUTIONS:
        log_and_raise_error(
            logger, f"Unknown distribution '{distribution}'. Use one of {list(ERROR_DISTRIBUTIONS)}."
        )
    return ERROR_DISTRIBUTIONS[distribution]


@dataclass(frozen=True)
class FitRecord:
    """Coefficients and p-values of one fit, in model-matrix column order."""

    coefficients: np.ndarray
    pvalues: np.ndarray


class CensoredRegression(GenericLikelihoodModel):
    """
    Maximum likelihood regression for left- or right-censored responses.

    Parameters
    ----------
    endog : array_like
        Observed times (censor point for censored rows).
    exog : array_like
        Model matrix.
    event : array_like, optional
        True for observed events, False for censored rows. Default all events.
    censor_type : str
        'right' or 'left', how the censored rows are interpreted.
    distribution : str
        One of ERROR_DISTRIBUTIONS.
    scale : float, optional
        Fix the scale instead of estimating it. Exponential models always use 1.
    """

    def __init__(self, endog, exog, event=None, censor_type="right", distribution="gaussian", scale=None, **kwds):
        self.error = get_error_distribution(distribution)
        self.fixed_scale = self.error.fixed_scale if scale is None else float(scale)
        extra_params_names = None if self.fixed_scale is not None else ["Log(scale)"]
        super().__init__(endog, exog, extra_params_names=extra_params_names, **kwds)

        self.event = np.ones(self.endog.shape, dtype=bool) if event is None else np.asarray(event, dtype=bool)
        self.censor_type = censor_type
        with np.errstate(divide="ignore", invalid="ignore"):
            self.time = np.log(self.endog) if self.error.log_time else np.asarray(self.endog, dtype=float)

    @property
    def k_beta(self) -> int:
        return self.exog.shape[1]

    def _split(self, params):
        params = np.asarray(params, dtype=float)
        beta = params[: self.k_beta]
        sigma = self.fixed_scale if self.fixed_scale is not None else np.exp(params[self.k_beta])
        return beta, sigma

    def loglikeobs(self, params):
        beta, sigma = self._split(params)
        dist = self.error.dist
        z = (self.time - self.exog @ beta) / sigma
        ev = self.event

        ll = np.empty_like(z)
        ll[ev] = dist.logpdf(z[ev]) - np.log(sigma)
        if self.error.log_time:
            ll[ev] -= self.time[ev]
        if self.censor_type == "left":
            ll[~ev] = dist.logcdf(z[~ev])
        else:
            ll[~ev] = dist.logsf(z[~ev])
        return ll

    def score(self, params):
        beta, sigma = self._split(params)
        dist = self.error.dist
        z = (self.time - self.exog @ beta) / sigma
        ev = self.event
        cens = ~ev

        # derivative of each observation's log-likelihood with respect to z
        dz = np.empty_like(z)
        dz[ev] = self.error.dlogpdf(z[ev])
        if self.censor_type == "left":
            dz[cens] = np.exp(dist.logpdf(z[cens]) - dist.logcdf(z[cens]))
        else:
            dz[cens] = -np.exp(dist.logpdf(z[cens]) - dist.logsf(z[cens]))

        grad = -(self.exog * dz[:, None]).sum(0) / sigma
        if self.fixed_scale is None:
            grad = np.append(grad, -(dz * z).sum() - ev.sum())
        return grad

    def hessian(self, params):
        hess = np.atleast_2d(approx_fprime(np.asarray(params, dtype=float), self.score, centered=True))
        return (hess + hess.T) / 2

    def initial_params(self) -> np.ndarray:
        """Least squares start for the coefficients and the log scale."""
        beta, *_ = np.linalg.lstsq(self.exog, self.time, rcond=None)
        if self.fixed_scale is not None:
            return beta
        resid_sd = np.std(self.time - self.exog @ beta)
        return np.append(beta, np.log(resid_sd) if resid_sd > 0 else 0.0)


def fit_survival_model(
    response: SurvivalResponse,
    model_matrix: np.ndarray,
    distribution: str = "gaussian",
    **options,
) -> FitRecord:
    """
    Fit the survival regression to one simulated response.

    Parameters
    ----------
    response : SurvivalResponse
        Simulated times and event indicators.
    model_matrix : np.ndarray
        Model matrix, one row per run.
    distribution : str
        Error distribution of the fit.
    **options
        ``scale`` fixes the scale, ``method`` and ``maxiter`` control the optimizer,
        anything else is passed to ``GenericLikelihoodModel.fit``.

    Returns
    -------
    FitRecord
        Estimates and Wald p-values for the model-matrix columns only.
    """
    options = dict(options)
    scale = options.pop("scale", None)
    method = options.pop("method", "bfgs")
    maxiter = options.pop("maxiter", 1000)

    model = CensoredRegression(
        response.time,
        np.asarray(model_matrix, dtype=float),
        event=response.event,
        censor_type=response.censor_type,
        distribution=distribution,
        scale=scale,
    )
    if not np.all(np.isfinite(model.time)):
        log_and_raise_error(
            logger,
            f"Simulated times are not valid for the {distribution} distribution (non-positive or missing).",
            FitFailure,
        )

    try:
        results = model.fit(start_params=model.initial_params(), method=method, maxiter=maxiter, disp=0, **options)
    except (np.linalg.LinAlgError, FloatingPointError, ValueError) as e:
        logger.error(f"Survival regression failed: {e}")
        raise FitFailure(f"Survival regression failed: {e}") from e

    params = np.asarray(results.params, dtype=float)
    converged = results.mle_retvals.get("converged", True) if results.mle_retvals else True
    if not converged and np.max(np.abs(model.score(params))) / len(response) > GRADIENT_TOLERANCE:
        log_and_raise_error(logger, f"Survival regression did not converge (method={method}).", FitFailure)

    k = model.k_beta
    coefficients = params[:k]
    pvalues = np.asarray(results.pvalues, dtype=float)[:k]
    if not (np.all(np.isfinite(coefficients)) and np.all(np.isfinite(pvalues))):
        log_and_raise_error(
            logger, "Survival regression returned non-finite estimates (singular information matrix).", FitFailure
        )
    return FitRecord(coefficients=coefficients, pvalues=pvalues)


def fit_survreg(
    formula: str,
    data: pd.DataFrame,
    time: str,
    event: str | None = None,
    distribution: str = "gaussian",
    censor_type: str = "right",
    **options,
):
    """
    Fit a censored regression from a formula and a data frame.

    Parameters
    ----------
    formula : str
        Right-hand side of the model, e.g. ``"~ a + b"``.
    data : pd.DataFrame
        Data with the covariates, the time column and optionally the event column.
    time : str
        Column with observed times.
    event : str, optional
        Column with event indicators. All rows are events when omitted.
    distribution : str
        Error distribution.
    censor_type : str
        'right' or 'left'.

    Returns
    -------
    statsmodels GenericLikelihoodModelResults
        ``params`` and ``pvalues`` are arrays ordered like ``results.model.exog_names``.
    """
    exog = patsy.dmatrix("~ " + model_rhs(formula), data, return_type="dataframe")
    options = dict(options)
    scale = options.pop("scale", None)
    model = CensoredRegression(
        data[time].astype(float),
        exog,
        event=None if event is None else data[event].to_numpy(dtype=bool),
        censor_type=censor_type,
        distribution=distribution,
        scale=scale,
    )
    options.setdefault("method", "bfgs")
    options.setdefault("maxiter", 1000)
    return model.fit(start_params=model.initial_params(), disp=0, **options)
