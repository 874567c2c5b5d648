"""
Anticipated coefficients for the survival power simulations.
"""

import logging

import numpy as np

from .utils import InvalidCoefficientCount, get_logger, log_and_raise_error

DEFAULT_EFFECT_SIZE = 2
LOG_SCALE_DISTRIBUTIONS = ("exponential", "lognormal")

logger = get_logger("Coefficients")


def derive_anticoef(
    baseline: np.ndarray, effect_size: float | list[float], distribution: str, has_intercept: bool = True
) -> np.ndarray:
    """
    Turn an effect size into anticipated coefficients.

    Parameters
    ----------
    baseline : np.ndarray
        Unit coefficients, the first entry being the intercept slot.
    effect_size : float or list
        A single value is the change in the linear predictor from the low to the high
        level of a factor. A (low, high) pair is the change in the mean response.
    distribution : str
        'gaussian', 'exponential' or 'lognormal' for a (low, high) pair.
    has_intercept : bool
        When False the intercept slot is dropped.

    Returns
    -------
    np.ndarray
    """
    baseline = np.asarray(baseline, dtype=float)
    effect = np.atleast_1d(np.asarray(effect_size, dtype=float))

    if effect.size == 1:
        anticoef = baseline * effect[0] / 2
    elif effect.size == 2:
        low, high = effect
        if distribution == "gaussian":
            anticoef = baseline * (high - low) / 2
        elif distribution in LOG_SCALE_DISTRIBUTIONS:
            if low <= 0 or high <= 0:
                log_and_raise_error(logger, f"Effect sizes must be positive for the {distribution} distribution!")
            anticoef = baseline * (np.log(high) - np.log(low)) / 2
            anticoef[0] = (np.log(high) + np.log(low)) / 2
        else:
            log_and_raise_error(
                logger,
                f"A (low, high) effect size is not supported for the '{distribution}' distribution; "
                "supply anticoef instead.",
            )
    else:
        log_and_raise_error(logger, "effect_size should have length 1 or 2!")

    if not has_intercept:
        anticoef = anticoef[1:]
    return anticoef


def resolve_anticoef(
    anticoef: list[float] | None,
    effect_size: float | list[float] | None,
    baseline: np.ndarray,
    distribution: str,
    has_intercept: bool,
    nparams: int,
    log: logging.Logger = logger,
) -> np.ndarray:
    """
    Pick user coefficients or derive them from the effect size, then check their length.
    """
    if anticoef is not None:
        if effect_size is not None:
            log.warning("User defined anticipated coefficients (anticoef) detected; ignoring effect_size argument.")
        anticoef = np.asarray(anticoef, dtype=float).ravel()
    else:
        effect_size = DEFAULT_EFFECT_SIZE if effect_size is None else effect_size
        anticoef = derive_anticoef(baseline, effect_size, distribution, has_intercept)

    if anticoef.size != nparams:
        log_and_raise_error(
            log,
            f"Wrong number of anticipated coefficients: expected {nparams}, got {anticoef.size}.",
            InvalidCoefficientCount,
        )
    return anticoef
