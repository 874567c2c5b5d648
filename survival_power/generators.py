"""
Random generation of censored survival responses.
"""

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd

from .utils import get_logger, log_and_raise_error

logger = get_logger("Response Generator")

CENSOR_TYPES = ("left", "right")


class Distribution(str, Enum):
    GAUSSIAN = "gaussian"
    EXPONENTIAL = "exponential"
    LOGNORMAL = "lognormal"
    CUSTOM = "custom"


@dataclass(frozen=True)
class SurvivalResponse:
    """
    Observed times and event indicators for one simulated dataset.

    ``event`` is False for censored runs, whose time is the censor point.
    """

    time: np.ndarray
    event: np.ndarray
    censor_type: str = "right"

    def __post_init__(self):
        time = np.asarray(self.time, dtype=float).ravel()
        event = np.asarray(self.event, dtype=bool).ravel()
        if time.shape != event.shape:
            log_and_raise_error(logger, "Survival times and event indicators must have the same length!")
        if self.censor_type not in CENSOR_TYPES:
            log_and_raise_error(logger, f"censor_type should be one of {CENSOR_TYPES}!")
        object.__setattr__(self, "time", time)
        object.__setattr__(self, "event", event)

    def __len__(self) -> int:
        return self.time.size

    @property
    def censored(self) -> np.ndarray:
        return ~self.event

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"time": self.time, "event": self.event})


@dataclass(frozen=True)
class CensoringRule:
    """
    Censoring direction and threshold.

    'right' censors values above the threshold, 'left' values below it,
    'none' never censors.
    """

    direction: str = "none"
    threshold: float | None = None

    @classmethod
    def from_censor_point(cls, censor_point: float | None, censor_type: str = "right") -> "CensoringRule":
        if censor_type not in CENSOR_TYPES:
            log_and_raise_error(logger, f"censor_type should be one of {CENSOR_TYPES}, got '{censor_type}'!")
        if censor_point is None or np.isnan(censor_point):
            return cls()
        return cls(direction=censor_type, threshold=float(censor_point))

    @property
    def censor_type(self) -> str:
        # uncensored data is labelled as right censored, like survival::Surv
        return "right" if self.direction == "none" else self.direction

    def is_censored(self, values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        if self.direction == "left":
            return values < self.threshold
        if self.direction == "right":
            return values > self.threshold
        return np.zeros(values.shape, dtype=bool)

    def apply(self, values: np.ndarray) -> SurvivalResponse:
        values = np.asarray(values, dtype=float).ravel()
        censored = self.is_censored(values)
        time = np.where(censored, self.threshold if self.threshold is not None else np.nan, values)
        return SurvivalResponse(time=time, event=~censored, censor_type=self.censor_type)


def generate_gaussian(
    model_matrix: np.ndarray, coefficients: np.ndarray, censoring: CensoringRule, rng: np.random.Generator
) -> SurvivalResponse:
    return censoring.apply(rng.normal(loc=model_matrix @ coefficients, scale=1.0))


def generate_exponential(
    model_matrix: np.ndarray, coefficients: np.ndarray, censoring: CensoringRule, rng: np.random.Generator
) -> SurvivalResponse:
    # rate exp(-eta) is a mean of exp(eta)
    return censoring.apply(rng.exponential(scale=np.exp(model_matrix @ coefficients)))


def generate_lognormal(
    model_matrix: np.ndarray, coefficients: np.ndarray, censoring: CensoringRule, rng: np.random.Generator
) -> SurvivalResponse:
    return censoring.apply(rng.lognormal(mean=model_matrix @ coefficients, sigma=1.0))


GENERATORS = {
    Distribution.GAUSSIAN: generate_gaussian,
    Distribution.EXPONENTIAL: generate_exponential,
    Distribution.LOGNORMAL: generate_lognormal,
}


def as_survival_response(result, censor_type: str = "right") -> SurvivalResponse:
    """Accept a SurvivalResponse, a (time, event) pair or a frame with time/event columns."""
    if isinstance(result, SurvivalResponse):
        return result
    if isinstance(result, pd.DataFrame) and {"time", "event"} <= set(result.columns):
        return SurvivalResponse(result["time"].to_numpy(), result["event"].to_numpy(), censor_type)
    if isinstance(result, tuple) and len(result) == 2:
        return SurvivalResponse(result[0], result[1], censor_type)
    log_and_raise_error(
        logger, "Custom response generators must return a SurvivalResponse or a (time, event) pair!", TypeError
    )


@dataclass(frozen=True)
class ResponseGenerator:
    """
    Draws one censored response per design run.

    Built-in distributions use ``censoring``. A custom ``function(X, b)`` handles
    censoring itself; it receives ``rng=`` when its signature accepts it.
    """

    distribution: Distribution
    censoring: CensoringRule
    function: Callable | None = None

    @classmethod
    def create(
        cls, distribution: str, censoring: CensoringRule, function: Callable | None = None
    ) -> "ResponseGenerator":
        if function is not None:
            return cls(Distribution.CUSTOM, censoring, function)
        try:
            tag = Distribution(distribution)
        except ValueError:
            tag = Distribution.CUSTOM
        if tag not in GENERATORS:
            log_and_raise_error(
                logger,
                f"No built-in generator for distribution '{distribution}'; "
                f"use one of {[d.value for d in GENERATORS]} or supply rfunction_surv.",
            )
        return cls(tag, censoring)

    @property
    def accepts_rng(self) -> bool:
        if self.function is None:
            return True
        try:
            return "rng" in inspect.signature(self.function).parameters
        except (TypeError, ValueError):
            return False

    def __call__(
        self, model_matrix: np.ndarray, coefficients: np.ndarray, rng: np.random.Generator
    ) -> SurvivalResponse:
        if self.distribution is Distribution.CUSTOM:
            if self.accepts_rng:
                result = self.function(model_matrix, coefficients, rng=rng)
            else:
                result = self.function(model_matrix, coefficients)
            return as_survival_response(result, self.censoring.censor_type)
        return GENERATORS[self.distribution](model_matrix, coefficients, self.censoring, rng)
