from .fitting import CensoredRegression, fit_survreg
from .generators import CensoringRule, SurvivalResponse
from .power_sim import SurvivalPowerSim, evaluate_survival_power
from .utils import FitFailure, InvalidArgumentError, InvalidCoefficientCount, ResourceTeardownFailure

__all__ = [
    "CensoredRegression",
    "CensoringRule",
    "FitFailure",
    "InvalidArgumentError",
    "InvalidCoefficientCount",
    "ResourceTeardownFailure",
    "SurvivalPowerSim",
    "SurvivalResponse",
    "evaluate_survival_power",
    "fit_survreg",
]
