"""
Collection of helper methods shared by the simulation modules: logging,
error raising and scenario grids.
"""

import itertools
import logging

import pandas as pd


class InvalidArgumentError(ValueError):
    """Raised when an argument is invalid, renamed or deprecated."""


class InvalidCoefficientCount(InvalidArgumentError):
    """Raised when the anticipated coefficients do not match the model matrix."""


class FitFailure(RuntimeError):
    """Raised when the survival regression fails for a simulated dataset."""


class ResourceTeardownFailure(RuntimeError):
    """Raised when a worker pool cannot be released."""


def get_logger(name: str) -> logging.Logger:
    """ "
    Get a logger with the specified name.

    :param name: The name of the logger.
    :return: The logger.
    """

    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    for handler in logger.handlers[::-1]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    formatter = logging.Formatter(fmt="%(asctime)s %(message)s", datefmt="%d/%m/%Y %I:%M:%S %p")
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.propagate = False

    return logger


def log_and_raise_error(
    logger: logging.Logger, message: str, exception_type: type[Exception] = InvalidArgumentError
) -> None:
    """ "
    Logs an error message and raises an exception of the specified type.

    :param message: The error message to log and raise.
    :param exception_type: The type of exception to raise (default is InvalidArgumentError).
    """

    logger.error(message)
    raise exception_type(message)


def expand_grid(dictionary: dict[str, list]) -> pd.DataFrame:
    """
    Cartesian product of the dictionary values, one column per key.
    """
    return pd.DataFrame([row for row in itertools.product(*dictionary.values())], columns=list(dictionary.keys()))
