"""
Power table assembled from the simulation replicates.
"""

import numpy as np
import pandas as pd

POWER_TYPE = "parameter.power.mc"


def aggregate_power(
    parameter_names: list[str],
    power: np.ndarray,
    estimates: np.ndarray,
    pvalues: np.ndarray,
    anticoef: np.ndarray,
    model_matrix: np.ndarray,
    details: dict | None = None,
) -> pd.DataFrame:
    """
    Build the power table.

    Parameters
    ----------
    parameter_names : list
        Model-matrix column names.
    power : np.ndarray
        Fraction of significant replicates per parameter.
    estimates : np.ndarray
        nsim x parameters matrix of fitted coefficients.
    pvalues : np.ndarray
        nsim x parameters matrix of p-values.
    anticoef : np.ndarray
        Anticipated coefficients used to simulate.
    model_matrix : np.ndarray
        Model matrix used to simulate and fit.
    details : dict, optional
        Extra columns (alpha, distribution, trials, nsim) repeated on every row,
        together with the anticipated coefficients.

    Returns
    -------
    pd.DataFrame
        Columns ``parameter``, ``type`` and ``power``. The estimates, p-values,
        anticipated coefficients and model matrix are stored in ``attrs``.
    """
    table = pd.DataFrame(
        {
            "parameter": list(parameter_names),
            "type": POWER_TYPE,
            "power": np.asarray(power, dtype=float),
        }
    )
    if details is not None:
        table["anticoef"] = np.asarray(anticoef, dtype=float)
        for key, value in details.items():
            table[key] = value

    table.attrs["estimates"] = pd.DataFrame(np.asarray(estimates, dtype=float), columns=list(parameter_names))
    table.attrs["pvals"] = pd.DataFrame(np.asarray(pvalues, dtype=float), columns=list(parameter_names))
    table.attrs["anticoef"] = np.asarray(anticoef, dtype=float)
    table.attrs["modelmatrix"] = pd.DataFrame(np.asarray(model_matrix), columns=list(parameter_names))
    return table
