"""
Preparation of the design table and model matrix used by the power simulations.
"""

import re
from dataclasses import dataclass

import numpy as np
import pandas as pd
import patsy

from .utils import get_logger, log_and_raise_error

logger = get_logger("Design")

DEPRECATED_ARGUMENTS = {"RunMatrix": "design", "run_matrix": "design"}
CONTRASTS = ("Sum", "Treatment", "Helmert", "Poly", "Diff")

_BLOCK_COLUMN = re.compile(r"^Block\d+$")
_DOT = re.compile(r"(?<![\w.])\.(?![\w.])")
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_CONTRAST_NAME = re.compile(r"C\((\w+), _contrast_\w+\)")


@dataclass(frozen=True)
class ModelFrame:
    """
    Model matrix and the run table it was built from.

    ``model_matrix`` is read-only and shared by every simulation replicate.
    ``baseline`` always starts with an intercept slot, even when the model has none.
    Columns follow the formula: terms by degree, then in written order.
    ``design_info`` keeps the column order patsy produced.
    """

    run_table: pd.DataFrame
    model_matrix: np.ndarray
    parameter_names: list[str]
    has_intercept: bool
    baseline: np.ndarray
    formula: str
    design_info: patsy.DesignInfo

    @property
    def nparams(self) -> int:
        return self.model_matrix.shape[1]

    @property
    def trials(self) -> int:
        return self.model_matrix.shape[0]


def check_deprecated_arguments(options: dict) -> None:
    """Reject legacy argument names instead of silently passing them to the fit."""
    for name, replacement in DEPRECATED_ARGUMENTS.items():
        if name in options:
            log_and_raise_error(logger, f"{name} argument deprecated. Use `{replacement}` instead.")


def remove_block_columns(design: pd.DataFrame) -> pd.DataFrame:
    """Drop generated blocking indicator columns (Block1, Block2, ...)."""
    blocks = [c for c in design.columns if _BLOCK_COLUMN.match(str(c))]
    return design.drop(columns=blocks)


def model_rhs(model: str) -> str:
    """Right-hand side of a formula; the response, if any, is discarded."""
    return model.split("~", 1)[1].strip() if "~" in model else model.strip()


def expand_dots(rhs: str, columns: list[str]) -> str:
    """Replace ``.`` with the sum of all design columns."""
    if not _DOT.search(rhs):
        return rhs
    return _DOT.sub("(" + " + ".join(columns) + ")", rhs)


def has_intercept(rhs: str) -> bool:
    return patsy.INTERCEPT in patsy.ModelDesc.from_formula("~ " + rhs).rhs_termlist


def formula_variables(rhs: str, columns: list[str]) -> list[str]:
    """Design columns referenced by the formula, in design order."""
    desc = patsy.ModelDesc.from_formula("~ " + rhs)
    names = set()
    for term in desc.rhs_termlist:
        for factor in term.factors:
            names.update(_IDENTIFIER.findall(factor.code))
    return [c for c in columns if c in names]


def reduce_run_matrix(design: pd.DataFrame, rhs: str) -> pd.DataFrame:
    return design.loc[:, formula_variables(rhs, list(design.columns))].copy()


def is_categorical(series: pd.Series) -> bool:
    return pd.api.types.is_bool_dtype(series) or not pd.api.types.is_numeric_dtype(series)


def normalize_numeric_columns(design: pd.DataFrame) -> pd.DataFrame:
    """Rescale numeric columns to [-1, 1]; constant columns are left untouched."""
    design = design.copy()
    for col in design.columns:
        if is_categorical(design[col]):
            continue
        low, high = design[col].min(), design[col].max()
        if high == low:
            continue
        design[col] = (design[col] - (high + low) / 2) / ((high - low) / 2)
    return design


def preset_contrasts(design: pd.DataFrame) -> dict:
    """Contrasts attached to the design via ``design.attrs["contrasts"]``."""
    return dict(design.attrs.get("contrasts", {}) or {})


def resolve_contrast(contrast):
    """Map a contrast name to the patsy coding class; objects pass through."""
    if isinstance(contrast, str):
        if contrast not in CONTRASTS:
            log_and_raise_error(logger, f"Unknown contrast '{contrast}'. Use one of {CONTRASTS}.")
        return getattr(patsy, contrast)
    return contrast


def ordered_term_slices(design_info: patsy.DesignInfo, rhs: str) -> list[tuple[patsy.Term, slice]]:
    """
    Terms of a design sorted by degree, then by position in the written formula.

    patsy groups terms by their numeric factors, so ``a + b`` with a categorical
    ``b`` comes out as Intercept, b, a. Sorting restores Intercept, a, b.
    """
    written = patsy.ModelDesc.from_formula("~ " + rhs).rhs_termlist
    position = {term: i for i, term in enumerate(written)}
    terms = list(design_info.term_slices.items())
    order = sorted(
        range(len(terms)),
        key=lambda i: (len(terms[i][0].factors), position.get(terms[i][0], len(written) + i)),
    )
    return [terms[i] for i in order]


def baseline_coefficients(design_info: patsy.DesignInfo, term_slices=None) -> np.ndarray:
    """
    Unit anticipated coefficients for every model-matrix column.

    The first entry is the intercept slot and is always present. Numeric terms
    get 1, categorical terms alternate 1, -1, 1, ... across their columns.
    """
    if term_slices is None:
        term_slices = list(design_info.term_slices.items())
    values = [1.0]
    for term, columns in term_slices:
        if not term.factors:
            continue
        width = columns.stop - columns.start
        categorical = any(design_info.factor_infos[f].type == "categorical" for f in term.factors)
        if categorical:
            values.extend(1.0 if i % 2 == 0 else -1.0 for i in range(width))
        else:
            values.extend([1.0] * width)
    return np.array(values)


def build_model_matrix(design: pd.DataFrame, model: str, contrasts="Sum") -> ModelFrame:
    """
    Build the model matrix for a design and a one-sided formula.

    Parameters
    ----------
    design : pd.DataFrame
        Experimental design, one row per run.
    model : str
        Formula such as ``"~ a + b"``; ``.`` expands to all columns.
    contrasts : str or patsy contrast
        Coding for categorical columns without a preset contrast, by default sum-to-zero.

    Returns
    -------
    ModelFrame
    """
    if not isinstance(design, pd.DataFrame) or design.empty:
        log_and_raise_error(logger, "Design must be a non-empty DataFrame!")

    presets = preset_contrasts(design)
    run_table = remove_block_columns(pd.DataFrame(design))
    rhs = expand_dots(model_rhs(model), [str(c) for c in run_table.columns])
    intercept = has_intercept(rhs)

    run_table = normalize_numeric_columns(reduce_run_matrix(run_table, rhs))

    namespace = {"np": np}
    for col in run_table.columns:
        if not is_categorical(run_table[col]):
            continue
        namespace[f"_contrast_{col}"] = resolve_contrast(presets.get(col, contrasts))
        rhs_pattern = re.compile(rf"(?<![\w.])(?<!C\(){re.escape(str(col))}(?![\w])")
        rhs = rhs_pattern.sub(f"C({col}, _contrast_{col})", rhs)

    try:
        matrix = patsy.dmatrix(
            "~ " + rhs, run_table, eval_env=patsy.EvalEnvironment([namespace]), NA_action="raise"
        )
    except patsy.PatsyError as e:
        log_and_raise_error(logger, f"Could not build model matrix for '{model}': {e}")

    design_info = matrix.design_info
    term_slices = ordered_term_slices(design_info, rhs)
    columns = [i for _, s in term_slices for i in range(s.start, s.stop)]
    model_matrix = np.array(matrix, dtype=float)[:, columns]
    model_matrix.setflags(write=False)
    names = [_CONTRAST_NAME.sub(r"\1", design_info.column_names[i]) for i in columns]

    return ModelFrame(
        run_table=run_table,
        model_matrix=model_matrix,
        parameter_names=names,
        has_intercept=intercept,
        baseline=baseline_coefficients(design_info, term_slices),
        formula=rhs,
        design_info=design_info,
    )
