"""
Data Preparation Module
=======================

Transforms the loaded CDI table into an analysis-ready dataset:
- Zero clamp of the response (0 -> 1 on the raw percentile scale)
- Percentile-to-proportion rescale (/100 when any value exceeds 1)
- Complete-case filter on every variable the full model references
- z-standardization of IDS preference and age in months

The order matters: the zero clamp runs before the rescale, so a raw 0
ends up as 0.01, never 0. Standardization uses only the complete-case
rows so every model is fitted on the same scale.

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to maintain consistency with the rest of the package.

    AnalysisDataset is a TypedDict containing:
    - data: pandas DataFrame with one row per CDI assessment
    - response_var, predictor_var: modelled outcome and predictor of interest
    - group_vars: random-intercept grouping factors, outer to inner
    - model_vars: complete-case variables
    - standardized, scaling: z-column names and the (mean, sd) used
    - rescaled, n_dropped: record of what preparation did
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, TypedDict
import warnings

import numpy as np
import pandas as pd

from .exceptions import InputError
from .registry import (
    ModelSpec,
    PREDICTOR_VAR,
    RESPONSE_VAR,
    get_model_spec,
    get_standardized_variables,
    model_variables,
    standardized_name,
)


# =============================================================================
# Analysis Dataset TypedDict
# =============================================================================

class AnalysisDataset(TypedDict):
    """
    Container for analysis-ready data with metadata.

    Keys:
        data: One row per CDI assessment, complete on model variables
        response_var: Response column (proportion scale)
        predictor_var: Predictor of interest (raw column name)
        group_vars: Grouping factors for random intercepts, outer to inner
        model_vars: Variables used by the complete-case rule
        standardized: Map raw column -> z-scored column
        scaling: Map raw column -> (mean, sd) used for z-scoring
        rescaled: Whether the percentile -> proportion rescale was applied
        n_dropped: Rows removed by the complete-case filter
    """
    data: pd.DataFrame
    response_var: str
    predictor_var: str
    group_vars: List[str]
    model_vars: List[str]
    standardized: Dict[str, str]
    scaling: Dict[str, Tuple[float, float]]
    rescaled: bool
    n_dropped: int


def create_analysis_dataset(
    data: pd.DataFrame,
    response_var: str = RESPONSE_VAR,
    predictor_var: str = PREDICTOR_VAR,
    group_vars: Optional[List[str]] = None,
    model_vars: Optional[List[str]] = None,
    standardized: Optional[Dict[str, str]] = None,
    scaling: Optional[Dict[str, Tuple[float, float]]] = None,
    rescaled: bool = False,
    n_dropped: int = 0,
) -> AnalysisDataset:
    """
    Create an AnalysisDataset dictionary with validation.

    :param data: Prepared DataFrame
    :param response_var: Response column
    :param predictor_var: Predictor of interest
    :param group_vars: Grouping factors (default: labid, subid_unique)
    :param model_vars: Complete-case variables (default: response + groups)
    :param standardized: Map raw column -> z-scored column
    :param scaling: Map raw column -> (mean, sd)
    :param rescaled: Whether the /100 rescale was applied
    :param n_dropped: Rows removed by the complete-case filter
    :returns: Validated AnalysisDataset dictionary
    """
    group_vars = list(group_vars) if group_vars is not None else ["labid", "subid_unique"]
    if model_vars is None:
        model_vars = [response_var] + group_vars

    ds: AnalysisDataset = {
        "data": data,
        "response_var": response_var,
        "predictor_var": predictor_var,
        "group_vars": group_vars,
        "model_vars": list(model_vars),
        "standardized": dict(standardized or {}),
        "scaling": dict(scaling or {}),
        "rescaled": rescaled,
        "n_dropped": n_dropped,
    }

    return validate_dataset(ds)


def validate_dataset(ds: AnalysisDataset) -> AnalysisDataset:
    """
    Validate the dataset structure.

    :param ds: AnalysisDataset dictionary
    :returns: The same AnalysisDataset
    :raises InputError: If required columns are missing
    """
    data = ds["data"]
    needed = [ds["response_var"]] + ds["group_vars"] + ds["model_vars"]
    needed += list(ds["standardized"].values())
    missing = [c for c in dict.fromkeys(needed) if c not in data.columns]
    if missing:
        raise InputError(f"Columns not found in dataset: {missing}")
    return ds


def get_n_observations(ds: AnalysisDataset) -> int:
    """Get total number of rows in dataset."""
    return len(ds["data"])


def get_n_groups(ds: AnalysisDataset) -> Dict[str, int]:
    """Get number of levels per grouping factor."""
    return {g: int(ds["data"][g].nunique()) for g in ds["group_vars"]}


def subset_dataset(
    ds: AnalysisDataset,
    exclude: Optional[Dict[str, List[Any]]] = None,
) -> AnalysisDataset:
    """
    Create a subset of the dataset by dropping levels of grouping factors.

    Standardized columns keep the full-data scaling so estimates stay
    comparable with the full fit.

    :param ds: AnalysisDataset dictionary
    :param exclude: Map column -> levels to drop
    :returns: New AnalysisDataset with filtered data
    """
    df = ds["data"]
    mask = pd.Series(True, index=df.index)
    for col, levels in (exclude or {}).items():
        mask &= ~df[col].isin(levels)
    df = df[mask].copy()

    # Drop unused categories so design matrices stay full rank
    for col in df.columns:
        if isinstance(df[col].dtype, pd.CategoricalDtype):
            df[col] = df[col].cat.remove_unused_categories()

    return create_analysis_dataset(
        data=df,
        response_var=ds["response_var"],
        predictor_var=ds["predictor_var"],
        group_vars=ds["group_vars"],
        model_vars=ds["model_vars"],
        standardized=ds["standardized"],
        scaling=ds["scaling"],
        rescaled=ds["rescaled"],
        n_dropped=ds["n_dropped"],
    )


def describe_dataset(ds: AnalysisDataset) -> str:
    """
    Return a summary description of the dataset.

    :param ds: AnalysisDataset dictionary
    :returns: Human-readable summary string
    """
    y = ds["data"][ds["response_var"]]
    groups = ", ".join(f"{g}={n}" for g, n in get_n_groups(ds).items())
    lines = [
        f"AnalysisDataset: {ds['response_var']} ~ {ds['predictor_var']}",
        f"  Observations: {get_n_observations(ds)} ({ds['n_dropped']} dropped as incomplete)",
        f"  Groups: {groups}",
        f"  Response range: [{y.min():.4f}, {y.max():.4f}]",
        f"  Rescaled from percentiles: {ds['rescaled']}",
    ]
    for col, (mean, sd) in ds["scaling"].items():
        lines.append(f"  {ds['standardized'][col]}: mean={mean:.3f}, sd={sd:.3f}")
    return "\n".join(lines)


# =============================================================================
# Preparation steps
# =============================================================================

def clamp_zero_response(values: pd.Series) -> pd.Series:
    """Map responses of exactly 0 to 1, on the raw percentile scale."""
    values = values.copy()
    values[values == 0] = 1
    return values


def rescale_percentiles(values: pd.Series) -> Tuple[pd.Series, bool]:
    """
    Convert percentiles to proportions when any value exceeds 1.

    The whole column is assumed to be on one scale: if any value is
    above 1, every value is divided by 100.

    :param values: Response values
    :returns: Tuple of (values, whether the rescale was applied)
    """
    if (values > 1).any():
        return values / 100.0, True
    return values, False


def complete_cases(df: pd.DataFrame, variables: List[str]) -> pd.DataFrame:
    """Keep rows with no missing value in any of the given variables."""
    missing = [v for v in variables if v not in df.columns]
    if missing:
        raise InputError(f"Complete-case variables not found in data: {missing}")
    return df.dropna(subset=variables)


def standardize(values: pd.Series) -> Tuple[pd.Series, float, float]:
    """
    z-score a column: (x - mean) / sd with the sample standard deviation.

    :param values: Numeric values (no missing)
    :returns: Tuple of (z-scores, mean, sd)
    :raises InputError: If the standard deviation is zero or undefined
    """
    mean = float(values.mean())
    sd = float(values.std(ddof=1))
    if not np.isfinite(sd) or sd == 0:
        raise InputError(f"Cannot standardize '{values.name}': zero or undefined variance")
    return (values - mean) / sd, mean, sd


def squeeze_boundaries(values: pd.Series) -> pd.Series:
    """
    Smithson-Verkuilen transform into the open interval (0, 1).

    y' = (y * (n - 1) + 0.5) / n
    """
    n = len(values)
    return (values * (n - 1) + 0.5) / n


def prepare_dataset(
    df: pd.DataFrame,
    spec: Optional[ModelSpec] = None,
    squeeze: bool = False,
    verbose: bool = False,
) -> AnalysisDataset:
    """
    Prepare the loaded CDI table for model fitting.

    Steps, in order: zero clamp, percentile rescale, complete-case filter
    (variables of the full model), standardization of IDS preference and
    age in months over the complete cases.

    :param df: Table from load_cdi_data()
    :param spec: Model whose variables define complete cases (default: "full")
    :param squeeze: Apply the Smithson-Verkuilen transform after rescaling
    :param verbose: Print preparation progress
    :returns: AnalysisDataset dictionary

    Example:
        >>> df = load_cdi_data("data/cdi_followup.csv")
        >>> ds = prepare_dataset(df)
        >>> print(describe_dataset(ds))
    """
    if spec is None:
        spec = get_model_spec("full")

    response = spec["response"]
    if response not in df.columns:
        raise InputError(f"Response '{response}' not found in data")

    df = df.copy()

    # 1. Zero clamp, on the raw scale
    n_zero = int((df[response] == 0).sum())
    df[response] = clamp_zero_response(df[response])

    # 2. Percentile -> proportion
    df[response], rescaled = rescale_percentiles(df[response])

    # 3. Complete cases on the full model's variables
    variables = model_variables(spec, raw=True)
    n_before = len(df)
    df = complete_cases(df, variables)
    n_dropped = n_before - len(df)

    if len(df) == 0:
        raise InputError("No complete cases remain for the model variables")

    for col in df.columns:
        if isinstance(df[col].dtype, pd.CategoricalDtype):
            df[col] = df[col].cat.remove_unused_categories()

    # 4. z-score over the complete cases only
    standardized: Dict[str, str] = {}
    scaling: Dict[str, Tuple[float, float]] = {}
    for col in get_standardized_variables():
        if col not in df.columns:
            continue
        z_col = standardized_name(col)
        df[z_col], mean, sd = standardize(df[col])
        standardized[col] = z_col
        scaling[col] = (mean, sd)

    n_boundary = int((df[response] >= 1).sum())
    if squeeze:
        df[response] = squeeze_boundaries(df[response])
    elif n_boundary > 0:
        warnings.warn(
            f"{n_boundary} responses equal 1 after rescaling; the beta likelihood "
            f"requires (0, 1). Use squeeze=True to apply the Smithson-Verkuilen transform."
        )

    df = df.reset_index(drop=True)

    if verbose:
        print(f"[cdi_stats] Clamped {n_zero} zero responses; rescaled: {rescaled}")
        print(f"[cdi_stats] Dropped {n_dropped} incomplete rows; {len(df)} remain")

    return create_analysis_dataset(
        data=df,
        response_var=response,
        predictor_var=PREDICTOR_VAR,
        group_vars=spec["random_intercepts"],
        model_vars=variables,
        standardized=standardized,
        scaling=scaling,
        rescaled=rescaled,
        n_dropped=n_dropped,
    )
