"""
CDI Data Loader.

Functions to read the ManyBabies CDI follow-up table and enforce its
column schema.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

import pandas as pd

from .exceptions import LoadError
from .registry import REQUIRED_COLUMNS, VARIABLE_REGISTRY, VariableKind


# Delimiters by file extension; anything else is sniffed by pandas
_SEPARATORS = {
    ".csv": ",",
    ".tsv": "\t",
}


# =============================================================================
# PUBLIC FUNCTIONS
# =============================================================================

def load_cdi_data(
    filepath: Union[str, Path],
    sep: Optional[str] = None,
    columns: Optional[List[str]] = None,
    verbose: bool = False,
) -> pd.DataFrame:
    """
    Load the CDI table and select the analysis columns.

    :param filepath: Path to a delimited text file with a header row.
    :param sep: Field delimiter (None = infer from extension).
    :param columns: Columns to select (None = REQUIRED_COLUMNS).
    :param verbose: If True, print loading progress.
    :returns: DataFrame with the selected columns, typed per the registry.
    :raises LoadError: If the file is missing, unreadable, or lacks a column.
    """
    path = Path(filepath)

    if not path.exists():
        raise LoadError(f"CDI data file not found: {path}")
    if path.is_dir():
        raise LoadError(f"Path is a directory, not a file: {path}")

    if sep is None:
        sep = _SEPARATORS.get(path.suffix.lower())

    read_kwargs = {"sep": sep} if sep is not None else {"sep": None, "engine": "python"}
    try:
        df = pd.read_csv(path, **read_kwargs)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
        raise LoadError(f"Could not parse {path}: {e}") from e
    except OSError as e:
        raise LoadError(f"Could not read {path}: {e}") from e

    df = load_cdi_frame(df, columns=columns)

    if verbose:
        print(f"[cdi_stats] Loaded {len(df)} rows x {df.shape[1]} columns from {path}")

    return df


def load_cdi_frame(
    df: pd.DataFrame,
    columns: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Apply the schema checks and type coercions to an in-memory table.

    Numeric columns are coerced with errors -> NaN. The age-range column
    becomes a pandas Categorical; other categorical columns are kept as
    free-form string labels (missing values preserved).

    :param df: Raw table.
    :param columns: Columns to select (None = REQUIRED_COLUMNS).
    :returns: Typed copy with only the selected columns.
    :raises LoadError: If a required column is missing.
    """
    columns = list(columns) if columns is not None else list(REQUIRED_COLUMNS)

    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise LoadError(
            f"Missing expected columns: {missing}. "
            f"Available columns: {list(df.columns)}"
        )

    out = df[columns].copy()

    for col in columns:
        info = VARIABLE_REGISTRY.get(col)
        if info is None:
            continue
        if info["kind"] == VariableKind.NUMERIC:
            out[col] = pd.to_numeric(out[col], errors="coerce")
        elif info["as_category"]:
            out[col] = _as_categorical(out[col])
        else:
            out[col] = _as_labels(out[col])

    return out


# =============================================================================
# PRIVATE FUNCTIONS
# =============================================================================

def _as_labels(series: pd.Series) -> pd.Series:
    """Convert to string labels, keeping missing values as NaN."""
    return series.map(_label).astype(object)


def _label(value):
    if pd.isna(value):
        return None
    # Whole floats come from integer columns read with missing values
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_categorical(series: pd.Series) -> pd.Series:
    """Convert to a Categorical with sorted levels."""
    labels = _as_labels(series)
    levels = sorted(labels.dropna().unique(), key=_level_sort_key)
    return pd.Categorical(labels, categories=levels)


def _level_sort_key(x: str):
    # Numeric labels (e.g. "18", "24") sort numerically, others alphabetically
    digits = ''.join(filter(str.isdigit, x))
    if digits and digits == x.strip():
        return (0, int(digits), x)
    return (1, 0, x)
