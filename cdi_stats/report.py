"""
Reporting Module
================

Human-readable tables and console printouts for fitted models,
comparisons and diagnostics. Nothing is written to disk.
"""
from __future__ import annotations

from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .compare import ComparisonResult, compare_models, comparison_table, summarize_comparison
from .diagnostics import DiagnosticsResult, StabilityResult, summarize_diagnostics
from .glmm import GLMMResult, summarize_glmm_result


_BANNER_WIDTH = 70


# =============================================================================
# Tables
# =============================================================================

def _stars(p: float) -> str:
    if not np.isfinite(p):
        return ""
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    if p < 0.1:
        return "."
    return ""


def coefficient_table(result: GLMMResult, digits: int = 4) -> pd.DataFrame:
    """
    Rounded coefficient table with significance codes.

    :param result: Fitted GLMMResult
    :param digits: Decimal places
    :returns: DataFrame ready for printing
    """
    coefs = result["coefficients"]
    if coefs.empty:
        return coefs
    table = coefs.copy()
    table["sig"] = table["p_value"].apply(_stars)
    numeric = ["estimate", "std_error", "z_value", "ci_lower", "ci_upper"]
    table[numeric] = table[numeric].round(digits)
    table["p_value"] = table["p_value"].apply(lambda p: f"{p:.4g}")
    return table


def coefficient_table_multiple(
    results: Dict[str, GLMMResult],
    value: str = "estimate",
) -> pd.DataFrame:
    """
    Wide table of one coefficient column across models.

    :param results: Map model name -> GLMMResult
    :param value: Coefficient column to tabulate
    :returns: DataFrame with terms as rows and models as columns
    """
    columns = {}
    for name, r in results.items():
        if r["coefficients"].empty:
            continue
        columns[name] = r["coefficients"].set_index("term")[value]
    if not columns:
        return pd.DataFrame()
    return pd.DataFrame(columns)


# =============================================================================
# Printing
# =============================================================================

def print_section(title: str) -> None:
    """Print a banner line around a section title."""
    print("\n" + "=" * _BANNER_WIDTH)
    print(title)
    print("=" * _BANNER_WIDTH)


def print_model_report(result: GLMMResult) -> None:
    """Print the summary and coefficient table of one model."""
    print(summarize_glmm_result(result))
    if not result["converged"]:
        for w in result["warnings"]:
            print(f"  - {w}")
        return
    print("\nCoefficients:")
    print(coefficient_table(result).to_string(index=False))
    print("---\nSignif. codes: 0 '***' 0.001 '**' 0.01 '*' 0.05 '.' 0.1 ' ' 1")


def print_comparisons(
    results: Dict[str, GLMMResult],
    comparisons: List[ComparisonResult],
) -> None:
    """Print information criteria for all models and each LRT."""
    print(compare_models(list(results.values())).to_string(index=False))
    table = comparison_table(comparisons)
    if table is not None:
        print()
        print(table.to_string(index=False))
        print()
        for c in comparisons:
            print(summarize_comparison(c))


def print_vif_table(table: Optional[pd.DataFrame], threshold: float = 2.0) -> None:
    """Print the collinearity table with flagged terms marked."""
    if table is None or table.empty:
        print("No collinearity table available")
        return
    print(table.round(3).to_string(index=False))
    flagged = table.loc[table["flagged"], "term"].tolist()
    if flagged:
        print(f"\nVIF > {threshold}: {flagged} (consider for removal)")


def print_diagnostics(diagnostics: DiagnosticsResult) -> None:
    """Print per-model diagnostics with any warnings."""
    print(summarize_diagnostics(diagnostics))
    for factor, check in diagnostics["random_effects_normality"].items():
        p = check.get("shapiro_p", np.nan)
        print(f"    BLUPs {factor}: n={check.get('n')}, Shapiro-Wilk p={p:.4g}")
    if diagnostics["warnings"]:
        print("  Warnings:")
        for w in diagnostics["warnings"]:
            print(f"    - {w}")


def print_stability(stability: StabilityResult) -> None:
    """Print the per-term stability summary."""
    print(f"Stability: {stability['name']}")
    print(stability["summary"].round(4).to_string(index=False))
    if stability["failed"]:
        print(f"  {len(stability['failed'])} refits failed")
    if stability["flagged_terms"]:
        print(f"  Unstable terms: {stability['flagged_terms']}")
