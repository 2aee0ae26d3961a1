"""
Model Comparison Module
=======================

Likelihood-ratio tests between nested beta GLMMs and information-criterion
tables across any set of fitted models.

The likelihood-ratio test is only valid when one model's fixed-effect
terms are a strict subset of the other's and both were fitted to the same
rows with the same random-effects structure; anything else raises
InputError.

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to maintain consistency with the rest of the package.
"""
from __future__ import annotations

from typing import List, Optional, TypedDict

import numpy as np
import pandas as pd
from scipy import stats

from .exceptions import InputError
from .glmm import GLMMResult


# =============================================================================
# ComparisonResult TypedDict
# =============================================================================

class ComparisonResult(TypedDict):
    """
    Result of a likelihood-ratio test between two nested models.

    Keys:
        model_a: Name of the first model
        model_b: Name of the second model
        statistic: 2 * (llf_b - llf_a); sign follows argument order
        df_diff: df_b - df_a; sign follows argument order
        p_value: Chi-square p-value (independent of argument order)
        llf_a, llf_b: Log-likelihoods
        aic_a, aic_b: AIC values
        nested: Which model is nested ("a_in_b" or "b_in_a")
    """
    model_a: str
    model_b: str
    statistic: float
    df_diff: int
    p_value: float
    llf_a: float
    llf_b: float
    aic_a: float
    aic_b: float
    nested: str


def create_comparison_result(
    model_a: str,
    model_b: str,
    statistic: float = np.nan,
    df_diff: int = 0,
    p_value: float = np.nan,
    llf_a: float = np.nan,
    llf_b: float = np.nan,
    aic_a: float = np.nan,
    aic_b: float = np.nan,
    nested: str = "",
) -> ComparisonResult:
    """
    Create a ComparisonResult dictionary.

    :param model_a: Name of the first model
    :param model_b: Name of the second model
    :param statistic: Signed likelihood-ratio statistic
    :param df_diff: Signed difference in parameter count
    :param p_value: Chi-square p-value
    :param llf_a: Log-likelihood of model a
    :param llf_b: Log-likelihood of model b
    :param aic_a: AIC of model a
    :param aic_b: AIC of model b
    :param nested: Nesting direction
    :returns: ComparisonResult dictionary
    """
    return {
        "model_a": model_a,
        "model_b": model_b,
        "statistic": statistic,
        "df_diff": df_diff,
        "p_value": p_value,
        "llf_a": llf_a,
        "llf_b": llf_b,
        "aic_a": aic_a,
        "aic_b": aic_b,
        "nested": nested,
    }


def summarize_comparison(result: ComparisonResult) -> str:
    """
    Generate a summary string for a likelihood-ratio test.

    :param result: ComparisonResult dictionary
    :returns: Human-readable summary string
    """
    return "\n".join([
        f"LRT: {result['model_a']} vs {result['model_b']}",
        f"  logLik: {result['llf_a']:.3f} vs {result['llf_b']:.3f}",
        f"  AIC: {result['aic_a']:.2f} vs {result['aic_b']:.2f}",
        f"  Chisq = {result['statistic']:.4f}, Df = {result['df_diff']}, "
        f"Pr(>Chisq) = {result['p_value']:.4g}",
    ])


# =============================================================================
# Nesting checks
# =============================================================================

def check_nested(a: GLMMResult, b: GLMMResult) -> str:
    """
    Verify that two fitted models form a valid nested pair.

    :param a: First GLMMResult
    :param b: Second GLMMResult
    :returns: "a_in_b" or "b_in_a"
    :raises InputError: If either model is unfitted or the pair is not nested
    """
    for r in (a, b):
        if r["model"] is None or not r["converged"]:
            raise InputError(f"Model '{r['name']}' has no converged fit to compare")

    if a["n_obs"] != b["n_obs"]:
        raise InputError(
            f"Models fitted to different data: n={a['n_obs']} vs n={b['n_obs']}"
        )

    spec_a, spec_b = a["spec"], b["spec"]
    if spec_a is not None and spec_b is not None:
        if spec_a["response"] != spec_b["response"]:
            raise InputError("Models have different responses")
        if list(spec_a["random_intercepts"]) != list(spec_b["random_intercepts"]):
            raise InputError("Models have different random-effects structures")

    terms_a, terms_b = a["terms"], b["terms"]
    if terms_a < terms_b:
        return "a_in_b"
    if terms_b < terms_a:
        return "b_in_a"
    raise InputError(
        f"Models '{a['name']}' and '{b['name']}' are not strictly nested: "
        f"only in {a['name']}: {sorted(terms_a - terms_b)}, "
        f"only in {b['name']}: {sorted(terms_b - terms_a)}"
    )


# =============================================================================
# Likelihood-ratio test
# =============================================================================

def likelihood_ratio_test(a: GLMMResult, b: GLMMResult) -> ComparisonResult:
    """
    Likelihood-ratio (chi-square) test between two nested models.

    The statistic and df difference are reported as b minus a, so swapping
    the arguments flips their signs; the p-value is the same either way.

    :param a: First GLMMResult (typically the null model)
    :param b: Second GLMMResult (typically the full model)
    :returns: ComparisonResult dictionary
    :raises InputError: If the models are not strictly nested

    Example:
        >>> lrt = likelihood_ratio_test(results["null"], results["full"])
        >>> print(summarize_comparison(lrt))
    """
    nested = check_nested(a, b)

    llf_a = a["fit_stats"]["llf"]
    llf_b = b["fit_stats"]["llf"]
    df_diff = int(round(b["fit_stats"]["df_model"] - a["fit_stats"]["df_model"]))
    if df_diff == 0:
        raise InputError(
            f"Models '{a['name']}' and '{b['name']}' have the same number of parameters"
        )

    statistic = 2.0 * (llf_b - llf_a)

    # Oriented as larger-minus-smaller model; a negative value means the
    # larger model fits worse (optimizer shortfall) and gives p = 1
    oriented = statistic * np.sign(df_diff)
    p_value = float(stats.chi2.sf(max(oriented, 0.0), abs(df_diff)))

    return create_comparison_result(
        model_a=a["name"],
        model_b=b["name"],
        statistic=float(statistic),
        df_diff=df_diff,
        p_value=p_value,
        llf_a=llf_a,
        llf_b=llf_b,
        aic_a=a["fit_stats"]["aic"],
        aic_b=b["fit_stats"]["aic"],
        nested=nested,
    )


# =============================================================================
# Information-criterion table
# =============================================================================

def compare_models(results: List[GLMMResult]) -> pd.DataFrame:
    """
    Compare multiple GLMM results by fit statistics.

    :param results: List of GLMMResult dictionaries (same data, different specs)
    :returns: DataFrame comparing log-likelihood, AIC, BIC
    """
    rows = []
    for r in results:
        rows.append({
            "model": r["name"],
            "formula": r["formula"],
            "n_obs": r["n_obs"],
            "converged": r["converged"],
            "df": r["fit_stats"].get("df_model", np.nan),
            "llf": r["fit_stats"].get("llf", np.nan),
            "aic": r["fit_stats"].get("aic", np.nan),
            "bic": r["fit_stats"].get("bic", np.nan),
        })

    df = pd.DataFrame(rows)

    # Add delta AIC/BIC relative to best
    if len(df) > 1 and not df["aic"].isna().all():
        df["delta_aic"] = df["aic"] - df["aic"].min()
        df["delta_bic"] = df["bic"] - df["bic"].min()

    return df


def comparison_table(comparisons: List[ComparisonResult]) -> Optional[pd.DataFrame]:
    """Tabulate several likelihood-ratio tests."""
    if not comparisons:
        return None
    return pd.DataFrame([
        {
            "model_a": c["model_a"],
            "model_b": c["model_b"],
            "chisq": c["statistic"],
            "df": c["df_diff"],
            "p_value": c["p_value"],
        }
        for c in comparisons
    ])
