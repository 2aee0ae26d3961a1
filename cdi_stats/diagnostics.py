"""
Model Diagnostics Module
========================

Assumption checks and summary statistics for beta GLMM results:
overdispersion, collinearity (GVIF), normality of the random intercepts,
pseudo-R², RMSE, and stability of the estimates when whole groups are
left out.

None of these checks alter data or models. Findings above their
thresholds are advisory: they are issued as warnings and recorded on the
returned dictionaries for a human to judge.

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to maintain consistency with the rest of the package.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, TypedDict
import warnings

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import expit
import patsy
import statsmodels.api as sm
from statsmodels.stats.outliers_influence import variance_inflation_factor

from .exceptions import CDIStatsError, InputError
from .glmm import (
    GLMMResult,
    fit_glmm,
    get_linear_predictor,
    get_random_effects,
    get_residuals,
)
from .prepare import AnalysisDataset, subset_dataset
from .registry import ModelSpec, create_model_spec, formula_term, ordered_terms


# =============================================================================
# DiagnosticsResult TypedDict
# =============================================================================

class DiagnosticsResult(TypedDict):
    """
    Result of model diagnostics.

    Keys:
        name: Model name
        overdispersion: Pearson dispersion statistics
        collinearity: GVIF table (None if not computed)
        random_effects_normality: Per-factor normality of the BLUPs
        r2: Marginal and conditional pseudo-R²
        rmse: Response-scale root mean squared error
        overall_assessment: Summary assessment
        warnings: List of diagnostic warnings
    """
    name: str
    overdispersion: Dict[str, Any]
    collinearity: Optional[pd.DataFrame]
    random_effects_normality: Dict[str, Dict[str, Any]]
    r2: Dict[str, float]
    rmse: float
    overall_assessment: str
    warnings: List[str]


def create_diagnostics_result(
    name: str,
    overdispersion: Optional[Dict[str, Any]] = None,
    collinearity: Optional[pd.DataFrame] = None,
    random_effects_normality: Optional[Dict[str, Dict[str, Any]]] = None,
    r2: Optional[Dict[str, float]] = None,
    rmse: float = np.nan,
    overall_assessment: str = "",
    diag_warnings: Optional[List[str]] = None,
) -> DiagnosticsResult:
    """
    Create a DiagnosticsResult dictionary.

    :param name: Model name
    :param overdispersion: Pearson dispersion statistics
    :param collinearity: GVIF table
    :param random_effects_normality: Per-factor normality of the BLUPs
    :param r2: Marginal and conditional pseudo-R²
    :param rmse: Root mean squared error
    :param overall_assessment: Summary assessment
    :param diag_warnings: List of diagnostic warnings
    :returns: DiagnosticsResult dictionary
    """
    return {
        "name": name,
        "overdispersion": overdispersion or {},
        "collinearity": collinearity,
        "random_effects_normality": random_effects_normality or {},
        "r2": r2 or {},
        "rmse": rmse,
        "overall_assessment": overall_assessment,
        "warnings": diag_warnings or [],
    }


def summarize_diagnostics(result: DiagnosticsResult) -> str:
    """
    Generate summary string for diagnostics result.

    :param result: DiagnosticsResult dictionary
    :returns: Human-readable summary string
    """
    od = result["overdispersion"]
    re_ok = all(
        r.get("is_normal", False) for r in result["random_effects_normality"].values()
    )
    lines = [
        f"Diagnostics: {result['name']}",
        f"  Dispersion ratio: {od.get('ratio', np.nan):.3f} "
        f"({'CHECK' if od.get('is_overdispersed') else 'OK'})",
        f"  Random effects normality: {'OK' if re_ok else 'CHECK'}",
        f"  R2 marginal: {result['r2'].get('r2_marginal', np.nan):.3f}",
        f"  R2 conditional: {result['r2'].get('r2_conditional', np.nan):.3f}",
        f"  RMSE: {result['rmse']:.4f}",
    ]
    coll = result["collinearity"]
    if coll is not None and len(coll):
        lines.append(f"  Max VIF: {coll['vif'].max():.2f} ({int(coll['flagged'].sum())} flagged)")
    lines.append(f"  Assessment: {result['overall_assessment']}")
    if result["warnings"]:
        lines.append(f"  Warnings: {len(result['warnings'])}")
    return "\n".join(lines)


# =============================================================================
# Overdispersion
# =============================================================================

def check_overdispersion(result: GLMMResult) -> Dict[str, Any]:
    """
    Pearson chi-square dispersion statistic.

    ratio = sum(pearson_resid^2) / (n - k), k = number of parameters.
    A ratio above 1 is flagged as a caution; nothing is corrected.

    :param result: Fitted GLMMResult
    :returns: Dict with chisq, rdf, ratio, p_value, is_overdispersed
    """
    resid = get_residuals(result, kind="pearson")
    chisq = float(np.sum(resid.values ** 2))
    rdf = int(result["n_obs"] - result["fit_stats"]["df_model"])
    if rdf <= 0:
        return {"note": "No residual degrees of freedom", "is_overdispersed": None}

    ratio = chisq / rdf
    p_value = float(stats.chi2.sf(chisq, rdf))
    is_over = ratio > 1

    if is_over:
        warnings.warn(
            f"Model '{result['name']}': dispersion ratio {ratio:.3f} > 1; "
            f"standard errors may be too small"
        )

    return {
        "chisq": chisq,
        "rdf": rdf,
        "ratio": ratio,
        "p_value": p_value,
        "is_overdispersed": is_over,
    }


def rescale_by_dispersion(
    result: GLMMResult,
    ratio: Optional[float] = None,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Coefficient table with standard errors inflated by sqrt(dispersion).

    Only applied when explicitly requested.

    :param result: Fitted GLMMResult
    :param ratio: Dispersion ratio (None = compute it)
    :param alpha: Significance level for confidence intervals
    :returns: Rescaled coefficient DataFrame
    """
    if ratio is None:
        ratio = check_overdispersion(result).get("ratio")
    if ratio is None or not np.isfinite(ratio):
        raise InputError(f"No dispersion ratio available for '{result['name']}'")

    coefs = result["coefficients"].copy()
    coefs["std_error"] = coefs["std_error"] * np.sqrt(ratio)
    coefs["z_value"] = coefs["estimate"] / coefs["std_error"]
    coefs["p_value"] = 2 * stats.norm.sf(np.abs(coefs["z_value"]))
    crit = stats.norm.ppf(1 - alpha / 2)
    coefs["ci_lower"] = coefs["estimate"] - crit * coefs["std_error"]
    coefs["ci_upper"] = coefs["estimate"] + crit * coefs["std_error"]
    return coefs


# =============================================================================
# Collinearity
# =============================================================================

def _main_effects_spec(spec: ModelSpec) -> ModelSpec:
    """Additive version of a spec: every variable once, no products."""
    variables = []
    for term in ordered_terms(spec):
        for var in term:
            if var not in variables:
                variables.append(var)
    return create_model_spec(
        name=f"{spec['name']}_main_effects",
        main_effects=variables,
        response=spec["response"],
        random_intercepts=[],
        family=spec["family"],
    )


def check_collinearity(
    ds: AnalysisDataset,
    spec: ModelSpec,
    threshold: float = 2.0,
) -> pd.DataFrame:
    """
    Variance inflation factors from an ordinary linear model.

    An OLS model with the model's variables as main effects is fitted.
    One-column terms get the classic VIF of their design column.
    Multi-column factors get the generalized VIF computed from the
    correlation matrix of the design columns (Fox & Monette, 1992):

        GVIF = det(R_11) * det(R_22) / det(R)

    The flagged value ("vif") is GVIF^(1/df), so multi-column factors are
    on the VIF scale. Perfectly collinear columns give an infinite (or
    numerically huge) VIF.

    :param ds: AnalysisDataset dictionary
    :param spec: ModelSpec whose fixed effects are checked
    :param threshold: VIF above which a term is flagged
    :returns: DataFrame with term, df, gvif, gvif_adj, vif, flagged
    """
    main = _main_effects_spec(spec)
    variables = [t[0] for t in ordered_terms(main)]
    if len(variables) < 2:
        return pd.DataFrame(columns=["term", "df", "gvif", "gvif_adj", "vif", "flagged"])

    data = ds["data"]
    rhs = " + ".join(formula_term(v) for v in variables)
    exog = patsy.dmatrix(rhs, data, return_type="dataframe", NA_action="raise")
    ols_fit = sm.OLS(data[spec["response"]].to_numpy(dtype=float), exog).fit()
    X = np.asarray(ols_fit.model.exog)

    # Columns per term, intercept excluded; patsy reorders terms so look up by name
    term_slices = exog.design_info.term_name_slices
    term_cols: Dict[str, List[int]] = {}
    for var in variables:
        sl = term_slices[formula_term(var)]
        term_cols[var] = list(range(sl.start, sl.stop))
    keep = [c for cols in term_cols.values() for c in cols]
    position = {c: i for i, c in enumerate(keep)}

    with np.errstate(divide="ignore", invalid="ignore"):
        R = np.corrcoef(X[:, keep], rowvar=False)
    R = np.nan_to_num(R, nan=0.0)
    logdet_R = _safe_logdet(R)

    rows = []
    for var, cols in term_cols.items():
        df = len(cols)
        if df == 1:
            with np.errstate(divide="ignore", invalid="ignore"):
                gvif = float(variance_inflation_factor(X, cols[0]))
            if not np.isfinite(gvif):
                gvif = np.inf
        else:
            gvif = _generalized_vif(R, [position[c] for c in cols], logdet_R)
        gvif_adj = gvif ** (1.0 / (2 * df))
        vif = gvif_adj ** 2
        rows.append({
            "term": var,
            "df": df,
            "gvif": gvif,
            "gvif_adj": gvif_adj,
            "vif": vif,
            "flagged": bool(vif > threshold),
        })

    table = pd.DataFrame(rows)
    flagged = table.loc[table["flagged"], "term"].tolist()
    if flagged:
        warnings.warn(
            f"VIF above {threshold} for {flagged}; consider removing or combining predictors"
        )
    return table


def _generalized_vif(R: np.ndarray, idx: List[int], logdet_R: float) -> float:
    """GVIF of the columns idx from the design correlation matrix R."""
    rest = [i for i in range(R.shape[0]) if i not in idx]
    logdet_own = _safe_logdet(R[np.ix_(idx, idx)])
    logdet_rest = _safe_logdet(R[np.ix_(rest, rest)])
    if np.isfinite(logdet_R):
        return float(np.exp(logdet_own + logdet_rest - logdet_R))
    if np.isfinite(logdet_rest):
        # Removing this term resolves the singularity: it is aliased
        return np.inf
    # Singular without this term too; aliasing lies elsewhere
    return np.nan


def _safe_logdet(M: np.ndarray) -> float:
    """log-determinant, -inf for (numerically) singular matrices."""
    if M.size == 0:
        return 0.0
    sign, logdet = np.linalg.slogdet(M)
    # Determinants below ~1e-12 are numerically singular correlation matrices
    if sign <= 0 or logdet < -12 * np.log(10):
        return -np.inf
    return float(logdet)


# =============================================================================
# Random-effects normality
# =============================================================================

def check_random_effects_normality(
    result: GLMMResult,
    alpha: float = 0.05,
) -> Dict[str, Dict[str, Any]]:
    """
    Normality checks on the random intercepts of each grouping factor.

    :param result: Fitted GLMMResult
    :param alpha: Significance level for tests
    :returns: Map factor -> dict with test statistics, QQ coordinates, is_normal
    """
    blups = get_random_effects(result)
    if blups is None:
        return {}

    out: Dict[str, Dict[str, Any]] = {}
    for factor, group in blups.groupby("factor", sort=False):
        check = _check_normality(group["intercept"], alpha)
        if check.get("is_normal") is False:
            warnings.warn(
                f"Model '{result['name']}': random intercepts for {factor} "
                f"may not be normally distributed"
            )
        out[factor] = check
    return out


def _check_normality(values: pd.Series, alpha: float = 0.05) -> Dict[str, Any]:
    """Shapiro-Wilk, Jarque-Bera, shape statistics and QQ coordinates."""
    values = values.dropna()
    n = len(values)

    if n < 3 or values.std() == 0:
        return {"n": n, "note": "Too few levels or zero variance", "is_normal": None}

    # Shapiro-Wilk (up to 5000 samples)
    test_values = values.values[:5000] if n > 5000 else values.values
    shapiro_stat, shapiro_p = stats.shapiro(test_values)
    jb_stat, jb_p = stats.jarque_bera(values)

    std = (values - values.mean()) / values.std()
    theoretical = stats.norm.ppf((np.arange(1, n + 1) - 0.5) / n)
    qq = pd.DataFrame({
        "theoretical": theoretical,
        "sample": np.sort(std.values),
    })

    return {
        "n": n,
        "shapiro_stat": float(shapiro_stat),
        "shapiro_p": float(shapiro_p),
        "jarque_bera_stat": float(jb_stat),
        "jarque_bera_p": float(jb_p),
        "skewness": float(stats.skew(values)),
        "kurtosis": float(stats.kurtosis(values)),
        "qq": qq,
        "is_normal": bool(shapiro_p > alpha),
    }


# =============================================================================
# Fit statistics
# =============================================================================

def compute_r2(result: GLMMResult) -> Dict[str, float]:
    """
    Nakagawa marginal and conditional R² on the logit scale.

    The observation-level variance uses the delta method for the beta
    family: 1 / (mu (1 - mu) (1 + phi)), mu being the mean of the
    marginal fitted means.

    :param result: Fitted GLMMResult
    :returns: Dict with r2_marginal, r2_conditional and variance components
    """
    fit = result["model"]
    if fit is None:
        return {}

    eta_fixed = get_linear_predictor(result, conditional=False)
    var_fixed = float(np.var(eta_fixed.values, ddof=1))
    var_random = float(np.sum(fit["sigma"] ** 2))
    mu = float(np.mean(expit(eta_fixed.values)))
    var_resid = 1.0 / (mu * (1.0 - mu) * (1.0 + fit["phi"]))

    total = var_fixed + var_random + var_resid
    return {
        "r2_marginal": var_fixed / total,
        "r2_conditional": (var_fixed + var_random) / total,
        "var_fixed": var_fixed,
        "var_random": var_random,
        "var_residual": var_resid,
    }


def compute_rmse(result: GLMMResult) -> float:
    """Root mean squared error of conditional fitted means (response scale)."""
    if result["model"] is None:
        return np.nan
    resid = get_residuals(result, kind="response")
    return float(np.sqrt(np.mean(resid.values ** 2)))


# =============================================================================
# Stability (leave-one-group-out refits)
# =============================================================================

class StabilityResult(TypedDict):
    """
    Result of a leave-one-level-out stability check.

    Keys:
        name: Model name
        estimates: Long table of refit estimates (factor, level, term,
            estimate, dfbeta)
        summary: Per-term table (estimate, std_error, min, max,
            max_abs_dfbeta, flagged)
        failed: Levels whose refit failed, with the reason
        flagged_terms: Terms moved by more than threshold_se SEs
    """
    name: str
    estimates: pd.DataFrame
    summary: pd.DataFrame
    failed: List[Dict[str, str]]
    flagged_terms: List[str]


def check_stability(
    ds: AnalysisDataset,
    result: GLMMResult,
    factors: Optional[List[str]] = None,
    threshold_se: float = 2.0,
    verbose: bool = False,
    **fit_kwargs,
) -> StabilityResult:
    """
    Refit the model leaving out one level of a grouping factor at a time.

    Each refit is compared with the full-data fit term by term
    (DFBETA by group). A term is flagged when any refit moves its
    estimate by more than threshold_se standard errors. This is
    expensive: one refit per level.

    :param ds: AnalysisDataset the model was fitted to
    :param result: Fitted GLMMResult
    :param factors: Grouping factors to iterate (None = all of the model's)
    :param threshold_se: Flagging threshold in standard errors
    :param verbose: Print progress
    :param fit_kwargs: Additional arguments passed to fit_glmm
    :returns: StabilityResult dictionary
    """
    if result["model"] is None or result["spec"] is None:
        raise InputError(f"Model '{result['name']}' has no fit to check")

    spec = result["spec"]
    factors = factors if factors is not None else list(spec["random_intercepts"])
    base = result["coefficients"].set_index("term")

    rows = []
    failed: List[Dict[str, str]] = []

    for factor in factors:
        levels = pd.unique(ds["data"][factor])
        if verbose:
            print(f"[cdi_stats] Stability: {len(levels)} refits leaving out one {factor}")
        for level in levels:
            sub = subset_dataset(ds, exclude={factor: [level]})
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore")
                    refit = fit_glmm(sub, spec, **fit_kwargs)
            except CDIStatsError as e:
                failed.append({"factor": factor, "level": str(level), "reason": str(e)})
                continue
            coefs = refit["coefficients"].set_index("term")["estimate"]
            for term, est in coefs.items():
                full_est = base["estimate"].get(term, np.nan)
                rows.append({
                    "factor": factor,
                    "level": level,
                    "term": term,
                    "estimate": est,
                    "dfbeta": full_est - est,
                })

    if failed:
        warnings.warn(
            f"Stability check for '{result['name']}': {len(failed)} refits failed"
        )

    estimates = pd.DataFrame(rows, columns=["factor", "level", "term", "estimate", "dfbeta"])

    summary = base[["estimate", "std_error"]].copy()
    if len(estimates):
        grouped = estimates.groupby("term")
        summary["min"] = grouped["estimate"].min()
        summary["max"] = grouped["estimate"].max()
        summary["max_abs_dfbeta"] = grouped["dfbeta"].apply(lambda d: d.abs().max())
    else:
        summary["min"] = np.nan
        summary["max"] = np.nan
        summary["max_abs_dfbeta"] = np.nan
    summary["flagged"] = summary["max_abs_dfbeta"] > threshold_se * summary["std_error"]
    summary = summary.reset_index()

    flagged_terms = summary.loc[summary["flagged"], "term"].tolist()
    if flagged_terms:
        warnings.warn(
            f"Model '{result['name']}': estimates unstable to group removal for {flagged_terms}"
        )

    return {
        "name": result["name"],
        "estimates": estimates,
        "summary": summary,
        "failed": failed,
        "flagged_terms": flagged_terms,
    }


# =============================================================================
# Combined diagnostics
# =============================================================================

def run_diagnostics(
    result: GLMMResult,
    ds: Optional[AnalysisDataset] = None,
    vif_threshold: float = 2.0,
    alpha: float = 0.05,
) -> DiagnosticsResult:
    """
    Run every per-model diagnostic and summarize.

    :param result: Fitted GLMMResult
    :param ds: AnalysisDataset (needed for the collinearity check)
    :param vif_threshold: VIF flagging threshold
    :param alpha: Significance level for normality tests
    :returns: DiagnosticsResult dictionary
    """
    if result["model"] is None:
        return create_diagnostics_result(
            name=result["name"],
            overall_assessment="Cannot assess - model not fitted",
            diag_warnings=["Model fitting failed"],
        )

    warnings_list: List[str] = []

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        overdispersion = check_overdispersion(result)
        collinearity = None
        if ds is not None and result["spec"] is not None:
            collinearity = check_collinearity(ds, result["spec"], threshold=vif_threshold)
        re_normality = check_random_effects_normality(result, alpha=alpha)
    warnings_list.extend(str(w.message) for w in caught)

    issues = []
    if overdispersion.get("is_overdispersed"):
        issues.append("overdispersion")
    if collinearity is not None and len(collinearity) and collinearity["flagged"].any():
        issues.append("collinearity")
    if any(r.get("is_normal") is False for r in re_normality.values()):
        issues.append("non-normal random effects")

    if not issues:
        assessment = "OK - No major concerns detected"
    elif len(issues) == 1:
        assessment = f"Minor concern: {issues[0]}"
    else:
        assessment = f"Multiple concerns: {', '.join(issues)}"

    for msg in warnings_list:
        warnings.warn(msg)

    return create_diagnostics_result(
        name=result["name"],
        overdispersion=overdispersion,
        collinearity=collinearity,
        random_effects_normality=re_normality,
        r2=compute_r2(result),
        rmse=compute_rmse(result),
        overall_assessment=assessment,
        diag_warnings=warnings_list,
    )
