"""
Beta Generalized Linear Mixed Models
====================================

Fits beta-distributed mixed models with a logit link and one random
intercept per grouping factor (nested lab / subject intercepts when the
subject IDs are unique across labs).

    y_i ~ Beta(mu_i * phi, (1 - mu_i) * phi)
    logit(mu_i) = x_i' beta + sum_k sigma_k * v_k[g_k(i)]
    v_k ~ N(0, I)

The marginal likelihood is integrated over v with the Laplace
approximation. Random effects use the relative-factor parameterization
(u = sigma * v), so a variance estimated at zero is a regular boundary
value rather than a numerical singularity.

Estimation runs in two stages, as glmer does:
1. Penalized IRLS over (beta, v) jointly; only (sigma, log phi) are
   optimized. Fast and robust, used for starting values.
2. The full Laplace likelihood over (beta, sigma, log phi), with v at its
   conditional mode for each evaluation. Skipped when refine=False.

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to maintain consistency with the rest of the package.

Key features:
- GLMMResult TypedDict for structured model output
- Formulas built from ModelSpec records (patsy design matrices)
- Rank-deficient fixed-effect columns dropped with a warning
- Wald inference from the Schur complement of the PIRLS Hessian
- ConvergenceError when the optimizer does not converge (no retries)
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, TypedDict, Union
import warnings

import numpy as np
import pandas as pd
import patsy
from scipy import linalg, optimize, sparse, stats
from scipy.sparse.linalg import splu
from scipy.special import digamma, expit, gammaln, polygamma
from statsmodels.othermod.betareg import BetaModel
from statsmodels.tools.numdiff import approx_fprime

from .exceptions import CDIStatsError, ConvergenceError, InputError
from .prepare import AnalysisDataset
from .registry import (
    ModelFamily,
    ModelSpec,
    build_fixed_formula,
    build_formula,
    fixed_terms,
    get_model_spec,
    list_models,
    model_variables,
)


# Means are kept away from 0 and 1 so gammaln/digamma stay finite
_MU_EPS = 1e-10

# Bounds for log(phi) during optimization
_LOG_PHI_BOUNDS = (-10.0, 20.0)
_SIGMA_ZERO = 1e-6


# =============================================================================
# BetaGLMMFit / GLMMResult TypedDicts
# =============================================================================

class BetaGLMMFit(TypedDict):
    """
    Fitted state of a beta GLMM (the model artifact).

    Keys:
        beta: Fixed-effect estimates (p,)
        vcov: Covariance matrix of beta (p, p)
        sigma: Random-intercept standard deviations, one per factor (K,)
        phi: Beta precision parameter
        u: Conditional modes of the random intercepts (q,)
        llf: Laplace-approximated log-likelihood
        X: Fixed-effect design matrix
        Z: Sparse random-effect indicator matrix (n, q)
        y: Response values
        factors: Per-factor dicts with name, levels and column slice
        optimizer: Convergence information from the final stage
    """
    beta: np.ndarray
    vcov: np.ndarray
    sigma: np.ndarray
    phi: float
    u: np.ndarray
    llf: float
    X: pd.DataFrame
    Z: sparse.csc_matrix
    y: np.ndarray
    factors: List[Dict[str, Any]]
    optimizer: Dict[str, Any]


class GLMMResult(TypedDict):
    """
    Structured result from a beta GLMM fit.

    Keys:
        name: Model identifier
        spec: ModelSpec the model was built from
        model: Fitted BetaGLMMFit state (None if fitting failed)
        formula: Model formula used
        terms: Fixed-effect term labels (for nesting checks)
        coefficients: DataFrame with estimates, SEs, CIs, p-values
        fit_stats: Dict with llf, AIC, BIC, deviance, df_model, phi
        random_effects: Dict with variance and sd per grouping factor
        n_obs: Number of observations
        n_groups: Number of levels per grouping factor
        converged: Whether optimization converged
        warnings: List of warnings generated during fitting
    """
    name: str
    spec: Optional[ModelSpec]
    model: Optional[BetaGLMMFit]
    formula: str
    terms: frozenset
    coefficients: pd.DataFrame
    fit_stats: Dict[str, float]
    random_effects: Dict[str, float]
    n_obs: int
    n_groups: Dict[str, int]
    converged: bool
    warnings: List[str]


def create_glmm_result(
    name: str,
    spec: Optional[ModelSpec] = None,
    model: Optional[BetaGLMMFit] = None,
    formula: str = "",
    terms: Optional[frozenset] = None,
    coefficients: Optional[pd.DataFrame] = None,
    fit_stats: Optional[Dict[str, float]] = None,
    random_effects: Optional[Dict[str, float]] = None,
    n_obs: int = 0,
    n_groups: Optional[Dict[str, int]] = None,
    converged: bool = False,
    model_warnings: Optional[List[str]] = None,
) -> GLMMResult:
    """
    Create a GLMMResult dictionary with all model output.

    :param name: Model identifier
    :param spec: ModelSpec the model was built from
    :param model: Fitted BetaGLMMFit state
    :param formula: Model formula used
    :param terms: Fixed-effect term labels
    :param coefficients: DataFrame with estimates, SEs, CIs, p-values
    :param fit_stats: Dict with llf, AIC, BIC, etc.
    :param random_effects: Dict with random effects variance estimates
    :param n_obs: Number of observations
    :param n_groups: Number of levels per grouping factor
    :param converged: Whether optimization converged
    :param model_warnings: List of warnings generated during fitting
    :returns: GLMMResult dictionary
    """
    return {
        "name": name,
        "spec": spec,
        "model": model,
        "formula": formula,
        "terms": terms if terms is not None else frozenset(),
        "coefficients": coefficients if coefficients is not None else pd.DataFrame(),
        "fit_stats": fit_stats if fit_stats is not None else {},
        "random_effects": random_effects if random_effects is not None else {},
        "n_obs": n_obs,
        "n_groups": n_groups if n_groups is not None else {},
        "converged": converged,
        "warnings": model_warnings if model_warnings is not None else [],
    }


def summarize_glmm_result(result: GLMMResult) -> str:
    """
    Generate a summary string for a GLMM result.

    :param result: GLMMResult dictionary
    :returns: Human-readable summary string
    """
    groups = ", ".join(f"{g}={n}" for g, n in result["n_groups"].items())
    lines = [
        f"Beta GLMM: {result['name']}",
        f"  Formula: {result['formula']}",
        f"  N observations: {result['n_obs']}",
        f"  N groups: {groups}",
        f"  Converged: {result['converged']}",
        f"  logLik: {result['fit_stats'].get('llf', np.nan):.2f}",
        f"  AIC: {result['fit_stats'].get('aic', np.nan):.2f}",
        f"  BIC: {result['fit_stats'].get('bic', np.nan):.2f}",
        f"  Precision (phi): {result['fit_stats'].get('phi', np.nan):.3f}",
    ]
    for key, value in result["random_effects"].items():
        if key.endswith("_sd"):
            lines.append(f"  SD({key[:-3]}): {value:.4f}")
    if result["warnings"]:
        lines.append(f"  Warnings: {len(result['warnings'])}")
    return "\n".join(lines)


# =============================================================================
# Beta likelihood pieces
# =============================================================================

def _beta_loglik(y: np.ndarray, eta: np.ndarray, phi: float) -> np.ndarray:
    """Per-observation beta log-density at linear predictor eta."""
    mu = np.clip(expit(eta), _MU_EPS, 1 - _MU_EPS)
    a = mu * phi
    b = (1.0 - mu) * phi
    return (
        gammaln(phi) - gammaln(a) - gammaln(b)
        + (a - 1.0) * np.log(y) + (b - 1.0) * np.log1p(-y)
    )


def _score_weights(
    y: np.ndarray,
    eta: np.ndarray,
    phi: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Derivative of the log-density and Fisher weights, both w.r.t. eta.

    score = phi * (y* - mu*) * mu(1 - mu)
    weight = phi^2 * (trigamma(mu phi) + trigamma((1 - mu) phi)) * (mu(1 - mu))^2
    with y* = logit(y) and mu* = digamma(mu phi) - digamma((1 - mu) phi).
    """
    mu = np.clip(expit(eta), _MU_EPS, 1 - _MU_EPS)
    a = mu * phi
    b = (1.0 - mu) * phi
    dmu = mu * (1.0 - mu)
    y_star = np.log(y) - np.log1p(-y)
    mu_star = digamma(a) - digamma(b)
    score = phi * (y_star - mu_star) * dmu
    weight = phi ** 2 * (polygamma(1, a) + polygamma(1, b)) * dmu ** 2
    return score, weight


def _logdet(H: sparse.spmatrix) -> float:
    """log|H| of a sparse symmetric positive-definite matrix via LU."""
    lu = splu(sparse.csc_matrix(H))
    return float(np.sum(np.log(np.abs(lu.U.diagonal()))))


def _newton_mode(
    objective,
    gradient_hessian,
    start: np.ndarray,
    tol: float = 1e-8,
    maxiter: int = 50,
) -> Tuple[np.ndarray, float, bool]:
    """
    Maximize a concave penalized objective by Newton steps with halving.

    :param objective: x -> penalized log-likelihood
    :param gradient_hessian: x -> (gradient, negative Hessian as sparse)
    :param start: Starting point
    :returns: Tuple of (mode, objective at mode, converged)
    """
    x = start.copy()
    obj = objective(x)
    for _ in range(maxiter):
        grad, H = gradient_hessian(x)
        step = splu(sparse.csc_matrix(H)).solve(grad)
        t = 1.0
        while True:
            x_new = x + t * step
            obj_new = objective(x_new)
            if obj_new >= obj - 1e-12 * max(1.0, abs(obj)) or t < 1e-6:
                break
            t *= 0.5
        x, obj = x_new, obj_new
        if np.max(np.abs(t * step)) < tol:
            return x, obj, True
    return x, obj, False


# =============================================================================
# Design matrices
# =============================================================================

def _fixed_design(
    data: pd.DataFrame,
    spec: ModelSpec,
) -> Tuple[pd.DataFrame, List[str]]:
    """
    Build the fixed-effect design matrix, dropping aliased columns.

    :returns: Tuple of (design DataFrame, names of dropped columns)
    """
    X = patsy.dmatrix(
        build_fixed_formula(spec),
        data,
        return_type="dataframe",
        NA_action="raise",
    )

    # Pivoted QR identifies columns that are linear combinations of others
    _, R, piv = linalg.qr(X.values, mode="economic", pivoting=True)
    diag = np.abs(np.diag(R))
    rank = int(np.sum(diag > 1e-7 * diag[0])) if len(diag) else 0
    if rank < X.shape[1]:
        keep = sorted(piv[:rank])
        dropped = [X.columns[i] for i in sorted(piv[rank:])]
        return X.iloc[:, keep], dropped
    return X, []


def _random_design(
    data: pd.DataFrame,
    groups: List[str],
) -> Tuple[sparse.csc_matrix, List[Dict[str, Any]]]:
    """
    Build the sparse indicator matrix for random intercepts.

    :returns: Tuple of (Z, factor descriptors with name/levels/slice)
    """
    n = len(data)
    blocks = []
    factors: List[Dict[str, Any]] = []
    offset = 0
    for name in groups:
        codes, levels = pd.factorize(data[name], sort=True)
        G_k = len(levels)
        Z_k = sparse.csc_matrix(
            (np.ones(n), (np.arange(n), codes)),
            shape=(n, G_k),
        )
        blocks.append(Z_k)
        factors.append({
            "name": name,
            "levels": pd.Index(levels),
            "slice": slice(offset, offset + G_k),
        })
        offset += G_k
    return sparse.hstack(blocks).tocsc(), factors


def _expand_sigma(sigma: np.ndarray, factors: List[Dict[str, Any]]) -> np.ndarray:
    """Repeat each factor's sd across its levels."""
    sizes = [f["slice"].stop - f["slice"].start for f in factors]
    return np.repeat(sigma, sizes)


# =============================================================================
# Laplace objectives
# =============================================================================

class _LaplaceProblem:
    """
    Holds data and warm-start state for the two estimation stages.

    Parameter vectors:
        stage 1: [sigma (K), log_phi]
        stage 2: [beta (p), sigma (K), log_phi]
    """

    def __init__(
        self,
        y: np.ndarray,
        X: np.ndarray,
        Z: sparse.csc_matrix,
        factors: List[Dict[str, Any]],
        beta0: np.ndarray,
    ) -> None:
        self.y = y
        self.X = X
        self.Z = Z
        self.factors = factors
        self.n, self.p = X.shape
        self.q = Z.shape[1]
        self.K = len(factors)
        self.beta = beta0.copy()
        self.v = np.zeros(self.q)
        self.inner_converged = True

    def _scaled_Z(self, sigma: np.ndarray) -> sparse.csc_matrix:
        return (self.Z @ sparse.diags(_expand_sigma(sigma, self.factors))).tocsc()

    def _penalty_hessian(self, Zs: sparse.csc_matrix, weight: np.ndarray) -> sparse.csc_matrix:
        return (Zs.T @ sparse.diags(weight) @ Zs + sparse.identity(self.q)).tocsc()

    # ---- Stage 2: beta fixed, v at its conditional mode ----

    def conditional_mode(
        self,
        beta: np.ndarray,
        sigma: np.ndarray,
        phi: float,
        start: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, float, sparse.csc_matrix, bool]:
        """Mode of v given (beta, sigma, phi) and the Laplace log-likelihood."""
        Zs = self._scaled_Z(sigma)
        offset = self.X @ beta
        y = self.y

        def objective(v):
            return float(_beta_loglik(y, offset + Zs @ v, phi).sum() - 0.5 * v @ v)

        def gradient_hessian(v):
            score, weight = _score_weights(y, offset + Zs @ v, phi)
            return Zs.T @ score - v, self._penalty_hessian(Zs, weight)

        v0 = self.v if start is None else start
        v, obj, converged = _newton_mode(objective, gradient_hessian, v0)

        _, weight = _score_weights(y, offset + Zs @ v, phi)
        H = self._penalty_hessian(Zs, weight)
        return v, obj - 0.5 * _logdet(H), H, converged

    def laplace_nll(self, params: np.ndarray) -> float:
        beta = params[:self.p]
        sigma = params[self.p:self.p + self.K]
        phi = float(np.exp(params[-1]))
        v, llf, _, converged = self.conditional_mode(beta, sigma, phi)
        self.v = v
        self.inner_converged = converged
        return -llf

    # ---- Stage 1: (beta, v) jointly by penalized IRLS ----

    def pirls(
        self,
        sigma: np.ndarray,
        phi: float,
    ) -> Tuple[np.ndarray, np.ndarray, float, bool]:
        """Joint mode of (beta, v) given (sigma, phi) and the stage-1 criterion."""
        Zs = self._scaled_Z(sigma)
        A = sparse.hstack([sparse.csc_matrix(self.X), Zs]).tocsc()
        penalty = np.r_[np.zeros(self.p), np.ones(self.q)]
        y = self.y

        def objective(g):
            return float(_beta_loglik(y, A @ g, phi).sum() - 0.5 * np.sum(penalty * g * g))

        def gradient_hessian(g):
            score, weight = _score_weights(y, A @ g, phi)
            H = (A.T @ sparse.diags(weight) @ A + sparse.diags(penalty)).tocsc()
            return A.T @ score - penalty * g, H

        g, obj, converged = _newton_mode(
            objective, gradient_hessian, np.r_[self.beta, self.v]
        )
        beta, v = g[:self.p], g[self.p:]

        _, weight = _score_weights(y, A @ g, phi)
        crit = obj - 0.5 * _logdet(self._penalty_hessian(Zs, weight))
        return beta, v, crit, converged

    def pirls_nll(self, params: np.ndarray) -> float:
        sigma = params[:self.K]
        phi = float(np.exp(params[-1]))
        beta, v, crit, converged = self.pirls(sigma, phi)
        self.beta, self.v = beta, v
        self.inner_converged = converged
        return -crit

    # ---- Inference ----

    def fixed_effects_vcov(
        self,
        beta: np.ndarray,
        sigma: np.ndarray,
        phi: float,
        v: np.ndarray,
    ) -> np.ndarray:
        """
        Covariance of beta from the Schur complement of the joint Hessian.

        vcov = (X'WX - X'W Zs H_v^{-1} Zs'WX)^{-1}
        """
        Zs = self._scaled_Z(sigma)
        _, weight = _score_weights(self.y, self.X @ beta + Zs @ v, phi)
        WX = weight[:, None] * self.X
        XtWX = self.X.T @ WX
        ZtWX = np.asarray(Zs.T @ WX)
        H_v = self._penalty_hessian(Zs, weight)
        solved = splu(H_v).solve(ZtWX)
        schur = XtWX - ZtWX.T @ solved
        return np.linalg.pinv(schur)


def _start_values(
    y: np.ndarray,
    X: pd.DataFrame,
) -> Tuple[np.ndarray, float]:
    """
    Fixed-effects beta regression for starting values.

    :returns: Tuple of (beta, log_phi)
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            res = BetaModel(y, X.values).fit(disp=False)
        params = np.asarray(res.params)
        if np.all(np.isfinite(params)):
            return params[:-1], float(params[-1])
    except (np.linalg.LinAlgError, ValueError):
        pass
    # Least squares on the logit scale
    logit_y = np.log(y) - np.log1p(-y)
    beta, *_ = np.linalg.lstsq(X.values, logit_y, rcond=None)
    return beta, float(np.log(5.0))


def _optimize(
    fun,
    x0: np.ndarray,
    bounds: List[Tuple[Optional[float], Optional[float]]],
    maxiter: int,
) -> optimize.OptimizeResult:
    """L-BFGS-B with central-difference gradients."""
    def jac(x):
        return np.atleast_1d(approx_fprime(x, fun, centered=True)).ravel()

    return optimize.minimize(
        fun,
        x0,
        jac=jac,
        method="L-BFGS-B",
        bounds=bounds,
        options={"maxiter": maxiter},
    )


def _projected_gradient(
    res: optimize.OptimizeResult,
    bounds: List[Tuple[Optional[float], Optional[float]]],
) -> float:
    """Max-abs gradient, ignoring components pushing against an active bound."""
    grad = np.asarray(res.jac, dtype=float).copy()
    for i, (lo, hi) in enumerate(bounds):
        if lo is not None and res.x[i] <= lo + 1e-8 and grad[i] > 0:
            grad[i] = 0.0
        if hi is not None and res.x[i] >= hi - 1e-8 and grad[i] < 0:
            grad[i] = 0.0
    return float(np.max(np.abs(grad))) if len(grad) else 0.0


def _escape_boundary(
    fun,
    res: optimize.OptimizeResult,
    bounds: List[Tuple[Optional[float], Optional[float]]],
    sigma_index: List[int],
    maxiter: int,
    trials: Tuple[float, ...] = (0.05, 0.2, 0.5),
) -> optimize.OptimizeResult:
    """
    Move standard deviations off zero when an interior value fits better.

    The Laplace likelihood is even in each sigma, so its gradient vanishes
    at zero and a start there is never left by gradient steps. For each
    sigma at the bound, a few positive values are tried; the optimizer is
    restarted from the best one that lowers the criterion. A zero estimate
    is kept only when none of them does.
    """
    for _ in range(len(sigma_index)):
        at_zero = [i for i in sigma_index if res.x[i] <= _SIGMA_ZERO]
        if not at_zero:
            break
        best_x, best_fun = None, float(res.fun)
        for i in at_zero:
            for value in trials:
                x = np.asarray(res.x, dtype=float).copy()
                x[i] = value
                f = float(fun(x))
                if np.isfinite(f) and f < best_fun - 1e-8 * max(1.0, abs(best_fun)):
                    best_x, best_fun = x, f
        if best_x is None:
            break
        restart = _optimize(fun, best_x, bounds, maxiter)
        if not float(restart.fun) < float(res.fun):
            break
        res = restart
    return res


# =============================================================================
# Model Fitting
# =============================================================================

def fit_glmm(
    ds: AnalysisDataset,
    spec: Union[ModelSpec, str],
    family: Union[str, ModelFamily] = "beta",
    refine: bool = True,
    maxiter: int = 500,
    grad_tol: float = 1e-3,
    verbose: bool = False,
) -> GLMMResult:
    """
    Fit a beta GLMM with random intercepts for a model configuration.

    :param ds: AnalysisDataset dictionary with prepared data
    :param spec: ModelSpec dictionary or registered model name
    :param family: Response distribution (only "beta" is supported)
    :param refine: Run the full-Laplace stage after penalized IRLS
    :param maxiter: Maximum optimizer iterations per stage
    :param grad_tol: Gradient tolerance (relative to |logLik|) for convergence
    :param verbose: Print progress
    :returns: GLMMResult dictionary with model output
    :raises InputError: Unsupported family, missing values, or response outside (0, 1)
    :raises ConvergenceError: The optimizer did not converge

    Example:
        >>> result = fit_glmm(ds, "full")
        >>> print(result["coefficients"])
    """
    if isinstance(spec, str):
        spec = get_model_spec(spec)

    if isinstance(family, str):
        if family.lower() != "beta":
            raise InputError(f"Unsupported family '{family}'; only 'beta' is available")
        family = ModelFamily.BETA
    if family != ModelFamily.BETA or spec["family"] != ModelFamily.BETA:
        raise InputError(f"Unsupported family {family}; only BETA is available")

    if not spec["random_intercepts"]:
        raise InputError(f"Model '{spec['name']}' has no random intercepts")

    model_warnings: List[str] = []
    data = ds["data"]
    name = spec["name"]

    variables = model_variables(spec, raw=False)
    missing_cols = [v for v in variables if v not in data.columns]
    if missing_cols:
        raise InputError(f"Model '{name}': columns not found: {missing_cols}")
    n_incomplete = int(data[variables].isna().any(axis=1).sum())
    if n_incomplete:
        raise InputError(
            f"Model '{name}': {n_incomplete} rows have missing model variables; "
            f"prepare the dataset first"
        )

    y = data[spec["response"]].to_numpy(dtype=float)
    outside = int(np.sum((y <= 0) | (y >= 1)))
    if outside:
        raise InputError(
            f"Model '{name}': {outside} responses outside the open interval (0, 1); "
            f"the beta likelihood is undefined there"
        )

    X, dropped = _fixed_design(data, spec)
    if dropped:
        msg = (
            f"Fixed-effect model matrix is rank deficient; dropping "
            f"{len(dropped)} column(s): {dropped}"
        )
        model_warnings.append(msg)
        warnings.warn(msg)

    Z, factors = _random_design(data, spec["random_intercepts"])
    n_obs = len(y)
    n_groups = {f["name"]: len(f["levels"]) for f in factors}
    formula = build_formula(spec)

    if verbose:
        print(f"[cdi_stats] Fitting '{name}': {n_obs} obs, {X.shape[1]} fixed effects, "
              f"groups {n_groups}")

    beta0, log_phi0 = _start_values(y, X)
    problem = _LaplaceProblem(y, X.values, Z, factors, beta0)
    K = problem.K
    p = problem.p

    # Stage 1: penalized IRLS
    x1 = np.r_[np.full(K, 0.5), np.clip(log_phi0, *_LOG_PHI_BOUNDS)]
    bounds1 = [(0.0, None)] * K + [_LOG_PHI_BOUNDS]
    res = _optimize(problem.pirls_nll, x1, bounds1, maxiter)
    res = _escape_boundary(problem.pirls_nll, res, bounds1, list(range(K)), maxiter)
    bounds = bounds1
    stage = "pirls"
    problem.pirls_nll(res.x)

    if refine:
        # Stage 2: full Laplace likelihood
        x2 = np.r_[problem.beta, res.x]
        bounds = [(None, None)] * p + bounds1
        res = _optimize(problem.laplace_nll, x2, bounds, maxiter)
        res = _escape_boundary(
            problem.laplace_nll, res, bounds, list(range(p, p + K)), maxiter
        )
        stage = "laplace"
        problem.laplace_nll(res.x)
        beta = res.x[:p]
        sigma = res.x[p:p + K]
    else:
        beta = problem.beta.copy()
        sigma = res.x[:K]
    phi = float(np.exp(res.x[-1]))

    max_grad = _projected_gradient(res, bounds)
    converged = bool(res.success) or max_grad < grad_tol * max(1.0, abs(float(res.fun)))
    if not converged:
        raise ConvergenceError(
            f"Model '{name}' failed to converge ({stage} stage): {res.message}; "
            f"max |gradient| = {max_grad:.3g}",
            model_name=name,
        )
    if not problem.inner_converged:
        raise ConvergenceError(
            f"Model '{name}': conditional modes of the random effects did not converge",
            model_name=name,
        )

    v = problem.v
    if stage == "laplace":
        llf = -float(res.fun)
    else:
        # Report the Laplace likelihood at the PIRLS estimates
        v, llf, _, _ = problem.conditional_mode(beta, sigma, phi, start=v)

    sigma = np.abs(sigma)
    u = _expand_sigma(sigma, factors) * v
    vcov = problem.fixed_effects_vcov(beta, sigma, phi, v)

    for f, s in zip(factors, sigma):
        if s < 1e-4:
            msg = f"Boundary (singular) fit: {f['name']} variance estimated at ~0"
            model_warnings.append(msg)
            warnings.warn(msg)

    fit: BetaGLMMFit = {
        "beta": beta,
        "vcov": vcov,
        "sigma": sigma,
        "phi": phi,
        "u": u,
        "llf": llf,
        "X": X,
        "Z": Z,
        "y": y,
        "factors": factors,
        "optimizer": {
            "stage": stage,
            "success": bool(res.success),
            "message": str(res.message),
            "nit": int(res.nit),
            "max_grad": max_grad,
        },
    }

    df_model = p + K + 1
    fit_stats = {
        "llf": llf,
        "deviance": -2.0 * llf,
        "aic": -2.0 * llf + 2.0 * df_model,
        "bic": -2.0 * llf + np.log(n_obs) * df_model,
        "df_model": float(df_model),
        "df_resid": float(n_obs - df_model),
        "phi": phi,
    }

    random_effects: Dict[str, float] = {}
    for f, s in zip(factors, sigma):
        random_effects[f"{f['name']}_var"] = float(s ** 2)
        random_effects[f"{f['name']}_sd"] = float(s)

    if verbose:
        print(f"[cdi_stats] '{name}' converged: logLik={llf:.3f}, phi={phi:.3f}")

    return create_glmm_result(
        name=name,
        spec=spec,
        model=fit,
        formula=formula,
        terms=fixed_terms(spec),
        coefficients=_extract_coefficients(fit),
        fit_stats=fit_stats,
        random_effects=random_effects,
        n_obs=n_obs,
        n_groups=n_groups,
        converged=True,
        model_warnings=model_warnings,
    )


def _extract_coefficients(fit: BetaGLMMFit, alpha: float = 0.05) -> pd.DataFrame:
    """Extract Wald coefficient table from a fitted model."""
    se = np.sqrt(np.clip(np.diag(fit["vcov"]), 0, None))
    est = fit["beta"]
    with np.errstate(divide="ignore", invalid="ignore"):
        z = est / se
    crit = stats.norm.ppf(1 - alpha / 2)

    return pd.DataFrame({
        "term": list(fit["X"].columns),
        "estimate": est,
        "std_error": se,
        "z_value": z,
        "p_value": 2 * stats.norm.sf(np.abs(z)),
        "ci_lower": est - crit * se,
        "ci_upper": est + crit * se,
    })


# =============================================================================
# Batch Fitting
# =============================================================================

def fit_all_models(
    ds: AnalysisDataset,
    specs: Optional[List[Union[ModelSpec, str]]] = None,
    **kwargs,
) -> Dict[str, GLMMResult]:
    """
    Fit every (or the selected) model configuration.

    A model that fails to converge or has invalid input is recorded with
    converged=False and model=None; the other fits are unaffected.

    :param ds: AnalysisDataset dictionary
    :param specs: ModelSpecs or registered names (None = registry order)
    :param kwargs: Additional arguments passed to fit_glmm
    :returns: Dictionary mapping model names to GLMMResult dictionaries
    """
    if specs is None:
        specs = list_models()

    results: Dict[str, GLMMResult] = {}

    for spec in specs:
        if isinstance(spec, str):
            spec = get_model_spec(spec)
        try:
            results[spec["name"]] = fit_glmm(ds, spec, **kwargs)
        except CDIStatsError as e:
            warnings.warn(f"Failed to fit model '{spec['name']}': {e}")
            results[spec["name"]] = create_glmm_result(
                name=spec["name"],
                spec=spec,
                model=None,
                formula=build_formula(spec),
                terms=fixed_terms(spec),
                n_obs=len(ds["data"]),
                converged=False,
                model_warnings=[f"{type(e).__name__}: {e}"],
            )

    return results


# =============================================================================
# Accessors
# =============================================================================

def _require_model(result: GLMMResult) -> BetaGLMMFit:
    if result["model"] is None:
        raise InputError(f"Model '{result['name']}' was not fitted")
    return result["model"]


def get_linear_predictor(result: GLMMResult, conditional: bool = True) -> pd.Series:
    """
    Linear predictor on the logit scale.

    :param result: Fitted GLMMResult
    :param conditional: Include the random-intercept BLUPs
    :returns: Series aligned with the model data
    """
    fit = _require_model(result)
    eta = fit["X"].values @ fit["beta"]
    if conditional:
        eta = eta + fit["Z"] @ fit["u"]
    return pd.Series(eta, index=fit["X"].index, name="eta")


def get_fitted_values(result: GLMMResult, conditional: bool = True) -> pd.Series:
    """Fitted means on the response (proportion) scale."""
    eta = get_linear_predictor(result, conditional=conditional)
    return pd.Series(expit(eta.values), index=eta.index, name="fitted")


def get_residuals(result: GLMMResult, kind: str = "response") -> pd.Series:
    """
    Conditional residuals.

    :param result: Fitted GLMMResult
    :param kind: "response" (y - mu) or "pearson" ((y - mu) / sqrt(Var(y)))
    :returns: Series aligned with the model data
    """
    fit = _require_model(result)
    mu = get_fitted_values(result, conditional=True)
    resid = fit["y"] - mu.values
    if kind == "pearson":
        var = mu.values * (1 - mu.values) / (1 + fit["phi"])
        resid = resid / np.sqrt(var)
    elif kind != "response":
        raise InputError(f"Unknown residual kind '{kind}'")
    return pd.Series(resid, index=mu.index, name=f"{kind}_resid")


def get_random_effects(result: GLMMResult) -> Optional[pd.DataFrame]:
    """Extract random intercepts (BLUPs) per grouping factor and level."""
    if result["model"] is None:
        return None
    fit = result["model"]

    frames = []
    for f in fit["factors"]:
        frames.append(pd.DataFrame({
            "factor": f["name"],
            "level": f["levels"],
            "intercept": fit["u"][f["slice"]],
        }))
    return pd.concat(frames, ignore_index=True)
