"""
CDI Analysis Script
===================

Runs the beta GLMM analysis of the ManyBabies CDI follow-up data:
1. Loading and preparation
2. Model fitting (full, null and their no-interaction variants)
3. Likelihood-ratio tests
4. Collinearity and model diagnostics
5. Stability (optional, set CDI_STABILITY=1)

Usage:
    python run_cdi_analysis.py path/to/cdi_followup.csv

The path can also be set with the CDI_DATA_PATH environment variable.
"""
import os
import sys

from cdi_stats import (
    CDIStatsError,
    create_analysis_config,
    run_analysis,
)

print("=" * 70)
print("MANYBABIES CDI FOLLOW-UP: BETA GLMM ANALYSIS")
print("=" * 70)

data_path = sys.argv[1] if len(sys.argv) > 1 else None

try:
    config = create_analysis_config(
        data_path=data_path,
        run_stability=os.environ.get("CDI_STABILITY", "0") == "1",
        verbose=True,
    )
    report = run_analysis(config)
except CDIStatsError as e:
    print(f"\n[ERROR] {type(e).__name__}: {e}")
    sys.exit(1)

# =============================================================================
# SUMMARY
# =============================================================================
print("\n" + "=" * 70)
print("SUMMARY")
print("=" * 70)

n_fitted = sum(r["converged"] for r in report["results"].values())
print(f"\n  Observations: {len(report['dataset']['data'])}")
print(f"  Models converged: {n_fitted} / {len(report['results'])}")
for c in report["comparisons"]:
    verdict = "significant" if c["p_value"] < 0.05 else "not significant"
    print(f"  {c['model_a']} vs {c['model_b']}: p = {c['p_value']:.4g} ({verdict})")
if report["errors"]:
    print(f"  Errors: {len(report['errors'])} (see above)")
