# tests/conftest.py
"""Shared fixtures for cdi_stats tests."""

from pathlib import Path
from typing import Dict

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from cdi_stats import (
    AnalysisDataset,
    GLMMResult,
    ModelSpec,
    create_model_spec,
    fit_all_models,
    fit_glmm,
    get_model_spec,
    load_cdi_frame,
    prepare_dataset,
    reset_model_registry,
)


METHODS = ["singlescreen", "eyetracking", "hpp"]


def _simulate_cdi(
    seed: int = 0,
    n_labs: int = 6,
    n_subjects: int = 10,
    ids_effect: float = 0.0,
    phi: float = 8.0,
) -> pd.DataFrame:
    """
    CDI-like table: two assessments (18 and 24 months) per subject.

    Percentiles are drawn from a beta GLMM with lab and subject intercepts
    and reported as integers in [1, 99].
    """
    rng = np.random.default_rng(seed)
    rows = []
    for lab_idx in range(n_labs):
        lab = f"lab{lab_idx:02d}"
        lab_effect = rng.normal(0, 0.3)
        method = METHODS[lab_idx % len(METHODS)]
        nae = "TRUE" if lab_idx % 2 == 0 else "FALSE"
        for s in range(n_subjects):
            subject_effect = rng.normal(0, 0.4)
            ids_pref = rng.normal(0.5, 1.0)
            gender = "F" if rng.random() < 0.5 else "M"
            for agerange in (18, 24):
                age_mo = agerange + rng.uniform(-0.5, 0.5)
                eta = -0.2 + 0.05 * (age_mo - 21) + ids_effect * ids_pref + lab_effect + subject_effect
                mu = expit(eta)
                y = rng.beta(mu * phi, (1 - mu) * phi)
                rows.append({
                    "daily_percentile": int(np.clip(np.round(100 * y), 1, 99)),
                    "IDS_pref": ids_pref,
                    "age_mo": age_mo,
                    "CDI.agedays": int(round(age_mo * 30.44)),
                    "method": method,
                    "gender": gender,
                    "labid": lab,
                    "subid_unique": f"{lab}_s{s:02d}",
                    "nae": nae,
                    "vocab_nwords": int(rng.integers(0, 600)),
                    "CDI.agerange": agerange,
                })
    return pd.DataFrame(rows)


@pytest.fixture(autouse=True)
def clean_registry():
    """Restore the default model registry after every test."""
    yield
    reset_model_registry()


@pytest.fixture
def simulate_cdi():
    """Factory for simulated CDI tables."""
    return _simulate_cdi


@pytest.fixture(scope="session")
def cdi_frame() -> pd.DataFrame:
    """Simulated raw CDI table (120 rows, 6 labs)."""
    return _simulate_cdi(seed=42, ids_effect=0.3)


@pytest.fixture
def cdi_csv(tmp_path: Path, cdi_frame: pd.DataFrame) -> Path:
    """The simulated table written as CSV."""
    path = tmp_path / "cdi_followup.csv"
    cdi_frame.to_csv(path, index=False)
    return path


@pytest.fixture(scope="session")
def prepared_ds(cdi_frame: pd.DataFrame) -> AnalysisDataset:
    """Prepared dataset built from the simulated table."""
    return prepare_dataset(load_cdi_frame(cdi_frame))


@pytest.fixture(scope="session")
def small_specs() -> Dict[str, ModelSpec]:
    """Reduced nested pair for fast fits."""
    return {
        "small_full": create_model_spec(
            name="small_full",
            main_effects=["z_IDS_pref", "z_age_mo"],
        ),
        "small_null": create_model_spec(
            name="small_null",
            main_effects=["z_age_mo"],
        ),
    }


@pytest.fixture(scope="session")
def small_fits(
    prepared_ds: AnalysisDataset,
    small_specs: Dict[str, ModelSpec],
) -> Dict[str, GLMMResult]:
    """Converged fits of the reduced pair."""
    return {name: fit_glmm(prepared_ds, spec) for name, spec in small_specs.items()}


DEFAULT_MODEL_NAMES = ["full", "null", "full_no_interaction", "null_no_interaction"]


@pytest.fixture(scope="session")
def default_fits(prepared_ds: AnalysisDataset) -> Dict[str, GLMMResult]:
    """The four default configurations fitted on the simulated table."""
    reset_model_registry()
    specs = [get_model_spec(name) for name in DEFAULT_MODEL_NAMES]
    return fit_all_models(prepared_ds, specs)
