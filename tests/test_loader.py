# tests/test_loader.py
"""Tests for reading the CDI table."""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from cdi_stats import LoadError, REQUIRED_COLUMNS, load_cdi_data, load_cdi_frame


class TestLoadCdiData:
    """Tests for load_cdi_data()."""

    def test_load_csv(self, cdi_csv: Path, cdi_frame: pd.DataFrame):
        df = load_cdi_data(cdi_csv)
        assert list(df.columns) == REQUIRED_COLUMNS
        assert len(df) == len(cdi_frame)

    def test_load_tsv(self, tmp_path: Path, cdi_frame: pd.DataFrame):
        path = tmp_path / "cdi.tsv"
        cdi_frame.to_csv(path, sep="\t", index=False)
        df = load_cdi_data(path)
        assert len(df) == len(cdi_frame)

    @pytest.mark.parametrize("sep", [",", "\t"])
    def test_txt_delimiter_inferred(self, tmp_path: Path, cdi_frame: pd.DataFrame, sep: str):
        path = tmp_path / "cdi.txt"
        cdi_frame.to_csv(path, sep=sep, index=False)
        df = load_cdi_data(path)
        assert list(df.columns) == REQUIRED_COLUMNS
        assert len(df) == len(cdi_frame)

    def test_extra_columns_dropped(self, tmp_path: Path, cdi_frame: pd.DataFrame):
        path = tmp_path / "cdi.csv"
        cdi_frame.assign(extra=1).to_csv(path, index=False)
        df = load_cdi_data(path)
        assert "extra" not in df.columns

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(LoadError, match="not found"):
            load_cdi_data(tmp_path / "absent.csv")

    def test_directory(self, tmp_path: Path):
        with pytest.raises(LoadError):
            load_cdi_data(tmp_path)

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.csv"
        path.write_text("")
        with pytest.raises(LoadError):
            load_cdi_data(path)

    def test_missing_column_listed(self, tmp_path: Path, cdi_frame: pd.DataFrame):
        path = tmp_path / "cdi.csv"
        cdi_frame.drop(columns=["nae"]).to_csv(path, index=False)
        with pytest.raises(LoadError, match="nae"):
            load_cdi_data(path)

    def test_verbose_prints(self, cdi_csv: Path, capsys):
        load_cdi_data(cdi_csv, verbose=True)
        assert "[cdi_stats] Loaded" in capsys.readouterr().out


class TestLoadCdiFrame:
    """Tests for type coercion."""

    def test_agerange_categorical(self, cdi_frame: pd.DataFrame):
        df = load_cdi_frame(cdi_frame)
        assert isinstance(df["CDI.agerange"].dtype, pd.CategoricalDtype)
        assert list(df["CDI.agerange"].cat.categories) == ["18", "24"]

    def test_numeric_coercion(self, cdi_frame: pd.DataFrame):
        raw = cdi_frame.copy()
        raw["IDS_pref"] = raw["IDS_pref"].astype(object)
        raw.loc[0, "IDS_pref"] = "n/a"
        df = load_cdi_frame(raw)
        assert np.isnan(df.loc[0, "IDS_pref"])
        assert df["IDS_pref"].dtype == float

    def test_labels_keep_missing(self, cdi_frame: pd.DataFrame):
        raw = cdi_frame.copy()
        raw.loc[3, "gender"] = np.nan
        df = load_cdi_frame(raw)
        assert df["gender"].isna().sum() == 1
        assert df.loc[0, "gender"] in {"F", "M"}

    def test_whole_float_labels(self):
        raw = pd.DataFrame({c: [1.0, 2.0] for c in REQUIRED_COLUMNS})
        df = load_cdi_frame(raw)
        assert list(df["labid"]) == ["1", "2"]
