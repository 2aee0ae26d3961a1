# tests/test_registry.py
"""Tests for the variable registry and model configurations."""

import pytest

from cdi_stats import (
    DEFAULT_COMPARISONS,
    MODEL_REGISTRY,
    InputError,
    ModelFamily,
    REQUIRED_COLUMNS,
    VariableRole,
    build_formula,
    create_model_spec,
    drop_interaction,
    drop_variable,
    fixed_terms,
    get_model_spec,
    get_variable_info,
    list_models,
    list_variables,
    model_variables,
    register_model,
    reset_model_registry,
)
from cdi_stats.registry import formula_term, ordered_terms, source_column, standardized_name


class TestVariableRegistry:
    """Tests for the column registry."""

    def test_required_columns(self):
        assert len(REQUIRED_COLUMNS) == 11
        assert "daily_percentile" in REQUIRED_COLUMNS
        assert "CDI.agerange" in REQUIRED_COLUMNS

    def test_roles(self):
        assert get_variable_info("daily_percentile")["role"] == VariableRole.RESPONSE
        assert set(list_variables(role=VariableRole.GROUPING)) == {"labid", "subid_unique"}

    def test_unknown_variable_raises(self):
        with pytest.raises(InputError):
            get_variable_info("not_a_column")

    def test_standardized_names(self):
        assert standardized_name("IDS_pref") == "z_IDS_pref"
        assert source_column("z_age_mo") == "age_mo"
        assert source_column("gender") == "gender"


class TestFormulas:
    """Tests for formula rendering."""

    def test_dotted_categorical_is_quoted(self):
        assert formula_term("CDI.agerange") == "C(Q('CDI.agerange'))"

    def test_numeric_term_plain(self):
        assert formula_term("z_IDS_pref") == "z_IDS_pref"

    def test_full_formula(self):
        formula = build_formula(get_model_spec("full"))
        assert formula.startswith("daily_percentile ~ ")
        assert "z_IDS_pref:z_age_mo" in formula
        assert formula.endswith("(1|labid) + (1|subid_unique)")

    def test_interaction_implies_main_effects(self):
        spec = create_model_spec("x", interactions=[("z_IDS_pref", "method")])
        assert ordered_terms(spec) == [("z_IDS_pref",), ("method",), ("z_IDS_pref", "method")]


class TestDefaultModels:
    """Tests for the four default configurations."""

    def test_four_models(self):
        assert list_models() == ["full", "null", "full_no_interaction", "null_no_interaction"]
        assert all(m["family"] == ModelFamily.BETA for m in MODEL_REGISTRY.values())

    @pytest.mark.parametrize("null_name,full_name", DEFAULT_COMPARISONS)
    def test_null_strictly_nested_in_full(self, null_name, full_name):
        null_terms = fixed_terms(get_model_spec(null_name))
        full_terms = fixed_terms(get_model_spec(full_name))
        assert null_terms < full_terms

    def test_null_has_no_predictor_terms(self):
        for name in ("null", "null_no_interaction"):
            assert not any("z_IDS_pref" in t for t in fixed_terms(get_model_spec(name)))

    def test_no_interaction_drops_only_age_product(self):
        full = fixed_terms(get_model_spec("full"))
        no_int = fixed_terms(get_model_spec("full_no_interaction"))
        assert full - no_int == {"z_IDS_pref:z_age_mo"}
        assert "z_age_mo" in no_int

    def test_null_models_share_terms(self):
        assert fixed_terms(get_model_spec("null")) == fixed_terms(get_model_spec("null_no_interaction"))

    def test_model_variables_raw(self):
        variables = model_variables(get_model_spec("full"), raw=True)
        assert variables[0] == "daily_percentile"
        assert "IDS_pref" in variables and "z_IDS_pref" not in variables
        assert variables[-2:] == ["labid", "subid_unique"]


class TestDerivedSpecs:
    """Tests for drop_variable / drop_interaction."""

    def test_drop_variable_keeps_partners(self):
        spec = create_model_spec("a", main_effects=["gender"], interactions=[("z_IDS_pref", "nae")])
        reduced = drop_variable(spec, "z_IDS_pref", name="b")
        assert fixed_terms(reduced) == {"nae", "gender"}

    def test_drop_missing_interaction_raises(self):
        with pytest.raises(InputError):
            drop_interaction(get_model_spec("null"), ("z_IDS_pref", "z_age_mo"), name="x")


class TestModelRegistryMutation:
    """Tests for register_model / reset_model_registry."""

    def test_register_and_reset(self):
        register_model(create_model_spec("extra", main_effects=["gender"]))
        assert "extra" in list_models()
        reset_model_registry()
        assert "extra" not in list_models()

    def test_duplicate_requires_overwrite(self):
        spec = create_model_spec("full", main_effects=["gender"])
        with pytest.raises(InputError):
            register_model(spec)
        register_model(spec, overwrite=True)
        assert fixed_terms(get_model_spec("full")) == {"gender"}

    def test_unknown_model_raises(self):
        with pytest.raises(InputError):
            get_model_spec("nope")
