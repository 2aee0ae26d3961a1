"""
Variable and Model Registry
===========================

Declares the column schema of the CDI dataset and the model
configurations fitted by the pipeline. This is the core dispatch
mechanism: the loader validates against the variable registry, the
preprocessor derives its complete-case rule from a model configuration,
and the fitter builds formulas from the same configuration.

Model configurations are plain records (ModelSpec) holding a term list
and interaction pairs rather than formula strings, so that nesting
between models can be checked on term sets and null models can be
generated from full models.

Architecture Note:
    This module uses dictionaries instead of classes for data structures
    to maintain consistency with the rest of the package.

Usage:
    from cdi_stats.registry import get_model_spec, build_formula

    spec = get_model_spec("full")
    print(build_formula(spec))
"""
from __future__ import annotations

from enum import Enum, auto
from typing import Dict, FrozenSet, List, Optional, Tuple, TypedDict

from .exceptions import InputError


# =============================================================================
# Enums
# =============================================================================

class VariableRole(Enum):
    """Role of a column in the analysis."""
    RESPONSE = auto()        # Modelled outcome
    PREDICTOR = auto()       # Predictor of interest
    COVARIATE = auto()       # Adjustment variable
    GROUPING = auto()        # Random-intercept grouping factor
    AUXILIARY = auto()       # Loaded but not modelled


class VariableKind(Enum):
    """Measurement type of a column."""
    NUMERIC = auto()
    CATEGORICAL = auto()


class ModelFamily(Enum):
    """Response distribution of a mixed model."""
    BETA = auto()            # Beta response, logit link


# =============================================================================
# VariableInfo TypedDict
# =============================================================================

class VariableInfo(TypedDict):
    """
    Metadata for a single dataset column.

    Keys:
        name: Column name as it appears in the input header
        role: Role in the analysis
        kind: Numeric or categorical
        description: Human-readable description
        unit: Measurement unit
        valid_range: (min, max) tuple for sanity checks
        standardize: Whether a z-scored copy is added during preparation
        as_category: Whether the loader coerces it to a pandas Categorical
    """
    name: str
    role: VariableRole
    kind: VariableKind
    description: str
    unit: str
    valid_range: Optional[Tuple[Optional[float], Optional[float]]]
    standardize: bool
    as_category: bool


def create_variable_info(
    name: str,
    role: VariableRole = VariableRole.AUXILIARY,
    kind: VariableKind = VariableKind.NUMERIC,
    description: str = "",
    unit: str = "",
    valid_range: Optional[Tuple[Optional[float], Optional[float]]] = None,
    standardize: bool = False,
    as_category: bool = False,
) -> VariableInfo:
    """
    Create a VariableInfo dictionary.

    :param name: Column name as it appears in the input header
    :param role: Role in the analysis
    :param kind: Numeric or categorical
    :param description: Human-readable description
    :param unit: Measurement unit
    :param valid_range: (min, max) tuple for sanity checks
    :param standardize: Whether a z-scored copy is added during preparation
    :param as_category: Whether the loader coerces it to a pandas Categorical
    :returns: VariableInfo dictionary
    """
    return {
        "name": name,
        "role": role,
        "kind": kind,
        "description": description,
        "unit": unit,
        "valid_range": valid_range,
        "standardize": standardize,
        "as_category": as_category,
    }


# =============================================================================
# Variable registry (ManyBabies CDI follow-up columns)
# =============================================================================

RESPONSE_VAR = "daily_percentile"
PREDICTOR_VAR = "IDS_pref"
AGE_VAR = "age_mo"
LAB_VAR = "labid"
SUBJECT_VAR = "subid_unique"

STANDARDIZED_PREFIX = "z_"

VARIABLE_REGISTRY: Dict[str, VariableInfo] = {
    "daily_percentile": create_variable_info(
        name="daily_percentile",
        role=VariableRole.RESPONSE,
        kind=VariableKind.NUMERIC,
        description="CDI vocabulary percentile (norm-referenced)",
        unit="percentile",
        valid_range=(0, 100),
    ),
    "IDS_pref": create_variable_info(
        name="IDS_pref",
        role=VariableRole.PREDICTOR,
        kind=VariableKind.NUMERIC,
        description="Infant-directed speech preference score",
        unit="s",
        standardize=True,
    ),
    "age_mo": create_variable_info(
        name="age_mo",
        role=VariableRole.COVARIATE,
        kind=VariableKind.NUMERIC,
        description="Age at CDI administration",
        unit="months",
        valid_range=(0, 60),
        standardize=True,
    ),
    "CDI.agedays": create_variable_info(
        name="CDI.agedays",
        role=VariableRole.AUXILIARY,
        kind=VariableKind.NUMERIC,
        description="Age at CDI administration",
        unit="days",
        valid_range=(0, 2000),
    ),
    "method": create_variable_info(
        name="method",
        role=VariableRole.COVARIATE,
        kind=VariableKind.CATEGORICAL,
        description="Preference elicitation method (e.g. singlescreen, eyetracking, hpp)",
    ),
    "gender": create_variable_info(
        name="gender",
        role=VariableRole.COVARIATE,
        kind=VariableKind.CATEGORICAL,
        description="Infant gender",
    ),
    "labid": create_variable_info(
        name="labid",
        role=VariableRole.GROUPING,
        kind=VariableKind.CATEGORICAL,
        description="Lab identifier",
    ),
    "subid_unique": create_variable_info(
        name="subid_unique",
        role=VariableRole.GROUPING,
        kind=VariableKind.CATEGORICAL,
        description="Subject identifier, unique across labs",
    ),
    "nae": create_variable_info(
        name="nae",
        role=VariableRole.COVARIATE,
        kind=VariableKind.CATEGORICAL,
        description="North American English exposure",
    ),
    "vocab_nwords": create_variable_info(
        name="vocab_nwords",
        role=VariableRole.AUXILIARY,
        kind=VariableKind.NUMERIC,
        description="Raw CDI vocabulary count",
        unit="words",
        valid_range=(0, None),
    ),
    "CDI.agerange": create_variable_info(
        name="CDI.agerange",
        role=VariableRole.COVARIATE,
        kind=VariableKind.CATEGORICAL,
        description="CDI age bracket (e.g. 18, 24 months)",
        as_category=True,
    ),
}

# Header order of the input file
REQUIRED_COLUMNS: List[str] = list(VARIABLE_REGISTRY.keys())


def get_variable_info(name: str) -> VariableInfo:
    """
    Get column metadata, resolving standardized names to their source.

    :param name: Column name (raw or z-prefixed)
    :returns: VariableInfo dict
    :raises InputError: If the column is not registered
    """
    source = source_column(name)
    if source not in VARIABLE_REGISTRY:
        raise InputError(f"Variable '{name}' not in registry")
    return VARIABLE_REGISTRY[source]


def list_variables(
    role: Optional[VariableRole] = None,
    kind: Optional[VariableKind] = None,
) -> List[str]:
    """
    List registered columns in header order, optionally filtered.

    :param role: Filter by analysis role
    :param kind: Filter by measurement type
    :returns: List of column names
    """
    results = []
    for name, info in VARIABLE_REGISTRY.items():
        if role is not None and info["role"] != role:
            continue
        if kind is not None and info["kind"] != kind:
            continue
        results.append(name)
    return results


def get_standardized_variables() -> List[str]:
    """Get columns that receive a z-scored copy during preparation."""
    return [n for n, info in VARIABLE_REGISTRY.items() if info["standardize"]]


def standardized_name(column: str) -> str:
    """Name of the z-scored copy of a column."""
    return f"{STANDARDIZED_PREFIX}{column}"


def source_column(name: str) -> str:
    """Map a z-scored column name back to the raw column it derives from."""
    if name.startswith(STANDARDIZED_PREFIX):
        base = name[len(STANDARDIZED_PREFIX):]
        if base in VARIABLE_REGISTRY and VARIABLE_REGISTRY[base]["standardize"]:
            return base
    return name


def is_categorical(name: str) -> bool:
    """Whether a (raw or z-prefixed) column is categorical."""
    source = source_column(name)
    info = VARIABLE_REGISTRY.get(source)
    if info is None:
        return False
    return info["kind"] == VariableKind.CATEGORICAL


# =============================================================================
# ModelSpec TypedDict
# =============================================================================

class ModelSpec(TypedDict):
    """
    Configuration record for one mixed model.

    Keys:
        name: Model identifier (e.g. "full", "null")
        response: Response column
        main_effects: Variables entered additively
        interactions: Variable pairs entered as a*b (main effects implied)
        random_intercepts: Grouping factors, outer to inner
        family: Response distribution
        description: Human-readable description
    """
    name: str
    response: str
    main_effects: List[str]
    interactions: List[Tuple[str, str]]
    random_intercepts: List[str]
    family: ModelFamily
    description: str


def create_model_spec(
    name: str,
    main_effects: Optional[List[str]] = None,
    interactions: Optional[List[Tuple[str, str]]] = None,
    response: str = RESPONSE_VAR,
    random_intercepts: Optional[List[str]] = None,
    family: ModelFamily = ModelFamily.BETA,
    description: str = "",
) -> ModelSpec:
    """
    Create a ModelSpec dictionary.

    :param name: Model identifier
    :param main_effects: Variables entered additively
    :param interactions: Variable pairs entered as a*b
    :param response: Response column (default: daily_percentile)
    :param random_intercepts: Grouping factors (default: labid, subid_unique)
    :param family: Response distribution (default: BETA)
    :param description: Human-readable description
    :returns: ModelSpec dictionary
    """
    if random_intercepts is None:
        random_intercepts = [LAB_VAR, SUBJECT_VAR]
    return {
        "name": name,
        "response": response,
        "main_effects": list(main_effects or []),
        "interactions": [tuple(pair) for pair in (interactions or [])],
        "random_intercepts": list(random_intercepts),
        "family": family,
        "description": description,
    }


def _term_label(variables: Tuple[str, ...]) -> str:
    """Canonical label for a term (order-independent for interactions)."""
    return ":".join(sorted(variables))


def ordered_terms(spec: ModelSpec) -> List[Tuple[str, ...]]:
    """
    Expand a ModelSpec into its fixed-effect terms, in formula order.

    Interaction pairs contribute both main effects and the product term.
    Duplicates are removed keeping the first occurrence.

    :param spec: ModelSpec dictionary
    :returns: List of terms, each a tuple of variable names
    """
    terms: List[Tuple[str, ...]] = []
    seen = set()

    def _add(term: Tuple[str, ...]) -> None:
        label = _term_label(term)
        if label not in seen:
            seen.add(label)
            terms.append(term)

    for a, b in spec["interactions"]:
        _add((a,))
        _add((b,))
    for var in spec["main_effects"]:
        _add((var,))
    for a, b in spec["interactions"]:
        _add((a, b))
    return terms


def fixed_terms(spec: ModelSpec) -> FrozenSet[str]:
    """Set of canonical fixed-effect term labels of a ModelSpec."""
    return frozenset(_term_label(t) for t in ordered_terms(spec))


def model_variables(spec: ModelSpec, raw: bool = True) -> List[str]:
    """
    Every variable referenced by a ModelSpec (response, fixed and random).

    This is the declared complete-case rule: rows missing any of these
    are excluded before fitting.

    :param spec: ModelSpec dictionary
    :param raw: Map z-scored names back to their raw source columns
    :returns: Ordered list of column names
    """
    names = [spec["response"]]
    for term in ordered_terms(spec):
        names.extend(term)
    names.extend(spec["random_intercepts"])

    result: List[str] = []
    for name in names:
        col = source_column(name) if raw else name
        if col not in result:
            result.append(col)
    return result


def formula_term(name: str) -> str:
    """
    Render a variable for a patsy formula.

    Names containing formula metacharacters are quoted with Q();
    categorical variables are wrapped in C().
    """
    # Characters that break patsy formulas: . [ ] ( ) + - * / : ^ | ~ space
    special_chars = set('.[]()+-*/:^|~ ')
    needs_quoting = any(c in name for c in special_chars)
    rendered = f"Q('{name}')" if needs_quoting else name
    if is_categorical(name):
        rendered = f"C({rendered})"
    return rendered


def build_fixed_formula(spec: ModelSpec) -> str:
    """Right-hand side of the fixed-effect formula."""
    terms = ordered_terms(spec)
    if not terms:
        return "1"
    return " + ".join(":".join(formula_term(v) for v in term) for term in terms)


def build_formula(spec: ModelSpec, include_random: bool = True) -> str:
    """
    Full model formula, lme4-style, for display and fitting.

    :param spec: ModelSpec dictionary
    :param include_random: Append (1|group) terms
    :returns: Formula string
    """
    lhs = formula_term(spec["response"])
    formula = f"{lhs} ~ {build_fixed_formula(spec)}"
    if include_random:
        for group in spec["random_intercepts"]:
            formula += f" + (1|{group})"
    return formula


def drop_variable(spec: ModelSpec, variable: str, name: str, description: str = "") -> ModelSpec:
    """
    Derive a nested model by removing every term involving a variable.

    The other member of each removed interaction is kept as a main effect.

    :param spec: Source ModelSpec
    :param variable: Variable to remove
    :param name: Name of the derived model
    :param description: Description of the derived model
    :returns: New ModelSpec
    """
    main_effects = [v for v in spec["main_effects"] if v != variable]
    kept_interactions = []
    for a, b in spec["interactions"]:
        if variable in (a, b):
            other = b if a == variable else a
            if other != variable and other not in main_effects:
                main_effects.insert(0, other)
        else:
            kept_interactions.append((a, b))

    # Keep formula order: interaction partners first, as in the source model
    order = [v for term in ordered_terms(spec) for v in term]
    main_effects.sort(key=lambda v: order.index(v) if v in order else len(order))

    return create_model_spec(
        name=name,
        main_effects=main_effects,
        interactions=kept_interactions,
        response=spec["response"],
        random_intercepts=spec["random_intercepts"],
        family=spec["family"],
        description=description,
    )


def drop_interaction(
    spec: ModelSpec,
    pair: Tuple[str, str],
    name: str,
    description: str = "",
) -> ModelSpec:
    """
    Derive a model in which one interaction pair enters only additively.

    :param spec: Source ModelSpec
    :param pair: Interaction pair to replace by its main effects
    :param name: Name of the derived model
    :param description: Description of the derived model
    :returns: New ModelSpec
    """
    target = _term_label(pair)
    interactions = [p for p in spec["interactions"] if _term_label(p) != target]
    if len(interactions) == len(spec["interactions"]):
        raise InputError(f"Interaction {pair} not in model '{spec['name']}'")

    main_effects = list(spec["main_effects"])
    for var in reversed(pair):
        if var not in main_effects:
            main_effects.insert(0, var)

    return create_model_spec(
        name=name,
        main_effects=main_effects,
        interactions=interactions,
        response=spec["response"],
        random_intercepts=spec["random_intercepts"],
        family=spec["family"],
        description=description,
    )


def summarize_model_spec(spec: ModelSpec) -> str:
    """Human-readable one-block summary of a model configuration."""
    lines = [
        f"Model: {spec['name']}",
        f"  Formula: {build_formula(spec)}",
        f"  Family: {spec['family'].name.lower()} (logit link)",
        f"  Fixed terms: {len(fixed_terms(spec))}",
    ]
    if spec["description"]:
        lines.append(f"  Description: {spec['description']}")
    return "\n".join(lines)


# =============================================================================
# DEFAULT MODEL REGISTRY
# =============================================================================

_Z_PRED = standardized_name(PREDICTOR_VAR)
_Z_AGE = standardized_name(AGE_VAR)


def _default_models() -> Dict[str, ModelSpec]:
    full = create_model_spec(
        name="full",
        main_effects=["gender"],
        interactions=[
            (_Z_PRED, _Z_AGE),
            (_Z_PRED, "CDI.agerange"),
            (_Z_PRED, "method"),
            (_Z_PRED, "nae"),
        ],
        description="IDS preference interacting with age, age range, method and language",
    )
    full_no_int = drop_interaction(
        full,
        (_Z_PRED, _Z_AGE),
        name="full_no_interaction",
        description="As full, with age in months entered additively",
    )
    null = drop_variable(
        full, _Z_PRED,
        name="null",
        description="As full, without any IDS preference term",
    )
    null_no_int = drop_variable(
        full_no_int, _Z_PRED,
        name="null_no_interaction",
        description="As full_no_interaction, without any IDS preference term",
    )
    return {m["name"]: m for m in (full, null, full_no_int, null_no_int)}


# Global mutable registry (populated from defaults)
MODEL_REGISTRY: Dict[str, ModelSpec] = _default_models()

DEFAULT_COMPARISONS: List[Tuple[str, str]] = [
    ("null", "full"),
    ("null_no_interaction", "full_no_interaction"),
]


def get_model_spec(name: str) -> ModelSpec:
    """
    Get a model configuration from the registry.

    :param name: Model identifier
    :returns: ModelSpec dict
    :raises InputError: If the model is not registered
    """
    if name not in MODEL_REGISTRY:
        raise InputError(
            f"Model '{name}' not in registry. Available: {sorted(MODEL_REGISTRY)}"
        )
    return MODEL_REGISTRY[name]


def register_model(spec: ModelSpec, overwrite: bool = False) -> ModelSpec:
    """
    Register a model configuration.

    :param spec: ModelSpec dictionary
    :param overwrite: Allow replacing an existing entry
    :returns: The registered spec
    """
    if spec["name"] in MODEL_REGISTRY and not overwrite:
        raise InputError(
            f"Model '{spec['name']}' already registered. Use overwrite=True to replace."
        )
    MODEL_REGISTRY[spec["name"]] = spec
    return spec


def list_models() -> List[str]:
    """Registered model names, in fitting order."""
    return list(MODEL_REGISTRY.keys())


def reset_model_registry() -> None:
    """Reset the model registry to the four default configurations."""
    MODEL_REGISTRY.clear()
    MODEL_REGISTRY.update(_default_models())
