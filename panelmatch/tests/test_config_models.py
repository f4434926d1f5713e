import numpy as np
import pandas as pd
import pytest
from pydantic import ValidationError
from typing import Any, Dict

from panelmatch.config_models import PanelMatchConfig
from panelmatch.exceptions import (
    DuplicateKeyError,
    InvalidIdentifierTypeError,
    PanelMatchConfigError,
    PanelMatchDataError,
)


@pytest.fixture
def sample_df() -> pd.DataFrame:
    return pd.DataFrame({
        "unit": [1, 1, 1, 2, 2, 2, 3, 3, 3],
        "time": [1, 2, 3] * 3,
        "treat": [0, 0, 1, 0, 0, 0, 0, 0, 0],
        "y": [1.0, 2.0, 3.0, 1.5, 2.5, 3.5, 0.5, 1.0, 1.5],
        "x": [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9],
        "region": ["a", "a", "a", "b", "b", "b", "a", "a", "a"],
    })


@pytest.fixture
def base_config_data(sample_df: pd.DataFrame) -> Dict[str, Any]:
    return {
        "df": sample_df,
        "lag": 1,
        "time": "time",
        "unitid": "unit",
        "treat": "treat",
        "outcome": "y",
        "refinement_method": "none",
        "qoi": "att",
    }


def test_config_valid_defaults(base_config_data: Dict[str, Any]):
    config = PanelMatchConfig(**base_config_data)
    assert config.size_match == 10
    assert config.match_missing is True
    assert config.lead == [0]
    assert config.covs_formula is None
    assert config.covariate_spec is None
    assert config.forbid_treatment_reversal is False
    assert config.matching is True
    assert config.singular_covariance == "keep"
    assert config.parallel is False


@pytest.mark.parametrize("lead, expected", [(2, [2]), (range(3), [0, 1, 2]), ([0, 3], [0, 3])])
def test_config_lead_normalization(base_config_data: Dict[str, Any], lead, expected):
    config = PanelMatchConfig(**{**base_config_data, "lead": lead})
    assert config.lead == expected


def test_config_parses_covariate_formula(base_config_data: Dict[str, Any]):
    config = PanelMatchConfig(**{
        **base_config_data,
        "refinement_method": "mahalanobis",
        "covs_formula": "~ x + I(lag(y, 1:2))",
    })
    assert config.covariate_spec.source_variables == ("y",)


def test_config_missing_required(base_config_data: Dict[str, Any]):
    incomplete = base_config_data.copy()
    del incomplete["lag"]
    with pytest.raises(ValidationError):
        PanelMatchConfig(**incomplete)


def test_config_invalid_type(base_config_data: Dict[str, Any]):
    with pytest.raises(ValidationError):
        PanelMatchConfig(**{**base_config_data, "lag": "four"})


def test_config_rejects_unknown_fields(base_config_data: Dict[str, Any]):
    with pytest.raises(ValidationError):
        PanelMatchConfig(**{**base_config_data, "refinement": "none"})


# --- Configuration errors ---

@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"qoi": "late"}, "valid qoi"),
        ({"refinement_method": "nearest"}, "valid refinement method"),
        ({"lag": 0}, "lag value >= 1"),
        ({"size_match": 0}, "size_match"),
        ({"lead": [-1, 0]}, "non-negative lead"),
        ({"lead": []}, "at least one"),
        ({"listwise_delete": True}, "match_missing = False"),
        ({"refinement_method": "ps.msm.weight", "covs_formula": "~ x"}, "forbid_treatment_reversal"),
        ({"refinement_method": "mahalanobis"}, "requires covs_formula"),
        ({"singular_covariance": "ignore"}, "singular_covariance"),
        ({"propensity_model": object()}, "fit_predict"),
        ({"refinement_method": "mahalanobis", "covs_formula": "~ lag(x, 2:1)"}, "increasing"),
    ],
)
def test_config_errors(base_config_data: Dict[str, Any], overrides, message):
    with pytest.raises(PanelMatchConfigError, match=message):
        PanelMatchConfig(**{**base_config_data, **overrides})


def test_config_listwise_delete_without_match_missing(base_config_data: Dict[str, Any]):
    config = PanelMatchConfig(**{**base_config_data, "listwise_delete": True, "match_missing": False})
    assert config.listwise_delete is True


def test_config_msm_warns(base_config_data: Dict[str, Any]):
    with pytest.warns(UserWarning, match="msm methods"):
        PanelMatchConfig(**{
            **base_config_data,
            "refinement_method": "CBPS.msm.weight",
            "covs_formula": "~ x",
            "forbid_treatment_reversal": True,
            "lead": [0, 1],
        })


# --- Data errors ---

def test_config_df_empty(base_config_data: Dict[str, Any]):
    with pytest.raises(PanelMatchDataError, match="cannot be empty"):
        PanelMatchConfig(**{**base_config_data, "df": pd.DataFrame()})


def test_config_missing_columns(base_config_data: Dict[str, Any]):
    with pytest.raises(PanelMatchDataError, match="Missing required columns.*outcome_missing"):
        PanelMatchConfig(**{**base_config_data, "outcome": "outcome_missing"})


def test_config_missing_exact_match_column(base_config_data: Dict[str, Any]):
    with pytest.raises(PanelMatchDataError, match="country"):
        PanelMatchConfig(**{**base_config_data, "exact_match_variables": ["country"]})


def test_config_missing_lagged_covariate(base_config_data: Dict[str, Any]):
    with pytest.raises(PanelMatchDataError, match="gdp"):
        PanelMatchConfig(**{
            **base_config_data,
            "refinement_method": "mahalanobis",
            "covs_formula": "~ lag(gdp, 1:2)",
        })


def test_config_na_unit_ids(base_config_data: Dict[str, Any], sample_df: pd.DataFrame):
    df = sample_df.astype({"unit": float})
    df.loc[0, "unit"] = np.nan
    with pytest.raises(PanelMatchDataError, match="NA unit ids"):
        PanelMatchConfig(**{**base_config_data, "df": df})


def test_config_invalid_unit_ids(base_config_data: Dict[str, Any], sample_df: pd.DataFrame):
    df = sample_df.assign(unit=sample_df["unit"] + 0.5)
    with pytest.raises(InvalidIdentifierTypeError):
        PanelMatchConfig(**{**base_config_data, "df": df})


def test_config_non_integer_time(base_config_data: Dict[str, Any], sample_df: pd.DataFrame):
    df = sample_df.assign(time=sample_df["time"] + 0.25)
    with pytest.raises(PanelMatchDataError, match="consecutive integers"):
        PanelMatchConfig(**{**base_config_data, "df": df})


def test_config_duplicate_keys(base_config_data: Dict[str, Any], sample_df: pd.DataFrame):
    df = pd.concat([sample_df, sample_df.iloc[[0]]], ignore_index=True)
    with pytest.raises(DuplicateKeyError):
        PanelMatchConfig(**{**base_config_data, "df": df})


def test_config_non_binary_treatment(base_config_data: Dict[str, Any], sample_df: pd.DataFrame):
    df = sample_df.assign(treat=sample_df["treat"] * 2)
    with pytest.raises(PanelMatchDataError, match="binary"):
        PanelMatchConfig(**{**base_config_data, "df": df})
