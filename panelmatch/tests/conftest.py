# panelmatch/tests/conftest.py
import numpy as np
import pandas as pd
import pytest


def _long_panel(treatment: dict, periods) -> pd.DataFrame:
    rows = []
    for unit, path in treatment.items():
        for time, value in zip(periods, path):
            rows.append({"unit": unit, "time": time, "treat": value})
    df = pd.DataFrame(rows)
    df["y"] = np.arange(len(df), dtype=float)
    return df


@pytest.fixture
def small_panel() -> pd.DataFrame:
    """Three units over five periods; unit 1 switches on at t=3."""
    return _long_panel(
        {
            1: [0, 0, 1, 1, 1],
            2: [0, 0, 0, 0, 0],
            3: [0, 0, 0, 0, 0],
        },
        periods=range(1, 6),
    )


@pytest.fixture
def small_panel_with_gap(small_panel: pd.DataFrame) -> pd.DataFrame:
    """Same panel with unit 3's treatment missing at t=1."""
    df = small_panel.copy()
    df["treat"] = df["treat"].astype(float)
    df.loc[(df["unit"] == 3) & (df["time"] == 1), "treat"] = np.nan
    return df


@pytest.fixture
def simulated_panel() -> pd.DataFrame:
    """Forty units over twelve years with persistent, reversible treatment and two covariates."""
    rng = np.random.default_rng(42)
    n_units, n_periods = 40, 12
    treatment = np.zeros((n_units, n_periods), dtype=int)
    treatment[:, 0] = rng.random(n_units) < 0.3
    for t in range(1, n_periods):
        stay = rng.random(n_units) < 0.8
        treatment[:, t] = np.where(stay, treatment[:, t - 1], 1 - treatment[:, t - 1])

    x1 = rng.normal(size=(n_units, n_periods)) + 0.5 * treatment
    x2 = rng.normal(size=(n_units, n_periods))
    y = 1.0 + x1 - 0.5 * x2 + 2.0 * treatment + rng.normal(scale=0.5, size=(n_units, n_periods))

    return pd.DataFrame({
        "unit": np.repeat(np.arange(1, n_units + 1), n_periods),
        "year": np.tile(np.arange(2001, 2001 + n_periods), n_units),
        "treat": treatment.ravel(),
        "x1": x1.ravel(),
        "x2": x2.ravel(),
        "y": y.ravel(),
        "region": np.repeat(np.where(np.arange(n_units) % 2 == 0, "north", "south"), n_periods),
    })


@pytest.fixture
def simulated_config(simulated_panel: pd.DataFrame) -> dict:
    return {
        "df": simulated_panel,
        "lag": 2,
        "time": "year",
        "unitid": "unit",
        "treat": "treat",
        "outcome": "y",
        "refinement_method": "mahalanobis",
        "covs_formula": "~ x1 + x2",
        "qoi": "att",
        "lead": [0, 1],
        "size_match": 3,
    }
