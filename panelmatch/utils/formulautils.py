import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import patsy

from panelmatch.exceptions import PanelMatchConfigError, PanelMatchDataError
from panelmatch.utils.datautils import PanelData

_LAG_TERM = re.compile(
    r"^(?:I\(\s*)?lag\(\s*(?P<var>[^,()]+?)\s*,\s*(?P<window>[^()]+?|c\([^()]*\))\s*\)(?:\s*\))?$"
)
_RANGE_WINDOW = re.compile(r"^(-?\d+)\s*:\s*(-?\d+)$")


@dataclass(frozen=True)
class CovariateSpec:
    """A parsed covariate specification.

    Attributes
    ----------
    terms : Tuple[str, ...]
        Patsy-ready right-hand-side terms (lag terms already replaced by their columns).
    lags : Tuple[Tuple[str, int], ...]
        (variable, k) pairs whose lagged copies must be added to the panel.
    source_variables : Tuple[str, ...]
        Plain variable names referenced through ``lag()``.
    """
    terms: Tuple[str, ...]
    lags: Tuple[Tuple[str, int], ...]
    source_variables: Tuple[str, ...]

    @property
    def rhs(self) -> str:
        return " + ".join(self.terms)


def lag_column_name(variable: str, k: int) -> str:
    return f"{variable}_l{k}"


def _split_top_level(expression: str) -> List[str]:
    """Split a formula right-hand side on '+' signs that are not inside parentheses."""
    terms, depth, current = [], 0, []
    for char in expression:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise PanelMatchConfigError(f"Unbalanced parentheses in covariate formula: {expression!r}")
        if char == "+" and depth == 0:
            terms.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    if depth != 0:
        raise PanelMatchConfigError(f"Unbalanced parentheses in covariate formula: {expression!r}")
    terms.append("".join(current).strip())
    return [term for term in terms if term]


def _parse_lag_window(window: str) -> List[int]:
    window = window.strip()
    range_match = _RANGE_WINDOW.match(window)
    if range_match:
        start, stop = int(range_match.group(1)), int(range_match.group(2))
        if stop < start:
            raise PanelMatchConfigError(f"Lag windows must be increasing sequences, got {window!r}.")
        values = list(range(start, stop + 1))
    else:
        stripped = window
        if stripped.startswith("c(") and stripped.endswith(")"):
            stripped = stripped[2:-1]
        stripped = stripped.strip("[]() ")
        try:
            values = [int(piece) for piece in stripped.split(",") if piece.strip()]
        except ValueError:
            raise PanelMatchConfigError(f"Could not parse lag window {window!r}.") from None
    if not values or any(k < 0 for k in values):
        raise PanelMatchConfigError(f"Lag windows must contain non-negative integers, got {window!r}.")
    return values


def parse_covariate_formula(formula: Union[str, Sequence[str]]) -> CovariateSpec:
    """Parse a one-sided covariate formula.

    Supports plain variables, patsy expressions such as ``I(x**2)`` (R-style
    ``^`` inside ``I()`` is translated to ``**``), and ``lag(x, a:b)`` terms,
    which expand to one column per lag ``k`` holding ``x`` at ``t - k``.

    Parameters
    ----------
    formula : str or Sequence[str]
        Either a formula string such as ``"~ I(lag(y, 1:4)) + tradewb"`` or a list of terms.

    Returns
    -------
    CovariateSpec

    Raises
    ------
    PanelMatchConfigError
        If the formula is empty or a lag term is malformed.
    """
    if isinstance(formula, str):
        expression = formula.strip()
        if expression.startswith("~"):
            expression = expression[1:]
        raw_terms = _split_top_level(expression)
    else:
        raw_terms = []
        for term in formula:
            raw_terms.extend(_split_top_level(str(term)))

    if not raw_terms:
        raise PanelMatchConfigError("Covariate formula does not contain any terms.")

    terms: List[str] = []
    lags: List[Tuple[str, int]] = []
    sources: List[str] = []
    for term in raw_terms:
        lag_match = _LAG_TERM.match(term)
        if lag_match:
            variable = lag_match.group("var").strip().strip("'\"")
            for k in _parse_lag_window(lag_match.group("window")):
                if (variable, k) not in lags:
                    lags.append((variable, k))
                    terms.append(f'Q("{lag_column_name(variable, k)}")')
            if variable not in sources:
                sources.append(variable)
        elif term.startswith("I("):
            terms.append(term.replace("^", "**"))
        else:
            terms.append(term)

    return CovariateSpec(terms=tuple(terms), lags=tuple(lags), source_variables=tuple(sources))


def add_lagged_columns(frame: pd.DataFrame, unit_id_column_name: str, spec: CovariateSpec) -> pd.DataFrame:
    """Return a copy of ``frame`` with the lagged columns required by ``spec``.

    ``frame`` must be sorted by unit, then time, and balanced, so that a
    within-unit shift of k rows is a shift of k periods.
    """
    missing = [variable for variable in spec.source_variables if variable not in frame.columns]
    if missing:
        raise PanelMatchDataError(f"Lagged covariate(s) not found in data: {', '.join(missing)}")

    lagged = frame.copy()
    grouped = lagged.groupby(unit_id_column_name, sort=False)
    for variable, k in spec.lags:
        lagged[lag_column_name(variable, k)] = grouped[variable].shift(k)
    return lagged


def build_covariate_array(panel: PanelData, spec: CovariateSpec) -> Tuple[np.ndarray, List[str]]:
    """Evaluate a covariate specification on a balanced panel.

    Parameters
    ----------
    panel : PanelData
        Balanced panel.
    spec : CovariateSpec
        Parsed covariate specification.

    Returns
    -------
    Tuple[np.ndarray, List[str]]
        Array of shape (n_units, n_periods, n_covariates) with NaN for missing
        values, and the design column names.

    Raises
    ------
    PanelMatchDataError
        If the formula cannot be evaluated against the data.
    """
    frame = add_lagged_columns(panel.frame, panel.unitid, spec)
    # Nothing counts as missing for patsy, so rows stay aligned and NaN flows through
    keep_missing = patsy.NAAction(NA_types=[])
    try:
        design = patsy.dmatrix(spec.rhs, frame, NA_action=keep_missing, return_type="dataframe")
    except Exception as e:
        raise PanelMatchDataError(f"Could not evaluate covariate formula '{spec.rhs}': {e}") from e

    # Factors are coded against the intercept (k - 1 dummies), then the intercept itself goes
    design = design.drop(columns="Intercept", errors="ignore")
    values = design.to_numpy(dtype=float)
    covariates = values.reshape(panel.n_units, panel.n_periods, values.shape[1])
    return covariates, list(design.columns)
