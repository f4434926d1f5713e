import numpy as np
import pandas as pd
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Tuple
from panelmatch.exceptions import (
    PanelMatchDataError,
    DuplicateKeyError,
    InvalidIdentifierTypeError,
    UnknownUnitIdError,
)

# Column added to the balanced frame holding the dense 1..U unit id
UNIT_INDEX_COLUMN = "__unit_index__"

# Identifier kinds accepted by the unit index map
ID_KIND_INTEGER = "integer"
ID_KIND_NUMERIC = "numeric"
ID_KIND_STRING = "string"


@dataclass(frozen=True)
class UnitIndexMap:
    """Bijection between original unit identifiers and dense integer ids.

    Dense ids run from 1 to U and follow the sorted order of the original
    identifiers, so the dense id of a unit is also its (1-based) row in the
    unit x time treatment matrix.

    Attributes
    ----------
    original_ids : Tuple[Any, ...]
        Original identifiers in dense-id order (``original_ids[k]`` has dense id ``k + 1``).
    id_kind : str
        One of ``"integer"``, ``"numeric"`` (integral floats) or ``"string"``.
    """
    original_ids: Tuple[Any, ...]
    id_kind: str
    _forward: Dict[Any, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        forward = {original: position + 1 for position, original in enumerate(self.original_ids)}
        if len(forward) != len(self.original_ids):
            raise PanelMatchDataError("Unit identifiers in an index map must be unique.")
        object.__setattr__(self, "_forward", forward)

    def __len__(self) -> int:
        return len(self.original_ids)

    def encode_one(self, original_id: Any) -> int:
        try:
            return self._forward[original_id]
        except KeyError:
            raise UnknownUnitIdError(f"Unit identifier {original_id!r} is not in the index map.") from None

    def encode(self, original_ids: Iterable[Any]) -> np.ndarray:
        """Map original identifiers to dense ids."""
        return np.array([self.encode_one(original) for original in original_ids], dtype=np.int64)

    def decode_one(self, dense_id: int) -> Any:
        dense_id = int(dense_id)
        if dense_id < 1 or dense_id > len(self.original_ids):
            raise UnknownUnitIdError(
                f"Internal unit id {dense_id} is outside the index map (1..{len(self.original_ids)})."
            )
        return self.original_ids[dense_id - 1]

    def decode(self, dense_ids: Iterable[int]) -> List[Any]:
        """Map dense ids back to the original identifiers."""
        return [self.decode_one(dense_id) for dense_id in dense_ids]


def _as_python_scalar(value: Any) -> Any:
    # numpy scalars become plain Python values so decoded ids compare and print naturally
    return value.item() if isinstance(value, np.generic) else value


def build_unit_index(unit_ids: pd.Series) -> UnitIndexMap:
    """Build the dense re-encoding of a unit identifier column.

    Parameters
    ----------
    unit_ids : pd.Series
        The unit identifier column (one entry per row; duplicates expected).

    Returns
    -------
    UnitIndexMap
        Mapping over the sorted unique identifiers.

    Raises
    ------
    PanelMatchDataError
        If any identifier is missing.
    InvalidIdentifierTypeError
        If the column is boolean, holds non-integral numbers, or mixes types.
    """
    if unit_ids.isna().any():
        raise PanelMatchDataError("Cannot have NA unit ids.")

    values = unit_ids
    if isinstance(values.dtype, pd.CategoricalDtype):
        values = values.astype(object)

    if pd.api.types.is_bool_dtype(values):
        raise InvalidIdentifierTypeError(
            "Unit ID data is not integer, numeric, or character (boolean column given)."
        )

    if pd.api.types.is_integer_dtype(values):
        id_kind = ID_KIND_INTEGER
    elif pd.api.types.is_float_dtype(values):
        as_array = values.to_numpy(dtype=float)
        if not np.all(np.mod(as_array, 1) == 0):
            raise InvalidIdentifierTypeError(
                "Numeric unit ids must be integer-valued; please convert the unit id column to integers."
            )
        id_kind = ID_KIND_NUMERIC
    elif all(isinstance(value, str) for value in values):
        id_kind = ID_KIND_STRING
    else:
        raise InvalidIdentifierTypeError("Unit ID data is not integer, numeric, or character.")

    unique_ids = sorted(_as_python_scalar(value) for value in pd.unique(values))
    return UnitIndexMap(original_ids=tuple(unique_ids), id_kind=id_kind)


def check_unique_keys(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> None:
    """Raise if (unit, time) pairs do not uniquely identify rows."""
    duplicate_count = int(df.duplicated([unit_id_column_name, time_period_column_name]).sum())
    if duplicate_count > 0:
        raise DuplicateKeyError(
            f"Time, unit combinations should uniquely identify rows; found {duplicate_count} duplicate pair(s). "
            "Please remove duplicates."
        )


def check_time_column(df: pd.DataFrame, time_period_column_name: str) -> None:
    """Raise unless the time column holds integer-valued numbers with no missing entries."""
    time_values = df[time_period_column_name]
    if time_values.isna().any():
        raise PanelMatchDataError("Cannot have NA time ids.")
    if pd.api.types.is_bool_dtype(time_values) or not pd.api.types.is_numeric_dtype(time_values):
        raise PanelMatchDataError("Please convert the time id column to consecutive integers.")
    if not np.all(np.mod(time_values.to_numpy(dtype=float), 1) == 0):
        raise PanelMatchDataError("Please convert the time id column to consecutive integers.")


def check_treatment_column(df: pd.DataFrame, treatment_column_name: str) -> None:
    """Raise unless the treatment column is a 0/1 indicator (missing values allowed)."""
    treatment_values = df[treatment_column_name]
    if not (pd.api.types.is_numeric_dtype(treatment_values) or pd.api.types.is_bool_dtype(treatment_values)):
        raise PanelMatchDataError("Treatment indicator must be a binary variable (0 or 1).")
    observed = treatment_values.dropna().astype(float).unique()
    if not np.all(np.isin(observed, [0.0, 1.0])):
        raise PanelMatchDataError("Treatment indicator must be a binary variable (0 or 1).")


def balance_panel(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> pd.DataFrame:
    """Rectangularize a long panel.

    Every unit receives a row for every integer period between the smallest and
    largest time value found anywhere in the panel. Rows that were absent from
    the input are filled with NA on every non-key column.

    Parameters
    ----------
    df : pd.DataFrame
        Long panel with unique (unit, time) pairs.
    unit_id_column_name : str
        Name of the unit identifier column.
    time_period_column_name : str
        Name of the (integer) time column.

    Returns
    -------
    pd.DataFrame
        New frame sorted by unit, then time, with a fresh RangeIndex. The input is not modified.
    """
    check_unique_keys(df, unit_id_column_name, time_period_column_name)

    time_values = df[time_period_column_name].astype(np.int64)
    all_periods = np.arange(int(time_values.min()), int(time_values.max()) + 1, dtype=np.int64)
    all_units = sorted(_as_python_scalar(value) for value in pd.unique(df[unit_id_column_name]))

    full_index = pd.MultiIndex.from_product(
        [all_units, all_periods], names=[unit_id_column_name, time_period_column_name]
    )
    # Reindexing against the full product inserts the missing (unit, time) rows as NA
    balanced = (
        df.assign(**{time_period_column_name: time_values})
        .set_index([unit_id_column_name, time_period_column_name])
        .reindex(full_index)
        .reset_index()
    )
    return balanced


def flip_treatment(df: pd.DataFrame, treatment_column_name: str) -> pd.DataFrame:
    """Return a copy of ``df`` with the treatment indicator inverted (NA preserved)."""
    flipped = df.copy()
    flipped[treatment_column_name] = 1 - flipped[treatment_column_name]
    return flipped


@dataclass(frozen=True)
class PanelData:
    """A validated, encoded and balanced panel ready for matching.

    Attributes
    ----------
    frame : pd.DataFrame
        Balanced long frame sorted by (unit, time); row ``u * n_periods + p`` holds
        unit position ``u`` at period position ``p``. Carries the dense id in
        ``UNIT_INDEX_COLUMN``.
    treatment : np.ndarray
        Float treatment matrix of shape (n_units, n_periods); NaN marks missing cells.
    periods : np.ndarray
        Integer period labels, one per column of ``treatment``.
    unit_index : UnitIndexMap
        Map between original and dense unit ids.
    unitid, time, treat : str
        Column names of the unit id, time id and treatment indicator.
    """
    frame: pd.DataFrame
    treatment: np.ndarray
    periods: np.ndarray
    unit_index: UnitIndexMap
    unitid: str
    time: str
    treat: str

    @property
    def n_units(self) -> int:
        return self.treatment.shape[0]

    @property
    def n_periods(self) -> int:
        return self.treatment.shape[1]

    def with_flipped_treatment(self) -> "PanelData":
        """Return the ATC view of this panel: a new PanelData with 0 and 1 swapped."""
        flipped_matrix = np.where(np.isnan(self.treatment), np.nan, 1.0 - self.treatment)
        return replace(
            self,
            frame=flip_treatment(self.frame, self.treat),
            treatment=flipped_matrix,
        )


def prepare_panel(
    df: pd.DataFrame,
    unit_id_column_name: str,
    time_period_column_name: str,
    treatment_column_name: str,
) -> PanelData:
    """Validate, re-encode and balance a long panel.

    Parameters
    ----------
    df : pd.DataFrame
        Input panel. Not modified.
    unit_id_column_name : str
        Unit identifier column (integer, integral numeric or string).
    time_period_column_name : str
        Time column (integers).
    treatment_column_name : str
        Binary treatment column.

    Returns
    -------
    PanelData

    Raises
    ------
    PanelMatchDataError
        For NA unit ids, non-integer time ids or a non-binary treatment.
    DuplicateKeyError
        If (unit, time) pairs are not unique.
    InvalidIdentifierTypeError
        If the unit ids are of an unsupported type.
    """
    unit_index = build_unit_index(df[unit_id_column_name])
    check_time_column(df, time_period_column_name)
    check_treatment_column(df, treatment_column_name)

    balanced = balance_panel(df, unit_id_column_name, time_period_column_name)
    balanced[UNIT_INDEX_COLUMN] = unit_index.encode(balanced[unit_id_column_name])
    balanced[treatment_column_name] = balanced[treatment_column_name].astype(float)

    n_units = len(unit_index)
    periods = balanced[time_period_column_name].to_numpy(dtype=np.int64)[: len(balanced) // n_units]
    treatment_matrix = balanced[treatment_column_name].to_numpy(dtype=float).reshape(n_units, len(periods))

    return PanelData(
        frame=balanced,
        treatment=treatment_matrix,
        periods=periods,
        unit_index=unit_index,
        unitid=unit_id_column_name,
        time=time_period_column_name,
        treat=treatment_column_name,
    )
