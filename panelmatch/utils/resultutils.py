from collections.abc import Mapping as MappingABC
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from panelmatch.utils.datautils import UnitIndexMap
from panelmatch.utils.historyutils import TreatedObservation
from panelmatch.utils.refineutils import RefinedSet

# Key of a matched set in a decoded collection: (original unit id, time label)
MatchedSetKey = Tuple[Any, int]


@dataclass(frozen=True)
class MatchedSet:
    """Controls matched to one treated observation.

    Attributes
    ----------
    unit : Any
        Original identifier of the treated unit.
    time : int
        Period at which treatment switched on.
    controls : Tuple[Any, ...]
        Original identifiers of the retained controls, in panel order.
    weights : Mapping[Any, float]
        Weight of each retained control; sums to 1 when the set is non-empty.
    distances : Mapping[Any, float], optional
        Raw distance or pre-normalization score of every candidate that
        entered refinement (verbose mode only).
    diagnostics : Tuple[str, ...]
        Non-fatal numerical notes recorded while refining this set.
    """
    unit: Any
    time: int
    controls: Tuple[Any, ...]
    weights: Mapping[Any, float]
    distances: Optional[Mapping[Any, float]] = None
    diagnostics: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def size(self) -> int:
        return len(self.controls)

    @property
    def is_empty(self) -> bool:
        return len(self.controls) == 0

    def __len__(self) -> int:
        return len(self.controls)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.controls)

    def __contains__(self, unit: Any) -> bool:
        return unit in self.weights


class MatchedSetCollection(MappingABC):
    """Read-only mapping from (treated unit, time) to its ``MatchedSet``.

    Carries the settings that produced the sets: ``lag``,
    ``refinement_method``, ``size_match``, ``treatment``,
    ``exact_match_variables`` and ``covariates`` (design column names).
    """

    def __init__(
        self,
        matched_sets: Mapping[MatchedSetKey, MatchedSet],
        lag: int,
        refinement_method: str,
        treatment: str,
        size_match: Optional[int] = None,
        exact_match_variables: Sequence[str] = (),
        covariates: Sequence[str] = (),
    ) -> None:
        self._sets: Mapping[MatchedSetKey, MatchedSet] = MappingProxyType(dict(matched_sets))
        self.lag = lag
        self.refinement_method = refinement_method
        self.treatment = treatment
        self.size_match = size_match
        self.exact_match_variables = tuple(exact_match_variables)
        self.covariates = tuple(covariates)

    def __getitem__(self, key: MatchedSetKey) -> MatchedSet:
        return self._sets[key]

    def __iter__(self) -> Iterator[MatchedSetKey]:
        return iter(self._sets)

    def __len__(self) -> int:
        return len(self._sets)

    def __repr__(self) -> str:
        return (
            f"MatchedSetCollection(n_sets={len(self)}, lag={self.lag}, "
            f"refinement_method='{self.refinement_method}')"
        )

    def set_sizes(self) -> pd.Series:
        """Number of retained controls per treated observation."""
        keys = list(self._sets.keys())
        index = pd.MultiIndex.from_arrays(
            [[unit for unit, _ in keys], [time for _, time in keys]], names=["unit", "time"]
        )
        return pd.Series([s.size for s in self._sets.values()], index=index, name="matched_set_size", dtype=int)

    def empty_sets(self) -> List[MatchedSetKey]:
        return [key for key, matched_set in self._sets.items() if matched_set.is_empty]

    def summary(self) -> Dict[str, Any]:
        """Overview of the matched sets.

        Returns
        -------
        Dict[str, Any]
            - ``overview``: DataFrame with one row per treated observation
              (unit, time, matched_set_size).
            - ``set_size_summary``: min, quartiles, mean and max of the set sizes.
            - ``number_of_treated_units``: number of treated observations.
            - ``num_units_empty_set``: number of empty matched sets.
            - ``lag``: lag window used.
        """
        sizes = self.set_sizes()
        overview = sizes.reset_index()
        if len(sizes):
            size_summary = {
                "min": float(sizes.min()),
                "q1": float(sizes.quantile(0.25)),
                "median": float(sizes.median()),
                "mean": float(sizes.mean()),
                "q3": float(sizes.quantile(0.75)),
                "max": float(sizes.max()),
            }
        else:
            size_summary = {key: np.nan for key in ("min", "q1", "median", "mean", "q3", "max")}
        return {
            "overview": overview,
            "set_size_summary": size_summary,
            "number_of_treated_units": len(sizes),
            "num_units_empty_set": len(self.empty_sets()),
            "lag": self.lag,
        }

    def to_frame(self) -> pd.DataFrame:
        """Long frame with one row per (treated observation, control)."""
        records = []
        for (unit, time), matched_set in self._sets.items():
            for control in matched_set.controls:
                record = {"unit": unit, "time": time, "control": control, "weight": matched_set.weights[control]}
                if matched_set.distances is not None:
                    record["distance"] = matched_set.distances.get(control, np.nan)
                records.append(record)
        columns = ["unit", "time", "control", "weight"]
        if any(s.distances is not None for s in self._sets.values()):
            columns.append("distance")
        return pd.DataFrame.from_records(records, columns=columns)


@dataclass(frozen=True)
class PanelMatchResults:
    """Matched sets for one configuration, keyed by ``att`` and/or ``atc``.

    Attributes
    ----------
    qoi : str
        Quantity of interest requested (``att``, ``atc`` or ``ate``).
    lead : Tuple[int, ...]
        Lead window.
    outcome : str
        Outcome variable name.
    forbid_treatment_reversal : bool
        Whether treatment reversal was forbidden in the lead window.
    att, atc : MatchedSetCollection, optional
        Matched sets for treated (``att``) and, run on the inverted
        treatment, control (``atc``) observations. ``ate`` fills both.
    """
    qoi: str
    lead: Tuple[int, ...]
    outcome: str
    forbid_treatment_reversal: bool
    att: Optional[MatchedSetCollection] = None
    atc: Optional[MatchedSetCollection] = None

    def keys(self) -> List[str]:
        return [key for key in ("att", "atc") if getattr(self, key) is not None]

    def __getitem__(self, key: str) -> MatchedSetCollection:
        if key not in ("att", "atc") or getattr(self, key) is None:
            raise KeyError(f"No '{key}' matched sets in these results; available: {self.keys()}")
        return getattr(self, key)

    def __contains__(self, key: str) -> bool:
        return key in self.keys()


def decode_matched_sets(
    refined_sets: Mapping[TreatedObservation, RefinedSet],
    unit_index: UnitIndexMap,
    periods: np.ndarray,
    lag: int,
    refinement_method: str,
    treatment: str,
    size_match: Optional[int] = None,
    exact_match_variables: Optional[Sequence[str]] = None,
    covariates: Sequence[str] = (),
) -> MatchedSetCollection:
    """Translate internal positions back to original unit ids and time labels.

    Unit positions are dense ids minus one; decoding goes through
    ``unit_index`` and raises ``UnknownUnitIdError`` for ids outside it.
    """
    decoded: Dict[MatchedSetKey, MatchedSet] = {}
    for (unit, period), refined in refined_sets.items():
        treated_unit = unit_index.decode_one(unit + 1)
        controls = tuple(unit_index.decode(refined.controls + 1))
        weights = MappingProxyType({c: float(w) for c, w in zip(controls, refined.weights)})
        distances = None
        if refined.scores is not None:
            candidates = unit_index.decode(refined.candidates + 1)
            distances = MappingProxyType({c: float(d) for c, d in zip(candidates, refined.scores)})
        time = int(periods[period])
        decoded[(treated_unit, time)] = MatchedSet(
            unit=treated_unit,
            time=time,
            controls=controls,
            weights=weights,
            distances=distances,
            diagnostics=refined.diagnostics,
        )

    return MatchedSetCollection(
        decoded,
        lag=lag,
        refinement_method=refinement_method,
        treatment=treatment,
        size_match=size_match,
        exact_match_variables=exact_match_variables or (),
        covariates=covariates,
    )
