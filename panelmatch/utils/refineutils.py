"""Refinement of matched sets.

Each refinement method is a ``Refiner`` subclass. The engine resolves the
class once from the configured method name (``make_refiner``), calls
``prepare`` with every matched set (propensity methods fit their pooled
models there), then calls ``refine`` once per matched set. ``refine`` only
reads state built by ``prepare``, so matched sets can be refined concurrently.

Positions used throughout: units are rows and periods are columns of the
unit x time panel; covariates are a (units, periods, covariates) array.
"""
import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Type

import numpy as np

from panelmatch.exceptions import (
    NumericalInstabilityWarning,
    PanelMatchConfigError,
    PanelMatchRefinementError,
)
from panelmatch.utils.historyutils import TreatedObservation
from panelmatch.utils.psutils import PropensityModel, default_propensity_model

SINGULAR_KEEP = "keep"
SINGULAR_DIAGONAL = "diagonal"
SINGULAR_RAISE = "raise"
SINGULAR_POLICIES = (SINGULAR_KEEP, SINGULAR_DIAGONAL, SINGULAR_RAISE)

# Variances at or below this are treated as zero in the diagonal metric
_VARIANCE_FLOOR = 1e-12


@dataclass(frozen=True)
class RefinementContext:
    """Read-only inputs shared by every matched set of one matching run."""
    covariates: Optional[np.ndarray]
    lag: int
    lead: Tuple[int, ...]
    size_match: int = 10
    use_diagonal_variance_matrix: bool = False
    singular_covariance: str = SINGULAR_KEEP
    verbose: bool = False
    unit_labels: Sequence[Any] = ()
    period_labels: Sequence[Any] = ()

    def describe(self, treated: TreatedObservation) -> str:
        unit, period = treated
        unit_label = self.unit_labels[unit] if len(self.unit_labels) else unit
        period_label = self.period_labels[period] if len(self.period_labels) else period
        return f"unit {unit_label!r} at time {period_label}"


@dataclass(frozen=True)
class RefinedSet:
    """Outcome of refining one matched set.

    Attributes
    ----------
    controls : np.ndarray
        Unit positions retained in the refined set, in panel order.
    weights : np.ndarray
        One weight per retained control; sums to 1 when non-empty.
    candidates : np.ndarray
        Unit positions that entered refinement (the unrefined set).
    scores : Optional[np.ndarray]
        Per-candidate raw distance (matching methods) or pre-normalization
        score (weighting methods); NaN where a candidate had no usable
        covariates. Kept only in verbose mode.
    diagnostics : Tuple[str, ...]
        Non-fatal numerical notes raised while refining this set.
    """
    controls: np.ndarray
    weights: np.ndarray
    candidates: np.ndarray
    scores: Optional[np.ndarray] = None
    diagnostics: Tuple[str, ...] = field(default_factory=tuple)


def _uniform(controls: np.ndarray) -> np.ndarray:
    return np.full(len(controls), 1.0 / len(controls)) if len(controls) else np.zeros(0)


def _select_nearest(distances: np.ndarray, size_match: int) -> np.ndarray:
    """Indices of the ``size_match`` smallest finite distances, ties kept in input order."""
    finite = np.flatnonzero(np.isfinite(distances))
    order = finite[np.argsort(distances[finite], kind="stable")]
    # Report the selection in panel order
    return np.sort(order[:size_match])


def _normalize(scores: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Keep finite positive scores and rescale them to sum to 1."""
    usable = np.flatnonzero(np.isfinite(scores) & (scores > 0))
    total = scores[usable].sum()
    if len(usable) == 0 or not np.isfinite(total) or total <= 0:
        return np.zeros(0, dtype=np.int64), np.zeros(0)
    return usable, scores[usable] / total


class Refiner(ABC):
    """Base class for refinement methods."""

    name: str = ""
    is_matching: bool = False
    uses_covariates: bool = True

    def __init__(self, context: RefinementContext) -> None:
        self.context = context

    def covariate_periods(self, period: int) -> List[int]:
        """Period positions whose covariates this method reads for a treated observation at ``period``."""
        return list(range(period - self.context.lag, period + 1))

    def prepare(self, matched_sets: Mapping[TreatedObservation, np.ndarray]) -> None:
        """Fit any state shared across matched sets. Default: nothing to do."""
        return None

    @abstractmethod
    def refine(self, treated: TreatedObservation, candidates: np.ndarray) -> RefinedSet:
        ...

    def _result(
        self,
        candidates: np.ndarray,
        selected: np.ndarray,
        weights: np.ndarray,
        scores: Optional[np.ndarray],
        diagnostics: Sequence[str] = (),
    ) -> RefinedSet:
        return RefinedSet(
            controls=candidates[selected],
            weights=weights,
            candidates=candidates,
            scores=scores if self.context.verbose else None,
            diagnostics=tuple(diagnostics),
        )


class NoRefinement(Refiner):
    """Every candidate stays in the set with weight 1 / n."""

    name = "none"
    uses_covariates = False

    def refine(self, treated: TreatedObservation, candidates: np.ndarray) -> RefinedSet:
        return RefinedSet(controls=candidates, weights=_uniform(candidates), candidates=candidates)


class MahalanobisMatching(Refiner):
    """Keep the ``size_match`` candidates closest in Mahalanobis distance.

    For each lag period t - l (l = 1..lag) the covariance matrix is estimated
    over the candidates with complete covariates at that period, and each
    candidate's distance to the treated unit is
    sqrt((x_c - x_u)' S^-1 (x_c - x_u)). A candidate's score is the mean of
    its distances over the periods where both it and the treated unit are
    observed; candidates with no such period are dropped.
    """

    name = "mahalanobis"
    is_matching = True

    def covariate_periods(self, period: int) -> List[int]:
        return [p for p in range(period - self.context.lag, period) if p >= 0]

    def _diagonal_distances(self, pool: np.ndarray, target: np.ndarray, variances: np.ndarray) -> np.ndarray:
        informative = variances > _VARIANCE_FLOOR
        if not informative.any():
            return np.zeros(pool.shape[0])
        scaled = (pool[:, informative] - target[informative]) / np.sqrt(variances[informative])
        return np.sqrt(np.sum(scaled ** 2, axis=1))

    def _period_distances(
        self, pool: np.ndarray, target: np.ndarray, where: str, notes: List[str]
    ) -> Optional[np.ndarray]:
        """Distances of ``pool`` rows to ``target``; None if the period is unusable under the 'keep' policy."""
        if pool.shape[0] < 2:
            covariance = np.full((pool.shape[1], pool.shape[1]), np.nan)
        else:
            covariance = np.atleast_2d(np.cov(pool, rowvar=False, ddof=1))

        if self.context.use_diagonal_variance_matrix:
            return self._diagonal_distances(pool, target, np.nan_to_num(np.diag(covariance)))

        singular = (
            not np.all(np.isfinite(covariance))
            or np.linalg.matrix_rank(covariance) < covariance.shape[0]
        )
        if not singular:
            difference = pool - target
            squared = np.einsum("ij,jk,ik->i", difference, np.linalg.inv(covariance), difference)
            return np.sqrt(np.clip(squared, 0, None))

        policy = self.context.singular_covariance
        if policy == SINGULAR_RAISE:
            raise PanelMatchRefinementError(f"Singular covariance matrix while refining {where}.")
        if policy == SINGULAR_DIAGONAL:
            message = f"Singular covariance matrix while refining {where}; using the diagonal variance matrix."
            warnings.warn(message, NumericalInstabilityWarning)
            notes.append(message)
            return self._diagonal_distances(pool, target, np.nan_to_num(np.diag(covariance)))
        message = f"Singular covariance matrix while refining {where}; keeping the full matched set."
        warnings.warn(message, NumericalInstabilityWarning)
        notes.append(message)
        return None

    def refine(self, treated: TreatedObservation, candidates: np.ndarray) -> RefinedSet:
        unit, period = treated
        covariates = self.context.covariates
        size_match = self.context.size_match
        n_candidates = len(candidates)
        if n_candidates == 0:
            return self._result(candidates, np.zeros(0, dtype=np.int64), np.zeros(0), np.zeros(0))

        # Which (candidate, period) cells carry complete covariates on both sides
        periods = self.covariate_periods(period)
        usable = np.zeros((n_candidates, len(periods)), dtype=bool)
        for column, lag_period in enumerate(periods):
            target = covariates[unit, lag_period]
            if np.isnan(target).any():
                continue
            usable[:, column] = ~np.isnan(covariates[candidates, lag_period]).any(axis=1)
        eligible = usable.any(axis=1)

        needs_ranking = eligible.sum() > size_match
        if not needs_ranking and not self.context.verbose:
            selected = np.flatnonzero(eligible)
            return self._result(candidates, selected, _uniform(selected), None)

        notes: List[str] = []
        total = np.zeros(n_candidates)
        counts = np.zeros(n_candidates)
        unrefinable = False
        for column, lag_period in enumerate(periods):
            rows = np.flatnonzero(usable[:, column])
            if len(rows) == 0:
                continue
            where = f"{self.context.describe(treated)} (covariates at time {self._period_label(lag_period)})"
            distances = self._period_distances(
                covariates[candidates[rows], lag_period], covariates[unit, lag_period], where, notes
            )
            if distances is None:
                unrefinable = True
                continue
            total[rows] += distances
            counts[rows] += 1

        with np.errstate(invalid="ignore", divide="ignore"):
            mean_distance = np.where(counts > 0, total / np.maximum(counts, 1), np.nan)

        if unrefinable or not needs_ranking:
            selected = np.flatnonzero(eligible)
        else:
            selected = _select_nearest(mean_distance, size_match)
        return self._result(candidates, selected, _uniform(selected), mean_distance, notes)

    def _period_label(self, period: int) -> Any:
        labels = self.context.period_labels
        return labels[period] if len(labels) else period


class _PropensityRefiner(Refiner):
    """Shared pooled fitting for the propensity-score based methods.

    For each lead offset in ``_offsets`` one model is fit on the pool of every
    treated observation (label 1) and its candidates (label 0), with
    covariates measured at the treated period plus that offset. Rows with
    missing covariates are left out of the fit and receive a NaN score.
    """

    def __init__(self, context: RefinementContext, model: PropensityModel) -> None:
        super().__init__(context)
        self.model = model
        self._treated_scores: Dict[TreatedObservation, np.ndarray] = {}
        self._candidate_scores: Dict[TreatedObservation, np.ndarray] = {}

    def _offsets(self) -> List[int]:
        return [0]

    def covariate_periods(self, period: int) -> List[int]:
        return [period + offset for offset in self._offsets()]

    def _fit_offset(self, matched_sets: Mapping[TreatedObservation, np.ndarray], offset: int):
        covariates = self.context.covariates
        rows, labels, owners = [], [], []
        for treated, candidates in matched_sets.items():
            if len(candidates) == 0:
                continue
            unit, period = treated
            rows.append(covariates[unit, period + offset][np.newaxis, :])
            rows.append(covariates[candidates, period + offset])
            labels.append(np.ones(1))
            labels.append(np.zeros(len(candidates)))
            owners.append((treated, len(candidates)))
        if not rows:
            return {}, {}

        X = np.vstack(rows)
        y = np.concatenate(labels)
        complete = ~np.isnan(X).any(axis=1)
        scores = np.full(len(y), np.nan)
        if complete.any() and y[complete].min() != y[complete].max():
            fitted = np.asarray(self.model.fit_predict(X[complete], y[complete]), dtype=float)
            if fitted.shape != (int(complete.sum()),):
                raise PanelMatchRefinementError(
                    "Propensity model returned a score vector of the wrong length."
                )
            scores[complete] = fitted
        else:
            warnings.warn(
                f"Cannot fit the {self.name} propensity model at lead offset {offset}: "
                "complete covariates for both treated and control observations are required.",
                UserWarning,
            )

        treated_scores, candidate_scores, position = {}, {}, 0
        for treated, n_candidates in owners:
            treated_scores[treated] = scores[position]
            candidate_scores[treated] = scores[position + 1:position + 1 + n_candidates]
            position += 1 + n_candidates
        return treated_scores, candidate_scores

    def prepare(self, matched_sets: Mapping[TreatedObservation, np.ndarray]) -> None:
        offsets = self._offsets()
        per_offset = [self._fit_offset(matched_sets, offset) for offset in offsets]
        self._treated_scores, self._candidate_scores = {}, {}
        for treated, candidates in matched_sets.items():
            if len(candidates) == 0:
                continue
            self._treated_scores[treated] = np.array([fit[0][treated] for fit in per_offset])
            self._candidate_scores[treated] = np.column_stack([fit[1][treated] for fit in per_offset])

    def _scores_for(self, treated: TreatedObservation, candidates: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        if treated not in self._candidate_scores:
            raise PanelMatchRefinementError(
                f"No fitted propensity scores for {self.context.describe(treated)}; call prepare() first."
            )
        candidate_scores = self._candidate_scores[treated]
        if candidate_scores.shape[0] != len(candidates):
            raise PanelMatchRefinementError(
                f"Candidates for {self.context.describe(treated)} changed after prepare()."
            )
        return self._treated_scores[treated], candidate_scores


class PropensityMatching(_PropensityRefiner):
    """Keep the ``size_match`` candidates whose propensity score is closest to the treated unit's."""

    is_matching = True

    def __init__(self, context: RefinementContext, model: PropensityModel, name: str) -> None:
        super().__init__(context, model)
        self.name = name

    def refine(self, treated: TreatedObservation, candidates: np.ndarray) -> RefinedSet:
        if len(candidates) == 0:
            return self._result(candidates, np.zeros(0, dtype=np.int64), np.zeros(0), np.zeros(0))
        treated_score, candidate_scores = self._scores_for(treated, candidates)
        distances = np.abs(candidate_scores[:, 0] - treated_score[0])
        selected = _select_nearest(distances, self.context.size_match)
        return self._result(candidates, selected, _uniform(selected), distances)


class PropensityWeighting(_PropensityRefiner):
    """Weight every candidate by its propensity odds e / (1 - e), normalized to sum to 1."""

    def __init__(self, context: RefinementContext, model: PropensityModel, name: str) -> None:
        super().__init__(context, model)
        self.name = name

    def _raw_scores(self, candidate_scores: np.ndarray) -> np.ndarray:
        odds = candidate_scores / (1 - candidate_scores)
        return odds[:, 0]

    def refine(self, treated: TreatedObservation, candidates: np.ndarray) -> RefinedSet:
        if len(candidates) == 0:
            return self._result(candidates, np.zeros(0, dtype=np.int64), np.zeros(0), np.zeros(0))
        _, candidate_scores = self._scores_for(treated, candidates)
        raw = self._raw_scores(candidate_scores)
        selected, weights = _normalize(raw)
        return self._result(candidates, selected, weights, raw)


class MSMPropensityWeighting(PropensityWeighting):
    """Marginal structural model weights over the whole lead window.

    One pooled model is fit per lead offset f = 0..max(lead), at period t + f.
    A candidate's score is the product over f of e / (1 - e): the ratio of the
    probability of the treated path (treated throughout the window) to the
    probability of the candidate's observed untreated path. Requires treatment
    reversal to be forbidden, so that every path is constant over the window.
    """

    def _offsets(self) -> List[int]:
        return list(range(max(self.context.lead) + 1))

    def _raw_scores(self, candidate_scores: np.ndarray) -> np.ndarray:
        odds = candidate_scores / (1 - candidate_scores)
        return np.prod(odds, axis=1)


# name -> (refiner class, propensity model family or None)
REFINEMENT_METHODS: Dict[str, Tuple[Type[Refiner], Optional[str]]] = {
    "none": (NoRefinement, None),
    "mahalanobis": (MahalanobisMatching, None),
    "ps.match": (PropensityMatching, "ps"),
    "CBPS.match": (PropensityMatching, "CBPS"),
    "ps.weight": (PropensityWeighting, "ps"),
    "CBPS.weight": (PropensityWeighting, "CBPS"),
    "ps.msm.weight": (MSMPropensityWeighting, "ps"),
    "CBPS.msm.weight": (MSMPropensityWeighting, "CBPS"),
}
MSM_METHODS = ("ps.msm.weight", "CBPS.msm.weight")


def make_refiner(
    method: str,
    context: RefinementContext,
    propensity_model: Optional[PropensityModel] = None,
) -> Refiner:
    """Instantiate the refiner registered under ``method``.

    Parameters
    ----------
    method : str
        A key of ``REFINEMENT_METHODS``.
    context : RefinementContext
        Shared inputs for this matching run.
    propensity_model : PropensityModel, optional
        Overrides the built-in logit / CBPS model for propensity methods.

    Raises
    ------
    PanelMatchConfigError
        If ``method`` is unknown or a covariate method has no covariates.
    """
    if method not in REFINEMENT_METHODS:
        raise PanelMatchConfigError(
            f"Please choose a valid refinement method; got '{method}', expected one of {list(REFINEMENT_METHODS)}."
        )
    refiner_class, family = REFINEMENT_METHODS[method]
    if refiner_class.uses_covariates and context.covariates is None:
        raise PanelMatchConfigError(f"Refinement method '{method}' requires a covariate formula.")
    if family is None:
        return refiner_class(context)
    model = propensity_model if propensity_model is not None else default_propensity_model(family)
    return refiner_class(context, model, method)
