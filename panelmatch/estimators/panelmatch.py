from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple, Union

import numpy as np

from ..config_models import PanelMatchConfig
from ..exceptions import (
    PanelMatchDataError,
    PanelMatchError,
)
from ..utils.constraintutils import (
    encode_exact_match_values,
    filter_exact_matches,
    listwise_delete,
    qoi_branches,
)
from ..utils.datautils import PanelData, prepare_panel
from ..utils.formulautils import build_covariate_array
from ..utils.historyutils import TreatedObservation, match_treatment_histories
from ..utils.refineutils import RefinedSet, RefinementContext, Refiner, make_refiner
from ..utils.resultutils import MatchedSetCollection, PanelMatchResults, decode_matched_sets


class PanelMatch:
    """
    Matched-set construction for time-series cross-section data.

    For every treated observation (a unit whose treatment switches on at time
    ``t``), ``PanelMatch`` finds the control units that share its treatment
    history over the ``lag`` preceding periods and are untreated at ``t``. The
    resulting matched sets are then refined on covariates by Mahalanobis
    matching, propensity-score matching or propensity-score weighting.

    Parameters
    ----------
    config : PanelMatchConfig or dict
        Configuration object or dictionary with the parameters documented on
        ``PanelMatchConfig``:
        - df : pd.DataFrame
            Long panel with unit id, time id, treatment and outcome columns.
        - lag : int
            Treatment-history window length.
        - time, unitid, treat, outcome : str
            Column names.
        - refinement_method : str
            "none", "mahalanobis", "ps.match", "CBPS.match", "ps.weight",
            "CBPS.weight", "ps.msm.weight" or "CBPS.msm.weight".
        - qoi : str
            "att", "atc" or "ate".
        - covs_formula : str or list of str, optional
            Covariates used for refinement.
        - size_match, match_missing, lead, exact_match_variables,
          forbid_treatment_reversal, matching, listwise_delete,
          use_diagonal_variance_matrix, singular_covariance,
          propensity_model, verbose, parallel, cores
            See ``PanelMatchConfig``.

    Attributes
    ----------
    config : PanelMatchConfig
        The validated configuration.

    Examples
    --------
    >>> pm = PanelMatch({
    ...     "df": df, "lag": 4, "time": "year", "unitid": "wbcode2",
    ...     "treat": "dem", "outcome": "y", "refinement_method": "mahalanobis",
    ...     "covs_formula": "~ I(lag(tradewb, 1:4)) + I(lag(y, 1:4))",
    ...     "qoi": "att", "lead": [0, 1, 2, 3], "size_match": 5,
    ... })
    >>> results = pm.fit()
    >>> results["att"].summary()["number_of_treated_units"]
    """

    def __init__(self, config: Union[PanelMatchConfig, dict]) -> None:
        if isinstance(config, dict):
            config = PanelMatchConfig(**config)
        self.config = config

        self.df = config.df
        self.lag = config.lag
        self.time = config.time
        self.unitid = config.unitid
        self.treat = config.treat
        self.outcome = config.outcome
        self.refinement_method = config.refinement_method
        self.qoi = config.qoi
        self.lead = tuple(sorted(set(config.lead)))

    def _covariates(self, panel: PanelData) -> Tuple[Optional[np.ndarray], List[str]]:
        spec = self.config.covariate_spec
        if spec is None:
            return None, []
        return build_covariate_array(panel, spec)

    def _refine_all(
        self,
        refiner: Refiner,
        matched_sets: Dict[TreatedObservation, np.ndarray],
    ) -> Dict[TreatedObservation, RefinedSet]:
        items = list(matched_sets.items())
        if self.config.parallel and len(items) > 1:
            with ThreadPoolExecutor(max_workers=self.config.cores) as executor:
                refined = list(executor.map(lambda item: refiner.refine(*item), items))
        else:
            refined = [refiner.refine(treated, candidates) for treated, candidates in items]
        # executor.map preserves submission order, so both paths keep panel order
        return {treated: result for (treated, _), result in zip(items, refined)}

    def _match_branch(
        self,
        panel: PanelData,
        covariates: Optional[np.ndarray],
        covariate_names: List[str],
    ) -> MatchedSetCollection:
        config = self.config

        matched_sets = match_treatment_histories(
            panel.treatment,
            lag=config.lag,
            lead=self.lead,
            match_missing=config.match_missing,
            forbid_treatment_reversal=config.forbid_treatment_reversal,
            matching=config.matching,
        )

        if config.exact_match_variables:
            exact_values = encode_exact_match_values(panel, config.exact_match_variables)
            matched_sets = filter_exact_matches(matched_sets, exact_values)

        context = RefinementContext(
            covariates=covariates,
            lag=config.lag,
            lead=self.lead,
            size_match=config.size_match,
            use_diagonal_variance_matrix=config.use_diagonal_variance_matrix,
            singular_covariance=config.singular_covariance,
            verbose=config.verbose,
            unit_labels=panel.unit_index.original_ids,
            period_labels=tuple(int(period) for period in panel.periods),
        )
        refiner = make_refiner(config.refinement_method, context, config.propensity_model)

        if config.listwise_delete and covariates is not None:
            matched_sets = listwise_delete(matched_sets, covariates, refiner)

        refiner.prepare(matched_sets)
        refined_sets = self._refine_all(refiner, matched_sets)

        return decode_matched_sets(
            refined_sets,
            unit_index=panel.unit_index,
            periods=panel.periods,
            lag=config.lag,
            refinement_method=config.refinement_method,
            treatment=config.treat,
            size_match=config.size_match if refiner.is_matching else None,
            exact_match_variables=config.exact_match_variables,
            covariates=covariate_names,
        )

    def fit(self) -> PanelMatchResults:
        """
        Build and refine matched sets for the configured quantity of interest.

        Returns
        -------
        PanelMatchResults
            Matched sets under ``"att"`` and/or ``"atc"`` together with the
            ``qoi``, ``lead``, ``outcome`` and ``forbid_treatment_reversal``
            settings that downstream estimation needs.

        Raises
        ------
        PanelMatchDataError
            If the panel cannot be prepared or the covariate formula cannot be
            evaluated against it.
        PanelMatchRefinementError
            If refinement cannot proceed (a propensity model fails to fit, or a
            singular covariance matrix under ``singular_covariance="raise"``).
        """
        try:
            panel = prepare_panel(self.df, self.unitid, self.time, self.treat)
        except PanelMatchError:
            raise
        except Exception as e:
            raise PanelMatchDataError(f"Error preparing panel data: {str(e)}") from e

        # Every branch's design is evaluated before any matching starts, so a
        # bad formula fails fast
        branches = []
        for key, flip in qoi_branches(self.qoi):
            view = panel.with_flipped_treatment() if flip else panel
            covariates, covariate_names = self._covariates(view)
            branches.append((key, view, covariates, covariate_names))

        collections = {}
        for key, view, covariates, covariate_names in branches:
            collections[key] = self._match_branch(view, covariates, covariate_names)

        return PanelMatchResults(
            qoi=self.qoi,
            lead=self.lead,
            outcome=self.outcome,
            forbid_treatment_reversal=self.config.forbid_treatment_reversal,
            att=collections.get("att"),
            atc=collections.get("atc"),
        )
