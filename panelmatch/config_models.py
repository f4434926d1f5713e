from typing import Any, List, Optional, Union
import warnings

import pandas as pd
from pydantic import BaseModel, Field, field_validator, model_validator

from panelmatch.exceptions import PanelMatchConfigError, PanelMatchDataError
from panelmatch.utils.constraintutils import VALID_QOIS
from panelmatch.utils.datautils import (
    build_unit_index,
    check_time_column,
    check_treatment_column,
    check_unique_keys,
)
from panelmatch.utils.formulautils import CovariateSpec, parse_covariate_formula
from panelmatch.utils.refineutils import MSM_METHODS, REFINEMENT_METHODS, SINGULAR_POLICIES


class PanelMatchConfig(BaseModel):
    """
    Configuration for building and refining matched sets with ``PanelMatch``.

    Every check here runs when the model is constructed, so an invalid
    configuration or malformed panel is rejected before any matching work.

    Parameters
    ----------
    df : pd.DataFrame
        Long time-series cross-section data.
    lag : int
        Number of treatment-history periods to match on (>= 1).
    time : str
        Time id column; must hold integers.
    unitid : str
        Unit id column; integers, integer-valued numbers or strings.
    treat : str
        Binary (0/1) treatment column. Missing values are allowed.
    outcome : str
        Outcome variable; recorded on the results for downstream estimation.
    refinement_method : str
        One of "none", "mahalanobis", "ps.match", "CBPS.match", "ps.weight",
        "CBPS.weight", "ps.msm.weight", "CBPS.msm.weight".
    qoi : str
        "att", "atc" or "ate".
    size_match : int, default=10
        Maximum number of controls kept by the matching methods.
    match_missing : bool, default=True
        Treat missing treatment-history cells as wildcards. When False,
        neither unit may have missing treatment data in the lag window.
    covs_formula : str or list of str, optional
        Covariates used for refinement, e.g. ``"~ I(lag(y, 1:4)) + tradewb"``.
        Required for every method except "none".
    verbose : bool, default=False
        Keep raw distances / pre-normalization scores on each matched set.
    lead : int or list of int, default=0
        Lead window (non-negative offsets).
    exact_match_variables : list of str, optional
        Time-invariant columns that must match exactly.
    forbid_treatment_reversal : bool, default=False
        Require treated units to stay treated and controls to stay untreated
        through the lead window. Mandatory for MSM methods.
    matching : bool, default=True
        If False, skip treatment-history matching (diagnostic use).
    listwise_delete : bool, default=False
        Drop units with missing covariates instead of excluding missing
        cells per computation. Cannot be combined with ``match_missing``.
    use_diagonal_variance_matrix : bool, default=False
        Use only covariate variances in Mahalanobis distances.
    singular_covariance : str, default="keep"
        What to do when a Mahalanobis covariance matrix is singular: "keep"
        the full matched set, fall back to the "diagonal" matrix, or "raise".
    propensity_model : object, optional
        Replacement for the built-in logit / CBPS model; must provide
        ``fit_predict(X, y)``.
    parallel : bool, default=False
        Refine matched sets on a thread pool.
    cores : int, optional
        Number of worker threads when ``parallel`` is True.
    """
    df: pd.DataFrame = Field(..., description="Input panel data as a pandas DataFrame.")
    lag: int = Field(..., description="Length of the treatment history window to match on.")
    time: str = Field(..., description="Name of the time period column in the DataFrame.")
    unitid: str = Field(..., description="Name of the unit identifier column in the DataFrame.")
    treat: str = Field(..., description="Name of the treatment indicator column in the DataFrame.")
    outcome: str = Field(..., description="Name of the outcome variable column in the DataFrame.")
    refinement_method: str = Field(..., description="Matching or weighting method used to refine matched sets.")
    qoi: str = Field(..., description="Quantity of interest: 'att', 'atc' or 'ate'.")
    size_match: int = Field(default=10, description="Maximum number of controls kept by matching methods.")
    match_missing: bool = Field(default=True, description="Treat missing treatment history as a wildcard.")
    covs_formula: Optional[Union[str, List[str]]] = Field(default=None, description="Covariate formula used for refinement.")
    verbose: bool = Field(default=False, description="Keep distances and raw scores on matched sets.")
    lead: List[int] = Field(default_factory=lambda: [0], description="Lead window offsets.")
    exact_match_variables: Optional[List[str]] = Field(default=None, description="Columns that must match exactly.")
    forbid_treatment_reversal: bool = Field(default=False, description="Forbid treatment reversal in the lead window.")
    matching: bool = Field(default=True, description="Whether to match on treatment history at all.")
    listwise_delete: bool = Field(default=False, description="Handle missing covariates by listwise deletion.")
    use_diagonal_variance_matrix: bool = Field(default=False, description="Use a diagonal covariance in Mahalanobis distances.")
    singular_covariance: str = Field(default="keep", description="Policy for singular Mahalanobis covariance matrices.")
    propensity_model: Optional[Any] = Field(default=None, description="Custom propensity model with fit_predict(X, y).")
    parallel: bool = Field(default=False, description="Whether to refine matched sets in parallel.")
    cores: Optional[int] = Field(default=None, description="Number of worker threads when parallel is True.", ge=1)

    model_config = {
        "arbitrary_types_allowed": True,
        "extra": "forbid",
    }

    @field_validator("lead", mode="before")
    @classmethod
    def _coerce_lead(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return [value]
        if isinstance(value, range):
            return list(value)
        return value

    @model_validator(mode="after")
    def check_options(self) -> "PanelMatchConfig":
        if self.qoi not in VALID_QOIS:
            raise PanelMatchConfigError(f"Please choose a valid qoi; got '{self.qoi}', expected one of {list(VALID_QOIS)}.")
        if self.refinement_method not in REFINEMENT_METHODS:
            raise PanelMatchConfigError(
                f"Please choose a valid refinement method; got '{self.refinement_method}', "
                f"expected one of {list(REFINEMENT_METHODS)}."
            )
        if self.lag < 1:
            raise PanelMatchConfigError("Please specify a lag value >= 1.")
        if self.size_match < 1:
            raise PanelMatchConfigError("size_match must be a positive integer.")
        if not self.lead:
            raise PanelMatchConfigError("lead must contain at least one offset.")
        if any(offset < 0 for offset in self.lead):
            raise PanelMatchConfigError("Please provide non-negative lead values; negative leads are not supported.")
        if self.listwise_delete and self.match_missing:
            raise PanelMatchConfigError("Set match_missing = False when listwise_delete = True.")
        if self.refinement_method in MSM_METHODS:
            if not self.forbid_treatment_reversal:
                raise PanelMatchConfigError("Please set forbid_treatment_reversal to True for msm methods.")
            warnings.warn(
                "Note that for msm methods, PanelMatch will attempt to find the estimated average treatment "
                "effect of being treated for the entire specified 'lead' time periods.",
                UserWarning,
            )
        refiner_class, _ = REFINEMENT_METHODS[self.refinement_method]
        if refiner_class.uses_covariates and self.covs_formula is None:
            raise PanelMatchConfigError(
                f"Refinement method '{self.refinement_method}' requires covs_formula."
            )
        if self.singular_covariance not in SINGULAR_POLICIES:
            raise PanelMatchConfigError(
                f"singular_covariance must be one of {list(SINGULAR_POLICIES)}; got '{self.singular_covariance}'."
            )
        if self.propensity_model is not None and not callable(getattr(self.propensity_model, "fit_predict", None)):
            raise PanelMatchConfigError("propensity_model must provide a fit_predict(X, y) method.")
        # Parsing here surfaces formula syntax errors before any data work
        if self.covs_formula is not None:
            parse_covariate_formula(self.covs_formula)
        return self

    @model_validator(mode="after")
    def check_df_and_columns(self) -> "PanelMatchConfig":
        df = self.df
        if df.empty:
            raise PanelMatchDataError("Input DataFrame 'df' cannot be empty.")

        required_columns = {self.unitid, self.time, self.treat, self.outcome}
        required_columns.update(self.exact_match_variables or [])
        if self.covs_formula is not None:
            required_columns.update(self.covariate_spec.source_variables)
        missing_columns = required_columns - set(df.columns)
        if missing_columns:
            raise PanelMatchDataError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )

        build_unit_index(df[self.unitid])
        check_time_column(df, self.time)
        check_unique_keys(df, self.unitid, self.time)
        check_treatment_column(df, self.treat)
        return self

    @property
    def covariate_spec(self) -> Optional[CovariateSpec]:
        """Parsed ``covs_formula`` (None when no formula was given)."""
        if self.covs_formula is None:
            return None
        return parse_covariate_formula(self.covs_formula)
