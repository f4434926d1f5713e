import numpy as np
from typing import Optional, Protocol, runtime_checkable
import statsmodels.api as sm
from scipy.optimize import minimize
from scipy.special import expit
from sklearn.preprocessing import StandardScaler

from panelmatch.exceptions import PanelMatchRefinementError

# Fitted scores are clipped into [PS_CLIP, 1 - PS_CLIP] so odds stay finite
PS_CLIP = 1e-8


@runtime_checkable
class PropensityModel(Protocol):
    """Capability consumed by the propensity-based refinement methods.

    ``fit_predict`` receives a complete covariate matrix ``X`` of shape
    (n, k) and a binary label vector ``y`` (1 for treated observations, 0 for
    control candidates) and returns one score in (0, 1) per row.
    """

    def fit_predict(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        ...


def _informative_columns(X: np.ndarray) -> np.ndarray:
    """Drop constant columns; an intercept is added separately."""
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.shape[0] == 0:
        return X
    varying = np.ptp(X, axis=0) > 0
    return X[:, varying]


def _check_labels(y: np.ndarray) -> np.ndarray:
    y = np.asarray(y, dtype=float)
    if not np.all(np.isin(y, [0.0, 1.0])):
        raise PanelMatchRefinementError("Propensity model labels must be 0/1.")
    if y.min() == y.max():
        raise PanelMatchRefinementError(
            "Cannot fit a propensity model: both treated and control observations are required."
        )
    return y


def _fit_logit(design: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Fit a binomial GLM and return its coefficient vector."""
    try:
        result = sm.GLM(y, design, family=sm.families.Binomial()).fit()
    except Exception as e:
        raise PanelMatchRefinementError(f"Logistic propensity model failed to fit: {e}") from e
    params = np.asarray(result.params, dtype=float)
    if not np.all(np.isfinite(params)):
        raise PanelMatchRefinementError("Logistic propensity model produced non-finite coefficients.")
    return params


class LogitPropensityModel:
    """Standard propensity score: logistic regression of treatment on covariates."""

    name = "ps"

    def __init__(self, clip: float = PS_CLIP) -> None:
        self.clip = clip
        self.params_: Optional[np.ndarray] = None

    def fit_predict(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        y = _check_labels(y)
        design = sm.add_constant(_informative_columns(X), has_constant="add")
        self.params_ = _fit_logit(design, y)
        return np.clip(expit(design @ self.params_), self.clip, 1 - self.clip)


class CBPSPropensityModel:
    """Covariate balancing propensity score (just-identified, ATT target).

    The coefficients solve the balance conditions

        sum_i (D_i - (1 - D_i) * e_i / (1 - e_i)) * x_i = 0,

    i.e. the odds-weighted control means of the standardized covariates (and
    the intercept) equal the treated means. The conditions are solved by
    minimizing their squared norm with BFGS, starting from the logistic fit.

    References
    ----------
    Imai, K., and Ratkovic, M. (2014). "Covariate balancing propensity score."
    Journal of the Royal Statistical Society: Series B 76(1): 243-263.
    """

    name = "CBPS"

    def __init__(self, clip: float = PS_CLIP, maxiter: int = 1000) -> None:
        self.clip = clip
        self.maxiter = maxiter
        self.params_: Optional[np.ndarray] = None
        self.balance_: Optional[np.ndarray] = None

    def _moments(self, beta: np.ndarray, design: np.ndarray, y: np.ndarray) -> np.ndarray:
        n = len(y)
        scores = np.clip(expit(design @ beta), self.clip, 1 - self.clip)
        weights = (n / y.sum()) * (y - scores) / (1 - scores)
        return design.T @ weights / n

    def fit_predict(self, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        y = _check_labels(y)
        covariates = _informative_columns(X)
        if covariates.shape[1] > 0:
            covariates = StandardScaler().fit_transform(covariates)
        design = sm.add_constant(covariates, has_constant="add")

        try:
            start = _fit_logit(design, y)
        except PanelMatchRefinementError:
            # Separated data: start from the marginal treated share
            start = np.zeros(design.shape[1])
            share = y.mean()
            start[0] = np.log(share / (1 - share))

        def objective(beta: np.ndarray) -> float:
            g = self._moments(beta, design, y)
            return float(g @ g)

        result = minimize(objective, start, method="BFGS", options={"maxiter": self.maxiter})
        if not np.all(np.isfinite(result.x)):
            raise PanelMatchRefinementError("CBPS optimization produced non-finite coefficients.")

        self.params_ = result.x
        self.balance_ = self._moments(result.x, design, y)
        return np.clip(expit(design @ result.x), self.clip, 1 - self.clip)


def default_propensity_model(family: str) -> PropensityModel:
    """Return the built-in model for a method family (``"ps"`` or ``"CBPS"``)."""
    if family == "ps":
        return LogitPropensityModel()
    if family == "CBPS":
        return CBPSPropensityModel()
    raise ValueError(f"Unknown propensity model family: {family!r}")
