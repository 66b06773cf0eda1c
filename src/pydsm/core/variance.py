"""
Variance of predicted abundance.

Two delta-method estimators are provided:

``independent`` (:func:`dsm_var_gam`)
    Squared coefficients of variation of the count model prediction and
    of the average detection probability are added, treating the two
    sources of uncertainty as independent.
``joint`` (:func:`dsm_var_prop`)
    The count model is refitted with the derivatives of log detection
    probability with respect to the detection parameters as extra model
    columns, whose coefficients have prior covariance equal to the
    detection parameter covariance. The refitted coefficient covariance
    then carries the detection uncertainty, including its covariance
    with the spatial surface. Requires a detection covariate that varies
    across segments.

Both report per-cell variance and CV plus the variance of the grid total,
which includes the covariances between cells.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Dict, Optional, Union

import numpy as np
import pandas as pd

from pydsm.core.data import segment_level_covariates
from pydsm.core.dsm import CountModel
from pydsm.core.exceptions import MethodNotApplicable
from pydsm.core.gam import Penalty, PenalizedFitter
from pydsm.core.predict import grid_offset, prediction_matrix
from pydsm.logger import get_logger

logger = get_logger(__name__)

VARIANCE_METHODS = ('independent', 'joint')

Regions = Optional[Dict[str, np.ndarray]]


@dataclass(frozen=True, eq=False)
class VarianceResult:
    """Predicted abundance and its uncertainty over a grid.

    Attributes
    ----------
    prediction : np.ndarray
        Abundance per cell.
    variance : np.ndarray
        Variance per cell.
    cv : np.ndarray
        Coefficient of variation per cell; 0 where the prediction is 0
        (see ``zero_prediction``).
    total : float
        Grid-total abundance.
    total_variance : float
        Variance of the grid total.
    method : str
        ``"independent"`` or ``"joint"``.
    zero_prediction : np.ndarray
        Cells whose CV is undefined because their prediction is zero.
    region_totals : pd.DataFrame
        Abundance, variance, se and cv of each named region.
    detection_cv : float
        CV of the average detection probability (independent method).
    """

    prediction: np.ndarray
    variance: np.ndarray
    cv: np.ndarray
    total: float
    total_variance: float
    method: str
    zero_prediction: np.ndarray
    region_totals: pd.DataFrame = field(default_factory=pd.DataFrame)
    detection_cv: float = 0.0

    def __repr__(self) -> str:
        return (
            f"VarianceResult(method={self.method!r}, cells={self.prediction.size}, "
            f"total={self.total:.2f}, se={self.total_se:.2f}, cv={self.total_cv:.4f})"
        )

    @property
    def se(self) -> np.ndarray:
        return np.sqrt(self.variance)

    @property
    def total_se(self) -> float:
        return float(np.sqrt(self.total_variance))

    @property
    def total_cv(self) -> float:
        return safe_cv(self.total_se, self.total)

    def summary(self) -> pd.DataFrame:
        """One-row table of the grid-total estimate."""
        return pd.DataFrame({
            'method': [self.method],
            'abundance': [self.total],
            'se': [self.total_se],
            'cv': [self.total_cv],
        })


def safe_cv(se, mean):
    """CV = se / mean, defined as 0 where the mean is 0."""
    se = np.asarray(se, dtype=float)
    mean = np.asarray(mean, dtype=float)
    with np.errstate(divide='ignore', invalid='ignore'):
        cv = np.where(mean > 0, se / np.where(mean > 0, mean, 1.0), 0.0)
    return float(cv) if cv.ndim == 0 else cv


def delta_method_variance(
    Lp: np.ndarray,
    coefficients: np.ndarray,
    area: np.ndarray,
    Vp: np.ndarray,
    regions: Regions = None,
) -> dict:
    """First-order variance of per-cell and total abundance.

    With mu_c = area_c * exp(x_c' beta), the gradient of mu_c is
    mu_c * x_c, so Var(mu_c) = mu_c^2 x_c' Vp x_c and the variance of the
    total uses the gradient sum_c mu_c x_c.

    Parameters
    ----------
    Lp : np.ndarray
        (n_cells, p) prediction matrix.
    coefficients : np.ndarray
        Coefficient vector.
    area : np.ndarray
        Cell offset areas.
    Vp : np.ndarray
        Coefficient covariance.
    regions : dict of str to bool array, optional
        Cell masks of regions whose totals are also required.

    Returns
    -------
    dict
        ``prediction``, ``variance``, ``total``, ``total_variance`` and
        ``regions`` (name -> (total, variance)).
    """
    mu = area * np.exp(Lp @ coefficients)
    J = mu[:, None] * Lp
    variance = np.einsum('ij,jk,ik->i', J, Vp, J)
    gradient = J.sum(axis=0)

    region_stats = {}
    for name, mask in (regions or {}).items():
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != mu.shape:
            raise ValueError(f"Region '{name}' mask must have one entry per grid cell")
        g = J[mask].sum(axis=0)
        region_stats[name] = (float(mu[mask].sum()), float(g @ Vp @ g))

    return {
        'prediction': mu,
        'variance': np.maximum(variance, 0.0),
        'total': float(mu.sum()),
        'total_variance': float(max(gradient @ Vp @ gradient, 0.0)),
        'regions': region_stats,
    }


def _region_table(region_stats: dict, cv_extra: float = 0.0) -> pd.DataFrame:
    rows = []
    for name, (total, variance) in region_stats.items():
        cv2 = safe_cv(np.sqrt(variance), total) ** 2 + (cv_extra ** 2 if total > 0 else 0.0)
        variance = cv2 * total ** 2
        rows.append({
            'region': name,
            'abundance': total,
            'variance': variance,
            'se': np.sqrt(variance),
            'cv': np.sqrt(cv2),
        })
    return pd.DataFrame(rows, columns=['region', 'abundance', 'variance', 'se', 'cv']).set_index('region')


def dsm_var_gam(
    model: CountModel,
    grid: pd.DataFrame,
    offset: Optional[Union[np.ndarray, float]] = None,
    offset_col: str = 'area',
    regions: Regions = None,
) -> VarianceResult:
    """Variance assuming detection and spatial uncertainty are independent.

    Per cell and for totals, CV^2 = CV_model^2 + CV_p^2 where CV_p is the
    delta-method CV of the average detection probability (0 for strip
    transects).

    Parameters
    ----------
    model : CountModel
        Fitted model.
    grid : pd.DataFrame
        Prediction grid.
    offset, offset_col
        Cell areas, as for :func:`~pydsm.core.predict.predict_dsm`.
    regions : dict, optional
        Named boolean cell masks for sub-region totals.

    Returns
    -------
    VarianceResult
    """
    model._require_fitted()
    detection = model.detection
    cv_p = 0.0
    if detection is not None:
        cv_p = detection.average_p_cv()
        varying = segment_level_covariates(model.response_data.data, detection.covariates)
        if varying:
            warnings.warn(
                f"Detection covariates {varying} vary across segments; the independent "
                f"variance ignores their covariance with the spatial model "
                f"(use method='joint')",
                UserWarning,
            )

    area = grid_offset(grid, offset, offset_col)
    Lp = prediction_matrix(model, grid)
    stats = delta_method_variance(Lp, model.coefficients, area, model.Vp, regions)

    mu = stats['prediction']
    zero = mu <= 0
    cv_model = safe_cv(np.sqrt(stats['variance']), mu)
    cv = np.where(zero, 0.0, np.sqrt(cv_model ** 2 + cv_p ** 2))
    variance = (cv * mu) ** 2

    total = stats['total']
    total_cv2 = safe_cv(np.sqrt(stats['total_variance']), total) ** 2 + (cv_p ** 2 if total > 0 else 0.0)

    if np.any(zero):
        logger.info(f"{int(zero.sum())} cell(s) with zero prediction have CV set to 0")
    return VarianceResult(
        prediction=mu,
        variance=variance,
        cv=cv,
        total=total,
        total_variance=total_cv2 * total ** 2,
        method='independent',
        zero_prediction=zero,
        region_totals=_region_table(stats['regions'], cv_p),
        detection_cv=cv_p,
    )


def dsm_var_prop(
    model: CountModel,
    grid: pd.DataFrame,
    offset: Optional[Union[np.ndarray, float]] = None,
    offset_col: str = 'area',
    regions: Regions = None,
) -> VarianceResult:
    """Variance propagating detection uncertainty jointly with the count model.

    The count model is refitted to the segment counts with offset
    log(strip area * p_j) and extra columns d log(p_j) / d theta, whose
    coefficients are penalized by phi * V_theta^-1. Smoothing parameters,
    scale and family parameters are held at the count model's fitted
    values; for an abundance (Horvitz-Thompson) model they are first
    selected again by REML on the counts. Predictions and their variance
    come from the count-model block of the refit.

    Raises
    ------
    MethodNotApplicable
        If the model has no detection function or no detection covariate
        is recorded at, and varies across, the segments.
    """
    model._require_fitted()
    detection = model.detection
    if detection is None:
        raise MethodNotApplicable("Joint propagation needs a fitted detection function")
    varying = segment_level_covariates(model.response_data.data, detection.covariates)
    if not varying:
        raise MethodNotApplicable(
            "Joint propagation needs a detection covariate recorded at, and varying "
            "across, the segments",
            covariate=', '.join(detection.covariates) or None,
        )

    data = model.response_data.data
    p_seg = detection.detection_probability(data)
    offset_seg = np.log(data['strip_area'].to_numpy(dtype=float) * p_seg)
    y = data['count'].to_numpy(dtype=float)
    derivatives = detection.gradient_log_p(data)

    intercept = model.coefficient_names[0] == 'Intercept'
    if model.config.response == 'count':
        sp, scale, family = model.sp, model.scale, model.fitted_family
    else:
        # Smoothness, scale and family of an abundance model do not carry
        # over to counts, so select them again on the segment counts
        count_fit = PenalizedFitter(
            model.X, y, offset_seg, model.penalties, model.family, model.control,
            intercept=intercept,
        ).fit()
        sp, scale, family = count_fit.sp, count_fit.scale, count_fit.family
        logger.debug(
            f"Reselected count model for joint refit: sp={np.round(sp, 4).tolist()}, "
            f"scale={scale:.4g}, family={family!r}"
        )

    n_coef = model.X.shape[1]
    X_aug = np.hstack([model.X, derivatives])
    prior = scale * np.linalg.inv(detection.vcov)
    penalties = list(model.penalties) + [Penalty(n_coef, (prior + prior.T) / 2.0, label='detection')]

    fitter = PenalizedFitter(
        X_aug, y, offset_seg, penalties, family, model.control, intercept=intercept,
    )
    refit = fitter.fit(sp=np.concatenate([sp, [1.0]]), scale=scale, check_rank=False)
    logger.debug(
        f"Joint refit with {derivatives.shape[1]} detection column(s); "
        f"detection coefficients {np.round(refit.coefficients[n_coef:], 4).tolist()}"
    )

    area = grid_offset(grid, offset, offset_col)
    Lp = prediction_matrix(model, grid)
    beta = refit.coefficients[:n_coef]
    Vp = refit.Vp[:n_coef, :n_coef]
    stats = delta_method_variance(Lp, beta, area, Vp, regions)

    mu = stats['prediction']
    zero = mu <= 0
    return VarianceResult(
        prediction=mu,
        variance=stats['variance'],
        cv=safe_cv(np.sqrt(stats['variance']), mu),
        total=stats['total'],
        total_variance=stats['total_variance'],
        method='joint',
        zero_prediction=zero,
        region_totals=_region_table(stats['regions']),
    )


def estimate_variance(
    model: CountModel,
    grid: pd.DataFrame,
    method: str = 'independent',
    offset: Optional[Union[np.ndarray, float]] = None,
    offset_col: str = 'area',
    regions: Regions = None,
) -> VarianceResult:
    """Dispatch to :func:`dsm_var_gam` or :func:`dsm_var_prop`.

    Parameters
    ----------
    method : str
        ``"independent"`` or ``"joint"``.
    """
    if method == 'independent':
        return dsm_var_gam(model, grid, offset, offset_col, regions)
    if method == 'joint':
        return dsm_var_prop(model, grid, offset, offset_col, regions)
    raise ValueError(f"Unknown variance method '{method}'. Choose from {VARIANCE_METHODS}")
