"""
Detection function fitting for distance sampling.

A detection function g(x) gives the probability of detecting an animal at
perpendicular (line transect) or radial (point transect) distance x. Two
key functions are provided:

- half-normal:  g(x) = exp(-x^2 / (2 sigma^2))
- hazard-rate:  g(x) = 1 - exp(-(x / sigma)^(-b))

The scale parameter sigma may depend on covariates through a log-linear
predictor, log(sigma) = Z theta, where Z is built from the covariates with
patsy. Parameters are estimated by maximizing the conditional likelihood
of the observed distances within the truncation distance w.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from numpy.polynomial.legendre import leggauss
from patsy import PatsyError, build_design_matrices, dmatrix
from patsy.design_info import DesignInfo
from scipy import optimize, stats
from statsmodels.tools.numdiff import approx_fprime, approx_hess3

from pydsm.config import TRANSECT_TYPES, DetectionControl, SurveyColumns
from pydsm.core.data import check_observation_data
from pydsm.core.exceptions import FitFailure, SchemaMismatch
from pydsm.logger import get_logger

logger = get_logger(__name__)

KEY_FUNCTIONS = ('hn', 'hr')


def key_function(key: str, x: np.ndarray, sigma: np.ndarray, shape: Optional[float] = None) -> np.ndarray:
    """Evaluate a key function.

    Parameters
    ----------
    key : str
        ``"hn"`` (half-normal) or ``"hr"`` (hazard-rate).
    x : np.ndarray
        Distances.
    sigma : np.ndarray
        Scale parameter, broadcastable against ``x``.
    shape : float, optional
        Hazard-rate shape parameter b (required for ``"hr"``).

    Returns
    -------
    np.ndarray
        Detection probability at each distance.
    """
    x = np.asarray(x, dtype=float)
    if key == 'hn':
        return np.exp(-(x ** 2) / (2.0 * sigma ** 2))
    if key == 'hr':
        with np.errstate(divide='ignore', over='ignore'):
            return -np.expm1(-((x / sigma) ** (-shape)))
    raise ValueError(f"Unknown key function '{key}'. Choose from {KEY_FUNCTIONS}")


def _relative_steps(x: np.ndarray, step: float) -> np.ndarray:
    return step * np.maximum(1.0, np.abs(x))


def numerical_jacobian(func: Callable[[np.ndarray], np.ndarray], x: np.ndarray, step: float) -> np.ndarray:
    """Central-difference Jacobian of a vector function.

    Returns
    -------
    np.ndarray
        Shape (len(func(x)), len(x)).
    """
    x = np.asarray(x, dtype=float)
    # approx_fprime halves the step of centred differences
    jac = approx_fprime(
        x,
        lambda theta: np.atleast_1d(func(theta)),
        epsilon=2.0 * _relative_steps(x, step),
        centered=True,
    )
    return np.atleast_2d(jac)


def numerical_hessian(func: Callable[[np.ndarray], float], x: np.ndarray, step: float) -> np.ndarray:
    """Central-difference Hessian of a scalar function."""
    x = np.asarray(x, dtype=float)
    return approx_hess3(x, func, epsilon=_relative_steps(x, step))


@dataclass(frozen=True, eq=False)
class DetectionFunction:
    """Fitted detection function.

    Instances are immutable and may be shared by any number of count
    models and variance computations.

    Attributes
    ----------
    key : str
        Key function tag (``"hn"`` or ``"hr"``).
    covariates : tuple of str
        Covariates of the scale parameter (empty for a pooled model).
    params : np.ndarray
        Fitted parameters: scale coefficients, then log(shape) for ``"hr"``.
    vcov : np.ndarray
        Parameter covariance matrix (inverse observed information).
    truncation : float
        Truncation distance w.
    transect : str
        ``"line"`` or ``"point"``.
    loglik : float
        Maximized log-likelihood.
    data : pd.DataFrame
        Observations within the truncation distance used in the fit.
    """

    key: str
    covariates: Tuple[str, ...]
    params: np.ndarray
    vcov: np.ndarray
    truncation: float
    transect: str
    loglik: float
    data: pd.DataFrame
    design_info: Optional[DesignInfo] = None
    coefficient_names: Tuple[str, ...] = ()
    n_iterations: int = 0
    columns: SurveyColumns = field(default_factory=SurveyColumns)
    control: DetectionControl = field(default_factory=DetectionControl)

    def __repr__(self) -> str:
        formula = ' + '.join(self.covariates) if self.covariates else '1'
        return (
            f"DetectionFunction(key={self.key!r}, transect={self.transect!r}, "
            f"scale=~{formula}, n={self.n}, w={self.truncation:g}, "
            f"average_p={self.average_p():.4f}, AIC={self.aic:.2f})"
        )

    @property
    def n(self) -> int:
        """Number of observations within truncation."""
        return len(self.data)

    @property
    def n_params(self) -> int:
        return self.params.size

    @property
    def aic(self) -> float:
        return -2.0 * self.loglik + 2.0 * self.n_params

    @property
    def has_covariates(self) -> bool:
        return len(self.covariates) > 0

    def scale_design(self, data: Optional[pd.DataFrame] = None) -> np.ndarray:
        """Design matrix of the log-scale linear predictor for ``data``.

        Raises
        ------
        SchemaMismatch
            If ``data`` lacks a detection covariate or holds unseen levels.
        """
        data = self.data if data is None else data
        if not self.has_covariates:
            return np.ones((len(data), 1))
        for name in self.covariates:
            if name not in data.columns:
                raise SchemaMismatch(
                    f"Table lacks detection covariate '{name}'", covariate=name
                )
        try:
            return np.asarray(
                build_design_matrices([self.design_info], data, NA_action='raise')[0]
            )
        except PatsyError as exc:
            raise SchemaMismatch(
                f"Cannot evaluate detection covariates: {exc}",
                covariate=', '.join(self.covariates),
            ) from exc

    def _split(self, params: np.ndarray) -> Tuple[np.ndarray, Optional[float]]:
        if self.key == 'hr':
            return params[:-1], float(np.exp(params[-1]))
        return params, None

    def scale(self, data: Optional[pd.DataFrame] = None, params: Optional[np.ndarray] = None) -> np.ndarray:
        """Scale parameter sigma for each row of ``data``."""
        params = self.params if params is None else np.asarray(params, dtype=float)
        beta, _ = self._split(params)
        return np.exp(self.scale_design(data) @ beta)

    def g(
        self,
        distance: np.ndarray,
        data: Optional[pd.DataFrame] = None,
        params: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Detection probability at ``distance`` for each row of ``data``.

        Without covariates ``data`` may be omitted and ``distance`` can be
        any array of distances.
        """
        params = self.params if params is None else np.asarray(params, dtype=float)
        _, shape = self._split(params)
        distance = np.asarray(distance, dtype=float)
        if not self.has_covariates and data is None:
            sigma = self.scale(pd.DataFrame(index=range(1)), params)[0]
        else:
            sigma = self.scale(data, params)
        return key_function(self.key, distance, sigma, shape)

    def detection_probability(
        self,
        data: Optional[pd.DataFrame] = None,
        params: Optional[np.ndarray] = None,
        truncation: Optional[float] = None,
    ) -> np.ndarray:
        """Probability of detection within a truncation distance.

        Parameters
        ----------
        data : pd.DataFrame, optional
            Rows at which to evaluate (observations or segments holding the
            detection covariates). Defaults to the fitted observations.
        params : np.ndarray, optional
            Alternative parameter vector (used for numerical derivatives).
        truncation : float, optional
            Distance out to which detection is integrated. Defaults to the
            truncation distance of the fit.

        Returns
        -------
        np.ndarray
            Probability in (0, 1] for each row.
        """
        params = self.params if params is None else np.asarray(params, dtype=float)
        data = self.data if data is None else data
        if truncation is None:
            truncation = self.truncation
        elif not truncation > 0:
            raise ValueError(f"truncation must be positive, got {truncation}")
        _, shape = self._split(params)
        sigma = self.scale(data, params)
        return integrate_detection(
            self.key, sigma, shape, float(truncation), self.transect, self.control.n_quadrature
        )

    def average_p(
        self,
        params: Optional[np.ndarray] = None,
        truncation: Optional[float] = None,
    ) -> float:
        """Effective detection probability over the observed covariate distribution.

        Computed as n / sum(1 / p_i), which reduces to the common detection
        probability when the detection function has no covariates. The
        covariate distribution is that of the fitted observations, whatever
        ``truncation`` is used for the integral.
        """
        p = self.detection_probability(params=params, truncation=truncation)
        return float(self.n / np.sum(1.0 / p))

    def average_p_se(self) -> float:
        """Delta-method standard error of :meth:`average_p`."""
        grad = numerical_jacobian(
            lambda theta: np.array([self.average_p(theta)]), self.params, self.control.fd_step
        )[0]
        return float(np.sqrt(max(grad @ self.vcov @ grad, 0.0)))

    def average_p_cv(self) -> float:
        """Coefficient of variation of :meth:`average_p`."""
        return self.average_p_se() / self.average_p()

    def gradient_log_p(self, data: pd.DataFrame) -> np.ndarray:
        """Derivatives of log detection probability with respect to the parameters.

        Returns
        -------
        np.ndarray
            Shape (len(data), n_params).
        """
        return numerical_jacobian(
            lambda theta: np.log(self.detection_probability(data, theta)),
            self.params,
            self.control.fd_step,
        )

    def gof_cvm(self) -> Dict[str, float]:
        """Cramer-von Mises goodness-of-fit test.

        Observed distances are transformed through their fitted
        cumulative distribution functions; under a correct model the
        transformed values are uniform on [0, 1].

        Returns
        -------
        dict
            ``statistic`` and ``p_value``.
        """
        _, shape = self._split(self.params)
        sigma = self.scale()
        x = self.data[self.columns.distance].to_numpy(dtype=float)
        nodes, weights = leggauss(self.control.n_quadrature)

        upper = x[:, None] / 2.0 * (nodes[None, :] + 1.0)
        integrand = key_function(self.key, upper, sigma[:, None], shape)
        if self.transect == 'point':
            integrand = integrand * 2.0 * upper
        partial = integrand @ weights * x / 2.0

        total = integrate_detection(
            self.key, sigma, shape, self.truncation, self.transect, self.control.n_quadrature
        )
        if self.transect == 'point':
            total = total * self.truncation ** 2
        else:
            total = total * self.truncation

        u = np.clip(partial / total, 0.0, 1.0)
        result = stats.cramervonmises(u, 'uniform')
        return {'statistic': float(result.statistic), 'p_value': float(result.pvalue)}

    def summary(self) -> pd.DataFrame:
        """Parameter estimates and standard errors."""
        se = np.sqrt(np.clip(np.diag(self.vcov), 0.0, None))
        return pd.DataFrame(
            {'estimate': self.params, 'se': se},
            index=list(self.coefficient_names),
        )


def integrate_detection(
    key: str,
    sigma: np.ndarray,
    shape: Optional[float],
    truncation: float,
    transect: str = 'line',
    n_quadrature: int = 64,
) -> np.ndarray:
    """Detection probability within ``truncation`` for each scale value.

    Line transects: p = (1/w) * integral_0^w g(x) dx.
    Point transects: p = (2/w^2) * integral_0^w r g(r) dr.
    """
    sigma = np.atleast_1d(np.asarray(sigma, dtype=float))
    nodes, weights = leggauss(n_quadrature)
    x = truncation / 2.0 * (nodes + 1.0)
    g = key_function(key, x[None, :], sigma[:, None], shape)

    if transect == 'point':
        p = (g * 2.0 * x[None, :]) @ weights * (truncation / 2.0) / truncation ** 2
    else:
        p = g @ weights * (truncation / 2.0) / truncation
    return np.clip(p, np.finfo(float).tiny, 1.0)


def fit_detection_function(
    observations: pd.DataFrame,
    key: str = 'hn',
    covariates: Optional[Sequence[str]] = None,
    truncation: Optional[float] = None,
    transect: str = 'line',
    columns: Optional[SurveyColumns] = None,
    control: Optional[DetectionControl] = None,
) -> DetectionFunction:
    """Fit a detection function by maximum likelihood.

    Parameters
    ----------
    observations : pd.DataFrame
        Observation table with a distance column and any covariates.
    key : str
        Key function: ``"hn"`` (half-normal) or ``"hr"`` (hazard-rate).
    covariates : sequence of str, optional
        Covariates of the log scale parameter. Numeric columns enter
        linearly; object or categorical columns are treated as factors.
    truncation : float, optional
        Right truncation distance; defaults to the largest observed distance.
    transect : str
        ``"line"`` or ``"point"``.
    columns : SurveyColumns, optional
        Column names.
    control : DetectionControl, optional
        Optimizer settings.

    Returns
    -------
    DetectionFunction

    Raises
    ------
    FitFailure
        If no observations remain after truncation, or the optimizer fails
        to converge, or the information matrix is not positive definite.

    Examples
    --------
    >>> df = fit_detection_function(obs, key='hr', covariates=['beaufort'], truncation=1.5)
    >>> df.average_p()
    0.52
    """
    cols = columns or SurveyColumns()
    ctrl = control or DetectionControl()
    covariates = tuple(covariates or ())

    if key not in KEY_FUNCTIONS:
        raise ValueError(f"Unknown key function '{key}'. Choose from {KEY_FUNCTIONS}")
    if transect not in TRANSECT_TYPES:
        raise ValueError(f"transect must be one of {TRANSECT_TYPES}, got '{transect}'")

    check_observation_data(observations, columns=cols)
    for name in covariates:
        if name not in observations.columns:
            raise SchemaMismatch(
                f"Observation table lacks detection covariate '{name}'", covariate=name
            )

    distances = observations[cols.distance].to_numpy(dtype=float)
    if truncation is None:
        truncation = float(distances.max()) if distances.size else 0.0
    elif truncation <= 0:
        raise ValueError(f"truncation must be positive, got {truncation}")

    keep = distances <= truncation
    data = observations.loc[keep].copy()
    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.info(f"Truncation at {truncation:g} removed {n_dropped} observation(s)")
    if len(data) == 0 or truncation <= 0:
        raise FitFailure("No observations remain after truncation")

    x = data[cols.distance].to_numpy(dtype=float)

    # Scale design
    design_info = None
    if covariates:
        try:
            design = dmatrix('~ ' + ' + '.join(covariates), data, NA_action='raise')
        except PatsyError as exc:
            raise FitFailure(f"Cannot build detection covariate design: {exc}") from exc
        design_info = design.design_info
        Z = np.asarray(design)
        scale_names = [f"scale:{name}" for name in design_info.column_names]
    else:
        Z = np.ones((len(data), 1))
        scale_names = ['scale:Intercept']

    n_scale = Z.shape[1]
    if n_scale >= len(data):
        raise FitFailure(
            f"Detection model has {n_scale} scale coefficients but only {len(data)} observations"
        )

    nodes, weights = leggauss(ctrl.n_quadrature)
    quad_x = truncation / 2.0 * (nodes + 1.0)
    if transect == 'point':
        quad_w = weights * (truncation / 2.0) * 2.0 * quad_x / truncation ** 2
        positive = x > 0
        constant = np.sum(np.log(2.0 * x[positive] / truncation ** 2))
    else:
        quad_w = weights * (truncation / 2.0) / truncation
        constant = -len(x) * np.log(truncation)

    def negloglik(params: np.ndarray) -> float:
        beta = params[:n_scale]
        shape = float(np.exp(params[-1])) if key == 'hr' else None
        sigma = np.exp(Z @ beta)
        g_obs = key_function(key, x, sigma, shape)
        p = key_function(key, quad_x[None, :], sigma[:, None], shape) @ quad_w
        with np.errstate(divide='ignore', invalid='ignore'):
            ll = np.sum(np.log(g_obs) - np.log(p))
        if not np.isfinite(ll):
            return 1e300
        return -ll

    # Starting values
    x0 = np.zeros(n_scale + (1 if key == 'hr' else 0))
    if key == 'hn':
        x0[0] = np.log(max(np.sqrt(np.mean(x ** 2)), truncation * 1e-3))
    else:
        x0[0] = np.log(max(np.median(x), truncation * 1e-2))
        x0[-1] = np.log(2.5)

    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        result = optimize.minimize(
            negloglik, x0, method='BFGS', options={'maxiter': ctrl.maxiter, 'gtol': 1e-6}
        )

    if not np.isfinite(result.fun) or result.fun >= 1e299:
        raise FitFailure("Detection function likelihood is not finite at the optimum")
    if not result.success:
        # BFGS reports precision loss at flat optima; accept if the gradient is small
        precision_loss = result.status == 2 and np.max(np.abs(result.jac)) < 1e-3 * max(1.0, len(x))
        if not precision_loss:
            raise FitFailure(
                f"Detection function optimizer did not converge: {result.message}",
                iterations=int(result.nit),
            )

    params = np.asarray(result.x, dtype=float)
    hessian = numerical_hessian(negloglik, params, ctrl.fd_step)
    hessian = (hessian + hessian.T) / 2.0
    eigenvalues = np.linalg.eigvalsh(hessian)
    if not np.all(np.isfinite(eigenvalues)) or eigenvalues.min() <= 0:
        raise FitFailure(
            "Detection function information matrix is not positive definite",
            iterations=int(result.nit),
        )
    vcov = np.linalg.inv(hessian)

    names = scale_names + (['shape:log(b)'] if key == 'hr' else [])
    fitted = DetectionFunction(
        key=key,
        covariates=covariates,
        params=params,
        vcov=vcov,
        truncation=float(truncation),
        transect=transect,
        loglik=float(-result.fun + constant),
        data=data,
        design_info=design_info,
        coefficient_names=tuple(names),
        n_iterations=int(result.nit),
        columns=cols,
        control=ctrl,
    )
    logger.debug(f"Fitted {fitted!r} in {result.nit} iterations")
    return fitted
