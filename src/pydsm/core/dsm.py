"""
Density surface model: the count model fitted to per-segment responses.

The model is a penalized log-link regression

    E[y_j] = A_j * exp(x_j' beta)

where y_j is the segment response, A_j the offset area (effective area
for counts, strip area for Horvitz-Thompson estimates) and x_j the row
of the model matrix built from an intercept, optional parametric
covariates and the smooth terms.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from patsy import PatsyError, dmatrix
from patsy.design_info import DesignInfo

from pydsm.config import DSMConfig, FitControl, SurveyColumns
from pydsm.core.detection import DetectionFunction
from pydsm.core.exceptions import RankDeficiency, SchemaMismatch
from pydsm.core.families import CountFamily, resolve_family
from pydsm.core.gam import GAMFit, Penalty, PenalizedFitter
from pydsm.core.response import ResponseData, build_response
from pydsm.logger import get_logger
from pydsm.spatial.terms import SmoothTerm, build_term

logger = get_logger(__name__)


class ModelState(Enum):
    """Life cycle of a CountModel."""

    UNFIT = "unfit"
    FITTING = "fitting"
    FITTED = "fitted"  # terminal
    FAILED = "failed"  # terminal


def parametric_design(formula: Optional[str], data: pd.DataFrame):
    """Unpenalized part of the model matrix and its patsy design info.

    With no formula the design is a single intercept column and the
    design info is None.
    """
    if formula is None:
        return np.ones((len(data), 1)), None, ['Intercept']
    try:
        design = dmatrix('~ ' + formula, data, NA_action='raise')
    except PatsyError as exc:
        raise SchemaMismatch(f"Cannot build parametric terms '{formula}': {exc}") from exc
    info = design.design_info
    return np.asarray(design), info, list(info.column_names)


class CountModel:
    """Density surface model fitted by penalized likelihood with REML.

    A model is created ``UNFIT``, moves to ``FITTING`` while
    :meth:`fit` runs and ends ``FITTED`` or ``FAILED``. Both end states
    are terminal; fit a new CountModel to retry with another specification.

    Parameters
    ----------
    config : DSMConfig
        Terms, family, response definition and parametric formula.
    control : FitControl, optional
        Iteration budgets and tolerances.

    Examples
    --------
    >>> config = DSMConfig(terms=[SmoothTermSpec(('x', 'y'), k=20)], family='tweedie')
    >>> model = CountModel(config).fit(build_response(segments, obs, detection))
    >>> model.deviance_explained
    0.34
    """

    def __init__(self, config: DSMConfig, control: Optional[FitControl] = None):
        self.config = config
        self.control = control or FitControl()
        self.state = ModelState.UNFIT
        self.family: CountFamily = resolve_family(config.family)

        self.terms: List[SmoothTerm] = []
        self.penalties: List[Penalty] = []
        self.term_slices: Dict[str, slice] = {}
        self.parametric_info: Optional[DesignInfo] = None
        self.coefficient_names: List[str] = []
        self.response_data: Optional[ResponseData] = None
        self.result: Optional[GAMFit] = None
        self.X: Optional[np.ndarray] = None

    def __repr__(self) -> str:
        terms = ' + '.join(term.label for term in self.config.terms) or '1'
        if self.state is not ModelState.FITTED:
            return f"CountModel({terms}, state={self.state.value})"
        return (
            f"CountModel({terms}, family={self.result.family!r}, response={self.config.response}, "
            f"n={len(self.y)}, edf={self.result.edf.sum():.2f}, "
            f"deviance explained={100 * self.deviance_explained:.1f}%)"
        )

    # -- fitting -----------------------------------------------------------------------

    def fit(self, response_data: ResponseData) -> 'CountModel':
        """Fit the model to a response built by :func:`build_response`.

        Returns
        -------
        CountModel
            ``self``, now ``FITTED``.

        Raises
        ------
        RuntimeError
            If the model has already been fitted or has failed.
        RankDeficiency, NonConvergence, SchemaMismatch, BoundaryViolation
            On failure; the model is left ``FAILED``.
        """
        if self.state is not ModelState.UNFIT:
            raise RuntimeError(
                f"CountModel can only be fitted once (state={self.state.value})"
            )
        if response_data.response != self.config.response:
            raise ValueError(
                f"Model expects a '{self.config.response}' response, "
                f"got '{response_data.response}'"
            )

        self.state = ModelState.FITTING
        try:
            self._fit(response_data)
        except Exception:
            self.state = ModelState.FAILED
            raise
        self.state = ModelState.FITTED
        logger.info(f"Fitted {self!r}")
        return self

    def _fit(self, response_data: ResponseData) -> None:
        data = response_data.data
        X_param, self.parametric_info, names = parametric_design(self.config.parametric, data)
        blocks = [X_param]
        penalties = []
        start = X_param.shape[1]

        for spec in self.config.terms:
            term = build_term(spec, data)
            X_term = term.basis(data)
            if np.linalg.matrix_rank(X_term) < X_term.shape[1]:
                raise RankDeficiency(
                    f"Basis of {term.label} is collinear at the fitting data "
                    f"({X_term.shape[1]} coefficients); reduce k or use fewer knots",
                    term=term.label,
                )
            for i, S in enumerate(term.penalties):
                penalties.append(Penalty(start, S, label=f"{term.label}[{i}]"))
            self.term_slices[term.label] = slice(start, start + term.n_coef)
            names.extend(f"{term.label}.{i + 1}" for i in range(term.n_coef))
            self.terms.append(term)
            blocks.append(X_term)
            start += term.n_coef

        self.X = np.hstack(blocks)
        self.coefficient_names = names
        self.response_data = response_data

        fitter = PenalizedFitter(
            self.X,
            response_data.y,
            response_data.offset,
            penalties,
            self.family,
            self.control,
            intercept=names[0] == 'Intercept',
        )
        self.result = fitter.fit()
        self.penalties = penalties

    def _require_fitted(self) -> None:
        if self.state is not ModelState.FITTED:
            raise RuntimeError(f"CountModel is not fitted (state={self.state.value})")

    # -- fitted quantities -------------------------------------------------------------

    @property
    def is_fitted(self) -> bool:
        return self.state is ModelState.FITTED

    @property
    def coefficients(self) -> np.ndarray:
        self._require_fitted()
        return self.result.coefficients

    @property
    def Vp(self) -> np.ndarray:
        """Posterior covariance matrix of the coefficients."""
        self._require_fitted()
        return self.result.Vp

    @property
    def sp(self) -> np.ndarray:
        self._require_fitted()
        return self.result.sp

    @property
    def scale(self) -> float:
        self._require_fitted()
        return self.result.scale

    @property
    def fitted_family(self) -> CountFamily:
        """Family with any estimated Tweedie power or theta filled in."""
        self._require_fitted()
        return self.result.family

    @property
    def deviance(self) -> float:
        self._require_fitted()
        return self.result.deviance

    @property
    def null_deviance(self) -> float:
        self._require_fitted()
        return self.result.null_deviance

    @property
    def deviance_explained(self) -> float:
        self._require_fitted()
        return self.result.deviance_explained

    @property
    def aic(self) -> float:
        self._require_fitted()
        return self.result.aic

    @property
    def reml(self) -> float:
        self._require_fitted()
        return self.result.reml

    @property
    def fitted_values(self) -> np.ndarray:
        self._require_fitted()
        return self.result.fitted

    @property
    def y(self) -> np.ndarray:
        return self.response_data.y

    @property
    def offset(self) -> np.ndarray:
        return self.response_data.offset

    @property
    def detection(self) -> Optional[DetectionFunction]:
        return self.response_data.detection if self.response_data is not None else None

    @property
    def edf(self) -> pd.Series:
        """Effective degrees of freedom of each smooth term."""
        self._require_fitted()
        return pd.Series(
            {label: float(self.result.edf[sl].sum()) for label, sl in self.term_slices.items()},
            dtype=float,
        )

    def summary(self) -> pd.DataFrame:
        """Smooth-term table: basis dimension, EDF and smoothing parameters."""
        self._require_fitted()
        rows = []
        sp_iter = iter(self.result.sp)
        for term in self.terms:
            sl = self.term_slices[term.label]
            rows.append({
                'term': term.label,
                'basis': term.spec.basis,
                'k': term.n_coef,
                'edf': float(self.result.edf[sl].sum()),
                'sp': [float(next(sp_iter)) for _ in term.penalties],
            })
        return pd.DataFrame(rows, columns=['term', 'basis', 'k', 'edf', 'sp'])


def dsm(
    config: DSMConfig,
    segments: pd.DataFrame,
    observations: pd.DataFrame,
    detection: Optional[DetectionFunction] = None,
    transect: Optional[str] = None,
    strip_width: Optional[float] = None,
    columns: Optional[SurveyColumns] = None,
    control: Optional[FitControl] = None,
) -> CountModel:
    """Build the response and fit a density surface model in one call.

    Parameters
    ----------
    config : DSMConfig
        Model specification; ``config.response`` selects the response.
    segments, observations : pd.DataFrame
        Survey tables.
    detection : DetectionFunction, optional
        Fitted detection function (None for strip transects).
    transect, strip_width, columns
        Passed to :func:`~pydsm.core.response.build_response`.
    control : FitControl, optional
        Fitting controls.

    Returns
    -------
    CountModel
        Fitted model.
    """
    response_data = build_response(
        segments,
        observations,
        detection=detection,
        response=config.response,
        transect=transect,
        strip_width=strip_width,
        columns=columns,
    )
    return CountModel(config, control).fit(response_data)
