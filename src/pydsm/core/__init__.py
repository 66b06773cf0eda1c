"""
Core module for pydsm.

Contains detection function fitting, response construction, the
penalized count model and its prediction and variance estimators.
"""

from pydsm.core.exceptions import (
    DSMError,
    FitFailure,
    InputMismatch,
    BoundaryViolation,
    NonConvergence,
    RankDeficiency,
    SchemaMismatch,
    MethodNotApplicable,
)
from pydsm.core.detection import DetectionFunction, fit_detection_function
from pydsm.core.response import ResponseData, build_response
from pydsm.core.families import CountFamily, FamilyChoice, resolve_family
from pydsm.core.gam import GAMFit, Penalty, PenalizedFitter, fit_gam
from pydsm.core.dsm import CountModel, ModelState, dsm
from pydsm.core.predict import predict_dsm, prediction_matrix
from pydsm.core.variance import (
    VarianceResult,
    delta_method_variance,
    dsm_var_gam,
    dsm_var_prop,
    estimate_variance,
)

__all__ = [
    # Errors
    'DSMError',
    'FitFailure',
    'InputMismatch',
    'BoundaryViolation',
    'NonConvergence',
    'RankDeficiency',
    'SchemaMismatch',
    'MethodNotApplicable',
    # Detection
    'DetectionFunction',
    'fit_detection_function',
    # Response
    'ResponseData',
    'build_response',
    # Count model
    'CountFamily',
    'FamilyChoice',
    'resolve_family',
    'GAMFit',
    'Penalty',
    'PenalizedFitter',
    'fit_gam',
    'CountModel',
    'ModelState',
    'dsm',
    # Prediction and variance
    'predict_dsm',
    'prediction_matrix',
    'VarianceResult',
    'delta_method_variance',
    'dsm_var_gam',
    'dsm_var_prop',
    'estimate_variance',
]
