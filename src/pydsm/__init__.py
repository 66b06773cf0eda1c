"""
pydsm - density surface models for distance sampling surveys

Fits detection functions to line and point transect distances, builds
per-segment responses, fits spatial count models with REML-selected
smoothing (including soap film smooths over non-convex regions), and
predicts abundance with delta-method variance.
"""

__version__ = "0.1.0"
__author__ = "pydsm Development Team"

from pydsm.config import (
    DEFAULTS,
    DetectionControl,
    DSMConfig,
    FitControl,
    SoapControl,
    SurveyColumns,
)
from pydsm.core import (
    BoundaryViolation,
    CountModel,
    DetectionFunction,
    DSMError,
    FamilyChoice,
    FitFailure,
    InputMismatch,
    MethodNotApplicable,
    ModelState,
    NonConvergence,
    RankDeficiency,
    ResponseData,
    SchemaMismatch,
    VarianceResult,
    build_response,
    dsm,
    dsm_var_gam,
    dsm_var_prop,
    estimate_variance,
    fit_detection_function,
    predict_dsm,
    prediction_matrix,
    resolve_family,
)
from pydsm.spatial import (
    SmoothTermSpec,
    build_term,
    create_prediction_grid,
    make_soap_grid,
    validate_boundary,
)
from pydsm.analysis import compare_models, obs_exp, summarize_dsm
from pydsm.logger import configure_logging, get_logger

__all__ = [
    # Version
    "__version__",
    "__author__",
    # Configuration
    "DEFAULTS",
    "DetectionControl",
    "DSMConfig",
    "FitControl",
    "SoapControl",
    "SurveyColumns",
    # Detection and response
    "DetectionFunction",
    "fit_detection_function",
    "ResponseData",
    "build_response",
    # Terms
    "SmoothTermSpec",
    "build_term",
    "validate_boundary",
    "make_soap_grid",
    "create_prediction_grid",
    # Count model
    "FamilyChoice",
    "resolve_family",
    "CountModel",
    "ModelState",
    "dsm",
    # Prediction and variance
    "predict_dsm",
    "prediction_matrix",
    "VarianceResult",
    "dsm_var_gam",
    "dsm_var_prop",
    "estimate_variance",
    # Diagnostics
    "summarize_dsm",
    "obs_exp",
    "compare_models",
    # Errors
    "DSMError",
    "FitFailure",
    "InputMismatch",
    "BoundaryViolation",
    "NonConvergence",
    "RankDeficiency",
    "SchemaMismatch",
    "MethodNotApplicable",
    # Logging
    "configure_logging",
    "get_logger",
]
