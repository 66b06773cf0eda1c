"""pydsm configuration.

Centralized defaults for the fitting engines and the explicit model
specification passed once at fit time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Sequence, Tuple, Union

if TYPE_CHECKING:
    from pydsm.core.families import FamilyChoice
    from pydsm.spatial.terms import SmoothTermSpec


RESPONSE_KINDS = ('count', 'abundance')
TRANSECT_TYPES = ('line', 'point')


@dataclass
class FitControl:
    """Penalized-likelihood (PIRLS + REML) fitting controls."""

    pirls_maxiter: int = 200
    pirls_tol: float = 1e-10
    reml_maxiter: int = 200
    reml_tol: float = 1e-8
    rho_range: float = 15.0     # log smoothing parameters searched within rho0 +/- rho_range
    fd_step: float = 1e-4       # finite-difference step of the outer optimizer
    max_step_halvings: int = 30


@dataclass
class DetectionControl:
    """Detection function fitting controls."""

    maxiter: int = 500
    n_quadrature: int = 64      # Gauss-Legendre nodes over [0, truncation]
    fd_step: float = 1e-5       # step for numerical Hessians and gradients


@dataclass
class SoapControl:
    """Soap film finite-difference grid controls."""

    grid_size: int = 40         # nodes along the longer side of the boundary box
    min_boundary_k: int = 3


@dataclass
class SurveyColumns:
    """Column names of the segment and observation tables."""

    segment_id: str = 'segment_id'
    transect_id: str = 'transect_id'
    x: str = 'x'
    y: str = 'y'
    length: str = 'length'
    area: str = 'area'
    distance: str = 'distance'
    size: str = 'size'


@dataclass(frozen=True)
class DSMConfig:
    """Density surface model specification.

    Attributes
    ----------
    terms : sequence of SmoothTermSpec
        Smooth terms, in model order.
    family : str or FamilyChoice
        Response distribution: ``"quasipoisson"``, ``"tweedie"`` or
        ``"nb"`` (or a :class:`~pydsm.core.families.FamilyChoice`).
    response : str
        ``"count"`` (raw counts, effective-area offset) or ``"abundance"``
        (Horvitz-Thompson estimates, strip-area offset).
    method : str
        Smoothing parameter selection; only ``"REML"`` is supported.
    parametric : str, optional
        patsy formula fragment of unpenalized covariates, e.g.
        ``"depth + C(year)"``.
    """

    terms: Tuple['SmoothTermSpec', ...] = ()
    family: Union[str, 'FamilyChoice'] = 'quasipoisson'
    response: str = 'count'
    method: str = 'REML'
    parametric: Optional[str] = None

    def __post_init__(self):
        """Validate the specification."""
        object.__setattr__(self, 'terms', tuple(self.terms))

        if self.method != 'REML':
            raise ValueError(
                f"Smoothing parameter selection must be 'REML', got '{self.method}'"
            )
        if self.response not in RESPONSE_KINDS:
            raise ValueError(
                f"response must be one of {RESPONSE_KINDS}, got '{self.response}'"
            )
        labels = [term.label for term in self.terms]
        if len(set(labels)) != len(labels):
            raise ValueError(f"Duplicate smooth terms: {labels}")

    @property
    def variables(self) -> Sequence[str]:
        """Covariate names used by the smooth terms."""
        names = []
        for term in self.terms:
            for var in term.variables:
                if var not in names:
                    names.append(var)
        return names


@dataclass
class Defaults:
    """Bundle of engine defaults."""

    fit: FitControl = field(default_factory=FitControl)
    detection: DetectionControl = field(default_factory=DetectionControl)
    soap: SoapControl = field(default_factory=SoapControl)
    columns: SurveyColumns = field(default_factory=SurveyColumns)


DEFAULTS = Defaults()
