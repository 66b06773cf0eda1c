"""
Spatial smoothing for pydsm.

This module provides smooth term construction, including:
- Cubic regression, tensor product and thin plate regression splines
- Soap film smooths that respect non-convex survey boundaries
- Boundary validation, knot grids and prediction grids

Example
-------
>>> from pydsm.spatial import SmoothTermSpec, make_soap_grid
>>>
>>> knots = make_soap_grid(boundary, n=8)
>>> soap = SmoothTermSpec(('x', 'y'), basis='so', k=10,
...                       boundary=boundary, knots=knots)
"""

from pydsm.spatial.boundary import (
    create_prediction_grid,
    make_soap_grid,
    points_inside,
    validate_boundary,
)
from pydsm.spatial.terms import (
    BASIS_KINDS,
    SmoothTerm,
    SmoothTermSpec,
    build_term,
)
from pydsm.spatial.soap import SoapFilmTerm, SoapGrid

__all__ = [
    # Boundaries and grids
    "create_prediction_grid",
    "make_soap_grid",
    "points_inside",
    "validate_boundary",
    # Terms
    "BASIS_KINDS",
    "SmoothTerm",
    "SmoothTermSpec",
    "build_term",
    "SoapFilmTerm",
    "SoapGrid",
]
