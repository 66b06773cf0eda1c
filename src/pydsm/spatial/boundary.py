"""
Boundary polygon utilities.

Functions for validating survey-region boundaries and laying regular
knot and prediction grids inside them. Coordinates are assumed to be
projected to a common linear unit by the caller.
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np
import pandas as pd
import shapely
from shapely.geometry import LinearRing, Polygon

from pydsm.core.exceptions import BoundaryViolation

BoundaryLike = Union[Polygon, np.ndarray, Sequence[np.ndarray]]


def _ring_from_coords(coords, name: str) -> np.ndarray:
    coords = np.asarray(coords, dtype=float)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise BoundaryViolation(f"{name} must be an (n, 2) array of vertices, got shape {coords.shape}")
    if not np.all(np.isfinite(coords)):
        raise BoundaryViolation(f"{name} has non-finite vertices")
    if len(coords) < 4 or not np.allclose(coords[0], coords[-1]):
        raise BoundaryViolation(f"{name} is not closed (first and last vertex differ)")
    if len(np.unique(coords[:-1], axis=0)) < 3:
        raise BoundaryViolation(f"{name} needs at least three distinct vertices")
    if not LinearRing(coords).is_simple:
        raise BoundaryViolation(f"{name} is self-intersecting")
    return coords


def validate_boundary(boundary: BoundaryLike) -> Polygon:
    """Check a boundary and return it as a shapely Polygon.

    Parameters
    ----------
    boundary : Polygon, array or sequence of arrays
        A shapely Polygon, a closed (n, 2) vertex array, or a sequence of
        closed vertex arrays whose first element is the exterior ring and
        whose remaining elements are holes.

    Returns
    -------
    shapely.geometry.Polygon

    Raises
    ------
    BoundaryViolation
        If the boundary is not closed, has fewer than three distinct
        vertices, or is self-intersecting.
    """
    if isinstance(boundary, Polygon):
        polygon = boundary
    else:
        as_array = None
        try:
            as_array = np.asarray(boundary, dtype=float)
        except (TypeError, ValueError):
            pass
        if as_array is not None and as_array.ndim == 2:
            rings = [_ring_from_coords(as_array, "Boundary")]
        else:
            rings = [
                _ring_from_coords(ring, "Boundary" if i == 0 else f"Hole {i}")
                for i, ring in enumerate(boundary)
            ]
        if not rings:
            raise BoundaryViolation("Boundary has no rings")
        polygon = Polygon(rings[0], holes=rings[1:])

    if polygon.is_empty or polygon.area <= 0:
        raise BoundaryViolation("Boundary polygon is empty")
    if not polygon.is_valid:
        raise BoundaryViolation(
            f"Boundary polygon is invalid: {shapely.is_valid_reason(polygon)}"
        )
    return polygon


def points_inside(boundary: Polygon, x: np.ndarray, y: np.ndarray, strict: bool = False) -> np.ndarray:
    """Boolean mask of points inside (or on, unless ``strict``) the boundary."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if strict:
        return shapely.contains_xy(boundary, x, y)
    return shapely.intersects_xy(boundary, x, y)


def make_soap_grid(boundary: BoundaryLike, n: Union[int, Sequence[int]] = 10) -> pd.DataFrame:
    """Create a regular knot grid strictly inside a boundary.

    Parameters
    ----------
    boundary : Polygon or vertex array(s)
        Survey region.
    n : int or (int, int)
        Number of grid lines in x and y over the bounding box.

    Returns
    -------
    pd.DataFrame
        Knot coordinates in columns ``x`` and ``y``.
    """
    polygon = validate_boundary(boundary)
    nx, ny = (n, n) if np.isscalar(n) else tuple(n)
    if nx < 2 or ny < 2:
        raise ValueError(f"Knot grid needs at least 2 lines per axis, got {(nx, ny)}")

    min_x, min_y, max_x, max_y = polygon.bounds
    # Interior grid lines only; the bounding box edges touch the boundary
    gx = np.linspace(min_x, max_x, nx + 2)[1:-1]
    gy = np.linspace(min_y, max_y, ny + 2)[1:-1]
    xx, yy = np.meshgrid(gx, gy)
    xx = xx.ravel()
    yy = yy.ravel()

    inside = points_inside(polygon, xx, yy, strict=True)
    return pd.DataFrame({'x': xx[inside], 'y': yy[inside]})


def create_prediction_grid(boundary: BoundaryLike, cell_size: float) -> pd.DataFrame:
    """Create square prediction cells clipped to a boundary.

    Parameters
    ----------
    boundary : Polygon or vertex array(s)
        Survey region.
    cell_size : float
        Side length of each cell.

    Returns
    -------
    pd.DataFrame
        One row per cell overlapping the region, with cell location
        (``x``, ``y``) and the clipped cell ``area`` to use as offset.
    """
    polygon = validate_boundary(boundary)
    if cell_size <= 0:
        raise ValueError(f"cell_size must be positive, got {cell_size}")

    min_x, min_y, max_x, max_y = polygon.bounds
    nx = max(int(np.ceil((max_x - min_x) / cell_size)), 1)
    ny = max(int(np.ceil((max_y - min_y) / cell_size)), 1)

    ix, iy = np.meshgrid(np.arange(nx), np.arange(ny))
    x0 = min_x + ix.ravel() * cell_size
    y0 = min_y + iy.ravel() * cell_size
    cells = shapely.box(x0, y0, x0 + cell_size, y0 + cell_size)

    clipped = shapely.intersection(cells, polygon)
    area = shapely.area(clipped)
    keep = area > 0
    clipped = clipped[keep]

    cx = x0[keep] + cell_size / 2.0
    cy = y0[keep] + cell_size / 2.0
    # Cells whose centre falls outside the region use a point of the clipped piece
    outside = ~points_inside(polygon, cx, cy)
    if np.any(outside):
        surface = shapely.point_on_surface(clipped[outside])
        cx[outside] = shapely.get_x(surface)
        cy[outside] = shapely.get_y(surface)

    return pd.DataFrame({'x': cx, 'y': cy, 'area': area[keep]})
