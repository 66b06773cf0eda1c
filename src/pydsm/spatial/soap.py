"""
Soap film smoothing over a bounded, possibly non-convex region.

A soap film smooth is the sum of two components, both defined by solving
Poisson's equation on a finite-difference grid over the region:

- a boundary component: cyclic cubic splines around each boundary ring,
  extended into the interior as the harmonic function (zero Laplacian)
  taking those values on the boundary;
- an interior (wiggly) component: for each interior knot k, rho_k solves
  Laplacian(rho_k) = delta_k and the basis function g_k solves
  Laplacian(g_k) = rho_k with g_k = 0 on the boundary. The penalty is the
  integral of (sum_k beta_k rho_k)^2 over the region.

Because basis functions are built by solving the PDE inside the region,
smoothness never leaks across gaps in the boundary (peninsulas, holes).
"""

from __future__ import annotations

import warnings
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
import scipy.sparse
import shapely
from patsy import cc
from scipy.interpolate import RegularGridInterpolator
from scipy.sparse.linalg import splu

from pydsm.config import SoapControl
from pydsm.core.exceptions import BoundaryViolation
from pydsm.logger import get_logger
from pydsm.spatial.boundary import points_inside, validate_boundary
from pydsm.spatial.terms import SmoothTerm, SmoothTermSpec, cyclic_spline_penalty, penalty_rank

logger = get_logger(__name__)


class SoapGrid:
    """Finite-difference grid over a boundary polygon.

    The bounding box is padded by one node on each side so every interior
    node has four neighbours in the grid.

    Attributes
    ----------
    xs, ys : np.ndarray
        Grid node coordinates along each axis.
    h : float
        Node spacing (equal in x and y).
    interior : np.ndarray
        (nx, ny) boolean mask of nodes strictly inside the polygon.
    laplacian : scipy.sparse.csc_matrix
        5-point Laplacian on interior nodes (zero Dirichlet boundary).
    coupling : scipy.sparse.csr_matrix
        Contribution of non-interior node values to the interior Laplacian.
    """

    def __init__(self, polygon, grid_size: int):
        if grid_size < 4:
            raise ValueError(f"Soap film grid_size must be at least 4, got {grid_size}")
        min_x, min_y, max_x, max_y = polygon.bounds
        self.h = max(max_x - min_x, max_y - min_y) / (grid_size - 1)
        nx = int(np.ceil((max_x - min_x) / self.h)) + 3
        ny = int(np.ceil((max_y - min_y) / self.h)) + 3
        self.xs = min_x - self.h + self.h * np.arange(nx)
        self.ys = min_y - self.h + self.h * np.arange(ny)

        xx, yy = np.meshgrid(self.xs, self.ys, indexing='ij')
        self.interior = points_inside(polygon, xx, yy, strict=True)
        self.n_interior = int(self.interior.sum())
        if self.n_interior == 0:
            raise BoundaryViolation(
                f"Soap film grid of size {grid_size} has no nodes inside the boundary"
            )

        # Node numbering: interior nodes first, then the rest
        flat_interior = self.interior.ravel()
        self.interior_index = np.flatnonzero(flat_interior)
        self.exterior_index = np.flatnonzero(~flat_interior)
        order = np.empty(nx * ny, dtype=int)
        order[self.interior_index] = np.arange(self.n_interior)
        order[self.exterior_index] = np.arange(self.exterior_index.size)
        self._order = order

        self.laplacian, self.coupling = self._build_operators(nx, ny)
        self._lu = splu(self.laplacian)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.interior.shape

    def _build_operators(self, nx: int, ny: int):
        h2 = self.h ** 2
        rows, cols, vals = [], [], []
        c_rows, c_cols, c_vals = [], [], []
        interior = self.interior
        for ix, iy in zip(*np.nonzero(interior)):
            row = self._order[ix * ny + iy]
            rows.append(row)
            cols.append(row)
            vals.append(-4.0 / h2)
            for jx, jy in ((ix - 1, iy), (ix + 1, iy), (ix, iy - 1), (ix, iy + 1)):
                neighbour = jx * ny + jy
                if interior[jx, jy]:
                    rows.append(row)
                    cols.append(self._order[neighbour])
                    vals.append(1.0 / h2)
                else:
                    c_rows.append(row)
                    c_cols.append(self._order[neighbour])
                    c_vals.append(1.0 / h2)

        laplacian = scipy.sparse.csc_matrix(
            (vals, (rows, cols)), shape=(self.n_interior, self.n_interior)
        )
        coupling = scipy.sparse.csr_matrix(
            (c_vals, (c_rows, c_cols)), shape=(self.n_interior, self.exterior_index.size)
        )
        return laplacian, coupling

    def solve(self, rhs: np.ndarray) -> np.ndarray:
        """Solve laplacian @ u = rhs for interior values."""
        return self._lu.solve(np.asarray(rhs, dtype=float))

    def node_coordinates(self, flat_index: np.ndarray) -> np.ndarray:
        ny = self.shape[1]
        return np.column_stack([self.xs[flat_index // ny], self.ys[flat_index % ny]])

    def field(self, interior_values: np.ndarray, exterior_values: np.ndarray) -> np.ndarray:
        """Assemble (nx, ny, m) node values from interior and exterior parts."""
        m = interior_values.shape[1]
        values = np.zeros((self.shape[0] * self.shape[1], m))
        values[self.interior_index] = interior_values
        values[self.exterior_index] = exterior_values
        return values.reshape(self.shape[0], self.shape[1], m)


class SoapFilmTerm(SmoothTerm):
    """Soap film smooth of two location variables.

    With basis ``"so"`` the term has a free boundary component (one
    cyclic spline of dimension ``k`` per boundary ring) and is centred;
    with ``"sw"`` the film is zero on the boundary and not centred.
    """

    def __init__(
        self,
        spec: SmoothTermSpec,
        data: pd.DataFrame,
        control: Optional[SoapControl] = None,
    ):
        super().__init__(spec)
        ctrl = control or SoapControl()
        self.centred = spec.basis == 'so'
        self.free_boundary = spec.basis == 'so'

        self.polygon = validate_boundary(spec.boundary)
        self.grid = SoapGrid(self.polygon, spec.grid_size or ctrl.grid_size)
        self.knots = self._interior_knots(spec.knots)

        values = self.values(data)
        self._check_data(values, data.index)

        # Interior component
        n_knots = self.knots.shape[0]
        delta = np.zeros((self.grid.n_interior, n_knots))
        delta[self._knot_nodes, np.arange(n_knots)] = 1.0 / self.grid.h ** 2
        rho = self.grid.solve(delta)
        wiggly = self.grid.solve(rho)
        S_wiggly = rho.T @ rho * self.grid.h ** 2
        fields = [self.grid.field(wiggly, np.zeros((self.grid.exterior_index.size, n_knots)))]
        blocks = [S_wiggly]

        # Boundary component
        self.boundary_k: List[int] = []
        if self.free_boundary:
            k = spec.k or spec.default_k()
            if k < ctrl.min_boundary_k:
                warnings.warn(
                    f"Boundary dimension of {self.label} adjusted from k={k} "
                    f"to k={ctrl.min_boundary_k}",
                    UserWarning,
                )
                k = ctrl.min_boundary_k
            exterior_values, boundary_penalties = self._boundary_basis(k)
            interior_values = -self.grid.solve(self.grid.coupling @ exterior_values)
            fields.append(self.grid.field(interior_values, exterior_values))
            blocks.extend(boundary_penalties)

        stacked = np.concatenate(fields, axis=2)
        self._interpolator = RegularGridInterpolator(
            (self.grid.xs, self.grid.ys), stacked, method='linear', bounds_error=False, fill_value=None
        )

        n_coef = stacked.shape[2]
        penalties = []
        start = 0
        for block in blocks:
            S = np.zeros((n_coef, n_coef))
            S[start:start + block.shape[0], start:start + block.shape[0]] = block
            penalties.append(S)
            start += block.shape[0]

        self._finalize(self._raw_basis(values), penalties)
        logger.debug(
            f"{self.label}: {n_knots} interior knots, boundary k={self.boundary_k}, "
            f"{self.grid.n_interior} interior grid nodes, penalty rank {penalty_rank(sum(self.penalties))}"
        )

    def _interior_knots(self, knots) -> np.ndarray:
        """Drop knots outside the boundary and snap the rest to interior grid nodes."""
        knots = np.asarray(knots, dtype=float)
        if knots.size == 0:
            knots = knots.reshape(0, 2)
        if knots.ndim != 2 or knots.shape[1] != 2:
            raise BoundaryViolation(
                f"Soap film knots must be an (m, 2) array, got shape {knots.shape}",
                term=self.label,
            )

        inside = points_inside(self.polygon, knots[:, 0], knots[:, 1], strict=True)
        n_dropped = int((~inside).sum())
        if n_dropped:
            logger.info(f"{self.label}: discarded {n_dropped} knot(s) outside the boundary")
        knots = knots[inside]
        if knots.shape[0] == 0:
            raise BoundaryViolation(
                "No soap film knots remain inside the boundary", term=self.label
            )

        node_xy = self.grid.node_coordinates(self.grid.interior_index)
        nearest = np.argmin(
            np.sum((knots[:, None, :] - node_xy[None, :, :]) ** 2, axis=-1), axis=1
        )
        unique_nodes = np.unique(nearest)
        if unique_nodes.size < nearest.size:
            warnings.warn(
                f"{self.label}: {nearest.size - unique_nodes.size} knot(s) share a grid node "
                f"and were merged; increase grid_size to keep them apart",
                UserWarning,
            )
        self._knot_nodes = unique_nodes
        return node_xy[unique_nodes]

    def _check_data(self, values: np.ndarray, index) -> None:
        if self.spec.allow_outside:
            return
        inside = points_inside(self.polygon, values[:, 0], values[:, 1])
        if not np.all(inside):
            raise BoundaryViolation(
                f"{int((~inside).sum())} data location(s) lie outside the boundary; "
                f"remove them or set allow_outside=True",
                term=self.label,
                segments=list(np.asarray(index)[~inside]),
            )

    def _boundary_basis(self, k: int) -> Tuple[np.ndarray, List[np.ndarray]]:
        """Cyclic spline values at non-interior nodes, one block of columns per ring."""
        rings = [self.polygon.exterior] + list(self.polygon.interiors)
        node_xy = self.grid.node_coordinates(self.grid.exterior_index)
        points = shapely.points(node_xy)

        distances = np.column_stack([shapely.distance(ring, points) for ring in rings])
        nearest_ring = np.argmin(distances, axis=1)

        knots = np.linspace(0.0, 1.0, k + 1)
        blocks = []
        penalties = []
        for i, ring in enumerate(rings):
            s = shapely.line_locate_point(ring, points, normalized=True)
            B = np.asarray(cc(s, knots=knots[1:-1], lower_bound=0.0, upper_bound=1.0))
            B[nearest_ring != i] = 0.0
            blocks.append(B)
            penalties.append(cyclic_spline_penalty(knots))
            self.boundary_k.append(B.shape[1])
        return np.hstack(blocks), penalties

    def _raw_basis(self, values: np.ndarray) -> np.ndarray:
        return self._interpolator(values)
