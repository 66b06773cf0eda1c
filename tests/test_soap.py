"""
Tests for boundaries, grids and soap film smooths.
"""

import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Polygon, box

from pydsm import (
    BoundaryViolation,
    DSMConfig,
    ModelState,
    SmoothTermSpec,
    build_term,
    create_prediction_grid,
    dsm,
    make_soap_grid,
    predict_dsm,
    validate_boundary,
)
from pydsm.spatial import SoapFilmTerm, points_inside

SQUARE = np.array([[0, 0], [10, 0], [10, 10], [0, 10], [0, 0]], dtype=float)
HOLE = np.array([[4, 4], [6, 4], [6, 6], [4, 6], [4, 4]], dtype=float)


@pytest.fixture
def holed_boundary():
    return validate_boundary([SQUARE, HOLE])


class TestValidateBoundary:
    """Test boundary validation."""

    def test_polygon_passthrough(self, square_boundary):
        """Valid shapely polygons are returned unchanged."""
        assert validate_boundary(square_boundary) is square_boundary

    def test_vertex_array(self):
        """A closed vertex array becomes a polygon."""
        polygon = validate_boundary(SQUARE)
        assert isinstance(polygon, Polygon)
        assert np.isclose(polygon.area, 100.0)

    def test_rings_with_hole(self, holed_boundary):
        """Additional rings are holes."""
        assert len(holed_boundary.interiors) == 1
        assert np.isclose(holed_boundary.area, 96.0)

    def test_self_intersecting(self):
        """A bow-tie ring is rejected."""
        bowtie = np.array([[0, 0], [1, 1], [1, 0], [0, 1], [0, 0]], dtype=float)
        with pytest.raises(BoundaryViolation, match="self-intersecting"):
            validate_boundary(bowtie)

    def test_unclosed(self):
        """Rings must repeat their first vertex."""
        with pytest.raises(BoundaryViolation, match="not closed"):
            validate_boundary(SQUARE[:-1])

    def test_too_few_vertices(self):
        """Rings need three distinct vertices."""
        with pytest.raises(BoundaryViolation, match="three distinct"):
            validate_boundary(np.array([[0, 0], [1, 1], [0, 0], [1, 1], [0, 0]], dtype=float))

    def test_hole_outside_exterior(self):
        """Holes must lie inside the exterior ring."""
        outside = HOLE + 20.0
        with pytest.raises(BoundaryViolation, match="invalid"):
            validate_boundary([SQUARE, outside])


class TestGrids:
    """Test knot and prediction grids."""

    def test_soap_grid_inside(self, holed_boundary):
        """Knot grids lie strictly inside the region."""
        knots = make_soap_grid(holed_boundary, n=8)
        assert list(knots.columns) == ['x', 'y']
        assert len(knots) > 0
        assert np.all(points_inside(holed_boundary, knots['x'], knots['y'], strict=True))

    def test_soap_grid_square(self, square_boundary):
        """A square gives the full n x n lattice."""
        knots = make_soap_grid(square_boundary, n=4)
        assert len(knots) == 16
        assert np.allclose(sorted(knots['x'].unique()), [2.0, 4.0, 6.0, 8.0])

    def test_soap_grid_too_small(self, square_boundary):
        """At least two grid lines per axis are needed."""
        with pytest.raises(ValueError, match="at least 2"):
            make_soap_grid(square_boundary, n=1)

    def test_prediction_grid_area(self, square_boundary, holed_boundary, prediction_grid):
        """Cell areas add up to the region area."""
        assert len(prediction_grid) == 100
        assert np.isclose(prediction_grid['area'].sum(), square_boundary.area)

        holed = create_prediction_grid(holed_boundary, cell_size=1.0)
        assert len(holed) == 96
        assert np.isclose(holed['area'].sum(), holed_boundary.area)

    def test_prediction_grid_clipped_cells(self):
        """Cells cut by the boundary carry their clipped area and an inside location."""
        triangle = Polygon([(0, 0), (3, 0), (0, 3)])
        grid = create_prediction_grid(triangle, cell_size=1.0)
        assert np.isclose(grid['area'].sum(), 4.5)
        assert np.all(points_inside(triangle, grid['x'], grid['y']))
        assert grid['area'].max() <= 1.0 + 1e-12

    def test_prediction_grid_cell_size(self, square_boundary):
        """Cell size must be positive."""
        with pytest.raises(ValueError, match="cell_size"):
            create_prediction_grid(square_boundary, cell_size=0.0)


class TestSoapFilm:
    """Test soap film term construction."""

    def test_free_boundary_dimensions(self, segments, square_boundary):
        """A free-boundary film has interior knots plus one cyclic block, centred."""
        knots = make_soap_grid(square_boundary, n=4)
        spec = SmoothTermSpec(('x', 'y'), basis='so', k=6, boundary=square_boundary, knots=knots)
        term = build_term(spec, segments)

        assert isinstance(term, SoapFilmTerm)
        assert term.n_coef == 16 + 6 - 1
        assert len(term.penalties) == 2
        assert term.boundary_k == [6]
        X = term.basis(segments)
        assert X.shape == (len(segments), 21)
        assert np.all(np.isfinite(X))

    def test_wiggly_only(self, segments, square_boundary):
        """A zero-boundary film keeps one coefficient per knot and is not centred."""
        knots = make_soap_grid(square_boundary, n=4)
        spec = SmoothTermSpec(('x', 'y'), basis='sw', boundary=square_boundary, knots=knots)
        term = build_term(spec, segments)
        assert term.n_coef == 16
        assert len(term.penalties) == 1
        assert term.null_space_dim == 0

    def test_wiggly_vanishes_on_boundary(self, square_boundary, segments):
        """Zero-boundary basis functions are zero on the boundary."""
        knots = make_soap_grid(square_boundary, n=4)
        spec = SmoothTermSpec(('x', 'y'), basis='sw', boundary=square_boundary, knots=knots)
        term = build_term(spec, segments)
        edge = pd.DataFrame({'x': [0.0, 5.0, 0.0], 'y': [5.0, 0.0, 2.5]})
        assert np.allclose(term.basis(edge), 0.0, atol=1e-10)

    def test_knots_outside_dropped(self, segments, square_boundary):
        """Knots outside the boundary are discarded."""
        knots = np.vstack([make_soap_grid(square_boundary, n=4).to_numpy(), [[20.0, 20.0]]])
        spec = SmoothTermSpec(('x', 'y'), basis='sw', boundary=square_boundary, knots=knots)
        term = build_term(spec, segments)
        assert term.knots.shape == (16, 2)

    def test_all_knots_outside(self, segments, square_boundary):
        """A film without interior knots cannot be built."""
        knots = np.array([[20.0, 20.0], [30.0, 30.0]])
        spec = SmoothTermSpec(('x', 'y'), basis='so', boundary=square_boundary, knots=knots)
        with pytest.raises(BoundaryViolation, match="No soap film knots"):
            build_term(spec, segments)

    def test_data_in_hole(self, segments, holed_boundary):
        """Segments inside a hole are outside the region."""
        knots = make_soap_grid(holed_boundary, n=4)
        spec = SmoothTermSpec(('x', 'y'), basis='so', k=6, boundary=holed_boundary, knots=knots)
        with pytest.raises(BoundaryViolation, match="outside the boundary") as excinfo:
            build_term(spec, segments)

        inside_hole = segments.loc[
            segments['x'].between(4, 6) & segments['y'].between(4, 6), 'segment_id'
        ]
        assert sorted(excinfo.value.segments) == sorted(inside_hole.index.tolist())

    def test_allow_outside(self, segments, holed_boundary):
        """Data outside the boundary are accepted on request."""
        knots = make_soap_grid(holed_boundary, n=4)
        assert len(knots) == 12
        spec = SmoothTermSpec(
            ('x', 'y'), basis='so', k=6, boundary=holed_boundary, knots=knots, allow_outside=True
        )
        term = build_term(spec, segments)
        assert len(term.penalties) == 3
        assert term.boundary_k == [6, 6]
        assert term.n_coef == 12 + 6 + 6 - 1

    def test_small_boundary_k(self, segments, square_boundary):
        """Boundary dimensions below the minimum are raised with a warning."""
        knots = make_soap_grid(square_boundary, n=4)
        spec = SmoothTermSpec(('x', 'y'), basis='so', k=2, boundary=square_boundary, knots=knots)
        with pytest.warns(UserWarning, match="Boundary dimension"):
            term = build_term(spec, segments)
        assert term.boundary_k == [3]

    def test_rectangle_boundary_from_box(self, segments):
        """Boundaries can be given as shapely geometry built on the fly."""
        region = box(-1.0, -1.0, 11.0, 11.0)
        knots = make_soap_grid(region, n=5)
        spec = SmoothTermSpec(('x', 'y'), basis='so', k=8, boundary=region, knots=knots)
        term = build_term(spec, segments)
        assert term.n_coef == len(knots) + 8 - 1


class TestSoapFilmModel:
    """Test fitting and predicting a count model with a soap film smooth."""

    def test_fit_and_predict_around_hole(self, segments, observations, detection, holed_boundary):
        """A soap film over a region with a hole fits and predicts on the region grid."""
        in_hole = segments['x'].between(4, 6) & segments['y'].between(4, 6)
        kept = segments.loc[~in_hole]
        obs = observations[observations['segment_id'].isin(kept['segment_id'])]

        knots = make_soap_grid(holed_boundary, n=5)
        config = DSMConfig(terms=[
            SmoothTermSpec(('x', 'y'), basis='so', k=6, boundary=holed_boundary, knots=knots)
        ])
        model = dsm(config, kept, obs, detection)
        assert model.state is ModelState.FITTED
        assert 0.0 < model.deviance_explained <= 1.0

        grid = create_prediction_grid(holed_boundary, cell_size=1.0)
        abundance = predict_dsm(model, grid)
        assert abundance.shape == (len(grid),)
        assert np.all(np.isfinite(abundance))
        assert np.all(abundance >= 0)
        assert abundance.sum() > 0
