"""
Prediction of abundance over a grid of cells.
"""

from __future__ import annotations

from typing import Optional, Union

import numpy as np
import pandas as pd
from patsy import PatsyError, build_design_matrices

from pydsm.core.data import check_prediction_grid
from pydsm.core.dsm import CountModel
from pydsm.core.exceptions import SchemaMismatch


def prediction_matrix(model: CountModel, grid: pd.DataFrame) -> np.ndarray:
    """Model matrix of a fitted CountModel evaluated at the grid cells.

    Raises
    ------
    SchemaMismatch
        If the grid lacks a covariate used by any term.
    """
    model._require_fitted()
    check_prediction_grid(grid, model.config.variables)

    if model.parametric_info is None:
        blocks = [np.ones((len(grid), 1))]
    else:
        try:
            blocks = [np.asarray(
                build_design_matrices([model.parametric_info], grid, NA_action='raise')[0]
            )]
        except PatsyError as exc:
            raise SchemaMismatch(f"Cannot evaluate parametric terms on the grid: {exc}") from exc

    for term in model.terms:
        blocks.append(term.basis(grid))
    return np.hstack(blocks)


def grid_offset(
    grid: pd.DataFrame,
    offset: Optional[Union[np.ndarray, pd.Series, float]] = None,
    offset_col: str = 'area',
) -> np.ndarray:
    """Per-cell offset areas (not logged) aligned with the grid rows."""
    if offset is None:
        if offset_col not in grid.columns:
            raise SchemaMismatch(
                f"Prediction grid lacks offset column '{offset_col}'", covariate=offset_col
            )
        offset = grid[offset_col]
    area = np.broadcast_to(np.asarray(offset, dtype=float), (len(grid),)).copy()
    if not np.all(np.isfinite(area)) or np.any(area < 0):
        raise ValueError("Prediction offsets must be finite and non-negative")
    return area


def predict_dsm(
    model: CountModel,
    grid: pd.DataFrame,
    offset: Optional[Union[np.ndarray, pd.Series, float]] = None,
    offset_col: str = 'area',
) -> np.ndarray:
    """Predict abundance in each grid cell.

    Parameters
    ----------
    model : CountModel
        Fitted model.
    grid : pd.DataFrame
        Prediction grid holding every covariate the model uses.
    offset : array-like or float, optional
        Area of each cell. Defaults to ``grid[offset_col]``.
    offset_col : str
        Grid column holding cell areas.

    Returns
    -------
    np.ndarray
        Non-negative predicted abundance per cell; the grid total is
        ``prediction.sum()``.

    Raises
    ------
    SchemaMismatch
        If the grid lacks a required covariate or the offset column.
    """
    area = grid_offset(grid, offset, offset_col)
    Lp = prediction_matrix(model, grid)
    return area * np.exp(Lp @ model.coefficients)
