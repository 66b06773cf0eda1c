"""
Survey table validation.

Segment and observation tables are supplied already cleaned and projected
by the calling workflow. These helpers check the referential and schema
invariants the engine relies on, without modifying the caller's tables.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

import numpy as np
import pandas as pd

from pydsm.config import SurveyColumns
from pydsm.core.exceptions import InputMismatch, SchemaMismatch


def _require_columns(df: pd.DataFrame, names: Iterable[str], table: str) -> None:
    for name in names:
        if name not in df.columns:
            raise SchemaMismatch(
                f"{table} table has no column '{name}'. Available: {list(df.columns)}",
                covariate=name,
            )


def check_segment_data(
    segments: pd.DataFrame,
    columns: Optional[SurveyColumns] = None,
    require_effort: bool = True,
) -> pd.DataFrame:
    """Validate a segment table.

    Parameters
    ----------
    segments : pd.DataFrame
        One row per segment.
    columns : SurveyColumns, optional
        Column names (defaults used if None).
    require_effort : bool
        Whether the length (effort) column must be present.

    Returns
    -------
    pd.DataFrame
        The same table, for chaining.

    Raises
    ------
    SchemaMismatch
        If a required column is missing.
    InputMismatch
        If segment identifiers are duplicated.
    ValueError
        If lengths are negative or not finite.
    """
    cols = columns or SurveyColumns()
    if not isinstance(segments, pd.DataFrame):
        raise ValueError(f"segments must be a pandas DataFrame, got {type(segments).__name__}")

    required = [cols.segment_id]
    if require_effort:
        required.append(cols.length)
    _require_columns(segments, required, "Segment")

    duplicated = segments[cols.segment_id][segments[cols.segment_id].duplicated()]
    if len(duplicated) > 0:
        raise InputMismatch(
            "Segment identifiers must be unique",
            segments=duplicated.unique().tolist(),
        )

    if require_effort:
        lengths = segments[cols.length].to_numpy(dtype=float)
        if not np.all(np.isfinite(lengths)):
            raise ValueError("Segment lengths must be finite")
        if np.any(lengths < 0):
            raise ValueError("Segment lengths must be non-negative")

    return segments


def check_observation_data(
    observations: pd.DataFrame,
    segments: Optional[pd.DataFrame] = None,
    columns: Optional[SurveyColumns] = None,
) -> pd.DataFrame:
    """Validate an observation table and its links to segments.

    Parameters
    ----------
    observations : pd.DataFrame
        One row per detected cluster.
    segments : pd.DataFrame, optional
        Segment table every observation must reference.
    columns : SurveyColumns, optional
        Column names (defaults used if None).

    Returns
    -------
    pd.DataFrame
        The same table, for chaining.

    Raises
    ------
    InputMismatch
        If an observation references a segment absent from ``segments``.
    ValueError
        If distances or cluster sizes are invalid.
    """
    cols = columns or SurveyColumns()
    if not isinstance(observations, pd.DataFrame):
        raise ValueError(
            f"observations must be a pandas DataFrame, got {type(observations).__name__}"
        )
    _require_columns(observations, [cols.distance], "Observation")

    distances = observations[cols.distance].to_numpy(dtype=float)
    if np.any(~np.isfinite(distances)) or np.any(distances < 0):
        raise ValueError("Observed distances must be finite and non-negative")

    if cols.size in observations.columns:
        sizes = observations[cols.size].to_numpy(dtype=float)
        if np.any(~np.isfinite(sizes)) or np.any(sizes <= 0):
            raise ValueError("Cluster sizes must be finite and positive")

    if segments is not None:
        _require_columns(observations, [cols.segment_id], "Observation")
        known = set(segments[cols.segment_id].tolist())
        referenced = observations[cols.segment_id]
        missing = referenced[~referenced.isin(known)].unique().tolist()
        if missing:
            raise InputMismatch(
                f"{len(missing)} segment(s) referenced by observations are absent "
                f"from the segment table",
                segments=missing,
            )

    return observations


def cluster_sizes(observations: pd.DataFrame, columns: Optional[SurveyColumns] = None) -> np.ndarray:
    """Cluster size of each observation (1 when the table has no size column)."""
    cols = columns or SurveyColumns()
    if cols.size in observations.columns:
        return observations[cols.size].to_numpy(dtype=float)
    return np.ones(len(observations))


def check_prediction_grid(grid: pd.DataFrame, variables: Iterable[str]) -> pd.DataFrame:
    """Check that a prediction grid holds every covariate a model needs.

    Raises
    ------
    SchemaMismatch
        Naming the first missing covariate.
    """
    if not isinstance(grid, pd.DataFrame):
        raise ValueError(f"grid must be a pandas DataFrame, got {type(grid).__name__}")
    for name in variables:
        if name not in grid.columns:
            raise SchemaMismatch(
                f"Prediction grid lacks covariate '{name}'",
                covariate=name,
            )
    return grid


def segment_level_covariates(segments: pd.DataFrame, covariates: Iterable[str]) -> List[str]:
    """Detection covariates recorded in, and varying across, the segment table."""
    varying = []
    for name in covariates:
        if name in segments.columns and segments[name].nunique(dropna=True) > 1:
            varying.append(name)
    return varying
