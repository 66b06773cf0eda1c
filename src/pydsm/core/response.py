"""
Per-segment response and offset construction.

Two response definitions are supported:

``count``
    Number of individuals observed on each segment (sum of cluster
    sizes). Detectability enters through the offset, which is the
    effective searched area: strip area times detection probability.
``abundance``
    Horvitz-Thompson estimate of the number of individuals on each
    segment, sum(size_i / p_i). The response already corrects for
    detectability, so the offset is the full strip area.

Strip area is 2 * w * length for line transects and pi * w^2 * visits
for point transects, where w is the truncation distance and the
segment effort column holds the number of visits to a point.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from pydsm.config import RESPONSE_KINDS, TRANSECT_TYPES, SurveyColumns
from pydsm.core.data import check_observation_data, check_segment_data, cluster_sizes
from pydsm.core.detection import DetectionFunction
from pydsm.core.exceptions import InputMismatch
from pydsm.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, eq=False)
class ResponseData:
    """Response, offset and segment table ready for count-model fitting.

    Attributes
    ----------
    data : pd.DataFrame
        Retained segments with added columns ``count``, ``abundance_est``,
        ``strip_area`` and, for the count response, ``p`` and
        ``effective_area``.
    response : str
        ``"count"`` or ``"abundance"``.
    transect : str
        ``"line"`` or ``"point"``.
    truncation : float
        Strip half-width (line) or radius (point).
    detection : DetectionFunction, optional
        Detection function used (None for strip transects).
    excluded_segments : tuple
        Identifiers of zero-effort segments left out of the fit.
    """

    data: pd.DataFrame
    response: str
    transect: str
    truncation: float
    detection: Optional[DetectionFunction] = None
    excluded_segments: Tuple = ()
    columns: SurveyColumns = field(default_factory=SurveyColumns)

    @property
    def y(self) -> np.ndarray:
        column = 'count' if self.response == 'count' else 'abundance_est'
        return self.data[column].to_numpy(dtype=float)

    @property
    def offset_area(self) -> np.ndarray:
        column = 'effective_area' if self.response == 'count' else 'strip_area'
        return self.data[column].to_numpy(dtype=float)

    @property
    def offset(self) -> np.ndarray:
        """Log offset entered in the count model."""
        return np.log(self.offset_area)

    @property
    def n_segments(self) -> int:
        return len(self.data)


def strip_area(effort: np.ndarray, width: float, transect: str = 'line') -> np.ndarray:
    """Area covered by each segment out to the truncation distance."""
    effort = np.asarray(effort, dtype=float)
    if transect == 'point':
        return np.pi * width ** 2 * effort
    return 2.0 * width * effort


def build_response(
    segments: pd.DataFrame,
    observations: pd.DataFrame,
    detection: Optional[DetectionFunction] = None,
    response: str = 'count',
    transect: Optional[str] = None,
    strip_width: Optional[float] = None,
    columns: Optional[SurveyColumns] = None,
) -> ResponseData:
    """Build the per-segment response and offset.

    Parameters
    ----------
    segments : pd.DataFrame
        Segment table (identifier, effort and covariates).
    observations : pd.DataFrame
        Observation table (segment identifier, distance, optional size
        and detection covariates).
    detection : DetectionFunction, optional
        Fitted detection function. If None, a strip transect with
        certain detection out to ``strip_width`` is assumed.
    response : str
        ``"count"`` or ``"abundance"``.
    transect : str, optional
        ``"line"`` or ``"point"``; defaults to the detection function's.
    strip_width : float, optional
        Strip half-width for strip transects (``detection=None`` only).
    columns : SurveyColumns, optional
        Column names.

    Returns
    -------
    ResponseData

    Raises
    ------
    InputMismatch
        If an observation references a segment absent from ``segments``
        or a zero-effort segment.
    SchemaMismatch
        If the count response needs per-segment detection probabilities
        and the segment table lacks a detection covariate.
    """
    cols = columns or (detection.columns if detection is not None else SurveyColumns())

    if response not in RESPONSE_KINDS:
        raise ValueError(f"response must be one of {RESPONSE_KINDS}, got '{response}'")
    if detection is None:
        if strip_width is None or strip_width <= 0:
            raise ValueError("A positive strip_width is required when no detection function is given")
        width = float(strip_width)
        transect = transect or 'line'
    else:
        if strip_width is not None:
            raise ValueError("strip_width is fixed by the detection function's truncation distance")
        width = detection.truncation
        transect = transect or detection.transect
        if transect != detection.transect:
            raise ValueError(
                f"Detection function was fitted to {detection.transect} transects, not {transect}"
            )
    if transect not in TRANSECT_TYPES:
        raise ValueError(f"transect must be one of {TRANSECT_TYPES}, got '{transect}'")

    check_segment_data(segments, columns=cols)
    check_observation_data(observations, segments=segments, columns=cols)

    # Observations beyond truncation belong to neither response
    within = observations[cols.distance].to_numpy(dtype=float) <= width
    if not np.all(within):
        logger.info(f"Excluded {int((~within).sum())} observation(s) beyond truncation {width:g}")
    obs = observations.loc[within]

    # Zero-effort segments
    effort = segments[cols.length].to_numpy(dtype=float)
    zero_effort = effort == 0
    excluded = tuple(segments.loc[zero_effort, cols.segment_id].tolist())
    if excluded:
        holding = obs[cols.segment_id].isin(excluded)
        if holding.any():
            raise InputMismatch(
                "Observations reference segments with zero effort",
                segments=obs.loc[holding, cols.segment_id].unique().tolist(),
            )
        warnings.warn(
            f"{len(excluded)} zero-effort segment(s) excluded from the response",
            UserWarning,
        )
    data = segments.loc[~zero_effort].copy()

    sizes = cluster_sizes(obs, cols)
    if detection is not None and len(obs) > 0:
        p_obs = detection.detection_probability(obs)
    else:
        p_obs = np.ones(len(obs))

    per_obs = pd.DataFrame({
        'segment': obs[cols.segment_id].to_numpy(),
        'count': sizes,
        'abundance_est': sizes / p_obs,
    })
    totals = per_obs.groupby('segment')[['count', 'abundance_est']].sum()

    segment_ids = data[cols.segment_id]
    data['count'] = segment_ids.map(totals['count']).fillna(0.0).to_numpy(dtype=float)
    data['abundance_est'] = segment_ids.map(totals['abundance_est']).fillna(0.0).to_numpy(dtype=float)
    data['strip_area'] = strip_area(data[cols.length].to_numpy(dtype=float), width, transect)

    if response == 'count':
        if detection is None:
            p_seg = np.ones(len(data))
        elif detection.has_covariates:
            p_seg = detection.detection_probability(data)
        else:
            p_seg = np.full(len(data), detection.average_p())
        data['p'] = p_seg
        data['effective_area'] = data['strip_area'] * p_seg

    logger.debug(
        f"Built {response} response for {len(data)} segment(s); "
        f"{int((data['count'] > 0).sum())} with detections"
    )
    return ResponseData(
        data=data,
        response=response,
        transect=transect,
        truncation=width,
        detection=detection,
        excluded_segments=excluded,
        columns=cols,
    )
