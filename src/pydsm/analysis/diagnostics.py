"""Diagnostics for fitted density surface models.

This module provides summaries of fitted count models, observed versus
expected counts by covariate bin, and side-by-side model comparison.
"""

import warnings
from typing import Dict, List, Sequence, Union

import numpy as np
import pandas as pd

from ..core.dsm import CountModel


def summarize_dsm(model: CountModel) -> Dict:
    """Collect the main quantities of a fitted model.

    Parameters
    ----------
    model : CountModel
        Fitted model.

    Returns
    -------
    dict
        Family, response, sample size, deviance explained, REML score,
        AIC, scale, term table and any fitting messages.
    """
    model._require_fitted()
    family = model.fitted_family
    n_par = _n_parametric(model)
    report = {
        'family': repr(family),
        'response': model.config.response,
        'n_segments': int(len(model.y)),
        'n_coefficients': int(model.coefficients.size),
        'deviance_explained': model.deviance_explained,
        'reml': model.reml,
        'aic': model.aic,
        'scale': model.scale,
        'edf_total': float(model.result.edf.sum()),
        'terms': model.summary(),
        'parametric': pd.DataFrame({
            'estimate': model.coefficients[:n_par],
            'se': np.sqrt(np.diag(model.Vp))[:n_par],
        }, index=model.coefficient_names[:n_par]),
        'warnings': list(model.result.messages),
    }
    if family.name == 'tweedie':
        report['tweedie_power'] = family.power
    if family.name == 'nb':
        report['nb_theta'] = family.theta
    if model.detection is not None:
        report['average_p'] = model.detection.average_p()
    return report


def _n_parametric(model: CountModel) -> int:
    if not model.term_slices:
        return len(model.coefficient_names)
    return min(sl.start for sl in model.term_slices.values())


def print_dsm_summary(report: Dict) -> None:
    """Print a formatted model summary.

    Parameters
    ----------
    report : dict
        Report from summarize_dsm()
    """
    print("=" * 60)
    print("DENSITY SURFACE MODEL")
    print("=" * 60)
    print(f"  Family: {report['family']}")
    print(f"  Response: {report['response']}")
    print(f"  Segments: {report['n_segments']}")
    print(f"  Scale: {report['scale']:.4g}")
    print(f"  REML: {report['reml']:.3f}")
    if np.isfinite(report['aic']):
        print(f"  AIC: {report['aic']:.2f}")
    print(f"  Deviance explained: {100 * report['deviance_explained']:.1f}%")
    print()

    print("PARAMETRIC COEFFICIENTS:")
    print(report['parametric'].to_string())
    print()

    if len(report['terms']) > 0:
        print("SMOOTH TERMS:")
        print(report['terms'][['term', 'basis', 'k', 'edf']].to_string(index=False))
        print()

    if report['warnings']:
        print("WARNINGS:")
        for i, warning in enumerate(report['warnings'], 1):
            print(f"  {i}. {warning}")
        print()
    print("=" * 60)


def obs_exp(
    model: CountModel,
    covariate: str,
    bins: Union[int, Sequence[float]] = 5,
) -> pd.DataFrame:
    """Observed and expected segment responses aggregated by covariate bin.

    Parameters
    ----------
    model : CountModel
        Fitted model.
    covariate : str
        Segment-table column to bin on. Columns with few distinct values
        (or non-numeric ones) are grouped by value instead.
    bins : int or sequence of float
        Number of equal-count bins, or explicit bin edges.

    Returns
    -------
    pd.DataFrame
        Rows per bin with ``observed`` and ``expected`` totals.
    """
    model._require_fitted()
    data = model.response_data.data
    if covariate not in data.columns:
        raise ValueError(f"Segment table has no column '{covariate}'")

    values = data[covariate]
    if not pd.api.types.is_numeric_dtype(values) or (
        np.isscalar(bins) and values.nunique() <= bins
    ):
        groups = values
    elif np.isscalar(bins):
        groups = pd.qcut(values, q=int(bins), duplicates='drop')
    else:
        groups = pd.cut(values, bins=list(bins), include_lowest=True)

    table = pd.DataFrame({
        'group': groups.to_numpy(),
        'observed': model.y,
        'expected': model.fitted_values,
    })
    result = table.groupby('group', observed=True)[['observed', 'expected']].sum()
    result.index.name = covariate
    return result


def compare_models(
    models: Union[Dict[str, CountModel], List[CountModel]],
) -> pd.DataFrame:
    """Tabulate fit statistics of several models.

    Deviance explained is reported as-is. Its null deviance depends on
    the response definition, so values from models with different
    responses are not commensurable; a warning is issued in that case
    and no normalization is attempted.

    Parameters
    ----------
    models : dict or list of CountModel
        Fitted models, optionally keyed by name.

    Returns
    -------
    pd.DataFrame
        One row per model: response, family, EDF, REML, AIC and
        deviance explained.
    """
    if not isinstance(models, dict):
        models = {f"model_{i + 1}": m for i, m in enumerate(models)}

    rows = []
    for name, model in models.items():
        model._require_fitted()
        rows.append({
            'model': name,
            'response': model.config.response,
            'family': repr(model.fitted_family),
            'edf': float(model.result.edf.sum()),
            'reml': model.reml,
            'aic': model.aic,
            'deviance_explained': model.deviance_explained,
        })

    responses = {row['response'] for row in rows}
    if len(responses) > 1:
        warnings.warn(
            f"Models use different responses {sorted(responses)}; deviance explained "
            f"is relative to different null deviances and is not directly comparable",
            UserWarning,
        )
    return pd.DataFrame(rows).set_index('model')

