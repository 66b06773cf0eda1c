"""Analysis utilities for pydsm.

This module provides diagnostic tools for fitted density surface models.
"""

from .diagnostics import (
    summarize_dsm,
    print_dsm_summary,
    obs_exp,
    compare_models,
)

__all__ = [
    'summarize_dsm',
    'print_dsm_summary',
    'obs_exp',
    'compare_models',
]
