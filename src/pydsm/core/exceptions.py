"""Exceptions raised by pydsm.

Every failure is local and recoverable: a failed fit simply yields no
fitted model and the caller may retry with an adjusted specification.
All exceptions inherit from :class:`DSMError` so a single ``except``
clause can catch any package-specific error.
"""

from __future__ import annotations

from typing import Optional, Sequence


class DSMError(Exception):
    """Base exception for density surface modelling errors.

    Parameters
    ----------
    message : str
        Human readable description.
    term : str, optional
        Label of the smooth term involved.
    segments : sequence, optional
        Identifiers of the offending segments.
    covariate : str, optional
        Name of the offending covariate.
    iterations : int, optional
        Iterations used before giving up.
    """

    def __init__(
        self,
        message: str,
        term: Optional[str] = None,
        segments: Optional[Sequence] = None,
        covariate: Optional[str] = None,
        iterations: Optional[int] = None,
    ):
        self.term = term
        self.segments = list(segments) if segments is not None else None
        self.covariate = covariate
        self.iterations = iterations

        context = []
        if term is not None:
            context.append(f"term={term!r}")
        if covariate is not None:
            context.append(f"covariate={covariate!r}")
        if self.segments:
            shown = self.segments[:10]
            more = "" if len(self.segments) <= 10 else f" (+{len(self.segments) - 10} more)"
            context.append(f"segments={shown}{more}")
        if iterations is not None:
            context.append(f"iterations={iterations}")
        if context:
            message = f"{message} [{', '.join(context)}]"
        super().__init__(message)


class FitFailure(DSMError):
    """Detection function fit failed (optimizer or empty truncated sample)."""

    pass


class InputMismatch(DSMError):
    """Observations and segments are inconsistent with each other."""

    pass


class BoundaryViolation(DSMError):
    """Boundary polygon, knot grid or data locations are unusable for a soap film."""

    pass


class NonConvergence(DSMError):
    """Penalized-likelihood optimizer exceeded its iteration budget."""

    pass


class RankDeficiency(DSMError):
    """Model matrix is collinear or has more coefficients than data."""

    pass


class SchemaMismatch(DSMError):
    """A table lacks a covariate required by a model term."""

    pass


class MethodNotApplicable(DSMError):
    """Requested variance method is not valid for the fitted models."""

    pass
