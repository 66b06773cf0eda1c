"""
Response-distribution families for the count model.

All families use a log link. The variance, deviance and log-likelihood
functions come from :mod:`statsmodels.genmod.families`; this module adds
the bookkeeping needed to estimate extra family parameters (Tweedie
power, negative-binomial theta) alongside the smoothing parameters.
The Tweedie log-likelihood is summed on the log scale by
:func:`tweedie_loglike_obs`, which stays finite for every power and
scale the optimizer can visit.

Family     | Variance            | Scale phi   | Extra parameter
-----------|---------------------|-------------|-------------------------
quasipoisson | phi * mu          | estimated   | none
tweedie    | phi * mu^p          | estimated   | power p in (1, 2)
nb         | mu + mu^2 / theta   | fixed at 1  | theta > 0
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Union

import numpy as np
import statsmodels.api as sm
from scipy.special import expit, gammaln, logit, logsumexp

FAMILY_NAMES = ('quasipoisson', 'tweedie', 'nb')

# Tweedie power is searched on a logistic scale inside these bounds
TWEEDIE_POWER_BOUNDS = (1.01, 1.99)


@dataclass(frozen=True)
class FamilyChoice:
    """User choice of response distribution.

    Attributes
    ----------
    name : str
        ``"quasipoisson"``, ``"tweedie"`` or ``"nb"``.
    power : float, optional
        Tweedie power parameter. Estimated when None.
    theta : float, optional
        Negative-binomial dispersion parameter. Estimated when None.
    """

    name: str = 'quasipoisson'
    power: Optional[float] = None
    theta: Optional[float] = None

    def __post_init__(self):
        if self.name not in FAMILY_NAMES:
            raise ValueError(f"Unknown family '{self.name}'. Choose from {FAMILY_NAMES}")
        if self.power is not None:
            if self.name != 'tweedie':
                raise ValueError("power is only defined for the tweedie family")
            lo, hi = TWEEDIE_POWER_BOUNDS
            if not lo <= self.power <= hi:
                raise ValueError(f"Tweedie power must lie in [{lo}, {hi}], got {self.power}")
        if self.theta is not None:
            if self.name != 'nb':
                raise ValueError("theta is only defined for the nb family")
            if not self.theta > 0:
                raise ValueError(f"theta must be positive, got {self.theta}")


@dataclass(frozen=True)
class CountFamily:
    """Log-link count family used by the fitting engine.

    ``power`` / ``theta`` hold the current value of the extra parameter;
    ``estimate_extra`` records whether the engine is free to change it.
    """

    name: str
    power: Optional[float] = None
    theta: Optional[float] = None
    estimate_extra: bool = False

    @property
    def link(self) -> str:
        return 'log'

    @property
    def scale_estimated(self) -> bool:
        """Whether the scale parameter phi is estimated (fixed at 1 for nb)."""
        return self.name != 'nb'

    @property
    def is_quasi(self) -> bool:
        return self.name == 'quasipoisson'

    @property
    def n_extra(self) -> int:
        """Number of free extra parameters."""
        return 1 if self.estimate_extra else 0

    def __repr__(self) -> str:
        if self.name == 'tweedie':
            return f"Tweedie(p={self.power:.3f})"
        if self.name == 'nb':
            return f"NegativeBinomial(theta={self.theta:.3f})"
        return "QuasiPoisson()"

    # -- extra parameter transforms -------------------------------------------------

    def extra_start(self) -> np.ndarray:
        """Starting value of the free extra parameter on its working scale."""
        if not self.estimate_extra:
            return np.zeros(0)
        if self.name == 'tweedie':
            lo, hi = TWEEDIE_POWER_BOUNDS
            return np.array([logit((self.power - lo) / (hi - lo))])
        return np.array([np.log(self.theta)])

    def with_extra(self, values: np.ndarray) -> 'CountFamily':
        """Copy of the family with the extra parameter set from its working scale."""
        if not self.estimate_extra or len(values) == 0:
            return self
        value = float(values[0])
        if self.name == 'tweedie':
            lo, hi = TWEEDIE_POWER_BOUNDS
            return replace(self, power=lo + (hi - lo) * float(expit(value)))
        return replace(self, theta=float(np.exp(np.clip(value, -20.0, 20.0))))

    def fixed(self) -> 'CountFamily':
        """Copy with the extra parameter held at its current value."""
        return replace(self, estimate_extra=False)

    # -- statsmodels delegation ------------------------------------------------------

    def sm_family(self, eql: bool = False):
        """Equivalent :mod:`statsmodels` family object."""
        log_link = sm.families.links.Log()
        if self.name == 'tweedie':
            return sm.families.Tweedie(link=log_link, var_power=self.power, eql=eql)
        if self.name == 'nb':
            return sm.families.NegativeBinomial(link=log_link, alpha=1.0 / self.theta)
        return sm.families.Poisson(link=log_link)

    def variance(self, mu: np.ndarray) -> np.ndarray:
        """Variance function V(mu) (excluding the scale parameter)."""
        return self.sm_family().variance(mu)

    def working_weights(self, mu: np.ndarray) -> np.ndarray:
        """IRLS weights (dmu/deta)^2 / V(mu) for the log link."""
        return mu ** 2 / np.maximum(self.variance(mu), np.finfo(float).tiny)

    def deviance(self, y: np.ndarray, mu: np.ndarray) -> float:
        """Total deviance."""
        return float(self.sm_family().deviance(y, mu))

    def loglik(self, y: np.ndarray, mu: np.ndarray, scale: float = 1.0) -> float:
        """Log-likelihood (or its quasi-likelihood stand-in) at ``mu``.

        The quasi-Poisson family has no likelihood; the Gaussian form
        ``-D / (2 phi) - n/2 log(2 pi phi)`` of the deviance is used so that
        the scale parameter can be estimated by REML.
        """
        if self.name == 'quasipoisson':
            return self._deviance_loglik(y, mu, scale)
        if self.name == 'tweedie':
            llf = float(np.sum(tweedie_loglike_obs(y, mu, self.power, scale)))
        else:
            llf = float(np.sum(self.sm_family().loglike_obs(y, mu, scale=scale)))
        if not np.isfinite(llf):
            raise FloatingPointError(
                f"{self!r} log-likelihood is not finite at scale {scale:.3g}"
            )
        return llf

    def _deviance_loglik(self, y: np.ndarray, mu: np.ndarray, scale: float) -> float:
        n = len(y)
        return -self.deviance(y, mu) / (2.0 * scale) - 0.5 * n * np.log(2.0 * np.pi * scale)


def tweedie_loglike_obs(
    y: np.ndarray,
    mu: np.ndarray,
    power: float,
    scale: float,
) -> np.ndarray:
    """Per-observation Tweedie log density for 1 < power < 2.

    Uses the compound Poisson-gamma series of Dunn and Smyth (2005), the
    representation behind statsmodels' ``Tweedie.loglike_obs``, but sums
    the series on the log scale over a window around its largest term so
    that small scales and powers close to 1 do not overflow.
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    p = float(power)
    ll = (y * mu ** (1.0 - p) / (1.0 - p) - mu ** (2.0 - p) / (2.0 - p)) / scale

    positive = y > 0
    if not np.any(positive):
        return ll
    yp = y[positive]
    a = (2.0 - p) / (p - 1.0)
    log_z = a * np.log(yp / ((p - 1.0) * scale)) - np.log((2.0 - p) * scale)

    # Largest term of sum_j z^j / (j! Gamma(a j)), from Stirling's formula
    j_mode = np.maximum(np.round(np.exp((log_z - a * np.log(a)) / (1.0 + a))), 1.0)
    half_width = int(np.ceil(10.0 * np.sqrt(j_mode.max()))) + 20
    j = j_mode[:, None] + np.arange(-half_width, half_width + 1)[None, :]
    valid = j >= 1
    j = np.where(valid, j, 1.0)
    log_terms = j * log_z[:, None] - gammaln(j + 1.0) - gammaln(a * j)
    log_terms = np.where(valid, log_terms, -np.inf)

    ll[positive] += logsumexp(log_terms, axis=1) - np.log(yp)
    return ll


def resolve_family(choice: Union[str, FamilyChoice, CountFamily]) -> CountFamily:
    """Turn a family name or :class:`FamilyChoice` into a :class:`CountFamily`.

    Extra parameters left unspecified start at p = 1.5 (Tweedie) and
    theta = 1 (negative binomial) and are flagged for estimation.
    """
    if isinstance(choice, CountFamily):
        return choice
    if isinstance(choice, str):
        choice = FamilyChoice(name=choice)
    if not isinstance(choice, FamilyChoice):
        raise ValueError(f"Cannot interpret {choice!r} as a response family")

    if choice.name == 'tweedie':
        if choice.power is None:
            return CountFamily('tweedie', power=1.5, estimate_extra=True)
        return CountFamily('tweedie', power=float(choice.power))
    if choice.name == 'nb':
        if choice.theta is None:
            return CountFamily('nb', theta=1.0, estimate_extra=True)
        return CountFamily('nb', theta=float(choice.theta))
    return CountFamily('quasipoisson')
