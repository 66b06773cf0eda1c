"""
Smooth term construction.

Each smooth term is represented by a basis (model matrix columns as a
function of the term's covariates) and one or more penalty matrices
whose quadratic forms measure wiggliness. Supported bases:

- ``cr``: cubic regression spline in one variable (patsy ``cr``)
- ``te``: tensor product of cubic regression spline margins (patsy ``te``)
- ``tp``: isotropic thin plate regression spline in 1-3 variables
- ``so``: soap film with a free boundary (see :mod:`pydsm.spatial.soap`)
- ``sw``: soap film interior with a zero boundary

Ordinary bases are centred (sum-to-zero over the fitting data) so that
they are identifiable alongside the model intercept. Penalties are
rescaled to be commensurate with the model matrix.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from patsy import cr, te
from scipy import linalg

from pydsm.core.exceptions import SchemaMismatch
from pydsm.logger import get_logger

logger = get_logger(__name__)

BASIS_KINDS = ('tp', 'cr', 'te', 'so', 'sw')
SOAP_KINDS = ('so', 'sw')

# Maximum number of unique covariate points used as thin plate knots
MAX_TP_KNOTS = 2000


@dataclass(frozen=True, eq=False)
class SmoothTermSpec:
    """Specification of one smooth term.

    Attributes
    ----------
    variables : str or tuple of str
        Covariate name(s) the term smooths over.
    basis : str
        One of ``tp``, ``cr``, ``te``, ``so``, ``sw``.
    k : int, optional
        Basis dimension. For ``te`` the dimension of each margin, for soap
        films the dimension of each boundary ring's cyclic spline.
        Defaults: tp 10 * 3^(d-1), cr 10, te 5, so/sw 10.
    boundary : Polygon or vertex array(s), optional
        Survey-region boundary (soap films only).
    knots : array-like, optional
        (m, 2) interior knot locations (soap films only). Knots outside
        the boundary are discarded at construction and at least one must
        remain inside, whatever ``k`` is.
    allow_outside : bool
        Permit data locations outside the boundary (soap films only).
    grid_size : int, optional
        Resolution of the soap film PDE grid.
    label : str, optional
        Term label; defaults to e.g. ``s(x,y)`` or ``te(x,y)``.
    """

    variables: Union[str, Tuple[str, ...]]
    basis: str = 'tp'
    k: Optional[int] = None
    boundary: Any = None
    knots: Any = None
    allow_outside: bool = False
    grid_size: Optional[int] = None
    label: Optional[str] = None

    def __post_init__(self):
        variables = (self.variables,) if isinstance(self.variables, str) else tuple(self.variables)
        object.__setattr__(self, 'variables', variables)

        if not variables:
            raise ValueError("A smooth term needs at least one variable")
        if len(set(variables)) != len(variables):
            raise ValueError(f"Repeated variable in smooth term: {variables}")
        if self.basis not in BASIS_KINDS:
            raise ValueError(f"Unknown basis '{self.basis}'. Choose from {BASIS_KINDS}")
        if self.k is not None and (int(self.k) != self.k or self.k < 1):
            raise ValueError(f"k must be a positive integer, got {self.k}")

        d = len(variables)
        if self.basis == 'cr' and d != 1:
            raise ValueError("cr basis smooths exactly one variable")
        if self.basis == 'te' and d < 2:
            raise ValueError("te basis needs at least two variables")
        if self.basis == 'tp' and d > 3:
            raise ValueError("tp basis supports at most three variables")
        if self.basis in SOAP_KINDS:
            if d != 2:
                raise ValueError("Soap film terms smooth exactly two (x, y) variables")
            if self.boundary is None or self.knots is None:
                raise ValueError("Soap film terms need a boundary and interior knots")

        if self.label is None:
            prefix = 'te' if self.basis == 'te' else 's'
            object.__setattr__(self, 'label', f"{prefix}({','.join(variables)})")

    @property
    def dimension(self) -> int:
        return len(self.variables)

    def default_k(self) -> int:
        if self.basis == 'tp':
            return 10 * 3 ** (self.dimension - 1)
        if self.basis == 'te':
            return 5
        return 10


class SmoothTerm:
    """Built smooth term: evaluates its basis and carries its penalties.

    Subclasses implement ``_raw_basis`` on an (n, d) covariate array; this
    class handles covariate lookup, centring and penalty scaling.
    """

    centred = True

    def __init__(self, spec: SmoothTermSpec):
        self.spec = spec
        self.label = spec.label
        self.variables = spec.variables
        self.penalties: List[np.ndarray] = []
        self.penalty_rank = 0
        self._centring: Optional[np.ndarray] = None

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(label={self.label!r}, n_coef={self.n_coef}, "
            f"n_penalties={len(self.penalties)})"
        )

    @property
    def n_coef(self) -> int:
        return self.penalties[0].shape[0] if self.penalties else 0

    @property
    def null_space_dim(self) -> int:
        return self.n_coef - self.penalty_rank

    def values(self, data: pd.DataFrame) -> np.ndarray:
        """Extract the term's covariates as an (n, d) float array."""
        for name in self.variables:
            if name not in data.columns:
                raise SchemaMismatch(
                    f"Table lacks covariate '{name}' required by term {self.label}",
                    term=self.label,
                    covariate=name,
                )
        values = data[list(self.variables)].to_numpy(dtype=float)
        if not np.all(np.isfinite(values)):
            raise ValueError(f"Covariates of term {self.label} contain missing or non-finite values")
        return values

    def basis(self, data: pd.DataFrame) -> np.ndarray:
        """Model matrix columns of this term for the rows of ``data``."""
        X = self._raw_basis(self.values(data))
        if self._centring is not None:
            X = X @ self._centring
        return X

    def _raw_basis(self, values: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _finalize(self, X: np.ndarray, penalties: Sequence[np.ndarray]) -> None:
        """Absorb the centring constraint and rescale penalties.

        ``X`` is the raw basis at the fitting data.
        """
        if self.centred:
            self._centring = centring_matrix(X)
            X = X @ self._centring
            penalties = [self._centring.T @ S @ self._centring for S in penalties]

        norm_x = np.max(np.sum(np.abs(X), axis=1)) ** 2
        scaled = []
        for S in penalties:
            S = (S + S.T) / 2.0
            norm_s = np.max(np.sum(np.abs(S), axis=0))
            scaled.append(S * norm_x / norm_s if norm_s > 0 else S)
        self.penalties = scaled
        self.penalty_rank = penalty_rank(sum(scaled))


def centring_matrix(X: np.ndarray) -> np.ndarray:
    """Null-space basis of the sum-to-zero constraint ``colmeans(X) @ beta = 0``."""
    c = X.mean(axis=0).reshape(-1, 1)
    q, _ = np.linalg.qr(c, mode='complete')
    return q[:, 1:]


def penalty_rank(S: np.ndarray, tol: float = 1e-7) -> int:
    """Numerical rank of a symmetric positive semi-definite penalty."""
    eigenvalues = np.linalg.eigvalsh((S + S.T) / 2.0)
    top = eigenvalues.max() if eigenvalues.size else 0.0
    if top <= 0:
        return 0
    return int(np.sum(eigenvalues > tol * top))


# ------------------------------------------------------------------------------------
# Cubic regression splines
# ------------------------------------------------------------------------------------

def natural_spline_penalty(knots: np.ndarray) -> np.ndarray:
    """Integrated squared second derivative penalty of a natural cubic spline.

    The spline is parameterized by its values at ``knots``; the penalty
    is D' B^-1 D with B tridiagonal and D the second-difference matrix
    scaled by the knot spacings.
    """
    h = np.diff(knots)
    n = knots.size
    diag = (h[:-1] + h[1:]) / 3.0
    off = h[1:-1] / 6.0
    banded = np.array([np.r_[0.0, off], diag, np.r_[off, 0.0]])

    D = np.zeros((n - 2, n))
    for i in range(n - 2):
        D[i, i] = 1.0 / h[i]
        D[i, i + 2] = 1.0 / h[i + 1]
        D[i, i + 1] = -D[i, i] - D[i, i + 2]
    return D.T @ linalg.solve_banded((1, 1), banded, D)


def cyclic_spline_penalty(knots: np.ndarray) -> np.ndarray:
    """Penalty of a cyclic cubic spline parameterized by its values at ``knots[:-1]``."""
    h = np.diff(knots)
    n = knots.size - 1
    B = np.zeros((n, n))
    D = np.zeros((n, n))
    for i in range(n):
        prev = (i - 1) % n
        B[i, i] = (h[prev] + h[i]) / 3.0
        B[i, prev] = h[prev] / 6.0
        B[prev, i] = h[prev] / 6.0
        D[i, i] = -1.0 / h[prev] - 1.0 / h[i]
        D[i, prev] = 1.0 / h[prev]
        D[prev, i] = 1.0 / h[prev]
    return D.T @ np.linalg.solve(B, D)


class CubicRegressionTerm(SmoothTerm):
    """Cubic regression spline with knots at quantiles of the unique values."""

    def __init__(self, spec: SmoothTermSpec, data: pd.DataFrame, k: Optional[int] = None):
        super().__init__(spec)
        x = self.values(data)[:, 0]
        self.k = _adjust_k(spec, k or spec.k or spec.default_k(), minimum=3, n_unique=np.unique(x).size)

        unique = np.unique(x)
        self.lower = float(unique[0])
        self.upper = float(unique[-1])
        all_knots = np.quantile(unique, np.linspace(0.0, 1.0, self.k))
        self.knots = all_knots
        self.inner_knots = all_knots[1:-1]

        self._finalize(self._raw_basis(x[:, None]), [natural_spline_penalty(all_knots)])

    def _raw_basis(self, values: np.ndarray) -> np.ndarray:
        return np.asarray(
            cr(values[:, 0], knots=self.inner_knots, lower_bound=self.lower, upper_bound=self.upper)
        )

    def marginal(self, values: np.ndarray) -> np.ndarray:
        """Uncentred basis, used as a tensor product margin."""
        return self._raw_basis(values)


class TensorTerm(SmoothTerm):
    """Tensor product smooth of cubic regression spline margins."""

    def __init__(self, spec: SmoothTermSpec, data: pd.DataFrame):
        super().__init__(spec)
        k = spec.k or spec.default_k()
        self.margins = []
        for name in spec.variables:
            margin_spec = SmoothTermSpec(name, basis='cr', k=k, label=f"{spec.label}[{name}]")
            self.margins.append(CubicRegressionTerm(margin_spec, data))

        marginal_penalties = [
            natural_spline_penalty(margin.knots) for margin in self.margins
        ]
        sizes = [margin.k for margin in self.margins]
        penalties = []
        for i, S in enumerate(marginal_penalties):
            full = np.ones((1, 1))
            for j, size in enumerate(sizes):
                full = np.kron(full, S if i == j else np.eye(size))
            penalties.append(full)

        self._finalize(self._raw_basis(self.values(data)), penalties)

    def _raw_basis(self, values: np.ndarray) -> np.ndarray:
        marginals = [
            margin.marginal(values[:, [i]]) for i, margin in enumerate(self.margins)
        ]
        return np.asarray(te(*marginals))


# ------------------------------------------------------------------------------------
# Thin plate regression splines
# ------------------------------------------------------------------------------------

def thin_plate_radial(r: np.ndarray, d: int, m: int = 2) -> np.ndarray:
    """Radial basis function eta_{m,d}(r) of a thin plate spline."""
    r = np.asarray(r, dtype=float)
    power = 2 * m - d
    if d % 2 == 0:
        const = (-1) ** (m + 1 + d // 2) / (
            2 ** (2 * m - 1) * math.pi ** (d / 2) * math.factorial(m - 1) * math.factorial(m - d // 2)
        )
        with np.errstate(divide='ignore', invalid='ignore'):
            out = const * r ** power * np.log(r)
        return np.where(r > 0, out, 0.0)
    const = math.gamma(d / 2 - m) / (2 ** (2 * m) * math.pi ** (d / 2) * math.factorial(m - 1))
    return const * r ** power


class ThinPlateTerm(SmoothTerm):
    """Isotropic thin plate regression spline (second-order penalty).

    The full thin plate spline with a knot at every unique data point is
    truncated to its ``k`` leading eigen-directions, giving a rank ``k``
    approximation that is optimal for the wiggly component.
    """

    def __init__(self, spec: SmoothTermSpec, data: pd.DataFrame, seed: int = 1):
        super().__init__(spec)
        values = self.values(data)
        d = values.shape[1]
        self.n_null = d + 1

        knots = np.unique(values, axis=0)
        if knots.shape[0] > MAX_TP_KNOTS:
            rng = np.random.default_rng(seed)
            knots = knots[np.sort(rng.choice(knots.shape[0], MAX_TP_KNOTS, replace=False))]
            logger.debug(f"{self.label}: subsampled {MAX_TP_KNOTS} thin plate knots")
        self.knots = knots

        self.k = _adjust_k(
            spec, spec.k or spec.default_k(), minimum=self.n_null + 1, n_unique=knots.shape[0]
        )

        E = thin_plate_radial(_distances(knots, knots), d)
        eigenvalues, eigenvectors = np.linalg.eigh(E)
        order = np.argsort(-np.abs(eigenvalues))[: self.k]
        U = eigenvectors[:, order]
        D = eigenvalues[order]

        # Absorb T' delta = 0 so the wiggly part is orthogonal to the null space
        T = self._null_space(knots)
        q, _ = np.linalg.qr(U.T @ T, mode='complete')
        Z = q[:, self.n_null:]
        self._wiggly_map = U @ Z

        S_wiggly = Z.T @ np.diag(D) @ Z
        S = linalg.block_diag(S_wiggly, np.zeros((self.n_null, self.n_null)))
        self._finalize(self._raw_basis(values), [S])

    @staticmethod
    def _null_space(values: np.ndarray) -> np.ndarray:
        return np.column_stack([np.ones(values.shape[0]), values])

    def _raw_basis(self, values: np.ndarray) -> np.ndarray:
        e = thin_plate_radial(_distances(values, self.knots), values.shape[1])
        return np.column_stack([e @ self._wiggly_map, self._null_space(values)])


def _distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    diff = a[:, None, :] - b[None, :, :]
    return np.sqrt(np.sum(diff ** 2, axis=-1))


def _adjust_k(spec: SmoothTermSpec, k: int, minimum: int, n_unique: int) -> int:
    """Clamp a requested basis dimension into [minimum, n_unique] with a warning."""
    requested = k
    if k < minimum:
        k = minimum
    if k > n_unique:
        k = n_unique
    if k < minimum:
        raise ValueError(
            f"Term {spec.label} needs at least {minimum} unique covariate values, got {n_unique}"
        )
    if k != requested:
        warnings.warn(
            f"Basis dimension of {spec.label} adjusted from k={requested} to k={k}",
            UserWarning,
        )
    return k


def build_term(spec: SmoothTermSpec, data: pd.DataFrame) -> SmoothTerm:
    """Construct a smooth term from its specification and the fitting data.

    Parameters
    ----------
    spec : SmoothTermSpec
        Term specification.
    data : pd.DataFrame
        Segment table used for fitting (knot placement, centring, and
        boundary checks use these rows).

    Returns
    -------
    SmoothTerm
        Object exposing ``basis(data)``, ``penalties`` and ``n_coef``.

    Raises
    ------
    SchemaMismatch
        If ``data`` lacks one of the term's variables.
    BoundaryViolation
        For soap film terms with an unusable boundary or knot set, or with
        data outside the boundary.
    """
    if spec.basis == 'cr':
        term = CubicRegressionTerm(spec, data)
    elif spec.basis == 'te':
        term = TensorTerm(spec, data)
    elif spec.basis == 'tp':
        term = ThinPlateTerm(spec, data)
    else:
        from pydsm.spatial.soap import SoapFilmTerm

        term = SoapFilmTerm(spec, data)
    logger.debug(f"Built {term!r}")
    return term
