"""
Penalized likelihood fitting with REML smoothness selection.

Coefficients are estimated by penalized iteratively re-weighted least
squares (PIRLS) for fixed smoothing parameters. Smoothing parameters,
the scale parameter and any free family parameter are chosen by
minimizing the Laplace-approximate restricted likelihood

    V = -l(beta) + beta' S beta / (2 phi)
        + (log|X'WX + S| - log|S|+) / 2 - M_p / 2 * log(2 pi phi)

where S is the smoothing-parameter weighted sum of penalties, |S|+ its
product of non-zero eigenvalues and M_p the dimension of the penalty
null space.

References
----------
Wood, S.N. (2011). Fast stable restricted maximum likelihood and
marginal likelihood estimation of semiparametric generalized linear
models. JRSS B 73(1), 3-36.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import linalg, optimize

from pydsm.config import FitControl
from pydsm.core.exceptions import NonConvergence, RankDeficiency
from pydsm.core.families import CountFamily
from pydsm.logger import get_logger
from pydsm.spatial.terms import penalty_rank

logger = get_logger(__name__)

ETA_BOUND = 700.0


@dataclass(frozen=True, eq=False)
class Penalty:
    """Penalty matrix acting on coefficients ``start:start + size``."""

    start: int
    matrix: np.ndarray
    label: str = ''

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    @property
    def stop(self) -> int:
        return self.start + self.size


@dataclass
class GAMFit:
    """Result of a penalized likelihood fit.

    Attributes
    ----------
    coefficients : np.ndarray
        Estimated coefficients.
    Vp : np.ndarray
        Bayesian posterior covariance of the coefficients, phi * (X'WX + S)^-1.
    sp : np.ndarray
        Smoothing parameter of each penalty.
    scale : float
        Scale parameter phi.
    family : CountFamily
        Family with any estimated parameter filled in.
    edf : np.ndarray
        Effective degrees of freedom of each coefficient.
    fitted : np.ndarray
        Fitted means, including the offset.
    deviance, null_deviance : float
        Residual deviance and deviance of the intercept + offset model.
    reml : float
        REML criterion at the optimum (NaN for degenerate fits).
    loglik : float
        Log-likelihood (quasi-likelihood for quasi-Poisson).
    aic : float
        AIC using the effective degrees of freedom (NaN for quasi families).
    """

    coefficients: np.ndarray
    Vp: np.ndarray
    sp: np.ndarray
    scale: float
    family: CountFamily
    edf: np.ndarray
    fitted: np.ndarray
    linear_predictor: np.ndarray
    deviance: float
    null_deviance: float
    reml: float
    loglik: float
    aic: float
    n_iter: int = 0
    degenerate: bool = False
    messages: List[str] = field(default_factory=list)

    @property
    def deviance_explained(self) -> float:
        """Fraction of the null deviance explained, clipped to [0, 1]."""
        if not self.null_deviance > 0:
            return 0.0
        return float(np.clip(1.0 - self.deviance / self.null_deviance, 0.0, 1.0))


class PenalizedFitter:
    """Fits a log-link penalized GLM for a given model matrix and penalties.

    Parameters
    ----------
    X : np.ndarray
        (n, p) model matrix. When ``intercept`` is True column 0 is the
        intercept.
    y : np.ndarray
        Response.
    offset : np.ndarray
        Log offset.
    penalties : sequence of Penalty
        Penalties, each with its own smoothing parameter.
    family : CountFamily
        Response family.
    control : FitControl, optional
        Iteration budgets and tolerances.
    """

    def __init__(
        self,
        X: np.ndarray,
        y: np.ndarray,
        offset: np.ndarray,
        penalties: Sequence[Penalty],
        family: CountFamily,
        control: Optional[FitControl] = None,
        intercept: bool = True,
    ):
        self.X = np.asarray(X, dtype=float)
        self.y = np.asarray(y, dtype=float)
        self.offset = np.asarray(offset, dtype=float)
        self.n, self.p = self.X.shape
        self.penalties = list(penalties)
        self.family = family
        self.control = control or FitControl()
        self.intercept = intercept

        if self.y.shape != (self.n,) or self.offset.shape != (self.n,):
            raise ValueError("y and offset must have one entry per row of X")
        if np.any(self.y < 0) or not np.all(np.isfinite(self.y)):
            raise ValueError("Response must be finite and non-negative")
        if not np.all(np.isfinite(self.offset)):
            raise ValueError("Offset must be finite (check for zero-area segments)")

        self._blocks = self._penalty_blocks()
        self.null_space_dim = self.p - sum(rank for _, _, _, rank in self._blocks)
        self._beta: Optional[np.ndarray] = None

    # -- penalties ---------------------------------------------------------------------

    def _penalty_blocks(self) -> List[Tuple[int, int, List[int], int]]:
        blocks: Dict[Tuple[int, int], List[int]] = {}
        for i, pen in enumerate(self.penalties):
            if pen.stop > self.p:
                raise ValueError(f"Penalty {pen.label or i} exceeds the model matrix width")
            blocks.setdefault((pen.start, pen.stop), []).append(i)
        result = []
        for (start, stop), members in blocks.items():
            total = sum(self.penalties[i].matrix for i in members)
            result.append((start, stop, members, penalty_rank(total)))
        return result

    def penalty_matrix(self, lam: np.ndarray) -> np.ndarray:
        S = np.zeros((self.p, self.p))
        for value, pen in zip(lam, self.penalties):
            S[pen.start:pen.stop, pen.start:pen.stop] += value * pen.matrix
        return S

    def log_det_penalty(self, lam: np.ndarray) -> float:
        """Log generalized determinant of the weighted penalty, block by block."""
        total = 0.0
        for start, stop, members, rank in self._blocks:
            if rank == 0:
                continue
            M = sum(lam[i] * self.penalties[i].matrix for i in members)
            eigenvalues = np.sort(np.linalg.eigvalsh((M + M.T) / 2.0))[::-1][:rank]
            total += np.sum(np.log(np.maximum(eigenvalues, np.finfo(float).tiny)))
        return float(total)

    # -- inner loop --------------------------------------------------------------------

    def _mean(self, beta: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        eta = np.clip(self.offset + self.X @ beta, -ETA_BOUND, ETA_BOUND)
        return eta, np.exp(eta)

    def _solve(self, H: np.ndarray, rhs: np.ndarray) -> np.ndarray:
        try:
            factor = linalg.cho_factor(H)
        except linalg.LinAlgError as exc:
            raise RankDeficiency(
                "Penalized information matrix is not positive definite"
            ) from exc
        return linalg.cho_solve(factor, rhs)

    def start_beta(self, S: np.ndarray, family: CountFamily) -> np.ndarray:
        """Weighted least squares start from mu = y + 0.1."""
        mu = self.y + 0.1
        w = family.working_weights(mu)
        z = np.log(mu) - self.offset
        XtW = self.X.T * w
        return self._solve(XtW @ self.X + S, XtW @ z)

    def pirls(
        self,
        S: np.ndarray,
        family: CountFamily,
        beta: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, int]:
        """Penalized IRLS for fixed penalty ``S``.

        Returns
        -------
        tuple
            (beta, mu, working weights, iterations)

        Raises
        ------
        NonConvergence
            If the iteration budget is exhausted.
        """
        ctrl = self.control
        if beta is None:
            beta = self.start_beta(S, family)
        eta, mu = self._mean(beta)
        pdev_old = family.deviance(self.y, mu) + beta @ S @ beta

        for iteration in range(1, ctrl.pirls_maxiter + 1):
            w = family.working_weights(mu)
            z = (eta - self.offset) + (self.y - mu) / mu
            XtW = self.X.T * w
            beta_new = self._solve(XtW @ self.X + S, XtW @ z)

            for _ in range(ctrl.max_step_halvings):
                eta_new, mu_new = self._mean(beta_new)
                pdev = family.deviance(self.y, mu_new) + beta_new @ S @ beta_new
                if np.isfinite(pdev) and pdev - pdev_old <= ctrl.pirls_tol * (abs(pdev_old) + 0.1):
                    break
                beta_new = (beta + beta_new) / 2.0
            else:
                # No step reduces the penalized deviance: beta is already optimal
                w = family.working_weights(mu)
                return beta, mu, w, iteration

            converged = abs(pdev - pdev_old) < ctrl.pirls_tol * (abs(pdev) + 0.1)
            beta, eta, mu, pdev_old = beta_new, eta_new, mu_new, pdev
            if converged:
                return beta, mu, family.working_weights(mu), iteration

        raise NonConvergence(
            "Penalized IRLS exceeded its iteration budget",
            iterations=ctrl.pirls_maxiter,
        )

    # -- outer loop --------------------------------------------------------------------

    def _score(
        self,
        lam: np.ndarray,
        family: CountFamily,
        phi: Optional[float],
    ) -> Tuple[float, dict]:
        """REML criterion for given smoothing parameters, family and scale.

        ``phi=None`` profiles the scale (quasi-Poisson).
        """
        S = self.penalty_matrix(lam)
        beta, mu, w, n_iter = self.pirls(S, family, self._beta)
        self._beta = beta

        H = (self.X.T * w) @ self.X + S
        try:
            chol = linalg.cholesky(H, lower=True)
        except linalg.LinAlgError as exc:
            raise RankDeficiency("Penalized information matrix is not positive definite") from exc
        log_det_h = 2.0 * np.sum(np.log(np.diag(chol)))
        penalty = float(beta @ S @ beta)

        if phi is None:
            deviance = family.deviance(self.y, mu)
            phi = max((deviance + penalty) / max(self.n - self.null_space_dim, 1), np.finfo(float).tiny)

        loglik = family.loglik(self.y, mu, phi)
        score = (
            -loglik
            + penalty / (2.0 * phi)
            + 0.5 * (log_det_h - self.log_det_penalty(lam))
            - 0.5 * self.null_space_dim * np.log(2.0 * np.pi * phi)
        )
        state = {
            'beta': beta, 'mu': mu, 'w': w, 'S': S, 'H': H,
            'phi': phi, 'loglik': loglik, 'n_iter': n_iter,
        }
        return float(score), state

    def fit(
        self,
        sp: Optional[np.ndarray] = None,
        scale: Optional[float] = None,
        check_rank: bool = True,
    ) -> GAMFit:
        """Fit the model.

        Parameters
        ----------
        sp : np.ndarray, optional
            Fixed smoothing parameters. When given, any free family
            parameter is also held at its current value.
        scale : float, optional
            Fixed scale parameter.
        check_rank : bool
            Check that the model matrix has full column rank. Models whose
            extra columns carry a proper prior may skip the check.

        Returns
        -------
        GAMFit

        Raises
        ------
        RankDeficiency
            If there are more coefficients than data or the model matrix
            is collinear.
        NonConvergence
            If PIRLS or the REML optimizer exhausts its iteration budget.
        """
        if check_rank:
            if self.p > self.n:
                raise RankDeficiency(
                    f"Model has {self.p} coefficients but only {self.n} segments"
                )
            rank = np.linalg.matrix_rank(self.X)
            if rank < self.p:
                raise RankDeficiency(
                    f"Model matrix is collinear: rank {rank} < {self.p} coefficients"
                )

        family = self.family if sp is None else self.family.fixed()
        n_sp = len(self.penalties)
        ctrl = self.control

        w0 = family.working_weights(self.y + 0.1)
        rho0 = np.log(np.mean(w0))

        if np.all(self.y == 0):
            if sp is None:
                sp = np.full(n_sp, np.exp(rho0 + ctrl.rho_range))
            return self._degenerate_fit(family, np.asarray(sp, dtype=float))

        estimate_sp = sp is None and n_sp > 0
        profile_scale = scale is None and family.is_quasi
        estimate_scale = scale is None and family.scale_estimated and not family.is_quasi
        estimate_extra = family.estimate_extra

        x0, bounds = [], []
        if estimate_sp:
            x0.extend([rho0] * n_sp)
            bounds.extend([(rho0 - ctrl.rho_range, rho0 + ctrl.rho_range)] * n_sp)
        if estimate_scale:
            x0.append(0.0)
            bounds.append((-15.0, 15.0))
        if estimate_extra:
            x0.extend(family.extra_start())
            bounds.append((-8.0, 8.0) if family.name == 'tweedie' else (-10.0, 10.0))

        fixed_lam = np.zeros(0) if n_sp == 0 else (np.asarray(sp, dtype=float) if sp is not None else None)

        def unpack(params: np.ndarray):
            i = 0
            if estimate_sp:
                lam = np.exp(params[:n_sp])
                i = n_sp
            else:
                lam = fixed_lam
            if estimate_scale:
                phi = float(np.exp(params[i]))
                i += 1
            elif profile_scale:
                phi = None
            else:
                phi = float(scale) if scale is not None else 1.0
            fam = family.with_extra(params[i:]) if estimate_extra else family
            return lam, fam, phi

        def objective(params: np.ndarray) -> float:
            score, _ = self._score(*unpack(params))
            return score if np.isfinite(score) else 1e300

        n_outer = 0
        messages = []
        if x0:
            result = optimize.minimize(
                objective,
                np.asarray(x0, dtype=float),
                method='L-BFGS-B',
                bounds=bounds,
                options={
                    'maxiter': ctrl.reml_maxiter,
                    'ftol': ctrl.reml_tol,
                    'eps': ctrl.fd_step,
                },
            )
            n_outer = int(result.nit)
            if result.status == 1:
                raise NonConvergence(
                    f"REML optimization exceeded its iteration budget: {result.message}",
                    iterations=n_outer,
                )
            if not result.success:
                message = f"REML optimizer stopped early: {result.message}"
                warnings.warn(message, RuntimeWarning)
                messages.append(message)
            params = result.x
            if estimate_sp and np.any(np.isclose(params[:n_sp], rho0 + ctrl.rho_range)):
                logger.debug("Some smoothing parameters reached their upper bound")
        else:
            params = np.zeros(0)

        lam, fam, phi = unpack(params)
        score, state = self._score(lam, fam, phi)
        return self._assemble(lam, fam, state, score, n_outer, messages, estimate_scale)

    def _assemble(self, lam, family, state, score, n_outer, messages, estimate_scale) -> GAMFit:
        beta, mu, w, H, phi = state['beta'], state['mu'], state['w'], state['H'], state['phi']
        H_inv = self._solve(H, np.eye(self.p))
        H_inv = (H_inv + H_inv.T) / 2.0
        edf = np.diag(H_inv @ ((self.X.T * w) @ self.X))

        deviance = family.deviance(self.y, mu)
        null_deviance = self.null_deviance(family)
        loglik = state['loglik']
        if family.is_quasi:
            aic = float('nan')
        else:
            n_params = edf.sum() + self.family.n_extra + (1 if estimate_scale else 0)
            aic = float(-2.0 * loglik + 2.0 * n_params)

        logger.debug(
            f"REML fit: {n_outer} outer iterations, sp={np.round(lam, 4).tolist()}, "
            f"scale={phi:.4g}, edf={edf.sum():.2f}"
        )
        return GAMFit(
            coefficients=beta,
            Vp=phi * H_inv,
            sp=np.asarray(lam, dtype=float),
            scale=float(phi),
            family=family.fixed(),
            edf=edf,
            fitted=mu,
            linear_predictor=np.log(mu),
            deviance=deviance,
            null_deviance=null_deviance,
            reml=score,
            loglik=float(loglik),
            aic=aic,
            n_iter=n_outer,
            messages=messages,
        )

    def null_deviance(self, family: CountFamily) -> float:
        """Deviance of the intercept + offset model."""
        null = PenalizedFitter(
            np.ones((self.n, 1)), self.y, self.offset, [], family.fixed(), self.control
        )
        _, mu, _, _ = null.pirls(np.zeros((1, 1)), family)
        return family.deviance(self.y, mu)

    def _degenerate_fit(self, family: CountFamily, lam: np.ndarray) -> GAMFit:
        """All-zero response: intercept-only fit with smooths shrunk to zero."""
        message = (
            "All responses are zero; smoothing parameters set to their upper bound "
            "and the fit reduces to an intercept"
        )
        warnings.warn(message, UserWarning)
        null = PenalizedFitter(
            np.ones((self.n, 1)), self.y, self.offset, [], family.fixed(), self.control
        )
        intercept, mu, _, _ = null.pirls(np.zeros((1, 1)), family)

        beta = np.zeros(self.p)
        edf = np.zeros(self.p)
        if self.intercept:
            beta[0] = intercept[0]
            edf[0] = 1.0
        eta, mu = self._mean(beta)
        deviance = family.deviance(self.y, mu)
        loglik = family.loglik(self.y, mu, 1.0)
        return GAMFit(
            coefficients=beta,
            Vp=np.zeros((self.p, self.p)),
            sp=np.asarray(lam, dtype=float),
            scale=1.0,
            family=family.fixed(),
            edf=edf,
            fitted=mu,
            linear_predictor=eta,
            deviance=deviance,
            null_deviance=deviance,
            reml=float('nan'),
            loglik=float(loglik),
            aic=float('nan') if family.is_quasi else float(-2.0 * loglik + 2.0),
            degenerate=True,
            messages=[message],
        )


def fit_gam(
    X: np.ndarray,
    y: np.ndarray,
    offset: np.ndarray,
    penalties: Sequence[Penalty],
    family: CountFamily,
    control: Optional[FitControl] = None,
    sp: Optional[np.ndarray] = None,
    scale: Optional[float] = None,
) -> GAMFit:
    """Fit a penalized log-link GLM with REML smoothness selection.

    Convenience wrapper around :class:`PenalizedFitter`; column 0 of ``X``
    must be the intercept.
    """
    return PenalizedFitter(X, y, offset, penalties, family, control).fit(sp=sp, scale=scale)
