# src/scpbde/nbglm.py
"""
Negative-binomial GLM primitives shared by dispersion estimation and testing.

All routines are vectorized over genes: counts are (n_genes x n_samples),
the design is (n_samples x n_coefs), dispersions are per gene (n_genes,).
Log link; offsets are log effective library sizes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.special import gammaln

LOGGER = logging.getLogger(__name__)

# Below this dispersion the NB terms are computed as Poisson
_POISSON_PHI = 1e-8
# Floor on information-matrix eigenvalues for the Cox-Reid adjustment
_LOW_VALUE = 1e-10
_ETA_MAX = 50.0


@dataclass(frozen=True)
class GLMFit:
    coefficients: np.ndarray  # genes x coefs (natural log scale)
    fitted: np.ndarray        # genes x samples
    deviance: np.ndarray      # genes
    converged: np.ndarray     # genes, bool
    n_iter: np.ndarray        # genes


def _as_2d_offset(offset, shape: Tuple[int, int]) -> np.ndarray:
    off = np.asarray(offset, dtype=np.float64)
    if off.ndim == 0:
        return np.full(shape, float(off))
    if off.ndim == 1:
        return np.broadcast_to(off[None, :], shape)
    return off


def _phi_col(dispersion, n_genes: int) -> np.ndarray:
    phi = np.asarray(dispersion, dtype=np.float64)
    if phi.ndim == 0:
        phi = np.full(n_genes, float(phi))
    return phi[:, None]


# -----------------------------------------------------------------------------
# Likelihood pieces
# -----------------------------------------------------------------------------
def nb_unit_deviance(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Elementwise NB unit deviance (Poisson limit for tiny dispersion)."""
    y = np.asarray(y, dtype=np.float64)
    mu = np.maximum(np.asarray(mu, dtype=np.float64), 1e-300)
    phi = np.broadcast_to(_phi_col(dispersion, y.shape[0]), y.shape)

    with np.errstate(divide="ignore", invalid="ignore"):
        ylog = np.where(y > 0, y * np.log(y / mu), 0.0)
        pois = 2.0 * (ylog - (y - mu))
        nb_phi = np.where(phi > _POISSON_PHI, phi, 1.0)
        nb = 2.0 * (ylog - (y + 1.0 / nb_phi) * (np.log1p(nb_phi * y) - np.log1p(nb_phi * mu)))
    dev = np.where(phi > _POISSON_PHI, nb, pois)
    return np.maximum(dev, 0.0)


def nb_deviance(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Per-gene residual deviance."""
    return nb_unit_deviance(y, mu, dispersion).sum(axis=1)


def nb_loglik(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Per-gene NB log-likelihood."""
    y = np.asarray(y, dtype=np.float64)
    mu = np.maximum(np.asarray(mu, dtype=np.float64), 1e-300)
    phi = np.broadcast_to(_phi_col(dispersion, y.shape[0]), y.shape)

    pois = y * np.log(mu) - mu - gammaln(y + 1.0)
    nb_phi = np.where(phi > _POISSON_PHI, phi, 1.0)
    r = 1.0 / nb_phi
    mp = mu * nb_phi
    nb = (
        y * (np.log(mp) - np.log1p(mp))
        - np.log1p(mp) / nb_phi
        + gammaln(y + r) - gammaln(r) - gammaln(y + 1.0)
    )
    return np.where(phi > _POISSON_PHI, nb, pois).sum(axis=1)


def _weights(mu: np.ndarray, phi: np.ndarray) -> np.ndarray:
    return mu / (1.0 + phi * mu)


def cox_reid_apl(
    y: np.ndarray,
    design: np.ndarray,
    offset,
    dispersion,
    *,
    fit: Optional[GLMFit] = None,
) -> np.ndarray:
    """
    Cox-Reid adjusted profile log-likelihood per gene:
      loglik(mu_hat) - 0.5 * log det(X' W X),  W = mu / (1 + phi mu).

    Small eigenvalues of X'WX (e.g. a group with all-zero counts) are floored.
    """
    y = np.asarray(y, dtype=np.float64)
    X = np.asarray(design, dtype=np.float64)
    if fit is None:
        fit = fit_nb_glm(y, X, offset, dispersion)
    phi = _phi_col(dispersion, y.shape[0])
    ll = nb_loglik(y, fit.fitted, dispersion)

    w = _weights(fit.fitted, phi)
    info = np.einsum("gn,np,nq->gpq", w, X, X)
    eig = np.linalg.eigvalsh(info)
    eig = np.where(np.isfinite(eig) & (eig >= _LOW_VALUE), eig, _LOW_VALUE)
    return ll - 0.5 * np.log(eig).sum(axis=1)


# -----------------------------------------------------------------------------
# Fitting
# -----------------------------------------------------------------------------
def _initial_coefficients(y: np.ndarray, X: np.ndarray, off: np.ndarray) -> np.ndarray:
    z = np.log(y + 0.5) - off
    return z @ np.linalg.pinv(X).T


def fit_nb_glm(
    y: np.ndarray,
    design: np.ndarray,
    offset,
    dispersion,
    *,
    start: Optional[np.ndarray] = None,
    max_iter: int = 50,
    tol: float = 1e-6,
) -> GLMFit:
    """
    Fit a NB GLM (log link) to every gene at once by Fisher scoring with
    Levenberg damping.

    A step is accepted only if the deviance does not increase; otherwise the
    damping is raised and the step retried. A gene converges when the score
    times the accepted step drops below `tol`. Genes whose fit runs out of
    iterations (or cannot decrease the deviance) are returned with
    converged=False.
    """
    y = np.asarray(y, dtype=np.float64)
    X = np.asarray(design, dtype=np.float64)
    G, n = y.shape
    p = X.shape[1]
    if X.shape[0] != n:
        raise ValueError(f"design has {X.shape[0]} rows but counts have {n} samples")

    off = _as_2d_offset(offset, (G, n))
    phi = _phi_col(dispersion, G)

    beta = _initial_coefficients(y, X, off) if start is None else np.array(start, dtype=np.float64, copy=True)

    def _mu(b: np.ndarray) -> np.ndarray:
        return np.exp(np.clip(off + b @ X.T, -_ETA_MAX * 10, _ETA_MAX))

    mu = _mu(beta)
    dev = nb_deviance(y, mu, phi[:, 0])

    converged = np.zeros(G, dtype=bool)
    failed = np.zeros(G, dtype=bool)
    n_iter = np.zeros(G, dtype=np.int64)
    eye = np.eye(p)

    w = _weights(mu, phi)
    info = np.einsum("gn,np,nq->gpq", w, X, X)
    lam = 1e-6 * np.maximum(np.einsum("gpp->gp", info).max(axis=1), 1e-12)

    for _ in range(int(max_iter)):
        active = ~(converged | failed)
        if not active.any():
            break
        idx = np.flatnonzero(active)
        n_iter[idx] += 1

        y_a, mu_a, phi_a = y[idx], mu[idx], phi[idx]
        w_a = _weights(mu_a, phi_a)
        info_a = np.einsum("gn,np,nq->gpq", w_a, X, X)
        score_a = ((y_a - mu_a) / (1.0 + phi_a * mu_a)) @ X

        lam_a = lam[idx]
        accepted = np.zeros(idx.size, dtype=bool)
        beta_new = beta[idx].copy()
        mu_new = mu_a.copy()
        dev_new = dev[idx].copy()
        step = np.zeros_like(beta_new)

        for _attempt in range(12):
            todo = ~accepted
            if not todo.any():
                break
            A = info_a[todo] + lam_a[todo, None, None] * eye
            d = np.linalg.solve(A, score_a[todo][:, :, None])[:, :, 0]
            b_try = beta[idx[todo]] + d
            mu_try = np.exp(np.clip(off[idx[todo]] + b_try @ X.T, -_ETA_MAX * 10, _ETA_MAX))
            dev_try = nb_deviance(y_a[todo], mu_try, phi_a[todo, 0])

            ok = np.isfinite(dev_try) & (dev_try <= dev[idx[todo]] * (1.0 + 1e-12) + 1e-12)
            pos = np.flatnonzero(todo)
            good = pos[ok]
            beta_new[good] = b_try[ok]
            mu_new[good] = mu_try[ok]
            dev_new[good] = dev_try[ok]
            step[good] = d[ok]
            accepted[good] = True
            lam_a[pos[~ok]] *= 10.0

        # Accepted steps relax the damping for the next iteration
        lam_a[accepted] = np.maximum(lam_a[accepted] / 10.0, 1e-12)
        lam[idx] = lam_a

        beta[idx] = beta_new
        mu[idx] = mu_new
        dev[idx] = dev_new

        divergence = np.einsum("gp,gp->g", score_a, step)
        converged[idx[accepted & (divergence < tol)]] = True
        failed[idx[~accepted]] = True

    if failed.any() or (~converged).any():
        LOGGER.debug(
            "NB GLM: %d/%d genes did not converge (%d could not decrease deviance).",
            int((~converged).sum()), G, int(failed.sum()),
        )
    return GLMFit(coefficients=beta, fitted=mu, deviance=dev, converged=converged, n_iter=n_iter)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def residual_df(y: np.ndarray, fitted: np.ndarray, design: np.ndarray) -> np.ndarray:
    """
    Residual degrees of freedom per gene, discounting samples whose count and
    fitted value are both exactly zero (they carry no information).
    """
    X = np.asarray(design, dtype=np.float64)
    n, p = X.shape
    zero = (np.asarray(y) < 1e-4) & (np.asarray(fitted) < 1e-4)
    df = np.full(zero.shape[0], float(n - p))
    some = zero.any(axis=1)
    if not some.any():
        return df

    patterns, inverse = np.unique(zero[some], axis=0, return_inverse=True)
    inverse = np.asarray(inverse).ravel()
    df_pattern = np.empty(patterns.shape[0])
    for i, pat in enumerate(patterns):
        keep = ~pat
        if not keep.any():
            df_pattern[i] = 0.0
            continue
        rank = int(np.linalg.matrix_rank(X[keep]))
        df_pattern[i] = max(float(keep.sum() - rank), 0.0)
    df[some] = df_pattern[inverse]
    return df


def add_prior_count(
    y: np.ndarray,
    lib_size: np.ndarray,
    prior_count: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Add a library-size scaled prior count; return (counts, log offset).
    """
    lib_size = np.asarray(lib_size, dtype=np.float64)
    scaled = float(prior_count) * lib_size / lib_size.mean()
    y_aug = np.asarray(y, dtype=np.float64) + scaled[None, :]
    lib_aug = lib_size + 2.0 * scaled
    return y_aug, np.log(lib_aug)


def maximize_interpolant(x: np.ndarray, ll: np.ndarray) -> np.ndarray:
    """
    Per-row maximizer of log-likelihoods evaluated on a common grid `x`.

    Refines the best grid point with the vertex of the parabola through it and
    its neighbours (clamped to the bracketing grid points).
    """
    x = np.asarray(x, dtype=np.float64)
    ll = np.atleast_2d(np.asarray(ll, dtype=np.float64))
    m = x.size
    i = np.argmax(ll, axis=1)
    out = x[i].copy()

    interior = (i > 0) & (i < m - 1)
    if interior.any():
        r = np.flatnonzero(interior)
        j = i[r]
        x0, x1, x2 = x[j - 1], x[j], x[j + 1]
        y0, y1, y2 = ll[r, j - 1], ll[r, j], ll[r, j + 1]
        denom = (x0 - x1) * (x0 - x2) * (x1 - x2)
        a = (x2 * (y1 - y0) + x1 * (y0 - y2) + x0 * (y2 - y1)) / denom
        b = (x2 * x2 * (y0 - y1) + x1 * x1 * (y2 - y0) + x0 * x0 * (y1 - y2)) / denom
        with np.errstate(divide="ignore", invalid="ignore"):
            vertex = np.where(a < 0, -b / (2.0 * a), x1)
        out[r] = np.clip(np.where(np.isfinite(vertex), vertex, x1), x0, x2)
    return out
