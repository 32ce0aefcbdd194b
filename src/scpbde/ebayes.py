from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

LOGGER = logging.getLogger(__name__)

# Fewer genes than this: the prior mean is a constant, not an abundance trend
_MIN_GENES_FOR_TREND = 10


@dataclass(frozen=True)
class SqueezeResult:
    var_post: np.ndarray   # moderated (posterior) variances
    var_prior: np.ndarray  # prior variance per gene (trend)
    df_prior: float


def trigamma_inverse(y: float, tol: float = 1e-8) -> float:
    # Initial guess
    if y > 1e7:
        return 1.0 / np.sqrt(y)
    if y < 1e-6:
        return 1.0 / y
    x = 0.5 + 1.0 / y

    # Newton iteration on 1/trigamma, as in limma
    for _ in range(50):
        tri = polygamma(1, x)
        dif = tri * (1.0 - tri / y) / polygamma(2, x)
        x = x + dif
        if -dif / x < tol:
            break
    return float(x)


def _input_filter(s2: np.ndarray, df: np.ndarray) -> np.ndarray:
    return np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)


def fit_fdist(
    s2: np.ndarray,
    df1: np.ndarray,
    covariate: Optional[np.ndarray] = None,
) -> tuple[np.ndarray, float]:
    """
    Moment estimation of the scaled-F prior of the variances s2 (limma fitFDist).

    Returns (s20 per gene, d0). With a covariate, the prior location follows a
    lowess trend of the log variances against it.
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df1 = np.broadcast_to(np.asarray(df1, dtype=np.float64), s2.shape)
    ok = _input_filter(s2, df1)
    n = int(ok.sum())
    if n == 0:
        return np.full(s2.shape, np.nan), np.nan

    x = s2[ok]
    d = df1[ok]
    # Avoid zeros like limma does
    x = np.maximum(x, 1e-5 * np.median(x))
    z = np.log(x)
    e = z - digamma(d / 2.0) + np.log(d / 2.0)

    use_trend = covariate is not None and n >= _MIN_GENES_FOR_TREND
    if use_trend:
        cov = np.asarray(covariate, dtype=np.float64)
        fitted = lowess(e, cov[ok], frac=0.5, it=0, return_sorted=False)
        use_trend = bool(np.all(np.isfinite(fitted)))

    if use_trend:
        resid = e - fitted
        evar = float(np.sum(resid ** 2) / max(n - 2, 1))
        order = np.argsort(cov[ok], kind="stable")
        emean = np.interp(cov, cov[ok][order], fitted[order])
    elif n > 1:
        emean = np.full(s2.shape, float(np.mean(e)))
        evar = float(np.var(e, ddof=1))
    else:
        emean = np.full(s2.shape, float(e[0]))
        evar = 0.0

    evar = evar - float(np.mean(polygamma(1, d / 2.0)))
    if evar > 0:
        d0 = 2.0 * trigamma_inverse(evar)
        s20 = np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    else:
        d0 = np.inf
        s20 = np.exp(emean)
    return s20, float(d0)


def squeeze_var(
    s2: np.ndarray,
    df: np.ndarray,
    covariate: Optional[np.ndarray] = None,
) -> SqueezeResult:
    """
    Empirical Bayes posterior variances:
      s2_post = (d0 * s0^2 + df * s2) / (d0 + df)
    Genes with no residual df get the prior value.
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)

    s20, d0 = fit_fdist(s2, df, covariate=covariate)
    if not np.isfinite(s20).all():
        LOGGER.warning("squeeze_var: prior could not be estimated; variances left unmoderated.")
        return SqueezeResult(var_post=s2.copy(), var_prior=s20, df_prior=0.0)

    if np.isinf(d0):
        post = s20.copy()
    else:
        with np.errstate(invalid="ignore"):
            post = np.where(df > 0, (d0 * s20 + df * np.nan_to_num(s2)) / (d0 + df), s20)
    return SqueezeResult(var_post=post, var_prior=s20, df_prior=d0)


def bh_adjust(p: np.ndarray, n_total: Optional[int] = None) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN p-values stay NaN but still count towards the number of tests; an
    explicit `n_total` can enlarge the denominator further.
    """
    p = np.asarray(p, dtype=np.float64)
    out = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    m_ok = int(ok.sum())
    if m_ok == 0:
        return out
    m = max(int(n_total) if n_total is not None else p.size, m_ok)

    q = multipletests(p[ok], method="fdr_bh")[1]
    # BH with m tests scales the m_ok-test adjustment by m / m_ok before capping at 1
    out[ok] = np.minimum(q * (m / m_ok), 1.0)
    return out
