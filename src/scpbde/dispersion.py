# src/scpbde/dispersion.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from .design import ExperimentDesign
from .errors import InsufficientSamplesError
from .nbglm import cox_reid_apl, fit_nb_glm, maximize_interpolant

LOGGER = logging.getLogger(__name__)

NormMethod = Literal["TMM", "none"]


@dataclass(frozen=True)
class DispersionResult:
    """Normalization + NB dispersion estimates for one cluster."""
    lib_sizes: pd.Series           # samples
    norm_factors: pd.Series        # samples, geometric mean 1
    ave_log_cpm: pd.Series         # retained genes
    common_dispersion: float
    trended_dispersion: pd.Series  # retained genes
    tagwise_dispersion: pd.Series  # retained genes
    prior_df: float
    zero_count_genes: Tuple[str, ...] = field(default_factory=tuple)
    dropped_samples: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def genes(self) -> pd.Index:
        return self.tagwise_dispersion.index

    @property
    def samples(self) -> pd.Index:
        return self.norm_factors.index

    def effective_lib_sizes(self) -> pd.Series:
        return self.lib_sizes * self.norm_factors

    def offset(self) -> np.ndarray:
        return np.log(self.effective_lib_sizes().to_numpy(dtype=np.float64))

    def get(self, kind: str) -> np.ndarray:
        if kind == "tagwise":
            return self.tagwise_dispersion.to_numpy()
        if kind == "trended":
            return self.trended_dispersion.to_numpy()
        if kind == "common":
            return np.full(len(self.genes), float(self.common_dispersion))
        raise ValueError(f"Unknown dispersion kind {kind!r}; use tagwise | trended | common")


# -----------------------------------------------------------------------------
# Normalization
# -----------------------------------------------------------------------------
def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    lib_obs: float,
    lib_ref: float,
    *,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
) -> float:
    obs = obs.astype(np.float64)
    ref = ref.astype(np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2.0
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    r_l = rankdata(log_r)
    r_s = rankdata(abs_e)
    keep = (r_l >= lo_l) & (r_l <= hi_l) & (r_s >= lo_s) & (r_s <= hi_s)
    if not keep.any():
        return 1.0

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def calc_norm_factors(counts: pd.DataFrame, *, method: NormMethod = "TMM") -> pd.Series:
    """
    Per-sample normalization factors (genes x samples input), scaled to
    geometric mean 1.

    TMM: the reference sample is the one whose upper-quartile scaled count is
    closest to the mean upper quartile; each sample's factor is the
    precision-weighted mean log-ratio against it after trimming 30% of
    log-ratios and 5% of abundances.
    """
    samples = counts.columns
    if method == "none":
        return pd.Series(1.0, index=samples, name="norm_factor")
    if method != "TMM":
        raise ValueError(f"Unknown normalization method {method!r}; use 'TMM' or 'none'")

    x = counts.to_numpy(dtype=np.float64)
    lib = x.sum(axis=0)
    if np.any(lib <= 0):
        raise ValueError("TMM requires positive library sizes (drop empty samples first)")

    f75 = np.quantile(x, 0.75, axis=0) / lib
    if np.median(f75) < 1e-20:
        LOGGER.warning("TMM: upper quartile is zero for most samples; factors may be unstable.")
    ref = int(np.argmin(np.abs(f75 - f75.mean())))

    f = np.array([_tmm_factor(x[:, i], x[:, ref], lib[i], lib[ref]) for i in range(x.shape[1])])
    f = f / np.exp(np.mean(np.log(f)))
    return pd.Series(f, index=samples, name="norm_factor")


def ave_log_cpm(counts: np.ndarray, lib_sizes: np.ndarray, *, prior_count: float = 2.0) -> np.ndarray:
    """Average log2 counts-per-million per gene, with a library-scaled prior count."""
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)
    scaled = prior_count * lib_sizes / lib_sizes.mean()
    cpm = (np.asarray(counts, dtype=np.float64) + scaled[None, :]) / (lib_sizes + 2.0 * scaled)[None, :] * 1e6
    return np.log2(cpm).mean(axis=1)


# -----------------------------------------------------------------------------
# Dispersion (weighted likelihood empirical Bayes)
# -----------------------------------------------------------------------------
def _default_span(n_genes: int) -> float:
    if n_genes <= 50:
        return 1.0
    return 0.25 + 0.75 * (50.0 / n_genes) ** 0.5


def _smooth_by_covariate(
    values: np.ndarray,
    covariate: np.ndarray,
    *,
    span: float,
    max_points: int = 200,
) -> np.ndarray:
    """
    Local (degree 0, tricube) average of each column of `values` across genes
    ordered by `covariate`, using the nearest span*n genes.

    Evaluated on at most `max_points` covariate quantiles and interpolated
    back to every gene.
    """
    x = np.asarray(covariate, dtype=np.float64)
    G = x.size
    k = int(min(G, max(2, np.ceil(span * G))))

    eval_x = np.unique(np.quantile(x, np.linspace(0.0, 1.0, min(G, max_points))))
    smoothed = np.empty((eval_x.size, values.shape[1]))
    for i, e in enumerate(eval_x):
        d = np.abs(x - e)
        h = max(float(np.partition(d, k - 1)[k - 1]), 1e-8)
        u = np.clip(d / h, 0.0, 1.0)
        w = (1.0 - u ** 3) ** 3
        smoothed[i] = w @ values / w.sum()

    if eval_x.size == 1:
        return np.broadcast_to(smoothed[0], values.shape).copy()
    return np.column_stack([np.interp(x, eval_x, smoothed[:, j]) for j in range(values.shape[1])])


def estimate_dispersion(
    counts: np.ndarray,
    design: np.ndarray,
    offset: np.ndarray,
    covariate: np.ndarray,
    *,
    prior_df: float = 10.0,
    grid_length: int = 21,
    grid_range: Tuple[float, float] = (-10.0, 10.0),
    span: Optional[float] = None,
    trend: bool = True,
) -> Tuple[float, np.ndarray, np.ndarray]:
    """
    Common, trended and tagwise NB dispersions.

    The Cox-Reid adjusted profile likelihood of every gene is evaluated on a
    grid of dispersions 0.1 * 2^t. The common dispersion maximizes the summed
    likelihood; the trend maximizes the likelihood locally averaged over genes
    of similar abundance; tagwise estimates maximize each gene's likelihood
    plus prior_df / residual_df times the trend. With trend=False the
    summed (common) likelihood is used in place of the trend.

    Returns (common, trended, tagwise).
    """
    y = np.asarray(counts, dtype=np.float64)
    X = np.asarray(design, dtype=np.float64)
    G, n = y.shape
    df_res = n - int(np.linalg.matrix_rank(X))
    if df_res < 1:
        raise InsufficientSamplesError(
            f"no residual degrees of freedom for dispersion estimation ({n} samples, {X.shape[1]} coefficients)"
        )

    pts = np.linspace(grid_range[0], grid_range[1], int(grid_length))
    disp_grid = 0.1 * 2.0 ** pts

    l0 = np.empty((G, pts.size))
    start = None
    for i, d in enumerate(disp_grid):
        fit = fit_nb_glm(y, X, offset, d, start=start)
        start = fit.coefficients
        l0[:, i] = cox_reid_apl(y, X, offset, d, fit=fit)

    common = float(0.1 * 2.0 ** maximize_interpolant(pts, l0.sum(axis=0)[None, :])[0])

    if trend:
        if span is None:
            span = _default_span(G)
        m0 = _smooth_by_covariate(l0, covariate, span=span)
    else:
        m0 = np.broadcast_to(l0.mean(axis=0), l0.shape)
    trended = 0.1 * 2.0 ** maximize_interpolant(pts, m0)

    prior_n = float(prior_df) / df_res
    tagwise = 0.1 * 2.0 ** maximize_interpolant(pts, l0 + prior_n * m0)

    LOGGER.debug(
        "Dispersion: common=%.4g, trended range=[%.4g, %.4g], prior_n=%.3g",
        common, float(trended.min()), float(trended.max()), prior_n,
    )
    return common, trended, tagwise


# -----------------------------------------------------------------------------
# Per-cluster entry point
# -----------------------------------------------------------------------------
def normalize_and_estimate(
    pb: pd.DataFrame,
    design: ExperimentDesign,
    *,
    norm_method: NormMethod = "TMM",
    prior_df: float = 10.0,
    grid_length: int = 21,
    grid_range: Tuple[float, float] = (-10.0, 10.0),
    trend: bool = True,
) -> Tuple[pd.DataFrame, ExperimentDesign, DispersionResult]:
    """
    Prepare one cluster's pseudobulk matrix (genes x samples) for testing.

      1) drop samples with zero library size (empty buckets); < 2 left ->
         InsufficientSamplesError
      2) drop genes with zero total count (reported as not tested)
      3) normalization factors
      4) common / trended / tagwise NB dispersions

    Returns (filtered counts, design restricted to kept samples, DispersionResult).
    """
    pb = pb.loc[:, [c for c in pb.columns if c in design.samples]]
    counts = pb.fillna(0)

    lib_all = counts.sum(axis=0)
    dropped_samples = tuple(str(s) for s in lib_all.index[lib_all.to_numpy() <= 0])
    kept_samples = [s for s in counts.columns if s not in dropped_samples]
    if len(kept_samples) < 2:
        raise InsufficientSamplesError(
            f"only {len(kept_samples)} sample(s) with non-zero library size"
        )
    if dropped_samples:
        LOGGER.info("Dropping %d empty sample(s): %s", len(dropped_samples), list(dropped_samples))

    counts = counts.loc[:, kept_samples]
    design_k = design.subset(kept_samples)

    total = counts.sum(axis=1).to_numpy()
    zero_genes = tuple(str(g) for g in counts.index[total <= 0])
    counts = counts.loc[total > 0]
    if counts.shape[0] == 0:
        raise InsufficientSamplesError("no genes with non-zero counts")

    lib = counts.sum(axis=0).astype(np.float64)
    lib.name = "lib_size"
    nf = calc_norm_factors(counts, method=norm_method)
    offset = np.log((lib * nf).to_numpy(dtype=np.float64))

    y = counts.to_numpy(dtype=np.float64)
    alc = ave_log_cpm(y, (lib * nf).to_numpy())
    common, trended, tagwise = estimate_dispersion(
        y,
        design_k.matrix(),
        offset,
        alc,
        prior_df=prior_df,
        grid_length=grid_length,
        grid_range=grid_range,
        trend=trend,
    )

    genes = counts.index
    result = DispersionResult(
        lib_sizes=lib,
        norm_factors=nf,
        ave_log_cpm=pd.Series(alc, index=genes, name="logCPM"),
        common_dispersion=common,
        trended_dispersion=pd.Series(trended, index=genes, name="trended_dispersion"),
        tagwise_dispersion=pd.Series(tagwise, index=genes, name="tagwise_dispersion"),
        prior_df=float(prior_df),
        zero_count_genes=zero_genes,
        dropped_samples=dropped_samples,
    )
    return counts, design_k, result
