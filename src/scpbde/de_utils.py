# src/scpbde/de_utils.py
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Literal, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import f as f_dist

from .design import ExperimentDesign
from .dispersion import DispersionResult, normalize_and_estimate
from .ebayes import bh_adjust, squeeze_var
from .errors import GLMConvergenceWarning
from .nbglm import add_prior_count, fit_nb_glm, residual_df

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Public API (notebook-first)
# -----------------------------------------------------------------------------
# - Works on pseudobulk DataFrames (genes x samples) already aggregated.
# - One NB GLM + quasi-likelihood F-test per cluster; clusters never share
#   state, so they can be tested in separate processes.
# -----------------------------------------------------------------------------

RESULT_COLUMNS = ["gene", "cluster", "log2FoldChange", "logCPM", "F", "pvalue", "padj"]
NOT_TESTED_COLUMNS = ["gene", "cluster", "reason"]

DispersionKind = Literal["tagwise", "trended", "common"]


@dataclass(frozen=True)
class PseudobulkSpec:
    """Minimal schema describing where to find counts & keys in AnnData."""
    cluster_key: str = "cluster_id"
    sample_key: str = "sample_id"
    group_key: str = "group_id"
    counts_layer: Optional[str] = None  # None falls back to .X (must be raw counts)


@dataclass(frozen=True)
class PseudobulkDEOptions:
    alpha: float = 0.05
    lfc_threshold: float = 1.0
    norm_method: Literal["TMM", "none"] = "TMM"
    dispersion: DispersionKind = "tagwise"
    prior_df: float = 10.0
    prior_count: float = 0.125
    grid_length: int = 21
    grid_range: Tuple[float, float] = (-10.0, 10.0)
    run_abundance: bool = True


@dataclass(frozen=True)
class ClusterDEResult:
    """QL F-test results for one cluster and one contrast."""
    cluster: str
    contrast: str
    table: pd.DataFrame       # RESULT_COLUMNS, tested genes in input order
    not_tested: pd.DataFrame  # NOT_TESTED_COLUMNS
    dispersion: DispersionResult
    df_prior: float

    @property
    def n_tested(self) -> int:
        return int(self.table.shape[0])

    def n_significant(self, alpha: float = 0.05, lfc_threshold: float = 1.0) -> int:
        return int(filter_results(self.table, alpha=alpha, lfc_threshold=lfc_threshold).shape[0])


@dataclass(frozen=True)
class ClusterFailure:
    cluster: str
    error: str   # exception class name
    reason: str


def _validate_result_table(df: pd.DataFrame) -> pd.DataFrame:
    missing = [c for c in RESULT_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"result table is missing columns: {missing}")
    out = df.loc[:, RESULT_COLUMNS].copy()
    out["gene"] = out["gene"].astype(str)
    out["cluster"] = out["cluster"].astype(str)
    for c in ("log2FoldChange", "logCPM", "F", "pvalue", "padj"):
        out[c] = pd.to_numeric(out[c], errors="raise").astype(np.float64)
    return out


def _not_tested_table(genes, cluster: str, reason: str) -> pd.DataFrame:
    genes = [str(g) for g in genes]
    return pd.DataFrame({"gene": genes, "cluster": [cluster] * len(genes), "reason": [reason] * len(genes)},
                        columns=NOT_TESTED_COLUMNS)


# -----------------------------------------------------------------------------
# Quasi-likelihood F-test
# -----------------------------------------------------------------------------
def _null_design(X: np.ndarray, contrast: np.ndarray) -> np.ndarray:
    """
    Design of the null model: rotate the coefficients so the first one is the
    contrast, then drop it.
    """
    p = X.shape[1]
    Q, _ = np.linalg.qr(contrast.reshape(p, 1), mode="complete")
    return (X @ Q)[:, 1:]


def run_qlf_test(
    counts: pd.DataFrame,
    design: ExperimentDesign,
    disp: DispersionResult,
    *,
    cluster: str,
    dispersion: DispersionKind = "tagwise",
    prior_count: float = 0.125,
    abundance_trend: bool = True,
) -> ClusterDEResult:
    """
    NB GLM quasi-likelihood F-test of `design.contrast` for every gene.

      - full and null (contrast = 0) NB GLM fits with the chosen dispersion
      - quasi-dispersion = deviance / residual df, squeezed towards an
        abundance trend (empirical Bayes)
      - F = LR / (df_test * s2_post), p from F(df_test, df_prior + df_res)
      - log2FC from the contrast of coefficients refit with a small prior count
      - BH within the cluster; non-converged genes are reported as not tested
        but still count towards the number of tests
    """
    genes = counts.index
    if not genes.equals(disp.genes):
        raise ValueError("counts and dispersion estimates cover different genes")

    y = counts.loc[:, list(disp.samples)].to_numpy(dtype=np.float64)
    X = design.design.loc[list(disp.samples)].to_numpy(dtype=np.float64)
    C = design.contrast_vector()
    offset = disp.offset()
    phi = disp.get(dispersion)

    fit1 = fit_nb_glm(y, X, offset, phi)
    fit0 = fit_nb_glm(y, _null_design(X, C), offset, phi)
    ok = fit1.converged & fit0.converged

    df_res = residual_df(y, fit1.fitted, X)
    with np.errstate(divide="ignore", invalid="ignore"):
        s2 = np.where(df_res > 0, fit1.deviance / df_res, np.nan)
    s2[~ok] = np.nan

    cov = disp.ave_log_cpm.to_numpy() if abundance_trend else None
    sq = squeeze_var(s2, df_res, covariate=cov)
    df_total = np.minimum(sq.df_prior + df_res, float(df_res[ok].sum()) if ok.any() else 0.0)

    df_test = 1.0
    lr = np.maximum(fit0.deviance - fit1.deviance, 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        F = lr / df_test / sq.var_post
        pvalue = f_dist.sf(F, df_test, df_total)
    pvalue = np.where(ok & np.isfinite(pvalue), pvalue, np.nan)

    y_pc, off_pc = add_prior_count(y, disp.effective_lib_sizes().to_numpy(), prior_count)
    fit_pc = fit_nb_glm(y_pc, X, off_pc, phi)
    log2fc = (fit_pc.coefficients @ C) / np.log(2.0)

    n_failed = int((~ok).sum())
    if n_failed:
        warnings.warn(
            f"cluster {cluster}: NB GLM did not converge for {n_failed} gene(s); reported as not tested",
            GLMConvergenceWarning,
            stacklevel=2,
        )

    padj = bh_adjust(pvalue, n_total=int(len(genes)))

    table = _validate_result_table(
        pd.DataFrame(
            {
                "gene": genes.astype(str),
                "cluster": str(cluster),
                "log2FoldChange": log2fc,
                "logCPM": disp.ave_log_cpm.to_numpy(),
                "F": F,
                "pvalue": pvalue,
                "padj": padj,
            }
        ).loc[ok]
    ).reset_index(drop=True)

    not_tested = pd.concat(
        [
            _not_tested_table(disp.zero_count_genes, cluster, "zero_counts"),
            _not_tested_table(genes[~ok], cluster, "glm_not_converged"),
        ],
        ignore_index=True,
    )

    return ClusterDEResult(
        cluster=str(cluster),
        contrast=design.name,
        table=table,
        not_tested=not_tested,
        dispersion=disp,
        df_prior=float(sq.df_prior),
    )


def test_cluster(
    pb: pd.DataFrame,
    design: ExperimentDesign,
    *,
    cluster: str,
    opts: PseudobulkDEOptions = PseudobulkDEOptions(),
) -> ClusterDEResult:
    """
    Normalize, estimate dispersions and test one cluster's pseudobulk matrix.

    Raises InsufficientSamplesError / DesignDegenerateError for clusters that
    cannot be tested; the caller decides how to isolate them.
    """
    counts, design_k, disp = normalize_and_estimate(
        pb,
        design,
        norm_method=opts.norm_method,
        prior_df=opts.prior_df,
        grid_length=opts.grid_length,
        grid_range=opts.grid_range,
    )
    return run_qlf_test(
        counts,
        design_k,
        disp,
        cluster=cluster,
        dispersion=opts.dispersion,
        prior_count=opts.prior_count,
    )


def test_differential_abundance(
    cell_counts: pd.DataFrame,
    design: ExperimentDesign,
    *,
    opts: PseudobulkDEOptions = PseudobulkDEOptions(),
) -> ClusterDEResult:
    """
    Differential abundance of clusters between groups.

    Same machinery as expression testing, applied to the cluster x sample
    cell-count table (clusters play the role of genes). Library sizes are the
    per-sample cell totals (no composition normalization) and no abundance
    trend is fitted.
    """
    counts, design_k, disp = normalize_and_estimate(
        cell_counts,
        design,
        norm_method="none",
        prior_df=opts.prior_df,
        grid_length=opts.grid_length,
        grid_range=opts.grid_range,
        trend=False,
    )
    res = run_qlf_test(
        counts,
        design_k,
        disp,
        cluster="abundance",
        dispersion=opts.dispersion,
        prior_count=opts.prior_count,
        abundance_trend=False,
    )
    LOGGER.info(
        "Differential abundance (%s): %d clusters tested, %d with padj < %.2g.",
        design_k.name, res.n_tested, int((res.table["padj"] < opts.alpha).sum()), opts.alpha,
    )
    return res


# Library functions, not pytest tests
test_cluster.__test__ = False
test_differential_abundance.__test__ = False


# -----------------------------------------------------------------------------
# Result filtering
# -----------------------------------------------------------------------------
def filter_results(
    table: pd.DataFrame,
    *,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
) -> pd.DataFrame:
    """
    Genes with padj < alpha and |log2FoldChange| > lfc_threshold, sorted by
    padj (ties by gene id). alpha >= 1 / lfc_threshold <= 0 disable the
    respective filter. The input table is not modified.
    """
    if alpha <= 0:
        raise ValueError("alpha must be > 0")
    if lfc_threshold < 0:
        raise ValueError("lfc_threshold must be >= 0")

    padj = pd.to_numeric(table["padj"], errors="coerce")
    lfc = pd.to_numeric(table["log2FoldChange"], errors="coerce")

    keep = padj.notna()
    if alpha < 1:
        keep &= padj < alpha
    if lfc_threshold > 0:
        keep &= lfc.abs() > lfc_threshold

    out = table.loc[keep.to_numpy()].copy()
    out["gene"] = out["gene"].astype(str)
    return out.sort_values(["padj", "gene"], kind="mergesort").reset_index(drop=True)


ResultLike = Union[ClusterDEResult, pd.DataFrame]


def significant_genes(
    results: Mapping[str, ResultLike],
    *,
    alpha: float = 0.05,
    lfc_threshold: float = 1.0,
) -> dict[str, frozenset]:
    """Cluster -> set of genes passing filter_results."""
    out: dict[str, frozenset] = {}
    for cl, res in results.items():
        table = res.table if isinstance(res, ClusterDEResult) else res
        hits = filter_results(table, alpha=alpha, lfc_threshold=lfc_threshold)
        out[str(cl)] = frozenset(hits["gene"].astype(str))
    return out
