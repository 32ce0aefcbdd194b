# src/scpbde/pseudobulk.py
from __future__ import annotations

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Literal, Optional, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import EmptyBucketWarning
from .grouping import GroupIndex

LOGGER = logging.getLogger(__name__)

AggFun = Literal["sum", "mean"]
CountsLike = Union[ad.AnnData, pd.DataFrame]


# -----------------------------------------------------------------------------
# Counts access helpers
# -----------------------------------------------------------------------------
def get_counts_matrix(
    counts: CountsLike,
    *,
    counts_layer: Optional[str] = None,
) -> Tuple[sp.csr_matrix, pd.Index, pd.Index]:
    """
    Return (X, cell_ids, gene_ids) with X as CSR (cells x genes).

    Accepts an AnnData (cells x genes; `.X` or `counts_layer`) or a
    genes x cells DataFrame. Never densifies.
    """
    if isinstance(counts, ad.AnnData):
        if counts_layer:
            if counts_layer not in counts.layers:
                raise KeyError(
                    f"counts_layer={counts_layer!r} not found in adata.layers. "
                    f"Available: {list(counts.layers.keys())}"
                )
            X = counts.layers[counts_layer]
        else:
            X = counts.X
        if X is None:
            raise RuntimeError("Counts matrix is None (no .X and no counts layer).")
        cell_ids = pd.Index(counts.obs_names.astype(str), name="cell")
        gene_ids = pd.Index(counts.var_names.astype(str), name="gene")
    elif isinstance(counts, pd.DataFrame):
        if counts_layer:
            raise ValueError("counts_layer only applies to AnnData input")
        X = counts.to_numpy().T
        cell_ids = pd.Index(counts.columns.astype(str), name="cell")
        gene_ids = pd.Index(counts.index.astype(str), name="gene")
    else:
        raise TypeError(f"Unsupported counts container: {type(counts).__name__}")

    if not gene_ids.is_unique:
        raise ValueError("Gene identifiers must be unique")

    if sp.issparse(X):
        return sp.csr_matrix(X), cell_ids, gene_ids
    # Dense counts are converted once (may be memory heavy)
    LOGGER.warning("Counts matrix is dense; converting to CSR (may use a lot of RAM).")
    return sp.csr_matrix(np.asarray(X)), cell_ids, gene_ids


def _check_alignment(cell_ids: pd.Index, index: GroupIndex) -> None:
    if len(cell_ids) != len(index.cell_ids) or not cell_ids.equals(index.cell_ids):
        raise ValueError(
            "Count matrix cells are not aligned with the GroupIndex "
            f"(matrix: {len(cell_ids)} cells, index: {len(index.cell_ids)} cells)."
        )


# -----------------------------------------------------------------------------
# Per-cluster reduction
# -----------------------------------------------------------------------------
def _aggregate_one_cluster(
    X: sp.csr_matrix,
    index: GroupIndex,
    cluster: str,
    *,
    fun: AggFun,
) -> np.ndarray:
    """
    Reduce one cluster's cells into a genes x samples array.

    Only the cluster's rows are sliced; the sample indicator G (cells x S)
    turns the reduction into a single sparse product PB = G.T @ X.
    """
    S = index.order.n_samples
    pos = index.cluster_positions(cluster)
    n_genes = X.shape[1]
    if pos.size == 0:
        pb = np.zeros((S, n_genes), dtype=np.float64 if fun == "mean" else np.int64)
    else:
        Xc = X[pos, :]
        cols = index.sample_codes[pos]
        G = sp.csr_matrix(
            (np.ones(pos.size, dtype=np.int64), (np.arange(pos.size), cols)),
            shape=(pos.size, S),
        )
        pb = (G.T @ Xc).toarray()

    n_cells = np.bincount(index.sample_codes[pos], minlength=S) if pos.size else np.zeros(S, dtype=int)

    if fun == "sum":
        if np.issubdtype(pb.dtype, np.floating):
            rounded = np.rint(pb)
            if not np.allclose(pb, rounded):
                LOGGER.warning("Cluster %s: non-integer counts summed; values kept as float.", cluster)
                return pb.T
            pb = rounded
        return pb.astype(np.int64, copy=False).T

    with np.errstate(invalid="ignore", divide="ignore"):
        mean = pb.astype(np.float64) / n_cells[:, None]
    mean[n_cells == 0, :] = np.nan
    return mean.T


def aggregate_pseudobulk(
    counts: CountsLike,
    index: GroupIndex,
    *,
    fun: AggFun = "sum",
    counts_layer: Optional[str] = None,
    n_jobs: int = 1,
) -> Dict[str, pd.DataFrame]:
    """
    Aggregate cell-level counts into one genes x samples matrix per cluster.

    Returns:
      dict cluster -> DataFrame (genes x samples). Columns are always
      `index.order.samples`, so matrices are column-comparable across
      clusters. Empty buckets give an all-zero column (sum) or an all-NaN
      column (mean), and are reported with an EmptyBucketWarning.

    Buckets read disjoint slices of the (read-only) count matrix, so clusters
    can be reduced concurrently with `n_jobs > 1`.
    """
    if fun not in ("sum", "mean"):
        raise ValueError(f"fun must be 'sum' or 'mean', got {fun!r}")

    X, cell_ids, gene_ids = get_counts_matrix(counts, counts_layer=counts_layer)
    _check_alignment(cell_ids, index)

    clusters = list(index.order.clusters)
    samples = pd.Index(index.order.samples, name="sample")

    empty = index.empty_buckets()
    if empty:
        warnings.warn(
            f"{len(empty)} empty (cluster, sample) bucket(s): "
            + ", ".join(f"{c}/{s}" for c, s in empty),
            EmptyBucketWarning,
            stacklevel=2,
        )

    def _run(cl: str) -> pd.DataFrame:
        arr = _aggregate_one_cluster(X, index, cl, fun=fun)
        return pd.DataFrame(arr, index=gene_ids, columns=samples)

    if int(n_jobs) > 1 and len(clusters) > 1:
        with ThreadPoolExecutor(max_workers=int(n_jobs)) as ex:
            mats = list(ex.map(_run, clusters))
    else:
        mats = [_run(cl) for cl in clusters]

    LOGGER.info(
        "Pseudobulk (%s): %d clusters x %d samples x %d genes.",
        fun, len(clusters), len(samples), len(gene_ids),
    )
    return dict(zip(clusters, mats))


def cell_count_table(index: GroupIndex) -> pd.DataFrame:
    """Cluster x sample number of cells (input to differential abundance)."""
    return index.n_cells()
