# src/scpbde/grouping.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import MissingMetadataError

LOGGER = logging.getLogger(__name__)

BucketKey = Tuple[str, str]


# -----------------------------------------------------------------------------
# Fixed label orders
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class LabelOrder:
    """
    Globally agreed cluster and sample orderings.

    Every matrix built downstream is assembled positionally against these,
    so they are passed explicitly instead of being recomputed per step.
    """
    clusters: Tuple[str, ...]
    samples: Tuple[str, ...]

    def __post_init__(self):
        for name, labels in (("clusters", self.clusters), ("samples", self.samples)):
            if len(set(labels)) != len(labels):
                raise ValueError(f"LabelOrder.{name} contains duplicates: {list(labels)}")

    @classmethod
    def from_labels(cls, clusters: Iterable, samples: Iterable) -> "LabelOrder":
        """Lexical order over the non-missing labels."""
        return cls(
            clusters=tuple(sorted({str(c) for c in clusters if not _is_missing(c)})),
            samples=tuple(sorted({str(s) for s in samples if not _is_missing(s)})),
        )

    @property
    def n_clusters(self) -> int:
        return len(self.clusters)

    @property
    def n_samples(self) -> int:
        return len(self.samples)


def _is_missing(x) -> bool:
    if x is None:
        return True
    try:
        return bool(pd.isna(x))
    except (TypeError, ValueError):
        return False


def _labels_as_str(values: pd.Series) -> Tuple[np.ndarray, np.ndarray]:
    """Return (labels as object array of str, missing mask)."""
    missing = values.isna().to_numpy()
    raw = values.to_numpy(dtype=object)
    out = np.array([None if m else str(v) for v, m in zip(raw, missing)], dtype=object)
    return out, missing


# -----------------------------------------------------------------------------
# GroupIndex
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class GroupIndex:
    """
    Partition of cells by (cluster, sample).

    `buckets` holds every cluster x sample key of `order`, including
    unobserved combinations (empty index). `cluster_codes` / `sample_codes`
    give, per input cell, the position in `order` (-1 for dropped cells).
    """
    order: LabelOrder
    cell_ids: pd.Index
    cluster_codes: np.ndarray
    sample_codes: np.ndarray
    buckets: Mapping[BucketKey, pd.Index]
    n_dropped: int = 0

    def cells(self, cluster: str, sample: str) -> pd.Index:
        return self.buckets[(str(cluster), str(sample))]

    def cluster_positions(self, cluster: str) -> np.ndarray:
        """Integer positions (into the input cell order) of a cluster's cells."""
        k = self.order.clusters.index(str(cluster))
        return np.flatnonzero(self.cluster_codes == k)

    def n_cells(self) -> pd.DataFrame:
        """Cluster x sample cell counts, in the fixed orders."""
        K, S = self.order.n_clusters, self.order.n_samples
        keep = (self.cluster_codes >= 0) & (self.sample_codes >= 0)
        flat = self.cluster_codes[keep].astype(np.int64) * S + self.sample_codes[keep]
        counts = np.bincount(flat, minlength=K * S).reshape(K, S)
        return pd.DataFrame(
            counts,
            index=pd.Index(self.order.clusters, name="cluster"),
            columns=pd.Index(self.order.samples, name="sample"),
        )

    def empty_buckets(self) -> list[BucketKey]:
        return [key for key, cells in self.buckets.items() if len(cells) == 0]


def build_group_index(
    obs: pd.DataFrame,
    *,
    cluster_key: str,
    sample_key: str,
    group_key: Optional[str] = None,
    order: Optional[LabelOrder] = None,
) -> GroupIndex:
    """
    Build the (cluster, sample) -> cells partition from per-cell metadata.

    Cells with a missing cluster, sample or (when `group_key` is given) group
    label, or a label absent from a caller-supplied `order`, are excluded and
    counted; this is reported as a MissingMetadataError in the log, never
    raised.
    """
    keys = [cluster_key, sample_key] + ([group_key] if group_key is not None else [])
    for key in keys:
        if key not in obs:
            raise KeyError(f"{key!r} not in obs columns: {list(obs.columns)}")

    cl, cl_missing = _labels_as_str(obs[cluster_key])
    sm, sm_missing = _labels_as_str(obs[sample_key])
    if group_key is not None:
        gr_missing = obs[group_key].isna().to_numpy()
    else:
        gr_missing = np.zeros(obs.shape[0], dtype=bool)

    if order is None:
        order = LabelOrder.from_labels(cl[~cl_missing], sm[~sm_missing])

    cl_pos = {c: i for i, c in enumerate(order.clusters)}
    sm_pos = {s: i for i, s in enumerate(order.samples)}

    cluster_codes = np.array([cl_pos.get(c, -1) for c in cl], dtype=np.int64)
    sample_codes = np.array([sm_pos.get(s, -1) for s in sm], dtype=np.int64)

    dropped = (cluster_codes < 0) | (sample_codes < 0) | gr_missing
    cluster_codes[dropped] = -1
    sample_codes[dropped] = -1
    n_dropped = int(dropped.sum())

    if n_dropped:
        missing_cols = [
            k for k, m in ((cluster_key, cl_missing), (sample_key, sm_missing), (group_key, gr_missing))
            if k is not None and m.any()
        ]
        LOGGER.warning("Grouping: %s", MissingMetadataError(n_dropped, missing_cols or [cluster_key, sample_key]))

    cell_ids = pd.Index(obs.index.astype(str), name="cell")

    # Stable sort keeps the input cell order within each bucket
    kept = np.flatnonzero(~dropped)
    flat = cluster_codes[kept] * order.n_samples + sample_codes[kept]
    sort_idx = np.argsort(flat, kind="stable")
    flat_sorted = flat[sort_idx]
    kept_sorted = kept[sort_idx]
    bounds = np.searchsorted(flat_sorted, np.arange(order.n_clusters * order.n_samples + 1))

    buckets: dict[BucketKey, pd.Index] = {}
    for k, c in enumerate(order.clusters):
        for s_i, s in enumerate(order.samples):
            f = k * order.n_samples + s_i
            buckets[(c, s)] = cell_ids[kept_sorted[bounds[f]:bounds[f + 1]]]

    index = GroupIndex(
        order=order,
        cell_ids=cell_ids,
        cluster_codes=cluster_codes,
        sample_codes=sample_codes,
        buckets=buckets,
        n_dropped=n_dropped,
    )

    LOGGER.info(
        "Grouping: %d cells into %d clusters x %d samples (%d empty buckets, %d cells dropped).",
        int(kept.size), order.n_clusters, order.n_samples, len(index.empty_buckets()), n_dropped,
    )
    return index


def sample_groups(
    obs: pd.DataFrame,
    *,
    sample_key: str,
    group_key: str,
    samples: Sequence[str],
) -> pd.Series:
    """
    Per-sample group label in the fixed sample order.

    Takes the first non-missing group label seen for each sample. Samples
    with no group label are absent from the returned Series (and logged).
    """
    for key in (sample_key, group_key):
        if key not in obs:
            raise KeyError(f"{key!r} not in obs columns: {list(obs.columns)}")

    df = obs[[sample_key, group_key]].dropna()
    first = (
        df.assign(**{sample_key: df[sample_key].astype(str), group_key: df[group_key].astype(str)})
        .drop_duplicates(subset=[sample_key])
        .set_index(sample_key)[group_key]
    )

    conflicting = df.groupby(df[sample_key].astype(str), observed=True)[group_key].nunique()
    conflicting = conflicting[conflicting > 1]
    if not conflicting.empty:
        LOGGER.warning(
            "Samples with more than one %r label (first seen is used): %s",
            group_key, conflicting.index.tolist(),
        )

    out = pd.Series(
        [first.get(str(s), None) for s in samples],
        index=pd.Index([str(s) for s in samples], name="sample"),
        name=group_key,
        dtype=object,
    )
    missing = out.index[out.isna()].tolist()
    if missing:
        LOGGER.warning("Grouping: %d sample(s) without a %r label dropped: %s", len(missing), group_key, missing)
    return out.dropna()
