# src/scpbde/concordance.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConcordanceEntry:
    """Share of `cluster_a`'s hits that are also hits in `cluster_b`."""
    cluster_a: str
    cluster_b: str
    n_a: int
    n_shared: int

    @property
    def fraction(self) -> float:
        if self.n_a == 0:
            return float("nan")
        return self.n_shared / self.n_a


def _normalize_hits(
    hits: Mapping[str, Iterable[str]],
    clusters: Optional[Sequence[str]],
) -> tuple[list[str], dict[str, frozenset]]:
    sets = {str(k): frozenset(str(g) for g in v) for k, v in hits.items()}
    if clusters is None:
        order = list(sets.keys())
    else:
        order = [str(c) for c in clusters]
        if len(set(order)) != len(order):
            raise ValueError("clusters must be unique")
    # Clusters without results (failed / not tested) have no hits
    for c in order:
        sets.setdefault(c, frozenset())
    return order, sets


def concordance_entries(
    hits: Mapping[str, Iterable[str]],
    clusters: Optional[Sequence[str]] = None,
) -> list[ConcordanceEntry]:
    """All ordered (cluster_a, cluster_b) pairs, row-major in cluster order."""
    order, sets = _normalize_hits(hits, clusters)
    out: list[ConcordanceEntry] = []
    for a in order:
        sa = sets[a]
        for b in order:
            out.append(ConcordanceEntry(cluster_a=a, cluster_b=b, n_a=len(sa), n_shared=len(sa & sets[b])))
    return out


def concordance_matrix(
    hits: Mapping[str, Iterable[str]],
    clusters: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    K x K asymmetric overlap: entry (a, b) = |A & B| / |A|.

    Rows of clusters without hits are NaN; otherwise the diagonal is 1.
    """
    order, sets = _normalize_hits(hits, clusters)
    k = len(order)
    mat = np.full((k, k), np.nan, dtype=np.float64)
    for i, a in enumerate(order):
        sa = sets[a]
        if not sa:
            continue
        for j, b in enumerate(order):
            mat[i, j] = len(sa & sets[b]) / len(sa)

    empty = [a for a in order if not sets[a]]
    if empty:
        LOGGER.info("Concordance: %d cluster(s) without hits (NaN rows): %s", len(empty), empty)

    return pd.DataFrame(
        mat,
        index=pd.Index(order, name="cluster"),
        columns=pd.Index(order, name="other_cluster"),
    )


def concordance_long(
    hits: Mapping[str, Iterable[str]],
    clusters: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Tidy table of concordance_entries (one row per ordered pair)."""
    entries = concordance_entries(hits, clusters)
    return pd.DataFrame(
        {
            "cluster": [e.cluster_a for e in entries],
            "other_cluster": [e.cluster_b for e in entries],
            "n_hits": [e.n_a for e in entries],
            "n_shared": [e.n_shared for e in entries],
            "fraction": [e.fraction for e in entries],
        },
        columns=["cluster", "other_cluster", "n_hits", "n_shared", "fraction"],
    )
