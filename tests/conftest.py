# tests/conftest.py

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
import anndata as ad


N_GENES = 30
CTRL = ["c1", "c2", "c3"]
STIM = ["s1", "s2", "s3"]


def _build(
    *,
    seed: int = 0,
    de_clusters=("A",),
    clusters=("A", "B"),
    ctrl_only_clusters=(),
    skip_buckets=(),
    cells_per_bucket: int = 25,
    fold: float = 4.0,
) -> ad.AnnData:
    """
    Synthetic multi-sample dataset.

    Each stim sample s_i is a copy of the cells of ctrl sample c_i, except in
    `de_clusters` where gene g0 is multiplied by `fold`. Clusters listed in
    `ctrl_only_clusters` have no stim cells; `skip_buckets` lists
    (cluster, sample) pairs without cells.
    """
    rng = np.random.default_rng(seed)
    genes = [f"g{i}" for i in range(N_GENES)]
    lam = np.full(N_GENES, 100.0)
    lam[0] = 20.0

    blocks = []
    obs_rows = []
    for cl in list(clusters) + list(ctrl_only_clusters):
        for i, (c, s) in enumerate(zip(CTRL, STIM)):
            n = cells_per_bucket + 3 * i
            base = rng.poisson(lam, size=(n, N_GENES))
            for sample, group in ((c, "ctrl"), (s, "stim")):
                if group == "stim" and cl in ctrl_only_clusters:
                    continue
                if (cl, sample) in skip_buckets:
                    continue
                x = base.copy()
                if group == "stim" and cl in de_clusters:
                    x[:, 0] = np.rint(x[:, 0] * fold).astype(x.dtype)
                blocks.append(x)
                obs_rows.extend(
                    {"cluster_id": cl, "sample_id": sample, "group_id": group} for _ in range(n)
                )

    X = np.vstack(blocks)
    obs = pd.DataFrame(obs_rows)
    obs.index = [f"cell{i}" for i in range(obs.shape[0])]
    adata = ad.AnnData(
        X=sp.csr_matrix(X.astype(np.float32)),
        obs=obs,
        var=pd.DataFrame(index=genes),
    )
    adata.layers["counts"] = adata.X.copy()
    return adata


@pytest.fixture
def make_dataset():
    """Factory for synthetic AnnData objects (see _build)."""
    return _build


@pytest.fixture
def dataset():
    return _build()
