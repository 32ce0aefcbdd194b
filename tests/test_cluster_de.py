# tests/test_cluster_de.py

import logging

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp
import anndata as ad

from scpbde.cluster_de import cluster_de_pseudobulk, run_cluster_de
from scpbde.config import ClusterDEConfig
from scpbde.de_utils import RESULT_COLUMNS, PseudobulkDEOptions, PseudobulkSpec
from scpbde.errors import DesignDegenerateError
from scpbde.grouping import LabelOrder
from scpbde import io_utils


def _run(adata, **kw):
    kw.setdefault("treatment", "stim")
    kw.setdefault("reference", "ctrl")
    return cluster_de_pseudobulk(adata, **kw)


# ---------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------
def test_shifted_gene_detected_only_in_its_cluster(dataset):
    res = _run(dataset)

    assert list(res.results) == ["A", "B"]
    assert res.failures == []

    a = res.results["A"].table.set_index("gene")
    b = res.results["B"].table.set_index("gene")

    assert a.loc["g0", "padj"] < 0.05
    assert abs(a.loc["g0", "log2FoldChange"] - 2.0) < 0.3
    assert not (b.loc["g0", "padj"] < 0.05)

    assert "g0" in set(res.filtered["A"]["gene"])
    assert res.filtered["B"].empty

    # A has hits, B has none
    assert res.concordance.loc["A", "A"] == 1.0
    assert res.concordance.loc["A", "B"] == 0.0
    assert np.isnan(res.concordance.loc["B"]).all()


def test_pipeline_outputs_shapes(dataset):
    res = _run(dataset, opts=PseudobulkDEOptions(run_abundance=False))

    samples = ["c1", "c2", "c3", "s1", "s2", "s3"]
    assert list(res.order.samples) == samples
    for cl in ("A", "B"):
        assert list(res.pseudobulk_sum[cl].columns) == samples
        assert list(res.pseudobulk_mean[cl].columns) == samples
        assert res.pseudobulk_sum[cl].shape == (30, 6)
        assert list(res.results[cl].table.columns) == RESULT_COLUMNS

    # Cell counts: 25, 28, 31 cells per ctrl/stim pair
    assert res.cell_counts.loc["A"].tolist() == [25, 28, 31, 25, 28, 31]
    assert res.abundance is None

    # Sum and mean agree
    pd.testing.assert_series_equal(
        res.pseudobulk_sum["A"]["c1"] / 25.0,
        res.pseudobulk_mean["A"]["c1"],
        check_names=False,
    )


def test_summary_one_row_per_cluster(make_dataset):
    adata = make_dataset(ctrl_only_clusters=("C",))
    with pytest.warns(Warning):
        res = _run(adata)

    s = res.summary().set_index("cluster")
    assert list(s.index) == ["A", "B", "C"]
    assert s.loc["A", "status"] == "ok"
    assert s.loc["A", "n_sig"] >= 1
    assert s.loc["C", "status"] == "failed"
    assert "DesignDegenerateError" in s.loc["C", "reason"]


# ---------------------------------------------------------
# Failure isolation / empty samples
# ---------------------------------------------------------
def test_cluster_missing_a_group_is_isolated(make_dataset):
    adata = make_dataset(ctrl_only_clusters=("C",))
    with pytest.warns(Warning):
        res = _run(adata, opts=PseudobulkDEOptions(run_abundance=False))

    assert set(res.results) == {"A", "B"}
    assert [f.cluster for f in res.failures] == ["C"]
    assert res.failures[0].error == DesignDegenerateError.__name__
    # Every attempted cluster ends up exactly once
    assert set(res.results).isdisjoint(f.cluster for f in res.failures)
    assert len(res.results) + len(res.failures) == res.order.n_clusters
    # Failed cluster is a NaN row and column-wise zero in the concordance
    assert np.isnan(res.concordance.loc["C"]).all()
    assert res.concordance.loc["A", "C"] == 0.0


def test_empty_sample_in_one_cluster_keeps_alignment(make_dataset):
    adata = make_dataset(skip_buckets=(("A", "c3"),))
    with pytest.warns(Warning):
        res = _run(adata, opts=PseudobulkDEOptions(run_abundance=False))

    pb = res.pseudobulk_sum["A"]
    assert list(pb.columns) == list(res.order.samples)
    assert (pb["c3"] == 0).all()
    assert res.pseudobulk_mean["A"]["c3"].isna().all()

    disp = res.results["A"].dispersion
    assert disp.dropped_samples == ("c3",)
    assert "c3" not in list(disp.samples)
    # Still tested on the remaining five samples
    assert res.results["A"].table.set_index("gene").loc["g0", "padj"] < 0.05


def test_explicit_order_with_absent_sample(dataset):
    order = LabelOrder(clusters=("B", "A"), samples=("s1", "s2", "s3", "c1", "c2", "c3", "x9"))
    with pytest.warns(Warning):
        res = _run(dataset, order=order, opts=PseudobulkDEOptions(run_abundance=False))

    assert list(res.results) == ["B", "A"]
    assert list(res.pseudobulk_sum["A"].columns)[-1] == "x9"
    assert "x9" not in list(res.design.samples)
    assert list(res.concordance.index) == ["B", "A"]


def test_missing_reference_group_raises(dataset):
    with pytest.raises(DesignDegenerateError):
        _run(dataset, reference="mock")


def test_custom_keys_and_layer(dataset):
    adata = dataset
    adata.obs = adata.obs.rename(columns={"cluster_id": "leiden", "sample_id": "donor", "group_id": "cond"})
    spec = PseudobulkSpec(cluster_key="leiden", sample_key="donor", group_key="cond", counts_layer="counts")
    res = _run(adata, spec=spec, opts=PseudobulkDEOptions(run_abundance=False))
    assert list(res.results) == ["A", "B"]


# ---------------------------------------------------------
# Differential abundance
# ---------------------------------------------------------
def test_abundance_table_lists_clusters(dataset):
    res = _run(dataset)
    assert res.abundance is not None
    assert res.abundance.table["gene"].tolist() == ["A", "B"]
    assert (res.abundance.table["cluster"] == "abundance").all()


# ---------------------------------------------------------
# Parallel execution
# ---------------------------------------------------------
def test_parallel_matches_serial(dataset):
    opts = PseudobulkDEOptions(run_abundance=False)
    serial = _run(dataset, opts=opts)
    parallel = _run(dataset, opts=opts, n_jobs=2)

    assert list(parallel.results) == list(serial.results)
    for cl in serial.results:
        pd.testing.assert_frame_equal(serial.results[cl].table, parallel.results[cl].table)


# ---------------------------------------------------------
# CLI-level runner + exports
# ---------------------------------------------------------
@pytest.fixture
def reset_logging():
    orig = logging.root.handlers[:]
    yield
    logging.captureWarnings(False)
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    for h in orig:
        logging.root.addHandler(h)


def test_run_cluster_de_writes_outputs(dataset, tmp_path, monkeypatch, reset_logging):
    monkeypatch.setattr(io_utils, "load_dataset", lambda path: dataset)

    out = tmp_path / "out"
    cfg = ClusterDEConfig(
        input_path=tmp_path / "fake.h5ad",
        output_dir=out,
        contrast="stim_vs_ctrl",
    )
    res = run_cluster_de(cfg)

    for name in ("summary.tsv", "concordance.tsv", "cell_counts.tsv", "settings.txt", "failures.tsv"):
        assert (out / name).exists(), name
    for cl in ("A", "B"):
        assert (out / "pseudobulk" / f"{cl}.sum.csv").exists()
        assert (out / "de" / f"{cl}.all.csv").exists()
        assert (out / "de" / f"{cl}.filtered.csv").exists()
    assert (out / "de" / "abundance.csv").exists()
    assert (out / "cluster-de.log").exists()

    all_a = pd.read_csv(out / "de" / "A.all.csv")
    assert list(all_a.columns) == RESULT_COLUMNS
    assert len(all_a) == res.results["A"].n_tested

    summary = pd.read_csv(out / "summary.tsv", sep="\t")
    assert summary["cluster"].tolist() == ["A", "B"]

    settings = (out / "settings.txt").read_text()
    assert "contrast=stim_vs_ctrl" in settings
    assert "n_clusters=2" in settings


def test_load_dataset_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        io_utils.load_dataset(tmp_path / "nope.h5ad")


def test_load_dataset_roundtrip(dataset, tmp_path):
    path = tmp_path / "d.h5ad"
    dataset.write_h5ad(path)
    back = io_utils.load_dataset(path)
    assert back.shape == dataset.shape
    assert "counts" in back.layers


def test_cells_without_group_label_are_not_aggregated(dataset):
    obs = dataset.obs.copy()
    first = obs.index[0]  # cluster A, sample c1
    obs["group_id"] = obs["group_id"].astype(object)
    obs.loc[first, "group_id"] = np.nan
    dataset.obs = obs

    res = _run(dataset, opts=PseudobulkDEOptions(run_abundance=False))
    assert res.cell_counts.loc["A", "c1"] == 24
    assert res.cell_counts.loc["B", "c1"] == 25


# ---------------------------------------------------------
# Minimal two-cluster scenario
# ---------------------------------------------------------
def _two_cluster_three_gene(seed=0, n_cells=50):
    """
    Clusters A and B, samples s1/s2 ctrl and s3/s4 stim, genes g1..g3 at
    Poisson(10) per cell; g1 is doubled in stim cells of cluster A only.
    """
    rng = np.random.default_rng(seed)
    groups = {"s1": "ctrl", "s2": "ctrl", "s3": "stim", "s4": "stim"}
    blocks, rows = [], []
    for cl in ("A", "B"):
        for s, g in groups.items():
            lam = np.array([10.0, 10.0, 10.0])
            if cl == "A" and g == "stim":
                lam[0] *= 2
            blocks.append(rng.poisson(lam, size=(n_cells, 3)))
            rows.extend({"cluster_id": cl, "sample_id": s, "group_id": g} for _ in range(n_cells))
    obs = pd.DataFrame(rows)
    obs.index = [f"cell{i}" for i in range(obs.shape[0])]
    return ad.AnnData(
        X=sp.csr_matrix(np.vstack(blocks).astype(np.float32)),
        obs=obs,
        var=pd.DataFrame(index=["g1", "g2", "g3"]),
    )


def test_doubled_gene_in_one_cluster():
    res = _run(_two_cluster_three_gene(), opts=PseudobulkDEOptions(run_abundance=False))

    assert res.failures == []
    a = res.results["A"].table.set_index("gene")
    b = res.results["B"].table.set_index("gene")

    assert a.loc["g1", "padj"] < 0.05
    assert not (b.loc["g1", "padj"] < 0.05)
    # g1 is a third of each library, so doubling it shifts the normalized
    # ratio to 20/40 vs 10/30: log2(1.5) ~ 0.58
    assert 0.4 < a.loc["g1", "log2FoldChange"] < 0.75
