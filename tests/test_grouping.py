# tests/test_grouping.py

import logging

import numpy as np
import pandas as pd
import pytest

from scpbde.grouping import LabelOrder, build_group_index, sample_groups


def _obs():
    return pd.DataFrame(
        {
            "cluster_id": ["B", "A", "A", "B", "A", None, "A"],
            "sample_id": ["s1", "s1", "c1", "c1", "s1", "c1", np.nan],
            "group_id": ["stim", "stim", "ctrl", "ctrl", "stim", "ctrl", "ctrl"],
        },
        index=[f"cell{i}" for i in range(7)],
    )


# -------------------------------------------------------------------------
# LabelOrder
# -------------------------------------------------------------------------
def test_label_order_lexical_and_skips_missing():
    order = LabelOrder.from_labels(["b", "a", None, "b"], ["s2", np.nan, "s1"])
    assert order.clusters == ("a", "b")
    assert order.samples == ("s1", "s2")
    assert order.n_clusters == 2
    assert order.n_samples == 2


def test_label_order_rejects_duplicates():
    with pytest.raises(ValueError, match="duplicates"):
        LabelOrder(clusters=("A", "A"), samples=("s1",))


# -------------------------------------------------------------------------
# GroupIndex
# -------------------------------------------------------------------------
def test_partition_covers_every_kept_cell_once():
    idx = build_group_index(_obs(), cluster_key="cluster_id", sample_key="sample_id")

    assert idx.order.clusters == ("A", "B")
    assert idx.order.samples == ("c1", "s1")
    assert idx.n_dropped == 2

    all_cells = [c for cells in idx.buckets.values() for c in cells]
    assert len(all_cells) == len(set(all_cells)) == 5
    assert "cell5" not in all_cells and "cell6" not in all_cells


def test_buckets_keep_input_order_and_include_empty():
    order = LabelOrder(clusters=("A", "B"), samples=("c1", "s1", "s2"))
    idx = build_group_index(_obs(), cluster_key="cluster_id", sample_key="sample_id", order=order)

    assert list(idx.cells("A", "s1")) == ["cell1", "cell4"]
    assert list(idx.cells("B", "c1")) == ["cell3"]
    assert len(idx.cells("A", "s2")) == 0
    assert set(idx.empty_buckets()) == {("A", "s2"), ("B", "s2")}
    # Every cluster x sample key exists
    assert len(idx.buckets) == 6


def test_n_cells_table_in_fixed_order():
    order = LabelOrder(clusters=("B", "A"), samples=("s1", "c1"))
    idx = build_group_index(_obs(), cluster_key="cluster_id", sample_key="sample_id", order=order)
    tab = idx.n_cells()

    assert list(tab.index) == ["B", "A"]
    assert list(tab.columns) == ["s1", "c1"]
    assert tab.loc["A", "s1"] == 2
    assert tab.loc["A", "c1"] == 1
    assert tab.loc["B", "s1"] == 1
    assert int(tab.to_numpy().sum()) == 5


def test_labels_outside_order_are_dropped():
    order = LabelOrder(clusters=("A",), samples=("c1", "s1"))
    idx = build_group_index(_obs(), cluster_key="cluster_id", sample_key="sample_id", order=order)
    assert idx.n_dropped == 4
    assert int(idx.n_cells().to_numpy().sum()) == 3


def test_missing_metadata_is_logged_not_raised(caplog):
    with caplog.at_level(logging.WARNING, logger="scpbde.grouping"):
        idx = build_group_index(_obs(), cluster_key="cluster_id", sample_key="sample_id")
    assert idx.n_dropped == 2
    assert "2 cell(s) dropped" in caplog.text


def test_unknown_key_raises():
    with pytest.raises(KeyError):
        build_group_index(_obs(), cluster_key="leiden", sample_key="sample_id")


def test_missing_group_label_drops_cell(caplog):
    obs = _obs()
    obs.loc["cell4", "group_id"] = np.nan
    with caplog.at_level(logging.WARNING, logger="scpbde.grouping"):
        idx = build_group_index(obs, cluster_key="cluster_id", sample_key="sample_id", group_key="group_id")

    assert idx.n_dropped == 3
    assert list(idx.cells("A", "s1")) == ["cell1"]
    assert idx.n_cells().loc["A", "s1"] == 1
    assert "group_id" in caplog.text

    # Without a group key the cell is kept
    idx = build_group_index(obs, cluster_key="cluster_id", sample_key="sample_id")
    assert idx.n_dropped == 2
    assert list(idx.cells("A", "s1")) == ["cell1", "cell4"]


def test_unknown_group_key_raises():
    with pytest.raises(KeyError):
        build_group_index(_obs(), cluster_key="cluster_id", sample_key="sample_id", group_key="condition")


def test_categorical_labels():
    obs = _obs()
    obs["cluster_id"] = obs["cluster_id"].astype("category")
    idx = build_group_index(obs, cluster_key="cluster_id", sample_key="sample_id")
    assert idx.order.clusters == ("A", "B")
    assert list(idx.cells("A", "s1")) == ["cell1", "cell4"]


# -------------------------------------------------------------------------
# sample_groups
# -------------------------------------------------------------------------
def test_sample_groups_in_given_order():
    sg = sample_groups(_obs(), sample_key="sample_id", group_key="group_id", samples=["s1", "c1"])
    assert list(sg.index) == ["s1", "c1"]
    assert list(sg) == ["stim", "ctrl"]


def test_sample_groups_drops_unlabelled_samples(caplog):
    with caplog.at_level(logging.WARNING, logger="scpbde.grouping"):
        sg = sample_groups(_obs(), sample_key="sample_id", group_key="group_id", samples=["c1", "s1", "x9"])
    assert list(sg.index) == ["c1", "s1"]
    assert "x9" in caplog.text


def test_sample_groups_conflict_first_seen_wins(caplog):
    obs = _obs()
    obs.loc["cell4", "group_id"] = "ctrl"
    with caplog.at_level(logging.WARNING, logger="scpbde.grouping"):
        sg = sample_groups(obs, sample_key="sample_id", group_key="group_id", samples=["c1", "s1"])
    assert sg["s1"] == "stim"
    assert "more than one" in caplog.text
