import pytest
from pathlib import Path

from scpbde.config import ClusterDEConfig


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def make_cfg(tmp_path, **kw):
    base = dict(
        input_path=tmp_path / "in.h5ad",
        output_dir=tmp_path / "out",
        treatment="stim",
        reference="ctrl",
    )
    base.update(kw)
    return ClusterDEConfig(**base)


# -------------------------------------------------------------------------
# Contrast resolution
# -------------------------------------------------------------------------
def test_treatment_reference_required(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, treatment=None)
    with pytest.raises(ValueError):
        make_cfg(tmp_path, reference=None)


def test_contrast_string_parsed(tmp_path):
    cfg = make_cfg(tmp_path, treatment=None, reference=None, contrast="stim-ctrl")
    assert (cfg.treatment, cfg.reference) == ("stim", "ctrl")
    assert cfg.contrast_name == "stim_vs_ctrl"

    cfg2 = make_cfg(tmp_path, treatment=None, reference=None, contrast="IFN_vs_mock")
    assert (cfg2.treatment, cfg2.reference) == ("IFN", "mock")


def test_contrast_and_levels_are_exclusive(tmp_path):
    with pytest.raises(ValueError, match="either contrast"):
        make_cfg(tmp_path, contrast="stim-ctrl")


def test_identical_levels_rejected(tmp_path):
    with pytest.raises(ValueError, match="must differ"):
        make_cfg(tmp_path, treatment="ctrl", reference="ctrl")


def test_unparseable_contrast_rejected(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, treatment=None, reference=None, contrast="stim")


# -------------------------------------------------------------------------
# Thresholds / compute
# -------------------------------------------------------------------------
@pytest.mark.parametrize("alpha", [0.0, -0.1, 1.5])
def test_alpha_bounds(tmp_path, alpha):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, alpha=alpha)


def test_alpha_one_allowed(tmp_path):
    assert make_cfg(tmp_path, alpha=1.0).alpha == 1.0


def test_lfc_threshold_non_negative(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, lfc_threshold=-1.0)
    assert make_cfg(tmp_path, lfc_threshold=0.0).lfc_threshold == 0.0


def test_n_jobs_at_least_one(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, n_jobs=0)


def test_literal_choices(tmp_path):
    with pytest.raises(ValueError):
        make_cfg(tmp_path, norm_method="RLE")
    with pytest.raises(ValueError):
        make_cfg(tmp_path, dispersion="gene")


# -------------------------------------------------------------------------
# Defaults
# -------------------------------------------------------------------------
def test_defaults(tmp_path):
    cfg = make_cfg(tmp_path)
    assert cfg.cluster_key == "cluster_id"
    assert cfg.sample_key == "sample_id"
    assert cfg.group_key == "group_id"
    assert cfg.norm_method == "TMM"
    assert cfg.dispersion == "tagwise"
    assert cfg.alpha == 0.05
    assert cfg.lfc_threshold == 1.0
    assert cfg.prior_count == 0.125
    assert cfg.run_abundance is True


def test_default_logfile_in_output_dir(tmp_path):
    cfg = make_cfg(tmp_path)
    assert cfg.logfile == tmp_path / "out" / "cluster-de.log"

    cfg2 = make_cfg(tmp_path, logfile="custom.log")
    assert cfg2.logfile == Path("custom.log")
