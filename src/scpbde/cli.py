from __future__ import annotations
from typing import Optional
import typer
from pathlib import Path
import warnings

from pydantic import ValidationError

from .cluster_de import run_cluster_de
from .config import ClusterDEConfig


app = typer.Typer(help="scPBDE CLI — cluster-wise pseudobulk differential expression for multi-sample scRNA-seq.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")


@app.callback()
def main():
    """
    Cluster-wise pseudobulk DE (NB GLM + quasi-likelihood F-test).
    """


# ======================================================================
#  cluster-de
# ======================================================================
@app.command(
    "cluster-de",
    help="Pseudobulk DE of treatment vs reference within every cluster, plus concordance and abundance.",
)
def cluster_de(
    # --- I/O ---
    input_path: Path = typer.Option(
        ...,
        "--input",
        "-i",
        help="AnnData (.h5ad) with raw counts and cluster/sample/group columns in .obs.",
    ),
    output_dir: Path = typer.Option(
        ...,
        "--out",
        "-o",
        help="Output directory for tables, settings and log.",
    ),
    counts_layer: Optional[str] = typer.Option(
        None,
        "--counts-layer",
        help="Layer with raw counts (default: .X).",
    ),
    write_pseudobulk: bool = typer.Option(True, help="Also write per-cluster pseudobulk matrices."),

    # --- Metadata keys ---
    cluster_key: str = typer.Option("cluster_id", "--cluster-key", "-c"),
    sample_key: str = typer.Option("sample_id", "--sample-key", "-s"),
    group_key: str = typer.Option("group_id", "--group-key", "-g"),

    # --- Contrast ---
    treatment: Optional[str] = typer.Option(None, "--treatment", "-t", help="Treatment group level."),
    reference: Optional[str] = typer.Option(None, "--reference", "-r", help="Reference group level."),
    contrast: Optional[str] = typer.Option(
        None,
        "--contrast",
        help="Contrast as 'stim-ctrl' or 'stim_vs_ctrl' (instead of --treatment/--reference).",
    ),

    # --- Model ---
    norm_method: str = typer.Option("TMM", "--norm-method", help="TMM or none."),
    dispersion: str = typer.Option("tagwise", "--dispersion", help="tagwise, trended or common."),
    prior_df: float = typer.Option(10.0, "--prior-df"),
    prior_count: float = typer.Option(0.125, "--prior-count"),

    # --- Filtering ---
    alpha: float = typer.Option(0.05, "--alpha", help="FDR threshold (padj < alpha)."),
    lfc_threshold: float = typer.Option(1.0, "--lfc-threshold", help="|log2FC| threshold (> lfc)."),

    # --- Differential abundance ---
    run_abundance: bool = typer.Option(True, help="Also test cluster abundance between groups."),

    # --- Compute ---
    n_jobs: int = typer.Option(1, "--n-jobs", "-j", help="Clusters tested in parallel (processes)."),
    logfile: Optional[Path] = typer.Option(None, "--logfile", help="Default: <out>/cluster-de.log"),
):
    """
    Run cluster-wise pseudobulk DE.
    """
    try:
        cfg = ClusterDEConfig(
            input_path=input_path,
            output_dir=output_dir,
            counts_layer=counts_layer,
            write_pseudobulk=write_pseudobulk,
            cluster_key=cluster_key,
            sample_key=sample_key,
            group_key=group_key,
            treatment=treatment,
            reference=reference,
            contrast=contrast,
            norm_method=norm_method,
            dispersion=dispersion,
            prior_df=prior_df,
            prior_count=prior_count,
            alpha=alpha,
            lfc_threshold=lfc_threshold,
            run_abundance=run_abundance,
            n_jobs=n_jobs,
            logfile=logfile,
        )
    except ValidationError as e:
        raise typer.BadParameter(str(e))

    run_cluster_de(cfg)


if __name__ == "__main__":
    app()
