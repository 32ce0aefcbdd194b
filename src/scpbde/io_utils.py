from __future__ import annotations
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

import anndata as ad
import pandas as pd

if TYPE_CHECKING:
    from .cluster_de import PipelineResult


LOGGER = logging.getLogger(__name__)


def load_dataset(path: Path) -> ad.AnnData:
    """
    Load an AnnData object from .h5ad (or a .zarr store).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input dataset not found: {path}")
    LOGGER.info("Loading dataset → %s", path)
    if path.suffix == ".zarr" or path.is_dir():
        return ad.read_zarr(str(path))
    return ad.read_h5ad(str(path))


def _safe_name(name: str) -> str:
    """Filesystem-safe version of a cluster label."""
    s = re.sub(r"[^\w.\-]+", "_", str(name)).strip("._")
    return s or "cluster"


def _write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


def write_pipeline_outputs(
    result: "PipelineResult",
    out_dir: Path,
    *,
    write_pseudobulk: bool = True,
    settings: Optional[Sequence[str]] = None,
) -> Path:
    """
    Export a PipelineResult as flat tables:

      out_dir/
        pseudobulk/<cluster>.sum.csv, <cluster>.mean.csv   (genes x samples)
        de/<cluster>.all.csv, <cluster>.filtered.csv
        de/not_tested.csv
        de/abundance.csv                                   (if run)
        cell_counts.tsv, concordance.tsv, summary.tsv, failures.tsv
        settings.txt
    """
    out_dir = Path(out_dir)
    de_dir = out_dir / "de"
    de_dir.mkdir(parents=True, exist_ok=True)

    if write_pseudobulk:
        pb_dir = out_dir / "pseudobulk"
        pb_dir.mkdir(parents=True, exist_ok=True)
        for cl, df in result.pseudobulk_sum.items():
            df.to_csv(pb_dir / f"{_safe_name(cl)}.sum.csv", index=True)
        for cl, df in result.pseudobulk_mean.items():
            df.to_csv(pb_dir / f"{_safe_name(cl)}.mean.csv", index=True)

    for cl, res in result.results.items():
        res.table.to_csv(de_dir / f"{_safe_name(cl)}.all.csv", index=False)
        result.filtered[cl].to_csv(de_dir / f"{_safe_name(cl)}.filtered.csv", index=False)

    result.not_tested.to_csv(de_dir / "not_tested.csv", index=False)
    if result.abundance is not None:
        result.abundance.table.to_csv(de_dir / "abundance.csv", index=False)

    result.cell_counts.to_csv(out_dir / "cell_counts.tsv", sep="\t", index=True)
    result.concordance.to_csv(out_dir / "concordance.tsv", sep="\t", index=True, na_rep="NA")
    result.summary().to_csv(out_dir / "summary.tsv", sep="\t", index=False)
    pd.DataFrame(
        [{"cluster": f.cluster, "error": f.error, "reason": f.reason} for f in result.failures],
        columns=["cluster", "error", "reason"],
    ).to_csv(out_dir / "failures.tsv", sep="\t", index=False)

    lines = list(settings or [])
    lines.append(f"n_clusters={result.order.n_clusters}")
    lines.append(f"n_samples={result.order.n_samples}")
    lines.append(f"design_groups={','.join(result.design.groups)}")
    _write_settings(out_dir, "settings.txt", lines)

    LOGGER.info(
        "Exported %d cluster table(s), %d failure(s) → %s",
        len(result.results), len(result.failures), out_dir,
    )
    return out_dir
