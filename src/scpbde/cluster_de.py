# src/scpbde/cluster_de.py
from __future__ import annotations

import logging
import multiprocessing as mp
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import anndata as ad
import pandas as pd

from . import io_utils
from .concordance import concordance_matrix
from .config import ClusterDEConfig
from .de_utils import (
    NOT_TESTED_COLUMNS,
    ClusterDEResult,
    ClusterFailure,
    PseudobulkDEOptions,
    PseudobulkSpec,
    filter_results,
    significant_genes,
    test_cluster,
    test_differential_abundance,
)
from .design import ExperimentDesign, build_design
from .errors import ClusterPipelineError
from .grouping import GroupIndex, LabelOrder, build_group_index, sample_groups
from .logging_utils import init_logging
from .pseudobulk import aggregate_pseudobulk, cell_count_table

LOGGER = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything one cluster-wise DE run produces."""
    order: LabelOrder
    design: ExperimentDesign
    pseudobulk_sum: Dict[str, pd.DataFrame]
    pseudobulk_mean: Dict[str, pd.DataFrame]
    cell_counts: pd.DataFrame
    results: Dict[str, ClusterDEResult]
    filtered: Dict[str, pd.DataFrame]
    failures: List[ClusterFailure]
    concordance: pd.DataFrame
    abundance: Optional[ClusterDEResult] = None
    runtimes: Dict[str, float] = field(default_factory=dict)

    @property
    def not_tested(self) -> pd.DataFrame:
        parts = [r.not_tested for r in self.results.values() if not r.not_tested.empty]
        if not parts:
            return pd.DataFrame(columns=NOT_TESTED_COLUMNS)
        return pd.concat(parts, ignore_index=True)

    def summary(self) -> pd.DataFrame:
        """One row per cluster (in cluster order): status, reason and counts."""
        failed = {f.cluster: f for f in self.failures}
        rows = []
        for cl in self.order.clusters:
            row = {
                "cluster": cl,
                "status": "ok",
                "reason": "",
                "n_cells": int(self.cell_counts.loc[cl].sum()),
                "n_samples": 0,
                "n_tested": 0,
                "n_not_tested": 0,
                "n_sig": 0,
                "df_prior": float("nan"),
                "runtime_s": float(self.runtimes.get(cl, float("nan"))),
            }
            if cl in self.results:
                res = self.results[cl]
                row.update(
                    n_samples=int(len(res.dispersion.samples)),
                    n_tested=res.n_tested,
                    n_not_tested=int(res.not_tested.shape[0]),
                    n_sig=int(self.filtered[cl].shape[0]),
                    df_prior=res.df_prior,
                )
            elif cl in failed:
                row.update(status="failed", reason=f"{failed[cl].error}: {failed[cl].reason}")
            else:
                row.update(status="skipped")
            rows.append(row)
        return pd.DataFrame(rows)


# -----------------------------------------------------------------------------
# Per-cluster worker
# -----------------------------------------------------------------------------
def _cluster_worker(payload: dict) -> tuple[str, Optional[ClusterDEResult], dict]:
    """
    Worker: design subset -> normalization/dispersion -> QL F-test for one cluster.
    Returns (cluster_id, result or None, summary_meta)
    """
    cl = payload["cluster"]
    pb = payload["pb"]              # genes x samples (sum)
    design = payload["design"]      # ExperimentDesign over all labelled samples
    opts = payload["opts"]          # PseudobulkDEOptions

    try:
        res = test_cluster(pb, design, cluster=cl, opts=opts)
    except ClusterPipelineError as e:
        return cl, None, {"status": "failed", "error": type(e).__name__, "reason": str(e)}

    n_sig = res.n_significant(alpha=opts.alpha, lfc_threshold=opts.lfc_threshold)
    return cl, res, {"status": "ok", "n_sig": n_sig, "n_tested": res.n_tested}


def _run_payloads(payloads: list[dict], n_jobs: int) -> tuple[dict, dict, dict]:
    results: dict[str, ClusterDEResult] = {}
    metas: dict[str, dict] = {}
    runtimes: dict[str, float] = {}

    t0 = time.perf_counter()
    total = int(len(payloads))

    def _record(i: int, cl: str, res, meta: dict, dt: float) -> None:
        if res is not None:
            results[cl] = res
        metas[cl] = meta
        runtimes[cl] = float(dt)
        elapsed = time.perf_counter() - t0
        eta_s = (elapsed / max(1, i)) * (total - i)
        LOGGER.info(
            "PB DE [%d/%d] done  cluster=%s status=%s n_sig=%s time=%.1fs elapsed=%.1fs eta=%.1fs",
            i, total, cl, meta.get("status", "unknown"), meta.get("n_sig", "NA"), dt, elapsed, eta_s,
        )
        if meta.get("status") == "failed":
            LOGGER.warning("PB DE cluster=%s failed: %s: %s", cl, meta.get("error"), meta.get("reason"))

    if total == 0:
        LOGGER.info("Pseudobulk DE: no clusters to test.")
    elif int(n_jobs) <= 1 or total <= 1:
        LOGGER.info("Pseudobulk DE: running serially (clusters=%d).", total)
        for i, p in enumerate(payloads, start=1):
            cl = str(p["cluster"])
            LOGGER.info(
                "PB DE [%d/%d] start cluster=%s (samples=%d, genes=%d)",
                i, total, cl, int(p["pb"].shape[1]), int(p["pb"].shape[0]),
            )
            t_cl0 = time.perf_counter()
            cl2, res, meta = _cluster_worker(p)
            _record(i, cl2, res, meta, time.perf_counter() - t_cl0)
    else:
        max_workers = min(int(n_jobs), total)
        LOGGER.info("Pseudobulk DE: running in parallel (clusters=%d, max_workers=%d).", total, max_workers)

        ctx = mp.get_context("spawn")
        submit_ts: dict[str, float] = {}
        with ProcessPoolExecutor(max_workers=max_workers, mp_context=ctx) as ex:
            futs = {}
            for p in payloads:
                cl = str(p["cluster"])
                submit_ts[cl] = time.perf_counter()
                futs[ex.submit(_cluster_worker, p)] = cl

            for i, fut in enumerate(as_completed(futs), start=1):
                cl = futs[fut]
                cl2, res, meta = fut.result()
                _record(i, cl2, res, meta, time.perf_counter() - submit_ts[cl])

    return results, metas, runtimes


# -----------------------------------------------------------------------------
# Public API (notebook-first)
# -----------------------------------------------------------------------------
def cluster_de_pseudobulk(
    adata: ad.AnnData,
    *,
    spec: PseudobulkSpec = PseudobulkSpec(),
    opts: PseudobulkDEOptions = PseudobulkDEOptions(),
    treatment: str,
    reference: str,
    order: Optional[LabelOrder] = None,
    n_jobs: int = 1,
) -> PipelineResult:
    """
    Cluster-wise pseudobulk DE of `treatment` vs `reference`.

      1) (cluster, sample) partition of the cells
      2) sum and mean pseudobulk per cluster, cluster x sample cell counts
      3) one design over all labelled samples; per cluster it is restricted
         to the samples that have cells there
      4) per cluster: TMM + NB dispersions + QL F-test + BH (serial or one
         process per cluster)
      5) filtering, cross-cluster concordance, differential abundance

    Clusters that cannot be tested (too few samples, a group missing, rank
    deficiency) end up in `failures`; all others in `results`.
    """
    obs = adata.obs
    index: GroupIndex = build_group_index(
        obs, cluster_key=spec.cluster_key, sample_key=spec.sample_key, group_key=spec.group_key, order=order,
    )
    order = index.order

    pb_sum = aggregate_pseudobulk(adata, index, fun="sum", counts_layer=spec.counts_layer, n_jobs=n_jobs)
    pb_mean = aggregate_pseudobulk(adata, index, fun="mean", counts_layer=spec.counts_layer, n_jobs=n_jobs)
    counts = cell_count_table(index)

    sg = sample_groups(obs, sample_key=spec.sample_key, group_key=spec.group_key, samples=order.samples)
    design = build_design(sg, treatment=treatment, reference=reference)

    payloads = [
        {"cluster": str(cl), "pb": pb_sum[cl], "design": design, "opts": opts}
        for cl in order.clusters
    ]
    results, metas, runtimes = _run_payloads(payloads, n_jobs=n_jobs)

    # Keep cluster order regardless of completion order
    results = {cl: results[cl] for cl in order.clusters if cl in results}
    failures = [
        ClusterFailure(cluster=cl, error=str(metas[cl]["error"]), reason=str(metas[cl]["reason"]))
        for cl in order.clusters
        if metas.get(cl, {}).get("status") == "failed"
    ]

    filtered = {
        cl: filter_results(r.table, alpha=opts.alpha, lfc_threshold=opts.lfc_threshold)
        for cl, r in results.items()
    }
    hits = significant_genes(filtered, alpha=opts.alpha, lfc_threshold=opts.lfc_threshold)
    conc = concordance_matrix(hits, clusters=list(order.clusters))

    abundance = None
    if opts.run_abundance:
        try:
            abundance = test_differential_abundance(counts, design, opts=opts)
        except ClusterPipelineError as e:
            LOGGER.warning("Differential abundance skipped: %s: %s", type(e).__name__, e)

    LOGGER.info(
        "Pseudobulk DE %s: %d/%d clusters tested, %d failed, %d significant genes in total.",
        design.name, len(results), order.n_clusters, len(failures),
        int(sum(df.shape[0] for df in filtered.values())),
    )

    return PipelineResult(
        order=order,
        design=design,
        pseudobulk_sum=pb_sum,
        pseudobulk_mean=pb_mean,
        cell_counts=counts,
        results=results,
        filtered=filtered,
        failures=failures,
        concordance=conc,
        abundance=abundance,
        runtimes=runtimes,
    )


# -----------------------------------------------------------------------------
# CLI-level runner
# -----------------------------------------------------------------------------
def run_cluster_de(cfg: ClusterDEConfig) -> PipelineResult:
    """
    Cluster-wise DE orchestrator: load dataset, run, write tables.
    """
    init_logging(cfg.logfile)
    LOGGER.info("Starting cluster-de (%s)...", cfg.contrast_name)

    output_dir = cfg.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    adata = io_utils.load_dataset(cfg.input_path)

    spec = PseudobulkSpec(
        cluster_key=cfg.cluster_key,
        sample_key=cfg.sample_key,
        group_key=cfg.group_key,
        counts_layer=cfg.counts_layer,
    )
    opts = PseudobulkDEOptions(
        alpha=cfg.alpha,
        lfc_threshold=cfg.lfc_threshold,
        norm_method=cfg.norm_method,
        dispersion=cfg.dispersion,
        prior_df=cfg.prior_df,
        prior_count=cfg.prior_count,
        run_abundance=cfg.run_abundance,
    )

    result = cluster_de_pseudobulk(
        adata,
        spec=spec,
        opts=opts,
        treatment=str(cfg.treatment),
        reference=str(cfg.reference),
        n_jobs=cfg.n_jobs,
    )

    io_utils.write_pipeline_outputs(
        result,
        output_dir,
        write_pseudobulk=cfg.write_pseudobulk,
        settings=[
            f"input_path={cfg.input_path}",
            f"counts_layer={cfg.counts_layer}",
            f"cluster_key={cfg.cluster_key}",
            f"sample_key={cfg.sample_key}",
            f"group_key={cfg.group_key}",
            f"contrast={cfg.contrast_name}",
            f"norm_method={cfg.norm_method}",
            f"dispersion={cfg.dispersion}",
            f"prior_df={cfg.prior_df}",
            f"prior_count={cfg.prior_count}",
            f"alpha={cfg.alpha}",
            f"lfc_threshold={cfg.lfc_threshold}",
            f"run_abundance={cfg.run_abundance}",
            f"n_jobs={cfg.n_jobs}",
        ],
    )
    LOGGER.info("Finished cluster-de. Outputs in %s", output_dir)
    return result
