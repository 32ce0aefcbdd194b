from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator
from pathlib import Path
from typing import Optional, Literal


# ---------------------------------------------------------------------
# CLUSTER DE CONFIG
# ---------------------------------------------------------------------
class ClusterDEConfig(BaseModel):

    # ---- Input ----
    input_path: Path = Field(..., description="AnnData (.h5ad) with raw counts and per-cell metadata")
    counts_layer: Optional[str] = Field(
        None,
        description="Layer holding raw counts. None falls back to .X (must be raw counts).",
    )

    # ---- Output ----
    output_dir: Path
    write_pseudobulk: bool = True

    # ---- Metadata keys ----
    cluster_key: str = "cluster_id"
    sample_key: str = "sample_id"
    group_key: str = "group_id"

    # ---- Contrast ----
    # Either treatment + reference, or a contrast string "stim-ctrl" / "stim_vs_ctrl".
    treatment: Optional[str] = None
    reference: Optional[str] = None
    contrast: Optional[str] = None

    # ---- Model ----
    norm_method: Literal["TMM", "none"] = "TMM"
    dispersion: Literal["tagwise", "trended", "common"] = "tagwise"
    prior_df: float = Field(10.0, ge=0.0)
    prior_count: float = Field(0.125, ge=0.0)

    # ---- Filtering ----
    alpha: float = 0.05
    lfc_threshold: float = 1.0

    # ---- Differential abundance ----
    run_abundance: bool = True

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1)

    # ---- Logging ----
    logfile: Optional[Path] = None

    @field_validator("alpha")
    @classmethod
    def check_alpha(cls, v: float) -> float:
        if not (0.0 < v <= 1.0):
            raise ValueError("alpha must be in (0, 1]")
        return v

    @field_validator("lfc_threshold")
    @classmethod
    def check_lfc(cls, v: float) -> float:
        if v < 0:
            raise ValueError("lfc_threshold must be >= 0")
        return v

    @model_validator(mode="after")
    def resolve_contrast(self):
        if self.contrast is not None:
            if self.treatment is not None or self.reference is not None:
                raise ValueError("Use either contrast or treatment/reference, not both")
            from .design import parse_contrast

            self.treatment, self.reference = parse_contrast(self.contrast)

        if self.treatment is None or self.reference is None:
            raise ValueError("Both treatment and reference groups are required")
        if self.treatment == self.reference:
            raise ValueError("treatment and reference must differ")
        return self

    @model_validator(mode="after")
    def default_logfile(self):
        if self.logfile is None:
            self.logfile = self.output_dir / "cluster-de.log"
        return self

    @property
    def contrast_name(self) -> str:
        return f"{self.treatment}_vs_{self.reference}"
