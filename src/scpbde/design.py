# src/scpbde/design.py
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import DesignDegenerateError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExperimentDesign:
    """
    One-hot group design (no intercept) plus a single group-vs-group contrast.

    design:   samples x groups (0/1), index = sample ids in the fixed order
    contrast: groups -> +1 (treatment), -1 (reference), 0 otherwise
    """
    design: pd.DataFrame
    contrast: pd.Series
    treatment: str
    reference: str

    @property
    def name(self) -> str:
        return f"{self.treatment}_vs_{self.reference}"

    @property
    def samples(self) -> pd.Index:
        return self.design.index

    @property
    def groups(self) -> pd.Index:
        return self.design.columns

    def matrix(self) -> np.ndarray:
        return self.design.to_numpy(dtype=np.float64)

    def contrast_vector(self) -> np.ndarray:
        return self.contrast.reindex(self.design.columns).to_numpy(dtype=np.float64)

    def subset(self, samples: Sequence[str]) -> "ExperimentDesign":
        """
        Restrict to `samples` (keeping their given order).

        Groups left without samples are dropped when they take no part in the
        contrast; losing the treatment or reference group is fatal.
        """
        samples = [str(s) for s in samples]
        missing = [s for s in samples if s not in self.design.index]
        if missing:
            raise KeyError(f"Samples not in design: {missing}")
        d = self.design.loc[samples]
        present = d.columns[d.sum(axis=0).to_numpy() > 0]
        for lvl in (self.treatment, self.reference):
            if lvl not in present:
                raise DesignDegenerateError(
                    f"group {lvl!r} has no samples left ({len(samples)} sample(s) remain)"
                )
        d = d.loc[:, present]
        out = ExperimentDesign(
            design=d,
            contrast=self.contrast.reindex(present),
            treatment=self.treatment,
            reference=self.reference,
        )
        _check_full_rank(out.design)
        return out


def _check_full_rank(design: pd.DataFrame) -> None:
    X = design.to_numpy(dtype=np.float64)
    n, p = X.shape
    if n == 0 or p == 0:
        raise DesignDegenerateError(f"empty design ({n} samples x {p} groups)")
    rank = int(np.linalg.matrix_rank(X))
    if rank < p:
        raise DesignDegenerateError(
            f"design matrix is not full column rank (rank={rank}, columns={p}: {list(design.columns)})"
        )


def parse_contrast(text: str) -> Tuple[str, str]:
    """
    Parse "stim-ctrl" or "stim_vs_ctrl" into (treatment, reference).
    """
    s = str(text).strip()
    parts = re.split(r"_vs_|\s+vs\s+", s, maxsplit=1)
    if len(parts) != 2:
        parts = s.split("-", 1)
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ValueError(f"Cannot parse contrast {text!r}; expected 'A-B' or 'A_vs_B'")
    return parts[0].strip(), parts[1].strip()


def build_design(
    sample_groups: pd.Series,
    *,
    treatment: str,
    reference: str,
    samples: Optional[Sequence[str]] = None,
) -> ExperimentDesign:
    """
    Build the one-hot design and the treatment-minus-reference contrast.

    sample_groups: group label per sample (index = sample id). If `samples` is
    given, rows follow that order (and must all be labelled); otherwise the
    Series order is kept.
    """
    treatment, reference = str(treatment), str(reference)
    if treatment == reference:
        raise DesignDegenerateError(f"treatment and reference are both {treatment!r}")

    sg = sample_groups.dropna().astype(str)
    sg.index = sg.index.astype(str)
    if not sg.index.is_unique:
        raise ValueError("sample_groups index (sample ids) must be unique")

    if samples is not None:
        samples = [str(s) for s in samples]
        missing = [s for s in samples if s not in sg.index]
        if missing:
            raise KeyError(f"No group label for samples: {missing}")
        sg = sg.loc[samples]

    groups = sorted(pd.unique(sg))
    for lvl in (treatment, reference):
        if lvl not in groups:
            raise DesignDegenerateError(f"group {lvl!r} not observed; available groups: {groups}")

    design = pd.get_dummies(pd.Categorical(sg.to_numpy(), categories=groups), dtype=np.int64)
    design.index = pd.Index(sg.index, name="sample")
    design.columns = pd.Index([str(g) for g in groups], name="group")
    _check_full_rank(design)

    contrast = pd.Series(0.0, index=design.columns, name=f"{treatment}_vs_{reference}")
    contrast[treatment] = 1.0
    contrast[reference] = -1.0

    LOGGER.info(
        "Design: %d samples x %d groups (%s); contrast %s_vs_%s.",
        design.shape[0], design.shape[1], ", ".join(design.columns), treatment, reference,
    )
    return ExperimentDesign(design=design, contrast=contrast, treatment=treatment, reference=reference)
