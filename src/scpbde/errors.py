from __future__ import annotations

from typing import Optional


class PseudobulkDEError(Exception):
    """Base class for errors raised by scpbde."""


class MissingMetadataError(PseudobulkDEError):
    """
    Cells lacking cluster/sample/group labels.

    Not fatal: grouping drops those cells and logs this error with the count.
    """

    def __init__(self, n_dropped: int, columns: Optional[list[str]] = None):
        self.n_dropped = int(n_dropped)
        self.columns = list(columns or [])
        cols = ", ".join(self.columns) if self.columns else "metadata"
        super().__init__(f"{self.n_dropped} cell(s) dropped: missing {cols}")


class ClusterPipelineError(PseudobulkDEError):
    """Fatal for a single cluster; other clusters keep running."""


class DesignDegenerateError(ClusterPipelineError):
    pass


class InsufficientSamplesError(ClusterPipelineError):
    pass


class EmptyBucketWarning(UserWarning):
    """A (cluster, sample) combination has no cells."""


class GLMConvergenceWarning(UserWarning):
    """The NB GLM did not converge for one or more genes."""
