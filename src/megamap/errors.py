"""Exception taxonomy for the staged pipeline.

Only :class:`AmbiguousAssignmentError` is recoverable: it is raised and caught
inside the homolog assigner for every conflicting read and never reaches the
caller. Everything else halts the pipeline; the operator recovers by re-running
with ``--from-stage``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class MegaMapError(RuntimeError):
    """Base class for pipeline errors."""


class PreconditionError(MegaMapError):
    """A stage cannot be entered because a required artifact is missing or empty."""

    def __init__(self, message: str, *, stage: str, missing: Sequence[str | Path] = ()) -> None:
        super().__init__(message)
        self.stage = stage
        self.missing = [str(p) for p in missing]


class WorkerFaultError(MegaMapError):
    """At least one per-chromosome task reported a non-zero exit status."""

    def __init__(self, message: str, *, stage: str, failed: Sequence[str]) -> None:
        super().__init__(message)
        self.stage = stage
        self.failed = list(failed)


class AmbiguousAssignmentError(MegaMapError):
    """A read carries evidence for both homologs."""

    def __init__(self, qname: str, labels: Sequence[str]) -> None:
        super().__init__(f"Read {qname} matches conflicting homologs: {', '.join(sorted(labels))}")
        self.qname = qname
        self.labels = sorted(labels)


class ExternalEngineError(MegaMapError):
    """The matrix or track engine reported failure or did not produce its artifact."""

    def __init__(
        self,
        message: str,
        *,
        engine: str,
        returncode: Optional[int] = None,
        artifact: Optional[str | Path] = None,
    ) -> None:
        super().__init__(message)
        self.engine = engine
        self.returncode = returncode
        self.artifact = str(artifact) if artifact is not None else None


class InvalidStageRangeError(MegaMapError, ValueError):
    """``from_stage`` is later than ``to_stage``."""
