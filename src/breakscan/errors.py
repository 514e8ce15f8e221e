"""Error types raised by the SV calling phases.

Every failure surfaces as a single human-readable message (``str(err)``).
Phases raise the most specific subclass; the orchestrator re-raises the first
phase failure as-is, so callers only need to catch :class:`SvCallerError`.
Malformed individual evidence (bad SA tags, missing CIGAR) is never an error;
it is skipped where it is found.
"""

from __future__ import annotations

from typing import Optional


class SvCallerError(RuntimeError):
    """Base class for failures that abort an SV calling run."""

    def __init__(self, message: str, *, phase: Optional[str] = None) -> None:
        super().__init__(message)
        self.phase = phase


class PreconditionError(SvCallerError):
    """Raised before any scanning when inputs make calling unreliable or impossible."""

    def __init__(self, message: str) -> None:
        super().__init__(message, phase="precondition")


class EvidenceCollectionError(SvCallerError):
    """Raised when the alignment stream cannot be read to completion."""

    def __init__(self, message: str) -> None:
        super().__init__(message, phase="evidence")


class AnalysisCancelled(SvCallerError):
    """Raised when the progress callback asks to stop."""

    def __init__(self, message: str = "SV calling was cancelled.", *, phase: Optional[str] = None) -> None:
        super().__init__(message, phase=phase)
