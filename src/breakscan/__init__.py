"""BreakScan: structural variant calling from short-read alignments.

Deletions, duplications, inversions and translocations are called from three
signals collected in one pass over a BAM/CRAM: discordant read pairs, split
reads and read depth. Most users only need :func:`call_structural_variants`:

    from breakscan import call_structural_variants
    result = call_structural_variants("sample.bam", reference_build="GRCh38", ...)

"""

from __future__ import annotations

from .caller import call_structural_variants
from .config import SvCallerConfig
from .errors import SvCallerError

__all__ = ["__version__", "call_structural_variants", "SvCallerConfig", "SvCallerError"]

__version__ = "0.1.0"
