from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping


@dataclass(frozen=True)
class SvCallerConfig:
    """Thresholds for every phase of an SV calling run.

    One instance is shared read-only by the walker, segmenter and clusterer of
    a run. Build variants with :func:`dataclasses.replace` or
    :meth:`from_mapping`; there is no process-wide default instance.

    Attributes
    ----------
    bin_size:
        Width of depth bins in bp.
    min_depth_z_score:
        Minimum absolute bin z-score for a bin to join a CNV segment.
    min_cnv_size:
        Minimum depth segment length (bp) to report.
    insert_size_z_threshold:
        Insert sizes beyond ``expected ± z * sd`` are outliers.
    min_map_q:
        Minimum mapping quality for discordant-pair and split-read evidence
        (and for the supplementary alignment of a split read).
    max_cluster_distance:
        Maximum spread (bp) of evidence positions within one breakpoint
        cluster; also the default gap for merging depth segments.
    min_paired_end_support, min_split_read_support, min_total_support:
        Support needed for a cluster to become a call.
    min_quality:
        Calls below this Phred-like quality are filtered ``LowQual``.
    depth_only_z_margin:
        A depth-only call passes only when ``|z|`` reaches this multiple of
        ``min_depth_z_score``.
    """

    bin_size: int = 1000
    min_depth_z_score: float = 2.5
    min_cnv_size: int = 10_000

    insert_size_z_threshold: float = 4.0
    min_map_q: int = 20

    max_cluster_distance: int = 500
    min_paired_end_support: int = 2
    min_split_read_support: int = 1
    min_total_support: int = 3

    min_quality: float = 10.0
    depth_only_z_margin: float = 2.0

    def __post_init__(self) -> None:
        if self.bin_size <= 0:
            raise ValueError("bin_size must be > 0")
        if self.max_cluster_distance <= 0:
            raise ValueError("max_cluster_distance must be > 0")
        if self.min_cnv_size < 0:
            raise ValueError("min_cnv_size must be >= 0")
        if self.min_depth_z_score <= 0:
            raise ValueError("min_depth_z_score must be > 0")
        if self.insert_size_z_threshold <= 0:
            raise ValueError("insert_size_z_threshold must be > 0")
        if self.min_map_q < 0:
            raise ValueError("min_map_q must be >= 0")
        for name in ("min_paired_end_support", "min_split_read_support", "min_total_support"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.depth_only_z_margin < 1.0:
            raise ValueError("depth_only_z_margin must be >= 1.0")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SvCallerConfig":
        """Build a config from a plain mapping (e.g. parsed JSON); unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown SvCallerConfig option(s): {', '.join(unknown)}")
        return cls(**dict(data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
