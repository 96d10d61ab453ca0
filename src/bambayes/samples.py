from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE = "SAMPLE"


def read_group_samples(header: Mapping[str, Any]) -> Dict[str, str]:
    """Map read-group ID -> sample name (SM) from a BAM header dict."""
    out: Dict[str, str] = {}
    for rg in header.get("RG", []) or []:
        rg_id = rg.get("ID")
        if rg_id is None:
            continue
        out[str(rg_id)] = str(rg.get("SM", rg_id))
    return out


class SampleResolver:
    """Assign each alignment to a sample.

    ``readgroup`` naming looks up the RG tag in the header's read groups;
    reads without a usable RG go to ``default_sample``. ``readname`` naming
    takes the query name up to the first ``delimiter``.
    """

    def __init__(
        self,
        mode: str = "readgroup",
        *,
        read_groups: Optional[Mapping[str, str]] = None,
        delimiter: str = ":",
        default_sample: str = DEFAULT_SAMPLE,
    ) -> None:
        self.mode = mode
        self.read_groups = dict(read_groups or {})
        self.delimiter = delimiter
        self.default_sample = default_sample
        self._warned_missing_rg = False

    @classmethod
    def from_header(cls, header: Mapping[str, Any], mode: str = "readgroup", **kw: Any) -> "SampleResolver":
        return cls(mode, read_groups=read_group_samples(header), **kw)

    def sample_for(self, alignment: Any) -> str:
        if self.mode == "readname":
            name = str(alignment.query_name)
            return name.split(self.delimiter, 1)[0] if self.delimiter in name else self.default_sample

        rg = alignment.get_tag("RG") if alignment.has_tag("RG") else None
        if rg is not None and str(rg) in self.read_groups:
            return self.read_groups[str(rg)]
        if not self._warned_missing_rg:
            logger.warning(
                "Alignment %s has no known read group; assigning to sample %s",
                alignment.query_name,
                self.default_sample,
            )
            self._warned_missing_rg = True
        return self.default_sample

    def known_samples(self) -> List[str]:
        """Sample names derivable without reading alignments (readgroup mode)."""
        seen: Dict[str, None] = {}
        for sm in self.read_groups.values():
            seen.setdefault(sm, None)
        return list(seen.keys())


def collect_sample_names(alignments: Iterable[Any], resolver: SampleResolver) -> List[str]:
    """Pre-pass over alignments listing every sample name, in first-seen order."""
    seen: Dict[str, None] = {}
    for aln in alignments:
        if aln.is_unmapped:
            continue
        seen.setdefault(resolver.sample_for(aln), None)
    return list(seen.keys())
