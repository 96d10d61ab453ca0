from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Set

import pysam

logger = logging.getLogger(__name__)


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM has an index; raise ValueError with fix instructions."""
    bam = Path(bam_path)
    bai1 = bam.with_suffix(bam.suffix + ".bai")
    bai2 = bam.with_suffix(".bai")
    csi = bam.with_suffix(bam.suffix + ".csi")
    if bai1.exists() or bai2.exists() or csi.exists():
        return
    raise ValueError("BAM is not indexed. Run: samtools index " + str(bam))


def ensure_fasta_index(fasta_path: str | Path) -> Path:
    """Return the .fai of a FASTA, building it with pysam when missing."""
    fasta = Path(fasta_path)
    if not fasta.exists():
        raise ValueError(f"Reference FASTA not found: {fasta}")
    fai = fasta.with_suffix(fasta.suffix + ".fai")
    if fai.exists():
        return fai
    logger.info("Indexing reference %s", fasta)
    try:
        pysam.faidx(str(fasta))
    except pysam.SamtoolsError as e:
        raise ValueError(
            f"Could not index {fasta} ({e}). A bgzipped FASTA needs bgzip, not gzip; "
            "or run: samtools faidx " + str(fasta)
        ) from e
    return fai


def check_sorted_header(header: Mapping[str, Any]) -> None:
    """Refuse BAMs whose header declares a sort order other than coordinate.

    A missing ``SO`` is accepted with a warning; the alignment stream still
    checks the order as it reads.
    """
    so = (header.get("HD") or {}).get("SO")
    if so is None:
        logger.warning("BAM header has no sort order (@HD SO); assuming coordinate-sorted")
        return
    if so != "coordinate":
        raise ValueError(
            f"BAM is sorted by {so!r}, expected 'coordinate'. Run: samtools sort -o sorted.bam input.bam"
        )


def shared_references(bam_references: Iterable[str], fasta_references: Iterable[str]) -> Set[str]:
    """Reference names present in both inputs; raise if there are none."""
    bam_refs = set(bam_references)
    shared = bam_refs.intersection(fasta_references)
    if not shared:
        raise ValueError(
            "BAM and FASTA share no reference sequence names "
            f"(BAM: {', '.join(sorted(bam_refs)[:5]) or 'none'}). "
            "Check that both use the same naming (e.g. 'chr1' vs '1')."
        )
    missing = bam_refs - shared
    if missing:
        logger.warning(
            "%d BAM reference(s) are absent from the FASTA and will not be scanned", len(missing)
        )
    return shared
