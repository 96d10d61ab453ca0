"""Thin wrappers around the BAM, FASTA and BED inputs.

The scan only needs three things from the outside world: a forward-only stream
of coordinate-sorted alignments, reference bases for a span, and the list of
target intervals. Everything here is pysam/text plumbing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import pysam

from .errors import UnsortedStream
from .models import Target
from .utils import open_textmaybe_gzip

logger = logging.getLogger(__name__)


class AlignmentSource:
    """Forward-only alignment stream with one record of lookahead.

    The order check runs when a record enters the lookahead slot, so an
    out-of-order record raises :class:`UnsortedStream` before the record
    preceding it is handed out.
    """

    def __init__(self, alignments: Iterable[Any]) -> None:
        self._it: Iterator[Any] = iter(alignments)
        self._next: Optional[Any] = None
        self._last_key: Optional[tuple] = None
        self._exhausted = False
        self.records_read = 0
        self._advance()

    def _advance(self) -> None:
        try:
            rec = next(self._it)
        except StopIteration:
            self._next = None
            self._exhausted = True
            return
        key = (int(rec.reference_id), int(rec.reference_start))
        if key[0] < 0:
            # unplaced reads sort last in a coordinate-sorted BAM
            self._next = rec
            self.records_read += 1
            return
        if self._last_key is not None and key < self._last_key:
            raise UnsortedStream(
                reference_name=rec.reference_name,
                position=key[1],
                previous_position=self._last_key[1],
                read_name=str(rec.query_name),
            )
        self._last_key = key
        self._next = rec
        self.records_read += 1

    def peek(self) -> Optional[Any]:
        return self._next

    def pop(self) -> Any:
        if self._next is None:
            raise StopIteration
        rec = self._next
        self._advance()
        return rec

    @property
    def exhausted(self) -> bool:
        return self._exhausted and self._next is None

    def take_until(self, boundary: int) -> Iterator[Any]:
        """Yield records whose start is at or before ``boundary``."""
        while self._next is not None and int(self._next.reference_start) <= boundary:
            yield self.pop()


def check_alignment_order(alignments: Iterable[Any]) -> int:
    """Drain ``alignments`` through the order check; return the record count.

    Raises :class:`UnsortedStream` on the first out-of-order record.
    """
    source = AlignmentSource(alignments)
    while not source.exhausted:
        source.pop()
    return source.records_read


@dataclass(frozen=True)
class ReferenceWindow:
    """Reference bases for ``[start, start + len(sequence))`` of one contig."""

    reference_name: str
    start: int
    sequence: str

    @property
    def end(self) -> int:
        return self.start + len(self.sequence)

    def covers(self, start: int, end: int) -> bool:
        return self.start <= start and end <= self.end

    def base(self, position: int) -> str:
        return self.sequence[position - self.start]

    def slice(self, start: int, end: int) -> str:
        return self.sequence[start - self.start : end - self.start]


class ReferenceLoader:
    """Fetch reference spans from an indexed FASTA."""

    def __init__(self, fasta: Any) -> None:
        # fasta: pysam.FastaFile or any object with references/lengths/fetch
        self._fasta = fasta
        self.lengths: Dict[str, int] = dict(zip(fasta.references, fasta.lengths))

    @classmethod
    def open(cls, fasta_path: str | Path) -> "ReferenceLoader":
        return cls(pysam.FastaFile(str(fasta_path)))

    @property
    def references(self) -> List[str]:
        return list(self.lengths.keys())

    def fetch(self, reference_name: str, start: int, end: int) -> ReferenceWindow:
        if reference_name not in self.lengths:
            raise ValueError(f"Reference sequence not found in FASTA: {reference_name}")
        length = self.lengths[reference_name]
        if start < 0 or end > length or start > end:
            raise ValueError(
                f"Region {reference_name}:{start}-{end} exceeds sequence bounds (0-{length})"
            )
        seq = self._fasta.fetch(reference_name, start, end).upper()
        return ReferenceWindow(reference_name=reference_name, start=start, sequence=seq)

    def close(self) -> None:
        close = getattr(self._fasta, "close", None)
        if close is not None:
            close()


def load_targets(
    bed_path: Optional[str | Path],
    reference_lengths: Dict[str, int],
) -> Dict[str, List[Target]]:
    """Targets grouped by reference name, in reference order.

    No BED file, or a BED file without intervals, means every position of
    every reference sequence. Intervals on contigs missing from the reference
    are dropped with a warning; the caller decides whether what remains is
    enough to scan.
    """
    by_ref: Dict[str, List[Target]] = {}
    raw: List[Target] = []

    if bed_path is not None:
        with open_textmaybe_gzip(bed_path, "rt") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line or line.startswith(("#", "track", "browser")):
                    continue
                fields = line.split("\t") if "\t" in line else line.split()
                if len(fields) < 3:
                    raise ValueError(f"{bed_path}:{lineno}: expected at least 3 BED columns")
                try:
                    start, end = int(fields[1]), int(fields[2])
                except ValueError as e:
                    raise ValueError(f"{bed_path}:{lineno}: invalid BED coordinates") from e
                if end <= start:
                    logger.warning("Skipping empty BED interval at line %d", lineno)
                    continue
                name = fields[3] if len(fields) > 3 else ""
                raw.append(Target(fields[0], start, end, name))

    if not raw:
        if bed_path is not None:
            logger.info("BED file %s has no intervals; scanning whole reference", bed_path)
        for ref, length in reference_lengths.items():
            if length > 0:
                by_ref[ref] = [Target(ref, 0, length, ref)]
        return by_ref

    dropped = 0
    for t in raw:
        length = reference_lengths.get(t.reference_name)
        if length is None:
            dropped += 1
            continue
        if t.end > length:
            logger.warning(
                "Target %s:%d-%d extends past the sequence end (%d); truncating",
                t.reference_name,
                t.start,
                t.end,
                length,
            )
            t = Target(t.reference_name, t.start, length, t.name)
            if t.end <= t.start:
                continue
        by_ref.setdefault(t.reference_name, []).append(t)
    if dropped:
        logger.warning("Dropped %d target(s) on contigs absent from the reference", dropped)

    # keep reference order, not BED order, across contigs
    ordered: Dict[str, List[Target]] = {}
    for ref in reference_lengths:
        if ref in by_ref:
            ordered[ref] = by_ref[ref]
    return ordered
