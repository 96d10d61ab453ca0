from __future__ import annotations

import logging
import sys
from typing import Any, Callable, Dict, Iterable, List, Optional

from .alleles import within_window
from .config import CallerParameters
from .errors import MalformedAlignment
from .models import Allele, AlleleType, RegisteredAlignment
from .samples import SampleResolver
from .sources import AlignmentSource, ReferenceWindow

logger = logging.getLogger(__name__)

_UNBOUNDED = sys.maxsize

# (reference_name, start, end) -> wider window, or None if it cannot be loaded
ReferenceReload = Callable[[str, int, int], Optional[ReferenceWindow]]


class AlleleArena:
    """Owns every live allele, indexed by an opaque integer id."""

    def __init__(self) -> None:
        self._alleles: Dict[int, Allele] = {}
        self._next_id = 0

    def add(
        self,
        type: AlleleType,
        reference_name: str,
        position: int,
        length: int,
        bases: str,
        qualities: Iterable[int],
        sample: str,
        read_name: str,
    ) -> Allele:
        quals = tuple(int(q) for q in qualities)
        allele = Allele(
            type=type,
            reference_name=reference_name,
            position=position,
            length=length,
            bases=bases,
            quality=min(quals) if quals else 0,
            qualities=quals,
            sample=sample,
            read_name=read_name,
            allele_id=self._next_id,
        )
        self._alleles[self._next_id] = allele
        self._next_id += 1
        return allele

    def get(self, allele_id: int) -> Allele:
        return self._alleles[allele_id]

    def remove(self, allele_ids: Iterable[int]) -> None:
        for aid in allele_ids:
            self._alleles.pop(aid, None)

    def clear(self) -> None:
        self._alleles.clear()

    def __len__(self) -> int:
        return len(self._alleles)


def register_alignment(
    alignment: Any,
    reference: ReferenceWindow,
    *,
    sample: str,
    arena: AlleleArena,
    min_base_quality: int = 0,
    keep_reference: bool = True,
) -> RegisteredAlignment:
    """Derive the ordered alleles an alignment supports.

    Walks the CIGAR once against the loaded reference window. Aligned bases
    yield REFERENCE or SUBSTITUTION alleles of length 1, insertions a
    zero-length INSERTION at the next reference base, deletions a DELETION
    spanning the deleted bases. Substituted bases count one mismatch each,
    every indel counts one.

    Raises
    ------
    MalformedAlignment
        If the alignment has no aligned bases or its span is not inside the
        loaded reference window.
    """
    name = str(alignment.query_name)
    seq = alignment.query_sequence
    start = alignment.reference_start
    end = alignment.reference_end
    if alignment.is_unmapped or alignment.cigartuples is None or seq is None or end is None:
        raise MalformedAlignment(
            f"Alignment {name} has no aligned bases",
            read_name=name,
            reference_name=alignment.reference_name,
            start=start if start is not None else -1,
            end=end if end is not None else -1,
        )
    if alignment.reference_name != reference.reference_name or not reference.covers(start, end):
        raise MalformedAlignment(
            f"Alignment {name} at {alignment.reference_name}:{start}-{end} lies outside the loaded "
            f"reference window {reference.reference_name}:{reference.start}-{reference.end}",
            read_name=name,
            reference_name=alignment.reference_name,
            start=start,
            end=end,
        )

    quals = alignment.query_qualities  # can be None
    contig = reference.reference_name
    ids: List[int] = []
    mismatches = 0

    def qual_at(qpos: int) -> int:
        if quals is None or not 0 <= qpos < len(quals):
            return 0
        return int(quals[qpos])

    def usable(q: int) -> bool:
        # Q0 (or no stored quality) carries no evidence
        return q > 0 and q >= min_base_quality

    ref_pos = start
    query_pos = 0
    for op, length in alignment.cigartuples:
        if op in (0, 7, 8):  # M, =, X: consumes query and ref
            for i in range(length):
                base = seq[query_pos + i].upper()
                if base == "N":
                    continue
                rpos = ref_pos + i
                is_match = base == reference.base(rpos)
                if not is_match:
                    mismatches += 1
                bq = qual_at(query_pos + i)
                if not usable(bq) or (is_match and not keep_reference):
                    continue
                allele = arena.add(
                    AlleleType.REFERENCE if is_match else AlleleType.SUBSTITUTION,
                    contig,
                    rpos,
                    1,
                    base,
                    (bq,),
                    sample,
                    name,
                )
                ids.append(allele.allele_id)
            ref_pos += length
            query_pos += length

        elif op == 1:  # I: consumes query only
            mismatches += 1
            ins_quals = [qual_at(query_pos + i) for i in range(length)]
            if usable(min(ins_quals)):
                allele = arena.add(
                    AlleleType.INSERTION,
                    contig,
                    ref_pos,
                    0,
                    seq[query_pos : query_pos + length].upper(),
                    ins_quals,
                    sample,
                    name,
                )
                ids.append(allele.allele_id)
            query_pos += length

        elif op == 2:  # D: consumes ref only
            mismatches += 1
            # deletions carry no bases; use the flanking read bases
            flank = [qual_at(q) for q in (query_pos - 1, query_pos) if 0 <= q < len(seq)]
            if flank and usable(min(flank)):
                allele = arena.add(
                    AlleleType.DELETION,
                    contig,
                    ref_pos,
                    length,
                    "",
                    flank,
                    sample,
                    name,
                )
                ids.append(allele.allele_id)
            ref_pos += length

        elif op == 3:  # N: consumes ref only
            ref_pos += length
        elif op == 4:  # S: consumes query only
            query_pos += length
        else:  # H, P and unknown ops consume neither
            continue

    return RegisteredAlignment(alignment=alignment, allele_ids=ids, mismatches=mismatches, sample=sample)


class AlignmentQueue:
    """Position-ordered queue of registered alignments overlapping the scan.

    Owns the allele arena and the registered-allele list. Only the scanner
    that created it should mutate it.
    """

    def __init__(
        self,
        params: CallerParameters,
        resolver: SampleResolver,
        *,
        reload_reference: Optional[ReferenceReload] = None,
    ) -> None:
        self.params = params
        self.resolver = resolver
        self.arena = AlleleArena()
        self.alignments: List[RegisteredAlignment] = []
        self.registered_alleles: List[Allele] = []
        self.source: Optional[AlignmentSource] = None
        self.reference: Optional[ReferenceWindow] = None
        self._reload = reload_reference
        self.counts: Dict[str, int] = {
            "alignments_total": 0,
            "alignments_registered": 0,
            "alignments_evicted": 0,
            "alignments_unmapped": 0,
            "alignments_skipped_secondary": 0,
            "alignments_skipped_supplementary": 0,
            "alignments_skipped_duplicates": 0,
            "alignments_skipped_qcfail": 0,
            "alignments_skipped_mapq": 0,
            "alignments_skipped_mismatches": 0,
            "alignments_malformed": 0,
            "reference_reloads": 0,
        }

    def reset(self, source: AlignmentSource, reference: ReferenceWindow) -> None:
        """Drop all in-flight state and start over on a new interval."""
        self.alignments = []
        self.registered_alleles = []
        self.arena.clear()
        self.source = source
        self.reference = reference

    def _skip_reason(self, aln: Any) -> Optional[str]:
        p = self.params
        if aln.is_unmapped or aln.reference_end is None:
            return "alignments_unmapped"
        if aln.is_secondary and not p.include_secondary:
            return "alignments_skipped_secondary"
        if aln.is_supplementary and not p.include_supplementary:
            return "alignments_skipped_supplementary"
        if p.skip_duplicates and aln.is_duplicate:
            return "alignments_skipped_duplicates"
        if aln.is_qcfail:
            return "alignments_skipped_qcfail"
        if int(aln.mapping_quality) < p.min_mapping_quality:
            return "alignments_skipped_mapq"
        return None

    def _register(self, aln: Any) -> Optional[RegisteredAlignment]:
        assert self.reference is not None
        sample = self.resolver.sample_for(aln)
        kw = dict(
            sample=sample,
            arena=self.arena,
            min_base_quality=self.params.min_base_quality,
            keep_reference=self.params.use_ref_allele,
        )
        try:
            reg = register_alignment(aln, self.reference, **kw)
        except MalformedAlignment as e:
            reg = None
            err = e
            if self._reload is not None and e.end > e.start >= 0 and e.reference_name is not None:
                window = self._reload(e.reference_name, e.start, e.end)
                if window is not None:
                    self.counts["reference_reloads"] += 1
                    logger.debug(
                        "Reloaded reference %s:%d-%d for %s",
                        window.reference_name,
                        window.start,
                        window.end,
                        e.read_name,
                    )
                    self.reference = window
                    try:
                        reg = register_alignment(aln, self.reference, **kw)
                    except MalformedAlignment as e2:
                        err = e2
            if reg is None:
                self.counts["alignments_malformed"] += 1
                logger.warning("Skipping alignment: %s", err)
                return None

        if reg.mismatches > self.params.max_mismatches:
            self.arena.remove(reg.allele_ids)
            self.counts["alignments_skipped_mismatches"] += 1
            logger.debug("Skipping %s: %d mismatches", aln.query_name, reg.mismatches)
            return None
        return reg

    def update_alignment_queue(self, boundary: int) -> int:
        """Register every pending alignment starting at or before ``boundary``."""
        if self.source is None:
            return 0
        added = 0
        for aln in self.source.take_until(boundary):
            self.counts["alignments_total"] += 1
            reason = self._skip_reason(aln)
            if reason is not None:
                self.counts[reason] += 1
                continue
            reg = self._register(aln)
            if reg is None:
                continue
            self.alignments.append(reg)
            self.counts["alignments_registered"] += 1
            added += 1
        return added

    def update_registered_alleles(self, position: int, window_end: int) -> List[Allele]:
        """Rebuild the registered-allele list for the window ``[position, window_end)``.

        Alleles ending at or before ``position`` leave the arena; alignments
        left without live alleles that end at or before ``position`` are
        evicted from the queue.
        """
        kept: List[RegisteredAlignment] = []
        registered: List[Allele] = []
        for reg in self.alignments:
            live: List[int] = []
            dead: List[int] = []
            for aid in reg.allele_ids:
                allele = self.arena.get(aid)
                if within_window(position, _UNBOUNDED, allele):
                    live.append(aid)
                    if within_window(position, window_end, allele):
                        registered.append(allele)
                else:
                    dead.append(aid)
            self.arena.remove(dead)
            reg.allele_ids = live
            if not live and reg.end <= position:
                self.counts["alignments_evicted"] += 1
                continue
            kept.append(reg)
        self.alignments = kept
        self.registered_alleles = registered
        return registered

    def alleles_at(self, position: int) -> List[Allele]:
        return [a for a in self.registered_alleles if within_window(position, position + 1, a)]
