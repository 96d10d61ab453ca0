from typing import List, Optional, Tuple

import pysam
import pytest

from bambayes.config import CallerParameters
from bambayes.errors import MalformedAlignment
from bambayes.models import AlleleType
from bambayes.registry import AlignmentQueue, AlleleArena, register_alignment
from bambayes.samples import SampleResolver
from bambayes.sources import AlignmentSource, ReferenceWindow

REF = "ACGTACGTACGTACGTACGT"

HEADER = pysam.AlignmentHeader.from_dict(
    {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": "chr1", "LN": len(REF)}],
        "RG": [{"ID": "rg1", "SM": "S1"}],
    }
)


def make_read(
    seq: str,
    start: int = 0,
    *,
    name: str = "r1",
    cigar: Optional[List[Tuple[int, int]]] = None,
    qual: str = "I",
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(HEADER)
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = cigar or [(0, len(seq))]  # M
    a.query_qualities = pysam.qualitystring_to_array(qual * len(seq))
    a.set_tag("RG", "rg1")
    return a


def _window(start: int = 0, end: int = len(REF)) -> ReferenceWindow:
    return ReferenceWindow("chr1", start, REF[start:end])


def _params(**kw) -> CallerParameters:
    base = dict(min_mapping_quality=0, min_base_quality=0)
    base.update(kw)
    return CallerParameters(**base)


def _queue(params: CallerParameters, reads, window: ReferenceWindow, reload=None) -> AlignmentQueue:
    q = AlignmentQueue(params, SampleResolver("readgroup", read_groups={"rg1": "S1"}), reload_reference=reload)
    q.reset(AlignmentSource(reads), window)
    return q


def test_register_walks_cigar() -> None:
    # 3M 2I 3M 2D 4M from ref pos 2, with a G>A substitution at pos 6
    seq = "GTA" + "TT" + "CAT" + "GTAC"
    read = make_read(seq, 2, cigar=[(0, 3), (1, 2), (0, 3), (2, 2), (0, 4)])
    arena = AlleleArena()
    reg = register_alignment(read, _window(), sample="S1", arena=arena)

    alleles = [arena.get(i) for i in reg.allele_ids]
    kinds = [(a.type, a.position, a.length) for a in alleles]
    assert (AlleleType.INSERTION, 5, 0) in kinds
    assert (AlleleType.SUBSTITUTION, 6, 1) in kinds
    assert (AlleleType.DELETION, 8, 2) in kinds
    assert len(alleles) == 12
    assert reg.mismatches == 3
    assert reg.end == 14

    ins = next(a for a in alleles if a.type == AlleleType.INSERTION)
    assert ins.bases == "TT"
    assert ins.quality == 40
    assert all(a.sample == "S1" and a.read_name == "r1" for a in alleles)


def test_register_base_quality_filter_and_reference_switch() -> None:
    read = make_read("ACGA", 0, qual="+")  # Q10
    arena = AlleleArena()
    reg = register_alignment(read, _window(), sample="S1", arena=arena, min_base_quality=20)
    assert reg.allele_ids == []
    # mismatches still count for the read-level filter
    assert reg.mismatches == 1

    reg = register_alignment(read, _window(), sample="S1", arena=arena, keep_reference=False)
    assert [arena.get(i).type for i in reg.allele_ids] == [AlleleType.SUBSTITUTION]


def test_register_skips_zero_quality_bases() -> None:
    read = make_read("ACGA", 0, qual="!")  # Q0
    arena = AlleleArena()
    reg = register_alignment(read, _window(), sample="S1", arena=arena, min_base_quality=0)
    assert reg.allele_ids == []
    assert reg.mismatches == 1

    mixed = make_read("ACGA", 0)
    mixed.query_qualities = pysam.qualitystring_to_array("I!II")
    reg = register_alignment(mixed, _window(), sample="S1", arena=arena)
    assert [arena.get(i).position for i in reg.allele_ids] == [0, 2, 3]


def test_register_outside_window_is_malformed() -> None:
    read = make_read("ACGT", 0)
    with pytest.raises(MalformedAlignment) as exc:
        register_alignment(read, _window(2, 20), sample="S1", arena=AlleleArena())
    assert exc.value.start == 0
    assert exc.value.end == 4


def test_queue_eviction_after_position() -> None:
    r1 = make_read(REF[0:5], 0, name="a")
    r2 = make_read(REF[3:8], 3, name="b")
    q = _queue(_params(), [r1, r2], _window())

    assert q.update_alignment_queue(5) == 2
    registered = q.update_registered_alleles(5, 20)
    assert [reg.alignment.query_name for reg in q.alignments] == ["b"]
    assert q.counts["alignments_evicted"] == 1
    assert registered
    assert all(a.end > 5 for a in registered)
    assert len(q.arena) == len(registered)


def test_queue_pulls_only_up_to_boundary() -> None:
    reads = [make_read(REF[i : i + 4], i, name=f"r{i}") for i in (0, 2, 6)]
    q = _queue(_params(), reads, _window())
    assert q.update_alignment_queue(2) == 2
    assert q.update_alignment_queue(5) == 0
    assert q.update_alignment_queue(6) == 1


def test_queue_skips_reads_over_mismatch_limit() -> None:
    read = make_read("AAAA", 0)  # 3 mismatches against ACGT
    q = _queue(_params(max_mismatches=2), [read], _window())
    q.update_alignment_queue(0)
    assert q.alignments == []
    assert q.counts["alignments_skipped_mismatches"] == 1
    assert len(q.arena) == 0


def test_queue_skips_low_mapq_and_duplicates() -> None:
    low = make_read("ACGT", 0, name="low")
    low.mapping_quality = 5
    dup = make_read("ACGT", 0, name="dup")
    dup.is_duplicate = True
    q = _queue(_params(min_mapping_quality=30), [low, dup], _window())
    q.update_alignment_queue(0)
    assert q.counts["alignments_skipped_mapq"] == 1
    assert q.counts["alignments_skipped_duplicates"] == 1
    assert q.counts["alignments_registered"] == 0


def test_malformed_alignment_triggers_reference_reload() -> None:
    calls = []

    def reload(name: str, start: int, end: int) -> ReferenceWindow:
        calls.append((name, start, end))
        return _window()

    read = make_read(REF[0:6], 0)
    q = _queue(_params(), [read], _window(4, 20), reload=reload)
    q.update_alignment_queue(0)
    assert calls == [("chr1", 0, 6)]
    assert q.counts["reference_reloads"] == 1
    assert q.counts["alignments_registered"] == 1
    assert q.reference is not None and q.reference.start == 0


def test_malformed_alignment_without_reload_is_skipped() -> None:
    read = make_read(REF[0:6], 0)
    q = _queue(_params(), [read], _window(4, 20))
    q.update_alignment_queue(0)
    assert q.counts["alignments_malformed"] == 1
    assert q.alignments == []
