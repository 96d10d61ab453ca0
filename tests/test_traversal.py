from typing import List

import pysam
import pytest

from bambayes.config import CallerParameters
from bambayes.errors import EmptyTargetSet, UnsortedStream
from bambayes.models import Target
from bambayes.samples import SampleResolver
from bambayes.sources import ReferenceLoader
from bambayes.traversal import (
    Phase,
    ScanState,
    Scanner,
    TargetPlan,
    advance,
    iter_scan_states,
    to_first_target_position,
    to_next_ref_id,
    to_next_target,
    to_next_target_position,
)

REF = "ACGT" * 10

HEADER = pysam.AlignmentHeader.from_dict(
    {
        "SQ": [{"SN": "chr1", "LN": len(REF)}],
        "RG": [{"ID": "rg1", "SM": "S1"}],
    }
)


def make_read(seq: str, start: int, name: str) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment(HEADER)
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start
    a.mapping_quality = 60
    a.cigartuples = [(0, len(seq))]
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tag("RG", "rg1")
    return a


class FakeFasta:
    def __init__(self, seqs):
        self.seqs = seqs
        self.references = list(seqs)
        self.lengths = [len(s) for s in seqs.values()]

    def fetch(self, name, start, end):
        return self.seqs[name][start:end]


def _plan(**by_ref) -> TargetPlan:
    return TargetPlan.from_targets(
        {ref: [Target(ref, s, e) for s, e in spans] for ref, spans in by_ref.items()}
    )


def _scanner(plan: TargetPlan, reads: List[pysam.AlignedSegment]) -> Scanner:
    def open_alignments(ref: str, start: int, end: int):
        return [r for r in reads if r.reference_start < end and r.reference_end > start]

    params = CallerParameters(min_mapping_quality=0, min_base_quality=0)
    resolver = SampleResolver("readgroup", read_groups={"rg1": "S1"})
    return Scanner(plan, ReferenceLoader(FakeFasta({"chr1": REF})), open_alignments, params, resolver)


def test_transitions_two_targets() -> None:
    plan = _plan(chr1=[(2, 4), (10, 11)])
    s = to_first_target_position(ScanState(), plan)
    assert (s.phase, s.position) == (Phase.SCANNING_TARGET, 2)
    s = to_next_target_position(s)
    assert s.position == 3
    s = to_next_target_position(s)
    assert s.phase == Phase.BETWEEN_TARGETS
    s = to_next_target(s, plan)
    assert (s.phase, s.target_index, s.position) == (Phase.SCANNING_TARGET, 1, 10)
    s = to_next_target_position(s)
    s = to_next_target(s, plan)
    assert s.phase == Phase.END_OF_REFERENCE_SEQUENCE
    s = to_next_ref_id(s, plan)
    assert s.phase == Phase.DONE


def test_iter_scan_states_visits_targets_in_order() -> None:
    plan = _plan(chr1=[(2, 4), (10, 12)], chr2=[(0, 2)])
    visited = [(s.reference_name, s.position) for s in iter_scan_states(plan)]
    assert visited == [
        ("chr1", 2),
        ("chr1", 3),
        ("chr1", 10),
        ("chr1", 11),
        ("chr2", 0),
        ("chr2", 1),
    ]


def test_overlapping_targets_are_not_revisited() -> None:
    plan = _plan(chr1=[(2, 6), (4, 8), (5, 6)])
    positions = [s.position for s in iter_scan_states(plan)]
    assert positions == [2, 3, 4, 5, 6, 7]


def test_invalid_transition_is_rejected() -> None:
    plan = _plan(chr1=[(0, 1)])
    with pytest.raises(ValueError):
        to_next_target(ScanState(), plan)


def test_empty_target_set() -> None:
    plan = TargetPlan.from_targets({"chr1": [Target("chr1", 0, 5)]}, loaded_references=["chr2"])
    assert plan.n_targets == 0
    with pytest.raises(EmptyTargetSet):
        advance(ScanState(), plan)


def test_plan_skips_empty_references() -> None:
    plan = TargetPlan.from_targets({"chr1": [], "chr2": [Target("chr2", 1, 3)]})
    assert plan.references == ("chr2",)
    assert plan.total_bases == 2


def test_scanner_positions_and_alleles() -> None:
    reads = [
        make_read(REF[0:8], 0, "a"),
        make_read(REF[4:12], 4, "b"),
        make_read(REF[9:17], 9, "c"),
    ]
    scanner = _scanner(_plan(chr1=[(2, 6), (10, 12)]), reads)

    seen = []
    while True:
        alleles = scanner.get_next_alleles()
        if alleles is None:
            break
        p = scanner.current_position
        seen.append((p, sorted(a.read_name for a in alleles)))
        assert scanner.reference_base() == REF[p]
        # nothing that ends at or before the cursor survives eviction
        for a in scanner.queue.registered_alleles:
            assert a.end > p or (a.length == 0 and a.position >= p)

    assert seen == [
        (2, ["a"]),
        (3, ["a"]),
        (4, ["a", "b"]),
        (5, ["a", "b"]),
        (10, ["b", "c"]),
        (11, ["b", "c"]),
    ]
    assert scanner.targets_loaded == 2
    assert scanner.state.phase == Phase.DONE
    assert scanner.get_next_alleles() is None


def test_scanner_unsorted_stream_fails_before_any_site() -> None:
    reads = [make_read(REF[6:10], 6, "late"), make_read(REF[2:6], 2, "early")]

    def open_alignments(ref: str, start: int, end: int):
        return reads

    params = CallerParameters(min_mapping_quality=0, min_base_quality=0)
    scanner = Scanner(
        _plan(chr1=[(2, 10)]),
        ReferenceLoader(FakeFasta({"chr1": REF})),
        open_alignments,
        params,
        SampleResolver("readgroup", read_groups={"rg1": "S1"}),
    )
    seen = []
    with pytest.raises(UnsortedStream):
        while scanner.get_next_alleles() is not None:
            seen.append(scanner.current_position)
    assert seen == []
    assert scanner.state.phase == Phase.NOT_STARTED
    assert scanner.targets_loaded == 0
    assert scanner.queue.alignments == []


def test_scanner_unsorted_later_target_fails_before_first_site() -> None:
    reads = {
        (2, 6): [make_read(REF[2:6], 2, "ok")],
        (10, 14): [make_read(REF[12:16], 12, "late"), make_read(REF[10:14], 10, "early")],
    }

    def open_alignments(ref: str, start: int, end: int):
        return iter(reads[(start, end)])

    scanner = Scanner(
        _plan(chr1=[(2, 6), (10, 14)]),
        ReferenceLoader(FakeFasta({"chr1": REF})),
        open_alignments,
        CallerParameters(min_mapping_quality=0, min_base_quality=0),
        SampleResolver("readgroup", read_groups={"rg1": "S1"}),
    )
    with pytest.raises(UnsortedStream):
        scanner.get_next_alleles()
    assert scanner.alignments_checked is None


def test_scanner_counts_checked_alignments() -> None:
    reads = [make_read(REF[0:8], 0, "a"), make_read(REF[4:12], 4, "b")]
    scanner = _scanner(_plan(chr1=[(2, 6)]), reads)
    assert scanner.get_next_alleles() is not None
    assert scanner.alignments_checked == 2
