"""Target traversal.

The cursor is an immutable :class:`ScanState` moved by pure transition
functions over a :class:`TargetPlan`. :class:`Scanner` applies those
transitions and keeps the I/O-backed state (reference window, alignment queue)
in step with the cursor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from .config import CallerParameters
from .errors import EmptyTargetSet
from .models import Allele, Target
from .registry import AlignmentQueue
from .samples import SampleResolver
from .sources import AlignmentSource, ReferenceLoader, ReferenceWindow, check_alignment_order

logger = logging.getLogger(__name__)

# (reference_name, start, end) -> alignments overlapping the region, sorted
AlignmentOpener = Callable[[str, int, int], Iterable[Any]]


class Phase(Enum):
    NOT_STARTED = "not_started"
    SCANNING_TARGET = "scanning_target"
    BETWEEN_TARGETS = "between_targets"
    END_OF_REFERENCE_SEQUENCE = "end_of_reference_sequence"
    DONE = "done"


@dataclass(frozen=True)
class TargetPlan:
    """Targets to scan, grouped by reference sequence, in scan order."""

    references: Tuple[str, ...]
    targets: Tuple[Tuple[Target, ...], ...]

    @classmethod
    def from_targets(
        cls,
        targets_by_reference: Mapping[str, Sequence[Target]],
        loaded_references: Optional[Iterable[str]] = None,
    ) -> "TargetPlan":
        """Keep references that have targets and (if given) loaded reference data."""
        loaded = set(loaded_references) if loaded_references is not None else None
        refs: List[str] = []
        groups: List[Tuple[Target, ...]] = []
        for ref, targets in targets_by_reference.items():
            if not targets:
                continue
            if loaded is not None and ref not in loaded:
                logger.warning("No reference sequence for %s; its targets are skipped", ref)
                continue
            for prev, cur in zip(targets, targets[1:]):
                if cur.start < prev.end:
                    logger.warning(
                        "Targets %s:%d-%d and %s:%d-%d overlap or are unsorted; "
                        "already scanned positions are not revisited",
                        prev.reference_name,
                        prev.start,
                        prev.end,
                        cur.reference_name,
                        cur.start,
                        cur.end,
                    )
            refs.append(ref)
            groups.append(tuple(targets))
        return cls(references=tuple(refs), targets=tuple(groups))

    @property
    def n_targets(self) -> int:
        return sum(len(g) for g in self.targets)

    @property
    def total_bases(self) -> int:
        return sum(t.length for g in self.targets for t in g)


@dataclass(frozen=True)
class ScanState:
    phase: Phase = Phase.NOT_STARTED
    ref_index: int = -1
    target_index: int = -1
    target: Optional[Target] = None
    position: int = -1

    @property
    def reference_name(self) -> Optional[str]:
        return self.target.reference_name if self.target is not None else None


def _require(state: ScanState, *phases: Phase) -> None:
    if state.phase not in phases:
        raise ValueError(f"Invalid transition from {state.phase.value}")


def _enter_target(
    state: ScanState, plan: TargetPlan, ref_index: int, target_index: int, floor: int
) -> ScanState:
    """Enter the first target at or after ``target_index`` with positions >= floor."""
    targets = plan.targets[ref_index]
    while target_index < len(targets):
        t = targets[target_index]
        position = max(t.start, floor)
        if position < t.end:
            return ScanState(Phase.SCANNING_TARGET, ref_index, target_index, t, position)
        target_index += 1
    return replace(state, phase=Phase.END_OF_REFERENCE_SEQUENCE)


def to_first_target_position(state: ScanState, plan: TargetPlan) -> ScanState:
    _require(state, Phase.NOT_STARTED)
    if not plan.references:
        raise EmptyTargetSet(
            "No target intervals on reference sequences with loaded data; nothing to scan."
        )
    return _enter_target(state, plan, 0, 0, floor=0)


def to_next_target_position(state: ScanState) -> ScanState:
    _require(state, Phase.SCANNING_TARGET)
    assert state.target is not None
    position = state.position + 1
    if position >= state.target.end:
        return replace(state, phase=Phase.BETWEEN_TARGETS, position=state.target.end)
    return replace(state, position=position)


def to_next_target(state: ScanState, plan: TargetPlan) -> ScanState:
    _require(state, Phase.BETWEEN_TARGETS)
    return _enter_target(state, plan, state.ref_index, state.target_index + 1, floor=state.position)


def to_next_ref_id(state: ScanState, plan: TargetPlan) -> ScanState:
    _require(state, Phase.END_OF_REFERENCE_SEQUENCE, Phase.BETWEEN_TARGETS)
    ref_index = state.ref_index + 1
    while ref_index < len(plan.references):
        nxt = _enter_target(state, plan, ref_index, 0, floor=0)
        if nxt.phase == Phase.SCANNING_TARGET:
            return nxt
        ref_index += 1
    return ScanState(Phase.DONE, len(plan.references), -1, None, -1)


def advance(state: ScanState, plan: TargetPlan) -> ScanState:
    """Move to the next position to scan, or to DONE."""
    if state.phase == Phase.NOT_STARTED:
        state = to_first_target_position(state, plan)
    elif state.phase == Phase.SCANNING_TARGET:
        state = to_next_target_position(state)
    while state.phase not in (Phase.SCANNING_TARGET, Phase.DONE):
        if state.phase == Phase.BETWEEN_TARGETS:
            state = to_next_target(state, plan)
        else:
            state = to_next_ref_id(state, plan)
    return state


def iter_scan_states(plan: TargetPlan) -> Iterator[ScanState]:
    state = advance(ScanState(), plan)
    while state.phase != Phase.DONE:
        yield state
        state = advance(state, plan)


class Scanner:
    """Drives the cursor across targets and keeps the alignment queue current.

    Each position advance runs, in order: queue update (pull alignments that
    start at or before the cursor), registered-allele update (evict what the
    cursor has passed), allele extraction for the new position.
    """

    def __init__(
        self,
        plan: TargetPlan,
        reference_loader: ReferenceLoader,
        open_alignments: AlignmentOpener,
        params: CallerParameters,
        resolver: SampleResolver,
    ) -> None:
        self.plan = plan
        self.reference_loader = reference_loader
        self.open_alignments = open_alignments
        self.params = params
        self.state = ScanState()
        self.queue = AlignmentQueue(params, resolver, reload_reference=self._reload_reference)
        self.targets_loaded = 0
        self.alignments_checked: Optional[int] = None

    # -----------------
    # reference / target loading
    # -----------------

    @property
    def reference(self) -> Optional[ReferenceWindow]:
        return self.queue.reference

    @property
    def current_target(self) -> Optional[Target]:
        return self.state.target

    @property
    def current_position(self) -> int:
        return self.state.position

    def load_target(self, target: Target) -> bool:
        """Load reference bases (plus flanks) and reset the queue for ``target``."""
        length = self.reference_loader.lengths[target.reference_name]
        start = max(0, target.start - self.params.bases_before_target)
        end = min(length, target.end + self.params.bases_after_target)
        window = self.reference_loader.fetch(target.reference_name, start, end)
        source = AlignmentSource(self.open_alignments(target.reference_name, target.start, target.end))
        self.queue.reset(source, window)
        self.targets_loaded += 1
        logger.info(
            "Scanning target %s:%d-%d (%d bp)",
            target.reference_name,
            target.start,
            target.end,
            target.length,
        )
        return True

    def check_order(self) -> int:
        """Verify every target's alignments are coordinate-sorted.

        Runs once, ahead of the first position, so an unsorted stream fails
        the scan before any site is produced.
        """
        if self.alignments_checked is None:
            n = 0
            for group in self.plan.targets:
                for t in group:
                    n += check_alignment_order(self.open_alignments(t.reference_name, t.start, t.end))
            logger.debug("Alignment order verified over %d record(s)", n)
            self.alignments_checked = n
        return self.alignments_checked

    def _reload_reference(self, reference_name: str, start: int, end: int) -> Optional[ReferenceWindow]:
        current = self.queue.reference
        length = self.reference_loader.lengths.get(reference_name)
        if current is None or length is None or reference_name != current.reference_name:
            return None
        if start < 0 or end > length:
            return None
        try:
            return self.reference_loader.fetch(
                reference_name, min(start, current.start), max(end, current.end)
            )
        except ValueError:
            return None

    # -----------------
    # transitions
    # -----------------

    def _after_transition(self, previous: Optional[Target]) -> bool:
        if self.state.phase != Phase.SCANNING_TARGET:
            return False
        if self.state.target is not previous:
            assert self.state.target is not None
            self.load_target(self.state.target)
        return True

    def to_first_target_position(self) -> bool:
        state = to_first_target_position(self.state, self.plan)
        self.check_order()
        self.state = state
        return self._after_transition(None)

    def to_next_target_position(self) -> bool:
        self.state = to_next_target_position(self.state)
        return self.state.phase == Phase.SCANNING_TARGET

    def to_next_target(self) -> bool:
        previous = self.state.target
        self.state = to_next_target(self.state, self.plan)
        return self._after_transition(previous)

    def to_next_ref_id(self) -> bool:
        previous = self.state.target
        self.state = to_next_ref_id(self.state, self.plan)
        if self.state.phase == Phase.DONE:
            return False
        return self._after_transition(previous)

    # -----------------
    # allele extraction
    # -----------------

    def get_alleles(self) -> List[Allele]:
        """Registered alleles overlapping the current position."""
        return self.queue.alleles_at(self.state.position)

    def get_next_alleles(self) -> Optional[List[Allele]]:
        """Advance one position and return its alleles; None when the scan is done."""
        if self.state.phase == Phase.DONE:
            return None
        if self.state.phase == Phase.NOT_STARTED:
            self.to_first_target_position()
        else:
            self.to_next_target_position()
        while self.state.phase != Phase.SCANNING_TARGET:
            if self.state.phase == Phase.BETWEEN_TARGETS:
                self.to_next_target()
            elif self.state.phase == Phase.END_OF_REFERENCE_SEQUENCE:
                if not self.to_next_ref_id():
                    return None
            else:
                return None

        assert self.state.target is not None
        position = self.state.position
        self.queue.update_alignment_queue(position)
        self.queue.update_registered_alleles(position, self.state.target.end)
        return self.get_alleles()

    def reference_base(self, position: Optional[int] = None) -> str:
        window = self.queue.reference
        assert window is not None
        return window.base(self.state.position if position is None else position)
