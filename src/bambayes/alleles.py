from __future__ import annotations

from typing import Dict, Iterable, List, Protocol

from .models import Allele


class HasSpan(Protocol):
    position: int
    length: int


def within_window(start: int, end: int, span: HasSpan) -> bool:
    """True iff ``span`` intersects the half-open window ``[start, end)``.

    Zero-length spans (insertions) are windowed by position only. For a
    degenerate window (``start == end``) the span must cover ``start``.
    """
    pos = int(span.position)
    length = int(span.length)
    if length <= 0:
        if start == end:
            return pos == start
        return start <= pos < end
    if start == end:
        return pos <= start < pos + length
    return pos < end and pos + length > start


def allele_type_key(allele: Allele) -> int:
    """Grouping key ranking alleles by type only (not a positional order)."""
    return int(allele.type)


def allele_order_key(allele: Allele) -> tuple:
    """Deterministic structural order for candidate alleles."""
    return (int(allele.type), allele.position, allele.length, allele.bases)


def alleles_starting_at(position: int, alleles: Iterable[Allele]) -> List[Allele]:
    """Observations for a site: alleles starting at ``position``, one per read.

    A read with an insertion right before ``position`` also has a base at
    ``position``; the allele of highest type wins so a read counts once.
    """
    per_read: Dict[tuple, Allele] = {}
    ordered = sorted(
        (a for a in alleles if a.position == position),
        key=allele_type_key,
    )
    for a in ordered:
        per_read[(a.sample, a.read_name)] = a
    return list(per_read.values())


def group_by_sample(alleles: Iterable[Allele]) -> Dict[str, List[Allele]]:
    groups: Dict[str, List[Allele]] = {}
    for a in alleles:
        groups.setdefault(a.sample, []).append(a)
    return groups


def group_by_allele(alleles: Iterable[Allele]) -> List[List[Allele]]:
    """Group observations of the same variant, preserving first-seen order."""
    groups: Dict[Allele, List[Allele]] = {}
    for a in alleles:
        groups.setdefault(a, []).append(a)
    return list(groups.values())
