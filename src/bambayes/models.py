from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, List, Tuple


class AlleleType(IntEnum):
    """Kind of variant an allele represents.

    The integer values define the grouping order used by
    :func:`bambayes.alleles.allele_type_key`.
    """

    REFERENCE = 0
    SUBSTITUTION = 1
    INSERTION = 2
    DELETION = 3


@dataclass(frozen=True)
class Allele:
    """A single observed or hypothesized variant at a genomic position.

    Coordinates are 0-based in internal representation.

    Attributes
    ----------
    type:
        One of :class:`AlleleType`.
    reference_name:
        Contig name as present in the BAM/FASTA.
    position:
        0-based reference position of the first affected base. Insertions sit
        at the reference base that follows the inserted sequence.
    length:
        Number of reference bases spanned (0 for insertions).
    bases:
        Supporting bases: the read base(s) for reference/substitution alleles,
        the inserted sequence for insertions, empty for deletions.
    quality:
        Phred-scaled quality of the observation.
    qualities:
        Per-base Phred qualities backing ``quality``.
    sample:
        Sample the supporting read belongs to.
    read_name:
        Query name of the supporting read.
    allele_id:
        Opaque arena id (see :class:`bambayes.registry.AlleleArena`); -1 for
        hypotheses that were never registered.

    Only ``type``, ``reference_name``, ``position``, ``length`` and ``bases``
    take part in equality and hashing, so two reads supporting the same variant
    yield equal alleles.
    """

    type: AlleleType
    reference_name: str
    position: int
    length: int
    bases: str
    quality: int = field(default=0, compare=False)
    qualities: Tuple[int, ...] = field(default=(), compare=False)
    sample: str = field(default="", compare=False)
    read_name: str = field(default="", compare=False)
    allele_id: int = field(default=-1, compare=False)

    @property
    def end(self) -> int:
        return self.position + self.length

    @property
    def is_reference(self) -> bool:
        return self.type == AlleleType.REFERENCE

    def describe(self) -> str:
        if self.type == AlleleType.REFERENCE:
            return f"ref:{self.bases}"
        if self.type == AlleleType.SUBSTITUTION:
            return f"snp:{self.bases}"
        if self.type == AlleleType.INSERTION:
            return f"ins:{self.bases}"
        return f"del:{self.length}"


@dataclass
class RegisteredAlignment:
    """An alignment admitted into the scan queue.

    ``allele_ids`` reference alleles held in the arena, in read order.
    """

    alignment: Any  # pysam.AlignedSegment or an object with the same interface
    allele_ids: List[int]
    mismatches: int
    sample: str

    @property
    def position(self) -> int:
        return int(self.alignment.reference_start)

    @property
    def length(self) -> int:
        return int(self.alignment.reference_end) - int(self.alignment.reference_start)

    @property
    def end(self) -> int:
        return int(self.alignment.reference_end)


@dataclass(frozen=True)
class Target:
    """A 0-based half-open interval to scan."""

    reference_name: str
    start: int
    end: int
    name: str = ""

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class SampleGenotype:
    """Best genotype for one sample at a site."""

    sample: str
    genotype: Tuple[Allele, ...]
    log_score: float
    depth: int


@dataclass(frozen=True)
class SiteCall:
    """Per-position result handed to the output writers."""

    reference_name: str
    position: int
    reference_base: str
    alleles: Tuple[Allele, ...]  # distinct candidate alleles, reference first
    samples: Tuple[SampleGenotype, ...]
    log_likelihoods: Tuple[Tuple[float, ...], ...]  # per sample, per genotype
    genotypes: Tuple[Tuple[Allele, ...], ...]
    log_normalization: float
    alt_probability: float
    p_value: float
    best_probability: float
    is_variant: bool
    exact: bool = True  # normalization enumerated every joint configuration
