from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict

_ALGORITHMS = ("exact", "approximate")
_SAMPLE_NAMING = ("readgroup", "readname")


@dataclass(frozen=True)
class CallerParameters:
    """Operational parameters of a calling run.

    Attributes
    ----------
    ploidy:
        Number of allele copies per sample genotype.
    min_mapping_quality:
        Alignments below this MAPQ are not registered.
    min_base_quality:
        Read bases below this Phred quality do not yield alleles.
    max_mismatches:
        Alignments with more mismatching bases than this are dropped.
    min_alt_probability:
        Minimum probability that a site is polymorphic to report it as variant.
    max_p_value:
        Maximum probability of "no variant in any sample" for a variant call.
    algorithm:
        ``exact`` enumerates every joint genotype; ``approximate`` keeps the
        ``top_k`` genotypes of each sample.
    top_k:
        Per-sample genotypes retained by the approximate normalization.
    max_alleles:
        Upper bound on distinct candidate alleles per site (most supported
        first, reference always kept).
    use_ref_allele:
        Keep reference-matching observations as evidence.
    force_ref_allele:
        Add the reference allele to the candidates even when no read shows it.
    sample_naming:
        ``readgroup`` (RG tag -> SM) or ``readname`` (prefix of the query name).
    sample_delimiter:
        Separator used with ``sample_naming="readname"``.
    bases_before_target, bases_after_target:
        Reference flank loaded around each target.
    include_monomorphic:
        Also write sites without a variant call.
    """

    ploidy: int = 2
    min_mapping_quality: int = 30
    min_base_quality: int = 20
    max_mismatches: int = 10
    min_alt_probability: float = 0.9
    max_p_value: float = 0.01
    algorithm: str = "exact"
    top_k: int = 2
    max_alleles: int = 6
    use_ref_allele: bool = True
    force_ref_allele: bool = True
    sample_naming: str = "readgroup"
    sample_delimiter: str = ":"
    bases_before_target: int = 10
    bases_after_target: int = 10
    include_monomorphic: bool = False
    skip_duplicates: bool = True
    include_secondary: bool = False
    include_supplementary: bool = False

    def validate(self) -> "CallerParameters":
        if self.ploidy < 1:
            raise ValueError("ploidy must be >= 1")
        if self.algorithm not in _ALGORITHMS:
            raise ValueError(f"algorithm must be one of {_ALGORITHMS}, got {self.algorithm!r}")
        if self.sample_naming not in _SAMPLE_NAMING:
            raise ValueError(
                f"sample_naming must be one of {_SAMPLE_NAMING}, got {self.sample_naming!r}"
            )
        if self.sample_naming == "readname" and not self.sample_delimiter:
            raise ValueError("sample_delimiter must be non-empty for readname sample naming")
        if not 0.0 <= self.min_alt_probability <= 1.0:
            raise ValueError("min_alt_probability must be within [0, 1]")
        if not 0.0 <= self.max_p_value <= 1.0:
            raise ValueError("max_p_value must be within [0, 1]")
        if self.top_k < 1:
            raise ValueError("top_k must be >= 1")
        if self.max_alleles < 2:
            raise ValueError("max_alleles must be >= 2")
        if self.bases_before_target < 1 or self.bases_after_target < 0:
            # one base before the target is needed to anchor indels in VCF output
            raise ValueError("bases_before_target must be >= 1 and bases_after_target >= 0")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
