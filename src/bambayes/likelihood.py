"""Genotype likelihoods: P(observed alleles | genotype).

All values are natural-log probabilities. A genotype is a multiset of alleles
of size ``ploidy``, stored as a tuple in canonical order
(:func:`bambayes.alleles.allele_order_key`).

Read model
----------
For an observation ``o`` with Phred quality ``Q`` (error ``e = 10^(-Q/10)``)
and a genotype with allele fractions ``f_a = multiplicity / ploidy``::

    P(o | G) = sum_a f_a * P(o | a)
    P(o | a) = 1 - e      if o is a
             = e / 3      otherwise (errors spread over the 3 other bases)

Observations are independent, so log-likelihoods add. Every result is clamped
to ``[LOG_FLOOR, 0]``; degenerate input (no observations, empty genotype)
returns ``LOG_FLOOR``.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from itertools import combinations_with_replacement
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .alleles import allele_order_key, group_by_allele
from .models import Allele
from .utils import LN3, LOG_FLOOR, floor_log, log_sum_exp, phred_to_log_correct, phred_to_log_error

logger = logging.getLogger(__name__)

Genotype = Tuple[Allele, ...]

# log-likelihoods closer than this are treated as equal when ranking genotypes
TIE_EPSILON = 1e-9

DEFAULT_MAX_ALLELES = 6


def candidate_alleles(
    observed: Iterable[Allele],
    reference_allele: Optional[Allele] = None,
    max_alleles: int = DEFAULT_MAX_ALLELES,
) -> List[Allele]:
    """Distinct alleles to build genotypes from, in canonical order.

    At most ``max_alleles`` are kept, most supported first; the reference
    allele (given or observed) is never dropped.
    """
    support: Dict[Allele, int] = {}
    for a in observed:
        support[a] = support.get(a, 0) + 1
    if reference_allele is not None:
        support.setdefault(reference_allele, 0)

    ranked = sorted(support, key=lambda a: (-support[a], allele_order_key(a)))
    kept = ranked[:max_alleles]
    reference = [a for a in ranked if a.is_reference]
    if reference and reference[0] not in kept:
        kept = kept[: max_alleles - 1] + [reference[0]]
    if len(kept) < len(ranked):
        logger.debug(
            "Bounding candidate alleles at %s:%d from %d to %d",
            kept[0].reference_name,
            kept[0].position,
            len(ranked),
            len(kept),
        )
    return sorted(kept, key=allele_order_key)


def enumerate_genotypes(alleles: Sequence[Allele], ploidy: int) -> List[Genotype]:
    """Every multiset of size ``ploidy`` drawn from ``alleles``."""
    if ploidy < 1:
        raise ValueError("ploidy must be >= 1")
    return list(combinations_with_replacement(alleles, ploidy))


def _log_prob_observation(obs: Allele, log_fractions: Sequence[Tuple[Allele, float]]) -> float:
    log_ok = phred_to_log_correct(obs.quality)
    log_err = phred_to_log_error(obs.quality) - LN3
    terms = [lf + (log_ok if obs == a else log_err) for a, lf in log_fractions]
    return floor_log(log_sum_exp(terms))


def prob_allele_combo_given_genotype(
    allele_combo: Sequence[Sequence[Allele]],
    genotype: Sequence[Allele],
) -> float:
    """log P(observations | genotype).

    ``allele_combo`` holds the observations grouped by allele (see
    :func:`bambayes.alleles.group_by_allele`).
    """
    ploidy = len(genotype)
    if ploidy == 0 or not any(len(group) for group in allele_combo):
        return LOG_FLOOR

    multiplicity = Counter(genotype)
    log_fractions = [(a, math.log(n / ploidy)) for a, n in multiplicity.items()]

    total = 0.0
    for group in allele_combo:
        for obs in group:
            total += _log_prob_observation(obs, log_fractions)
    return total


def prob_observed_alleles_given_genotypes(
    observed: Sequence[Allele],
    genotypes: Sequence[Genotype],
) -> List[Tuple[Genotype, float]]:
    """log P(observed | G) for each supplied genotype, in input order."""
    combo = group_by_allele(observed)
    return [(g, prob_allele_combo_given_genotype(combo, g)) for g in genotypes]


def prob_observed_alleles_given_possible_genotypes(
    observed: Sequence[Allele],
    ploidy: int,
    reference_allele: Optional[Allele] = None,
    max_alleles: int = DEFAULT_MAX_ALLELES,
) -> List[Tuple[Genotype, float]]:
    """Enumerate genotypes from the observed alleles and score each of them."""
    alleles = candidate_alleles(observed, reference_allele, max_alleles)
    if not alleles:
        return []
    return prob_observed_alleles_given_genotypes(observed, enumerate_genotypes(alleles, ploidy))


def count_non_reference(genotype: Sequence[Allele]) -> int:
    return len({a for a in genotype if not a.is_reference})


def genotype_tiebreak_key(genotype: Sequence[Allele]) -> tuple:
    """Simpler hypotheses first, then structural order."""
    return (count_non_reference(genotype), tuple(allele_order_key(a) for a in genotype))


def best_genotype(
    results: Sequence[Tuple[Genotype, float]],
    epsilon: float = TIE_EPSILON,
) -> Tuple[Genotype, float]:
    """Highest-scoring genotype; near-ties go to :func:`genotype_tiebreak_key`."""
    if not results:
        raise ValueError("no genotypes to choose from")
    best_g, best_lp = results[0]
    for g, lp in results[1:]:
        if lp > best_lp + epsilon:
            best_g, best_lp = g, lp
        elif abs(lp - best_lp) <= epsilon and genotype_tiebreak_key(g) < genotype_tiebreak_key(best_g):
            best_g, best_lp = g, lp
    return best_g, best_lp


def genotype_label(genotype: Sequence[Allele]) -> str:
    return "/".join(a.describe() for a in genotype)
