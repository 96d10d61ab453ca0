import math
from itertools import product

import pytest

from bambayes import aggregation
from bambayes.aggregation import (
    approximate_bayesian_normalization_factor,
    bayesian_normalization_factor,
    most_likely_genotypes_given_observations,
)
from bambayes.likelihood import enumerate_genotypes, prob_observed_alleles_given_genotypes
from bambayes.models import Allele, AlleleType
from bambayes.utils import log_sum_exp


def _obs(kind: AlleleType, base: str, n: int, sample: str, q: int = 25) -> list:
    return [
        Allele(kind, "chr1", 7, 1, base, quality=q, sample=sample, read_name=f"{sample}{base}{i}")
        for i in range(n)
    ]


REF = Allele(AlleleType.REFERENCE, "chr1", 7, 1, "C")
ALT_T = Allele(AlleleType.SUBSTITUTION, "chr1", 7, 1, "T")
ALT_G = Allele(AlleleType.SUBSTITUTION, "chr1", 7, 1, "G")
GENOTYPES = enumerate_genotypes([REF, ALT_T, ALT_G], 2)

SAMPLES = {
    "S1": _obs(AlleleType.REFERENCE, "C", 4, "S1") + _obs(AlleleType.SUBSTITUTION, "T", 3, "S1"),
    "S2": _obs(AlleleType.REFERENCE, "C", 6, "S2"),
    "S3": _obs(AlleleType.SUBSTITUTION, "G", 2, "S3") + _obs(AlleleType.SUBSTITUTION, "T", 1, "S3", q=12),
}


def _matrix(samples=SAMPLES):
    return [[lp for _, lp in prob_observed_alleles_given_genotypes(obs, GENOTYPES)] for obs in samples.values()]


def test_posteriors_sum_to_one() -> None:
    probs = _matrix()
    log_z = bayesian_normalization_factor(GENOTYPES, probs)
    log_prior = -len(probs) * math.log(len(GENOTYPES))
    total = 0.0
    for combo in product(range(len(GENOTYPES)), repeat=len(probs)):
        total += math.exp(sum(row[j] for row, j in zip(probs, combo)) + log_prior - log_z)
    assert math.isclose(total, 1.0, rel_tol=1e-9)


def test_single_sample_matches_log_sum_exp() -> None:
    row = _matrix()[0]
    expected = log_sum_exp(row) - math.log(len(GENOTYPES))
    assert math.isclose(bayesian_normalization_factor(GENOTYPES, [row]), expected, rel_tol=1e-12)


def test_custom_prior_is_used() -> None:
    probs = _matrix()[:1]

    def only_hom_ref(combo):
        return 0.0 if combo == (0,) else -1e6

    assert math.isclose(
        bayesian_normalization_factor(GENOTYPES, probs, log_prior=only_hom_ref),
        probs[0][0],
        rel_tol=1e-12,
    )


def test_samples_without_observations_are_left_out() -> None:
    probs = _matrix()
    groups = [SAMPLES["S1"], [], SAMPLES["S3"]]
    assert math.isclose(
        bayesian_normalization_factor(GENOTYPES, probs, groups),
        bayesian_normalization_factor(GENOTYPES, [probs[0], probs[2]]),
        rel_tol=1e-12,
    )
    assert bayesian_normalization_factor(GENOTYPES, probs, [[], [], []]) == 0.0


def test_exact_refuses_oversized_products(monkeypatch) -> None:
    monkeypatch.setattr(aggregation, "MAX_EXACT_COMBINATIONS", 10)
    with pytest.raises(ValueError, match="approximate"):
        bayesian_normalization_factor(GENOTYPES, _matrix())


def test_approximation_never_exceeds_exact() -> None:
    probs = _matrix()
    exact = bayesian_normalization_factor(GENOTYPES, probs)
    previous = -math.inf
    for k in range(1, len(GENOTYPES) + 1):
        approx = approximate_bayesian_normalization_factor(GENOTYPES, probs, top_k=k)
        assert approx <= exact + 1e-12
        assert approx >= previous - 1e-12
        previous = approx
    assert math.isclose(previous, exact, rel_tol=1e-12)


def test_pruning_is_monotone_in_threshold() -> None:
    probs = _matrix()
    values = [
        approximate_bayesian_normalization_factor(GENOTYPES, probs, top_k=3, prune_log_threshold=t)
        for t in (0.0, 1.0, 5.0, 50.0)
    ]
    for lo, hi in zip(values, values[1:]):
        assert lo <= hi + 1e-12
    assert values[-1] <= approximate_bayesian_normalization_factor(GENOTYPES, probs, top_k=3) + 1e-12


def test_approximation_rejects_bad_top_k() -> None:
    with pytest.raises(ValueError):
        approximate_bayesian_normalization_factor(GENOTYPES, _matrix(), top_k=0)


def test_most_likely_genotypes() -> None:
    probs = _matrix()
    raw = most_likely_genotypes_given_observations(GENOTYPES, probs)
    post = most_likely_genotypes_given_observations(GENOTYPES, probs, normalize=True)

    assert [g for g, _ in raw] == [g for g, _ in post]
    assert raw[0][0] == (REF, ALT_T)
    assert raw[1][0] == (REF, REF)
    for (_, lp_raw), (_, lp_post), row in zip(raw, post, probs):
        assert math.isclose(lp_post, lp_raw - log_sum_exp(row), abs_tol=1e-12)
        assert lp_post <= 0.0
