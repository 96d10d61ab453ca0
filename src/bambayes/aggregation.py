"""Combine per-sample genotype likelihoods into joint probabilities.

``probs_by_sample[s][j]`` is log P(observations of sample s | genotypes[j]).
A joint configuration assigns one genotype index per sample; its score is the
sum of the per-sample log-likelihoods plus a log prior over configurations
(uniform unless ``log_prior`` is given). The normalization factor is the
log-sum-exp of all configuration scores, i.e. the log marginal likelihood.
"""

from __future__ import annotations

import logging
import math
from itertools import product
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from .likelihood import Genotype, best_genotype
from .models import Allele
from .utils import log_sum_exp

logger = logging.getLogger(__name__)

# joint configurations enumerated by the exact normalization before refusing
MAX_EXACT_COMBINATIONS = 2_000_000

DEFAULT_TOP_K = 2

# genotype index per (active) sample -> log prior
LogPrior = Callable[[Tuple[int, ...]], float]


def _matrix(
    probs_by_sample: Sequence[Sequence[float]],
    sample_groups: Optional[Sequence[Sequence[Allele]]],
) -> np.ndarray:
    """Rows for samples with observations (all samples when groups are unknown)."""
    rows = [
        list(row)
        for i, row in enumerate(probs_by_sample)
        if sample_groups is None or len(sample_groups[i]) > 0
    ]
    if not rows:
        return np.zeros((0, 0), dtype=np.float64)
    return np.asarray(rows, dtype=np.float64)


def _uniform_log_prior(n_genotypes: int, n_samples: int) -> float:
    return -n_samples * math.log(n_genotypes)


def _joint_scores(
    matrix: np.ndarray,
    index_lists: Sequence[Sequence[int]],
    log_prior: Optional[LogPrior],
) -> Iterator[float]:
    n_samples, n_genotypes = matrix.shape
    uniform = _uniform_log_prior(n_genotypes, n_samples)
    rows = range(n_samples)
    for combo in product(*index_lists):
        score = float(sum(matrix[s, j] for s, j in zip(rows, combo)))
        yield score + (log_prior(combo) if log_prior is not None else uniform)


def bayesian_normalization_factor(
    genotypes: Sequence[Genotype],
    probs_by_sample: Sequence[Sequence[float]],
    sample_groups: Optional[Sequence[Sequence[Allele]]] = None,
    log_prior: Optional[LogPrior] = None,
) -> float:
    """Exact log marginal likelihood over every joint genotype configuration.

    Samples whose group in ``sample_groups`` is empty carry no evidence and
    are left out. Cost is ``len(genotypes) ** n_samples``.

    Raises
    ------
    ValueError
        If the configuration count exceeds ``MAX_EXACT_COMBINATIONS``.
    """
    matrix = _matrix(probs_by_sample, sample_groups)
    n_samples = matrix.shape[0]
    if n_samples == 0:
        return 0.0
    if matrix.shape[1] != len(genotypes):
        raise ValueError("probs_by_sample rows must align with genotypes")
    n_combos = len(genotypes) ** n_samples
    if n_combos > MAX_EXACT_COMBINATIONS:
        raise ValueError(
            f"{n_combos} joint genotype configurations exceed the exact limit "
            f"({MAX_EXACT_COMBINATIONS}); use the approximate normalization"
        )
    index_lists = [range(len(genotypes))] * n_samples
    return log_sum_exp(_joint_scores(matrix, index_lists, log_prior))


def approximate_bayesian_normalization_factor(
    genotypes: Sequence[Genotype],
    probs_by_sample: Sequence[Sequence[float]],
    sample_groups: Optional[Sequence[Sequence[Allele]]] = None,
    log_prior: Optional[LogPrior] = None,
    *,
    top_k: int = DEFAULT_TOP_K,
    prune_log_threshold: Optional[float] = None,
) -> float:
    """Bounded version of :func:`bayesian_normalization_factor`.

    Each sample keeps its ``top_k`` genotypes (ties by genotype index); with
    ``prune_log_threshold`` set, configurations scoring more than that below
    the best retained one are dropped as well. The result sums a subset of the
    exact terms, so it never exceeds the exact value, and grows with both
    ``top_k`` and ``prune_log_threshold``.
    """
    if top_k < 1:
        raise ValueError("top_k must be >= 1")
    matrix = _matrix(probs_by_sample, sample_groups)
    n_samples = matrix.shape[0]
    if n_samples == 0:
        return 0.0
    if matrix.shape[1] != len(genotypes):
        raise ValueError("probs_by_sample rows must align with genotypes")

    index_lists: List[List[int]] = []
    for row in matrix:
        order = np.argsort(-row, kind="stable")[:top_k]
        index_lists.append(sorted(int(j) for j in order))

    scores = list(_joint_scores(matrix, index_lists, log_prior))
    if prune_log_threshold is not None:
        best = max(scores)
        scores = [s for s in scores if s >= best - prune_log_threshold]
    return log_sum_exp(scores)


def most_likely_genotypes_given_observations(
    genotypes: Sequence[Genotype],
    probs_by_sample: Sequence[Sequence[float]],
    normalize: bool = False,
) -> List[Tuple[Genotype, float]]:
    """Best genotype per sample with its log score.

    With ``normalize`` the score is the log posterior under a uniform
    per-sample prior; otherwise it is the raw log-likelihood, only comparable
    within the same observation set.
    """
    out: List[Tuple[Genotype, float]] = []
    for row in probs_by_sample:
        g, lp = best_genotype(list(zip(genotypes, row)))
        if normalize:
            lp = min(lp - log_sum_exp(row), 0.0)
        out.append((g, lp))
    return out
