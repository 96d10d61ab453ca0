from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pysam
from tqdm import tqdm

from .aggregation import (
    MAX_EXACT_COMBINATIONS,
    approximate_bayesian_normalization_factor,
    bayesian_normalization_factor,
    most_likely_genotypes_given_observations,
)
from .alleles import alleles_starting_at, group_by_sample
from .config import CallerParameters
from .likelihood import (
    Genotype,
    candidate_alleles,
    count_non_reference,
    enumerate_genotypes,
    prob_observed_alleles_given_genotypes,
)
from .models import Allele, AlleleType, SampleGenotype, SiteCall
from .samples import DEFAULT_SAMPLE, SampleResolver, collect_sample_names
from .sources import ReferenceLoader, load_targets
from .traversal import Scanner, TargetPlan
from .utils import clamp, ensure_outdir, open_textmaybe_gzip, write_json
from .validation import shared_references
from .writers import open_vcf, write_report_header, write_report_rows, write_site

logger = logging.getLogger(__name__)

_CALLABLE_BASES = frozenset("ACGT")


def log_normalization(
    genotypes: Sequence[Genotype],
    probs_by_sample: Sequence[Sequence[float]],
    params: CallerParameters,
) -> Tuple[float, bool]:
    """Log marginal likelihood of a site, and whether it is exact.

    Falls back to the top-k approximation when asked to, or when the joint
    configuration count is over ``MAX_EXACT_COMBINATIONS``.
    """
    n_combos = len(genotypes) ** len(probs_by_sample)
    if params.algorithm == "exact" and n_combos <= MAX_EXACT_COMBINATIONS:
        return bayesian_normalization_factor(genotypes, probs_by_sample), True
    if params.algorithm == "exact":
        logger.debug(
            "%d joint configurations over the exact limit; using top-%d approximation",
            n_combos,
            params.top_k,
        )
    return (
        approximate_bayesian_normalization_factor(genotypes, probs_by_sample, top_k=params.top_k),
        False,
    )


def decide_site(
    genotypes: Sequence[Genotype],
    probs_by_sample: Sequence[Sequence[float]],
    best_raw: Sequence[Tuple[Genotype, float]],
    log_z: float,
    params: CallerParameters,
) -> Tuple[float, float, float, bool]:
    """Site-level decision.

    Returns ``(alt_probability, p_value, best_probability, is_variant)``.
    ``p_value`` is the posterior of every sample being homozygous reference
    under the uniform prior; the alternate probability is its complement.
    """
    n_samples = len(probs_by_sample)
    log_prior = -n_samples * math.log(len(genotypes))

    hom_ref = [j for j, g in enumerate(genotypes) if all(a.is_reference for a in g)]
    if hom_ref:
        j = hom_ref[0]
        lp = sum(row[j] for row in probs_by_sample) + log_prior - log_z
        p_value = clamp(math.exp(min(lp, 0.0)), 0.0, 1.0)
    else:
        p_value = 0.0
    alt_probability = 1.0 - p_value

    lp_best = sum(lp for _, lp in best_raw) + log_prior - log_z
    best_probability = clamp(math.exp(min(lp_best, 0.0)), 0.0, 1.0)

    carries_alt = any(count_non_reference(g) > 0 for g, _ in best_raw)
    is_variant = (
        carries_alt
        and alt_probability >= params.min_alt_probability
        and p_value <= params.max_p_value
    )
    return alt_probability, p_value, best_probability, is_variant


def call_site(
    reference_name: str,
    position: int,
    reference_base: str,
    registered: Sequence[Allele],
    params: CallerParameters,
    sample_order: Sequence[str] = (),
) -> Optional[SiteCall]:
    """Genotype every sample with observations at ``position``.

    Returns None when no read supports an allele starting at the position.
    """
    observed = alleles_starting_at(position, registered)
    if not observed:
        return None

    reference_allele = None
    if params.force_ref_allele:
        reference_allele = Allele(AlleleType.REFERENCE, reference_name, position, 1, reference_base)
    alleles = candidate_alleles(observed, reference_allele, params.max_alleles)
    genotypes = enumerate_genotypes(alleles, params.ploidy)

    by_sample = group_by_sample(observed)
    rank = {s: i for i, s in enumerate(sample_order)}
    names = sorted(by_sample, key=lambda s: (rank.get(s, len(rank)), s))

    probs_by_sample: List[List[float]] = []
    for name in names:
        scored = prob_observed_alleles_given_genotypes(by_sample[name], genotypes)
        probs_by_sample.append([lp for _, lp in scored])

    log_z, exact = log_normalization(genotypes, probs_by_sample, params)
    best_raw = most_likely_genotypes_given_observations(genotypes, probs_by_sample)
    best_post = most_likely_genotypes_given_observations(genotypes, probs_by_sample, normalize=True)
    alt_probability, p_value, best_probability, is_variant = decide_site(
        genotypes, probs_by_sample, best_raw, log_z, params
    )

    samples = tuple(
        SampleGenotype(sample=name, genotype=g, log_score=lp, depth=len(by_sample[name]))
        for name, (g, lp) in zip(names, best_post)
    )
    return SiteCall(
        reference_name=reference_name,
        position=position,
        reference_base=reference_base,
        alleles=tuple(alleles),
        samples=samples,
        log_likelihoods=tuple(tuple(row) for row in probs_by_sample),
        genotypes=tuple(genotypes),
        log_normalization=log_z,
        alt_probability=alt_probability,
        p_value=p_value,
        best_probability=best_probability,
        is_variant=is_variant,
        exact=exact,
    )


def resolve_samples(
    bam_path: str,
    header: Dict[str, object],
    params: CallerParameters,
) -> Tuple[SampleResolver, List[str]]:
    """Sample resolver for the run and the sample columns of the VCF."""
    resolver = SampleResolver.from_header(
        header,
        params.sample_naming,
        delimiter=params.sample_delimiter,
    )
    if params.sample_naming == "readname":
        # names only exist in the reads; one extra pass over the BAM
        with pysam.AlignmentFile(bam_path, "rb") as pre:
            samples = collect_sample_names(pre.fetch(until_eof=True), resolver)
    else:
        samples = resolver.known_samples()
    if not samples:
        logger.warning("No read groups in the BAM header; all reads go to sample %s", DEFAULT_SAMPLE)
        samples = [DEFAULT_SAMPLE]
    return resolver, samples


def _variant_types(site: SiteCall) -> List[str]:
    labels = {
        AlleleType.SUBSTITUTION: "snp",
        AlleleType.INSERTION: "ins",
        AlleleType.DELETION: "del",
    }
    out: Dict[str, None] = {}
    for sg in site.samples:
        for a in sg.genotype:
            if not a.is_reference:
                out.setdefault(labels[a.type], None)
    return list(out.keys())


def call_variants(
    *,
    bam_path: str,
    fasta_path: str,
    outdir: str | Path,
    params: CallerParameters,
    targets_bed: Optional[str] = None,
    vcf_path: Optional[str] = None,
    report_tsv_gz: Optional[str] = None,
    progress: bool = True,
) -> Dict[str, object]:
    """Main workhorse: scan the targets, genotype each site, write outputs, return summary dict."""
    t0 = time.time()
    params.validate()
    outdir_path = ensure_outdir(outdir)

    if vcf_path is None:
        vcf_path = str(outdir_path / "calls.vcf.gz")
    if report_tsv_gz is None:
        report_tsv_gz = str(outdir_path / "sites.tsv.gz")

    bam = pysam.AlignmentFile(bam_path, "rb")
    loader = ReferenceLoader.open(fasta_path)

    resolver, samples = resolve_samples(bam_path, bam.header.to_dict(), params)
    logger.info("Samples: %s", ", ".join(samples))

    shared = shared_references(bam.references, loader.references)
    targets = load_targets(targets_bed, loader.lengths)
    plan = TargetPlan.from_targets(targets, [r for r in loader.references if r in shared])
    logger.info("Scanning %d target(s), %d bp", plan.n_targets, plan.total_bases)

    scanner = Scanner(plan, loader, lambda ref, start, end: bam.fetch(ref, start, end), params, resolver)
    # unsorted input fails here, before any output file exists
    alignments_checked = scanner.check_order()

    contigs = {r: loader.lengths[r] for r in loader.references}
    vcf = open_vcf(vcf_path, contigs=contigs, samples=samples, fasta_path=fasta_path)
    tsv_fh = open_textmaybe_gzip(report_tsv_gz, "wt")
    write_report_header(tsv_fh)

    # Streaming histogram of site alternate probabilities
    alt_bins = np.linspace(0.0, 1.0, 21)
    alt_counts = np.zeros(len(alt_bins) - 1, dtype=np.int64)

    depth_hist: Dict[int, int] = {}
    variant_type_counts: Dict[str, int] = {}
    counts = {
        "positions_scanned": 0,
        "positions_ambiguous_reference": 0,
        "sites_evaluated": 0,
        "sites_approximate": 0,
        "sites_written": 0,
        "variant_sites": 0,
    }
    unlisted: set = set()

    bar = tqdm(total=plan.total_bases, unit="bp", desc="Calling", disable=not progress)
    try:
        while True:
            registered = scanner.get_next_alleles()
            if registered is None:
                break
            bar.update(1)
            counts["positions_scanned"] += 1

            target = scanner.current_target
            assert target is not None
            position = scanner.current_position
            ref_base = scanner.reference_base()
            if ref_base not in _CALLABLE_BASES:
                counts["positions_ambiguous_reference"] += 1
                continue

            site = call_site(target.reference_name, position, ref_base, registered, params, samples)
            if site is None:
                continue
            counts["sites_evaluated"] += 1
            if not site.exact:
                counts["sites_approximate"] += 1

            alt_counts += np.histogram([site.alt_probability], bins=alt_bins)[0]
            depth = sum(s.depth for s in site.samples)
            depth_hist[depth] = depth_hist.get(depth, 0) + 1

            for s in site.samples:
                if s.sample not in samples and s.sample not in unlisted:
                    unlisted.add(s.sample)
                    logger.warning("Sample %s is not in the BAM header; it is reported in the TSV only", s.sample)

            if site.is_variant:
                counts["variant_sites"] += 1
                for t in _variant_types(site):
                    variant_type_counts[t] = variant_type_counts.get(t, 0) + 1

            write_report_rows(tsv_fh, site)
            if site.is_variant or params.include_monomorphic:
                assert scanner.reference is not None
                write_site(vcf, site, scanner.reference, ploidy=params.ploidy)
                counts["sites_written"] += 1
    finally:
        bar.close()
        tsv_fh.close()
        vcf.close()
        bam.close()
        loader.close()

    counts.update(scanner.queue.counts)
    counts["targets_loaded"] = scanner.targets_loaded
    counts["alignments_checked"] = alignments_checked

    dt = time.time() - t0
    summary = {
        "bam_path": bam_path,
        "fasta_path": fasta_path,
        "targets_bed": targets_bed,
        "samples": samples,
        "parameters": params.to_dict(),
        "vcf_path": str(vcf_path),
        "report_tsv_gz": str(report_tsv_gz),
        "n_targets": plan.n_targets,
        "target_bases": plan.total_bases,
        "counts": counts,
        "variant_type_counts": variant_type_counts,
        "alt_probability_hist": {
            "bin_edges": alt_bins.tolist(),
            "counts": alt_counts.tolist(),
        },
        "depth_hist": {str(k): v for k, v in sorted(depth_hist.items())},
        "runtime_seconds": float(dt),
    }

    write_json(outdir_path / "summary.json", summary)
    return summary
