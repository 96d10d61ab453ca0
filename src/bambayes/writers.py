from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, TextIO, Tuple

import pysam

from . import __version__
from .likelihood import genotype_label
from .models import Allele, AlleleType, SiteCall
from .sources import ReferenceWindow

logger = logging.getLogger(__name__)

_MAX_GQ = 99
_MAX_QUAL = 3000.0

REPORT_COLUMNS = [
    "chrom",
    "pos1",
    "ref",
    "sample",
    "depth",
    "genotype",
    "log_posterior",
    "genotype_log_likelihoods",
    "alt_probability",
    "is_variant",
]


def phred_from_prob(p: float, cap: float) -> float:
    """-10 log10(p), capped for p -> 0."""
    if p <= 0.0:
        return cap
    return min(-10.0 * math.log10(p), cap)


def open_vcf(
    path: str | Path,
    *,
    contigs: Mapping[str, int],
    samples: Sequence[str],
    fasta_path: str | None = None,
) -> pysam.VariantFile:
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.add_meta("source", f"bambayes {__version__}")
    if fasta_path is not None:
        header.add_meta("reference", str(fasta_path))
    for name, length in contigs.items():
        header.contigs.add(name, length=length)
    header.filters.add("LowQual", None, None, "Site does not pass the variant probability thresholds")
    header.info.add("DP", 1, "Integer", "Observations used at the site")
    header.info.add("NS", 1, "Integer", "Samples with observations")
    header.info.add("AP", 1, "Float", "Probability that at least one sample carries a non-reference allele")
    header.info.add("TYPE", ".", "String", "Alternate allele types (snp, ins, del)")
    header.formats.add("GT", 1, "String", "Genotype")
    header.formats.add("GQ", 1, "Integer", "Genotype quality (Phred-scaled 1 - posterior)")
    header.formats.add("DP", 1, "Integer", "Observations for the sample")
    for s in samples:
        header.add_sample(s)
    mode = "wz" if str(path).endswith(".gz") else "w"
    return pysam.VariantFile(str(path), mode, header=header)


def vcf_alleles(site: SiteCall, window: ReferenceWindow) -> Tuple[int, str, List[str], Dict[Allele, int]]:
    """VCF representation of the site's candidate alleles.

    Returns ``(start0, ref, alts, index)`` where ``index`` maps each candidate
    allele to its VCF allele number. Indels are anchored on the preceding
    reference base; at the very start of a contig the following base is used.
    """
    pos = site.position
    variants = [a for a in site.alleles if not a.is_reference]
    has_indel = any(a.type in (AlleleType.INSERTION, AlleleType.DELETION) for a in variants)
    span_end = max([pos + 1] + [a.end for a in variants if a.type == AlleleType.DELETION])

    anchor = pos
    if has_indel:
        if pos - 1 >= window.start:
            anchor = pos - 1
        else:
            span_end = min(window.end, span_end + 1)

    ref = window.slice(anchor, span_end)
    head = window.slice(anchor, pos)

    index: Dict[Allele, int] = {}
    alts: List[str] = []
    for a in site.alleles:
        if a.is_reference:
            index[a] = 0
            continue
        if a.type == AlleleType.SUBSTITUTION:
            alt = head + a.bases + window.slice(pos + 1, span_end)
        elif a.type == AlleleType.INSERTION:
            alt = head + a.bases + window.slice(pos, span_end)
        else:
            alt = head + window.slice(a.end, span_end)
        if alt == ref or not alt:
            logger.debug("Allele %s collapses onto the reference at %d", a.describe(), pos)
            index[a] = 0
            continue
        if alt not in alts:
            alts.append(alt)
        index[a] = alts.index(alt) + 1
    return anchor, ref, alts, index


def _type_label(allele: Allele) -> str:
    return {
        AlleleType.SUBSTITUTION: "snp",
        AlleleType.INSERTION: "ins",
        AlleleType.DELETION: "del",
    }.get(allele.type, "ref")


def write_site(
    vcf: pysam.VariantFile,
    site: SiteCall,
    window: ReferenceWindow,
    *,
    ploidy: int,
) -> None:
    start, ref, alts, index = vcf_alleles(site, window)
    # records need two alleles; "." marks a site without an alternate
    alleles = (ref,) + (tuple(alts) if alts else (".",))
    rec = vcf.new_record(
        contig=site.reference_name,
        start=start,
        stop=start + len(ref),
        alleles=alleles,
        qual=phred_from_prob(site.p_value, _MAX_QUAL),
        filter="PASS" if site.is_variant else "LowQual",
    )
    rec.info["DP"] = sum(s.depth for s in site.samples)
    rec.info["NS"] = len(site.samples)
    rec.info["AP"] = float(site.alt_probability)
    types = [_type_label(a) for a in site.alleles if not a.is_reference and index.get(a, 0) > 0]
    if types:
        rec.info["TYPE"] = tuple(dict.fromkeys(types))

    called = {s.sample: s for s in site.samples}
    for name in vcf.header.samples:
        sg = called.get(name)
        if sg is None:
            rec.samples[name]["GT"] = (None,) * ploidy
            continue
        gt = tuple(sorted(index.get(a, 0) for a in sg.genotype))
        rec.samples[name]["GT"] = gt
        post = math.exp(sg.log_score)
        rec.samples[name]["GQ"] = int(round(phred_from_prob(1.0 - post, _MAX_GQ)))
        rec.samples[name]["DP"] = int(sg.depth)
    vcf.write(rec)


def write_report_header(fh: TextIO) -> None:
    fh.write("\t".join(REPORT_COLUMNS) + "\n")


def write_report_rows(fh: TextIO, site: SiteCall) -> None:
    """One row per sample with observations at the site."""
    labels = [genotype_label(g) for g in site.genotypes]
    for sg, lls in zip(site.samples, site.log_likelihoods):
        gl = ";".join(f"{lab}={ll:.4f}" for lab, ll in zip(labels, lls))
        fh.write(
            f"{site.reference_name}\t{site.position + 1}\t{site.reference_base}\t{sg.sample}\t"
            f"{sg.depth}\t{genotype_label(sg.genotype)}\t{sg.log_score:.6f}\t{gl}\t"
            f"{site.alt_probability:.6f}\t{int(site.is_variant)}\n"
        )
