from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_LENGTH = 400
READ_LENGTH = 60

# (sample, read group)
TOY_SAMPLES: List[Tuple[str, str]] = [("S1", "rg1"), ("S2", "rg2")]

# 0-based positions of the planted variants
TOY_SNP_POS = 100  # heterozygous in S1
TOY_DEL_POS = 250  # heterozygous 2 bp deletion in S2
TOY_DEL_LEN = 2


def _write_fasta(path: Path, contig: str, seq: str) -> None:
    lines = [f">{contig}"]
    for i in range(0, len(seq), 60):
        lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _make_read(
    name: str,
    start0: int,
    seq: str,
    read_group: str,
    cigar: List[Tuple[int, int]],
    mapq: int = 60,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = cigar
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tag("RG", read_group)
    return a


def _reads_over(
    ref_seq: str,
    sample: str,
    read_group: str,
    first_start: int,
    n: int,
    *,
    snp_alt: bool = False,
    deletion: bool = False,
) -> List[pysam.AlignedSegment]:
    """``n`` reads tiled one base apart; every second one carries the variant."""
    reads = []
    for i in range(n):
        start0 = first_start + i
        carries = i % 2 == 0
        if deletion and carries:
            left = TOY_DEL_POS - start0
            right = READ_LENGTH - left
            resume = TOY_DEL_POS + TOY_DEL_LEN
            seq = ref_seq[start0:TOY_DEL_POS] + ref_seq[resume : resume + right]
            cigar = [(0, left), (2, TOY_DEL_LEN), (0, right)]
        else:
            bases = list(ref_seq[start0 : start0 + READ_LENGTH])
            if snp_alt and carries:
                rel = TOY_SNP_POS - start0
                bases[rel] = _mutate_base(bases[rel])
            seq = "".join(bases)
            cigar = [(0, READ_LENGTH)]
        reads.append(_make_read(f"{sample}_{start0}_{i}", start0, seq, read_group, cigar))
    return reads


def make_toy_data(*, outdir: str | Path) -> Dict[str, object]:
    """Create a tiny reference, two-sample BAM and BED suitable for quick demos/tests.

    The outputs include:
    - toy_ref.fa (+ .fai)
    - toy.bam (+ .bai), read groups rg1 (S1) and rg2 (S2)
    - targets.bed with one target around each planted variant

    Returns
    -------
    dict
        Paths to the generated files and the planted variants.
    """
    outdir_p = ensure_outdir(outdir)

    rng = random.Random(7)
    ref_seq = "".join(rng.choice("ACGT") for _ in range(TOY_LENGTH))
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, TOY_CONTIG, ref_seq)
    pysam.faidx(str(ref_fa))

    bam_path = outdir_p / "toy.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": TOY_CONTIG, "LN": len(ref_seq)}],
        "RG": [{"ID": rg, "SM": sm} for sm, rg in TOY_SAMPLES],
    }

    (s1, rg1), (s2, rg2) = TOY_SAMPLES
    reads: List[pysam.AlignedSegment] = []
    reads += _reads_over(ref_seq, s1, rg1, TOY_SNP_POS - 50, 20, snp_alt=True)
    reads += _reads_over(ref_seq, s2, rg2, TOY_SNP_POS - 50, 20)
    reads += _reads_over(ref_seq, s1, rg1, TOY_DEL_POS - 50, 20)
    reads += _reads_over(ref_seq, s2, rg2, TOY_DEL_POS - 50, 20, deletion=True)
    reads.sort(key=lambda r: (r.reference_start, r.query_name))

    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)

    pysam.index(str(bam_path))

    bed_path = outdir_p / "targets.bed"
    bed_path.write_text(
        f"{TOY_CONTIG}\t{TOY_SNP_POS - 20}\t{TOY_SNP_POS + 20}\tsnp_target\n"
        f"{TOY_CONTIG}\t{TOY_DEL_POS - 20}\t{TOY_DEL_POS + 20}\tdel_target\n",
        encoding="utf-8",
    )

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "targets_bed": str(bed_path),
        "outdir": str(outdir_p),
        "planted": [
            {"sample": s1, "pos1": TOY_SNP_POS + 1, "type": "snp"},
            {"sample": s2, "pos1": TOY_DEL_POS, "type": "del", "length": TOY_DEL_LEN},
        ],
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
