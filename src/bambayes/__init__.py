"""bambayes: Bayesian genotype calling from sorted BAM alignments.

Public API is intentionally small; most users should use the CLI:

    bambayes call --bam reads.bam --ref ref.fa --outdir results/

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
