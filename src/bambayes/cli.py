from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import pysam

from . import __version__
from .caller import call_variants
from .config import CallerParameters
from .plotting import plot_alt_probability_hist, plot_depth_hist, plot_variant_type_counts
from .report import render_report
from .toy_data import make_toy_data
from .utils import ensure_outdir
from .validation import check_bam_index, check_sorted_header, ensure_fasta_index, shared_references


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _probability(p: str) -> float:
    v = float(p)
    if not 0.0 <= v <= 1.0:
        raise argparse.ArgumentTypeError(f"Expected a probability in [0, 1], got {p}")
    return v


def _log_path(outdir: Path, name: str) -> Path:
    return outdir / "logs" / name


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    msg = f"{err.__class__.__name__}: {err}"
    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="bambayes",
        description=(
            "bambayes: Bayesian multi-sample genotype calling from coordinate-sorted BAMs "
            "over target regions of a reference genome."
        ),
    )
    p.add_argument("--version", action="version", version=f"bambayes {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # quickstart
    # -----------------
    sub.add_parser(
        "quickstart",
        help="Print ready-to-run recipes for common scenarios.",
    )

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference, two-sample BAM and BED for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    # -----------------
    # call
    # -----------------
    c = sub.add_parser(
        "call",
        help="Genotype every sample in a BAM at each position of the target regions.",
    )
    c.add_argument("--bam", required=True, type=_path_exists, help="Input BAM (coordinate-sorted, indexed).")
    c.add_argument("--ref", required=True, type=_path_exists, help="Reference FASTA (indexed on demand).")
    c.add_argument(
        "--targets",
        default=None,
        type=_path_exists,
        help="BED file of target regions (default: every position of every reference sequence).",
    )
    c.add_argument("--outdir", required=True, help="Output directory.")

    # Model
    c.add_argument("--ploidy", type=int, default=2, help="Allele copies per sample genotype.")
    c.add_argument(
        "--algorithm",
        choices=["exact", "approximate"],
        default="exact",
        help="Joint normalization: full enumeration or per-sample top-k.",
    )
    c.add_argument("--top-k", type=int, default=2, help="Genotypes per sample kept by --algorithm approximate.")
    c.add_argument("--max-alleles", type=int, default=6, help="Maximum candidate alleles per site.")
    c.add_argument(
        "--min-alt-probability",
        type=_probability,
        default=0.9,
        help="Minimum probability of a non-reference genotype to call a variant.",
    )
    c.add_argument(
        "--max-p-value",
        type=_probability,
        default=0.01,
        help="Maximum probability that no sample carries a variant.",
    )
    c.add_argument(
        "--no-ref-allele",
        action="store_true",
        help="Ignore reference-matching bases as evidence.",
    )
    c.add_argument(
        "--no-force-ref-allele",
        action="store_true",
        help="Only build genotypes from observed alleles.",
    )

    # Read filters
    c.add_argument("--min-mapq", type=int, default=30, help="Minimum mapping quality.")
    c.add_argument("--min-baseq", type=int, default=20, help="Minimum base quality for an observation.")
    c.add_argument("--max-mismatches", type=int, default=10, help="Maximum mismatches per alignment.")
    c.add_argument("--keep-duplicates", action="store_true", help="Do not skip duplicate reads.")
    c.add_argument("--include-secondary", action="store_true", help="Include secondary alignments.")
    c.add_argument(
        "--include-supplementary", action="store_true", help="Include supplementary alignments."
    )

    # Samples
    c.add_argument(
        "--sample-naming",
        choices=["readgroup", "readname"],
        default="readgroup",
        help="Sample of a read: RG tag via header SM, or read-name prefix.",
    )
    c.add_argument(
        "--sample-delimiter",
        default=":",
        help="Read-name separator for --sample-naming readname.",
    )

    # Window
    c.add_argument("--bases-before", type=int, default=10, help="Reference bases loaded before each target.")
    c.add_argument("--bases-after", type=int, default=10, help="Reference bases loaded after each target.")

    # Outputs
    c.add_argument(
        "--vcf",
        default=None,
        help="Optional path for the VCF (default: outdir/calls.vcf.gz).",
    )
    c.add_argument(
        "--sites-tsv",
        default=None,
        help="Optional path for per-site likelihoods TSV.GZ (default: outdir/sites.tsv.gz).",
    )
    c.add_argument(
        "--include-monomorphic",
        action="store_true",
        help="Also write evaluated sites without a variant call to the VCF.",
    )
    c.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    c.add_argument("--dry-run", action="store_true", help="Validate inputs and print planned outputs.")
    c.add_argument("--resume", action="store_true", help="Skip if outputs already exist.")

    c.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    return p


def params_from_args(args: argparse.Namespace) -> CallerParameters:
    return CallerParameters(
        ploidy=int(args.ploidy),
        min_mapping_quality=int(args.min_mapq),
        min_base_quality=int(args.min_baseq),
        max_mismatches=int(args.max_mismatches),
        min_alt_probability=float(args.min_alt_probability),
        max_p_value=float(args.max_p_value),
        algorithm=args.algorithm,
        top_k=int(args.top_k),
        max_alleles=int(args.max_alleles),
        use_ref_allele=not bool(args.no_ref_allele),
        force_ref_allele=not bool(args.no_force_ref_allele),
        sample_naming=args.sample_naming,
        sample_delimiter=args.sample_delimiter,
        bases_before_target=int(args.bases_before),
        bases_after_target=int(args.bases_after),
        include_monomorphic=bool(args.include_monomorphic),
        skip_duplicates=not bool(args.keep_duplicates),
        include_secondary=bool(args.include_secondary),
        include_supplementary=bool(args.include_supplementary),
    ).validate()


# -----------------
# Command handlers
# -----------------

def cmd_quickstart() -> int:
    lines = [
        "bambayes quickstart (copy/paste):",
        "",
        "1) Try it on toy data:",
        "   bambayes make-toy-data --outdir toy/",
        "   bambayes call --bam toy/toy.bam --ref toy/toy_ref.fa --targets toy/targets.bed --outdir toy_calls/",
        "   Outputs: toy_calls/calls.vcf.gz, toy_calls/report.html, toy_calls/summary.json",
        "",
        "2) Multi-sample BAM over a target panel (samples from read groups):",
        "   bambayes call \\",
        "     --bam cohort.bam \\",
        "     --ref ref.fa \\",
        "     --targets panel.bed \\",
        "     --outdir results/",
        "",
        "3) Many samples, bounded runtime (per-sample top-3 genotypes):",
        "   bambayes call \\",
        "     --bam cohort.bam \\",
        "     --ref ref.fa \\",
        "     --targets panel.bed \\",
        "     --algorithm approximate --top-k 3 \\",
        "     --outdir results_approx/",
        "",
        "Tip: use --dry-run to validate inputs and print the planned outputs.",
    ]
    print("\n".join(lines))
    return 0


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def cmd_call(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    log_path = _log_path(outdir, "call.log")
    _setup_logging(args.verbose, logfile=None if args.dry_run else log_path)

    logger = logging.getLogger("bambayes")
    logger.info("bambayes %s", __version__)

    try:
        params = params_from_args(args)
        check_bam_index(args.bam)
        with pysam.AlignmentFile(args.bam, "rb") as bam:
            check_sorted_header(bam.header.to_dict())
            bam_refs = list(bam.references)

        if args.dry_run:
            fai = Path(args.ref + ".fai")
            print("Dry-run: inputs look OK.")
            if not fai.exists():
                print(f"FASTA index missing; it will be created: {fai}")
            print(f"BAM reference sequences: {len(bam_refs)}")
            print(f"Parameters: {json.dumps(params.to_dict(), sort_keys=True)}")
            print("Planned outputs:")
            print(f"  calls.vcf.gz -> {args.vcf or outdir / 'calls.vcf.gz'}")
            print(f"  sites.tsv.gz -> {args.sites_tsv or outdir / 'sites.tsv.gz'}")
            print(f"  report.html -> {outdir / 'report.html'}")
            print(f"  summary.json -> {outdir / 'summary.json'}")
            return 0

        outdir = ensure_outdir(outdir)

        if args.resume and (outdir / "summary.json").exists():
            logger.info("Resume enabled: summary.json already exists in %s", outdir)
            print(str(outdir / "report.html"))
            return 0

        ensure_fasta_index(args.ref)
        with pysam.FastaFile(args.ref) as fa:
            shared_references(bam_refs, fa.references)

        run = call_variants(
            bam_path=args.bam,
            fasta_path=args.ref,
            outdir=outdir,
            params=params,
            targets_bed=args.targets,
            vcf_path=args.vcf,
            report_tsv_gz=args.sites_tsv,
            progress=not bool(args.no_progress),
        )

        plots_dir = Path(outdir) / "plots"
        plots_dir.mkdir(parents=True, exist_ok=True)

        alt_png = plots_dir / "alt_probability_hist.png"
        types_png = plots_dir / "variant_type_counts.png"
        depth_png = plots_dir / "depth_hist.png"

        plot_alt_probability_hist(
            bin_edges=run["alt_probability_hist"]["bin_edges"],
            counts=run["alt_probability_hist"]["counts"],
            out_png=alt_png,
        )
        plot_variant_type_counts(variant_type_counts=run["variant_type_counts"], out_png=types_png)
        plot_depth_hist(depth_hist=run["depth_hist"], out_png=depth_png)

        plots_rel = {
            "alt_probability_hist": str(Path("plots") / alt_png.name),
            "variant_type_counts": str(Path("plots") / types_png.name),
            "depth_hist": str(Path("plots") / depth_png.name),
        }

        report_path = render_report(
            outdir=outdir,
            version=__version__,
            run=run,
            plots=plots_rel,
        )

        logger.info(
            "%d variant site(s) out of %d evaluated",
            run["counts"]["variant_sites"],
            run["counts"]["sites_evaluated"],
        )
        print(str(report_path))
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "quickstart":
        return cmd_quickstart()
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)
    if args.cmd == "call":
        return cmd_call(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
