from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>bambayes report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>bambayes report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>BAM</th><td><code>{{ run.bam_path }}</code></td></tr>
      <tr><th>Reference</th><td><code>{{ run.fasta_path }}</code></td></tr>
      <tr><th>Targets</th><td><code>{{ run.targets_bed or "whole reference" }}</code></td></tr>
      <tr><th>Samples</th><td>{{ run.samples | join(", ") }}</td></tr>
      <tr><th>Targets / bases</th><td>{{ run.n_targets }} / {{ run.target_bases }}</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Model</h3>
    <table>
      <tr><th>Ploidy</th><td>{{ params.ploidy }}</td></tr>
      <tr><th>Normalization</th><td>{{ params.algorithm }}{% if params.algorithm == "approximate" %} (top {{ params.top_k }}){% endif %}</td></tr>
      <tr><th>Min alternate probability</th><td>{{ params.min_alt_probability }}</td></tr>
      <tr><th>Max p-value</th><td>{{ params.max_p_value }}</td></tr>
      <tr><th>Min MAPQ / baseQ</th><td>{{ params.min_mapping_quality }} / {{ params.min_base_quality }}</td></tr>
      <tr><th>Max mismatches per read</th><td>{{ params.max_mismatches }}</td></tr>
    </table>
  </div>
</div>

<h2>Alignments</h2>
<table>
  <tr><th>Seen</th><td>{{ counts.alignments_total }}</td></tr>
  <tr><th>Registered</th><td>{{ counts.alignments_registered }}</td></tr>
  <tr><th>Unmapped</th><td>{{ counts.alignments_unmapped }}</td></tr>
  <tr><th>Low MAPQ</th><td>{{ counts.alignments_skipped_mapq }}</td></tr>
  <tr><th>Too many mismatches</th><td>{{ counts.alignments_skipped_mismatches }}</td></tr>
  <tr><th>Duplicates</th><td>{{ counts.alignments_skipped_duplicates }}</td></tr>
  <tr><th>Secondary / supplementary</th><td>{{ counts.alignments_skipped_secondary }} / {{ counts.alignments_skipped_supplementary }}</td></tr>
  <tr><th>Malformed (skipped)</th><td>{{ counts.alignments_malformed }}</td></tr>
  <tr><th>Reference reloads</th><td>{{ counts.reference_reloads }}</td></tr>
</table>

<h2>Sites</h2>
<table>
  <tr><th>Positions scanned</th><td>{{ counts.positions_scanned }}</td></tr>
  <tr><th>Sites evaluated</th><td>{{ counts.sites_evaluated }}</td></tr>
  <tr><th>Approximate normalization</th><td>{{ counts.sites_approximate }}</td></tr>
  <tr><th>Variant sites</th><td>{{ counts.variant_sites }}</td></tr>
  <tr><th>VCF records</th><td>{{ counts.sites_written }}</td></tr>
</table>

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Alternate probability</h3>
    <img src="{{ plots.alt_probability_hist }}" alt="alternate probability histogram">
  </div>
  <div class="card">
    <h3>Variant types</h3>
    <img src="{{ plots.variant_type_counts }}" alt="variant type counts">
  </div>
</div>
{% if plots.depth_hist %}
<div class="grid" style="margin-top:16px;">
  <div class="card">
    <h3>Depth</h3>
    <img src="{{ plots.depth_hist }}" alt="depth histogram">
  </div>
</div>
{% endif %}

<h2>Outputs</h2>
<ul>
  <li><code>{{ run.vcf_path }}</code> (genotype calls)</li>
  <li><code>{{ run.report_tsv_gz }}</code> (per-site, per-sample genotype likelihoods)</li>
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<h2>Interpretation notes</h2>
<ul>
  <li>Likelihoods assume independent reads and uniform base-calling errors over the three other bases.</li>
  <li>The genotype prior is uniform over joint configurations; no population allele frequencies are used.</li>
  <li>Sites marked <code>LowQual</code> carry a non-reference hypothesis that misses the probability thresholds.</li>
</ul>

<hr>
<p class="small">bambayes {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    run: Dict[str, Any],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        run=run,
        params=run.get("parameters", {}),
        counts=run.get("counts", {}),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.info("Wrote %s", out_path)
    return out_path
