from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_alt_probability_hist(
    *,
    bin_edges: List[float],
    counts: List[int],
    out_png: str | Path,
    title: str = "Site alternate-allele probability",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    widths = [bin_edges[i + 1] - bin_edges[i] for i in range(len(counts))]
    centers = [bin_edges[i] + widths[i] / 2.0 for i in range(len(counts))]

    plt.figure()
    plt.bar(centers, counts, width=widths, align="center")
    plt.xlabel("P(non-reference genotype in any sample)")
    plt.ylabel("Site count")
    plt.yscale("symlog")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_variant_type_counts(
    *,
    variant_type_counts: Dict[str, int],
    out_png: str | Path,
    title: str = "Variant sites by type",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    keys = ["snp", "ins", "del"]
    labels = ["Substitution", "Insertion", "Deletion"]
    values = [int(variant_type_counts.get(k, 0)) for k in keys]

    plt.figure()
    plt.bar(labels, values)
    plt.ylabel("Site count")
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_depth_hist(
    *,
    depth_hist: Dict[str, int],
    out_png: str | Path,
    title: str = "Observations per evaluated site",
    max_bin: int = 60,
) -> None:
    """Bar chart of per-site depth, with everything above ``max_bin`` in one bar."""
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    xs = list(range(0, max_bin + 1))
    ys = [0] * len(xs)
    tail = 0
    for k, v in depth_hist.items():
        d = int(k)
        if d <= max_bin:
            ys[d] += int(v)
        else:
            tail += int(v)

    xticks = list(range(0, max_bin + 1, 10))
    xticklabels = [str(x) for x in xticks]
    if tail > 0:
        xs.append(max_bin + 1)
        ys.append(tail)
        xticks.append(max_bin + 1)
        xticklabels.append(f"{max_bin + 1}+")

    plt.figure()
    plt.bar(xs, ys)
    plt.xlabel("Observations at site")
    plt.ylabel("Site count")
    plt.title(title)
    plt.xticks(xticks, xticklabels)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
