from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Sequence

import matplotlib.pyplot as plt

logger = logging.getLogger(__name__)


def plot_chromosome_counts(
    *,
    counts: Mapping[str, Mapping[str, int]],
    out_png: str | Path,
    title: str = "Contacts per chromosome",
    ylabel: str = "Record count",
) -> None:
    """Grouped bar chart: one group per chromosome, one bar per series.

    Parameters
    ----------
    counts:
        Series name (e.g. ``MAPQ>=1``) -> chromosome -> count. Chromosome order
        follows the first series.
    """
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    series = list(counts)
    chroms: list = []
    for s in series:
        for c in counts[s]:
            if c not in chroms:
                chroms.append(c)

    plt.figure(figsize=(max(6.0, 0.4 * len(chroms) + 2.0), 4.0))
    if chroms and series:
        width = 0.8 / len(series)
        for i, s in enumerate(series):
            xs = [j + i * width for j in range(len(chroms))]
            ys = [int(counts[s].get(c, 0)) for c in chroms]
            plt.bar(xs, ys, width=width, label=s)
        plt.xticks([j + 0.4 - width / 2 for j in range(len(chroms))], chroms, rotation=45, ha="right")
        if len(series) > 1:
            plt.legend()
    plt.ylabel(ylabel)
    plt.title(title)
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()


def plot_stage_runtimes(
    *,
    stages: Sequence[str],
    seconds: Sequence[float],
    out_png: str | Path,
    title: str = "Stage runtimes",
) -> None:
    out_png = Path(out_png)
    out_png.parent.mkdir(parents=True, exist_ok=True)

    plt.figure()
    plt.barh(list(stages), [float(s) for s in seconds])
    plt.xlabel("Seconds")
    plt.title(title)
    plt.gca().invert_yaxis()
    plt.tight_layout()
    plt.savefig(out_png, dpi=160)
    plt.close()
