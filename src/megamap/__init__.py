"""megamap: mega Hi-C contact maps and accessibility tracks from many experiments.

Public API is intentionally small; most users should use the CLI:

    megamap run -c genome.chrom.sizes --juicer-dir ... exp1.bam exp2.bam

"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
