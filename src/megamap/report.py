from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>megamap report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    pre { padding: 12px; overflow-x: auto; }
    h1, h2, h3 { margin-top: 1.2em; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    .failed { color: #b00020; font-weight: bold; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>megamap report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>Working directory</th><td><code>{{ config.workdir }}</code></td></tr>
      <tr><th>BAMs</th><td>{% for b in config.bams %}<code>{{ b }}</code><br>{% else %}(none){% endfor %}</td></tr>
      <tr><th>chrom.sizes</th><td><code>{{ config.chrom_sizes }}</code></td></tr>
      <tr><th>Genome id</th><td>{{ config.genome_id or "(none)" }}</td></tr>
      <tr><th>Phasing input</th><td><code>{{ phasing_input or "(none)" }}</code></td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Settings</h3>
    <table>
      <tr><th>Stages</th><td>{{ from_stage }} &rarr; {{ to_stage }}</td></tr>
      <tr><th>Threads</th><td>{{ config.threads }} (hic: {{ config.threads_hic }})</td></tr>
      <tr><th>MAPQ levels</th><td>{{ config.mapq_levels | join(", ") }}</td></tr>
      <tr><th>Separate homologs</th><td>{{ config.separate_homologs }}</td></tr>
      <tr><th>Excluded from diploid</th><td>{{ config.exclude_chr }}</td></tr>
    </table>
  </div>
</div>

<h2>Stages</h2>
<table>
  <tr><th>Stage</th><th>Status</th><th>Runtime (s)</th><th>Details</th></tr>
  {% for o in outcomes %}
  <tr>
    <td>{{ o.stage }}</td>
    <td{% if o.status != "completed" %} class="failed"{% endif %}>{{ o.status }}</td>
    <td>{{ "%.1f" | format(o.runtime_seconds) }}</td>
    <td>{% if o.error %}<code>{{ o.error }}</code>{% else %}{% for k, v in o.details.items() if k != "per_chromosome" %}{{ k }}: {{ v }}<br>{% endfor %}{% endif %}</td>
  </tr>
  {% endfor %}
</table>

{% if plots %}
<h2>Plots</h2>
<div class="grid">
  {% for name, src in plots.items() %}
  <div class="card">
    <h3>{{ name | replace("_", " ") }}</h3>
    <img src="{{ src }}" alt="{{ name }}">
  </div>
  {% endfor %}
</div>
{% endif %}

<h2>Outputs</h2>
<ul>
  {% for p in outputs %}
  <li><code>{{ p }}</code></li>
  {% else %}
  <li>(no final artifacts yet)</li>
  {% endfor %}
  <li><code>pipeline_summary.json</code> (machine-readable summary)</li>
</ul>

<h2>Interpretation notes</h2>
<ul>
  <li>Cross-chromosome contacts are emitted once, by the chromosome that sorts first.</li>
  <li>Reads overlapping phased SNVs of both homologs of a chromosome are excluded from that chromosome's diploid outputs.</li>
  <li>Assignment of chromosomes to the <code>-r</code> / <code>-a</code> homologs is arbitrary.</li>
</ul>

<hr>
<p class="small">megamap {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    config: Mapping[str, Any],
    summary: Mapping[str, Any],
    plots: Optional[Dict[str, str]] = None,
    outputs: Optional[List[str]] = None,
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    phasing_input = config.get("reads_to_homologs") or config.get("phase_table") or config.get("vcf")
    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        config=config,
        phasing_input=phasing_input,
        from_stage=summary.get("from_stage"),
        to_stage=summary.get("to_stage"),
        outcomes=summary.get("outcomes", []),
        plots=plots or {},
        outputs=outputs or [],
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
