from __future__ import annotations

import random
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

READ_LEN = 50
TOY_CHROMS: List[Tuple[str, int]] = [("chr1", 2000), ("chr2", 1500)]
# present in the BAM header but not in chrom.sizes
TOY_EXTRA = ("chrUn", 400)
# 0-based phased SNV positions on chr1
TOY_SNPS = (500, 900)


def _mutate_base(base: str) -> str:
    for alt in ["A", "C", "G", "T"]:
        if alt != base:
            return alt
    return "A"


def _reference(length: int, rng: random.Random) -> str:
    return "".join(rng.choice("ACGT") for _ in range(length))


def _make_mate(
    name: str,
    ref_id: int,
    start0: int,
    seq: str,
    *,
    mate_ref_id: int,
    mate_start0: int,
    is_read1: bool,
    mapq: int,
    mate_mapq: int,
    rt: int,
    rg: str,
    duplicate: bool = False,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    flag = 0x1 | (0x40 if is_read1 else 0x80)
    if duplicate:
        flag |= 0x400
    a.flag = flag
    a.reference_id = ref_id
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = [(0, len(seq))]
    a.next_reference_id = mate_ref_id
    a.next_reference_start = mate_start0
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    a.set_tags(
        [
            ("ip", start0 + 1),
            ("mp", mate_start0 + 1),
            ("MQ", mate_mapq),
            ("rt", rt),
            ("RG", rg),
        ]
    )
    return a


class _PairWriter:
    """Collects Juicer-style read pairs for one experiment."""

    def __init__(self, refs: Dict[str, str], ref_ids: Dict[str, int], rg: str) -> None:
        self.refs = refs
        self.ref_ids = ref_ids
        self.rg = rg
        self.reads: List[pysam.AlignedSegment] = []

    def _seq(self, chrom: str, start0: int, alt_at: Sequence[int] = ()) -> str:
        seq = list(self.refs[chrom][start0 : start0 + READ_LEN])
        for pos0 in alt_at:
            rel = pos0 - start0
            if 0 <= rel < len(seq):
                seq[rel] = _mutate_base(seq[rel])
        return "".join(seq)

    def pair(
        self,
        name: str,
        c1: str,
        s1: int,
        c2: str,
        s2: int,
        *,
        mapq: int = 60,
        alt1: Sequence[int] = (),
        alt2: Sequence[int] = (),
        duplicate: bool = False,
    ) -> None:
        id1, id2 = self.ref_ids[c1], self.ref_ids[c2]
        self.reads.append(
            _make_mate(
                name, id1, s1, self._seq(c1, s1, alt1),
                mate_ref_id=id2, mate_start0=s2, is_read1=True,
                mapq=mapq, mate_mapq=mapq, rt=2, rg=self.rg, duplicate=duplicate,
            )
        )
        self.reads.append(
            _make_mate(
                name, id2, s2, self._seq(c2, s2, alt2),
                mate_ref_id=id1, mate_start0=s1, is_read1=False,
                mapq=mapq, mate_mapq=mapq, rt=3, rg=self.rg, duplicate=duplicate,
            )
        )

    def write(self, path: Path, header: Dict[str, object]) -> None:
        self.reads.sort(key=lambda r: (r.reference_id, r.reference_start))
        with pysam.AlignmentFile(str(path), "wb", header=header) as bam:
            for r in self.reads:
                bam.write(r)
        pysam.index(str(path))


def _header(contigs: Sequence[Tuple[str, int]], rg: str, platform: str) -> Dict[str, object]:
    return {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": c, "LN": n} for c, n in contigs],
        "RG": [{"ID": rg, "SM": "toy", "PL": platform}],
    }


def _write_vcf(outdir: Path, refs: Dict[str, str]) -> Path:
    vcf_path = outdir / "phased.vcf"
    header = pysam.VariantHeader()
    header.add_meta("fileformat", "VCFv4.2")
    header.add_sample("TOY")
    for c, n in TOY_CHROMS:
        header.contigs.add(c, length=n)
    header.formats.add("GT", number=1, type="String", description="Genotype")

    # (chrom, pos0, genotype, phased)
    calls = [
        ("chr1", TOY_SNPS[0], (0, 1), True),
        ("chr1", TOY_SNPS[1], (0, 1), True),
        ("chr1", 1600, (0, 1), False),  # unphased
        ("chr2", 1000, (1, 1), True),  # homozygous
    ]
    with pysam.VariantFile(str(vcf_path), "w", header=header) as vcf:
        for chrom, pos0, gt, phased in calls:
            ref_base = refs[chrom][pos0]
            alt_base = _mutate_base(ref_base)
            rec = vcf.new_record(
                contig=chrom,
                start=pos0,
                stop=pos0 + 1,
                alleles=(ref_base, alt_base),
                id=f"{chrom}:{pos0 + 1}:{ref_base}:{alt_base}",
                qual=60,
                filter="PASS",
            )
            rec.samples["TOY"]["GT"] = gt
            rec.samples["TOY"].phased = phased
            vcf.write(rec)

    vcf_gz = outdir / "phased.vcf.gz"
    pysam.tabix_compress(str(vcf_path), str(vcf_gz), force=True)
    pysam.tabix_index(str(vcf_gz), preset="vcf", force=True)
    return vcf_gz


def make_toy_data(*, outdir: str | Path, platform: Optional[str] = "ILLUMINA") -> Dict[str, object]:
    """Create two tiny Juicer-style experiments, a chrom.sizes table and a phased VCF.

    The outputs include:
    - exp1.bam, exp2.bam (+ .bai), tagged with ip/mp/MQ/rt and one @RG each
    - toy.chrom.sizes
    - phased.vcf.gz (+ .tbi), two phased heterozygous SNVs on chr1

    Experiment 1 holds chr1 pairs whose first mate overlaps the first SNV,
    alternating between the ``-r`` and ``-a`` allele, one read pair carrying
    conflicting alleles, a self-ligation, cross-chromosome pairs, a duplicate,
    a MAPQ 0 pair and a pair on a contig absent from chrom.sizes.

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)
    rng = random.Random(7)

    contigs = TOY_CHROMS + [TOY_EXTRA]
    refs = {c: _reference(n, rng) for c, n in contigs}
    ref_ids = {c: i for i, (c, _) in enumerate(contigs)}

    chrom_sizes = outdir_p / "toy.chrom.sizes"
    chrom_sizes.write_text("".join(f"{c}\t{n}\n" for c, n in TOY_CHROMS), encoding="utf-8")

    snp = TOY_SNPS[0]
    exp1 = _PairWriter(refs, ref_ids, "exp1")
    for i in range(6):
        exp1.pair(f"hap{i}", "chr1", 480 + 2 * i, "chr1", 1200 + 10 * i, alt1=(snp,) if i % 2 else ())
    exp1.pair("conflict", "chr1", 470, "chr1", 880, alt2=(TOY_SNPS[1],))
    exp1.pair("selflig", "chr2", 300, "chr2", 300)
    exp1.pair("inter0", "chr1", 700, "chr2", 600)
    exp1.pair("inter1", "chr1", 720, "chr2", 640)
    exp1.pair("dup0", "chr2", 100, "chr2", 400, duplicate=True)
    exp1.pair("lowq", "chr2", 800, "chr2", 1000, mapq=0)
    exp1.pair("extra0", "chrUn", 50, "chrUn", 200)

    exp2 = _PairWriter(refs, ref_ids, "exp2")
    for i in range(4):
        exp2.pair(f"intra2_{i}", "chr2", 200 + 5 * i, "chr2", 900 + 5 * i)
    exp2.pair("inter2", "chr1", 1500, "chr2", 50)
    exp2.pair("midq", "chr1", 100, "chr1", 300, mapq=10)

    pl = platform or "ILLUMINA"
    bam1 = outdir_p / "exp1.bam"
    bam2 = outdir_p / "exp2.bam"
    exp1.write(bam1, _header(contigs, "exp1", pl))
    exp2.write(bam2, _header(contigs, "exp2", pl))

    vcf_gz = _write_vcf(outdir_p, refs)

    summary: Dict[str, object] = {
        "bams": [str(bam1), str(bam2)],
        "chrom_sizes": str(chrom_sizes),
        "vcf": str(vcf_gz),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
