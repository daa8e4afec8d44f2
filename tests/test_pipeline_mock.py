from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from phylomatrix.cli import app
from phylomatrix.core.alignment import Alignment

runner = CliRunner()

BASE = "ACGTTGCAAGCTTGACCTAGGATCCGTACGATCGATGCAA"
VARIANT = BASE[:-1] + "T"
UNRELATED = "TTTTTTTTTTGGGGGGGGGGCCCCCCCCCCAAAAAAAAAA"


def _header(gi: str, seed: str, taxon: str) -> str:
    return f"gi|{gi}|seed_gi|{seed}|taxon|{taxon}|mrca|0"


def _write_fasta(path: Path, records: list[tuple[str, str]]) -> Path:
    path.write_text("".join(f">{header}\n{sequence}\n" for header, sequence in records), encoding="utf-8")
    return path


def _write_list(path: Path, entries: list[Path]) -> Path:
    path.write_text("".join(f"{entry}\n" for entry in entries), encoding="utf-8")
    return path


def test_orthologize_mock_merges_similar_seeds(tmp_path: Path) -> None:
    raw = tmp_path / "raw"
    raw.mkdir()
    first = _write_fasta(
        raw / "1.fa",
        [(_header("1", "1", "s1"), BASE), (_header("11", "1", "s2"), VARIANT)],
    )
    second = _write_fasta(
        raw / "2.fa",
        [(_header("2", "2", "s3"), VARIANT), (_header("12", "2", "s4"), BASE)],
    )
    third = _write_fasta(raw / "3.fa", [(_header("3", "3", "s5"), UNRELATED)])
    alignments = _write_list(tmp_path / "alignments.txt", [first, second, third])
    outdir = tmp_path / "orthologize"

    result = runner.invoke(
        app,
        ["orthologize", "--mock", "--alignments", str(alignments), "--outdir", str(outdir), "--threads", "2"],
    )

    assert result.exit_code == 0, result.stdout

    merged_list = (outdir / "merged.txt").read_text(encoding="utf-8").splitlines()
    assert merged_list == [str(outdir / "merged" / "cluster0.fa"), str(third)]

    merged = Alignment.read(outdir / "merged" / "cluster0.fa")
    assert [defline.seq_id for defline in merged.deflines()] == ["1", "11", "2", "12"]

    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "completed"
    assert manifest["summary"]["clusters"] == 2
    assert manifest["summary"]["merged_clusters"] == 1
    assert manifest["summary"]["singletons"] == 1

    clusters = (outdir / "clusters.tsv").read_text(encoding="utf-8").splitlines()
    assert clusters[0].split("\t")[:3] == ["cluster", "status", "seeds"]
    assert clusters[1].split("\t")[:3] == ["0", "merged", "1,2"]
    assert clusters[2].split("\t")[:3] == ["1", "singleton", "3"]


def test_orthologize_drops_small_singletons(tmp_path: Path) -> None:
    lone = _write_fasta(tmp_path / "5.fa", [(_header("5", "5", "s1"), BASE)])
    alignments = _write_list(tmp_path / "alignments.txt", [lone])
    outdir = tmp_path / "out"

    result = runner.invoke(
        app,
        [
            "orthologize",
            "--mock",
            "--alignments",
            str(alignments),
            "--outdir",
            str(outdir),
            "--min-singleton-sequences",
            "2",
            "--log-file",
            str(tmp_path / "run.jsonl"),
        ],
    )

    assert result.exit_code == 0, result.stdout
    assert (outdir / "merged.txt").read_text(encoding="utf-8") == ""
    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["summary"]["dropped_singletons"] == 1

    events = [json.loads(line) for line in (tmp_path / "run.jsonl").read_text(encoding="utf-8").splitlines()]
    dropped = [event for event in events if event.get("event") == "singleton_dropped"]
    assert dropped and dropped[0]["fields"]["seed"] == "5"


def test_bbmerge_writes_supermatrix_and_tables(tmp_path: Path) -> None:
    rows = [("s1", "AAAAAAAAAA"), ("s2", "AAAAAAAACC"), ("s3", "CCCCCCAAAA"), ("s4", "AAAAAAAAAA")]
    paths = [
        _write_fasta(
            tmp_path / f"{seed}.fa",
            [(_header(f"{seed}{taxon}", seed, taxon), sequence) for taxon, sequence in rows],
        )
        for seed in ("10", "20", "30")
    ]
    alignments = _write_list(tmp_path / "merged.txt", paths)
    taxa = tmp_path / "taxa.tsv"
    taxa.write_text("species\tgenus\ns1\tG1\ns2\tG1\ns3\tG1\ns4\tG2\n", encoding="utf-8")
    outdir = tmp_path / "bbmerge"

    result = runner.invoke(
        app,
        [
            "bbmerge",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--outdir",
            str(outdir),
            "--min-coverage",
            "2",
        ],
    )

    assert result.exit_code == 0, result.stdout

    lines = (outdir / "backbone" / "supermatrix.phy").read_text(encoding="utf-8").splitlines()
    assert lines[0] == "3 20"
    assert lines[1:4] == [
        "s2        AAAAAAAACC",
        "s3        CCCCCCAAAA",
        "s4        AAAAAAAAAA",
    ]
    assert lines[4] == ""
    assert lines[5:] == ["AAAAAAAACC", "CCCCCCAAAA", "AAAAAAAAAA"]

    exemplars = (outdir / "backbone" / "exemplars.tsv").read_text(encoding="utf-8").splitlines()
    assert exemplars[1].split("\t")[:2] == ["G1", "s2"]
    assert exemplars[2].split("\t")[:2] == ["G1", "s3"]

    markers = (outdir / "backbone" / "markers-backbone.tsv").read_text(encoding="utf-8").splitlines()
    assert markers[0] == "taxon\t10.fa\t20.fa"
    assert markers[-1].startswith("# 20.fa\tseed 20")

    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["summary"]["ntax"] == 3
    assert manifest["summary"]["selected_alignments"] == 2


def _backbone_alignments(tmp_path: Path, rows_by_seed: dict[str, list[tuple[str, str]]]) -> Path:
    paths = [
        _write_fasta(
            tmp_path / f"{seed}.fa",
            [(_header(f"{seed}{taxon}", seed, taxon), sequence) for taxon, sequence in rows],
        )
        for seed, rows in rows_by_seed.items()
    ]
    return _write_list(tmp_path / "merged.txt", paths)


def test_bbmerge_keeps_included_taxa_below_min_coverage(tmp_path: Path) -> None:
    rows = [("s1", "AAAAAAAAAA"), ("s2", "AAAAAAAACC"), ("s3", "CCCCCCAAAA"), ("s4", "AAAAAAAAAA")]
    alignments = _backbone_alignments(
        tmp_path,
        {"10": rows, "20": rows, "30": [*rows, ("s5", "AAAAAAAAAA")]},
    )
    taxa = tmp_path / "taxa.tsv"
    taxa.write_text("species\tgenus\ns1\tG1\ns2\tG1\ns3\tG1\ns4\tG2\ns5\tG1\n", encoding="utf-8")
    outdir = tmp_path / "bbmerge"

    result = runner.invoke(
        app,
        [
            "bbmerge",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--outdir",
            str(outdir),
            "--min-coverage",
            "2",
            "--include-taxa",
            "s5",
        ],
    )

    assert result.exit_code == 0, result.stdout

    lines = (outdir / "backbone" / "supermatrix.phy").read_text(encoding="utf-8").splitlines()
    assert lines[0] == "4 20"
    assert lines[1] == "s5        AAAAAAAAAA"
    assert lines[6] == "??????????"

    exemplars = (outdir / "backbone" / "exemplars.tsv").read_text(encoding="utf-8").splitlines()
    assert exemplars[-1].split("\t") == ["G1", "s5", "s5", "included", "0", "1", "yes"]

    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["summary"]["included_taxa"] == 1
    assert manifest["summary"]["ntax"] == 4


def test_bbmerge_unknown_included_taxon_is_a_usage_error(tmp_path: Path) -> None:
    alignments = _backbone_alignments(tmp_path, {"10": [("s1", "ACGT"), ("s2", "ACGA")]})
    taxa = tmp_path / "taxa.tsv"
    taxa.write_text("species\tgenus\ns1\tG1\ns2\tG1\n", encoding="utf-8")

    result = runner.invoke(
        app,
        [
            "bbmerge",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--outdir",
            str(tmp_path / "out"),
            "--include-taxa",
            "Nowhere",
        ],
    )

    assert result.exit_code == 2
    assert "Nowhere" in result.stdout


def test_bbmerge_prune_candidates_drops_disconnected_species(tmp_path: Path) -> None:
    rows = [("s1", "AAAAAAAAAA"), ("s2", "AAAAAAAACC"), ("s3", "CCCCCCAAAA"), ("s4", "AAAAAAAAAA")]
    island = [("s6", "GGGGGGGGGG"), ("s7", "GGGGGGGGGA")]
    alignments = _backbone_alignments(tmp_path, {"10": rows, "20": rows, "40": island, "50": island})
    taxa = tmp_path / "taxa.tsv"
    taxa.write_text(
        "species\tgenus\ns1\tG1\ns2\tG1\ns3\tG1\ns4\tG2\ns6\tG3\ns7\tG3\n",
        encoding="utf-8",
    )
    outdir = tmp_path / "bbmerge"

    result = runner.invoke(
        app,
        [
            "bbmerge",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--outdir",
            str(outdir),
            "--min-coverage",
            "2",
            "--prune-candidates",
            "--log-file",
            str(tmp_path / "run.jsonl"),
        ],
    )

    assert result.exit_code == 0, result.stdout

    lines = (outdir / "backbone" / "supermatrix.phy").read_text(encoding="utf-8").splitlines()
    assert lines[0] == "3 20"
    assert [line.split()[0] for line in lines[1:4]] == ["s2", "s3", "s4"]

    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["summary"]["disconnected_species"] == 2
    assert manifest["summary"]["low_coverage_species"] == 0

    events = [json.loads(line) for line in (tmp_path / "run.jsonl").read_text(encoding="utf-8").splitlines()]
    pruned = [event for event in events if event.get("event") == "candidates_pruned"]
    assert pruned and pruned[0]["fields"]["disconnected"] == ["s6", "s7"]


def test_bbdecompose_writes_clade_directories(tmp_path: Path) -> None:
    taxa = tmp_path / "taxa.tsv"
    taxa.write_text(
        "species\tgenus\ns1\tG1\ns2\tG1\ns3\tG1\ns4\tG2\ns5\tG2\ns6\tG3\n",
        encoding="utf-8",
    )
    backbone = tmp_path / "backbone.dnd"
    backbone.write_text("(((s1,s2),s3),((s4,s6),s5));\n", encoding="utf-8")

    dense = _write_fasta(
        tmp_path / "100.fa",
        [(_header(str(idx), "100", taxon), "ACGTACGTAC") for idx, taxon in enumerate(["s1", "s4", "s5", "s6"])],
    )
    divergent = _write_fasta(
        tmp_path / "200.fa",
        [
            (_header("7", "200", "s1"), "AAAAAAAAAA"),
            (_header("8", "200", "s2"), "CCCCCCCCCC"),
            (_header("9", "200", "s3"), "GGGGGGGGGG"),
        ],
    )
    alignments = _write_list(tmp_path / "merged.txt", [dense, divergent])
    outdir = tmp_path / "bbdecompose"

    result = runner.invoke(
        app,
        [
            "bbdecompose",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--backbone",
            str(backbone),
            "--outdir",
            str(outdir),
        ],
    )

    assert result.exit_code == 0, result.stdout

    written = Alignment.read(outdir / "clades" / "clade0" / "100.fa")
    assert written.species_ids() == ["s4", "s5", "s6"]
    assert not (outdir / "clades" / "clade1").exists()

    clades = (outdir / "clades.tsv").read_text(encoding="utf-8").splitlines()
    assert clades[1].split("\t")[:4] == ["clade0", "G2,G3", "3", "1"]
    assert clades[2].split("\t")[:4] == ["clade1", "G1", "3", "0"]

    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["summary"]["too_divergent"] == 1
    assert manifest["summary"]["clade_alignments"] == 1


def _bbdecompose_inputs(tmp_path: Path) -> tuple[Path, Path]:
    taxa = tmp_path / "taxa.tsv"
    taxa.write_text(
        "species\tgenus\ns1\tG1\ns2\tG1\ns3\tG1\ns4\tG2\ns5\tG2\ns6\tG3\ns7\tG4\n",
        encoding="utf-8",
    )
    backbone = tmp_path / "backbone.dnd"
    backbone.write_text("(((s1,s2),s3),((s4,s6),s5));\n", encoding="utf-8")
    return taxa, backbone


def test_bbdecompose_adds_outgroups_and_writes_marker_table(tmp_path: Path) -> None:
    taxa, backbone = _bbdecompose_inputs(tmp_path)
    classtree = tmp_path / "classification.dnd"
    classtree.write_text("((((s4,s6),s5),s7),((s1,s2),s3));\n", encoding="utf-8")
    dense = _write_fasta(
        tmp_path / "100.fa",
        [(_header(str(idx), "100", taxon), "ACGTACGTAC") for idx, taxon in enumerate(["s1", "s4", "s5", "s6", "s7"])],
    )
    alignments = _write_list(tmp_path / "merged.txt", [dense])
    outdir = tmp_path / "bbdecompose"

    result = runner.invoke(
        app,
        [
            "bbdecompose",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--backbone",
            str(backbone),
            "--outdir",
            str(outdir),
            "--add-outgroups",
            "--classtree",
            str(classtree),
        ],
    )

    assert result.exit_code == 0, result.stdout

    written = Alignment.read(outdir / "clades" / "clade0" / "100.fa")
    assert written.species_ids() == ["s4", "s5", "s6", "s7"]
    assert (outdir / "clades" / "clade0" / "outgroup.txt").read_text(encoding="utf-8") == "s7\n"
    assert not (outdir / "clades" / "clade1").exists()

    markers = (outdir / "markers-clades.tsv").read_text(encoding="utf-8").splitlines()
    assert markers[0] == "taxon\t100.fa"
    assert markers[1:5] == ["s4\t1", "s5\t2", "s6\t3", "s7\t4"]
    assert markers[-1].startswith("# 100.fa\tseed 100")

    assessments = (outdir / "assessments.tsv").read_text(encoding="utf-8").splitlines()
    assert assessments[1].split("\t") == ["100.fa", "0.000000", "clade0"]

    clades = (outdir / "clades.tsv").read_text(encoding="utf-8").splitlines()
    assert clades[1].split("\t")[-1] == "s7"
    assert clades[2].split("\t")[-1] == "s4,s5,s6,s7"

    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["summary"]["outgroup_species"] == 5


def test_bbdecompose_outgroups_need_a_classification_tree(tmp_path: Path) -> None:
    taxa, backbone = _bbdecompose_inputs(tmp_path)
    dense = _write_fasta(tmp_path / "100.fa", [(_header("1", "100", "s4"), "ACGT")])
    alignments = _write_list(tmp_path / "merged.txt", [dense])

    result = runner.invoke(
        app,
        [
            "bbdecompose",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--backbone",
            str(backbone),
            "--outdir",
            str(tmp_path / "out"),
            "--add-outgroups",
        ],
    )

    assert result.exit_code == 2
    assert "--classtree" in result.stdout


def test_bbdecompose_rejects_alignments_sharing_a_file_name(tmp_path: Path) -> None:
    taxa, backbone = _bbdecompose_inputs(tmp_path)
    entries = []
    for run in ("runA", "runB"):
        (tmp_path / run).mkdir()
        entries.append(_write_fasta(tmp_path / run / "cluster1.fa", [(_header("1", "100", "s4"), "ACGT")]))
    alignments = _write_list(tmp_path / "merged.txt", entries)
    outdir = tmp_path / "out"

    result = runner.invoke(
        app,
        [
            "bbdecompose",
            "--alignments",
            str(alignments),
            "--taxa",
            str(taxa),
            "--backbone",
            str(backbone),
            "--outdir",
            str(outdir),
        ],
    )

    assert result.exit_code == 2
    assert "overwrite each other" in result.stdout
    assert not (outdir / "clades").exists()
