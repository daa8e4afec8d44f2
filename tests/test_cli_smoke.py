from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from phylomatrix import __version__
from phylomatrix.cli import app

runner = CliRunner()


def _write_alignment_list(tmp_path: Path) -> Path:
    alignment = tmp_path / "1.fa"
    alignment.write_text(">gi|1|seed_gi|1|taxon|s1|mrca|0\nACGT\n", encoding="utf-8")
    list_path = tmp_path / "alignments.txt"
    list_path.write_text(f"{alignment}\n", encoding="utf-8")
    return list_path


def _write_taxa(tmp_path: Path) -> Path:
    taxa = tmp_path / "taxa.tsv"
    taxa.write_text("species\tgenus\ns1\tG1\n", encoding="utf-8")
    return taxa


def test_root_help_smoke() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "orthologize" in result.stdout
    assert "bbmerge" in result.stdout
    assert "bbdecompose" in result.stdout


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_orthologize_dry_run_writes_manifest(tmp_path: Path) -> None:
    outdir = tmp_path / "run_orthologize"
    result = runner.invoke(
        app,
        [
            "orthologize",
            "--mock",
            "--alignments",
            str(_write_alignment_list(tmp_path)),
            "--outdir",
            str(outdir),
            "--dry-run",
        ],
    )

    assert result.exit_code == 0, result.stdout
    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["command"] == "orthologize"
    assert manifest["status"] == "dry-run"
    assert manifest["tool_versions"]["muscle"] == "mock"
    assert manifest["parameters"]["overlap_threshold"] == 0.51
    assert not (outdir / "merged.txt").exists()


def test_bbmerge_dry_run_writes_manifest(tmp_path: Path) -> None:
    outdir = tmp_path / "run_bbmerge"
    result = runner.invoke(
        app,
        [
            "bbmerge",
            "--alignments",
            str(_write_alignment_list(tmp_path)),
            "--taxa",
            str(_write_taxa(tmp_path)),
            "--outdir",
            str(outdir),
            "--dry-run",
        ],
    )

    assert result.exit_code == 0, result.stdout
    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["command"] == "bbmerge"
    assert manifest["status"] == "dry-run"
    assert not (outdir / "backbone" / "supermatrix.phy").exists()


def test_bbdecompose_dry_run_writes_manifest(tmp_path: Path) -> None:
    backbone = tmp_path / "backbone.dnd"
    backbone.write_text("((s1,s2),s3);\n", encoding="utf-8")
    outdir = tmp_path / "run_bbdecompose"

    result = runner.invoke(
        app,
        [
            "bbdecompose",
            "--alignments",
            str(_write_alignment_list(tmp_path)),
            "--taxa",
            str(_write_taxa(tmp_path)),
            "--backbone",
            str(backbone),
            "--outdir",
            str(outdir),
            "--dry-run",
        ],
    )

    assert result.exit_code == 0, result.stdout
    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["command"] == "bbdecompose"
    assert manifest["status"] == "dry-run"
    assert not (outdir / "clades").exists()


def test_missing_required_inputs_are_usage_errors(tmp_path: Path) -> None:
    result = runner.invoke(app, ["bbmerge", "--outdir", str(tmp_path / "out")])
    assert result.exit_code == 2
    assert "Missing alignment list" in result.stdout

    result = runner.invoke(
        app,
        [
            "bbdecompose",
            "--alignments",
            str(_write_alignment_list(tmp_path)),
            "--taxa",
            str(tmp_path / "missing.tsv"),
            "--backbone",
            str(tmp_path / "missing.dnd"),
            "--outdir",
            str(tmp_path / "out"),
        ],
    )
    assert result.exit_code == 2


def test_environment_knob_reaches_manifest(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PHYLOMATRIX_MERGE_MAX_DISTANCE", "0.05")
    outdir = tmp_path / "run_env"

    result = runner.invoke(
        app,
        [
            "orthologize",
            "--mock",
            "--alignments",
            str(_write_alignment_list(tmp_path)),
            "--outdir",
            str(outdir),
            "--dry-run",
        ],
    )

    assert result.exit_code == 0, result.stdout
    manifest = json.loads((outdir / "phylomatrix_manifest.json").read_text(encoding="utf-8"))
    assert manifest["parameters"]["merge_max_distance"] == 0.05
