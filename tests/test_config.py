from __future__ import annotations

from pathlib import Path

import pytest

from phylomatrix.config import (
    BBDecomposeConfig,
    BBMergeConfig,
    OrthologizeConfig,
    environment_overrides,
    load_config,
    merge_command_config,
)
from phylomatrix.exceptions import PhyloMatrixUsageError


def test_defaults_match_pipeline_knobs() -> None:
    assert OrthologizeConfig().overlap_threshold == 0.51
    assert OrthologizeConfig().merge_max_distance == 0.2
    assert BBMergeConfig().backbone_min_coverage == 3
    assert BBDecomposeConfig().clade_min_density == 0.5
    assert BBDecomposeConfig().clade_max_distance == 0.1


def test_environment_overrides_only_declared_knobs() -> None:
    environ = {
        "PHYLOMATRIX_MERGE_MAX_DISTANCE": "0.15",
        "PHYLOMATRIX_CLADE_MAX_DISTANCE": "0.3",
        "PHYLOMATRIX_BACKBONE_MIN_COVERAGE": " ",
    }

    assert environment_overrides(OrthologizeConfig, environ) == {"merge_max_distance": "0.15"}
    assert environment_overrides(BBMergeConfig, environ) == {}


def test_precedence_yaml_then_environment_then_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "phylomatrix.yaml"
    config_path.write_text(
        "bbdecompose:\n  clade_min_density: 0.7\n  clade_max_distance: 0.05\n  threads: 4\n",
        encoding="utf-8",
    )

    cfg = merge_command_config(
        config_path=config_path,
        section="bbdecompose",
        model_cls=BBDecomposeConfig,
        cli_overrides={"clade_min_density": None, "threads": 2},
        environ={"PHYLOMATRIX_CLADE_MAX_DISTANCE": "0.2"},
    )

    assert cfg.clade_min_density == 0.7
    assert cfg.clade_max_distance == 0.2
    assert cfg.threads == 2


def test_invalid_values_become_usage_errors() -> None:
    with pytest.raises(PhyloMatrixUsageError):
        merge_command_config(
            config_path=None,
            section="orthologize",
            model_cls=OrthologizeConfig,
            cli_overrides={"verbose": True, "quiet": True},
            environ={},
        )

    with pytest.raises(PhyloMatrixUsageError):
        merge_command_config(
            config_path=None,
            section="orthologize",
            model_cls=OrthologizeConfig,
            cli_overrides={},
            environ={"PHYLOMATRIX_OVERLAP_THRESHOLD": "1.5"},
        )


def test_load_config_rejects_unknown_sections_and_non_mappings(tmp_path: Path) -> None:
    unknown = tmp_path / "unknown.yaml"
    unknown.write_text("supersmart:\n  foo: 1\n", encoding="utf-8")
    with pytest.raises(PhyloMatrixUsageError):
        load_config(unknown)

    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(PhyloMatrixUsageError):
        load_config(listing)

    with pytest.raises(PhyloMatrixUsageError):
        load_config(tmp_path / "missing.yaml")

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_config(empty).bbmerge is None
