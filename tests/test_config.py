#!/usr/bin/env python
# coding: utf-8

"""
Test suite for the `config` module.

This collection of tests validates:
- Default settings and DE method registry
- Loading and saving JSON and Excel configurations
- Range checks on every run setting

Usage:
    pytest -v --cov=replicate_engine.core.config
"""

import copy
import json

import pytest

from replicate_engine.core import config as cfg
from replicate_engine.core.config import (
    DEFAULT_DE_METHODS,
    DEFAULT_SETTINGS,
    AnalysisConfig,
    export_default_config,
    get_config,
    load_config,
)
from replicate_engine.core.errors import ConfigurationError


@pytest.fixture(autouse=True)
def restore_global_config():
    """
    Restore the global config after each test so tests do not interfere
    with each other by mutating the singleton.
    """
    original = cfg._global_config
    saved = {
        "settings": copy.deepcopy(original.settings),
        "de_methods": copy.deepcopy(original.de_methods),
    }
    yield
    original.settings = saved["settings"]
    original.de_methods = saved["de_methods"]


# ============================================================================
# TEST: DEFAULTS
# ============================================================================


class TestDefaults:
    """Test default configuration values."""

    def test_default_settings(self):
        config = AnalysisConfig()

        assert config.get_setting("comb_gen_repeat") == 30
        assert config.get_setting("DE_cutoff_stat") == 0.05
        assert config.get_setting("DE_cutoff_Abs_logFC") == 1.0
        assert config.get_setting("filter_cutoff") == 1.0
        assert config.get_setting("num_workers") == 1
        assert config.get_setting("rng_seed") is None
        assert config.get_setting("DE_software") == "DESeq2"
        config.validate()

    def test_defaults_are_copied(self):
        config = AnalysisConfig()
        config.settings["comb_gen_repeat"] = 5
        config.de_methods["DESeq2"]["stat_column"] = "pvalue"

        assert DEFAULT_SETTINGS["comb_gen_repeat"] == 30
        assert DEFAULT_DE_METHODS["DESeq2"]["stat_column"] == "padj"

    def test_global_instance(self):
        assert get_config() is cfg._global_config

    def test_unknown_setting(self):
        with pytest.raises(ConfigurationError, match="Unknown setting"):
            AnalysisConfig().get_setting("nope")

    def test_get_de_method(self):
        method = AnalysisConfig().get_de_method("DESeq2")
        assert method["effect_column"] == "log2FoldChange"
        assert method["requires"] == ["pydeseq2"]

    def test_unknown_de_method(self):
        with pytest.raises(ConfigurationError, match="Available"):
            AnalysisConfig().get_de_method("limma")

    def test_list_de_methods(self):
        df = AnalysisConfig().list_de_methods()

        assert set(df.index) == {"DESeq2"}
        assert "stat_column" in df.columns

    def test_list_recommended_only(self):
        config = AnalysisConfig()
        config.add_custom_de_method(
            "experimental",
            {
                "name": "Experimental",
                "stat_column": "q",
                "effect_column": "fc",
                "recommended": False,
            },
        )
        df = config.list_de_methods(recommended_only=True)
        assert "experimental" not in df.index


# ============================================================================
# TEST: OVERRIDES AND VALIDATION
# ============================================================================


class TestValidation:
    """Test updated and validate."""

    def test_updated_returns_copy(self):
        config = AnalysisConfig()
        new = config.updated(comb_gen_repeat=10, rng_seed=7)

        assert new.get_setting("comb_gen_repeat") == 10
        assert new.get_setting("rng_seed") == 7
        assert config.get_setting("comb_gen_repeat") == 30

    def test_updated_unknown(self):
        with pytest.raises(ConfigurationError, match="Unknown settings"):
            AnalysisConfig().updated(n_boot=10)

    @pytest.mark.parametrize(
        "key,value",
        [
            ("filter_cutoff", -1),
            ("filter_cutoff", "1"),
            ("comb_gen_repeat", 0),
            ("comb_gen_repeat", 2.5),
            ("DE_software", "edgeR"),
            ("DE_cutoff_stat", 0),
            ("DE_cutoff_stat", 1.5),
            ("DE_cutoff_Abs_logFC", -0.5),
            ("num_workers", 0),
            ("num_workers", True),
            ("parallel_backend", "mpi"),
            ("save_table", "yes"),
            ("rng_seed", -1),
            ("rng_seed", 1.5),
            ("compute_ground_truth", 1),
            ("marginal_change_threshold", 0),
        ],
    )
    def test_invalid_values(self, key, value):
        config = AnalysisConfig().updated(**{key: value})
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_valid_overrides(self):
        AnalysisConfig().updated(
            DE_cutoff_stat=1.0,
            DE_cutoff_Abs_logFC=0,
            num_workers=8,
            parallel_backend="process",
            save_table=True,
            rng_seed=0,
        ).validate()

    def test_add_custom_de_method_missing_field(self):
        with pytest.raises(ConfigurationError, match="effect_column"):
            AnalysisConfig().add_custom_de_method(
                "x", {"name": "X", "stat_column": "q"}
            )


# ============================================================================
# TEST: FILES
# ============================================================================


class TestFiles:
    """Test JSON and Excel persistence."""

    def test_json_roundtrip(self, tmp_path):
        path = str(tmp_path / "config.json")
        config = AnalysisConfig().updated(comb_gen_repeat=12, DE_software="DESeq2")
        config.save_to_file(path)

        with open(path) as f:
            raw = json.load(f)
        assert "last_updated" in raw

        loaded = AnalysisConfig(path)
        assert loaded.get_setting("comb_gen_repeat") == 12
        assert loaded.get_setting("DE_software") == "DESeq2"

    def test_missing_file_keeps_defaults(self, tmp_path):
        config = AnalysisConfig(str(tmp_path / "missing.json"))
        assert config.settings == DEFAULT_SETTINGS

    def test_excel_roundtrip(self, tmp_path):
        path = str(tmp_path / "config.xlsx")
        config = AnalysisConfig().updated(comb_gen_repeat=12, DE_software="DESeq2")
        config.add_custom_de_method(
            "fold_change",
            {
                "name": "Fold change",
                "stat_column": "padj",
                "effect_column": "log2FoldChange",
                "requires": [],
            },
        )
        config.export_to_excel(path)

        loaded = AnalysisConfig()
        loaded.load_from_excel(path)

        assert loaded.get_setting("comb_gen_repeat") == 12
        assert loaded.get_setting("DE_software") == "DESeq2"
        assert loaded.get_setting("rng_seed") is None
        assert loaded.get_de_method("DESeq2")["requires"] == ["pydeseq2"]
        assert loaded.get_de_method("fold_change")["requires"] == []

    def test_load_config_json(self, tmp_path):
        path = str(tmp_path / "config.json")
        AnalysisConfig().updated(num_workers=3).save_to_file(path)

        load_config(path)
        assert get_config().get_setting("num_workers") == 3

    def test_load_config_bad_extension(self, tmp_path):
        with pytest.raises(ConfigurationError, match="JSON or Excel"):
            load_config(str(tmp_path / "config.yaml"))

    def test_export_default_config(self, tmp_path):
        json_path = str(tmp_path / "default.json")
        xlsx_path = str(tmp_path / "default.xlsx")
        export_default_config(json_path)
        export_default_config(xlsx_path)

        with open(json_path) as f:
            raw = json.load(f)
        assert raw["settings"]["comb_gen_repeat"] == 30
        assert (tmp_path / "default.xlsx").exists()
