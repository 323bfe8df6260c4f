#!/usr/bin/env python
# coding: utf-8

"""
Replicate Analysis Configuration Database
Centralized configuration for run settings and DE software
"""

import copy
import json
import os
from datetime import datetime
from typing import Any, Dict, Optional

import pandas as pd

from replicate_engine.core.errors import ConfigurationError


# ============================================================================
# DEFAULT CONFIGURATION DATABASE
# ============================================================================

DEFAULT_SETTINGS = {
    'filter_cutoff': 1.0,
    'comb_gen_repeat': 30,
    'DE_software': 'DESeq2',
    'DE_cutoff_stat': 0.05,
    'DE_cutoff_Abs_logFC': 1.0,
    'num_workers': 1,
    'parallel_backend': 'thread',
    'save_table': False,
    'path': '.',
    'rng_seed': None,
    'compute_ground_truth': True,
    'marginal_change_threshold': 5.0,
}

DEFAULT_DE_METHODS = {
    'DESeq2': {
        'name': 'DESeq2 Wald test',
        'adapter': 'PyDESeq2Test',
        'stat_column': 'padj',
        'effect_column': 'log2FoldChange',
        'test': 'Negative binomial GLM, Wald test',
        'requires': ['pydeseq2'],
        'recommended': True,
        'notes': 'Default; statistics delegated to pydeseq2'
    },
}

PARALLEL_BACKENDS = ('thread', 'process')


# ============================================================================
# CONFIGURATION MANAGER
# ============================================================================

class AnalysisConfig:
    """
    Configuration manager for replicate analysis runs.

    Handles loading/saving configurations from files and provides
    centralized access to run settings and DE method information.
    """

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Parameters
        ----------
        config_file : str, optional
            Path to JSON configuration file
        """
        self.settings = copy.deepcopy(DEFAULT_SETTINGS)
        self.de_methods = copy.deepcopy(DEFAULT_DE_METHODS)

        if config_file and os.path.exists(config_file):
            self.load_from_file(config_file)

    def load_from_file(self, filepath: str):
        """
        Load configuration from JSON file.

        Parameters
        ----------
        filepath : str
            Path to JSON configuration file
        """
        with open(filepath, 'r') as f:
            config = json.load(f)

        if 'settings' in config:
            self.settings.update(config['settings'])
        if 'de_methods' in config:
            self.de_methods.update(config['de_methods'])

    def save_to_file(self, filepath: str):
        """
        Save current configuration to JSON file.

        Parameters
        ----------
        filepath : str
            Path to save JSON configuration
        """
        config = {
            'settings': self.settings,
            'de_methods': self.de_methods,
            'last_updated': datetime.now().isoformat()
        }

        with open(filepath, 'w') as f:
            json.dump(config, f, indent=2)

    def load_from_excel(self, filepath: str):
        """
        Load configuration from Excel file.

        Parameters
        ----------
        filepath : str
            Path to Excel file with sheets: Settings, DE_Methods
        """
        sheet_names = pd.ExcelFile(filepath).sheet_names

        if 'Settings' in sheet_names:
            df = pd.read_excel(filepath, sheet_name='Settings')
            for _, row in df.iterrows():
                value = row['value']
                # Empty cells come back as NaN
                if isinstance(value, float) and pd.isna(value):
                    value = None
                self.settings[row['parameter']] = value

        if 'DE_Methods' in sheet_names:
            df = pd.read_excel(filepath, sheet_name='DE_Methods')
            for _, row in df.iterrows():
                method_id = row['method_id']
                info = row.drop(labels=['method_id']).to_dict()
                requires = info.get('requires')
                if isinstance(requires, str):
                    info['requires'] = [r.strip() for r in requires.split(',') if r.strip()]
                elif requires is None or pd.isna(requires):
                    info['requires'] = []
                self.de_methods[method_id] = info

    def export_to_excel(self, filepath: str):
        """
        Export configuration to Excel file.

        Parameters
        ----------
        filepath : str
            Path to save Excel file
        """
        with pd.ExcelWriter(filepath, engine='openpyxl') as writer:
            pd.DataFrame(
                [{'parameter': k, 'value': v} for k, v in self.settings.items()]
            ).to_excel(writer, sheet_name='Settings', index=False)

            methods = pd.DataFrame(self.de_methods).T
            methods['requires'] = methods['requires'].apply(
                lambda r: ','.join(r) if isinstance(r, (list, tuple)) else r
            )
            methods.index.name = 'method_id'
            methods.reset_index().to_excel(
                writer, sheet_name='DE_Methods', index=False
            )

    def get_setting(self, key: str) -> Any:
        """Get a run setting."""
        if key not in self.settings:
            raise ConfigurationError(f"Unknown setting: {key}")
        return self.settings[key]

    def get_de_method(self, method_id: str) -> Dict[str, Any]:
        """Get DE method information."""
        if method_id not in self.de_methods:
            raise ConfigurationError(
                f"Unknown DE_software '{method_id}'. "
                f"Available: {sorted(self.de_methods)}"
            )
        return self.de_methods[method_id]

    def add_custom_de_method(self, method_id: str, method_info: Dict[str, Any]):
        """
        Register a DE method backed by a user adapter.

        Parameters
        ----------
        method_id : str
            Unique method identifier (value of DE_software)
        method_info : Dict
            Method description; must name the stat and effect columns
        """
        required_fields = ['name', 'stat_column', 'effect_column']

        for field in required_fields:
            if field not in method_info:
                raise ConfigurationError(f"Missing required field: {field}")

        self.de_methods[method_id] = method_info

    def list_de_methods(self, recommended_only: bool = False) -> pd.DataFrame:
        """
        List all registered DE methods.

        Parameters
        ----------
        recommended_only : bool
            Only show recommended methods

        Returns
        -------
        pd.DataFrame
            Method summary table
        """
        methods = self.de_methods

        if recommended_only:
            methods = {
                k: v for k, v in methods.items()
                if v.get('recommended', False)
            }

        df = pd.DataFrame(methods).T
        columns = ['name', 'test', 'stat_column', 'effect_column', 'recommended']

        return df[[c for c in columns if c in df.columns]]

    def updated(self, **overrides) -> 'AnalysisConfig':
        """
        Return a copy of this configuration with settings overridden.

        Raises
        ------
        ConfigurationError
            If an override names an unknown setting
        """
        unknown = sorted(set(overrides) - set(self.settings))
        if unknown:
            raise ConfigurationError(f"Unknown settings: {unknown}")

        new = AnalysisConfig()
        new.settings = copy.deepcopy(self.settings)
        new.de_methods = copy.deepcopy(self.de_methods)
        new.settings.update(overrides)
        return new

    def validate(self) -> None:
        """
        Check every run setting against its valid range.

        Raises
        ------
        ConfigurationError
            On the first invalid setting
        """
        s = self.settings

        if not _is_number(s['filter_cutoff']) or s['filter_cutoff'] < 0:
            raise ConfigurationError("filter_cutoff must be a number >= 0")

        if not _is_int(s['comb_gen_repeat']) or s['comb_gen_repeat'] < 1:
            raise ConfigurationError("comb_gen_repeat must be an integer >= 1")

        self.get_de_method(s['DE_software'])

        if not _is_number(s['DE_cutoff_stat']) or not 0 < s['DE_cutoff_stat'] <= 1:
            raise ConfigurationError("DE_cutoff_stat must be in the range (0, 1]")

        if not _is_number(s['DE_cutoff_Abs_logFC']) or s['DE_cutoff_Abs_logFC'] < 0:
            raise ConfigurationError("DE_cutoff_Abs_logFC must be a number >= 0")

        if not _is_int(s['num_workers']) or s['num_workers'] < 1:
            raise ConfigurationError("num_workers must be an integer >= 1")

        if s['parallel_backend'] not in PARALLEL_BACKENDS:
            raise ConfigurationError(
                f"parallel_backend must be one of {PARALLEL_BACKENDS}"
            )

        if not isinstance(s['save_table'], bool):
            raise ConfigurationError("save_table must be True or False")

        if s['rng_seed'] is not None and (
            not _is_int(s['rng_seed']) or s['rng_seed'] < 0
        ):
            raise ConfigurationError("rng_seed must be None or an integer >= 0")

        if not isinstance(s['compute_ground_truth'], bool):
            raise ConfigurationError("compute_ground_truth must be True or False")

        if (
            not _is_number(s['marginal_change_threshold'])
            or s['marginal_change_threshold'] <= 0
        ):
            raise ConfigurationError("marginal_change_threshold must be > 0")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


# ============================================================================
# GLOBAL CONFIGURATION INSTANCE
# ============================================================================

# Create global config instance
_global_config = AnalysisConfig()


def get_config() -> AnalysisConfig:
    """
    Get global configuration instance.

    Returns
    -------
    AnalysisConfig
        Global configuration manager

    Examples
    --------
    >>> config = get_config()
    >>> config.get_setting('comb_gen_repeat')
    30
    """
    return _global_config


def load_config(filepath: str):
    """
    Load configuration from file into global instance.

    Parameters
    ----------
    filepath : str
        Path to configuration file (JSON or Excel)
    """
    if filepath.endswith('.json'):
        _global_config.load_from_file(filepath)
    elif filepath.endswith(('.xlsx', '.xls')):
        _global_config.load_from_excel(filepath)
    else:
        raise ConfigurationError("Config file must be JSON or Excel format")


def export_default_config(filepath: str):
    """
    Export default configuration template.

    Parameters
    ----------
    filepath : str
        Path to save configuration

    Examples
    --------
    >>> export_default_config('my_config.json')
    >>> # Edit, then load
    >>> load_config('my_config.json')
    """
    config = AnalysisConfig()

    if filepath.endswith('.json'):
        config.save_to_file(filepath)
    elif filepath.endswith(('.xlsx', '.xls')):
        config.export_to_excel(filepath)
    else:
        raise ConfigurationError("Filepath must end with .json or .xlsx")
