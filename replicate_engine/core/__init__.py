#!/usr/bin/env python
# coding: utf-8

"""
Empirical Replicate Sample Size Analysis

Toolkit for judging RNA-seq replicate adequacy by DE subsampling.

Modules
-------
config : Run settings and DE software registry
combinations : Paired replicate combination generation
engine : Input validation, count filtering, DE test adapters
orchestrator : DE test runs over every paired combination
aggregator : Per-level DE gene statistics
planner : End-to-end analysis and replicate adequacy reports
"""

__version__ = "0.1.0"

# Configuration
from replicate_engine.core.config import (
    AnalysisConfig,
    export_default_config,
    get_config,
    load_config,
)

# Errors and result types
from replicate_engine.core.errors import ConfigurationError, FitFailure, InvalidInput
from replicate_engine.core.models import DEResult, LevelSummary, PairedCombination

# Combination generation
from replicate_engine.core.combinations import (
    generate_combinations,
    n_unique_combinations,
    plan_to_frame,
    replicate_levels,
)

# Differential Expression
from replicate_engine.core.engine import (
    DETestAdapter,
    PDFLogger,
    PyDESeq2Test,
    count_filter,
    get_de_test,
    register_de_adapter,
    validate_condition_table,
    validate_count_table,
)

# Orchestration
from replicate_engine.core.orchestrator import (
    WorkerPool,
    check_result_columns,
    run_de_combinations,
    run_full_comparison,
    select_de_genes,
)

# Aggregation
from replicate_engine.core.aggregator import (
    level_intersection,
    marginal_percent_change,
    results_to_frame,
    summarize,
    summary_to_frame,
    true_false_positive_rates,
)

# Planning
from replicate_engine.core.planner import (
    assess_replicate_adequacy,
    quick_recommendation,
    run_replicate_analysis,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "get_config",
    "load_config",
    "export_default_config",
    "AnalysisConfig",
    # Errors and types
    "InvalidInput",
    "ConfigurationError",
    "FitFailure",
    "PairedCombination",
    "DEResult",
    "LevelSummary",
    # Combinations
    "generate_combinations",
    "n_unique_combinations",
    "replicate_levels",
    "plan_to_frame",
    # Engine
    "validate_count_table",
    "validate_condition_table",
    "count_filter",
    "DETestAdapter",
    "PyDESeq2Test",
    "get_de_test",
    "register_de_adapter",
    "PDFLogger",
    # Orchestration
    "WorkerPool",
    "check_result_columns",
    "run_de_combinations",
    "run_full_comparison",
    "select_de_genes",
    # Aggregation
    "summarize",
    "summary_to_frame",
    "results_to_frame",
    "level_intersection",
    "marginal_percent_change",
    "true_false_positive_rates",
    # Planning
    "run_replicate_analysis",
    "assess_replicate_adequacy",
    "quick_recommendation",
]
