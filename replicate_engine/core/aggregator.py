#!/usr/bin/env python
# coding: utf-8

"""
Result Aggregation
Summary statistics of DE gene sets across replicate levels
"""

from typing import AbstractSet, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from replicate_engine.core.errors import InvalidInput
from replicate_engine.core.models import DEResult, LevelSummary


# ============================================================================
# BUILDING BLOCKS
# ============================================================================


def marginal_percent_change(mean_prev: float, mean_next: float) -> float:
    """
    Percent change in mean DE count from one level to the next.

    Returns NaN when the previous mean is zero or undefined.

    Examples
    --------
    >>> marginal_percent_change(100, 105)
    5.0
    """
    if mean_prev == 0 or not np.isfinite(mean_prev) or not np.isfinite(mean_next):
        return float("nan")
    return (mean_next - mean_prev) / mean_prev * 100.0


def level_intersection(results: Sequence[DEResult]) -> FrozenSet[str]:
    """Genes found by every successful result; empty if none succeeded."""
    gene_sets = [r.genes for r in results if not r.failed]
    if not gene_sets:
        return frozenset()
    return frozenset.intersection(*gene_sets)


def true_false_positive_rates(
    genes: AbstractSet[str], ground_truth: AbstractSet[str], universe_size: int
) -> Tuple[float, float]:
    """
    TPR and FPR of a DE gene set against a ground-truth set.

    TPR = |genes ∩ truth| / |truth|
    FPR = |genes \\ truth| / (universe_size - |truth|)

    Zero denominators give NaN.
    """
    n_truth = len(ground_truth)
    n_negative = universe_size - n_truth

    tp = len(genes & ground_truth)
    fp = len(genes - ground_truth)

    tpr = tp / n_truth if n_truth > 0 else float("nan")
    fpr = fp / n_negative if n_negative > 0 else float("nan")
    return tpr, fpr


def de_gene_counts(results: Mapping[int, Sequence[DEResult]]) -> Dict[int, List[int]]:
    """DE gene count of every successful result, per level."""
    return {
        level: [r.n_de for r in level_results if not r.failed]
        for level, level_results in results.items()
    }


def count_failures(results: Mapping[int, Sequence[DEResult]]) -> Dict[int, int]:
    """Number of failed DE fits per level."""
    return {
        level: sum(r.failed for r in level_results)
        for level, level_results in results.items()
    }


# ============================================================================
# SUMMARY
# ============================================================================


def summarize(
    results: Mapping[int, Sequence[DEResult]],
    ground_truth: Optional[AbstractSet[str]] = None,
    universe_size: Optional[int] = None,
) -> Dict[int, LevelSummary]:
    """
    Summarize DE results per replicate level.

    Parameters
    ----------
    results : Mapping[int, Sequence[DEResult]]
        Level -> DE results in combination order
    ground_truth : set of str, optional
        Reference DE genes (usually from the full dataset)
    universe_size : int, optional
        Number of genes tested (filtered gene count). Required with
        ``ground_truth``.

    Returns
    -------
    Dict[int, LevelSummary]
        Level -> summary, levels ascending. Failed fits are left out of the
        statistics and counted in ``n_failed``.
    """
    if ground_truth is not None:
        if universe_size is None:
            raise InvalidInput("universe_size is required with ground_truth")
        if universe_size < len(ground_truth):
            raise InvalidInput(
                f"universe_size ({universe_size}) is smaller than the ground "
                f"truth set ({len(ground_truth)})"
            )
        ground_truth = frozenset(ground_truth)

    summaries: Dict[int, LevelSummary] = {}
    prev_mean = float("nan")

    for level in sorted(results):
        level_results = results[level]
        succeeded = [r for r in level_results if not r.failed]
        counts = tuple(r.n_de for r in succeeded)

        mean_count = float(np.mean(counts)) if counts else float("nan")
        median_count = float(np.median(counts)) if counts else float("nan")

        tpr = fpr = None
        if ground_truth is not None:
            rates = [
                true_false_positive_rates(r.genes, ground_truth, universe_size)
                for r in succeeded
            ]
            tpr = tuple(rate[0] for rate in rates)
            fpr = tuple(rate[1] for rate in rates)

        summaries[level] = LevelSummary(
            level=level,
            counts=counts,
            mean_count=mean_count,
            median_count=median_count,
            intersection=level_intersection(level_results),
            n_combinations=len(level_results),
            n_failed=len(level_results) - len(succeeded),
            pct_change=marginal_percent_change(prev_mean, mean_count),
            tpr=tpr,
            fpr=fpr,
        )
        prev_mean = mean_count

    return summaries


# ============================================================================
# TABLES
# ============================================================================


def summary_to_frame(summaries: Mapping[int, LevelSummary]) -> pd.DataFrame:
    """
    One row per replicate level.

    Columns: level, n_combinations, n_failed, mean_DE, median_DE, min_DE,
    max_DE, pct_change, n_intersect, and mean_TPR / mean_FPR when the
    summaries carry ground-truth rates.
    """
    rows = []
    for level in sorted(summaries):
        s = summaries[level]
        row = {
            "level": level,
            "n_combinations": s.n_combinations,
            "n_failed": s.n_failed,
            "mean_DE": s.mean_count,
            "median_DE": s.median_count,
            "min_DE": min(s.counts) if s.counts else np.nan,
            "max_DE": max(s.counts) if s.counts else np.nan,
            "pct_change": s.pct_change,
            "n_intersect": len(s.intersection),
        }
        if s.tpr is not None:
            row["mean_TPR"] = s.mean_tpr
            row["mean_FPR"] = s.mean_fpr
        rows.append(row)

    return pd.DataFrame(rows).set_index("level") if rows else pd.DataFrame()


def results_to_frame(
    results: Mapping[int, Sequence[DEResult]],
    ground_truth: Optional[AbstractSet[str]] = None,
    universe_size: Optional[int] = None,
) -> pd.DataFrame:
    """
    One row per paired combination, for plotting DE count and TPR/FPR
    distributions by replicate level.
    """
    if ground_truth is not None and universe_size is None:
        raise InvalidInput("universe_size is required with ground_truth")

    rows = []
    for level in sorted(results):
        for r in results[level]:
            row = {
                "level": level,
                "combination": r.index + 1,
                "n_de": np.nan if r.failed else r.n_de,
                "failed": r.failed,
            }
            if ground_truth is not None:
                tpr, fpr = (
                    (np.nan, np.nan)
                    if r.failed
                    else true_false_positive_rates(
                        r.genes, frozenset(ground_truth), universe_size
                    )
                )
                row["tpr"] = tpr
                row["fpr"] = fpr
            rows.append(row)

    return pd.DataFrame(rows)
