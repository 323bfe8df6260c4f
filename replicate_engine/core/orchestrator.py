#!/usr/bin/env python
# coding: utf-8

"""
DE Orchestrator
Runs a DE test on every paired combination of a replicate plan
"""

import os
import time
import warnings
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import pandas as pd

from replicate_engine.core.config import PARALLEL_BACKENDS
from replicate_engine.core.engine import DETestAdapter, samples_by_condition
from replicate_engine.core.errors import ConfigurationError, FitFailure
from replicate_engine.core.models import DEResult, PairedCombination, ReplicateLevelPlan


# ============================================================================
# WORKER POOL
# ============================================================================


class WorkerPool:
    """
    Bounded pool of DE workers.

    With one worker, tasks run inline on ``submit`` and come back as
    already-resolved futures; otherwise they go to a thread or process pool
    of ``num_workers``.

    Parameters
    ----------
    num_workers : int
        Maximum concurrent tasks
    backend : str
        'thread' or 'process'
    """

    def __init__(self, num_workers: int = 1, backend: str = "thread"):
        if (
            isinstance(num_workers, bool)
            or not isinstance(num_workers, int)
            or num_workers < 1
        ):
            raise ConfigurationError("num_workers must be an integer >= 1")
        if backend not in PARALLEL_BACKENDS:
            raise ConfigurationError(f"backend must be one of {PARALLEL_BACKENDS}")

        self.num_workers = num_workers
        self.backend = backend
        self._executor = None

        if num_workers > 1:
            if backend == "thread":
                self._executor = ThreadPoolExecutor(max_workers=num_workers)
            else:
                self._executor = ProcessPoolExecutor(max_workers=num_workers)

    def submit(self, fn: Callable, *args: Any, **kwargs: Any) -> Future:
        """Schedule ``fn(*args, **kwargs)``."""
        if self._executor is not None:
            return self._executor.submit(fn, *args, **kwargs)

        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            # Re-raised by Future.result()
            future.set_exception(e)
        return future

    @staticmethod
    def await_all(futures: Iterable[Future]) -> List[Any]:
        """Wait for every future; results in submission order."""
        return [future.result() for future in futures]

    def shutdown(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()


# ============================================================================
# PERSISTENCE
# ============================================================================


def save_de_table(table: pd.DataFrame, path_hint: str) -> None:
    """Write an unfiltered DE result table to CSV."""
    os.makedirs(os.path.dirname(path_hint) or ".", exist_ok=True)
    table.to_csv(path_hint)


def de_table_path(path: str, software: str, level: int, index: int) -> str:
    """CSV path for one combination's table (combination number is 1-based)."""
    filename = f"DE_{software}_rep_{level}_comb{index + 1}.csv"
    return os.path.join(path, "DE_tables", f"rep_{level}", filename)


# ============================================================================
# SINGLE COMBINATION
# ============================================================================


def select_de_genes(
    table: pd.DataFrame,
    stat_column: str,
    effect_column: str,
    stat_cutoff: float,
    effect_cutoff: float,
) -> FrozenSet[str]:
    """Genes with stat < stat_cutoff and |effect| > effect_cutoff."""
    missing = [c for c in (stat_column, effect_column) if c not in table.columns]
    if missing:
        raise ConfigurationError(
            f"DE result table has no column(s) {missing}; "
            f"available: {list(table.columns)}"
        )

    stat = pd.to_numeric(table[stat_column], errors="coerce")
    effect = pd.to_numeric(table[effect_column], errors="coerce")
    # NaN compares False on both sides
    mask = (stat < stat_cutoff) & (effect.abs() > effect_cutoff)
    return frozenset(str(g) for g in table.index[mask.to_numpy()])


def check_result_columns(de_test: DETestAdapter) -> None:
    """Fail fast when the adapter cannot produce the configured columns."""
    if de_test.result_columns is None:
        return
    missing = [
        c
        for c in (de_test.stat_column, de_test.effect_column)
        if c not in de_test.result_columns
    ]
    if missing:
        raise ConfigurationError(
            f"{de_test.name} results have no column(s) {missing}; "
            f"available: {list(de_test.result_columns)}"
        )


def _run_combination(
    pair: PairedCombination,
    counts: pd.DataFrame,
    labels: pd.Series,
    control: str,
    de_test: DETestAdapter,
    stat_cutoff: float,
    effect_cutoff: float,
    table_path: Optional[str] = None,
) -> DEResult:
    """
    DE test on one paired combination.

    Any error raised by the adapter becomes a failed result so the other
    combinations still run.
    """
    try:
        table = de_test.score(counts, labels, control)
    except Exception as e:
        error = str(e) if isinstance(e, FitFailure) else f"{type(e).__name__}: {e}"
        warnings.warn(
            f"rep_{pair.level}; combination_{pair.index + 1} failed: {error}"
        )
        return DEResult(
            level=pair.level,
            index=pair.index,
            n_tested=len(counts),
            failed=True,
            error=error,
        )

    if table_path is not None:
        save_de_table(table, table_path)

    genes = select_de_genes(
        table, de_test.stat_column, de_test.effect_column, stat_cutoff, effect_cutoff
    )
    return DEResult(
        level=pair.level, index=pair.index, genes=genes, n_tested=len(table)
    )


# ============================================================================
# ALL COMBINATIONS
# ============================================================================


def run_de_combinations(
    plan: ReplicateLevelPlan,
    count_table: pd.DataFrame,
    sample_to_condition: pd.Series,
    control: str,
    de_test: DETestAdapter,
    stat_cutoff: float = 0.05,
    effect_cutoff: float = 1.0,
    num_workers: int = 1,
    backend: str = "thread",
    save_table: bool = False,
    path: str = ".",
    verbose: bool = True,
) -> Dict[int, List[DEResult]]:
    """
    Run the DE test on every paired combination of a plan.

    Parameters
    ----------
    plan : ReplicateLevelPlan
        Output of generate_combinations
    count_table : pd.DataFrame
        Filtered genes x samples count table (read-only)
    sample_to_condition : pd.Series
        Sample -> condition label
    control : str
        Control condition label
    de_test : DETestAdapter
        DE software adapter
    stat_cutoff : float
        Genes need stat < stat_cutoff (DE_cutoff_stat)
    effect_cutoff : float
        Genes need |effect| > effect_cutoff (DE_cutoff_Abs_logFC)
    num_workers : int
        Maximum concurrent DE tests
    backend : str
        'thread' or 'process'
    save_table : bool
        Also write every unfiltered result table as CSV under ``path``
    path : str
        Output directory for saved tables
    verbose : bool
        Print progress messages

    Returns
    -------
    Dict[int, List[DEResult]]
        Level -> results in combination order. Combinations whose DE fit
        failed are present with ``failed=True`` and an empty gene set.
    """
    check_result_columns(de_test)

    if verbose:
        print(
            f"Start {de_test.name} test with {de_test.stat_column} cutoff = "
            f"{stat_cutoff}, abs({de_test.effect_column}) cutoff = {effect_cutoff}"
        )
        print(f"Save result tables to drive: {save_table}")
        print(f"Run with {num_workers} worker(s) ({backend} backend)")

    start_time = time.time()
    futures: Dict[int, List[Future]] = {}

    with WorkerPool(num_workers, backend) as pool:
        for level in sorted(plan):
            futures[level] = []
            for pair in plan[level]:
                samples = list(pair.samples)
                table_path = (
                    de_table_path(path, de_test.name, level, pair.index)
                    if save_table
                    else None
                )
                futures[level].append(
                    pool.submit(
                        _run_combination,
                        pair,
                        count_table[samples],
                        sample_to_condition.loc[samples],
                        control,
                        de_test,
                        stat_cutoff,
                        effect_cutoff,
                        table_path,
                    )
                )

        results: Dict[int, List[DEResult]] = {}
        for level, level_futures in futures.items():
            results[level] = pool.await_all(level_futures)
            if verbose:
                n_failed = sum(r.failed for r in results[level])
                print(
                    f"rep_{level}: {len(results[level])} combinations | done"
                    + (f" ({n_failed} failed)" if n_failed else "")
                )

    if verbose:
        print(f"✔ Completed in {time.time() - start_time:.1f}s")

    return results


def run_full_comparison(
    count_table: pd.DataFrame,
    sample_to_condition: pd.Series,
    control: str,
    de_test: DETestAdapter,
    stat_cutoff: float = 0.05,
    effect_cutoff: float = 1.0,
    save_table: bool = False,
    path: str = ".",
) -> DEResult:
    """
    DE test on all samples, used as ground truth for TPR/FPR.

    The result's level is the smaller condition's replicate count.
    """
    check_result_columns(de_test)
    groups = samples_by_condition(sample_to_condition, control)
    ctrl_ids, exp_ids = list(groups.values())
    pair = PairedCombination(
        level=min(len(ctrl_ids), len(exp_ids)),
        index=0,
        control=tuple(ctrl_ids),
        experimental=tuple(exp_ids),
    )
    samples = list(pair.samples)
    table_path = (
        os.path.join(path, "DE_tables", f"DE_{de_test.name}_full.csv")
        if save_table
        else None
    )
    return _run_combination(
        pair,
        count_table[samples],
        sample_to_condition.loc[samples],
        control,
        de_test,
        stat_cutoff,
        effect_cutoff,
        table_path,
    )
