#!/usr/bin/env python
# coding: utf-8

"""
Test suite for the DE `orchestrator` module.

Usage:
    pytest -v tests/test_orchestrator.py
"""

import os
import time
from concurrent.futures import Future

import numpy as np
import pandas as pd
import pytest

from replicate_engine.core.aggregator import summarize
from replicate_engine.core.combinations import generate_combinations
from replicate_engine.core.engine import DETestAdapter
from replicate_engine.core.errors import ConfigurationError, FitFailure
from replicate_engine.core.orchestrator import (
    WorkerPool,
    de_table_path,
    run_de_combinations,
    run_full_comparison,
    select_de_genes,
)

GENES = [f"G{i}" for i in range(10)]


class StubTest(DETestAdapter):
    """
    DE test returning a fixed table.

    Genes G0-G4 pass default cutoffs. The gene named after the first
    experimental sample also passes, so gene sets differ between
    combinations.
    """

    name = "stub"

    def score(self, counts, sample_to_condition, control_label):
        labels = pd.Series(sample_to_condition)
        first_exp = labels.index[(labels != control_label).to_numpy()][0]
        padj = [0.01] * 5 + [0.5] * 5
        table = pd.DataFrame(
            {"padj": padj, "logFC": [2.0] * 10}, index=list(GENES)
        )
        table.loc[first_exp] = [0.001, -3.0]
        return table


class FailingTest(StubTest):
    """Fails on the single level-2 pair holding both C0 and C1."""

    def score(self, counts, sample_to_condition, control_label):
        if counts.shape[1] == 4 and {"C0", "C1"} <= set(counts.columns):
            raise FitFailure("zero variance")
        return super().score(counts, sample_to_condition, control_label)


class SingularMatrixTest(StubTest):
    """Raises a numpy error, not FitFailure, on the same pair as FailingTest."""

    def score(self, counts, sample_to_condition, control_label):
        if counts.shape[1] == 4 and {"C0", "C1"} <= set(counts.columns):
            raise np.linalg.LinAlgError("Singular matrix")
        return super().score(counts, sample_to_condition, control_label)


class CountingTest(StubTest):
    """Declares its output columns and counts score calls."""

    result_columns = ("padj", "logFC")

    def __init__(self, stat_column="padj"):
        self.stat_column = stat_column
        self.calls = 0

    def score(self, counts, sample_to_condition, control_label):
        self.calls += 1
        return super().score(counts, sample_to_condition, control_label)


class SlowFirstTest(StubTest):
    """Earlier combinations take longer, so they finish last."""

    def score(self, counts, sample_to_condition, control_label):
        order = int(counts.columns[0][1:]) + int(counts.columns[-1][1:])
        time.sleep(0.002 * (20 - order))
        return super().score(counts, sample_to_condition, control_label)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def four_by_four():
    """Count table and conditions with four replicates per condition."""
    samples = [f"C{i}" for i in range(4)] + [f"T{i}" for i in range(4)]
    counts = pd.DataFrame(
        np.arange(80).reshape(10, 8) + 10, index=GENES, columns=samples
    )
    conditions = pd.Series(["ctrl"] * 4 + ["trt"] * 4, index=samples)
    plan = generate_combinations(
        {"ctrl": samples[:4], "trt": samples[4:]}, 30, rng_seed=0
    )
    return counts, conditions, plan


# ============================================================================
# TEST: WORKER POOL
# ============================================================================


class TestWorkerPool:
    """Test WorkerPool."""

    def test_inline_returns_resolved_future(self):
        with WorkerPool(1) as pool:
            future = pool.submit(lambda x: x * 2, 21)

        assert isinstance(future, Future)
        assert future.done()
        assert future.result() == 42

    def test_inline_exception_surfaces_on_result(self):
        def boom():
            raise RuntimeError("boom")

        pool = WorkerPool(1)
        future = pool.submit(boom)

        with pytest.raises(RuntimeError, match="boom"):
            future.result()

    def test_await_all_keeps_submission_order(self):
        def delayed(i):
            time.sleep(0.01 * (5 - i))
            return i

        with WorkerPool(4, "thread") as pool:
            futures = [pool.submit(delayed, i) for i in range(5)]
            assert pool.await_all(futures) == [0, 1, 2, 3, 4]

    @pytest.mark.parametrize("bad", [0, -1, 1.5, True])
    def test_invalid_num_workers(self, bad):
        with pytest.raises(ConfigurationError):
            WorkerPool(bad)

    def test_invalid_backend(self):
        with pytest.raises(ConfigurationError):
            WorkerPool(2, "cluster")


# ============================================================================
# TEST: GENE SELECTION
# ============================================================================


class TestSelectDEGenes:
    """Test select_de_genes."""

    def test_strict_cutoffs(self):
        """Values equal to a cutoff do not pass."""
        table = pd.DataFrame(
            {
                "padj": [0.01, 0.05, 0.01, 0.01, np.nan],
                "logFC": [2.0, 2.0, 1.0, -1.5, 3.0],
            },
            index=["a", "b", "c", "d", "e"],
        )
        genes = select_de_genes(table, "padj", "logFC", 0.05, 1.0)

        assert genes == frozenset({"a", "d"})

    def test_other_columns(self):
        table = pd.DataFrame(
            {"pvalue": [0.001, 0.2], "log2FoldChange": [-2.0, 4.0]},
            index=["x", "y"],
        )
        genes = select_de_genes(table, "pvalue", "log2FoldChange", 0.01, 1.0)

        assert genes == frozenset({"x"})

    def test_missing_column(self):
        table = pd.DataFrame({"padj": [0.01]}, index=["a"])
        with pytest.raises(ConfigurationError, match="logFC"):
            select_de_genes(table, "padj", "logFC", 0.05, 1.0)


# ============================================================================
# TEST: RUNNING COMBINATIONS
# ============================================================================


class TestRunDECombinations:
    """Test run_de_combinations."""

    def test_one_result_per_pair(self, four_by_four):
        counts, conditions, plan = four_by_four
        results = run_de_combinations(
            plan, counts, conditions, "ctrl", StubTest(), verbose=False
        )

        assert sorted(results) == sorted(plan)
        for level in plan:
            assert len(results[level]) == len(plan[level])
            for pair, result in zip(plan[level], results[level]):
                assert result.level == level
                assert result.index == pair.index
                assert not result.failed
                expected = set(GENES[:5]) | {pair.experimental[0]}
                assert result.genes == frozenset(expected)

    def test_parallel_keeps_combination_order(self, four_by_four):
        """Results line up with the plan when later tasks finish first."""
        counts, conditions, plan = four_by_four
        serial = run_de_combinations(
            plan, counts, conditions, "ctrl", StubTest(), verbose=False
        )
        parallel = run_de_combinations(
            plan,
            counts,
            conditions,
            "ctrl",
            SlowFirstTest(),
            num_workers=4,
            backend="thread",
            verbose=False,
        )

        assert parallel == serial

    def test_fit_failure_is_isolated(self, four_by_four):
        """One failing combination does not abort the run."""
        counts, conditions, plan = four_by_four

        with pytest.warns(UserWarning, match="combination_1 failed"):
            results = run_de_combinations(
                plan, counts, conditions, "ctrl", FailingTest(), verbose=False
            )

        failed = [r for level in results.values() for r in level if r.failed]
        assert len(failed) == 1
        assert failed[0].level == 2
        assert failed[0].genes == frozenset()
        assert "zero variance" in failed[0].error
        assert len(results[2]) == len(plan[2])

    def test_any_adapter_error_is_isolated(self, four_by_four):
        """Errors other than FitFailure also fail only their combination."""
        counts, conditions, plan = four_by_four

        with pytest.warns(UserWarning, match="combination_1 failed"):
            results = run_de_combinations(
                plan, counts, conditions, "ctrl", SingularMatrixTest(), verbose=False
            )

        summaries = summarize(results)
        assert summaries[2].n_failed == 1
        assert summaries[3].n_failed == 0
        assert len(summaries[2].counts) == len(plan[2]) - 1

        failed = [r for r in results[2] if r.failed]
        assert failed[0].index == 0
        assert failed[0].error == "LinAlgError: Singular matrix"

    def test_process_backend_matches_serial(self, four_by_four):
        counts, conditions, plan = four_by_four
        serial = run_de_combinations(
            plan, counts, conditions, "ctrl", StubTest(), verbose=False
        )
        processes = run_de_combinations(
            plan,
            counts,
            conditions,
            "ctrl",
            StubTest(),
            num_workers=2,
            backend="process",
            verbose=False,
        )

        assert processes == serial

    def test_column_mismatch_fails_before_scheduling(self, four_by_four):
        counts, conditions, plan = four_by_four
        de_test = CountingTest(stat_column="qvalue")

        with pytest.raises(ConfigurationError, match="qvalue"):
            run_de_combinations(
                plan, counts, conditions, "ctrl", de_test, num_workers=2,
                verbose=False,
            )
        assert de_test.calls == 0

    def test_declared_columns_accepted(self, four_by_four):
        counts, conditions, plan = four_by_four
        de_test = CountingTest()
        run_de_combinations(plan, counts, conditions, "ctrl", de_test, verbose=False)

        assert de_test.calls == sum(len(p) for p in plan.values())

    def test_save_table(self, four_by_four, tmp_path):
        counts, conditions, plan = four_by_four
        run_de_combinations(
            plan,
            counts,
            conditions,
            "ctrl",
            StubTest(),
            save_table=True,
            path=str(tmp_path),
            verbose=False,
        )

        for level, pairs in plan.items():
            for pair in pairs:
                assert os.path.exists(
                    de_table_path(str(tmp_path), "stub", level, pair.index)
                )

        path = de_table_path(str(tmp_path), "stub", 3, 0)
        assert path.endswith(os.path.join("rep_3", "DE_stub_rep_3_comb1.csv"))
        saved = pd.read_csv(path, index_col=0)
        assert list(saved.columns) == ["padj", "logFC"]

    def test_no_tables_by_default(self, four_by_four, tmp_path):
        counts, conditions, plan = four_by_four
        run_de_combinations(
            plan, counts, conditions, "ctrl", StubTest(), path=str(tmp_path),
            verbose=False,
        )

        assert not os.path.exists(os.path.join(str(tmp_path), "DE_tables"))

    def test_verbose_progress(self, four_by_four, capsys):
        counts, conditions, plan = four_by_four
        run_de_combinations(plan, counts, conditions, "ctrl", StubTest())

        out = capsys.readouterr().out
        assert "Start stub test" in out
        assert "rep_2: 6 combinations | done" in out
        assert "rep_3: 4 combinations | done" in out


class TestRunFullComparison:
    """Test run_full_comparison."""

    def test_uses_all_samples(self, four_by_four):
        counts, conditions, _ = four_by_four
        result = run_full_comparison(counts, conditions, "ctrl", StubTest())

        assert result.level == 4
        assert not result.failed
        assert result.genes == frozenset(GENES[:5]) | {"T0"}

    def test_saves_full_table(self, four_by_four, tmp_path):
        counts, conditions, _ = four_by_four
        run_full_comparison(
            counts, conditions, "ctrl", StubTest(), save_table=True,
            path=str(tmp_path),
        )

        assert os.path.exists(
            os.path.join(str(tmp_path), "DE_tables", "DE_stub_full.csv")
        )

    def test_column_mismatch_fails_before_fit(self, four_by_four):
        counts, conditions, _ = four_by_four
        de_test = CountingTest(stat_column="qvalue")

        with pytest.raises(ConfigurationError, match="qvalue"):
            run_full_comparison(counts, conditions, "ctrl", de_test)
        assert de_test.calls == 0

    def test_adapter_error_becomes_failed_result(self, four_by_four):
        counts, conditions, _ = four_by_four
        subset = ["C0", "C1", "T0", "T1"]

        with pytest.warns(UserWarning, match="failed"):
            result = run_full_comparison(
                counts[subset], conditions[subset], "ctrl", SingularMatrixTest()
            )

        assert result.failed
        assert result.level == 2
        assert "LinAlgError" in result.error
