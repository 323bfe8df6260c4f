#!/usr/bin/env python
# coding: utf-8

"""
Replicate Combination Generator

Builds, for every replicate level n in [2, N-1], a bounded set of unique
n-sized sample subsets per condition and pairs them between the two
conditions. Levels where every subset fits under the per-level cap are
enumerated exhaustively; larger levels are sampled at random with rejection
of duplicates, from one explicit, seeded generator.
"""

import itertools
import warnings
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
import pandas as pd
from scipy.special import comb

from replicate_engine.core.errors import ConfigurationError, InvalidInput
from replicate_engine.core.models import (
    Combination,
    PairedCombination,
    ReplicateLevelPlan,
)

# Draw budget per requested combination before falling back to enumeration
MAX_DRAWS_PER_COMBINATION = 50


# ============================================================================
# COMBINATION COUNTS
# ============================================================================


def n_unique_combinations(n_samples: int, level: int) -> int:
    """
    Number of unique ``level``-sized subsets of ``n_samples`` samples.

    Examples
    --------
    >>> n_unique_combinations(6, 2)
    15
    """
    return int(comb(n_samples, level, exact=True))


def replicate_levels(sample_ids_per_condition: Mapping[str, Sequence[str]]) -> List[int]:
    """Replicate levels tested: 2 .. min(N) - 1 over both conditions."""
    n_min = min(len(ids) for ids in sample_ids_per_condition.values())
    return list(range(2, n_min))


# ============================================================================
# PER-CONDITION GENERATION
# ============================================================================


def generate_condition_combinations(
    sample_ids: Sequence[str],
    level: int,
    max_combinations: int,
    rng: np.random.Generator,
) -> List[Combination]:
    """
    Generate unique ``level``-sized combinations of one condition's samples.

    Parameters
    ----------
    sample_ids : Sequence[str]
        Ordered sample identifiers of the condition
    level : int
        Combination size
    max_combinations : int
        Maximum number of combinations to return
    rng : np.random.Generator
        Generator consumed only when random sampling is needed

    Returns
    -------
    List[Combination]
        Pairwise-distinct combinations; each one lists its samples in
        ``sample_ids`` order. All ``C(N, level)`` combinations in
        lexicographic order when they fit under ``max_combinations``,
        otherwise exactly ``max_combinations`` in draw order.
    """
    sample_ids = tuple(sample_ids)
    n_samples = len(sample_ids)

    if not 1 <= level <= n_samples:
        raise ValueError(f"level must be in [1, {n_samples}], got {level}")

    n_total = n_unique_combinations(n_samples, level)

    if n_total <= max_combinations:
        return [
            tuple(sample_ids[i] for i in positions)
            for positions in itertools.combinations(range(n_samples), level)
        ]

    accepted: List[Tuple[int, ...]] = []
    seen: Set[Tuple[int, ...]] = set()
    max_draws = MAX_DRAWS_PER_COMBINATION * max_combinations
    n_draws = 0

    while len(accepted) < max_combinations and n_draws < max_draws:
        positions = tuple(sorted(rng.choice(n_samples, size=level, replace=False)))
        n_draws += 1
        if positions in seen:
            continue
        seen.add(positions)
        accepted.append(positions)

    if len(accepted) < max_combinations:
        warnings.warn(
            f"Random sampling stalled at level {level} after {n_draws} draws "
            f"({len(accepted)}/{max_combinations} unique). "
            "Drawing the remainder from the enumerated combinations."
        )
        remaining = [
            positions
            for positions in itertools.combinations(range(n_samples), level)
            if positions not in seen
        ]
        picks = rng.choice(
            len(remaining), size=max_combinations - len(accepted), replace=False
        )
        accepted.extend(remaining[i] for i in picks)

    return [tuple(sample_ids[int(i)] for i in positions) for positions in accepted]


# ============================================================================
# PLAN GENERATION
# ============================================================================


def _validate_sample_ids(
    sample_ids_per_condition: Mapping[str, Sequence[str]],
) -> None:
    if len(sample_ids_per_condition) != 2:
        raise InvalidInput(
            f"Exactly two conditions required, got {len(sample_ids_per_condition)}"
        )

    all_ids: List[str] = []
    for condition, ids in sample_ids_per_condition.items():
        if len(ids) < 3:
            raise InvalidInput(
                f"Condition '{condition}' has {len(ids)} replicates; "
                "at least 3 are needed to test any replicate level"
            )
        if len(set(ids)) != len(ids):
            raise InvalidInput(f"Condition '{condition}' has duplicated sample ids")
        all_ids.extend(ids)

    if len(set(all_ids)) != len(all_ids):
        raise InvalidInput("Sample ids are shared between conditions")


def generate_combinations(
    sample_ids_per_condition: Mapping[str, Sequence[str]],
    max_combinations_per_level: int = 30,
    rng_seed: Optional[int] = None,
) -> ReplicateLevelPlan:
    """
    Generate paired sample combinations for every replicate level.

    Parameters
    ----------
    sample_ids_per_condition : Mapping[str, Sequence[str]]
        Condition label -> ordered sample ids. Exactly two conditions; the
        first is paired as control, the second as experimental.
    max_combinations_per_level : int
        Maximum paired combinations per level (comb_gen_repeat)
    rng_seed : int, optional
        Seed for the random draws; the same seed and inputs reproduce the
        same plan. Draws are consumed condition by condition, level by level.

    Returns
    -------
    ReplicateLevelPlan
        Level -> paired combinations, levels ascending

    Examples
    --------
    >>> ids = {'ctrl': [f'C{i}' for i in range(6)],
    ...        'trt': [f'T{i}' for i in range(6)]}
    >>> plan = generate_combinations(ids, 30, rng_seed=1)
    >>> sorted(plan), len(plan[5])
    ([2, 3, 4, 5], 6)
    """
    if (
        not isinstance(max_combinations_per_level, (int, np.integer))
        or isinstance(max_combinations_per_level, bool)
        or max_combinations_per_level < 1
    ):
        raise ConfigurationError("max_combinations_per_level must be an integer >= 1")

    _validate_sample_ids(sample_ids_per_condition)

    rng = np.random.default_rng(rng_seed)
    levels = replicate_levels(sample_ids_per_condition)

    per_condition: Dict[str, Dict[int, List[Combination]]] = {}
    for condition, ids in sample_ids_per_condition.items():
        per_condition[condition] = {
            level: generate_condition_combinations(
                ids, level, max_combinations_per_level, rng
            )
            for level in levels
        }

    control, experimental = list(sample_ids_per_condition)

    plan: ReplicateLevelPlan = {}
    for level in levels:
        pairs = zip(per_condition[control][level], per_condition[experimental][level])
        plan[level] = [
            PairedCombination(level=level, index=i, control=c, experimental=e)
            for i, (c, e) in enumerate(pairs)
        ]

    return plan


def plan_to_frame(plan: ReplicateLevelPlan) -> pd.DataFrame:
    """
    Flatten a plan into one row per paired combination.

    Returns
    -------
    pd.DataFrame
        Columns: level, combination (1-based), control, experimental, samples
    """
    rows = [
        {
            "level": pair.level,
            "combination": pair.index + 1,
            "control": ";".join(pair.control),
            "experimental": ";".join(pair.experimental),
            "samples": pair.label,
        }
        for level in sorted(plan)
        for pair in plan[level]
    ]
    return pd.DataFrame(
        rows, columns=["level", "combination", "control", "experimental", "samples"]
    )
