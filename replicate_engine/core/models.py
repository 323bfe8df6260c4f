#!/usr/bin/env python
# coding: utf-8

"""
Data model for replicate subsampling runs.

A run produces one ``ReplicateLevelPlan`` (level -> paired combinations),
one ``DEResult`` per paired combination and one ``LevelSummary`` per level.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple

import numpy as np

Combination = Tuple[str, ...]


@dataclass(frozen=True)
class PairedCombination:
    """One control and one experimental combination at the same level."""

    level: int
    index: int  # 0-based position within the level
    control: Combination
    experimental: Combination

    @property
    def samples(self) -> Combination:
        return self.control + self.experimental

    @property
    def label(self) -> str:
        return ";".join(self.samples)


ReplicateLevelPlan = Dict[int, List[PairedCombination]]


@dataclass(frozen=True)
class DEResult:
    """DE gene set of one paired combination under fixed cutoffs."""

    level: int
    index: int
    genes: FrozenSet[str] = field(default_factory=frozenset)
    n_tested: int = 0
    failed: bool = False
    error: Optional[str] = None

    @property
    def n_de(self) -> int:
        return len(self.genes)


@dataclass(frozen=True)
class LevelSummary:
    """Summary statistics of all DE results at one replicate level."""

    level: int
    counts: Tuple[int, ...]
    mean_count: float
    median_count: float
    intersection: FrozenSet[str]
    n_combinations: int
    n_failed: int = 0
    pct_change: float = float("nan")  # vs. previous level
    tpr: Optional[Tuple[float, ...]] = None
    fpr: Optional[Tuple[float, ...]] = None

    @property
    def failure_rate(self) -> float:
        if self.n_combinations == 0:
            return 0.0
        return self.n_failed / self.n_combinations

    @property
    def mean_tpr(self) -> Optional[float]:
        if self.tpr is None:
            return None
        return float(np.mean(self.tpr)) if self.tpr else float("nan")

    @property
    def mean_fpr(self) -> Optional[float]:
        if self.fpr is None:
            return None
        return float(np.mean(self.fpr)) if self.fpr else float("nan")
