#!/usr/bin/env python
# coding: utf-8

"""
Error types raised by the replicate analysis pipeline.
"""


class InvalidInput(ValueError):
    """Malformed count table, condition table or control label."""


class ConfigurationError(ValueError):
    """Configuration value out of its valid range."""


class FitFailure(RuntimeError):
    """
    A differential expression test could not be fit on one subsample.

    Raised by DE test adapters for degenerate inputs (zero-variance subsets,
    too few residual degrees of freedom). The orchestrator recovers from it
    per combination.
    """
