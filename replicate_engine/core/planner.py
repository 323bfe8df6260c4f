#!/usr/bin/env python
# coding: utf-8

"""
Replicate Sample Size Planner
Empirical assessment of replicate adequacy for RNA-seq DE studies
"""

import os
import warnings
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

import numpy as np
import pandas as pd

from replicate_engine.core.aggregator import (
    results_to_frame,
    summarize,
    summary_to_frame,
)
from replicate_engine.core.combinations import generate_combinations, plan_to_frame
from replicate_engine.core.config import AnalysisConfig, get_config
from replicate_engine.core.engine import (
    DETestAdapter,
    PDFLogger,
    count_filter,
    get_de_test,
    samples_by_condition,
    validate_condition_table,
    validate_count_table,
)
from replicate_engine.core.models import LevelSummary
from replicate_engine.core.orchestrator import run_de_combinations, run_full_comparison


# ============================================================================
# ADEQUACY ASSESSMENT
# ============================================================================


def assess_replicate_adequacy(
    summaries: Mapping[int, LevelSummary],
    max_pct_change: float = 5.0,
    max_failure_rate: float = 0.2,
    min_tpr: float = 0.8,
) -> Dict[str, Any]:
    """
    Judge whether DE discovery has levelled off with the available replicates.

    Parameters
    ----------
    summaries : Mapping[int, LevelSummary]
        Output of summarize
    max_pct_change : float
        Marginal percent change in mean DE count below which an added
        replicate is considered to bring little
    max_failure_rate : float
        Fraction of failed DE fits at a level above which it is reported
    min_tpr : float
        Mean TPR at the highest level below which it is reported

    Returns
    -------
    Dict
        plateau_level (smallest level from which every later marginal
        change stays below ``max_pct_change``, or None), plateau_reached,
        findings and severity counts

    Examples
    --------
    >>> adequacy = assess_replicate_adequacy(summaries)
    >>> adequacy['plateau_level']
    5
    """
    levels = sorted(summaries)
    findings = []

    plateau_level = None
    if len(levels) >= 2:
        # Walk back from the highest level while changes stay small
        for level in reversed(levels[1:]):
            change = summaries[level].pct_change
            if np.isfinite(change) and abs(change) < max_pct_change:
                plateau_level = level - 1
            else:
                break

    if plateau_level is None and levels:
        last_change = summaries[levels[-1]].pct_change
        findings.append(
            {
                "category": "Saturation",
                "finding": (
                    "DE discovery has not levelled off "
                    f"(last marginal change {last_change:.1f}%)"
                    if np.isfinite(last_change)
                    else "DE discovery trend could not be evaluated"
                ),
                "severity": "High",
                "impact": "Additional replicates may reveal more DE genes",
                "mitigation": "Consider collecting more biological replicates",
            }
        )

    for level in levels:
        s = summaries[level]
        if s.n_combinations and s.failure_rate > max_failure_rate:
            findings.append(
                {
                    "category": "Fit Failures",
                    "finding": (
                        f"{s.n_failed}/{s.n_combinations} DE fits failed at "
                        f"{level} replicates"
                    ),
                    "severity": "Medium",
                    "impact": "Statistics at this level rest on fewer subsamples",
                    "mitigation": "Interpret this level with caution",
                }
            )

    if levels and summaries[levels[-1]].tpr is not None:
        top_tpr = summaries[levels[-1]].mean_tpr
        if np.isfinite(top_tpr) and top_tpr < min_tpr:
            findings.append(
                {
                    "category": "Sensitivity",
                    "finding": (
                        f"Mean TPR at {levels[-1]} replicates is {top_tpr:.0%}"
                    ),
                    "severity": "Medium",
                    "impact": "Subsamples recover a limited share of full-data DE genes",
                    "mitigation": "Full-data DE list likely still grows with replicates",
                }
            )

    severity_counts = {
        severity: sum(1 for f in findings if f["severity"] == severity)
        for severity in ["High", "Medium", "Low"]
    }

    return {
        "plateau_level": plateau_level,
        "plateau_reached": plateau_level is not None,
        "max_pct_change": max_pct_change,
        "findings": findings,
        "n_findings": len(findings),
        "severity_counts": severity_counts,
    }


def quick_recommendation(adequacy: Dict[str, Any], n_available: int) -> str:
    """
    One-line summary of the adequacy assessment.

    Examples
    --------
    >>> print(quick_recommendation(adequacy, n_available=6))
    DE discovery levels off from 4 replicates per condition (6 available). ...
    """
    threshold = adequacy["max_pct_change"]
    if adequacy["plateau_reached"]:
        rec = (
            f"DE discovery levels off from {adequacy['plateau_level']} replicates "
            f"per condition ({n_available} available). "
            f"Further replicates add less than {threshold:g}% DE genes each."
        )
    else:
        rec = (
            f"DE discovery still grows at {n_available - 1} replicates per "
            f"condition ({n_available} available). "
            "Consider collecting more replicates."
        )

    n_medium = adequacy["severity_counts"].get("Medium", 0)
    if n_medium:
        rec += f" {n_medium} other finding(s) to review."
    return rec


# ============================================================================
# FULL RUN
# ============================================================================


def run_replicate_analysis(
    count_table: pd.DataFrame,
    condition_table: Union[pd.DataFrame, pd.Series],
    control: str,
    config: Optional[AnalysisConfig] = None,
    de_test: Optional[DETestAdapter] = None,
    output_dir: Optional[str] = None,
    verbose: bool = True,
    **settings: Any,
) -> Dict[str, Any]:
    """
    Run the empirical replicate analysis end to end.

    Parameters
    ----------
    count_table : pd.DataFrame
        Raw genes x samples count table
    condition_table : pd.DataFrame or pd.Series
        Sample name / condition table with exactly two conditions
    control : str
        Condition used as control
    config : AnalysisConfig, optional
        Configuration instance (uses global if None)
    de_test : DETestAdapter, optional
        DE adapter; defaults to the configured DE_software
    output_dir : str, optional
        Directory for reports and tables
    verbose : bool
        Print progress messages
    **settings
        Overrides of configuration settings (e.g. comb_gen_repeat=10)

    Returns
    -------
    Dict
        configuration, plan, results, ground_truth, summaries,
        summary_table, combination_table, adequacy, recommendation,
        n_genes_tested, created_date

    Examples
    --------
    >>> analysis = run_replicate_analysis(
    ...     counts, conditions, control='heart', rng_seed=1, num_workers=4
    ... )
    >>> analysis['summary_table']['mean_DE']
    """
    if config is None:
        config = get_config()
    config = config.updated(**settings)
    config.validate()
    cfg = config.settings

    validate_count_table(count_table)
    sample_to_condition = validate_condition_table(
        condition_table, count_table, control
    )
    count_table = count_table.copy()
    count_table.columns = count_table.columns.astype(str)

    filtered = count_filter(count_table, cfg["filter_cutoff"], verbose=verbose)
    if filtered.empty:
        warnings.warn(
            f"No genes pass the CPM filter (cutoff={cfg['filter_cutoff']})."
        )

    if de_test is None:
        de_test = get_de_test(cfg["DE_software"], config=config)

    groups = samples_by_condition(sample_to_condition, control)
    plan = generate_combinations(
        groups,
        max_combinations_per_level=cfg["comb_gen_repeat"],
        rng_seed=cfg["rng_seed"],
    )

    path = output_dir if output_dir is not None else cfg["path"]
    results = run_de_combinations(
        plan,
        filtered,
        sample_to_condition,
        control,
        de_test,
        stat_cutoff=cfg["DE_cutoff_stat"],
        effect_cutoff=cfg["DE_cutoff_Abs_logFC"],
        num_workers=cfg["num_workers"],
        backend=cfg["parallel_backend"],
        save_table=cfg["save_table"],
        path=path,
        verbose=verbose,
    )

    ground_truth = None
    if cfg["compute_ground_truth"]:
        full = run_full_comparison(
            filtered,
            sample_to_condition,
            control,
            de_test,
            stat_cutoff=cfg["DE_cutoff_stat"],
            effect_cutoff=cfg["DE_cutoff_Abs_logFC"],
            save_table=cfg["save_table"],
            path=path,
        )
        if full.failed:
            warnings.warn(
                f"Full-dataset DE test failed ({full.error}); TPR/FPR not computed."
            )
        else:
            ground_truth = full.genes

    universe_size = len(filtered)
    summaries = summarize(results, ground_truth, universe_size)
    adequacy = assess_replicate_adequacy(
        summaries, max_pct_change=cfg["marginal_change_threshold"]
    )
    n_available = min(len(ids) for ids in groups.values())

    analysis = {
        "configuration": {
            **cfg,
            "control": control,
            "conditions": list(groups),
            "replicates": {label: len(ids) for label, ids in groups.items()},
            "DE_method": config.de_methods.get(de_test.name, {}).get(
                "name", de_test.name
            ),
        },
        "plan": plan,
        "combination_table": plan_to_frame(plan),
        "results": results,
        "ground_truth": ground_truth,
        "summaries": summaries,
        "summary_table": summary_to_frame(summaries),
        "combination_results": results_to_frame(
            results, ground_truth, universe_size
        ),
        "adequacy": adequacy,
        "recommendation": quick_recommendation(adequacy, n_available),
        "n_genes_tested": universe_size,
        "created_date": datetime.now(),
    }

    if output_dir is not None:
        os.makedirs(output_dir, exist_ok=True)
        analysis["combination_table"].to_csv(
            os.path.join(output_dir, "combinations.csv"), index=False
        )
        _generate_text_report(analysis, output_dir)
        _export_to_excel(analysis, output_dir)
        _write_pdf_report(analysis, output_dir, echo=verbose)

    return analysis


# ============================================================================
# REPORTS
# ============================================================================


def _generate_text_report(analysis: Dict[str, Any], output_dir: str):
    """Generate text report from an analysis."""
    report_path = os.path.join(output_dir, "replicate_report.txt")
    cfg = analysis["configuration"]

    with open(report_path, "w") as f:
        f.write("=" * 80 + "\n")
        f.write("REPLICATE SAMPLE SIZE ANALYSIS\n")
        f.write("=" * 80 + "\n")
        f.write(
            f"Generated: {analysis['created_date'].strftime('%Y-%m-%d %H:%M:%S')}\n\n"
        )

        f.write("-" * 80 + "\n")
        f.write("1. CONFIGURATION\n")
        f.write("-" * 80 + "\n")
        f.write(f"Control: {cfg['control']}\n")
        for label, n in cfg["replicates"].items():
            f.write(f"  {label}: {n} replicates\n")
        f.write(f"DE method: {cfg['DE_method']}\n")
        f.write(f"Stat cutoff: < {cfg['DE_cutoff_stat']}\n")
        f.write(f"Abs logFC cutoff: > {cfg['DE_cutoff_Abs_logFC']}\n")
        f.write(f"CPM filter: > {cfg['filter_cutoff']}\n")
        f.write(f"Combinations per level: {cfg['comb_gen_repeat']}\n")
        f.write(f"Random seed: {cfg['rng_seed']}\n")
        f.write(f"Genes tested: {analysis['n_genes_tested']:,}\n")

        f.write("\n" + "-" * 80 + "\n")
        f.write("2. DE GENES BY REPLICATE LEVEL\n")
        f.write("-" * 80 + "\n")
        if not analysis["summary_table"].empty:
            f.write(analysis["summary_table"].round(3).to_string() + "\n")
        if analysis["ground_truth"] is not None:
            f.write(f"\nFull-dataset DE genes: {len(analysis['ground_truth']):,}\n")

        f.write("\n" + "-" * 80 + "\n")
        f.write("3. ADEQUACY\n")
        f.write("-" * 80 + "\n")
        f.write(analysis["recommendation"] + "\n")
        for finding in analysis["adequacy"]["findings"]:
            f.write(
                f"\n[{finding['severity']}] {finding['category']}: "
                f"{finding['finding']}\n"
            )
            f.write(f"  Impact: {finding['impact']}\n")
            f.write(f"  Mitigation: {finding['mitigation']}\n")

        f.write("\n" + "=" * 80 + "\n")
        f.write("END OF REPORT\n")
        f.write("=" * 80 + "\n")


def _export_to_excel(analysis: Dict[str, Any], output_dir: str):
    """Export analysis tables to an Excel workbook."""
    excel_path = os.path.join(output_dir, "replicate_analysis.xlsx")
    cfg = analysis["configuration"]

    with pd.ExcelWriter(excel_path, engine="openpyxl") as writer:
        config_data = [
            {"Parameter": key, "Value": str(value)}
            for key, value in cfg.items()
        ]
        pd.DataFrame(config_data).to_excel(
            writer, sheet_name="Configuration", index=False
        )

        analysis["summary_table"].to_excel(writer, sheet_name="Level_Summary")
        analysis["combination_results"].to_excel(
            writer, sheet_name="Combination_Results", index=False
        )
        analysis["combination_table"].to_excel(
            writer, sheet_name="Combinations", index=False
        )

        intersections = pd.DataFrame(
            [
                {"level": level, "gene": gene}
                for level, s in sorted(analysis["summaries"].items())
                for gene in sorted(s.intersection)
            ],
            columns=["level", "gene"],
        )
        intersections.to_excel(writer, sheet_name="Intersections", index=False)

        if analysis["adequacy"]["findings"]:
            pd.DataFrame(analysis["adequacy"]["findings"]).to_excel(
                writer, sheet_name="Findings", index=False
            )


def _write_pdf_report(analysis: Dict[str, Any], output_dir: str, echo: bool = True):
    """Write the PDF run log."""
    cfg = analysis["configuration"]
    pdf = PDFLogger(os.path.join(output_dir, "report.pdf"), echo=echo)

    pdf.log_text("# Replicate Sample Size Analysis")
    pdf.log_text(
        f"**Generated**: {analysis['created_date'].strftime('%Y-%m-%d %H:%M:%S')}"
    )

    pdf.log_mapping(
        {
            "Control": cfg["control"],
            "Replicates": ", ".join(f"{k}={v}" for k, v in cfg["replicates"].items()),
            "DE method": cfg["DE_method"],
            "Stat cutoff": cfg["DE_cutoff_stat"],
            "Abs logFC cutoff": cfg["DE_cutoff_Abs_logFC"],
            "Combinations per level": cfg["comb_gen_repeat"],
            "Random seed": cfg["rng_seed"],
            "Genes tested": f"{analysis['n_genes_tested']:,}",
        },
        title="## Configuration",
    )

    pdf.log_text("## DE Genes by Replicate Level")
    if not analysis["summary_table"].empty:
        pdf.log_dataframe(analysis["summary_table"].round(3))

    pdf.log_text("## Adequacy")
    pdf.log_text(analysis["recommendation"])
    for finding in analysis["adequacy"]["findings"]:
        pdf.log_text(
            f"- **[{finding['severity']}] {finding['category']}**: "
            f"{finding['finding']}. {finding['mitigation']}."
        )

    pdf.save()
