#!/usr/bin/env python
# coding: utf-8

"""
Differential Expression Engine
Input validation, count filtering, DE test adapters and PDF run logging
"""

import re
import warnings
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, Union

import numpy as np
import pandas as pd
from pydeseq2.dds import DeseqDataSet
from pydeseq2.default_inference import DefaultInference
from pydeseq2.ds import DeseqStats
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import (
    ListFlowable,
    ListItem,
    Paragraph,
    Preformatted,
    SimpleDocTemplate,
    Spacer,
)

from replicate_engine.core.config import AnalysisConfig, get_config
from replicate_engine.core.errors import ConfigurationError, FitFailure, InvalidInput


# ============================================================================
# INPUT VALIDATION
# ============================================================================


def validate_count_table(count_table: pd.DataFrame) -> None:
    """Validate a genes x samples count table."""
    if not isinstance(count_table, pd.DataFrame):
        raise InvalidInput("count_table must be a pandas DataFrame")

    if count_table.empty:
        raise InvalidInput("count_table is empty")

    non_numeric = [
        c for c in count_table.columns
        if not pd.api.types.is_numeric_dtype(count_table[c])
        or pd.api.types.is_bool_dtype(count_table[c])
    ]
    if non_numeric:
        raise InvalidInput(
            f"count_table contains non-numeric columns: {non_numeric}. "
            "Gene names must be the DataFrame index."
        )

    if count_table.dtypes.nunique() != 1:
        raise InvalidInput(
            "More than one data type detected in count table "
            f"({sorted(map(str, count_table.dtypes.unique()))})"
        )

    if count_table.isnull().any().any():
        raise InvalidInput("count_table contains missing values")

    if (count_table.values < 0).any():
        raise InvalidInput("count_table contains negative values")

    if count_table.index.has_duplicates:
        raise InvalidInput("count_table has duplicated gene ids")

    if count_table.columns.has_duplicates:
        raise InvalidInput("count_table has duplicated sample ids")


def validate_condition_table(
    condition_table: Union[pd.DataFrame, pd.Series],
    count_table: pd.DataFrame,
    control: str,
) -> pd.Series:
    """
    Validate the condition table against the count table.

    Parameters
    ----------
    condition_table : pd.DataFrame or pd.Series
        Two-column table (sample name, condition), or a Series mapping
        sample name -> condition
    count_table : pd.DataFrame
        Genes x samples count table
    control : str
        Condition label used as control

    Returns
    -------
    pd.Series
        Sample -> condition, ordered like the count table columns
    """
    if isinstance(condition_table, pd.DataFrame):
        if condition_table.shape[1] < 2:
            raise InvalidInput(
                "condition_table must have two columns: sample name, condition"
            )
        conditions = pd.Series(
            condition_table.iloc[:, 1].values,
            index=condition_table.iloc[:, 0].astype(str).values,
        )
    elif isinstance(condition_table, pd.Series):
        conditions = condition_table.copy()
        conditions.index = conditions.index.astype(str)
    else:
        raise InvalidInput("condition_table must be a pandas DataFrame or Series")

    if conditions.isnull().any():
        raise InvalidInput("condition_table contains missing conditions")

    if conditions.index.has_duplicates:
        raise InvalidInput("condition_table lists a sample more than once")

    labels = pd.unique(conditions.values)
    if len(labels) != 2:
        raise InvalidInput(
            f"Exactly two conditions required, found {len(labels)}: {list(labels)}"
        )

    if control not in labels:
        raise InvalidInput(
            f"Control '{control}' does not match one of the two conditions "
            f"{list(labels)}"
        )

    samples = count_table.columns.astype(str)
    missing_in_counts = sorted(set(conditions.index) - set(samples))
    missing_in_conditions = sorted(set(samples) - set(conditions.index))
    if missing_in_counts or missing_in_conditions:
        raise InvalidInput(
            "Sample ids do not match between tables "
            f"(only in condition_table: {missing_in_counts}; "
            f"only in count_table: {missing_in_conditions})"
        )

    conditions = conditions.loc[list(samples)]

    counts_per_label = conditions.value_counts()
    too_small = counts_per_label[counts_per_label < 3]
    if len(too_small) > 0:
        raise InvalidInput(
            f"At least 3 replicates per condition required: {too_small.to_dict()}"
        )

    return conditions


def samples_by_condition(
    sample_to_condition: pd.Series, control: str
) -> Dict[str, List[str]]:
    """Ordered sample ids per condition, control first."""
    labels = [control] + [c for c in pd.unique(sample_to_condition) if c != control]
    return {
        label: sample_to_condition.index[
            (sample_to_condition == label).to_numpy()
        ].tolist()
        for label in labels
    }


# ============================================================================
# DATA PREPROCESSING
# ============================================================================


def count_filter(
    count_table: pd.DataFrame, cutoff: float = 1.0, verbose: bool = False
) -> pd.DataFrame:
    """
    Remove non- and low-expressed genes by average CPM.

    Parameters
    ----------
    count_table : pd.DataFrame
        Genes x samples count table
    cutoff : float
        Genes with mean CPM at or below this value are removed
    verbose : bool
        Print summary

    Returns
    -------
    pd.DataFrame
        Filtered count table
    """
    lib_size = count_table.sum(axis=0)
    if (lib_size <= 0).any():
        empty = lib_size.index[lib_size <= 0].tolist()
        raise InvalidInput(f"Samples with zero total counts: {empty}")

    cpm = count_table.div(lib_size, axis=1) * 1e6
    keep = cpm.mean(axis=1) > cutoff

    if verbose:
        print(
            f"count_filter: kept {int(keep.sum()):,} / {len(count_table):,} "
            f"genes (mean CPM > {cutoff})"
        )

    return count_table.loc[keep]


def _two_group_mask(
    counts: pd.DataFrame, sample_to_condition: Mapping[str, str], control_label: str
) -> Tuple[np.ndarray, str]:
    """Boolean mask of experimental samples and the experimental label."""
    labels = pd.Series(sample_to_condition).reindex(counts.columns)
    if labels.isnull().any():
        missing = labels.index[labels.isnull()].tolist()
        raise InvalidInput(f"No condition given for samples: {missing}")

    levels = set(labels)
    if control_label not in levels or len(levels) != 2:
        raise InvalidInput(
            f"Expected control '{control_label}' and one other condition, "
            f"got {sorted(levels)}"
        )

    treatment = next(level for level in levels if level != control_label)
    return (labels == treatment).to_numpy(), treatment


# ============================================================================
# DE TEST ADAPTERS
# ============================================================================


class DETestAdapter:
    """
    Contract for differential expression software.

    ``score`` returns the full per-gene result table indexed by gene id.
    The significance statistic and effect size of each gene are read from
    ``stat_column`` and ``effect_column``. Degenerate inputs raise
    ``FitFailure``.

    Adapters that know their output layout list it in ``result_columns``
    so a column mismatch is caught before any fit is scheduled. ``None``
    skips that check.
    """

    name = "base"
    stat_column = "padj"
    effect_column = "logFC"
    result_columns: Optional[Tuple[str, ...]] = None

    def score(
        self,
        counts: pd.DataFrame,
        sample_to_condition: Mapping[str, str],
        control_label: str,
    ) -> pd.DataFrame:
        raise NotImplementedError


class PyDESeq2Test(DETestAdapter):
    """
    DESeq2 Wald test through pydeseq2, control as reference level.

    Parameters
    ----------
    shrink_lfc : bool
        Apply apeGLM log-fold-change shrinkage to the reported effect.
        Off by default, matching the unshrunk DESeq2 ``results()`` table.
    n_cpus : int
        CPUs used by pydeseq2 inside one test
    """

    name = "DESeq2"
    stat_column = "padj"
    effect_column = "log2FoldChange"
    result_columns = ("baseMean", "log2FoldChange", "lfcSE", "stat", "pvalue", "padj")

    def __init__(self, shrink_lfc: bool = False, n_cpus: int = 1):
        self.shrink_lfc = shrink_lfc
        self.n_cpus = n_cpus

    def score(
        self,
        counts: pd.DataFrame,
        sample_to_condition: Mapping[str, str],
        control_label: str,
    ) -> pd.DataFrame:
        is_exp, treatment = _two_group_mask(counts, sample_to_condition, control_label)
        metadata = pd.DataFrame(
            {
                "condition": pd.Categorical(
                    np.where(is_exp, treatment, control_label),
                    categories=[control_label, treatment],
                )
            },
            index=counts.columns,
        )

        inference = DefaultInference(n_cpus=self.n_cpus)
        try:
            dds = DeseqDataSet(
                counts=counts.T.round().astype(int),
                metadata=metadata,
                design="~condition",
                inference=inference,
                quiet=True,
            )
            dds.deseq2()
            stat_res = DeseqStats(
                dds,
                contrast=["condition", treatment, control_label],
                inference=inference,
                quiet=True,
            )
            stat_res.summary()
        except Exception as e:
            raise FitFailure(f"DESeq2 fit failed: {e}") from e

        if self.shrink_lfc:
            try:
                stat_res.lfc_shrink(coeff=f"condition[T.{treatment}]")
            except Exception as e:
                warnings.warn(f"LFC shrinkage failed ({e}); using unshrunk estimates")

        return stat_res.results_df.copy()


_ADAPTERS: Dict[str, Type[DETestAdapter]] = {
    "PyDESeq2Test": PyDESeq2Test,
}


def register_de_adapter(adapter_name: str, adapter_cls: Type[DETestAdapter]) -> None:
    """Make a custom adapter class selectable through the DE method registry."""
    if not (isinstance(adapter_cls, type) and issubclass(adapter_cls, DETestAdapter)):
        raise ConfigurationError("adapter_cls must subclass DETestAdapter")
    _ADAPTERS[adapter_name] = adapter_cls


def get_de_test(
    name: Optional[str] = None,
    config: Optional[AnalysisConfig] = None,
    **kwargs: Any,
) -> DETestAdapter:
    """
    Instantiate the adapter registered for a DE_software name.

    Parameters
    ----------
    name : str, optional
        DE method id (defaults to the configured DE_software)
    config : AnalysisConfig, optional
        Configuration instance (uses global if None)
    **kwargs
        Passed to the adapter constructor

    Returns
    -------
    DETestAdapter
        Adapter whose stat/effect columns follow the method registry
    """
    if config is None:
        config = get_config()
    if name is None:
        name = config.get_setting("DE_software")

    method = config.get_de_method(name)
    adapter_cls = _ADAPTERS.get(method.get("adapter"))
    if adapter_cls is None:
        raise ConfigurationError(
            f"No adapter registered as '{method.get('adapter')}' for '{name}'"
        )

    adapter = adapter_cls(**kwargs)
    adapter.name = name
    adapter.stat_column = method["stat_column"]
    adapter.effect_column = method["effect_column"]
    return adapter


# ============================================================================
# PDF REPORTING
# ============================================================================


class PDFLogger:
    """PDF run log for Markdown-like text, tables and code blocks."""

    _HEADINGS = {"# ": ("H1", 16, 25), "## ": ("H2", 14, 20), "### ": ("H3", 12, 6)}

    def __init__(self, path: Optional[str] = "log.pdf", echo: bool = True):
        self.path = path
        self.echo = echo
        self.doc = SimpleDocTemplate(path, pagesize=A4)
        self.styles = getSampleStyleSheet()

        for style_name, size, space_before in self._HEADINGS.values():
            self.styles.add(
                ParagraphStyle(
                    style_name,
                    parent=self.styles["Normal"],
                    fontName="Helvetica-Bold",
                    fontSize=size,
                    leading=size + 2,
                    spaceBefore=space_before,
                    spaceAfter=6,
                )
            )
        self.styles.add(
            ParagraphStyle(
                "CodeBlock",
                parent=self.styles["Normal"],
                fontName="Courier",
                fontSize=9,
            )
        )

        self.story: List[Any] = []
        self.current_list = None

    def _format_md(self, text: str) -> str:
        """Basic Markdown formatting: bold, italics, inline code"""
        text = re.sub(r"\*\*(.*?)\*\*", r"<b>\1</b>", text)
        text = re.sub(r"\*([^*]+)\*", r"<i>\1</i>", text)
        text = re.sub(r"`(.*?)`", r"<font name='Courier'>\1</font>", text)
        return text

    def _echo(self, text: str):
        if self.echo:
            print(text)

    def _flush_list(self):
        """Close any currently open bullet list."""
        self.current_list = None

    def log_text(self, text: str):
        text = text.strip()
        if not text:
            return
        self._echo(text)

        for prefix in self._HEADINGS:
            if text.startswith(prefix):
                self._flush_list()
                style = self.styles[self._HEADINGS[prefix][0]]
                self.story.append(Paragraph(text[len(prefix):], style))
                return

        if text.startswith("- "):
            item = ListItem(
                Paragraph(self._format_md(text[2:].strip()), self.styles["Normal"])
            )
            if self.current_list is None:
                self.current_list = ListFlowable(
                    [item],
                    bulletType="bullet",
                    leftIndent=18,
                    bulletFontSize=10,
                    start=None,
                    spaceBefore=0,
                    spaceAfter=12,
                )
                self.story.append(self.current_list)
            else:
                self.current_list._flowables.append(item)
        else:
            self._flush_list()
            self.story.append(Paragraph(self._format_md(text), self.styles["Normal"]))

    def log_mapping(self, mapping: Mapping[str, Any], title: Optional[str] = None):
        """Log key/value pairs as a bullet list."""
        if title:
            self.log_text(title)
        self._flush_list()
        for key, value in mapping.items():
            self.log_text(f"- **{key}**: {value}")

    def log_code(self, code: str):
        """Log preformatted code block"""
        code = code.rstrip()
        self._echo(code)
        self._flush_list()
        self.story.append(Preformatted(code, self.styles["CodeBlock"]))
        self.story.append(Spacer(1, 0.18 * inch))

    def log_dataframe(
        self, df: pd.DataFrame, title: Optional[str] = None, max_rows: int = 20
    ):
        """Log a pandas DataFrame as a formatted table"""
        self._flush_list()

        if title:
            self.story.append(Paragraph(f"<b>{title}</b>", self.styles["Normal"]))
            self.story.append(Spacer(1, 0.1 * inch))

        if len(df) > max_rows:
            df_display = pd.concat([df.head(max_rows // 2), df.tail(max_rows // 2)])
            table_text = df_display.to_string()
            table_text += f"\n... ({len(df) - max_rows} more rows)"
        else:
            table_text = df.to_string()

        self._echo(table_text)
        self.story.append(Preformatted(table_text, self.styles["CodeBlock"]))
        self.story.append(Spacer(1, 0.15 * inch))

    def save(self):
        """Build the PDF"""
        try:
            self.doc.build(self.story)
            self._echo(f"✔ PDF saved to {self.path}")
        except Exception as e:
            self._echo(f"! PDF build failed: {e}")
