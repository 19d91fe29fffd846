"""
Staged dataset object threaded through the MSPrep pipeline.

Each stage (prepare -> filter -> impute -> normalize) returns a new
MSPrepData with an updated stage tag. Earlier objects are never modified, so
intermediate results stay available for inspection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd

from .exceptions import StageError

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Lifecycle stage of an MSPrepData object."""

    PREPARED = 'prepared'
    FILTERED = 'filtered'
    IMPUTED = 'imputed'
    NORMALIZED = 'normalized'


STAGE_ORDER = [Stage.PREPARED, Stage.FILTERED, Stage.IMPUTED, Stage.NORMALIZED]


@dataclass(frozen=True)
class ColumnSchema:
    """Maps pipeline roles to the caller's column names.

    Attributes:
        abundance: Abundance value column
        mz: Mass-to-charge column
        rt: Retention time column
        subject_id: Subject identifier column
        replicate: Replicate identifier column (None when there are no replicates)
        batch: Batch column (None when there is no batch)
        grouping_vars: Phenotype / comparison-group columns
    """

    abundance: str = 'abundance'
    mz: str = 'mz'
    rt: str = 'rt'
    subject_id: str = 'subject_id'
    replicate: Optional[str] = None
    batch: Optional[str] = None
    grouping_vars: tuple[str, ...] = ()

    @property
    def row_keys(self) -> list[str]:
        """Columns identifying one row of the wide table."""
        keys = [self.subject_id, *self.grouping_vars]
        if self.batch is not None:
            keys.append(self.batch)
        return keys

    @property
    def compound_keys(self) -> list[str]:
        return [self.mz, self.rt]

    @property
    def summary_keys(self) -> list[str]:
        """Columns identifying one replicate set."""
        return self.row_keys + self.compound_keys

    def required_columns(self) -> list[str]:
        cols = [self.abundance, self.mz, self.rt, self.subject_id]
        if self.replicate is not None:
            cols.append(self.replicate)
        return cols + self.row_keys[1:]


@dataclass(frozen=True)
class FilterInfo:
    """Parameters and per-compound results of prevalence filtering."""

    filter_percent: float
    status: pd.DataFrame  # index: compound id; columns: percent_present, keep

    @property
    def n_kept(self) -> int:
        return int(self.status['keep'].sum())


@dataclass(frozen=True)
class ImputationInfo:
    method: str
    params: dict
    n_imputed: int
    n_clamped: int = 0


@dataclass(frozen=True)
class NormalizationInfo:
    method: str
    transform: str
    controls: tuple[str, ...] = ()
    n_factors: Optional[int] = None
    params: dict = field(default_factory=dict)


@dataclass(frozen=True)
class MSPrepData:
    """Wide abundance table plus the metadata carried between stages.

    Attributes:
        stage: Current lifecycle stage
        data: Wide table, rows indexed by (subject, grouping..., batch),
            one column per compound id
        schema: Column role descriptor
        replicate_count: Replicates per (compound, subject, grouping, batch)
        cv_max: Coefficient of variation threshold used by prepare
        min_proportion_present: Presence threshold used by prepare
        missing_val: Sentinel that marked missing abundances in the raw input
        compounds: Compound id -> mz, rt
        replicate_info: Long table of per-replicate-set provenance
        medians: Summaries that were reported by the median
        filter_info: Set from the filtered stage on
        imputation_info: Set from the imputed stage on
        normalization_info: Set at the normalized stage
        method_log: Processing steps performed so far
    """

    stage: Stage
    data: pd.DataFrame
    schema: ColumnSchema
    replicate_count: int
    cv_max: float
    min_proportion_present: float
    missing_val: Optional[float]
    compounds: pd.DataFrame
    replicate_info: pd.DataFrame
    medians: pd.DataFrame
    filter_info: Optional[FilterInfo] = None
    imputation_info: Optional[ImputationInfo] = None
    normalization_info: Optional[NormalizationInfo] = None
    method_log: tuple[str, ...] = ()

    @property
    def n_subjects(self) -> int:
        return self.data.index.get_level_values(self.schema.subject_id).nunique()

    @property
    def n_compounds(self) -> int:
        return self.data.shape[1]

    def advance(self, stage: Stage, data: pd.DataFrame, log_entry: str, **changes) -> MSPrepData:
        """Return a new object at ``stage`` holding ``data``.

        Carried-over tables are copied so no two stages share a DataFrame.
        """
        for name in ('compounds', 'replicate_info', 'medians'):
            if name not in changes:
                changes[name] = getattr(self, name).copy()
        if 'filter_info' not in changes and self.filter_info is not None:
            changes['filter_info'] = replace(self.filter_info, status=self.filter_info.status.copy())
        return replace(
            self,
            stage=stage,
            data=data,
            method_log=self.method_log + (log_entry,),
            **changes,
        )

    def summary(self) -> str:
        """Human-readable report of the dataset and the stages applied."""
        schema = self.schema
        batch_statement = f"; Batch var: {schema.batch}" if schema.batch else ""
        lines = [
            "msprep dataset",
            f"    Stage: {self.stage.value}",
            f"    Replicate count: {self.replicate_count}",
            f"    Subject count: {self.n_subjects}",
            f"    Grouping vars: {', '.join(schema.grouping_vars)}{batch_statement}",
            f"    Count of subject-compounds summarized by median: {len(self.medians)}",
            "    Prepare summary:",
            "        User-defined parameters:",
            f"          cv_max = {self.cv_max}",
            f"          min_proportion_present = {round(self.min_proportion_present, 3)}",
        ]
        if self.filter_info is not None:
            pct = round(self.filter_info.filter_percent * 100, 3)
            lines += [
                "    Filter summary:",
                "      User-defined parameters:",
                f"        filter percent = {self.filter_info.filter_percent}",
                "      Resulting stats:",
                f"        Count of compounds present in >= {pct}% of subjects = "
                f"{self.filter_info.n_kept}",
            ]
        if self.imputation_info is not None:
            lines.append(f"    Imputation method: {self.imputation_info.method}")
        if self.normalization_info is not None:
            lines.append(f"    Normalization method: {self.normalization_info.method} "
                         f"({self.normalization_info.transform})")
        lines.append(f"    Dataset: {self.data.shape[0]} rows x {self.data.shape[1]} compounds")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.summary()


def require_stage(msprep_obj: MSPrepData, expected: Stage, operation: str) -> None:
    """Raise StageError unless ``msprep_obj`` is at ``expected`` stage."""
    if not isinstance(msprep_obj, MSPrepData):
        raise StageError(f"{operation} requires an MSPrepData object, got {type(msprep_obj).__name__}")
    if msprep_obj.stage != expected:
        passed = STAGE_ORDER.index(msprep_obj.stage) > STAGE_ORDER.index(expected)
        raise StageError(
            f"{operation} requires stage '{expected.value}', "
            f"but dataset is at stage '{msprep_obj.stage.value}'"
            + (" (already applied)" if passed else "")
        )


def compound_id(mz: float, rt: float) -> str:
    """Column label for a compound, e.g. ``74.0249_0.5``."""
    return (
        f"{np.format_float_positional(float(mz), trim='-')}_"
        f"{np.format_float_positional(float(rt), trim='-')}"
    )


def build_compound_table(summary: pd.DataFrame, schema: ColumnSchema) -> pd.DataFrame:
    """Distinct compounds sorted by (mz, rt), indexed by compound id."""
    compounds = (
        summary[schema.compound_keys]
        .drop_duplicates()
        .sort_values(schema.compound_keys, kind='mergesort')
        .reset_index(drop=True)
    )
    ids = [compound_id(m, r) for m, r in zip(compounds[schema.mz], compounds[schema.rt])]
    compounds.index = pd.Index(ids, name='compound')
    return compounds


def spread_summary(
    summary: pd.DataFrame,
    schema: ColumnSchema,
    compounds: pd.DataFrame,
    value_col: str = 'abundance_summary',
) -> pd.DataFrame:
    """Reshape long summaries to the wide (rows x compounds) table.

    Combinations absent from ``summary`` come out as NaN.
    """
    long = summary[schema.row_keys + schema.compound_keys + [value_col]].copy()
    long['compound'] = [compound_id(m, r) for m, r in zip(long[schema.mz], long[schema.rt])]
    wide = long.set_index(schema.row_keys + ['compound'])[value_col].unstack('compound')
    wide = wide.reindex(columns=compounds.index)
    wide = wide.sort_index()
    wide.columns.name = None
    return wide
