"""
Replicate summarization: the prepare stage of the pipeline.

Collapses the R technical replicates of each (compound, subject, grouping,
batch) combination into a single abundance. The summary measure is chosen
per replicate set:

- absent: too few replicates present (proportion <= min_proportion_present),
  or exactly 2 of 3 present with CV above cv_max
- median: all replicates present but CV above cv_max (robust to a single
  extreme replicate)
- mean: otherwise

Absent summaries are reported as 0 so later stages have a single marker for
"not summarizable". Zero-mean and single-value replicate sets give NaN or
infinite CV values; these are classified by the rule, never raised.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor, as_completed

import numpy as np
import pandas as pd

from .dataset import (
    ColumnSchema,
    MSPrepData,
    Stage,
    build_compound_table,
    spread_summary,
)
from .exceptions import ConfigError, ShapeError

logger = logging.getLogger(__name__)

SUMMARY_MEASURES = ('mean', 'median', 'absent')

SUMMARY_COLUMNS = [
    'n_present',
    'prop_present',
    'mean_abundance',
    'sd_abundance',
    'median_abundance',
    'cv_abundance',
    'summary_measure',
    'abundance_summary',
]


def replace_missing(values: pd.Series, missing_val: float | None) -> pd.Series:
    """Replace the missing-value sentinel with NaN."""
    values = pd.to_numeric(values, errors='coerce').astype(float)
    if missing_val is None or (isinstance(missing_val, float) and np.isnan(missing_val)):
        return values
    return values.mask(values == missing_val)


def select_summary_measure(
    n_present,
    cv_abundance,
    n_replicates: int,
    min_proportion_present: float,
    cv_max: float,
) -> np.ndarray:
    """Choose the summary measure for each replicate set.

    Rules are applied in order, first match wins:

    1. proportion present <= min_proportion_present -> 'absent'
    2. cv > cv_max with exactly 2 of 3 replicates present -> 'absent'
    3. cv > cv_max with all replicates present -> 'median'
    4. otherwise -> 'mean'

    Rule 2 applies only when there are exactly 3 replicates. NaN CVs compare
    False against cv_max.

    Args:
        n_present: Count of non-missing replicates per set (array-like)
        cv_abundance: Coefficient of variation per set (array-like, may hold NaN/inf)
        n_replicates: Replicate count R shared by all sets
        min_proportion_present: Presence threshold
        cv_max: Dispersion threshold

    Returns:
        Array of 'absent' / 'median' / 'mean' strings
    """
    n_present = np.asarray(n_present, dtype=float)
    cv = np.asarray(cv_abundance, dtype=float)

    with np.errstate(invalid='ignore'):
        prop_present = n_present / n_replicates
        cv_exceeded = np.where(np.isnan(cv), False, cv > cv_max)

    conditions = [
        prop_present <= min_proportion_present,
        cv_exceeded & (n_replicates == 3) & (n_present == 2),
        cv_exceeded & (n_present == n_replicates),
    ]
    return np.select(conditions, ['absent', 'absent', 'median'], default='mean')


def _summarize_groups(
    data: pd.DataFrame,
    group_keys: list[str],
    abundance_col: str,
    replicate_count: int,
    cv_max: float,
    min_proportion_present: float,
) -> pd.DataFrame:
    """Compute summary records for every replicate set in ``data``."""
    grouped = data.groupby(group_keys, sort=True, dropna=False, observed=True)[abundance_col]
    summary = grouped.agg(
        n_present='count',
        mean_abundance='mean',
        sd_abundance='std',
        median_abundance='median',
    ).reset_index()

    summary['n_present'] = summary['n_present'].astype(int)
    summary['prop_present'] = summary['n_present'] / replicate_count
    with np.errstate(divide='ignore', invalid='ignore'):
        summary['cv_abundance'] = summary['sd_abundance'] / summary['mean_abundance']

    summary['summary_measure'] = select_summary_measure(
        summary['n_present'].to_numpy(),
        summary['cv_abundance'].to_numpy(),
        replicate_count,
        min_proportion_present,
        cv_max,
    )
    summary['abundance_summary'] = np.select(
        [summary['summary_measure'] == 'median', summary['summary_measure'] == 'mean'],
        [summary['median_abundance'], summary['mean_abundance']],
        default=0.0,
    )
    return summary[group_keys + SUMMARY_COLUMNS]


def _worker_summarize_chunk(args: tuple[pd.DataFrame, list[str], str, int, float, float]) -> pd.DataFrame:
    """Worker function for parallel summarization (must stay picklable)."""
    chunk, group_keys, abundance_col, replicate_count, cv_max, min_prop = args
    return _summarize_groups(chunk, group_keys, abundance_col, replicate_count, cv_max, min_prop)


def summarize_replicates(
    data: pd.DataFrame,
    schema: ColumnSchema,
    replicate_count: int,
    cv_max: float = 0.5,
    min_proportion_present: float = 1 / 3,
    n_workers: int = 1,
) -> pd.DataFrame:
    """Summarize replicates into one record per replicate set.

    The abundance column must already have missing values as NaN.

    Args:
        data: Long table of observations with standardized abundance
        schema: Column role descriptor
        replicate_count: Replicates per set
        cv_max: Dispersion threshold
        min_proportion_present: Presence threshold
        n_workers: Worker processes; sets are split by compound so each
            worker sees complete replicate sets

    Returns:
        DataFrame with the summary keys plus n_present, prop_present,
        mean/sd/median/cv of abundance, summary_measure, abundance_summary,
        sorted by the summary keys
    """
    group_keys = schema.summary_keys

    if n_workers <= 1:
        return _summarize_groups(
            data, group_keys, schema.abundance, replicate_count, cv_max, min_proportion_present
        )

    compound_codes = data.groupby(schema.compound_keys, sort=False).ngroup()
    n_chunks = min(n_workers, int(compound_codes.max()) + 1)
    chunk_ids = compound_codes % n_chunks
    tasks = [
        (data.loc[chunk_ids == i], group_keys, schema.abundance,
         replicate_count, cv_max, min_proportion_present)
        for i in range(n_chunks)
    ]

    logger.info(f"  Summarizing replicates with {n_chunks} parallel workers")
    parts = []
    with ProcessPoolExecutor(max_workers=n_chunks) as executor:
        futures = [executor.submit(_worker_summarize_chunk, task) for task in tasks]
        for future in as_completed(futures):
            try:
                parts.append(future.result())
            except Exception as e:
                logger.error(f"Worker error: {e}")
                raise

    # Recombine by key: completion order is arbitrary
    summary = pd.concat(parts, ignore_index=True)
    return summary.sort_values(group_keys, kind='mergesort').reset_index(drop=True)


def check_replicate_design(data: pd.DataFrame, schema: ColumnSchema) -> int:
    """Determine the replicate count R and verify every set has exactly R rows.

    Raises:
        ShapeError: If the observation count is not divisible by R, any
            replicate set is incomplete or oversized, or a compound is
            missing entirely for some (subject, grouping, batch) row
    """
    if schema.replicate is None:
        replicate_count = 1
    else:
        replicate_count = int(data[schema.replicate].nunique())
        if replicate_count == 0:
            raise ShapeError("No replicate identifiers found in the replicate column")

    if len(data) % replicate_count != 0:
        raise ShapeError(
            f"{len(data)} observations are not divisible by the replicate count "
            f"({replicate_count}); every compound must be measured in every replicate"
        )

    set_sizes = data.groupby(schema.summary_keys, dropna=False, observed=True).size()
    bad = set_sizes[set_sizes != replicate_count]
    if len(bad) > 0:
        raise ShapeError(
            f"{len(bad)} of {len(set_sizes)} (compound, subject, grouping, batch) "
            f"combinations do not have {replicate_count} replicates; "
            f"first offender: {bad.index[0]} with {bad.iloc[0]} rows"
        )

    # Every row combination must be measured for every compound
    n_row_combos = len(data[schema.row_keys].drop_duplicates())
    n_compounds = len(data[schema.compound_keys].drop_duplicates())
    if len(set_sizes) != n_row_combos * n_compounds:
        raise ShapeError(
            f"Found {len(set_sizes)} (compound, subject, grouping, batch) combinations, "
            f"expected {n_row_combos} row combinations x {n_compounds} compounds = "
            f"{n_row_combos * n_compounds}; some compounds are not measured for every subject"
        )

    return replicate_count


def ms_prepare(
    data: pd.DataFrame,
    abundance: str = 'abundance',
    mz: str = 'mz',
    rt: str = 'rt',
    subject_id: str = 'subject_id',
    replicate: str | None = None,
    batch: str | None = None,
    grouping_vars: str | list[str] | None = None,
    cv_max: float = 0.50,
    missing_val: float | None = 1,
    min_proportion_present: float = 1 / 3,
    n_workers: int = 1,
) -> MSPrepData:
    """Summarize technical replicates and prepare data for filtering.

    Replicate sets are summarized by the mean when the replicates agree
    (CV <= cv_max), by the median when all replicates are present but
    dispersed, and reported as 0 (absent) otherwise. See
    ``select_summary_measure`` for the exact rule.

    Args:
        data: Tidy long table, one row per observation
        abundance: Name of the abundance column
        mz: Name of the mass-to-charge column
        rt: Name of the retention time column
        subject_id: Name of the subject ID column
        replicate: Name of the replicate column (None if there are no replicates)
        batch: Name of the batch column
        grouping_vars: Name or list of names of phenotype/comparison-group columns
        cv_max: Acceptable coefficient of variation between replicates
        missing_val: Value marking missing abundances in the input
        min_proportion_present: Minimum proportion of replicates present to
            summarize with mean or median
        n_workers: Worker processes used for summarization

    Returns:
        MSPrepData at the prepared stage

    Raises:
        ConfigError: On invalid parameters or missing columns
        ShapeError: If the replicate design is incomplete

    Example:
        >>> prepped = ms_prepare(tidy_data, replicate='replicate',
        ...                      batch='batch', grouping_vars='spike')
        >>> print(prepped.summary())
    """
    if not isinstance(data, pd.DataFrame):
        raise ConfigError(f"data must be a pandas DataFrame, got {type(data).__name__}")
    if isinstance(grouping_vars, str):
        grouping_vars = [grouping_vars]
    if cv_max is None or cv_max < 0:
        raise ConfigError(f"cv_max must be non-negative, got {cv_max}")
    if not 0 <= min_proportion_present <= 1:
        raise ConfigError(f"min_proportion_present must be in [0, 1], got {min_proportion_present}")

    schema = ColumnSchema(
        abundance=abundance,
        mz=mz,
        rt=rt,
        subject_id=subject_id,
        replicate=replicate,
        batch=batch,
        grouping_vars=tuple(grouping_vars or ()),
    )
    missing_cols = [c for c in schema.required_columns() if c not in data.columns]
    if missing_cols:
        raise ConfigError(f"Columns not found in data: {missing_cols}")

    data = data[list(dict.fromkeys(schema.required_columns()))].copy()
    for col in schema.compound_keys:
        converted = pd.to_numeric(data[col], errors='coerce')
        if converted.isna().any():
            raise ConfigError(f"Column '{col}' must be numeric and complete")
        data[col] = converted.astype(float)
    data[schema.abundance] = replace_missing(data[schema.abundance], missing_val)

    replicate_count = check_replicate_design(data, schema)

    logger.info(f"Summarizing {len(data)} observations with {replicate_count} replicates "
                f"(cv_max={cv_max}, min_proportion_present={min_proportion_present:.3f})")

    summary = summarize_replicates(
        data,
        schema,
        replicate_count,
        cv_max=cv_max,
        min_proportion_present=min_proportion_present,
        n_workers=n_workers,
    )

    compounds = build_compound_table(summary, schema)
    wide = spread_summary(summary, schema, compounds)

    replicate_info = summary[schema.summary_keys + [
        'n_present', 'prop_present', 'cv_abundance', 'summary_measure',
    ]].copy()
    replicate_info['summary_measure'] = pd.Categorical(
        replicate_info['summary_measure'], categories=list(SUMMARY_MEASURES)
    )
    medians = summary.loc[
        summary['summary_measure'] == 'median', schema.summary_keys + ['abundance_summary']
    ].reset_index(drop=True)

    counts = summary['summary_measure'].value_counts()
    logger.info(f"Summarized {len(summary)} replicate sets for {len(compounds)} compounds: "
                f"{counts.get('mean', 0)} mean, {counts.get('median', 0)} median, "
                f"{counts.get('absent', 0)} absent")

    return MSPrepData(
        stage=Stage.PREPARED,
        data=wide,
        schema=schema,
        replicate_count=replicate_count,
        cv_max=cv_max,
        min_proportion_present=min_proportion_present,
        missing_val=missing_val,
        compounds=compounds,
        replicate_info=replicate_info,
        medians=medians,
        method_log=(
            f"Prepare: {replicate_count} replicates, cv_max={cv_max}, "
            f"min_proportion_present={min_proportion_present:.3f}",
        ),
    )
