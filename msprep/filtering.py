"""Prevalence filtering of summarized compounds."""

from __future__ import annotations

import logging

import pandas as pd

from .dataset import FilterInfo, MSPrepData, Stage, require_stage
from .exceptions import ConfigError

logger = logging.getLogger(__name__)


def compute_filter_status(data: pd.DataFrame, filter_percent: float) -> pd.DataFrame:
    """Fraction of rows in which each compound is present, and keep/drop.

    A cell counts as present when it is neither zero nor missing.

    Args:
        data: Wide table (rows x compounds)
        filter_percent: Minimum fraction of rows a compound must be present in

    Returns:
        DataFrame indexed by compound with columns percent_present and keep
    """
    present = data.notna() & (data != 0)
    if len(data) == 0:
        percent_present = pd.Series(0.0, index=data.columns)
    else:
        percent_present = present.mean(axis=0).astype(float)
    status = pd.DataFrame({
        'percent_present': percent_present,
        'keep': percent_present >= filter_percent,
    })
    status.index.name = 'compound'
    return status


def filter_compounds(data: pd.DataFrame, filter_percent: float) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Drop compounds present in fewer than ``filter_percent`` of rows.

    Only columns are removed; values and rows are untouched, so applying the
    filter again with the same threshold changes nothing.

    Returns:
        Tuple of (filtered table, filter status)
    """
    if filter_percent is None or not 0 <= filter_percent <= 1:
        raise ConfigError(f"filter_percent must be in [0, 1], got {filter_percent}")

    status = compute_filter_status(data, filter_percent)
    kept = status.index[status['keep']]
    return data.loc[:, kept].copy(), status


def ms_filter(msprep_obj: MSPrepData, filter_percent: float = 0.5) -> MSPrepData:
    """Filter a prepared dataset to compounds present in enough subjects.

    Args:
        msprep_obj: Dataset at the prepared stage
        filter_percent: Minimum fraction (0-1) of rows with a non-zero summary

    Returns:
        New MSPrepData at the filtered stage with ``filter_info`` set

    Raises:
        StageError: If the dataset is not at the prepared stage
        ConfigError: If filter_percent is outside [0, 1]
    """
    require_stage(msprep_obj, Stage.PREPARED, 'ms_filter')

    filtered, status = filter_compounds(msprep_obj.data, filter_percent)
    n_kept = int(status['keep'].sum())
    n_total = len(status)

    logger.info(f"Filter: kept {n_kept} of {n_total} compounds present in "
                f">= {filter_percent * 100:g}% of rows")
    if n_kept == 0:
        logger.warning("Filter removed every compound")

    return msprep_obj.advance(
        Stage.FILTERED,
        filtered,
        f"Filter: {n_kept}/{n_total} compounds kept (filter_percent={filter_percent})",
        filter_info=FilterInfo(filter_percent=filter_percent, status=status),
    )
