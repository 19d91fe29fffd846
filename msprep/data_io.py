"""Data I/O: loading quantification tables, tidying, and writing stage outputs."""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .dataset import ColumnSchema, MSPrepData
from .exceptions import ConfigError

logger = logging.getLogger(__name__)

TABLE_FORMATS = ('csv', 'tsv', 'parquet')

# Default sample-column fields of a wide quantification export
DEFAULT_TIDY_FIELDS = ['spike', 'batch', 'replicate', 'subject_id']


@dataclass
class ValidationResult:
    """Result of validating a quantification table."""

    is_valid: bool
    filepath: Path
    missing_required: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_rows: int = 0
    n_compounds: int = 0
    n_subjects: int = 0

    def __str__(self) -> str:
        if self.is_valid:
            return (f"Valid: {self.filepath.name} ({self.n_rows} rows, "
                    f"{self.n_compounds} compounds, {self.n_subjects} subjects)")
        issues = []
        if self.missing_required:
            issues.append(f"Missing columns: {self.missing_required}")
        issues.extend(self.warnings)
        return f"Invalid: {self.filepath.name} - {'; '.join(issues)}"


def _separator_for(filepath: Path) -> str:
    return '\t' if filepath.suffix.lower() in ['.tsv', '.txt'] else ','


def read_table(filepath: Path, nrows: Optional[int] = None) -> pd.DataFrame:
    """Read a CSV, TSV or parquet table."""
    filepath = Path(filepath)
    if filepath.suffix.lower() == '.parquet':
        if nrows is not None:
            pf = pq.ParquetFile(filepath)
            return next(pf.iter_batches(batch_size=nrows)).to_pandas()
        return pq.read_table(filepath).to_pandas()
    return pd.read_csv(filepath, sep=_separator_for(filepath), nrows=nrows)


def validate_quantification_table(filepath: Path, schema: ColumnSchema) -> ValidationResult:
    """Check that a long-format table has the columns named by ``schema``.

    Args:
        filepath: Path to the table (CSV, TSV or parquet)
        schema: Column roles expected in the table

    Returns:
        ValidationResult with validation details

    """
    filepath = Path(filepath)
    result = ValidationResult(is_valid=True, filepath=filepath)

    try:
        df_head = read_table(filepath, nrows=5)

        for col in schema.required_columns():
            if col not in df_head.columns:
                result.missing_required.append(col)
                result.is_valid = False

        if schema.replicate is None:
            result.warnings.append("No replicate column - each observation is its own summary")

        if result.is_valid:
            df_full = read_table(filepath)
            result.n_rows = len(df_full)
            result.n_compounds = len(df_full[schema.compound_keys].drop_duplicates())
            result.n_subjects = df_full[schema.subject_id].nunique()
            if not pd.api.types.is_numeric_dtype(df_full[schema.abundance]):
                result.warnings.append(f"Abundance column '{schema.abundance}' is not numeric")

    except Exception as e:
        result.is_valid = False
        result.warnings.append(f"Error reading file: {str(e)}")

    return result


def load_quantification(filepath: Path, schema: Optional[ColumnSchema] = None,
                        validate: bool = True) -> pd.DataFrame:
    """Load a long-format quantification table.

    Raises:
        ConfigError: If validation fails and validate=True
    """
    filepath = Path(filepath)
    if validate and schema is not None:
        validation = validate_quantification_table(filepath, schema)
        if not validation.is_valid:
            raise ConfigError(f"Invalid quantification table: {validation}")

    df = read_table(filepath)
    logger.info(f"Loaded {len(df)} rows from {filepath}")
    return df


def ms_tidy(
    quantification_data: pd.DataFrame,
    mz: str = 'mz',
    rt: str = 'rt',
    col_extra_txt: Optional[str] = None,
    separator: str = '_',
    col_names: Optional[list[str]] = None,
) -> pd.DataFrame:
    """Convert a wide quantification export to the long observation format.

    Every column other than ``mz`` and ``rt`` is a sample. Its name, after
    removing ``col_extra_txt``, is split on ``separator`` into ``col_names``
    (e.g. ``Neutral_Operator_Dif_Pos_1x_O1_01`` ->
    spike=1x, batch=O1, replicate=01 with ``col_extra_txt`` removing the
    constant prefix).

    Args:
        quantification_data: Wide table, one row per compound
        mz: Mass-to-charge column
        rt: Retention time column
        col_extra_txt: Regular expression removed from sample column names
        separator: Separator between fields of a sample column name
        col_names: Names of the fields encoded in sample column names

    Returns:
        Long table with columns mz, rt, <col_names>, abundance

    Raises:
        ConfigError: If a sample column name does not split into len(col_names) fields
    """
    if col_names is None:
        col_names = DEFAULT_TIDY_FIELDS
    for col in (mz, rt):
        if col not in quantification_data.columns:
            raise ConfigError(f"Column '{col}' not found in quantification data")

    long = quantification_data.melt(
        id_vars=[mz, rt], var_name='sample_column', value_name='abundance'
    )
    keys = long['sample_column'].astype(str)
    if col_extra_txt:
        keys = keys.map(lambda k: re.sub(col_extra_txt, '', k))

    fields = keys.str.split(re.escape(separator), regex=True)
    bad = fields.map(len) != len(col_names)
    if bad.any():
        example = long.loc[bad, 'sample_column'].iloc[0]
        raise ConfigError(f"Sample column '{example}' does not split into "
                         f"{len(col_names)} fields {col_names} on '{separator}'")

    parsed = pd.DataFrame(fields.tolist(), columns=col_names, index=long.index)
    tidy = pd.concat([long[[mz, rt]], parsed, long[['abundance']]], axis=1)
    tidy = tidy.rename(columns={mz: 'mz', rt: 'rt'})

    logger.info(f"Tidied {quantification_data.shape[0]} compounds x "
                f"{quantification_data.shape[1] - 2} sample columns -> {len(tidy)} observations")
    return tidy


def write_table(df: pd.DataFrame, path: Path, fmt: str = 'csv') -> Path:
    """Write ``df`` as csv, tsv or parquet; returns the path written."""
    path = Path(path)
    if fmt == 'parquet':
        pq.write_table(pa.Table.from_pandas(df, preserve_index=False), path, compression='zstd')
    elif fmt == 'csv':
        df.to_csv(path, index=False)
    elif fmt == 'tsv':
        df.to_csv(path, sep='\t', index=False)
    else:
        raise ConfigError(f"Unknown output format: {fmt}. Options: {', '.join(TABLE_FORMATS)}")
    return path


def write_stage_output(msprep_obj: MSPrepData, output_dir: Path, fmt: str = 'csv') -> Path:
    """Write the wide table of a pipeline object to ``<stage>_data.<fmt>``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    out = msprep_obj.data.reset_index()
    out.columns = [str(c) for c in out.columns]
    path = write_table(out, output_dir / f"{msprep_obj.stage.value}_data.{fmt}", fmt)
    logger.info(f"Saved {msprep_obj.stage.value} data to {path}")
    return path
