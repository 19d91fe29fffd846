"""Command-line interface for MSPrep.

Summarization, filtering, imputation and normalization of mass
spectrometry metabolomics data.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import yaml

from .data_io import (
    load_quantification,
    ms_tidy,
    validate_quantification_table,
    write_stage_output,
    write_table,
)
from .dataset import ColumnSchema, MSPrepData
from .exceptions import MSPrepError
from .filtering import ms_filter
from .imputation import ms_impute
from .normalization import ms_normalize
from .prepare import ms_prepare

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'abundance_column': 'abundance',
            'mz_column': 'mz',
            'rt_column': 'rt',
            'subject_column': 'subject_id',
            'replicate_column': 'replicate',
            'batch_column': 'batch',
            'grouping_columns': ['spike'],
        },
        'tidy': {
            'enabled': False,  # Input is a wide export that needs ms_tidy
            'col_extra_txt': None,
            'separator': '_',
            'col_names': ['spike', 'batch', 'replicate', 'subject_id'],
        },
        'prepare': {
            'cv_max': 0.5,
            'missing_val': 1,
            'min_proportion_present': 1 / 3,
            'n_workers': 1,
        },
        'filter': {
            'filter_percent': 0.5,
        },
        'impute': {
            'method': 'halfmin',
            'n_pcs': 3,
            'k_knn': 5,
            'compounds_as_neighbors': False,
        },
        'normalize': {
            'method': 'median',
            'transform': 'log10',
            'n_control': 10,
            'controls': None,
            'n_comp': 2,
            'k_ruv': 3,
            'n_sv': None,
            'covariates_of_interest': None,
        },
        'output': {
            'format': 'csv',
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def schema_from_config(config: dict) -> ColumnSchema:
    """Build the column schema from the ``data`` config section."""
    data_cfg = config['data']
    grouping = data_cfg.get('grouping_columns') or []
    if isinstance(grouping, str):
        grouping = [grouping]
    return ColumnSchema(
        abundance=data_cfg['abundance_column'],
        mz=data_cfg['mz_column'],
        rt=data_cfg['rt_column'],
        subject_id=data_cfg['subject_column'],
        replicate=data_cfg.get('replicate_column'),
        batch=data_cfg.get('batch_column'),
        grouping_vars=tuple(grouping),
    )


def _load_input(input_path: Path, config: dict, schema: ColumnSchema) -> pd.DataFrame:
    """Load the input table, tidying it first when it is a wide export."""
    tidy_cfg = config['tidy']
    if not tidy_cfg.get('enabled', False):
        return load_quantification(input_path, schema)

    wide = load_quantification(input_path, validate=False)
    return ms_tidy(
        wide,
        mz=schema.mz,
        rt=schema.rt,
        col_extra_txt=tidy_cfg.get('col_extra_txt'),
        separator=tidy_cfg.get('separator', '_'),
        col_names=tidy_cfg.get('col_names'),
    ).rename(columns={'mz': schema.mz, 'rt': schema.rt})


def _run_prepare(data: pd.DataFrame, config: dict, schema: ColumnSchema) -> MSPrepData:
    prep_cfg = config['prepare']
    return ms_prepare(
        data,
        abundance=schema.abundance,
        mz=schema.mz,
        rt=schema.rt,
        subject_id=schema.subject_id,
        replicate=schema.replicate,
        batch=schema.batch,
        grouping_vars=list(schema.grouping_vars),
        cv_max=prep_cfg['cv_max'],
        missing_val=prep_cfg['missing_val'],
        min_proportion_present=prep_cfg['min_proportion_present'],
        n_workers=prep_cfg.get('n_workers', 1),
    )


def generate_pipeline_metadata(
    config: dict,
    result: MSPrepData,
    input_files: list[str],
) -> dict:
    """Generate pipeline metadata JSON for reproducibility and provenance.

    Args:
        config: Pipeline configuration dictionary
        result: Final pipeline object
        input_files: List of input file paths

    Returns:
        Dictionary with pipeline version, timestamp, dataset summary,
        parameters and the method log

    """
    # Get version from package
    try:
        from importlib.metadata import version
        pipeline_version = version('msprep')
    except Exception:
        pipeline_version = 'development'

    schema = result.schema
    row_index = result.data.index.to_frame(index=False)
    dataset = {
        'stage': result.stage.value,
        'n_rows': int(result.data.shape[0]),
        'n_compounds': int(result.n_compounds),
        'n_subjects': int(result.n_subjects),
        'replicate_count': int(result.replicate_count),
        'n_median_summaries': len(result.medians),
    }
    if schema.batch is not None:
        batches = row_index[schema.batch].dropna().unique().tolist()
        dataset['batches'] = batches
        dataset['n_batches'] = len(batches)

    warnings = []
    if result.imputation_info is not None and result.imputation_info.n_clamped:
        warnings.append(f"{result.imputation_info.n_clamped} negative imputed values "
                        f"replaced with half-min")

    metadata = {
        'pipeline_version': pipeline_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'dataset': dataset,
        'processing_parameters': {
            key: config.get(key, {}) for key in ('data', 'tidy', 'prepare', 'filter', 'impute', 'normalize')
        },
        'method_log': list(result.method_log),
        'warnings': warnings,
    }
    if result.normalization_info is not None:
        metadata['normalization'] = {
            'method': result.normalization_info.method,
            'transform': result.normalization_info.transform,
            'controls': list(result.normalization_info.controls),
            'n_factors': result.normalization_info.n_factors,
        }

    return metadata


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full MSPrep pipeline.

    Pipeline stages:
    1. Load (and optionally tidy) the input table
    2. Summarize technical replicates
    3. Filter compounds by prevalence
    4. Impute missing values
    5. Normalize / batch correct
    6. Write every stage's table plus metadata.json
    """
    config = load_config(Path(args.config) if args.config else None)
    schema = schema_from_config(config)
    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    fmt = config['output']['format']

    input_path = Path(args.input)
    logger.info(f"Loading {input_path}")
    data = _load_input(input_path, config, schema)

    logger.info("Stage 1: Summarizing replicates")
    prepared = _run_prepare(data, config, schema)
    write_stage_output(prepared, output_dir, fmt)
    replicate_info = prepared.replicate_info.copy()
    replicate_info['summary_measure'] = replicate_info['summary_measure'].astype(str)
    write_table(replicate_info, output_dir / f"replicate_info.{fmt}", fmt)

    logger.info("Stage 2: Filtering compounds")
    filtered = ms_filter(prepared, filter_percent=config['filter']['filter_percent'])
    write_stage_output(filtered, output_dir, fmt)
    write_table(filtered.filter_info.status.reset_index(), output_dir / f"filter_status.{fmt}", fmt)

    logger.info("Stage 3: Imputing missing values")
    imp_cfg = config['impute']
    imputed = ms_impute(
        filtered,
        method=imp_cfg['method'],
        n_pcs=imp_cfg['n_pcs'],
        k_knn=imp_cfg['k_knn'],
        compounds_as_neighbors=imp_cfg.get('compounds_as_neighbors', False),
    )
    write_stage_output(imputed, output_dir, fmt)

    result = imputed
    norm_cfg = config['normalize']
    if norm_cfg.get('method'):
        logger.info("Stage 4: Normalizing")
        result = ms_normalize(
            imputed,
            method=norm_cfg['method'],
            n_control=norm_cfg.get('n_control'),
            controls=norm_cfg.get('controls'),
            n_comp=norm_cfg.get('n_comp', 2),
            k_ruv=norm_cfg.get('k_ruv', 3),
            n_sv=norm_cfg.get('n_sv'),
            covariates_of_interest=norm_cfg.get('covariates_of_interest'),
            transform=norm_cfg.get('transform', 'log10'),
        )
        write_stage_output(result, output_dir, fmt)
    else:
        logger.info("Stage 4: Normalization disabled")

    metadata = generate_pipeline_metadata(config, result, [str(input_path)])
    metadata_output = output_dir / "metadata.json"
    with open(metadata_output, 'w') as f:
        json.dump(metadata, f, indent=2, default=str)
    logger.info(f"Saved pipeline metadata to {metadata_output}")

    # Log summary
    logger.info("=" * 60)
    logger.info("MSPrep Pipeline Complete")
    logger.info("=" * 60)
    for step in result.method_log:
        logger.info(f"  {step}")
    logger.info(f"Output directory: {output_dir}")

    return 0


def cmd_prepare(args: argparse.Namespace) -> int:
    """Summarize replicates only and print the dataset summary."""
    config = load_config(Path(args.config) if args.config else None)
    schema = schema_from_config(config)
    data = _load_input(Path(args.input), config, schema)

    prepared = _run_prepare(data, config, schema)
    output = Path(args.output)
    fmt = output.suffix.lstrip('.').lower()
    if fmt not in ('csv', 'tsv', 'parquet'):
        fmt = config['output']['format']
    out = prepared.data.reset_index()
    out.columns = [str(c) for c in out.columns]
    write_table(out, output, fmt)
    logger.info(f"Saved summarized data to {output}")
    print(prepared.summary())
    return 0


def cmd_validate(args: argparse.Namespace) -> int:
    """Check an input table against the configured columns."""
    config = load_config(Path(args.config) if args.config else None)
    result = validate_quantification_table(Path(args.input), schema_from_config(config))
    print(result)
    for warning in result.warnings:
        logger.warning(warning)
    return 0 if result.is_valid else 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='msprep',
        description='MSPrep: pre-analytic processing of mass spectrometry metabolomics data\n\n'
                    'Replicate summarization, prevalence filtering, missing value\n'
                    'imputation, and normalization / batch correction.\n\n'
                    'Primary usage:\n'
                    '  msprep run -i data.csv -o output_dir/ -c config.yaml',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version='%(prog)s 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Run command (primary) - executes full pipeline
    run_parser = subparsers.add_parser(
        'run',
        help='Run the full MSPrep pipeline (recommended)',
        description='Execute the complete pipeline: replicate summarization, filtering, '
                    'imputation and normalization. Every stage is written to the output directory.'
    )
    run_parser.add_argument('-i', '--input', required=True,
                           help='Input quantification table (CSV/TSV/parquet)')
    run_parser.add_argument('-o', '--output-dir', required=True,
                           help='Output directory for results')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')

    prep_parser = subparsers.add_parser('prepare', help='Summarize technical replicates only')
    prep_parser.add_argument('-i', '--input', required=True, help='Input quantification table')
    prep_parser.add_argument('-o', '--output', required=True, help='Output table path')
    prep_parser.add_argument('-c', '--config', help='Configuration YAML')

    val_parser = subparsers.add_parser('validate', help='Validate an input table')
    val_parser.add_argument('-i', '--input', required=True, help='Input quantification table')
    val_parser.add_argument('-c', '--config', help='Configuration YAML')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    commands = {
        'run': cmd_run,
        'prepare': cmd_prepare,
        'validate': cmd_validate,
    }
    if args.command not in commands:
        parser.print_help()
        return 1

    try:
        return commands[args.command](args)
    except MSPrepError as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())
