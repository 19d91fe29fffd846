"""
Normalization and batch correction of imputed datasets.

Available methods:

- median: align sample medians on the log scale
- quantile: equalize the empirical distribution of every sample
- ComBat: empirical Bayes batch correction (``msprep.batch_correction``)
- quantile + ComBat, median + ComBat: the above, then ComBat
- CRMN, RUV: control-compound based factor removal (``msprep.factor_models``)
- SVA: surrogate variable analysis

Data are log transformed before normalization. CRMN and RUV need control
compounds: either an explicit list, or the ``n_control`` least variable
compounds of the dataset.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from .batch_correction import combat, covariate_design
from .dataset import MSPrepData, NormalizationInfo, Stage, require_stage
from .exceptions import ConfigError
from .factor_models import crmn, ruv2, sva

logger = logging.getLogger(__name__)

TRANSFORMS = ('log10', 'log2', 'none')


@dataclass
class NormalizationContext:
    """Per-run inputs a normalizer may need besides the matrix.

    Attributes:
        batch: Batch label per sample (row), or None
        covariates: Samples x covariates DataFrame of factors of interest
        controls: Column indices of the control compounds
    """
    batch: np.ndarray | None = None
    covariates: pd.DataFrame | None = None
    controls: np.ndarray = field(default_factory=lambda: np.array([], dtype=int))

    def design(self, n_samples: int) -> np.ndarray:
        return covariate_design(self.covariates, n_samples)


@dataclass
class NormalizerOutput:
    matrix: np.ndarray
    n_factors: int | None = None


class Normalizer(ABC):
    """Normalizes a samples x compounds matrix on the log scale."""

    name: str = ''
    requires_controls: bool = False
    requires_batch: bool = False

    @abstractmethod
    def normalize(self, matrix: np.ndarray, context: NormalizationContext) -> NormalizerOutput:
        """Return the normalized matrix (same shape as ``matrix``)."""


def median_normalize(matrix: np.ndarray) -> np.ndarray:
    """Shift each sample so all sample medians equal their mean."""
    sample_medians = np.median(matrix, axis=1)
    return matrix - sample_medians[:, None] + sample_medians.mean()


def quantile_normalize(matrix: np.ndarray) -> np.ndarray:
    """Quantile normalization across samples (rows).

    Every sample is given the mean sorted distribution; tied values receive
    the mean of the quantiles they span.
    """
    n_samples, _ = matrix.shape
    reference = np.sort(matrix, axis=1).mean(axis=0)
    cumulative = np.concatenate([[0.0], np.cumsum(reference)])
    normalized = np.empty_like(matrix, dtype=float)
    for i in range(n_samples):
        # A tie group spans ranks lo..hi; give it the mean of reference[lo-1:hi]
        lo = rankdata(matrix[i], method='min').astype(int)
        hi = rankdata(matrix[i], method='max').astype(int)
        normalized[i] = (cumulative[hi] - cumulative[lo - 1]) / (hi - lo + 1)
    return normalized


def _apply_combat(matrix: np.ndarray, context: NormalizationContext) -> np.ndarray:
    n_batches = len(pd.unique(pd.Series(context.batch).astype(str)))
    if n_batches < 2:
        logger.warning("Only one batch - skipping ComBat batch correction")
        return matrix.copy()
    result = combat(matrix.T, context.batch, covariates=context.covariates)
    return result.corrected.T


class MedianNormalizer(Normalizer):
    name = 'median'

    def normalize(self, matrix, context):
        return NormalizerOutput(median_normalize(matrix))


class QuantileNormalizer(Normalizer):
    name = 'quantile'

    def normalize(self, matrix, context):
        return NormalizerOutput(quantile_normalize(matrix))


class ComBatNormalizer(Normalizer):
    name = 'ComBat'
    requires_batch = True

    def normalize(self, matrix, context):
        return NormalizerOutput(_apply_combat(matrix, context))


class ThenComBatNormalizer(Normalizer):
    """Run a first normalizer, then ComBat."""

    requires_batch = True

    def __init__(self, first: Normalizer):
        self.first = first
        self.name = f"{first.name} + ComBat"

    def normalize(self, matrix, context):
        first = self.first.normalize(matrix, context)
        return NormalizerOutput(_apply_combat(first.matrix, context), first.n_factors)


class CRMNNormalizer(Normalizer):
    name = 'CRMN'
    requires_controls = True

    def __init__(self, n_comp: int = 2):
        self.n_comp = n_comp

    def normalize(self, matrix, context):
        design = context.design(matrix.shape[0])
        return NormalizerOutput(crmn(matrix, context.controls, design, self.n_comp), self.n_comp)


class RUVNormalizer(Normalizer):
    name = 'RUV'
    requires_controls = True

    def __init__(self, k_ruv: int = 3):
        self.k_ruv = k_ruv

    def normalize(self, matrix, context):
        design = context.design(matrix.shape[0])
        return NormalizerOutput(ruv2(matrix, context.controls, design, self.k_ruv), self.k_ruv)


class SVANormalizer(Normalizer):
    name = 'SVA'

    def __init__(self, n_sv: int | None = None):
        self.n_sv = n_sv

    def normalize(self, matrix, context):
        design = context.design(matrix.shape[0])
        normalized, n_sv = sva(matrix, design, self.n_sv)
        return NormalizerOutput(normalized, n_sv)


def _method_key(method: str) -> str:
    return ''.join(str(method).lower().split())


NORMALIZERS = {
    'median': lambda p: MedianNormalizer(),
    'quantile': lambda p: QuantileNormalizer(),
    'combat': lambda p: ComBatNormalizer(),
    'quantile+combat': lambda p: ThenComBatNormalizer(QuantileNormalizer()),
    'median+combat': lambda p: ThenComBatNormalizer(MedianNormalizer()),
    'crmn': lambda p: CRMNNormalizer(n_comp=p['n_comp']),
    'ruv': lambda p: RUVNormalizer(k_ruv=p['k_ruv']),
    'sva': lambda p: SVANormalizer(n_sv=p['n_sv']),
}

METHOD_NAMES = ('median', 'quantile', 'ComBat', 'quantile + ComBat', 'median + ComBat',
                'CRMN', 'RUV', 'SVA')


def get_normalizer(method: str, n_comp: int = 2, k_ruv: int = 3, n_sv: int | None = None) -> Normalizer:
    """Build the normalizer for ``method`` (case and spacing are ignored).

    Raises:
        ConfigError: Unknown method or invalid factor count
    """
    key = _method_key(method) if method is not None else ''
    if key not in NORMALIZERS:
        raise ConfigError(f"Unknown normalization method: {method!r}. "
                          f"Options: {', '.join(METHOD_NAMES)}")
    if key == 'crmn' and (n_comp is None or n_comp < 1):
        raise ConfigError(f"n_comp must be a positive integer, got {n_comp}")
    if key == 'ruv' and (k_ruv is None or k_ruv < 1):
        raise ConfigError(f"k_ruv must be a positive integer, got {k_ruv}")
    if key == 'sva' and n_sv is not None and n_sv < 0:
        raise ConfigError(f"n_sv must be non-negative, got {n_sv}")
    return NORMALIZERS[key]({'n_comp': n_comp, 'k_ruv': k_ruv, 'n_sv': n_sv})


def log_transform(data: pd.DataFrame, transform: str) -> pd.DataFrame:
    """Apply the log transform named by ``transform``."""
    if transform == 'log10':
        return np.log10(data)
    if transform == 'log2':
        return np.log2(data)
    return data.copy()


def select_controls(
    data: pd.DataFrame,
    n_control: int | None = 10,
    controls=None,
) -> list[int]:
    """Resolve control compounds to column positions.

    Explicit ``controls`` may be compound ids or integer positions. Without
    them, the ``n_control`` compounds with the smallest variance across
    samples are used (ties broken by column order).

    Raises:
        ConfigError: Unknown control compound, or no controls can be resolved
    """
    columns = list(data.columns)
    if controls is not None and len(controls) > 0:
        positions = []
        unknown = []
        for c in controls:
            if c in columns:
                positions.append(columns.index(c))
            elif isinstance(c, (int, np.integer)) and not isinstance(c, bool) and 0 <= c < len(columns):
                positions.append(int(c))
            else:
                unknown.append(c)
        if unknown:
            raise ConfigError(f"Control compounds not found in data: {unknown[:5]}")
        return sorted(set(positions))

    if n_control is None or n_control <= 0:
        raise ConfigError("Method requires control compounds: pass controls "
                          "or a positive n_control")
    if n_control > len(columns):
        logger.warning(f"n_control={n_control} exceeds the {len(columns)} available compounds; "
                       f"using all compounds as controls")
        n_control = len(columns)

    variances = data.var(axis=0, ddof=1).to_numpy()
    order = np.argsort(variances, kind='stable')
    return sorted(order[:n_control].tolist())


@dataclass
class NormalizationResult:
    data: pd.DataFrame
    controls: list[str]
    n_factors: int | None


def normalize_matrix(
    data: pd.DataFrame,
    normalizer: Normalizer,
    batch=None,
    covariates: pd.DataFrame | None = None,
    n_control: int | None = 10,
    controls=None,
) -> NormalizationResult:
    """Normalize a (log-scale) wide table, keeping its labels."""
    if normalizer.requires_batch and batch is None:
        raise ConfigError(f"{normalizer.name} requires a batch variable")

    control_positions = []
    if normalizer.requires_controls:
        control_positions = select_controls(data, n_control, controls)

    context = NormalizationContext(
        batch=None if batch is None else np.asarray(batch),
        covariates=covariates,
        controls=np.asarray(control_positions, dtype=int),
    )
    output = normalizer.normalize(data.to_numpy(dtype=float), context)
    if output.matrix.shape != data.shape:
        raise ValueError(f"{normalizer.name} returned shape {output.matrix.shape}, "
                         f"expected {data.shape}")

    normalized = pd.DataFrame(output.matrix, index=data.index.copy(), columns=data.columns.copy())
    return NormalizationResult(
        data=normalized,
        controls=[data.columns[i] for i in control_positions],
        n_factors=output.n_factors,
    )


def ms_normalize(
    msprep_obj: MSPrepData,
    method: str = 'median',
    n_control: int | None = 10,
    controls=None,
    n_comp: int = 2,
    k_ruv: int = 3,
    n_sv: int | None = None,
    covariates_of_interest: list[str] | None = None,
    transform: str = 'log10',
) -> MSPrepData:
    """Normalize and/or batch correct an imputed dataset.

    Args:
        msprep_obj: Dataset at the imputed stage
        method: One of 'median', 'quantile', 'ComBat', 'quantile + ComBat',
            'median + ComBat', 'CRMN', 'RUV', 'SVA'
        n_control: Number of data-driven control compounds (CRMN, RUV)
        controls: Explicit control compound ids (overrides n_control)
        n_comp: Number of factors for CRMN
        k_ruv: Number of unwanted factors for RUV
        n_sv: Number of surrogate variables for SVA (estimated when None)
        covariates_of_interest: Row-key columns whose effects must be kept;
            defaults to the dataset's grouping variables
        transform: 'log10', 'log2' or 'none', applied before normalizing

    Returns:
        New MSPrepData at the normalized stage

    Raises:
        ConfigError: Unknown method/transform, missing batch, unresolvable controls
        StageError: If the dataset is not at the imputed stage
    """
    normalizer = get_normalizer(method, n_comp=n_comp, k_ruv=k_ruv, n_sv=n_sv)
    if transform not in TRANSFORMS:
        raise ConfigError(f"Unknown transform: {transform!r}. Options: {', '.join(TRANSFORMS)}")
    require_stage(msprep_obj, Stage.IMPUTED, 'ms_normalize')

    schema = msprep_obj.schema
    data = msprep_obj.data
    row_index = data.index.to_frame(index=False)

    batch = None
    if normalizer.requires_batch:
        if schema.batch is None:
            raise ConfigError(f"{normalizer.name} requires a batch variable, "
                              f"but the dataset has none")
        batch = row_index[schema.batch].to_numpy()

    if covariates_of_interest is None:
        covariates_of_interest = list(schema.grouping_vars)
    unknown = [c for c in covariates_of_interest if c not in row_index.columns]
    if unknown:
        raise ConfigError(f"Covariates of interest not found: {unknown}")
    covariates = row_index[covariates_of_interest] if covariates_of_interest else None

    has_controls = controls is not None and len(controls) > 0
    if normalizer.requires_controls and not (has_controls or (n_control is not None and n_control > 0)):
        raise ConfigError(f"{normalizer.name} requires control compounds: "
                          f"pass controls or a positive n_control")

    if transform != 'none' and (data <= 0).any().any():
        raise ConfigError("Log transform requires strictly positive abundances")

    logger.info(f"Normalizing {data.shape[0]} rows x {data.shape[1]} compounds "
                f"using {normalizer.name} ({transform})")

    result = normalize_matrix(
        log_transform(data, transform),
        normalizer,
        batch=batch,
        covariates=covariates,
        n_control=n_control,
        controls=controls,
    )

    if result.controls:
        logger.info(f"  Using {len(result.controls)} control compounds")

    return msprep_obj.advance(
        Stage.NORMALIZED,
        result.data,
        f"Normalize: {normalizer.name} ({transform})",
        normalization_info=NormalizationInfo(
            method=normalizer.name,
            transform=transform,
            controls=tuple(result.controls),
            n_factors=result.n_factors,
            params={'n_control': n_control, 'n_comp': n_comp, 'k_ruv': k_ruv, 'n_sv': n_sv,
                    'covariates_of_interest': list(covariates_of_interest)},
        ),
    )
