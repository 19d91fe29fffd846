"""
Missing value imputation for filtered datasets.

Zeros in a filtered table mark compounds that were absent for a subject
(see ``prepare.select_summary_measure``); they are treated as missing here,
together with NaN. Three strategies are available:

- halfmin: half of the smallest observed value of the compound
- bpca: Bayesian PCA (``msprep.bpca``)
- knn: k-nearest-neighbour imputation (scikit-learn ``KNNImputer``)

Abundances cannot be negative, so any negative value returned by bpca or knn
is replaced with the half-min value of that cell's compound.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import numpy as np
import pandas as pd
import sklearn.impute

from .bpca import bpca_fill
from .dataset import ImputationInfo, MSPrepData, Stage, require_stage
from .exceptions import ConfigError, ImputationError

logger = logging.getLogger(__name__)


def half_min_values(matrix: np.ndarray, labels=None) -> np.ndarray:
    """Half of the smallest positive observed value of each column.

    Args:
        matrix: Samples x compounds array with NaN for missing values
        labels: Optional column labels used in error messages

    Raises:
        ImputationError: If a column has no positive observed value
    """
    matrix = np.asarray(matrix, dtype=float)
    observed = np.where(np.isfinite(matrix) & (matrix > 0), matrix, np.nan)
    empty = np.isnan(observed).all(axis=0)
    if empty.any():
        bad = np.where(empty)[0]
        names = [labels[i] for i in bad[:5]] if labels is not None else bad[:5].tolist()
        raise ImputationError(
            f"{len(bad)} compound(s) have no observed values, half-min is undefined: {names}"
        )
    return np.nanmin(observed, axis=0) / 2


class Imputer(ABC):
    """Fills NaN cells of a samples x compounds matrix."""

    name: str = ''

    def params(self) -> dict:
        return {}

    @abstractmethod
    def impute(self, matrix: np.ndarray) -> np.ndarray:
        """Return a completed copy of ``matrix``."""


class HalfMinImputer(Imputer):
    name = 'halfmin'

    def impute(self, matrix: np.ndarray) -> np.ndarray:
        fill = half_min_values(matrix)
        completed = np.array(matrix, dtype=float)
        rows, cols = np.where(np.isnan(completed))
        completed[rows, cols] = fill[cols]
        return completed


class BPCAImputer(Imputer):
    """Bayesian PCA imputation with ``n_pcs`` components."""

    name = 'bpca'

    def __init__(self, n_pcs: int = 3, max_iter: int = 200):
        self.n_pcs = n_pcs
        self.max_iter = max_iter

    def params(self) -> dict:
        return {'n_pcs': self.n_pcs}

    def impute(self, matrix: np.ndarray) -> np.ndarray:
        result = bpca_fill(matrix, n_components=self.n_pcs, max_iter=self.max_iter)
        logger.debug(f"  BPCA: {result.n_iterations} iterations, converged={result.converged}")
        return result.completed


class KNNImputer(Imputer):
    """k-nearest-neighbour imputation.

    Neighbours are samples (rows) by default; with ``compounds_as_neighbors``
    the matrix is transposed so neighbouring compounds are used instead.
    """

    name = 'knn'

    def __init__(self, k_knn: int = 5, compounds_as_neighbors: bool = False):
        self.k_knn = k_knn
        self.compounds_as_neighbors = compounds_as_neighbors

    def params(self) -> dict:
        return {'k_knn': self.k_knn, 'compounds_as_neighbors': self.compounds_as_neighbors}

    def impute(self, matrix: np.ndarray) -> np.ndarray:
        matrix = np.asarray(matrix, dtype=float)
        work = matrix.T if self.compounds_as_neighbors else matrix
        imputer = sklearn.impute.KNNImputer(n_neighbors=self.k_knn, keep_empty_features=True)
        completed = imputer.fit_transform(work)
        return completed.T if self.compounds_as_neighbors else completed


IMPUTERS: dict[str, type[Imputer]] = {
    'halfmin': HalfMinImputer,
    'bpca': BPCAImputer,
    'knn': KNNImputer,
}

_METHOD_ALIASES = {
    'half-min': 'halfmin',
    'half_min': 'halfmin',
    'halfmin': 'halfmin',
    'bpca': 'bpca',
    'knn': 'knn',
}


def resolve_imputation_method(method: str) -> str:
    """Canonical imputation method name, or ConfigError."""
    key = str(method).strip().lower() if method is not None else ''
    if key not in _METHOD_ALIASES:
        raise ConfigError(
            f"Unknown imputation method: {method!r}. Options: {', '.join(IMPUTERS)}"
        )
    return _METHOD_ALIASES[key]


def get_imputer(method: str, n_pcs: int = 3, k_knn: int = 5,
                compounds_as_neighbors: bool = False) -> Imputer:
    """Build the imputer for ``method``, validating its parameters.

    Raises:
        ConfigError: Unknown method or invalid parameter
    """
    method = resolve_imputation_method(method)
    if method == 'bpca':
        if n_pcs is None or int(n_pcs) < 1:
            raise ConfigError(f"n_pcs must be a positive integer, got {n_pcs}")
        return BPCAImputer(n_pcs=int(n_pcs))
    if method == 'knn':
        if k_knn is None or int(k_knn) < 1:
            raise ConfigError(f"k_knn must be a positive integer, got {k_knn}")
        return KNNImputer(k_knn=int(k_knn), compounds_as_neighbors=compounds_as_neighbors)
    return HalfMinImputer()


@dataclass
class ImputationResult:
    data: pd.DataFrame
    n_imputed: int
    n_clamped: int


def impute_matrix(data: pd.DataFrame, imputer: Imputer) -> ImputationResult:
    """Impute zero and missing cells of a wide table.

    Row and column labels are preserved. Negative values returned by the
    imputer are replaced by the half-min value of the compound.

    Raises:
        ImputationError: If a compound has no observed values
    """
    matrix = data.to_numpy(dtype=float, copy=True)
    matrix[matrix == 0] = np.nan
    missing = np.isnan(matrix)
    n_imputed = int(missing.sum())

    labels = list(data.columns)
    half_min = half_min_values(matrix, labels) if data.shape[1] > 0 else np.array([])

    if n_imputed == 0:
        return ImputationResult(data=data.copy(), n_imputed=0, n_clamped=0)

    completed = np.asarray(imputer.impute(matrix), dtype=float)
    if completed.shape != matrix.shape:
        raise ImputationError(
            f"{imputer.name} returned shape {completed.shape}, expected {matrix.shape}"
        )

    # Observed cells are never altered
    completed = np.where(missing, completed, matrix)

    invalid = missing & ~(np.isfinite(completed) & (completed > 0))
    n_clamped = int((missing & (completed < 0)).sum())
    if invalid.any():
        rows, cols = np.where(invalid)
        completed[rows, cols] = half_min[cols]

    result = pd.DataFrame(completed, index=data.index.copy(), columns=data.columns.copy())
    return ImputationResult(data=result, n_imputed=n_imputed, n_clamped=n_clamped)


def ms_impute(
    msprep_obj: MSPrepData,
    method: str = 'halfmin',
    n_pcs: int = 3,
    k_knn: int = 5,
    compounds_as_neighbors: bool = False,
) -> MSPrepData:
    """Impute missing values of a filtered dataset.

    Args:
        msprep_obj: Dataset at the filtered stage
        method: 'halfmin', 'bpca' or 'knn'
        n_pcs: Number of principal components for bpca
        k_knn: Number of neighbours for knn
        compounds_as_neighbors: For knn, use compounds rather than samples as
            neighbours

    Returns:
        New MSPrepData at the imputed stage with no zero or missing cells

    Raises:
        ConfigError: Unknown method or invalid parameter
        StageError: If the dataset is not at the filtered stage
        ImputationError: If a compound has no observed values
    """
    imputer = get_imputer(method, n_pcs=n_pcs, k_knn=k_knn,
                          compounds_as_neighbors=compounds_as_neighbors)
    require_stage(msprep_obj, Stage.FILTERED, 'ms_impute')

    logger.info(f"Imputing missing values using {imputer.name} "
                f"({msprep_obj.data.shape[0]} rows x {msprep_obj.data.shape[1]} compounds)")
    result = impute_matrix(msprep_obj.data, imputer)

    logger.info(f"  Imputed {result.n_imputed} cells")
    if result.n_clamped:
        logger.info(f"  Replaced {result.n_clamped} negative imputed values with half-min")

    return msprep_obj.advance(
        Stage.IMPUTED,
        result.data,
        f"Impute: {imputer.name}, {result.n_imputed} cells imputed",
        imputation_info=ImputationInfo(
            method=imputer.name,
            params=imputer.params(),
            n_imputed=result.n_imputed,
            n_clamped=result.n_clamped,
        ),
    )
