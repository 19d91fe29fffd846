"""Tests for missing value imputation."""

import numpy as np
import pandas as pd
import pytest

from msprep.bpca import bpca_fill
from msprep.dataset import Stage
from msprep.exceptions import ConfigError, ImputationError, StageError
from msprep.filtering import ms_filter
from msprep.imputation import (
    BPCAImputer,
    HalfMinImputer,
    Imputer,
    KNNImputer,
    get_imputer,
    half_min_values,
    impute_matrix,
    ms_impute,
    resolve_imputation_method,
)
from msprep.prepare import ms_prepare


def _absent(data, compound_idx, subject, spike='1x', batch='O1'):
    mz = sorted(data['mz'].unique())[compound_idx]
    mask = ((data['mz'] == mz) & (data['subject_id'] == subject)
            & (data['spike'] == spike) & (data['batch'] == batch))
    data.loc[mask, 'abundance'] = 1


@pytest.fixture
def filtered(tidy_data):
    """Filtered dataset with three absent cells."""
    data = tidy_data.copy()
    _absent(data, 0, '01')
    _absent(data, 0, '02', batch='O2')
    _absent(data, 3, '04', spike='4x')
    prepared = ms_prepare(data, replicate='replicate', batch='batch', grouping_vars='spike')
    return ms_filter(prepared, filter_percent=0.5)


class TestHalfMin:
    """Tests for half-min values."""

    def test_half_of_smallest_observed(self):
        matrix = np.array([[4.0, np.nan], [2.0, 10.0], [np.nan, 6.0]])
        assert half_min_values(matrix).tolist() == [1.0, 3.0]

    def test_zeros_are_not_observed(self):
        matrix = np.array([[0.0, 8.0], [4.0, 0.0]])
        assert half_min_values(matrix).tolist() == [2.0, 4.0]

    def test_empty_column_raises(self):
        matrix = np.array([[1.0, np.nan], [2.0, np.nan]])
        with pytest.raises(ImputationError, match="no observed values"):
            half_min_values(matrix, labels=['a', 'b'])


class TestImputeMatrix:
    """Tests for the shared imputation driver."""

    def test_halfmin_fills_missing_cells(self):
        data = pd.DataFrame({'a': [4.0, 0.0, 2.0], 'b': [np.nan, 5.0, 7.0]})
        result = impute_matrix(data, HalfMinImputer())
        assert result.data['a'].tolist() == [4.0, 1.0, 2.0]
        assert result.data['b'].tolist() == [2.5, 5.0, 7.0]
        assert result.n_imputed == 2

    def test_complete_data_unchanged(self):
        data = pd.DataFrame({'a': [1.0, 2.0], 'b': [3.0, 4.0]})
        result = impute_matrix(data, HalfMinImputer())
        pd.testing.assert_frame_equal(result.data, data)
        assert result.n_imputed == 0

    def test_negative_imputations_replaced_with_half_min(self):
        class NegativeImputer(Imputer):
            name = 'negative'

            def impute(self, matrix):
                return np.where(np.isnan(matrix), -5.0, matrix)

        data = pd.DataFrame({'a': [4.0, np.nan, 2.0], 'b': [3.0, 5.0, 7.0]})
        result = impute_matrix(data, NegativeImputer())
        assert result.data['a'].tolist() == [4.0, 1.0, 2.0]
        assert result.n_clamped == 1

    def test_observed_cells_never_altered(self):
        class ShiftImputer(Imputer):
            name = 'shift'

            def impute(self, matrix):
                return np.nan_to_num(matrix, nan=1.0) + 100

        data = pd.DataFrame({'a': [4.0, np.nan], 'b': [3.0, 5.0]})
        result = impute_matrix(data, ShiftImputer())
        assert result.data['a'].tolist() == [4.0, 101.0]
        assert result.data['b'].tolist() == [3.0, 5.0]

    def test_wrong_shape_raises(self):
        class BadImputer(Imputer):
            name = 'bad'

            def impute(self, matrix):
                return matrix[:, :1]

        data = pd.DataFrame({'a': [4.0, np.nan], 'b': [3.0, 5.0]})
        with pytest.raises(ImputationError, match="shape"):
            impute_matrix(data, BadImputer())


class TestImputerSelection:
    """Tests for method lookup and parameter validation."""

    @pytest.mark.parametrize('method', ['halfmin', 'half-min', 'half_min', 'HalfMin'])
    def test_half_min_aliases(self, method):
        assert resolve_imputation_method(method) == 'halfmin'

    def test_unknown_method_raises(self):
        with pytest.raises(ConfigError, match="Unknown imputation method"):
            get_imputer('mice')

    def test_bad_parameters_raise(self):
        with pytest.raises(ConfigError):
            get_imputer('bpca', n_pcs=0)
        with pytest.raises(ConfigError):
            get_imputer('knn', k_knn=0)

    def test_imputer_types(self):
        assert isinstance(get_imputer('halfmin'), HalfMinImputer)
        assert isinstance(get_imputer('bpca', n_pcs=2), BPCAImputer)
        knn = get_imputer('knn', k_knn=3, compounds_as_neighbors=True)
        assert isinstance(knn, KNNImputer)
        assert knn.params() == {'k_knn': 3, 'compounds_as_neighbors': True}


class TestMsImpute:
    """Tests for the ms_impute stage."""

    @pytest.mark.parametrize('method,kwargs', [
        ('halfmin', {}),
        ('bpca', {'n_pcs': 2}),
        ('knn', {'k_knn': 3}),
        ('knn', {'k_knn': 3, 'compounds_as_neighbors': True}),
    ])
    def test_output_complete_and_positive(self, filtered, method, kwargs):
        result = ms_impute(filtered, method=method, **kwargs)

        assert result.stage == Stage.IMPUTED
        values = result.data.to_numpy()
        assert np.isfinite(values).all()
        assert (values > 0).all()
        assert result.imputation_info.n_imputed == 3

    @pytest.mark.parametrize('method', ['halfmin', 'bpca', 'knn'])
    def test_labels_and_observed_values_preserved(self, filtered, method):
        result = ms_impute(filtered, method=method)

        pd.testing.assert_index_equal(result.data.index, filtered.data.index)
        pd.testing.assert_index_equal(result.data.columns, filtered.data.columns)
        observed = filtered.data.to_numpy() != 0
        assert np.array_equal(result.data.to_numpy()[observed], filtered.data.to_numpy()[observed])

    def test_halfmin_values_below_observed(self, filtered):
        result = ms_impute(filtered, method='halfmin')
        missing = filtered.data == 0
        for compound in filtered.data.columns[missing.any().to_numpy()]:
            observed_min = filtered.data.loc[~missing[compound], compound].min()
            imputed = result.data.loc[missing[compound], compound]
            assert np.allclose(imputed, observed_min / 2)

    def test_all_zero_compound_raises(self, tidy_data):
        data = tidy_data.copy()
        data.loc[data['mz'] == data['mz'].min(), 'abundance'] = 1
        prepared = ms_prepare(data, replicate='replicate', batch='batch', grouping_vars='spike')
        filtered = ms_filter(prepared, filter_percent=0.0)
        assert (filtered.data.iloc[:, 0] == 0).all()

        with pytest.raises(ImputationError):
            ms_impute(filtered, method='halfmin')
        with pytest.raises(ImputationError):
            ms_impute(filtered, method='knn')
        with pytest.raises(ImputationError):
            ms_impute(filtered, method='bpca')

    def test_requires_filtered_stage(self, filtered):
        imputed = ms_impute(filtered)
        with pytest.raises(StageError):
            ms_impute(imputed)

    def test_imputation_info(self, filtered):
        result = ms_impute(filtered, method='bpca', n_pcs=2)
        assert result.imputation_info.method == 'bpca'
        assert result.imputation_info.params == {'n_pcs': 2}
        assert "Imputation method: bpca" in result.summary()


class TestBPCA:
    """Tests for Bayesian PCA fill."""

    def test_recovers_low_rank_structure(self):
        rng = np.random.default_rng(3)
        scores = rng.normal(size=(40, 2))
        loadings = rng.normal(size=(2, 10))
        truth = scores @ loadings + 10
        matrix = truth + rng.normal(0, 0.01, size=truth.shape)
        missing = rng.random(truth.shape) < 0.05
        matrix[missing] = np.nan

        result = bpca_fill(matrix, n_components=3)

        assert not np.isnan(result.completed).any()
        assert np.allclose(result.completed[~missing], matrix[~missing])
        bpca_error = np.mean(np.abs(result.completed[missing] - truth[missing]))
        mean_fill = np.broadcast_to(np.nanmean(matrix, axis=0), matrix.shape)[missing]
        mean_error = np.mean(np.abs(mean_fill - truth[missing]))
        assert bpca_error < mean_error / 2

    def test_fully_missing_row_gets_mean(self):
        rng = np.random.default_rng(4)
        matrix = rng.normal(5, 1, size=(12, 4))
        matrix[0] = np.nan
        result = bpca_fill(matrix, n_components=2)
        assert np.allclose(result.completed[0], result.mu)
