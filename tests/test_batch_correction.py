"""Tests for ComBat batch correction."""

import numpy as np
import pandas as pd
import pytest

from msprep.batch_correction import combat, covariate_design
from msprep.exceptions import ConfigError


@pytest.fixture
def batch_data():
    """30 features x 24 samples, 3 batches with additive offsets, 2 groups."""
    rng = np.random.default_rng(42)
    n_features = 30
    batch = np.repeat(['A', 'B', 'C'], 8)
    group = np.tile(['ctrl', 'case'], 12)

    baseline = rng.uniform(4, 6, size=n_features)
    data = baseline[:, None] + rng.normal(0, 0.1, size=(n_features, 24))
    offsets = {'A': 0.0, 'B': 0.5, 'C': -0.3}
    data += np.array([offsets[b] for b in batch])[None, :]
    data[:, group == 'case'] += 0.4

    return data, batch, pd.DataFrame({'group': group})


def _batch_means(data, batch):
    return np.array([data[:, batch == b].mean(axis=1) for b in np.unique(batch)])


class TestComBat:
    """Tests for the combat function."""

    def test_removes_additive_shift(self, batch_data):
        data, batch, covariates = batch_data
        result = combat(data, batch, covariates=covariates)

        before = _batch_means(data, batch)
        after = _batch_means(result.corrected, batch)
        assert np.ptp(before, axis=0).min() > 0.5
        assert np.ptp(after, axis=0).max() < 0.1
        assert result.batches == ['A', 'B', 'C']
        assert result.gamma_star.shape == (3, 30)

    def test_preserves_covariate_effect(self, batch_data):
        data, batch, covariates = batch_data
        result = combat(data, batch, covariates=covariates)

        case = (covariates['group'] == 'case').to_numpy()
        effect = result.corrected[:, case].mean(axis=1) - result.corrected[:, ~case].mean(axis=1)
        assert np.allclose(effect, 0.4, atol=0.1)

    def test_shape_preserved(self, batch_data):
        data, batch, _ = batch_data
        result = combat(data, batch)
        assert result.corrected.shape == data.shape
        assert np.isfinite(result.corrected).all()

    def test_constant_feature_unchanged(self, batch_data):
        data, batch, _ = batch_data
        data = data.copy()
        data[0] = 3.0
        result = combat(data, batch)
        assert np.allclose(result.corrected[0], 3.0)

    def test_single_sample_batch_uses_mean_only(self, batch_data, caplog):
        data, batch, _ = batch_data
        batch = batch.copy()
        batch[0] = 'D'
        result = combat(data, batch)
        assert "single sample" in caplog.text
        assert np.allclose(result.delta_star, 1.0)

    def test_mean_only(self, batch_data):
        data, batch, _ = batch_data
        result = combat(data, batch, mean_only=True)
        assert np.allclose(result.delta_star, 1.0)
        assert np.ptp(_batch_means(result.corrected, batch), axis=0).max() < 0.1

    def test_confounded_design_raises(self, batch_data):
        data, batch, _ = batch_data
        covariates = pd.DataFrame({'group': batch})
        with pytest.raises(ConfigError, match="confounded"):
            combat(data, batch, covariates=covariates)

    def test_missing_values_raise(self, batch_data):
        data, batch, _ = batch_data
        data = data.copy()
        data[0, 0] = np.nan
        with pytest.raises(ConfigError, match="missing"):
            combat(data, batch)

    def test_batch_length_mismatch_raises(self, batch_data):
        data, batch, _ = batch_data
        with pytest.raises(ConfigError):
            combat(data, batch[:-1])


class TestCovariateDesign:
    """Tests for covariate encoding."""

    def test_treatment_coding(self):
        covariates = pd.DataFrame({'group': ['a', 'b', 'c', 'a'], 'dose': [1, 2, 1, 2]})
        design = covariate_design(covariates, 4)
        # 2 columns for group, 1 for dose
        assert design.shape == (4, 3)
        assert set(np.unique(design)) <= {0.0, 1.0}

    def test_no_covariates(self):
        assert covariate_design(None, 5).shape == (5, 0)
