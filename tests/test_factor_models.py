"""Tests for CRMN, RUV and SVA factor removal."""

import numpy as np
import pytest

from msprep.factor_models import crmn, estimate_n_sv, ruv2, sva


@pytest.fixture
def factor_data():
    """20 samples x 30 compounds with one unwanted factor and a group effect.

    The first 10 compounds are controls: affected by the factor only.
    """
    rng = np.random.default_rng(7)
    n_samples, n_compounds = 20, 30
    group = np.repeat([0.0, 1.0], n_samples // 2)
    design = group[:, None]

    factor = rng.normal(size=n_samples)
    # Keep the factor unrelated to the group
    factor -= np.array([factor[group == g].mean() for g in group])
    loadings = rng.normal(0, 1.5, size=n_compounds)

    effect = np.zeros(n_compounds)
    effect[10:] = 1.0

    y = (5.0 + np.outer(group, effect) + np.outer(factor, loadings)
         + rng.normal(0, 0.05, size=(n_samples, n_compounds)))
    return y, design, group, np.arange(10)


def _group_effect(y, group):
    return y[group == 1].mean(axis=0) - y[group == 0].mean(axis=0)


def _within_group_variance(y, group):
    return sum(((y[group == g] - y[group == g].mean(axis=0)) ** 2).sum() for g in (0, 1))


class TestRUV:
    """Tests for RUV-2."""

    def test_removes_unwanted_factor(self, factor_data):
        y, design, group, controls = factor_data
        result = ruv2(y, controls, design, k=1)
        assert _within_group_variance(result, group) < 0.05 * _within_group_variance(y, group)

    def test_preserves_group_effect(self, factor_data):
        y, design, group, controls = factor_data
        result = ruv2(y, controls, design, k=1)
        assert np.allclose(_group_effect(result, group), _group_effect(y, group), atol=0.1)

    def test_k_clamped_to_controls(self, factor_data):
        y, design, _, _ = factor_data
        result = ruv2(y, np.array([0, 1]), design, k=5)
        assert result.shape == y.shape


class TestCRMN:
    """Tests for CRMN."""

    def test_removes_unwanted_factor(self, factor_data):
        y, design, group, controls = factor_data
        result = crmn(y, controls, design, n_comp=1)
        assert _within_group_variance(result, group) < 0.05 * _within_group_variance(y, group)

    def test_shape_and_finite(self, factor_data):
        y, design, _, controls = factor_data
        result = crmn(y, controls, None, n_comp=2)
        assert result.shape == y.shape
        assert np.isfinite(result).all()


class TestSVA:
    """Tests for surrogate variable analysis."""

    def test_estimates_surrogate_variable(self, factor_data):
        y, design, _, _ = factor_data
        assert estimate_n_sv(y, design) >= 1

    def test_removes_hidden_factor(self, factor_data):
        y, design, group, _ = factor_data
        result, n_sv = sva(y, design, n_sv=1)
        assert n_sv == 1
        assert _within_group_variance(result, group) < 0.05 * _within_group_variance(y, group)
        assert np.allclose(_group_effect(result, group), _group_effect(y, group), atol=0.1)

    def test_zero_surrogates_returns_copy(self, factor_data):
        y, design, _, _ = factor_data
        result, n_sv = sva(y, design, n_sv=0)
        assert n_sv == 0
        assert np.array_equal(result, y)
        assert result is not y
