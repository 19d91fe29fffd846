"""
ComBat batch correction.

Reference:
    Johnson, W.E. et al. (2007) Adjusting batch effects in microarray
    expression data using Empirical Bayes methods. Biostatistics, 8, 118-127.

Parametric empirical Bayes: per-feature batch location (gamma) and scale
(delta) effects are shrunk towards batch-wide priors before being removed.
Covariates of interest are kept in the model so their signal is preserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


@dataclass
class ComBatResult:
    """Corrected matrix plus the estimated batch effects."""
    corrected: np.ndarray
    batches: list
    gamma_star: np.ndarray  # batches x features
    delta_star: np.ndarray  # batches x features
    n_iterations: int


def _dummies(labels) -> tuple[np.ndarray, list]:
    labels = pd.Series(labels).astype(str)
    levels = list(pd.unique(labels))
    design = np.column_stack([(labels == lvl).to_numpy(dtype=float) for lvl in levels])
    return design, levels


def covariate_design(covariates: pd.DataFrame | None, n_samples: int) -> np.ndarray:
    """Treatment-coded design (without intercept) for covariates of interest.

    Every column is treated as a factor and one-hot encoded with the first
    level dropped.
    """
    if covariates is None or covariates.shape[1] == 0:
        return np.empty((n_samples, 0))
    encoded = pd.get_dummies(covariates.astype(str), drop_first=True, dtype=float)
    return encoded.to_numpy(dtype=float)


def _solve_posterior(g_hat, d_hat, s_data_batch, g_bar, t2, a, b, conv=1e-4, max_iter=1000):
    """Iterative posterior estimates of gamma and delta for one batch."""
    n = s_data_batch.shape[1]
    g_old = g_hat.copy()
    d_old = d_hat.copy()
    count = 0
    change = 1.0
    while change > conv and count < max_iter:
        g_new = (t2 * n * g_hat + d_old * g_bar) / (t2 * n + d_old)
        sum2 = np.sum((s_data_batch - g_new[:, None]) ** 2, axis=1)
        d_new = (0.5 * sum2 + b) / (n / 2.0 + a - 1.0)
        change = max(
            np.max(np.abs(g_new - g_old) / (np.abs(g_old) + 1e-8)),
            np.max(np.abs(d_new - d_old) / (np.abs(d_old) + 1e-8)),
        )
        g_old, d_old = g_new, d_new
        count += 1
    return g_new, d_new, count


def combat(
    data: np.ndarray,
    batch,
    covariates: pd.DataFrame | None = None,
    mean_only: bool = False,
) -> ComBatResult:
    """Remove batch effects from a features x samples matrix.

    Args:
        data: Features x samples array (log scale, no missing values)
        batch: Batch label per sample
        covariates: Optional samples x covariates DataFrame of variables
            whose effects must be preserved
        mean_only: Only adjust batch means, not scales

    Returns:
        ComBatResult with the corrected features x samples matrix

    Raises:
        ConfigError: If batch is confounded with the covariates or its
            length does not match the sample count
    """
    dat = np.asarray(data, dtype=float)
    n_features, n_samples = dat.shape
    batch = list(batch)
    if len(batch) != n_samples:
        raise ConfigError(f"Got {len(batch)} batch labels for {n_samples} samples")
    if np.isnan(dat).any():
        raise ConfigError("ComBat requires a matrix without missing values")

    batch_design, levels = _dummies(batch)
    n_batch = len(levels)
    n_per_batch = batch_design.sum(axis=0)

    if not mean_only and (n_per_batch < 2).any():
        logger.warning("Found a batch with a single sample - adjusting batch means only")
        mean_only = True

    cov_design = covariate_design(covariates, n_samples)
    design = np.hstack([batch_design, cov_design])
    if np.linalg.matrix_rank(design) < design.shape[1]:
        raise ConfigError("Batch is confounded with the covariates of interest; "
                          "ComBat cannot separate batch effects from biological signal")

    # Standardize
    B_hat = np.linalg.lstsq(design, dat.T, rcond=None)[0]  # params x features
    grand_mean = (n_per_batch / n_samples) @ B_hat[:n_batch]
    fitted = design @ B_hat
    var_pooled = np.mean((dat - fitted.T) ** 2, axis=1)
    constant = var_pooled <= 1e-12 * np.maximum(1.0, grand_mean ** 2)
    var_pooled = np.where(constant, 1.0, var_pooled)

    stand_mean = grand_mean[:, None] + (cov_design @ B_hat[n_batch:]).T
    s_data = (dat - stand_mean) / np.sqrt(var_pooled)[:, None]

    # Batch effect estimates
    gamma_hat = np.linalg.lstsq(batch_design, s_data.T, rcond=None)[0]  # batches x features
    delta_hat = np.ones((n_batch, n_features))
    batch_idx = [np.where(batch_design[:, i] == 1)[0] for i in range(n_batch)]
    if not mean_only:
        for i, idx in enumerate(batch_idx):
            delta_hat[i] = np.var(s_data[:, idx], axis=1, ddof=1)

    gamma_bar = gamma_hat.mean(axis=1)
    t2 = gamma_hat.var(axis=1, ddof=1) if n_features > 1 else np.ones(n_batch)

    gamma_star = np.zeros_like(gamma_hat)
    delta_star = np.ones_like(delta_hat)
    n_iter = 0
    for i, idx in enumerate(batch_idx):
        if mean_only:
            gamma_star[i] = (t2[i] * gamma_hat[i] * len(idx) + gamma_bar[i]) / (t2[i] * len(idx) + 1)
            continue
        m = delta_hat[i].mean()
        s2 = delta_hat[i].var(ddof=1) if n_features > 1 else 0.0
        if s2 <= 0:
            gamma_star[i] = gamma_hat[i]
            delta_star[i] = delta_hat[i]
            continue
        a_prior = (2 * s2 + m ** 2) / s2
        b_prior = (m * s2 + m ** 3) / s2
        g, d, count = _solve_posterior(
            gamma_hat[i], delta_hat[i], s_data[:, idx],
            gamma_bar[i], t2[i], a_prior, b_prior,
        )
        gamma_star[i], delta_star[i] = g, d
        n_iter = max(n_iter, count)

    # Adjust
    adjusted = s_data.copy()
    for i, idx in enumerate(batch_idx):
        adjusted[:, idx] = (s_data[:, idx] - gamma_star[i][:, None]) / np.sqrt(delta_star[i])[:, None]

    corrected = adjusted * np.sqrt(var_pooled)[:, None] + stand_mean
    corrected[constant] = dat[constant]

    return ComBatResult(
        corrected=corrected,
        batches=levels,
        gamma_star=gamma_star,
        delta_star=delta_star,
        n_iterations=n_iter,
    )
