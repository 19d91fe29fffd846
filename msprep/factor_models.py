"""
Factor-model normalizations: CRMN, RUV-2 and SVA.

All functions take a samples x compounds matrix on the log scale and a
design matrix for the factors of interest, and return a matrix of the same
shape with the estimated unwanted variation removed.

References:
    Redestig, H. et al. (2009) Compensation for Systematic Cross-Contribution
    Improves Normalization of Mass Spectrometry Based Metabolomics Data.
    Anal. Chem., 81, 7974-7980.

    Gagnon-Bartsh, J.A. et al. (2012) Using control genes to correct for
    unwanted variation in microarray data. Biostatistics, 13, 539-552.

    Leek, J.T. et al. (2007) Capturing Heterogeneity in Gene Expression
    Studies by Surrogate Variable Analysis. PLoS Genetics, 3(9), e161.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy import linalg

logger = logging.getLogger(__name__)


def _residualize(y: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Residuals of a least-squares fit of each column of ``y`` on ``design``."""
    if design.shape[1] == 0:
        return y.copy()
    coef, *_ = linalg.lstsq(design, y)
    return y - design @ coef


def _with_intercept(design: np.ndarray | None, n_samples: int) -> np.ndarray:
    intercept = np.ones((n_samples, 1))
    if design is None or design.shape[1] == 0:
        return intercept
    return np.hstack([intercept, design])


def _remove_factors(y: np.ndarray, factors: np.ndarray, design: np.ndarray) -> np.ndarray:
    """Subtract the part of ``y`` explained by ``factors`` in a joint fit with ``design``."""
    if factors.shape[1] == 0:
        return y.copy()
    full = np.hstack([design, factors])
    coef, *_ = linalg.lstsq(full, y)
    alpha = coef[design.shape[1]:]
    return y - factors @ alpha


def crmn(
    y: np.ndarray,
    controls: np.ndarray,
    design: np.ndarray | None = None,
    n_comp: int = 2,
) -> np.ndarray:
    """Cross-contribution robust multiple standard normalization.

    Control compounds are standardized and cleared of the effects of the
    design; their leading principal components are taken as the systematic
    error, which is then regressed out of every compound.

    Args:
        y: Samples x compounds log abundances
        controls: Column indices of the control compounds
        design: Samples x p design of the factors of interest (no intercept)
        n_comp: Number of error components

    Returns:
        Normalized samples x compounds matrix
    """
    n_samples = y.shape[0]
    X = _with_intercept(design, n_samples)

    z = y[:, controls]
    sd = z.std(axis=0, ddof=1)
    sd = np.where(sd > 0, sd, 1.0)
    z = (z - z.mean(axis=0)) / sd
    z_resid = _residualize(z, X)

    k = int(min(n_comp, *z_resid.shape))
    if k < 1:
        logger.warning("CRMN: no error components could be estimated")
        return y.copy()

    u, s, _ = linalg.svd(z_resid, full_matrices=False)
    scores = u[:, :k] * s[:k]

    centered = y - y.mean(axis=0)
    coef, *_ = linalg.lstsq(_with_intercept(scores, n_samples), centered)
    return y - scores @ coef[1:]


def ruv2(
    y: np.ndarray,
    controls: np.ndarray,
    design: np.ndarray | None = None,
    k: int = 3,
) -> np.ndarray:
    """Remove unwanted variation using negative control compounds (RUV-2).

    The unwanted factors W are the first ``k`` left singular vectors of the
    centered control compounds; every compound is fit on the design and W
    jointly and the W part is subtracted.
    """
    n_samples = y.shape[0]
    X = _with_intercept(design, n_samples)

    yc = y[:, controls] - y[:, controls].mean(axis=0)
    k = int(min(k, *yc.shape))
    if k < 1:
        logger.warning("RUV: no unwanted factors could be estimated")
        return y.copy()

    u, s, _ = linalg.svd(yc, full_matrices=False)
    W = u[:, :k] * s[:k]
    return _remove_factors(y, W, X)


def estimate_n_sv(
    y: np.ndarray,
    design: np.ndarray | None = None,
    n_permutations: int = 20,
    alpha: float = 0.1,
    seed: int = 12345,
) -> int:
    """Estimate the number of surrogate variables by permutation.

    Follows the Buja & Eyuboglu approach: the variance explained by each
    singular vector of the residual matrix is compared with that obtained
    after independently permuting every compound's residuals.
    """
    n_samples = y.shape[0]
    X = _with_intercept(design, n_samples)
    resid = _residualize(y, X)

    s = linalg.svd(resid, compute_uv=False)
    if s.sum() == 0:
        return 0
    observed = s ** 2 / np.sum(s ** 2)
    n_dims = len(observed)

    rng = np.random.default_rng(seed)
    exceed = np.zeros(n_dims)
    for _ in range(n_permutations):
        permuted = np.column_stack([rng.permutation(col) for col in resid.T])
        perm_resid = _residualize(permuted, X)
        sp = linalg.svd(perm_resid, compute_uv=False)
        null = sp ** 2 / np.sum(sp ** 2) if sp.sum() > 0 else np.zeros_like(sp)
        exceed += null[:n_dims] >= observed

    p_values = (exceed + 1) / (n_permutations + 1)
    # Enforce monotone p-values so the count stops at the first non-significant vector
    p_values = np.maximum.accumulate(p_values)
    max_sv = max(n_samples - X.shape[1], 0)
    return int(min(np.sum(p_values <= alpha), max_sv))


def sva(
    y: np.ndarray,
    design: np.ndarray | None = None,
    n_sv: int | None = None,
    seed: int = 12345,
) -> tuple[np.ndarray, int]:
    """Surrogate variable analysis.

    Surrogate variables are the leading left singular vectors of the
    residuals after fitting the factors of interest. They are removed by a
    joint fit with the design, so the effects of interest are preserved.

    Args:
        y: Samples x compounds log abundances
        design: Samples x p design of the factors of interest (no intercept)
        n_sv: Number of surrogate variables; estimated when None
        seed: Random seed for the permutation estimate

    Returns:
        Tuple of (normalized matrix, number of surrogate variables used)
    """
    n_samples = y.shape[0]
    X = _with_intercept(design, n_samples)

    if n_sv is None:
        n_sv = estimate_n_sv(y, design, seed=seed)
        logger.info(f"  SVA: estimated {n_sv} surrogate variables")

    if n_sv <= 0:
        logger.warning("SVA: no surrogate variables found, data left unchanged")
        return y.copy(), 0

    resid = _residualize(y, X)
    u, _, _ = linalg.svd(resid, full_matrices=False)
    n_sv = int(min(n_sv, u.shape[1]))
    surrogates = u[:, :n_sv]
    return _remove_factors(y, surrogates, X), n_sv
