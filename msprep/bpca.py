"""
Bayesian PCA missing value estimation.

Reference:
    Oba S, Sato MA, Takemasa I, et al. (2003) A Bayesian missing value
    estimation method for gene expression profile data. Bioinformatics,
    19, 2088-2096.

The model is y = W x + mu + noise with an automatic relevance determination
prior on the columns of W, fitted by variational EM. Missing cells are
replaced by their posterior expectation.
"""

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

# Hyperparameters of the gamma priors (Oba et al. 2003)
GALPHA0 = 1e-10
BALPHA0 = 1.0
GMU0 = 0.001
GTAU0 = 1e-10
BTAU0 = 1.0
TAU_BOUNDS = (1e-10, 1e10)


@dataclass
class BPCAResult:
    """Completed matrix and fitted model."""
    completed: np.ndarray
    loadings: np.ndarray
    mu: np.ndarray
    tau: float
    n_iterations: int
    converged: bool


def _init_model(y: np.ndarray, missing: np.ndarray, q: int) -> dict:
    n, d = y.shape
    yest = np.where(missing, 0.0, y)

    covy = np.atleast_2d(np.cov(yest, rowvar=False))
    covy = np.nan_to_num(covy, nan=0.0)

    # Leading q eigenpairs of the covariance
    evals, evecs = np.linalg.eigh(covy)
    order = np.argsort(evals)[::-1][:q]
    evals = np.clip(evals[order], 0.0, None)
    W = evecs[:, order] * np.sqrt(evals)

    with np.errstate(invalid='ignore'):
        mu = np.nanmean(np.where(missing, np.nan, y), axis=0)
    mu = np.nan_to_num(mu, nan=0.0)

    residual_var = np.trace(covy) - np.sum(evals)
    tau = 1.0 / residual_var if residual_var > 0 else TAU_BOUNDS[1]
    tau = float(np.clip(tau, *TAU_BOUNDS))

    alpha = (2 * GALPHA0 + d) / (tau * np.diag(W.T @ W) + 2 * GALPHA0 / BALPHA0)

    return {
        'W': W,
        'mu': mu,
        'tau': tau,
        'alpha': alpha,
        'SigW': np.eye(q),
        'yest': yest,
    }


def _em_step(model: dict, y: np.ndarray, missing: np.ndarray, q: int) -> dict:
    n, d = y.shape
    W, mu, tau = model['W'], model['mu'], model['tau']

    Rx = np.eye(q) + tau * (W.T @ W) + model['SigW']
    Rxinv = np.linalg.inv(Rx)

    complete_rows = ~missing.any(axis=1)
    dy = y[complete_rows] - mu
    x = tau * (Rxinv @ W.T @ dy.T)
    T = dy.T @ x.T
    trS = np.sum(dy * dy)

    for i in np.where(~complete_rows)[0]:
        obs = ~missing[i]
        miss = missing[i]

        dyo = y[i, obs] - mu[obs]
        Wo = W[obs, :]
        Wm = W[miss, :]

        Rxinv_i = np.linalg.inv(Rx - tau * (Wm.T @ Wm))
        x_i = Rxinv_i @ (tau * Wo.T @ dyo)

        dy_i = np.empty(d)
        dy_i[obs] = dyo
        dy_i[miss] = Wm @ x_i
        model['yest'][i] = dy_i + mu

        T += np.outer(dy_i, x_i)
        T[miss, :] += Wm @ Rxinv_i
        trS += dy_i @ dy_i + miss.sum() / tau + np.trace(Wm @ Rxinv_i @ Wm.T)

    T /= n
    trS /= n

    Dw = Rxinv + tau * (T.T @ W @ Rxinv) + np.diag(model['alpha']) / n
    Dwinv = np.linalg.inv(Dw)
    W = T @ Dwinv

    tau_denominator = (
        trS
        - np.trace(T.T @ W)
        + (GMU0 * (mu @ mu) + 2 * GTAU0 / BTAU0) / n
    )
    tau_numerator = d + 2 * GTAU0 / n
    if tau_denominator > 0:
        tau = float(np.clip(tau_numerator / tau_denominator, *TAU_BOUNDS))
    else:
        tau = TAU_BOUNDS[1]

    SigW = Dwinv * (d / n)
    alpha = (2 * GALPHA0 + d) / (
        tau * np.diag(W.T @ W) + np.diag(SigW) + 2 * GALPHA0 / BALPHA0
    )

    model.update(W=W, tau=tau, SigW=SigW, alpha=alpha)
    return model


def bpca_fill(
    matrix: np.ndarray,
    n_components: int = 3,
    max_iter: int = 200,
    tol: float = 1e-4,
) -> BPCAResult:
    """Fill NaN cells of ``matrix`` by Bayesian PCA.

    Rows whose values are all missing are excluded from fitting and filled
    with the column means.

    Args:
        matrix: Samples x features array with NaN for missing values
        n_components: Number of latent components (clamped to the matrix size)
        max_iter: Maximum EM iterations
        tol: Convergence tolerance on log10(tau), checked every 10 iterations

    Returns:
        BPCAResult with the completed matrix
    """
    y = np.asarray(matrix, dtype=float)
    n, d = y.shape
    missing = np.isnan(y)
    q = int(max(1, min(n_components, d, max(n - 1, 1))))

    fit_rows = ~missing.all(axis=1)
    y_fit = y[fit_rows]
    miss_fit = missing[fit_rows]

    model = _init_model(y_fit, miss_fit, q)

    converged = False
    tau_old = 1000.0
    iteration = 0
    for iteration in range(1, max_iter + 1):
        model = _em_step(model, y_fit, miss_fit, q)
        if iteration % 10 == 0:
            dtau = abs(np.log10(model['tau']) - np.log10(tau_old))
            if dtau < tol:
                converged = True
                break
            tau_old = model['tau']

    if not converged:
        logger.debug(f"BPCA did not converge after {max_iter} iterations")

    completed = y.copy()
    completed[fit_rows] = np.where(miss_fit, model['yest'], y_fit)
    if (~fit_rows).any():
        completed[~fit_rows] = model['mu']

    return BPCAResult(
        completed=completed,
        loadings=model['W'],
        mu=model['mu'],
        tau=model['tau'],
        n_iterations=iteration,
        converged=converged,
    )
