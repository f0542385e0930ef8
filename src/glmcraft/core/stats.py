"""
Auxiliary statistics for first-level analyses.

This module handles:
- Z-scoring and median absolute deviation
- Robust (least absolute deviation) regression via IRLS
- One- and two-sample t-tests and Pearson correlation
- Significance star annotation
"""

import logging
import warnings
from typing import Any, Dict, Optional

import numpy as np
from scipy import stats

from glmcraft.errors import NumericConvergenceWarning

logger = logging.getLogger(__name__)

# Residual floor used when computing IRLS weights
RESIDUAL_FLOOR = 1e-6

# (threshold, stars) evaluated strictest first
SIGNIFICANCE_LEVELS = (
    (0.001, "***"),
    (0.01, "**"),
    (0.05, "*"),
)


def zscore(y) -> np.ndarray:
    """Z-score a vector using the population standard deviation."""
    return stats.zscore(np.asarray(y, dtype=float), ddof=0)


def mad_med(y) -> float:
    """Median absolute deviation around the median (unscaled)."""
    return float(stats.median_abs_deviation(np.asarray(y, dtype=float), scale=1.0))


def l1_regress(
    y,
    x,
    tol: float = 1e-6,
    max_iter: int = 1000,
) -> np.ndarray:
    """
    Least absolute deviation regression by iteratively reweighted least squares.

    Parameters
    ----------
    y : array-like of shape (n,)
        Observed values.
    x : array-like of shape (n,) or (n, m)
        Predictors. If the first column is constant it is treated as an
        explicit intercept and removed; the intercept is always modeled.
    tol : float
        Convergence tolerance on the maximum absolute coefficient change.
    max_iter : int
        Iteration cap. A ``NumericConvergenceWarning`` is emitted when it is
        reached and the last estimate is returned.

    Returns
    -------
    np.ndarray
        Coefficients ``[intercept, slope_1, ..., slope_m]``.
    """
    y = np.asarray(y, dtype=float).ravel()
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x[:, np.newaxis]

    if x.shape[0] != y.shape[0]:
        raise ValueError(
            f"x has {x.shape[0]} rows but y has {y.shape[0]} observations"
        )

    if x.shape[1] > 0 and np.all(x[:, 0] == x[0, 0]):
        x = x[:, 1:]

    n = y.shape[0]
    design = np.column_stack([np.ones(n), x])

    coefs = np.linalg.lstsq(design, y, rcond=None)[0]

    for iteration in range(1, max_iter + 1):
        previous = coefs
        residuals = design @ previous - y
        weights = np.sqrt(1.0 / np.maximum(np.abs(residuals), RESIDUAL_FLOOR))
        coefs = np.linalg.lstsq(design * weights[:, np.newaxis], weights * y, rcond=None)[0]

        if np.max(np.abs(coefs - previous)) <= tol:
            logger.debug(f"L1 regression converged after {iteration} iterations")
            return coefs

    warnings.warn(
        f"L1 regression did not converge within {max_iter} iterations "
        f"(tolerance {tol})",
        NumericConvergenceWarning,
        stacklevel=2,
    )
    return coefs


def significance_stars(p_value: float) -> str:
    """Return '***', '**', '*' or '' for a p-value (strictest match first)."""
    for threshold, stars in SIGNIFICANCE_LEVELS:
        if p_value < threshold:
            return stars
    return ""


def _annotate(
    statistic: float,
    p_value: float,
    confidence_interval: Optional[tuple],
    degrees_of_freedom: Optional[float],
) -> Dict[str, Any]:
    return {
        "statistic": float(statistic),
        "p_value": float(p_value),
        "confidence_interval": confidence_interval,
        "degrees_of_freedom": degrees_of_freedom,
        "p_star": significance_stars(p_value),
    }


def ttest1(y, confidence_level: float = 0.95) -> Dict[str, Any]:
    """
    One-sample t-test against zero.

    Returns
    -------
    dict
        ``statistic``, ``p_value``, ``confidence_interval`` (of the mean),
        ``degrees_of_freedom`` and ``p_star``.
    """
    result = stats.ttest_1samp(np.asarray(y, dtype=float), popmean=0.0)
    ci = result.confidence_interval(confidence_level=confidence_level)
    return _annotate(result.statistic, result.pvalue, (float(ci.low), float(ci.high)), float(result.df))


def ttest2(y, x, confidence_level: float = 0.95) -> Dict[str, Any]:
    """Two-sample Student t-test (equal variances) comparing ``y`` with ``x``."""
    result = stats.ttest_ind(
        np.asarray(y, dtype=float),
        np.asarray(x, dtype=float),
        equal_var=True,
    )
    ci = result.confidence_interval(confidence_level=confidence_level)
    return _annotate(result.statistic, result.pvalue, (float(ci.low), float(ci.high)), float(result.df))


def correl(y, x, confidence_level: float = 0.95) -> Dict[str, Any]:
    """Pearson correlation between ``y`` and ``x``."""
    y = np.asarray(y, dtype=float)
    x = np.asarray(x, dtype=float)
    result = stats.pearsonr(y, x)
    ci = result.confidence_interval(confidence_level=confidence_level)
    return _annotate(result.statistic, result.pvalue, (float(ci.low), float(ci.high)), float(len(y) - 2))


def compute_stat(stat: str, y, x=None) -> Any:
    """
    Dispatch a statistic by name.

    Parameters
    ----------
    stat : str
        One of "zscore", "l1", "mad_med", "ttest1", "ttest2", "correl".
    y : array-like
        Data (or the only dataset for single-input statistics).
    x : array-like, optional
        Second dataset / predictors.

    Returns
    -------
    np.ndarray, float or dict
        Depends on the statistic.
    """
    needs_x = {"l1", "ttest2", "correl"}
    if stat in needs_x and x is None:
        raise ValueError(f"Statistic '{stat}' requires x values")

    if stat == "zscore":
        return zscore(y)
    elif stat == "l1":
        return l1_regress(y, x)
    elif stat == "mad_med":
        return mad_med(y)
    elif stat == "ttest1":
        return ttest1(y)
    elif stat == "ttest2":
        return ttest2(y, x)
    elif stat == "correl":
        return correl(y, x)

    raise ValueError(
        f"Unknown statistic: {stat}. Must be one of "
        "['zscore', 'l1', 'mad_med', 'ttest1', 'ttest2', 'correl']"
    )
