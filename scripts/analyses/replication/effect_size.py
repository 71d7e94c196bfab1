"""Effect-size conversions and the replication z-test.

Partial eta squared is converted to a correlation-like metric
(``rho = 2 * sqrt(pes) - 1``) so that an original and a replication effect can
be compared with the usual tests for two independent correlations.
"""

from __future__ import annotations

import numpy as np
from scipy import optimize, stats

ALTERNATIVES = ("two.sided", "less", "greater")
METHODS = ("fisher", "kraatz")


def f_from_p(p_value: float, df1: float, df2: float) -> float:
    """F value whose upper-tail probability is ``p_value``."""
    return float(stats.f.ppf(1 - p_value, df1, df2))


def _ncp_limit(f_value: float, df1: float, df2: float, target: float) -> float | None:
    """Noncentrality at which P(F' <= f_value) equals ``target``.

    The CDF decreases monotonically in the noncentrality, so the root is
    bracketed by widening the upper bound.
    """
    cdf_zero = stats.f.cdf(f_value, df1, df2)
    if cdf_zero < target:
        return None

    def gap(ncp: float) -> float:
        return float(stats.ncf.cdf(f_value, df1, df2, ncp)) - target

    upper = max(10.0, f_value * df1 * 2)
    while gap(upper) > 0:
        upper *= 2
        if upper > 1e7:
            return None
    return float(optimize.brentq(gap, 0.0, upper, xtol=1e-10))


def noncentral_f_limits(
    f_value: float, df1: float, df2: float, alpha: float = 0.05
) -> tuple[float | None, float | None]:
    """Two-sided confidence limits for the noncentrality of an observed F."""
    lower = _ncp_limit(f_value, df1, df2, 1 - alpha / 2)
    upper = _ncp_limit(f_value, df1, df2, alpha / 2)
    return lower, upper


def eta_from_f(df_model: float, df_error: float, f_value: float, alpha: float = 0.05) -> dict:
    """Partial eta squared from an F statistic, with a noncentral-F confidence interval.

    Limits that cannot be found are reported as 0.
    """
    eta = (df_model * f_value) / (df_model * f_value + df_error)
    ncp_lo, ncp_hi = noncentral_f_limits(f_value, df_model, df_error, alpha)
    ncp_lo = ncp_lo or 0.0
    ncp_hi = ncp_hi or 0.0
    return {
        "eta": float(eta),
        "etalow": ncp_lo / (ncp_lo + df_model + df_error + 1),
        "etahigh": ncp_hi / (ncp_hi + df_model + df_error + 1),
        "dfm": df_model,
        "dfe": df_error,
        "F": float(f_value),
        "p": float(stats.f.sf(f_value, df_model, df_error)),
    }


def pes_to_rho(pes: float) -> float:
    """Correlation-like metric for a partial eta squared."""
    if pes < 0:
        raise ValueError(f"partial eta squared must be non-negative, got {pes}")
    return float(2 * np.sqrt(pes) - 1)


def compare_correlations(
    r1: float,
    df1: float,
    r2: float,
    df2: float,
    method: str = "fisher",
    alternative: str = "greater",
    null: float = 0.0,
) -> dict:
    """z-test for the difference between two independent correlations.

    ``df`` is the residual degrees of freedom of each study (n - 2 for a
    simple correlation). ``alternative="greater"`` tests ``r1 - r2 > null``.
    """
    if method not in METHODS:
        raise ValueError(f"unknown method {method!r}; expected one of {METHODS}")
    if alternative not in ALTERNATIVES:
        raise ValueError(f"unknown alternative {alternative!r}; expected one of {ALTERNATIVES}")

    if method == "fisher":
        if df1 <= 1 or df2 <= 1:
            raise ValueError("fisher method needs df > 1 for both studies")
        se = np.sqrt(1 / (df1 - 1) + 1 / (df2 - 1))
        z = (np.arctanh(r1) - np.arctanh(r2) - np.arctanh(null)) / se
    else:
        se = np.sqrt((1 - r1**2) ** 2 / df1 + (1 - r2**2) ** 2 / df2)
        z = (r1 - r2 - null) / se

    if alternative == "greater":
        p_value = stats.norm.sf(z)
    elif alternative == "less":
        p_value = stats.norm.cdf(z)
    else:
        p_value = 2 * stats.norm.sf(abs(z))

    return {
        "method": method,
        "alternative": alternative,
        "null": null,
        "r1": float(r1),
        "r2": float(r2),
        "df1": float(df1),
        "df2": float(df2),
        "estimate": float(r1 - r2),
        "z": float(z),
        "p_value": float(p_value),
    }
