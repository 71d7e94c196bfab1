"""Assumption checks for the mixed ANOVA: normality, outliers, homogeneity."""

from __future__ import annotations

import numpy as np
import pandas as pd
from scipy import stats

from .anova import MixedModelFit
from .data import as_builtin


def shapiro_wilk(values: np.ndarray) -> dict:
    """Shapiro-Wilk W and p-value; undefined for fewer than 3 values."""
    values = np.asarray(values, dtype=float)
    if len(values) < 3:
        return {"n": int(len(values)), "statistic": None, "p_value": None}
    w, p = stats.shapiro(values)
    return {"n": int(len(values)), "statistic": float(w), "p_value": float(p)}


def grouped_shapiro(data: pd.DataFrame, by: str, dv: str = "ft_height") -> list[dict]:
    """Shapiro-Wilk on the raw values of each level of ``by``."""
    rows = []
    for level, group in data.groupby(by, sort=True):
        rows.append({by: as_builtin(level), "variable": dv, **shapiro_wilk(group[dv].to_numpy())})
    return rows


def identify_outliers(data: pd.DataFrame, by: str, dv: str = "ft_height") -> list[dict]:
    """Flag values beyond 1.5 IQR (outlier) and 3 IQR (extreme) from the quartiles of their group.

    Only flagged rows are returned.
    """
    flagged = []
    for _, group in data.groupby(by, sort=True):
        values = group[dv].to_numpy(dtype=float)
        q1, q3 = np.percentile(values, [25, 75])
        iqr = q3 - q1
        is_outlier = (values < q1 - 1.5 * iqr) | (values > q3 + 1.5 * iqr)
        is_extreme = (values < q1 - 3 * iqr) | (values > q3 + 3 * iqr)
        for record, outlier, extreme in zip(
            group.to_dict(orient="records"), is_outlier, is_extreme, strict=True
        ):
            if outlier:
                row = {key: as_builtin(val) for key, val in record.items()}
                row["is_outlier"] = True
                row["is_extreme"] = bool(extreme)
                flagged.append(row)
    return flagged


def check_homogeneity(fit: MixedModelFit, alpha: float = 0.05) -> dict | None:
    """Levene's test (mean-centred) across between groups on each subject's mean.

    The verdict comes from the single test on subject means, averaged over all
    within cells. Per-cell Levene tests are reported alongside as detail only.
    """
    if fit.between is None:
        return None
    subject_means = fit.y.mean(axis=1)
    samples = [subject_means[fit.groups == level] for level in fit.group_levels]
    if any(len(s) < 2 for s in samples):
        return None
    stat, p = stats.levene(*samples, center="mean")

    cells = []
    for k, cell in enumerate(fit.cells):
        cell_samples = [fit.y[fit.groups == level, k] for level in fit.group_levels]
        cell_stat, cell_p = stats.levene(*cell_samples, center="mean")
        cells.append(
            {
                "cell": dict(zip(fit.within, cell, strict=True)),
                "statistic": float(cell_stat),
                "p_value": float(cell_p),
            }
        )

    # Identical spreads give NaN; that carries no evidence of heterogeneity.
    return {
        "method": "levene",
        "center": "mean",
        "statistic": float(stat),
        "p_value": float(p),
        "homogeneous": bool(np.isnan(p) or p > alpha),
        "cells": cells,
    }
