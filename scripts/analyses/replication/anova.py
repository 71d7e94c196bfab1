"""Mixed repeated-measures ANOVA with Greenhouse-Geisser correction.

The univariate tests are derived from the multivariate linear model: subject
scores on every within cell are regressed on the (sum-to-zero coded) between
factor, and each within effect is tested on its own orthonormal contrast
space. Sums of squares are type III, so the within main effects are tested at
the unweighted mean of the between groups.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy import stats

from .data import as_builtin

logger = logging.getLogger(__name__)


@dataclass
class MixedModelFit:
    """Subject x cell matrix and the between-subjects regression fitted to it."""

    y: np.ndarray
    groups: np.ndarray
    group_levels: list
    within: tuple[str, ...]
    within_levels: dict[str, list]
    between: str | None
    design: np.ndarray
    coefficients: np.ndarray
    residuals: np.ndarray
    cells: list[tuple] = field(default_factory=list)

    @property
    def n_subjects(self) -> int:
        return self.y.shape[0]

    @property
    def df_error(self) -> int:
        return self.n_subjects - self.design.shape[1]

    @property
    def error_sscp(self) -> np.ndarray:
        return self.residuals.T @ self.residuals


def to_subject_matrix(
    data: pd.DataFrame,
    dv: str = "ft_height",
    subject: str = "id",
    between: str | None = "response",
    within: tuple[str, ...] = ("trial", "condition"),
) -> tuple[pd.DataFrame, pd.Series | None, dict[str, list]]:
    """Aggregate long data to one row per subject and one column per within cell.

    Repeated observations in a cell are averaged. Subjects with an empty cell
    or without a between-group label are dropped.
    """
    within = tuple(within)
    if between is not None:
        unlabelled = data[between].isna()
        if unlabelled.any():
            dropped = sorted(data.loc[unlabelled, subject].unique().tolist())
            logger.warning("dropping %d subject(s) without %s: %s", len(dropped), between, dropped)
            data = data.loc[~unlabelled]

    within_levels = {w: sorted(data[w].unique().tolist()) for w in within}
    counts = data.groupby([subject, *within]).size()
    if (counts > 1).any():
        logger.info("averaging repeated observations within %s cells", " x ".join(within))

    matrix = data.pivot_table(index=subject, columns=list(within), values=dv, aggfunc="mean")
    full_columns = list(itertools.product(*(within_levels[w] for w in within)))
    if len(within) == 1:
        full_columns = [c[0] for c in full_columns]
        matrix = matrix.reindex(columns=full_columns)
    else:
        matrix = matrix.reindex(columns=pd.MultiIndex.from_tuples(full_columns, names=within))

    incomplete = matrix.isna().any(axis=1)
    if incomplete.any():
        dropped = [as_builtin(s) for s in matrix.index[incomplete]]
        logger.warning("dropping %d subject(s) with missing cells: %s", len(dropped), dropped)
        matrix = matrix.loc[~incomplete]

    groups = None
    if between is not None:
        labels = data.groupby(subject)[between].nunique()
        ambiguous = labels[labels > 1]
        if len(ambiguous):
            raise ValueError(f"subjects with more than one {between} level: {list(ambiguous.index)}")
        groups = data.groupby(subject)[between].first().reindex(matrix.index)
    return matrix, groups, within_levels


def sum_coding(groups: np.ndarray, levels: list) -> np.ndarray:
    """Design matrix with an intercept and sum-to-zero contrasts for ``groups``."""
    n = len(groups)
    design = np.ones((n, len(levels)))
    for j, level in enumerate(levels[:-1], start=1):
        design[:, j] = np.where(groups == level, 1.0, np.where(groups == levels[-1], -1.0, 0.0))
    return design


def orthonormal_contrasts(n_levels: int) -> np.ndarray:
    """Orthonormal Helmert contrasts: ``n_levels x (n_levels - 1)``, columns orthogonal to 1."""
    basis = np.zeros((n_levels, n_levels - 1))
    for j in range(1, n_levels):
        basis[:j, j - 1] = 1.0
        basis[j, j - 1] = -float(j)
    return basis / np.linalg.norm(basis, axis=0)


def within_transform(level_counts: list[int], effect: tuple[bool, ...]) -> np.ndarray:
    """Contrast matrix for one within effect over the row-major cell layout.

    ``effect[i]`` says whether factor ``i`` takes part in the effect; factors
    that do not are averaged out.
    """
    transform = np.ones((1, 1))
    for n_levels, included in zip(level_counts, effect, strict=True):
        part = orthonormal_contrasts(n_levels) if included else np.full((n_levels, 1), 1 / np.sqrt(n_levels))
        transform = np.kron(transform, part)
    return transform


def greenhouse_geisser_epsilon(error_sscp: np.ndarray) -> float:
    """Greenhouse-Geisser epsilon from the error SSCP of an effect's contrasts."""
    error_sscp = np.atleast_2d(error_sscp)
    p = error_sscp.shape[0]
    if p <= 1:
        return 1.0
    denom = p * float(np.trace(error_sscp @ error_sscp))
    if denom <= 0.0:
        return 1.0
    return float(np.trace(error_sscp) ** 2 / denom)


def fit_mixed_model(
    data: pd.DataFrame,
    dv: str = "ft_height",
    subject: str = "id",
    between: str | None = "response",
    within: tuple[str, ...] = ("trial", "condition"),
) -> MixedModelFit:
    """Fit the multivariate between-subjects model to the subject x cell matrix."""
    within = tuple(within)
    matrix, groups, within_levels = to_subject_matrix(data, dv, subject, between, within)
    if groups is None:
        group_array = np.zeros(len(matrix), dtype=object)
        group_levels: list = []
        design = np.ones((len(matrix), 1))
    else:
        group_array = groups.to_numpy(dtype=object)
        group_levels = sorted(pd.unique(group_array).tolist())
        if len(group_levels) < 2:
            logger.warning("only one %s level present; between-subjects effects skipped", between)
            design = np.ones((len(matrix), 1))
        else:
            design = sum_coding(group_array, group_levels)

    y = matrix.to_numpy(dtype=float)
    if y.shape[0] <= design.shape[1]:
        raise ValueError(
            f"need more subjects than model terms (subjects={y.shape[0]}, terms={design.shape[1]})"
        )
    coefficients, *_ = np.linalg.lstsq(design, y, rcond=None)
    residuals = y - design @ coefficients
    cells = [c if isinstance(c, tuple) else (c,) for c in matrix.columns]
    return MixedModelFit(
        y=y,
        groups=group_array,
        group_levels=group_levels,
        within=within,
        within_levels=within_levels,
        between=between if design.shape[1] > 1 else None,
        design=design,
        coefficients=coefficients,
        residuals=residuals,
        cells=[tuple(as_builtin(v) for v in c) for c in cells],
    )


def _effect_test(fit: MixedModelFit, transform: np.ndarray, hypothesis: np.ndarray) -> dict:
    """Univariate F-test of ``hypothesis`` (rows over model terms) on one contrast space."""
    p = transform.shape[1]
    q = hypothesis.shape[0]
    xtx_inv = np.linalg.inv(fit.design.T @ fit.design)
    lb = hypothesis @ fit.coefficients @ transform
    middle = np.linalg.inv(hypothesis @ xtx_inv @ hypothesis.T)
    ss_effect = float(np.trace(lb.T @ middle @ lb))
    error = transform.T @ fit.error_sscp @ transform
    ss_error = float(np.trace(error))

    df_num = q * p
    df_den = fit.df_error * p
    mse = ss_error / df_den
    f_value = (ss_effect / df_num) / mse if mse > 0 else float("inf")
    eps = greenhouse_geisser_epsilon(error)
    total = ss_effect + ss_error
    return {
        "num_df": df_num * eps,
        "den_df": df_den * eps,
        "mse": mse,
        "F": f_value,
        "pes": ss_effect / total if total > 0 else 0.0,
        "p_value": float(stats.f.sf(f_value, df_num * eps, df_den * eps)),
        "gg_epsilon": eps,
        "ss_effect": ss_effect,
        "ss_error": ss_error,
    }


def anova_table(fit: MixedModelFit) -> list[dict]:
    """ANOVA rows in the conventional order: each within term, then its interaction with the between factor."""
    level_counts = [len(fit.within_levels[w]) for w in fit.within]
    n_terms = fit.design.shape[1]
    intercept = np.eye(n_terms)[:1]
    between_rows = np.eye(n_terms)[1:]

    subsets = []
    for size in range(len(fit.within) + 1):
        subsets.extend(itertools.combinations(range(len(fit.within)), size))

    rows = []
    for subset in subsets:
        if any(level_counts[i] < 2 for i in subset):
            continue
        mask = tuple(i in subset for i in range(len(fit.within)))
        transform = within_transform(level_counts, mask)
        names = [fit.within[i] for i in subset]
        if names:
            rows.append({"effect": ":".join(names), **_effect_test(fit, transform, intercept)})
        if fit.between is not None:
            rows.append(
                {"effect": ":".join([fit.between, *names]), **_effect_test(fit, transform, between_rows)}
            )
    return rows


def mixed_anova(
    data: pd.DataFrame,
    dv: str = "ft_height",
    subject: str = "id",
    between: str | None = "response",
    within: tuple[str, ...] = ("trial", "condition"),
) -> tuple[list[dict], MixedModelFit]:
    """Run the GG-corrected mixed ANOVA. Returns (table rows, fitted model)."""
    fit = fit_mixed_model(data, dv, subject, between, within)
    return anova_table(fit), fit


def find_effect(table: list[dict], effect: str) -> dict:
    for row in table:
        if row["effect"] == effect:
            return row
    raise ValueError(f"effect {effect!r} not in ANOVA table")


def model_residuals(fit: MixedModelFit) -> np.ndarray:
    """Residuals of the between-subjects model, one per subject x cell."""
    return fit.residuals.ravel()


def _level_weights(fit: MixedModelFit, factor: str) -> dict:
    if factor not in fit.within:
        raise ValueError(f"{factor!r} is not a within-subject factor")
    position = fit.within.index(factor)
    weights = {}
    for level in fit.within_levels[factor]:
        mask = np.array([cell[position] == as_builtin(level) for cell in fit.cells], dtype=float)
        weights[level] = mask / mask.sum()
    return weights


def _linear_estimate(fit: MixedModelFit, cell_weights: np.ndarray) -> tuple[float, float]:
    """Estimate and SE of a cell contrast averaged (equally) over between groups."""
    term = np.zeros(fit.design.shape[1])
    term[0] = 1.0
    xtx_inv = np.linalg.inv(fit.design.T @ fit.design)
    sigma = fit.error_sscp / fit.df_error
    estimate = float(term @ fit.coefficients @ cell_weights)
    variance = float(term @ xtx_inv @ term) * float(cell_weights @ sigma @ cell_weights)
    return estimate, float(np.sqrt(max(variance, 0.0)))


def estimated_marginal_means(fit: MixedModelFit, factor: str, alpha: float = 0.05) -> list[dict]:
    """Marginal means of a within factor from the multivariate model."""
    df = fit.df_error
    t_crit = stats.t.ppf(1 - alpha / 2, df)
    rows = []
    for level, weights in _level_weights(fit, factor).items():
        estimate, se = _linear_estimate(fit, weights)
        rows.append(
            {
                factor: as_builtin(level),
                "emmean": estimate,
                "se": se,
                "df": df,
                "ci_lo": estimate - t_crit * se,
                "ci_hi": estimate + t_crit * se,
            }
        )
    return rows


def pairwise_contrasts(
    fit: MixedModelFit, factor: str, adjust: str = "bonferroni", alpha: float = 0.05
) -> list[dict]:
    """All pairwise differences between marginal means of a within factor."""
    if adjust not in ("bonferroni", "none"):
        raise ValueError(f"unsupported p-value adjustment: {adjust!r}")
    weights = _level_weights(fit, factor)
    pairs = list(itertools.combinations(weights, 2))
    n_pairs = max(len(pairs), 1)
    m = n_pairs if adjust == "bonferroni" else 1
    df = fit.df_error
    t_crit = stats.t.ppf(1 - alpha / (2 * m), df)

    rows = []
    for level_a, level_b in pairs:
        estimate, se = _linear_estimate(fit, weights[level_a] - weights[level_b])
        t_value = estimate / se if se > 0 else 0.0
        p_raw = float(2 * stats.t.sf(abs(t_value), df))
        rows.append(
            {
                "contrast": f"{as_builtin(level_a)} - {as_builtin(level_b)}",
                "estimate": estimate,
                "se": se,
                "df": df,
                "t": t_value,
                "p_raw": p_raw,
                "p_adjusted": min(p_raw * m, 1.0),
                "ci_lo": estimate - t_crit * se,
                "ci_hi": estimate + t_crit * se,
                "adjust": adjust,
            }
        )
    return rows
