"""Loading and reshaping utilities for the jump-height data set."""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("id", "condition", "trial", "ft_height")
CONDITIONS = ("noshakey", "shakey")
RESPONDER = "Responder"
NON_RESPONDER = "Non-responder"


def load_jump_data(path: Path | str) -> pd.DataFrame:
    """Read the long-format CSV (one row per jump) and validate its columns."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"data file not found: {path}")
    data = pd.read_csv(path)
    missing = [col for col in REQUIRED_COLUMNS if col not in data.columns]
    if missing:
        raise ValueError(f"{path}: missing required column(s): {', '.join(missing)}")

    data = data.loc[:, list(REQUIRED_COLUMNS)].copy()
    data["condition"] = data["condition"].astype(str).str.strip()
    data["ft_height"] = pd.to_numeric(data["ft_height"], errors="coerce")
    n_missing = int(data["ft_height"].isna().sum())
    if n_missing:
        logger.warning("dropping %d row(s) with missing ft_height", n_missing)
        data = data.dropna(subset=["ft_height"]).reset_index(drop=True)
    return data


def classify_responders(
    data: pd.DataFrame, threshold: float = 0.1, conditions: tuple[str, str] = CONDITIONS
) -> pd.DataFrame:
    """Summarise each participant and label them responder or non-responder.

    The percentage difference is taken between the per-condition means of all
    trials: ``(shakey - noshakey) / noshakey * 100``. Participants sitting
    exactly on the threshold (or without both conditions) stay unclassified.
    """
    baseline, treatment = conditions
    wide = data.pivot_table(
        index="id", columns="condition", values="ft_height", aggfunc="mean"
    ).reindex(columns=list(conditions))
    wide.columns.name = None
    wide = wide.reset_index()

    with np.errstate(divide="ignore", invalid="ignore"):
        percent_diff = (wide[treatment] - wide[baseline]) / wide[baseline] * 100
    percent_diff = percent_diff.replace([np.inf, -np.inf], np.nan)
    wide["percent_diff"] = percent_diff

    response = np.where(
        percent_diff > threshold,
        RESPONDER,
        np.where(percent_diff < threshold, NON_RESPONDER, None),
    )
    wide["response"] = pd.Series(response, index=wide.index, dtype="object")

    n_unclassified = int(wide["response"].isna().sum())
    if n_unclassified:
        logger.warning("%d participant(s) could not be classified", n_unclassified)
    return wide


def attach_response(data: pd.DataFrame, wide: pd.DataFrame) -> pd.DataFrame:
    """Add each participant's response label to the long data, joined on id."""
    labelled = data.drop(columns=["response"], errors="ignore")
    return labelled.merge(wide[["id", "response"]], on="id", how="left", validate="many_to_one")


def condition_descriptives(
    data: pd.DataFrame, by: tuple[str, ...] = ("condition",), dv: str = "ft_height"
) -> list[dict]:
    """Mean, SD and n of the dependent variable per group."""
    rows = []
    for key, group in data.groupby(list(by), sort=True):
        key = key if isinstance(key, tuple) else (key,)
        values = group[dv].to_numpy(dtype=float)
        row = {col: as_builtin(val) for col, val in zip(by, key, strict=True)}
        row.update(
            {
                "n": int(len(values)),
                "mean": float(np.mean(values)),
                "sd": float(np.std(values, ddof=1)) if len(values) > 1 else 0.0,
            }
        )
        rows.append(row)
    return rows


def as_builtin(value):
    """Convert numpy scalars to builtin types so reports serialise as JSON."""
    return value.item() if isinstance(value, np.generic) else value
