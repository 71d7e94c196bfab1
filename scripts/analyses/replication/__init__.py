"""Jump-height replication analysis package.

Loads the shakey / noshakey jump data, classifies participants as responders
or non-responders, runs the Greenhouse-Geisser corrected mixed ANOVA, checks
its assumptions, computes post-hoc contrasts, and tests whether the
replication's condition effect is smaller than the originally published one.

Entry point: call ``main()`` to run the full analysis CLI, or import
individual functions for use in notebooks and tests.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np
import pandas as pd

from .anova import (
    estimated_marginal_means,
    find_effect,
    mixed_anova,
    model_residuals,
    pairwise_contrasts,
)
from .assumptions import check_homogeneity, grouped_shapiro, identify_outliers, shapiro_wilk
from .data import (
    NON_RESPONDER,
    RESPONDER,
    attach_response,
    classify_responders,
    condition_descriptives,
    load_jump_data,
)
from .effect_size import METHODS, compare_correlations, eta_from_f, f_from_p, pes_to_rho

DEFAULT_ALPHA = 0.05
RESPONSE_THRESHOLD = 0.1
CONDITION_EFFECT = "condition"

# Published values for the condition main effect of the original study.
ORIGINAL_STUDY = {
    "p_value": 0.016,
    "n": 11,
    "df1": 1,
    "df2": 10,
    "reported_pes": 0.496,
}


def _records(frame: pd.DataFrame) -> list[dict]:
    """DataFrame rows as JSON-friendly dicts (NaN -> None)."""
    rows = []
    for record in frame.to_dict(orient="records"):
        row = {}
        for key, val in record.items():
            if isinstance(val, np.generic):
                val = val.item()
            if isinstance(val, float) and np.isnan(val):
                val = None
            row[key] = val
        rows.append(row)
    return rows


def analyze_original_study(original: dict, alpha: float = DEFAULT_ALPHA) -> dict:
    """Back-calculate the original F from its p-value and recompute its effect size."""
    f_value = f_from_p(original["p_value"], original["df1"], original["df2"])
    recalculated = eta_from_f(original["df1"], original["df2"], f_value, alpha)
    print(
        f"Original study: F({original['df1']}, {original['df2']})={f_value:.3f}, "
        f"pes={recalculated['eta']:.3f} (reported {original['reported_pes']:.3f})",
        file=sys.stderr,
    )
    return {
        **original,
        "F": f_value,
        "recalculated_es": recalculated,
        "matches_reported": bool(abs(recalculated["eta"] - original["reported_pes"]) < 0.005),
    }


def replication_tests(
    effect_row: dict, original: dict, original_analysis: dict, method: str = "fisher"
) -> dict:
    """Compare the replication's effect against the reported and the recalculated original pes."""
    pes_rep = effect_row["pes"]
    df_rep = effect_row["den_df"]
    rho_rep = pes_to_rho(pes_rep)

    tests = {}
    sources = {
        "reported": original["reported_pes"],
        "recalculated": original_analysis["recalculated_es"]["eta"],
    }
    for label, pes_ori in sources.items():
        rho_ori = pes_to_rho(pes_ori)
        result = compare_correlations(
            r1=rho_ori,
            df1=original["df2"],
            r2=rho_rep,
            df2=df_rep,
            method=method,
            alternative="greater",
        )
        tests[label] = {"pes_ori": pes_ori, "pes_rep": pes_rep, **result}
        print(
            f"  Replication z-test ({label}): rho_ori={rho_ori:.3f}, rho_rep={rho_rep:.3f}, "
            f"z={result['z']:.3f}, p={result['p_value']:.4f}",
            file=sys.stderr,
        )
    return tests


def check_assumptions(data: pd.DataFrame, fit, alpha: float = DEFAULT_ALPHA) -> dict:
    """Normality of residuals and raw groups, outliers, and homogeneity of variance."""
    residual_normality = shapiro_wilk(model_residuals(fit))
    homogeneity = check_homogeneity(fit, alpha)
    if homogeneity is None:
        print("  Homogeneity: SKIPPED (no between-subjects groups)", file=sys.stderr)
    return {
        "residual_normality": residual_normality,
        "normality_by_condition": grouped_shapiro(data, "condition"),
        "normality_by_trial": grouped_shapiro(data, "trial"),
        "outliers_by_condition": identify_outliers(data, "condition"),
        "outliers_by_trial": identify_outliers(data, "trial"),
        "homogeneity": homogeneity,
    }


def run_analysis(
    data: pd.DataFrame,
    original: dict | None = None,
    alpha: float = DEFAULT_ALPHA,
    threshold: float = RESPONSE_THRESHOLD,
    method: str = "fisher",
) -> dict:
    """Run the whole replication analysis on long-format jump data."""
    original = dict(ORIGINAL_STUDY if original is None else original)

    wide = classify_responders(data, threshold=threshold)
    data = attach_response(data, wide)
    counts = wide["response"].value_counts()
    print(
        f"Participants: n={len(wide)}, responders={int(counts.get(RESPONDER, 0))}, "
        f"non-responders={int(counts.get(NON_RESPONDER, 0))}",
        file=sys.stderr,
    )

    table, fit = mixed_anova(data)
    for row in table:
        print(
            f"  {row['effect']}: F({row['num_df']:.2f}, {row['den_df']:.2f})={row['F']:.3f}, "
            f"p={row['p_value']:.4f}, pes={row['pes']:.3f}",
            file=sys.stderr,
        )
    condition_row = find_effect(table, CONDITION_EFFECT)

    original_analysis = analyze_original_study(original, alpha)
    replication = replication_tests(condition_row, original, original_analysis, method)
    replication_es = eta_from_f(
        condition_row["num_df"], condition_row["den_df"], condition_row["F"], alpha
    )

    return {
        "analysis": "jump_height_replication",
        "alpha": alpha,
        "response_threshold": threshold,
        "data": {
            "n_rows": int(len(data)),
            "n_participants": int(len(wide)),
            "n_analyzed": fit.n_subjects,
            "n_responders": int(counts.get(RESPONDER, 0)),
            "n_non_responders": int(counts.get(NON_RESPONDER, 0)),
            "n_unclassified": int(wide["response"].isna().sum()),
            "participants": _records(wide),
        },
        "descriptives": {
            "by_condition": condition_descriptives(data, ("condition",)),
            "by_response_condition": condition_descriptives(
                data.dropna(subset=["response"]), ("response", "condition")
            ),
        },
        "anova": {
            "correction": "greenhouse_geisser",
            "effect_size": "pes",
            "table": table,
        },
        "assumptions": check_assumptions(data, fit, alpha),
        "posthoc": {
            "emmeans_condition": estimated_marginal_means(fit, "condition", alpha),
            "emmeans_trial": estimated_marginal_means(fit, "trial", alpha),
            "condition_pairs": pairwise_contrasts(fit, "condition", "bonferroni", alpha),
        },
        "original_study": original_analysis,
        "replication_test": replication,
        "replication_effect_size": {"study_id": "Replication study", **replication_es},
    }


def print_summary(report: dict) -> None:
    """Print the headline results to stderr."""
    condition = find_effect(report["anova"]["table"], CONDITION_EFFECT)
    es = report["replication_effect_size"]
    print(
        f"\nCondition effect: F={condition['F']:.3f}, p={condition['p_value']:.4f}, "
        f"pes={es['eta']:.3f} [{es['etalow']:.3f}, {es['etahigh']:.3f}]",
        file=sys.stderr,
    )
    residuals = report["assumptions"]["residual_normality"]
    if residuals["p_value"] is not None:
        status = "normal" if residuals["p_value"] > report["alpha"] else "non-normal"
        print(f"  Residuals: W={residuals['statistic']:.3f} ({status})", file=sys.stderr)
    for pair in report["posthoc"]["condition_pairs"]:
        print(
            f"  {pair['contrast']}: diff={pair['estimate']:.4f}, "
            f"p_bonf={pair['p_adjusted']:.4f}",
            file=sys.stderr,
        )
    for label, test in report["replication_test"].items():
        status = "SMALLER" if test["p_value"] < report["alpha"] else "n.s."
        print(f"  [{status}] replication vs {label} original: p={test['p_value']:.4f}", file=sys.stderr)


def main() -> None:
    """Run the replication analysis on a jump-height CSV and print a JSON report."""
    parser = argparse.ArgumentParser(
        description="Replication analysis of shakey vs noshakey jump heights."
    )
    parser.add_argument("data", type=str, help="CSV with columns id, condition, trial, ft_height")
    parser.add_argument(
        "--alpha", type=float, default=DEFAULT_ALPHA, help="Significance level (default: 0.05)"
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=RESPONSE_THRESHOLD,
        help="Percent difference separating responders from non-responders (default: 0.1)",
    )
    parser.add_argument(
        "--method", choices=METHODS, default="fisher", help="Correlation comparison method"
    )
    parser.add_argument("--output", type=str, default=None, help="Also write the JSON report here")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    try:
        data = load_jump_data(args.data)
    except (FileNotFoundError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        report = run_analysis(data, alpha=args.alpha, threshold=args.threshold, method=args.method)
    except ValueError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w") as f:
            json.dump(report, f, indent=2)
        print(f"Wrote {output_path}", file=sys.stderr)

    print(json.dumps(report, indent=2))
    print_summary(report)
