"""Replication analysis for the shakey / noshakey jump-height study.

Classifies participants as responders or non-responders, runs the
Greenhouse-Geisser corrected mixed ANOVA (response x trial x condition),
checks its assumptions, computes Bonferroni post-hoc contrasts, and compares
the replication's condition effect with the originally published one.

Usage:
    uv run python scripts/analyze_replication.py data/shakey_noshakey_data.csv > replication.json

Implementation lives in ``analyses/replication/``; this file is a thin dispatcher.
"""

from __future__ import annotations

from analyses.replication import ORIGINAL_STUDY, main, run_analysis
from analyses.replication.anova import (
    estimated_marginal_means,
    mixed_anova,
    pairwise_contrasts,
)
from analyses.replication.data import (
    attach_response,
    classify_responders,
    condition_descriptives,
    load_jump_data,
)
from analyses.replication.effect_size import (
    compare_correlations,
    eta_from_f,
    f_from_p,
    pes_to_rho,
)

__all__ = [
    "main",
    "run_analysis",
    "ORIGINAL_STUDY",
    "attach_response",
    "classify_responders",
    "condition_descriptives",
    "load_jump_data",
    "mixed_anova",
    "estimated_marginal_means",
    "pairwise_contrasts",
    "compare_correlations",
    "eta_from_f",
    "f_from_p",
    "pes_to_rho",
]

if __name__ == "__main__":
    main()
