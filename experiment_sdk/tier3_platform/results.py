"""
experiment_sdk.tier3_platform.results
──────────────────────────────────────
Per-variant metrics and winner nomination.

Metrics are derived on demand from the experiment's assignments and
conversion events and never stored. Conversions are counted per event, not
per unique user, so a rate above 100 % is possible.

The winner is the highest conversion rate among variants with at least 30
assigned users, provided two or more variants qualify. Its confidence is a
heuristic, ``min(95, 50 + relative difference to the runner-up in %)``. It
is NOT a significance test and must not be presented as one.

compute_results does a full scan of both collections and has no internal
timeout; treat it as a batch operation.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from experiment_sdk.tier0_core.errors import ExperimentNotFound
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier0_core.metrics import histogram
from experiment_sdk.tier2_reliability.storage import (
    Assignment,
    ConversionEvent,
    Experiment,
    ExperimentStore,
)

log = get_logger(__name__)

MIN_USERS_FOR_WINNER = 30
BASE_CONFIDENCE = 50.0
MAX_CONFIDENCE = 95.0

_results_seconds = histogram(
    "experiment_results_seconds",
    "Time spent computing experiment results",
)


@dataclass
class VariantMetrics:
    variant_id: str
    variant_name: str
    total_users: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0      # percent
    average_value: float = 0.0


@dataclass
class ExperimentResults:
    experiment_id: str
    variants: list[VariantMetrics] = field(default_factory=list)
    winner: str | None = None
    confidence_level: float | None = None


def pick_winner(metrics: Iterable[VariantMetrics]) -> tuple[str | None, float | None]:
    """Return (winning variant id, heuristic confidence) or (None, None)."""
    qualifying = [m for m in metrics if m.total_users >= MIN_USERS_FOR_WINNER]
    if len(qualifying) < 2:
        return None, None

    # Stable: equal rates keep declared variant order.
    ranked = sorted(qualifying, key=lambda m: m.conversion_rate, reverse=True)
    top_rate = ranked[0].conversion_rate
    second_rate = ranked[1].conversion_rate
    relative_diff = (top_rate - second_rate) / top_rate * 100 if top_rate > 0 else 0.0
    return ranked[0].variant_id, min(MAX_CONFIDENCE, BASE_CONFIDENCE + relative_diff)


def summarize(
    experiment: Experiment,
    assignments: Iterable[Assignment],
    conversions: Iterable[ConversionEvent],
) -> ExperimentResults:
    """
    Aggregate raw records into results. Records pointing at a variant the
    experiment does not declare are ignored.
    """
    by_variant = {
        v.id: VariantMetrics(variant_id=v.id, variant_name=v.name)
        for v in experiment.variants
    }
    values: dict[str, list[float]] = {}

    for assignment in assignments:
        m = by_variant.get(assignment.variant_id)
        if m is not None:
            m.total_users += 1

    for event in conversions:
        m = by_variant.get(event.variant_id)
        if m is None:
            continue
        m.conversions += 1
        if event.value is not None:
            values.setdefault(event.variant_id, []).append(event.value)

    for m in by_variant.values():
        if m.total_users > 0:
            m.conversion_rate = m.conversions / m.total_users * 100
            recorded = values.get(m.variant_id)
            if recorded:
                m.average_value = sum(recorded) / len(recorded)

    metrics = list(by_variant.values())
    winner, confidence = pick_winner(metrics)
    return ExperimentResults(
        experiment_id=experiment.id,
        variants=metrics,
        winner=winner,
        confidence_level=confidence,
    )


class ResultsAnalyzer:
    def __init__(self, store: ExperimentStore) -> None:
        self._store = store

    async def compute_results(self, experiment_id: str) -> ExperimentResults:
        """
        Raises ExperimentNotFound if the experiment does not exist. Missing
        data (no assignments, no conversions, too few users) yields partial
        results rather than errors.
        """
        with _results_seconds().time():
            experiment = await self._store.get_experiment(experiment_id)
            if experiment is None:
                raise ExperimentNotFound(experiment_id)

            assignments = await self._store.list_assignments(experiment_id)
            conversions = await self._store.list_conversions(experiment_id)
            results = summarize(experiment, assignments, conversions)

        log.info(
            "results.computed",
            experiment_id=experiment_id,
            assignments=len(assignments),
            conversions=len(conversions),
            winner=results.winner,
            confidence_level=results.confidence_level,
        )
        return results


__all__ = [
    "MIN_USERS_FOR_WINNER", "VariantMetrics", "ExperimentResults",
    "pick_winner", "summarize", "ResultsAnalyzer",
]
