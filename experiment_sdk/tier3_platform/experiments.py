"""
experiment_sdk.tier3_platform.experiments
──────────────────────────────────────────
Experiment lifecycle (creation, status updates, lookup) and variant
selection. Users are mapped onto variants by walking the variant list in
stored order and accumulating weights until the cumulative weight exceeds
the user's bucket.

Variant order is therefore part of an experiment's frozen configuration:
reordering a live experiment moves users that sit near bucket boundaries.
"""
from __future__ import annotations

import dataclasses
import uuid
from typing import Any

from experiment_sdk.tier0_core.errors import ExperimentNotFound, ValidationError
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier1_runtime.validate import ExperimentInput, validate_experiment
from experiment_sdk.tier2_reliability.storage import (
    STATUSES,
    Experiment,
    ExperimentStore,
    TargetingRule,
    Variant,
)
from experiment_sdk.tier3_platform.bucketing import bucket

log = get_logger(__name__)


def select_variant(user_id: str, experiment: Experiment) -> Variant:
    """
    Pick the variant owning the user's bucket.

    Falls back to the first variant if no cumulative weight exceeds the
    bucket, which only happens when stored weights sum to less than 100.
    """
    user_bucket = bucket(user_id, experiment.id)

    cumulative = 0
    for variant in experiment.variants:
        cumulative += variant.weight
        if user_bucket < cumulative:
            return variant

    return experiment.variants[0]


class ExperimentRegistry:
    """Creates experiments and moves them between statuses."""

    def __init__(self, store: ExperimentStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or get_clock()

    async def create_experiment(self, definition: ExperimentInput | dict[str, Any]) -> str:
        """
        Validate and persist a new experiment. Returns its generated id.

        Raises InvalidExperimentDefinition if weights do not sum to 100,
        fewer than 2 variants are given, or any other field is invalid.
        """
        validated = validate_experiment(definition)
        now = self._clock.timestamp_ms()

        rules = validated.targeting_rules
        experiment = Experiment(
            id=str(uuid.uuid4()),
            name=validated.name,
            variants=[
                Variant(id=v.id, name=v.name, weight=v.weight, config=v.config)
                for v in validated.variants
            ],
            start_date=validated.start_date,
            end_date=validated.end_date,
            status=validated.status,
            targeting_rules=(
                [TargetingRule(type=r.type, operator=r.operator, value=r.value) for r in rules]
                if rules is not None else None
            ),
            created_at=now,
            updated_at=now,
        )
        await self._store.save_experiment(experiment)
        log.info(
            "experiment.created",
            experiment_id=experiment.id,
            name=experiment.name,
            status=experiment.status,
            variants=[v.id for v in experiment.variants],
        )
        return experiment.id

    async def get_experiment(self, experiment_id: str) -> Experiment:
        experiment = await self._store.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFound(experiment_id)
        return experiment

    async def update_status(self, experiment_id: str, status: str) -> Experiment:
        """Set a new status. Any status may follow any other."""
        if status not in STATUSES:
            raise ValidationError(
                user_message=f"Unknown experiment status {status!r}",
                fields={"status": f"must be one of {', '.join(STATUSES)}"},
            )
        experiment = await self.get_experiment(experiment_id)
        updated = dataclasses.replace(
            experiment, status=status, updated_at=self._clock.timestamp_ms()
        )
        await self._store.save_experiment(updated)
        log.info(
            "experiment.status_updated",
            experiment_id=experiment_id,
            previous=experiment.status,
            status=status,
        )
        return updated


__all__ = ["select_variant", "ExperimentRegistry"]
