"""
experiment_sdk.tier3_platform.assignment
─────────────────────────────────────────
Idempotent user → variant assignment.

An existing assignment is always returned unchanged, before the experiment
is even loaded, so a user's variant survives later edits to weights,
targeting or status. New assignments are only made for active experiments
whose targeting rules the user satisfies.

Two concurrent first-time calls for the same user are not serialized. Both
compute the same variant (bucketing is deterministic) and both write; the
store treats the second identical write as a no-op. This race is accepted.
"""
from __future__ import annotations

from typing import Any, Mapping

from experiment_sdk.tier0_core.errors import (
    ExperimentNotActive,
    ExperimentNotFound,
    TargetingRejected,
)
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier0_core.metrics import counter
from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier2_reliability.storage import Assignment, ExperimentStore
from experiment_sdk.tier3_platform.experiments import select_variant
from experiment_sdk.tier3_platform.targeting import is_eligible

log = get_logger(__name__)

_assignments_total = counter(
    "experiment_assignments_total",
    "Assignment requests by outcome (created, existing, rejected)",
    ["experiment_id", "outcome"],
)


class AssignmentManager:
    def __init__(self, store: ExperimentStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or get_clock()

    async def assign(
        self,
        user_id: str,
        experiment_id: str,
        user_context: Mapping[str, Any] | None = None,
    ) -> Assignment:
        """
        Return the user's assignment for the experiment, creating it on the
        first eligible call.

        Raises:
            ExperimentNotFound: no such experiment.
            ExperimentNotActive: experiment status is not "active".
            TargetingRejected: user context fails a targeting rule.
        """
        existing = await self._store.get_assignment(experiment_id, user_id)
        if existing is not None:
            _assignments_total(experiment_id=experiment_id, outcome="existing").inc()
            log.debug(
                "assignment.reused",
                experiment_id=experiment_id,
                user_id=user_id,
                variant_id=existing.variant_id,
            )
            return existing

        experiment = await self._store.get_experiment(experiment_id)
        if experiment is None:
            raise ExperimentNotFound(experiment_id)

        if experiment.status != "active":
            self._rejected(experiment_id, user_id, "not_active")
            raise ExperimentNotActive(experiment_id, experiment.status)

        context = dict(user_context or {})
        if not is_eligible(context, experiment.targeting_rules):
            self._rejected(experiment_id, user_id, "targeting", user_context=context)
            raise TargetingRejected(experiment_id, user_id)

        variant = select_variant(user_id, experiment)
        assignment = Assignment(
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=variant.id,
            assigned_at=self._clock.timestamp_ms(),
        )
        await self._store.save_assignment(assignment)

        _assignments_total(experiment_id=experiment_id, outcome="created").inc()
        log.info(
            "assignment.created",
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=variant.id,
        )
        return assignment

    async def list_user_assignments(
        self, user_id: str, limit: int | None = None
    ) -> list[Assignment]:
        """Every assignment the user holds, across experiments, oldest first."""
        return await self._store.list_user_assignments(user_id, limit=limit)

    def _rejected(self, experiment_id: str, user_id: str, reason: str, **extra: Any) -> None:
        _assignments_total(experiment_id=experiment_id, outcome="rejected").inc()
        log.info(
            "assignment.rejected",
            experiment_id=experiment_id,
            user_id=user_id,
            reason=reason,
            **extra,
        )


__all__ = ["AssignmentManager"]
