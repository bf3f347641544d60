"""
experiment_sdk.tier3_platform.conversions
──────────────────────────────────────────
Conversion recording. An event is only accepted for a user who already
holds an assignment, and it carries the assignment's variant id as of
record time. The assignment itself is never touched.
"""
from __future__ import annotations

from experiment_sdk.tier0_core.errors import NotAssigned
from experiment_sdk.tier0_core.logging import get_logger
from experiment_sdk.tier0_core.metrics import counter
from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier1_runtime.validate import ConversionInput, validate_input
from experiment_sdk.tier2_reliability.storage import ConversionEvent, ExperimentStore

log = get_logger(__name__)

_conversions_total = counter(
    "experiment_conversions_total",
    "Conversion events recorded",
    ["experiment_id"],
)


class ConversionRecorder:
    def __init__(self, store: ExperimentStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or get_clock()

    async def record_conversion(
        self,
        user_id: str,
        experiment_id: str,
        event_name: str,
        value: float | None = None,
    ) -> ConversionEvent:
        """
        Append a conversion event for the user's assignment.

        Raises NotAssigned if the user was never assigned to the experiment
        (checked first, whatever the input), ValidationError if event_name
        is empty.
        """
        assignment = await self._store.get_assignment(experiment_id, user_id)
        if assignment is None:
            log.info(
                "conversion.rejected",
                experiment_id=experiment_id,
                user_id=user_id,
                event_name=event_name,
            )
            raise NotAssigned(experiment_id, user_id)

        payload = validate_input(ConversionInput, {"event_name": event_name, "value": value})

        event = ConversionEvent(
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=assignment.variant_id,
            event_name=payload.event_name,
            value=payload.value,
            timestamp=self._clock.timestamp_ms(),
        )
        await self._store.append_conversion(event)

        _conversions_total(experiment_id=experiment_id).inc()
        log.info(
            "conversion.recorded",
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=event.variant_id,
            event_name=event.event_name,
            value=event.value,
        )
        return event


__all__ = ["ConversionRecorder"]
