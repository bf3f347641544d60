"""
experiment_sdk.service
───────────────────────
Service surface: one object wiring every engine component to a single
store and clock. Host applications (HTTP handlers, workers, CLIs) call
this instead of assembling the components themselves.

Usage::

    from experiment_sdk import ExperimentService

    service = ExperimentService()
    experiment_id = await service.create_experiment({...})
    await service.update_experiment_status(experiment_id, "active")
    assignment = await service.assign("user_123", experiment_id, {"country": "US"})
    await service.record_conversion("user_123", experiment_id, "purchase", 42.0)
    results = await service.compute_results(experiment_id)
"""
from __future__ import annotations

from typing import Any, Mapping

from experiment_sdk.tier1_runtime.clock import Clock, get_clock
from experiment_sdk.tier1_runtime.validate import ExperimentInput
from experiment_sdk.tier2_reliability.storage import (
    Assignment,
    ConversionEvent,
    Experiment,
    ExperimentStore,
    get_store,
)
from experiment_sdk.tier3_platform.assignment import AssignmentManager
from experiment_sdk.tier3_platform.conversions import ConversionRecorder
from experiment_sdk.tier3_platform.experiments import ExperimentRegistry
from experiment_sdk.tier3_platform.results import ExperimentResults, ResultsAnalyzer


class ExperimentService:
    """
    Facade over registry, assignment, conversions and results.

    ``store`` defaults to the config-selected backend (``get_store()``),
    ``clock`` to the process clock.
    """

    def __init__(
        self,
        store: ExperimentStore | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store or get_store()
        self.clock = clock or get_clock()
        self.registry = ExperimentRegistry(self.store, self.clock)
        self.assignments = AssignmentManager(self.store, self.clock)
        self.conversions = ConversionRecorder(self.store, self.clock)
        self.results = ResultsAnalyzer(self.store)

    # ── Experiments ───────────────────────────────────────────────────────────

    async def create_experiment(self, definition: ExperimentInput | dict[str, Any]) -> str:
        return await self.registry.create_experiment(definition)

    async def update_experiment_status(self, experiment_id: str, status: str) -> Experiment:
        return await self.registry.update_status(experiment_id, status)

    async def get_experiment(self, experiment_id: str) -> Experiment:
        return await self.registry.get_experiment(experiment_id)

    # ── Assignment / conversions ──────────────────────────────────────────────

    async def assign(
        self,
        user_id: str,
        experiment_id: str,
        user_context: Mapping[str, Any] | None = None,
    ) -> Assignment:
        return await self.assignments.assign(user_id, experiment_id, user_context)

    async def get_user_experiments(
        self, user_id: str, limit: int | None = None
    ) -> list[Assignment]:
        return await self.assignments.list_user_assignments(user_id, limit=limit)

    async def record_conversion(
        self,
        user_id: str,
        experiment_id: str,
        event_name: str,
        value: float | None = None,
    ) -> ConversionEvent:
        return await self.conversions.record_conversion(user_id, experiment_id, event_name, value)

    # ── Results ───────────────────────────────────────────────────────────────

    async def compute_results(self, experiment_id: str) -> ExperimentResults:
        return await self.results.compute_results(experiment_id)


__all__ = ["ExperimentService"]
