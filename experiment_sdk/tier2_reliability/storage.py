"""
experiment_sdk.tier2_reliability.storage
─────────────────────────────────────────
Persistence boundary for experiments, assignments and conversion events.
The engine only ever talks to the ``ExperimentStore`` protocol: point
get/set/delete by key, append-only inserts for conversions, and
equality-filtered, ordered, optionally limited scans.

Backends: memory (tests / local dev) | sql (SQLAlchemy async)
Select via: EXPERIMENTS_STORE_BACKEND=memory|sql
"""
from __future__ import annotations

import copy
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

from sqlalchemy import JSON, BigInteger, Float, String, delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from experiment_sdk.tier0_core.config import get_config
from experiment_sdk.tier0_core.data import (
    Base,
    create_schema,
    get_engine,
    make_session_factory,
    session_scope,
)
from experiment_sdk.tier0_core.errors import ConfigurationError
from experiment_sdk.tier0_core.logging import get_logger

log = get_logger(__name__)

ExperimentStatus = Literal["draft", "active", "paused", "completed"]
STATUSES: tuple[str, ...] = ("draft", "active", "paused", "completed")


# ── Records ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Variant:
    id: str
    name: str
    weight: int                       # 0–100; an experiment's weights sum to 100
    config: dict[str, Any] | None = None


@dataclass(frozen=True)
class TargetingRule:
    type: str                         # "language" | "subscription" | "country" | "custom"
    operator: str                     # "equals" | "not_equals" | "in" | "not_in"
    value: Any = None


@dataclass
class Experiment:
    """
    A configured experiment. Variant order is part of the frozen
    configuration: it decides which variant owns each bucket range.
    """
    id: str
    name: str
    variants: list[Variant]
    start_date: int
    status: ExperimentStatus = "draft"
    end_date: int | None = None
    targeting_rules: list[TargetingRule] | None = None
    created_at: int = 0
    updated_at: int = 0

    def variant(self, variant_id: str) -> Variant | None:
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None


@dataclass(frozen=True)
class Assignment:
    """Durable (experiment, user) → variant record. Never overwritten."""
    experiment_id: str
    user_id: str
    variant_id: str
    assigned_at: int


@dataclass(frozen=True)
class ConversionEvent:
    """Append-only outcome; variant_id is copied from the assignment."""
    experiment_id: str
    user_id: str
    variant_id: str
    event_name: str
    timestamp: int
    value: float | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


# ── Serialization helpers ─────────────────────────────────────────────────────

def _variant_to_dict(v: Variant) -> dict[str, Any]:
    return {"id": v.id, "name": v.name, "weight": v.weight, "config": v.config}


def _variant_from_dict(d: dict[str, Any]) -> Variant:
    return Variant(
        id=d["id"],
        name=d.get("name", ""),
        weight=int(d.get("weight", 0)),
        config=d.get("config"),
    )


def _rule_to_dict(r: TargetingRule) -> dict[str, Any]:
    value = r.value
    # JSON has no set type; membership rules round-trip as lists.
    if isinstance(value, (set, frozenset, tuple)):
        value = list(value)
    return {"type": r.type, "operator": r.operator, "value": value}


def _rule_from_dict(d: dict[str, Any]) -> TargetingRule:
    return TargetingRule(type=d["type"], operator=d["operator"], value=d.get("value"))


# ── Provider protocol ─────────────────────────────────────────────────────────

@runtime_checkable
class ExperimentStore(Protocol):
    """Implement this protocol to back the engine with a new store."""

    async def get_experiment(self, experiment_id: str) -> Experiment | None: ...

    async def save_experiment(self, experiment: Experiment) -> None: ...

    async def delete_experiment(self, experiment_id: str) -> None: ...

    async def get_assignment(self, experiment_id: str, user_id: str) -> Assignment | None: ...

    async def save_assignment(self, assignment: Assignment) -> None:
        """
        Write an assignment keyed by (experiment_id, user_id). A second write
        for the same key must not fail; its content is identical because
        bucketing is deterministic.
        """
        ...

    async def list_assignments(
        self, experiment_id: str, limit: int | None = None
    ) -> list[Assignment]: ...

    async def list_user_assignments(
        self, user_id: str, limit: int | None = None
    ) -> list[Assignment]: ...

    async def append_conversion(self, event: ConversionEvent) -> None: ...

    async def list_conversions(
        self, experiment_id: str, limit: int | None = None
    ) -> list[ConversionEvent]: ...


def _limited(items: list, limit: int | None) -> list:
    return items if limit is None else items[:limit]


# ── Memory provider (tests / local dev) ───────────────────────────────────────

class MemoryExperimentStore:
    """
    Dict-backed store. Experiments are copied on the way in and out so
    callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._experiments: dict[str, Experiment] = {}
        self._assignments: dict[tuple[str, str], Assignment] = {}
        # experiment_id → events in append order
        self._conversions: dict[str, list[ConversionEvent]] = {}

    async def get_experiment(self, experiment_id: str) -> Experiment | None:
        experiment = self._experiments.get(experiment_id)
        return copy.deepcopy(experiment) if experiment is not None else None

    async def save_experiment(self, experiment: Experiment) -> None:
        self._experiments[experiment.id] = copy.deepcopy(experiment)

    async def delete_experiment(self, experiment_id: str) -> None:
        self._experiments.pop(experiment_id, None)

    async def get_assignment(self, experiment_id: str, user_id: str) -> Assignment | None:
        return self._assignments.get((experiment_id, user_id))

    async def save_assignment(self, assignment: Assignment) -> None:
        # First write wins, matching the SQL backend's primary-key behaviour
        self._assignments.setdefault((assignment.experiment_id, assignment.user_id), assignment)

    async def list_assignments(
        self, experiment_id: str, limit: int | None = None
    ) -> list[Assignment]:
        found = [a for a in self._assignments.values() if a.experiment_id == experiment_id]
        return _limited(sorted(found, key=lambda a: a.assigned_at), limit)

    async def list_user_assignments(
        self, user_id: str, limit: int | None = None
    ) -> list[Assignment]:
        found = [a for a in self._assignments.values() if a.user_id == user_id]
        return _limited(sorted(found, key=lambda a: a.assigned_at), limit)

    async def append_conversion(self, event: ConversionEvent) -> None:
        self._conversions.setdefault(event.experiment_id, []).append(event)

    async def list_conversions(
        self, experiment_id: str, limit: int | None = None
    ) -> list[ConversionEvent]:
        events = self._conversions.get(experiment_id, [])
        return _limited(sorted(events, key=lambda e: e.timestamp), limit)


# ── SQL provider ──────────────────────────────────────────────────────────────

class ExperimentRow(Base):
    __tablename__ = "experiments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), index=True)
    start_date: Mapped[int] = mapped_column(BigInteger)
    end_date: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    variants: Mapped[list] = mapped_column(JSON)
    targeting_rules: Mapped[list | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)


class AssignmentRow(Base):
    __tablename__ = "experiment_assignments"

    # Composite primary key enforces one assignment per (experiment, user)
    experiment_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), primary_key=True, index=True)
    variant_id: Mapped[str] = mapped_column(String(64))
    assigned_at: Mapped[int] = mapped_column(BigInteger)


class ConversionRow(Base):
    __tablename__ = "experiment_conversions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    experiment_id: Mapped[str] = mapped_column(String(64), index=True)
    user_id: Mapped[str] = mapped_column(String(255))
    variant_id: Mapped[str] = mapped_column(String(64))
    event_name: Mapped[str] = mapped_column(String(255))
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    timestamp: Mapped[int] = mapped_column(BigInteger)


def _experiment_from_row(row: ExperimentRow) -> Experiment:
    rules = row.targeting_rules
    return Experiment(
        id=row.id,
        name=row.name,
        variants=[_variant_from_dict(v) for v in row.variants],
        start_date=row.start_date,
        status=row.status,
        end_date=row.end_date,
        targeting_rules=[_rule_from_dict(r) for r in rules] if rules is not None else None,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _assignment_from_row(row: AssignmentRow) -> Assignment:
    return Assignment(
        experiment_id=row.experiment_id,
        user_id=row.user_id,
        variant_id=row.variant_id,
        assigned_at=row.assigned_at,
    )


def _conversion_from_row(row: ConversionRow) -> ConversionEvent:
    return ConversionEvent(
        id=row.id,
        experiment_id=row.experiment_id,
        user_id=row.user_id,
        variant_id=row.variant_id,
        event_name=row.event_name,
        value=row.value,
        timestamp=row.timestamp,
    )


class SQLExperimentStore:
    """
    Relational backend over SQLAlchemy's async ORM. Database errors other
    than the tolerated duplicate assignment insert propagate unchanged.
    """

    def __init__(self, engine: AsyncEngine | None = None) -> None:
        self._engine = engine or get_engine()
        self._factory = make_session_factory(self._engine)
        self._schema_ready = False

    async def create_schema(self) -> None:
        """Create the tables if missing. Runs implicitly before the first query."""
        await create_schema(self._engine)
        self._schema_ready = True

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        if not self._schema_ready:
            await self.create_schema()
        async with session_scope(self._factory) as session:
            yield session

    async def get_experiment(self, experiment_id: str) -> Experiment | None:
        async with self._session() as session:
            row = await session.get(ExperimentRow, experiment_id)
            return _experiment_from_row(row) if row is not None else None

    async def save_experiment(self, experiment: Experiment) -> None:
        rules = experiment.targeting_rules
        row = ExperimentRow(
            id=experiment.id,
            name=experiment.name,
            status=experiment.status,
            start_date=experiment.start_date,
            end_date=experiment.end_date,
            variants=[_variant_to_dict(v) for v in experiment.variants],
            targeting_rules=[_rule_to_dict(r) for r in rules] if rules is not None else None,
            created_at=experiment.created_at,
            updated_at=experiment.updated_at,
        )
        async with self._session() as session:
            await session.merge(row)

    async def delete_experiment(self, experiment_id: str) -> None:
        async with self._session() as session:
            await session.execute(
                delete(ExperimentRow).where(ExperimentRow.id == experiment_id)
            )

    async def get_assignment(self, experiment_id: str, user_id: str) -> Assignment | None:
        async with self._session() as session:
            row = await session.get(AssignmentRow, (experiment_id, user_id))
            return _assignment_from_row(row) if row is not None else None

    async def save_assignment(self, assignment: Assignment) -> None:
        try:
            async with self._session() as session:
                session.add(AssignmentRow(
                    experiment_id=assignment.experiment_id,
                    user_id=assignment.user_id,
                    variant_id=assignment.variant_id,
                    assigned_at=assignment.assigned_at,
                ))
        except IntegrityError:
            # Concurrent first-time assign for the same user already wrote it.
            log.info(
                "assignment.duplicate_write",
                experiment_id=assignment.experiment_id,
                user_id=assignment.user_id,
            )

    async def list_assignments(
        self, experiment_id: str, limit: int | None = None
    ) -> list[Assignment]:
        stmt = (
            select(AssignmentRow)
            .where(AssignmentRow.experiment_id == experiment_id)
            .order_by(AssignmentRow.assigned_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_assignment_from_row(r) for r in result.scalars().all()]

    async def list_user_assignments(
        self, user_id: str, limit: int | None = None
    ) -> list[Assignment]:
        stmt = (
            select(AssignmentRow)
            .where(AssignmentRow.user_id == user_id)
            .order_by(AssignmentRow.assigned_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_assignment_from_row(r) for r in result.scalars().all()]

    async def append_conversion(self, event: ConversionEvent) -> None:
        async with self._session() as session:
            session.add(ConversionRow(
                id=event.id,
                experiment_id=event.experiment_id,
                user_id=event.user_id,
                variant_id=event.variant_id,
                event_name=event.event_name,
                value=event.value,
                timestamp=event.timestamp,
            ))

    async def list_conversions(
        self, experiment_id: str, limit: int | None = None
    ) -> list[ConversionEvent]:
        stmt = (
            select(ConversionRow)
            .where(ConversionRow.experiment_id == experiment_id)
            .order_by(ConversionRow.timestamp)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [_conversion_from_row(r) for r in result.scalars().all()]


# ── Provider factory ──────────────────────────────────────────────────────────

_store: ExperimentStore | None = None


def _build_store() -> ExperimentStore:
    backend = get_config().store_backend
    if backend == "memory":
        return MemoryExperimentStore()
    if backend == "sql":
        return SQLExperimentStore()
    raise ConfigurationError(
        user_message=f"Unknown EXPERIMENTS_STORE_BACKEND: {backend!r}. Supported: memory, sql"
    )


def get_store() -> ExperimentStore:
    global _store
    if _store is None:
        _store = _build_store()
    return _store


def _reset_store() -> None:
    """For tests: reset the store so env changes take effect."""
    global _store
    _store = None


__all__ = [
    "ExperimentStatus", "STATUSES",
    "Variant", "TargetingRule", "Experiment", "Assignment", "ConversionEvent",
    "ExperimentStore", "MemoryExperimentStore", "SQLExperimentStore",
    "get_store",
]
