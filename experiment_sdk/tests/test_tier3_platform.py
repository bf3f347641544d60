"""Tests for tier3_platform modules."""
from __future__ import annotations

import asyncio
import dataclasses
from collections import Counter

import pytest
from prometheus_client import REGISTRY

from experiment_sdk.tier0_core.errors import (
    ExperimentNotActive,
    ExperimentNotFound,
    InvalidExperimentDefinition,
    NotAssigned,
    TargetingRejected,
    ValidationError,
)
from experiment_sdk.tier0_core.metrics import default_label_values
from experiment_sdk.tier2_reliability.storage import (
    Assignment,
    ConversionEvent,
    Experiment,
    TargetingRule,
    Variant,
)
from experiment_sdk.tier3_platform.assignment import AssignmentManager
from experiment_sdk.tier3_platform.bucketing import bucket
from experiment_sdk.tier3_platform.conversions import ConversionRecorder
from experiment_sdk.tier3_platform.experiments import ExperimentRegistry, select_variant
from experiment_sdk.tier3_platform.results import ResultsAnalyzer, pick_winner, summarize
from experiment_sdk.tier3_platform.targeting import evaluate_rule, is_eligible


def _experiment(experiment_id="exp_292", weights=(50, 50), status="active", rules=None):
    ids = ["var_a", "var_b", "var_c", "var_d"]
    return Experiment(
        id=experiment_id,
        name="Checkout button colour",
        variants=[
            Variant(id=ids[i], name=ids[i].upper(), weight=w)
            for i, w in enumerate(weights)
        ],
        start_date=0,
        status=status,
        targeting_rules=rules,
    )


def _assignments(variant_id, count, experiment_id="exp_292"):
    return [
        Assignment(
            experiment_id=experiment_id,
            user_id=f"{variant_id}_user_{i}",
            variant_id=variant_id,
            assigned_at=i,
        )
        for i in range(count)
    ]


def _conversions(variant_id, count, value=None, experiment_id="exp_292"):
    return [
        ConversionEvent(
            experiment_id=experiment_id,
            user_id=f"{variant_id}_user_{i}",
            variant_id=variant_id,
            event_name="purchase",
            timestamp=i,
            value=value,
        )
        for i in range(count)
    ]


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, {**default_label_values(), **labels}) or 0.0


# ── bucketing ──────────────────────────────────────────────────────────────

class TestBucketing:
    @pytest.mark.parametrize("user_id, experiment_id, expected", [
        ("u1", "exp_292", 37),
        ("u2", "exp_292", 82),
        ("u1", "exp_123", 83),
        ("user_123", "exp_123", 81),
        ("user_456", "exp_checkout", 9),
        ("u2", "exp_checkout", 98),
    ])
    def test_known_buckets(self, user_id, experiment_id, expected):
        assert bucket(user_id, experiment_id) == expected

    def test_deterministic(self):
        assert bucket("user_123", "exp_123") == bucket("user_123", "exp_123")

    def test_argument_order_matters(self):
        assert bucket("u1", "exp_292") != bucket("exp_292", "u1")

    def test_range(self):
        assert all(0 <= bucket(f"user_{i}", "exp_range") < 100 for i in range(1000))


# ── targeting ──────────────────────────────────────────────────────────────

class TestTargeting:
    def test_no_rules_means_eligible(self):
        assert is_eligible({}, None)
        assert is_eligible(None, [])

    def test_equals(self):
        rule = TargetingRule(type="language", operator="equals", value="en")
        assert evaluate_rule(rule, {"language": "en"})
        assert not evaluate_rule(rule, {"language": "fr"})
        assert not evaluate_rule(rule, {})

    def test_not_equals_passes_when_attribute_missing(self):
        rule = TargetingRule(type="subscription", operator="not_equals", value="free")
        assert evaluate_rule(rule, {})
        assert not evaluate_rule(rule, {"subscription": "free"})

    def test_in_and_not_in(self):
        in_rule = TargetingRule(type="country", operator="in", value=["US", "CA"])
        not_in_rule = TargetingRule(type="country", operator="not_in", value=["US", "CA"])
        assert evaluate_rule(in_rule, {"country": "US"})
        assert not evaluate_rule(in_rule, {"country": "FR"})
        assert evaluate_rule(not_in_rule, {"country": "FR"})
        assert not evaluate_rule(not_in_rule, {"country": "CA"})

    def test_in_with_non_list_value_fails_closed(self):
        assert not evaluate_rule(TargetingRule("country", "in", "US"), {"country": "US"})
        assert not evaluate_rule(TargetingRule("country", "not_in", "US"), {"country": "FR"})

    def test_unknown_operator_fails_closed(self):
        assert not evaluate_rule(TargetingRule("country", "starts_with", "U"), {"country": "US"})

    def test_boolean_never_equals_number(self):
        rule = TargetingRule(type="custom", operator="equals", value=1)
        assert not evaluate_rule(rule, {"custom": True})
        assert not evaluate_rule(TargetingRule("custom", "in", [0, 1]), {"custom": False})
        assert evaluate_rule(TargetingRule("custom", "equals", True), {"custom": True})

    def test_rules_are_anded(self):
        rules = [
            TargetingRule(type="country", operator="in", value=["US"]),
            TargetingRule(type="subscription", operator="equals", value="premium"),
        ]
        assert is_eligible({"country": "US", "subscription": "premium"}, rules)
        assert not is_eligible({"country": "US", "subscription": "free"}, rules)


# ── variant selection ──────────────────────────────────────────────────────

class TestSelectVariant:
    def test_cumulative_weights(self):
        experiment = _experiment()
        assert select_variant("u1", experiment).id == "var_a"   # bucket 37
        assert select_variant("u2", experiment).id == "var_b"   # bucket 82

    def test_variant_order_decides_ownership(self):
        experiment = _experiment()
        experiment.variants.reverse()
        assert select_variant("u1", experiment).id == "var_b"
        assert select_variant("u2", experiment).id == "var_a"

    def test_falls_back_to_first_variant_when_weights_short(self):
        experiment = _experiment("exp_checkout", weights=(45, 45))
        assert bucket("u2", "exp_checkout") == 98
        assert select_variant("u2", experiment).id == "var_a"

    def test_zero_weight_variant_never_selected(self):
        experiment = _experiment(weights=(0, 100))
        assert {select_variant(f"user_{i}", experiment).id for i in range(500)} == {"var_b"}

    @pytest.mark.parametrize("weights", [(50, 50), (20, 30, 50)])
    def test_split_proportions(self, weights):
        experiment = _experiment("exp_split", weights=weights)
        n = 10_000
        counts = Counter(select_variant(f"user_{i}", experiment).id for i in range(n))
        for variant in experiment.variants:
            assert counts[variant.id] / n == pytest.approx(variant.weight / 100, abs=0.02)


# ── experiment registry ────────────────────────────────────────────────────

class TestExperimentRegistry:
    @pytest.mark.asyncio
    async def test_create_persists_draft(self, memory_store, frozen_clock, make_definition):
        registry = ExperimentRegistry(memory_store, frozen_clock)
        experiment_id = await registry.create_experiment(make_definition())

        experiment = await registry.get_experiment(experiment_id)
        assert experiment.status == "draft"
        assert experiment.created_at == experiment.updated_at == frozen_clock.timestamp_ms()
        assert [v.id for v in experiment.variants] == ["var_a", "var_b"]

    @pytest.mark.asyncio
    async def test_create_generates_unique_ids(self, memory_store, make_definition):
        registry = ExperimentRegistry(memory_store)
        first = await registry.create_experiment(make_definition())
        second = await registry.create_experiment(make_definition())
        assert first != second

    @pytest.mark.asyncio
    async def test_create_keeps_targeting_rules(self, memory_store, make_definition):
        registry = ExperimentRegistry(memory_store)
        rules = [{"type": "country", "operator": "in", "value": ["US"]}]
        experiment_id = await registry.create_experiment(make_definition(targeting_rules=rules))
        experiment = await registry.get_experiment(experiment_id)
        assert experiment.targeting_rules == [TargetingRule("country", "in", ["US"])]

    @pytest.mark.asyncio
    async def test_create_rejects_bad_weights(self, memory_store, make_definition):
        registry = ExperimentRegistry(memory_store)
        variants = [
            {"id": "var_a", "name": "A", "weight": 50},
            {"id": "var_b", "name": "B", "weight": 40},
        ]
        with pytest.raises(InvalidExperimentDefinition):
            await registry.create_experiment(make_definition(variants=variants))
        assert memory_store._experiments == {}

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, memory_store):
        with pytest.raises(ExperimentNotFound):
            await ExperimentRegistry(memory_store).get_experiment("missing")

    @pytest.mark.asyncio
    async def test_update_status(self, memory_store, make_definition):
        from experiment_sdk.tier1_runtime.clock import Clock

        experiment_id = await ExperimentRegistry(memory_store, Clock.at_ms(1_000)).create_experiment(
            make_definition()
        )
        registry = ExperimentRegistry(memory_store, Clock.at_ms(2_000))
        updated = await registry.update_status(experiment_id, "active")

        assert updated.status == "active"
        assert updated.updated_at == 2_000
        assert updated.created_at == 1_000
        assert (await registry.get_experiment(experiment_id)).status == "active"

    @pytest.mark.asyncio
    async def test_any_transition_allowed(self, memory_store, make_definition):
        registry = ExperimentRegistry(memory_store)
        experiment_id = await registry.create_experiment(make_definition(status="completed"))
        assert (await registry.update_status(experiment_id, "draft")).status == "draft"

    @pytest.mark.asyncio
    async def test_update_unknown_status_rejected(self, memory_store, make_definition):
        registry = ExperimentRegistry(memory_store)
        experiment_id = await registry.create_experiment(make_definition())
        with pytest.raises(ValidationError) as exc_info:
            await registry.update_status(experiment_id, "archived")
        assert "status" in exc_info.value.fields

    @pytest.mark.asyncio
    async def test_update_missing_experiment(self, memory_store):
        with pytest.raises(ExperimentNotFound):
            await ExperimentRegistry(memory_store).update_status("missing", "active")


# ── assignment ─────────────────────────────────────────────────────────────

class TestAssignment:
    @pytest.mark.asyncio
    async def test_assigns_by_bucket(self, memory_store, frozen_clock):
        await memory_store.save_experiment(_experiment())
        manager = AssignmentManager(memory_store, frozen_clock)

        first = await manager.assign("u1", "exp_292")
        second = await manager.assign("u2", "exp_292")

        assert first.variant_id == "var_a"
        assert second.variant_id == "var_b"
        assert first.assigned_at == frozen_clock.timestamp_ms()
        assert await memory_store.get_assignment("exp_292", "u1") == first

    @pytest.mark.asyncio
    async def test_existing_assignment_survives_weight_change(self, memory_store):
        await memory_store.save_experiment(_experiment())
        manager = AssignmentManager(memory_store)
        original = await manager.assign("u1", "exp_292")

        edited = _experiment(weights=(10, 90))
        await memory_store.save_experiment(edited)
        assert select_variant("u1", edited).id == "var_b"

        again = await manager.assign("u1", "exp_292")
        assert again == original
        assert again.variant_id == "var_a"

    @pytest.mark.asyncio
    async def test_existing_assignment_returned_after_pause(self, memory_store):
        await memory_store.save_experiment(_experiment())
        manager = AssignmentManager(memory_store)
        original = await manager.assign("u1", "exp_292")

        await memory_store.save_experiment(_experiment(status="paused"))
        assert await manager.assign("u1", "exp_292") == original
        with pytest.raises(ExperimentNotActive):
            await manager.assign("u2", "exp_292")

    @pytest.mark.asyncio
    async def test_existing_assignment_returned_after_delete(self, memory_store):
        await memory_store.save_experiment(_experiment())
        manager = AssignmentManager(memory_store)
        original = await manager.assign("u1", "exp_292")
        await memory_store.delete_experiment("exp_292")
        assert await manager.assign("u1", "exp_292") == original

    @pytest.mark.asyncio
    async def test_missing_experiment(self, memory_store):
        with pytest.raises(ExperimentNotFound):
            await AssignmentManager(memory_store).assign("u1", "missing")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["draft", "paused", "completed"])
    async def test_inactive_experiment_rejects_new_users(self, memory_store, status):
        await memory_store.save_experiment(_experiment(status=status))
        with pytest.raises(ExperimentNotActive) as exc_info:
            await AssignmentManager(memory_store).assign("u1", "exp_292")
        assert exc_info.value.status == status
        assert await memory_store.get_assignment("exp_292", "u1") is None

    @pytest.mark.asyncio
    async def test_targeting_rejection_writes_nothing(self, memory_store):
        rules = [TargetingRule(type="country", operator="in", value=["US", "CA"])]
        await memory_store.save_experiment(_experiment(rules=rules))
        manager = AssignmentManager(memory_store)

        with pytest.raises(TargetingRejected):
            await manager.assign("u1", "exp_292", {"country": "FR"})
        with pytest.raises(TargetingRejected):
            await manager.assign("u1", "exp_292")
        assert await memory_store.get_assignment("exp_292", "u1") is None

        assignment = await manager.assign("u1", "exp_292", {"country": "CA"})
        assert assignment.variant_id == "var_a"

    @pytest.mark.asyncio
    async def test_concurrent_first_assign(self, memory_store):
        await memory_store.save_experiment(_experiment())
        manager = AssignmentManager(memory_store)

        results = await asyncio.gather(*(manager.assign("u2", "exp_292") for _ in range(5)))

        assert {a.variant_id for a in results} == {"var_b"}
        assert len(await memory_store.list_assignments("exp_292")) == 1

    @pytest.mark.asyncio
    async def test_outcomes_counted(self, memory_store):
        await memory_store.save_experiment(_experiment("exp_metrics"))
        manager = AssignmentManager(memory_store)
        created = _sample("experiment_assignments_total", experiment_id="exp_metrics", outcome="created")
        existing = _sample("experiment_assignments_total", experiment_id="exp_metrics", outcome="existing")

        await manager.assign("u1", "exp_metrics")
        await manager.assign("u1", "exp_metrics")

        assert _sample(
            "experiment_assignments_total", experiment_id="exp_metrics", outcome="created"
        ) == created + 1
        assert _sample(
            "experiment_assignments_total", experiment_id="exp_metrics", outcome="existing"
        ) == existing + 1

    @pytest.mark.asyncio
    async def test_list_user_assignments(self, memory_store):
        from experiment_sdk.tier1_runtime.clock import ManualClock

        clock = ManualClock(start_ms=1_000)
        manager = AssignmentManager(memory_store, clock)
        for experiment_id in ("exp_292", "exp_123", "exp_checkout"):
            await memory_store.save_experiment(_experiment(experiment_id))
            await manager.assign("u1", experiment_id)
            clock.advance()

        found = await manager.list_user_assignments("u1")
        assert [a.experiment_id for a in found] == ["exp_292", "exp_123", "exp_checkout"]
        assert [a.assigned_at for a in found] == [1_000, 1_001, 1_002]
        assert len(await manager.list_user_assignments("u1", limit=1)) == 1
        assert await manager.list_user_assignments("nobody") == []


# ── conversions ────────────────────────────────────────────────────────────

class TestConversions:
    @pytest.mark.asyncio
    async def test_unassigned_user_rejected(self, memory_store):
        await memory_store.save_experiment(_experiment())
        with pytest.raises(NotAssigned):
            await ConversionRecorder(memory_store).record_conversion("u1", "exp_292", "purchase")
        assert await memory_store.list_conversions("exp_292") == []

    @pytest.mark.asyncio
    async def test_unassigned_user_rejected_before_input_checks(self, memory_store):
        await memory_store.save_experiment(_experiment())
        with pytest.raises(NotAssigned):
            await ConversionRecorder(memory_store).record_conversion("nobody", "exp_292", "")

    @pytest.mark.asyncio
    async def test_records_assigned_variant(self, memory_store, frozen_clock):
        await memory_store.save_experiment(_experiment())
        await AssignmentManager(memory_store).assign("u2", "exp_292")
        recorder = ConversionRecorder(memory_store, frozen_clock)

        event = await recorder.record_conversion("u2", "exp_292", "purchase", 19.99)

        assert event.variant_id == "var_b"
        assert event.value == 19.99
        assert event.timestamp == frozen_clock.timestamp_ms()
        assert await memory_store.list_conversions("exp_292") == [event]

    @pytest.mark.asyncio
    async def test_multiple_events_per_user_all_kept(self, memory_store):
        await memory_store.save_experiment(_experiment())
        await AssignmentManager(memory_store).assign("u1", "exp_292")
        recorder = ConversionRecorder(memory_store)

        await recorder.record_conversion("u1", "exp_292", "purchase")
        await recorder.record_conversion("u1", "exp_292", "purchase")
        assert len(await memory_store.list_conversions("exp_292")) == 2

    @pytest.mark.asyncio
    async def test_assignment_untouched(self, memory_store):
        await memory_store.save_experiment(_experiment())
        assignment = await AssignmentManager(memory_store).assign("u1", "exp_292")
        await ConversionRecorder(memory_store).record_conversion("u1", "exp_292", "signup")
        assert await memory_store.get_assignment("exp_292", "u1") == assignment

    @pytest.mark.asyncio
    async def test_empty_event_name_rejected(self, memory_store):
        await memory_store.save_experiment(_experiment())
        await AssignmentManager(memory_store).assign("u1", "exp_292")
        with pytest.raises(ValidationError):
            await ConversionRecorder(memory_store).record_conversion("u1", "exp_292", "")


# ── results ────────────────────────────────────────────────────────────────

class TestResults:
    def test_winner_with_capped_confidence(self):
        results = summarize(
            _experiment(),
            _assignments("var_a", 40) + _assignments("var_b", 35),
            _conversions("var_a", 10) + _conversions("var_b", 21),
        )
        a, b = results.variants
        assert (a.total_users, a.conversions) == (40, 10)
        assert a.conversion_rate == pytest.approx(25.0)
        assert b.conversion_rate == pytest.approx(60.0)
        assert results.winner == "var_b"
        assert results.confidence_level == 95

    def test_confidence_below_cap(self):
        results = summarize(
            _experiment(),
            _assignments("var_a", 50) + _assignments("var_b", 50),
            _conversions("var_a", 20) + _conversions("var_b", 25),
        )
        assert results.winner == "var_b"
        assert results.confidence_level == pytest.approx(70.0)

    def test_no_winner_below_minimum_users(self):
        results = summarize(
            _experiment(),
            _assignments("var_a", 29) + _assignments("var_b", 100),
            _conversions("var_a", 20) + _conversions("var_b", 5),
        )
        assert results.winner is None
        assert results.confidence_level is None

    def test_zero_top_rate_gives_base_confidence(self):
        results = summarize(
            _experiment(),
            _assignments("var_a", 30) + _assignments("var_b", 30),
            [],
        )
        assert results.winner == "var_a"
        assert results.confidence_level == 50

    def test_tie_keeps_declared_order(self):
        results = summarize(
            _experiment(weights=(40, 30, 30)),
            _assignments("var_a", 40) + _assignments("var_b", 40) + _assignments("var_c", 40),
            _conversions("var_a", 4) + _conversions("var_b", 8) + _conversions("var_c", 8),
        )
        assert results.winner == "var_b"
        assert results.confidence_level == 50

    def test_zero_user_variant_reported_with_zero_rate(self):
        results = summarize(
            _experiment(weights=(50, 50)),
            _assignments("var_a", 3),
            _conversions("var_b", 1, value=5.0),
        )
        b = results.variants[1]
        assert b.total_users == 0
        assert b.conversions == 1
        assert b.conversion_rate == 0
        assert b.average_value == 0

    def test_average_uses_valued_events_only(self):
        events = _conversions("var_a", 1, value=10.0) + _conversions("var_a", 1, value=20.0)
        events += _conversions("var_a", 1)
        results = summarize(_experiment(), _assignments("var_a", 2), events)
        a = results.variants[0]
        assert a.conversions == 3
        assert a.average_value == pytest.approx(15.0)
        assert a.conversion_rate == pytest.approx(150.0)

    def test_unknown_variant_records_ignored(self):
        results = summarize(
            _experiment(),
            _assignments("var_a", 2) + _assignments("var_zzz", 5),
            _conversions("var_zzz", 3),
        )
        assert [m.variant_id for m in results.variants] == ["var_a", "var_b"]
        assert sum(m.total_users for m in results.variants) == 2
        assert sum(m.conversions for m in results.variants) == 0

    def test_pick_winner_needs_two_qualifying_variants(self):
        results = summarize(_experiment(), _assignments("var_a", 100), [])
        assert pick_winner(results.variants) == (None, None)

    @pytest.mark.asyncio
    async def test_compute_results_from_store(self, memory_store):
        await memory_store.save_experiment(_experiment())
        for a in _assignments("var_a", 40) + _assignments("var_b", 35):
            await memory_store.save_assignment(a)
        for e in _conversions("var_a", 10) + _conversions("var_b", 21):
            await memory_store.append_conversion(e)
        timed = _sample("experiment_results_seconds_count")

        results = await ResultsAnalyzer(memory_store).compute_results("exp_292")

        assert results.experiment_id == "exp_292"
        assert results.winner == "var_b"
        assert results.confidence_level == 95
        assert _sample("experiment_results_seconds_count") == timed + 1

    @pytest.mark.asyncio
    async def test_compute_results_empty_experiment(self, memory_store):
        await memory_store.save_experiment(_experiment())
        results = await ResultsAnalyzer(memory_store).compute_results("exp_292")
        assert [m.total_users for m in results.variants] == [0, 0]
        assert results.winner is None

    @pytest.mark.asyncio
    async def test_compute_results_missing_experiment(self, memory_store):
        with pytest.raises(ExperimentNotFound):
            await ResultsAnalyzer(memory_store).compute_results("missing")

    def test_metrics_are_plain_dataclasses(self):
        results = summarize(_experiment(), [], [])
        assert dataclasses.asdict(results)["variants"][0]["variant_name"] == "VAR_A"
