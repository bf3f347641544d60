"""
experiment_sdk test configuration.

All tests run against the in-memory store by default; no database or other
external service is required. SQL backend tests build their own engine on
a temporary SQLite file.
"""
from __future__ import annotations

import os

import pytest

# ── Force in-memory backends for all tests ────────────────────────────────
# These must be set before any experiment_sdk modules are imported.

os.environ.setdefault("EXPERIMENTS_STORE_BACKEND", "memory")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_NAME", "experiments-test")
os.environ.setdefault("EXPERIMENTS_LOG_FORMAT", "console")
os.environ.setdefault("EXPERIMENTS_LOG_LEVEL", "DEBUG")


FROZEN_MS = 1_700_000_000_000


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_module_singletons():
    """
    Reset cached singletons between tests so each test gets a fresh store,
    config and clock with no state bleed.
    """
    import experiment_sdk.tier0_core.config as _config
    import experiment_sdk.tier0_core.data as _data
    import experiment_sdk.tier1_runtime.clock as _clock
    import experiment_sdk.tier2_reliability.storage as _storage

    orig_clock = _clock.get_clock()

    yield

    _storage._reset_store()
    _data._reset()
    _config._reset_config()
    _clock.set_clock(orig_clock)


@pytest.fixture
def frozen_clock():
    """A Clock pinned at FROZEN_MS."""
    from experiment_sdk.tier1_runtime.clock import Clock
    return Clock.at_ms(FROZEN_MS)


@pytest.fixture
def memory_store():
    """Return a fresh MemoryExperimentStore."""
    from experiment_sdk.tier2_reliability.storage import MemoryExperimentStore
    return MemoryExperimentStore()


@pytest.fixture
def service(memory_store, frozen_clock):
    """ExperimentService over a fresh memory store and a frozen clock."""
    from experiment_sdk.service import ExperimentService
    return ExperimentService(store=memory_store, clock=frozen_clock)


def _definition(**overrides):
    definition = {
        "name": "Checkout button colour",
        "start_date": FROZEN_MS,
        "variants": [
            {"id": "var_a", "name": "Control", "weight": 50},
            {"id": "var_b", "name": "Green button", "weight": 50},
        ],
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def make_definition():
    """Factory for a valid two-variant 50/50 experiment definition."""
    return _definition
