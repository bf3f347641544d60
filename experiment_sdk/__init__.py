"""
experiment_sdk
──────────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from experiment_sdk.tier0_core.logging import get_logger, configure_logging
from experiment_sdk.tier0_core.errors import (
    ExperimentError,
    ValidationError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    ConfigurationError,
    ExperimentNotFound,
    ExperimentNotActive,
    TargetingRejected,
    NotAssigned,
    InvalidExperimentDefinition,
)
from experiment_sdk.tier0_core.config import get_config, ExperimentsConfig

from experiment_sdk.tier1_runtime.clock import Clock, ManualClock, get_clock, set_clock
from experiment_sdk.tier1_runtime.validate import ExperimentInput, validate_experiment

from experiment_sdk.tier2_reliability.storage import (
    Variant,
    TargetingRule,
    Experiment,
    Assignment,
    ConversionEvent,
    ExperimentStore,
    MemoryExperimentStore,
    SQLExperimentStore,
    get_store,
)

from experiment_sdk.tier3_platform.bucketing import bucket
from experiment_sdk.tier3_platform.targeting import is_eligible
from experiment_sdk.tier3_platform.experiments import select_variant, ExperimentRegistry
from experiment_sdk.tier3_platform.assignment import AssignmentManager
from experiment_sdk.tier3_platform.conversions import ConversionRecorder
from experiment_sdk.tier3_platform.results import (
    VariantMetrics,
    ExperimentResults,
    ResultsAnalyzer,
    summarize,
    pick_winner,
)

from experiment_sdk.service import ExperimentService

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger", "configure_logging",
    # errors
    "ExperimentError", "ValidationError", "NotFoundError", "ForbiddenError",
    "ConflictError", "ConfigurationError",
    "ExperimentNotFound", "ExperimentNotActive", "TargetingRejected",
    "NotAssigned", "InvalidExperimentDefinition",
    # config
    "get_config", "ExperimentsConfig",
    # clock
    "Clock", "ManualClock", "get_clock", "set_clock",
    # validate
    "ExperimentInput", "validate_experiment",
    # storage
    "Variant", "TargetingRule", "Experiment", "Assignment", "ConversionEvent",
    "ExperimentStore", "MemoryExperimentStore", "SQLExperimentStore", "get_store",
    # engine
    "bucket", "is_eligible", "select_variant",
    "ExperimentRegistry", "AssignmentManager", "ConversionRecorder",
    "VariantMetrics", "ExperimentResults", "ResultsAnalyzer",
    "summarize", "pick_winner",
    # facade
    "ExperimentService",
]
