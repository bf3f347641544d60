"""
experiment_sdk.tier1_runtime.validate
──────────────────────────────────────
Input validation via Pydantic v2. Raises engine errors (never raw Pydantic
errors) so callers always see the same error taxonomy.

Experiment definitions are validated here, at creation time, so a bad
weight table can never reach live traffic.
"""
from __future__ import annotations

from typing import Any, Literal, Type, TypeVar

from pydantic import (
    BaseModel,
    Field,
    StrictInt,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from experiment_sdk.tier0_core.errors import InvalidExperimentDefinition, ValidationError

T = TypeVar("T", bound=BaseModel)

WEIGHT_TOTAL = 100
WEIGHT_SUM_MESSAGE = "Variant weights must sum to 100"


# ── Input models ──────────────────────────────────────────────────────────────

class VariantInput(BaseModel):
    id: str = Field(min_length=1)
    name: str
    weight: StrictInt = Field(ge=0, le=WEIGHT_TOTAL)
    config: dict[str, Any] | None = None


class TargetingRuleInput(BaseModel):
    type: Literal["language", "subscription", "country", "custom"]
    operator: Literal["equals", "not_equals", "in", "not_in"]
    value: Any = None

    @field_validator("value")
    @classmethod
    def listify_collections(cls, v: Any) -> Any:
        # Stored as JSON, which has no set type.
        if isinstance(v, (set, frozenset, tuple)):
            return list(v)
        return v


class ExperimentInput(BaseModel):
    """Definition accepted by experiment creation."""

    name: str = Field(min_length=3)
    variants: list[VariantInput] = Field(min_length=2)
    start_date: int
    end_date: int | None = None
    status: Literal["draft", "active", "paused", "completed"] = "draft"
    targeting_rules: list[TargetingRuleInput] | None = None

    @model_validator(mode="after")
    def check_variants(self) -> "ExperimentInput":
        ids = [v.id for v in self.variants]
        if len(ids) != len(set(ids)):
            raise ValueError("Variant ids must be unique")
        if sum(v.weight for v in self.variants) != WEIGHT_TOTAL:
            raise ValueError(WEIGHT_SUM_MESSAGE)
        return self


class ConversionInput(BaseModel):
    event_name: str = Field(min_length=1)
    value: float | None = None


# ── Validation helpers ────────────────────────────────────────────────────────

def _field_errors(exc: PydanticValidationError) -> dict[str, str]:
    return {
        ".".join(str(loc) for loc in err["loc"]) or "__root__": err["msg"]
        for err in exc.errors()
    }


def validate_input(model: Type[T], data: Any) -> T:
    """
    Validate raw data against a Pydantic model.
    Raises the engine's ValidationError (not Pydantic's) on failure.
    """
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            user_message="Request validation failed.",
            fields=_field_errors(exc),
        ) from exc


def validate_experiment(data: ExperimentInput | dict[str, Any]) -> ExperimentInput:
    """
    Validate an experiment definition.

    Usage:
        definition = validate_experiment({
            "name": "Button colour",
            "start_date": 1700000000000,
            "variants": [
                {"id": "var_a", "name": "Blue", "weight": 50},
                {"id": "var_b", "name": "Green", "weight": 50},
            ],
        })
    """
    if isinstance(data, ExperimentInput):
        data = data.model_dump()
    try:
        return ExperimentInput.model_validate(data)
    except PydanticValidationError as exc:
        fields = _field_errors(exc)
        message = "Invalid experiment definition."
        if any(WEIGHT_SUM_MESSAGE in m for m in fields.values()):
            message = WEIGHT_SUM_MESSAGE
        raise InvalidExperimentDefinition(user_message=message, fields=fields) from exc


__all__ = [
    "VariantInput", "TargetingRuleInput", "ExperimentInput", "ConversionInput",
    "validate_input", "validate_experiment",
]
