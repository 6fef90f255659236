"""Schema validation with pluggable failure strategies.

A :class:`Schema` resolves one validator object per rule when it is built, so
validating a record never dispatches on validator names. What happens when a
field fails is decided by :class:`ValidationStrategy`.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, TypeVar

from .error_codes import DataInconsistency, MissingRequiredField, ValidationError
from .logging_utils import _ranking_event
from .models import ClassTag
from .quarantine import ErrorAction, ErrorKind, ErrorRecord, QuarantineQueue, RepairResult

T = TypeVar("T")

SERVER_NAME_PATTERN = re.compile(r"^(ASIA|EU|SA|NA|INMENA)\d{3}$")


class ValidationStrategy(str, Enum):
    STRICT = "strict"
    LOG_ONLY = "log_only"
    DEFAULT = "default"
    NULL = "null"
    QUARANTINE = "quarantine"
    REPAIR = "repair"

    @classmethod
    def coerce(cls, value: "ValidationStrategy | str") -> "ValidationStrategy":
        if isinstance(value, ValidationStrategy):
            return value
        return cls(str(value).strip().lower().replace("-", "_"))


@dataclass(frozen=True)
class ValidationRule:
    field: str
    kind: str
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    allowed: Optional[tuple[Any, ...]] = None
    default: Any = None

    def constraints(self) -> Dict[str, Any]:
        names = ("min", "max", "min_length", "max_length", "allowed", "default")
        return {
            name: (list(getattr(self, name)) if name == "allowed" else getattr(self, name))
            for name in names
            if getattr(self, name) is not None
        }


class Validator:
    """Checks one field; subclasses implement ``check`` and may implement ``repair``."""

    kind = "base"

    def __init__(self, rule: ValidationRule) -> None:
        self.rule = rule

    def fail(self, message: str, value: Any) -> ValidationError:
        return ValidationError(
            f"{self.rule.field}: {message}",
            field=self.rule.field,
            value=value,
        )

    def check(self, value: Any) -> Any:
        return value

    def repair(self, value: Any) -> Any:
        raise self.fail("no deterministic repair available", value)


class IntegerValidator(Validator):
    kind = "integer"

    def _bounds(self, number: int, value: Any) -> int:
        if self.rule.min is not None and number < self.rule.min:
            raise self.fail(f"{number} is below minimum {self.rule.min}", value)
        if self.rule.max is not None and number > self.rule.max:
            raise self.fail(f"{number} is above maximum {self.rule.max}", value)
        return number

    def check(self, value: Any) -> int:
        if isinstance(value, bool):
            raise self.fail("expected an integer", value)
        if isinstance(value, int):
            return self._bounds(value, value)
        if isinstance(value, str) and re.fullmatch(r"\s*-?\d+\s*", value):
            return self._bounds(int(value), value)
        raise self.fail(f"expected an integer, got {value!r}", value)

    def repair(self, value: Any) -> int:
        if isinstance(value, float):
            number = int(value)
        else:
            digits = re.sub(r"[^\d.\-]", "", str(value))
            try:
                number = int(float(digits))
            except ValueError:
                raise self.fail(f"cannot coerce {value!r} to an integer", value) from None
        if self.rule.min is not None:
            number = max(number, int(self.rule.min))
        if self.rule.max is not None:
            number = min(number, int(self.rule.max))
        return number


class StringValidator(Validator):
    kind = "string"

    def check(self, value: Any) -> str:
        if not isinstance(value, str):
            raise self.fail(f"expected a string, got {type(value).__name__}", value)
        text = value.strip()
        if self.rule.min_length is not None and len(text) < self.rule.min_length:
            raise self.fail(f"shorter than {self.rule.min_length} characters", value)
        if self.rule.max_length is not None and len(text) > self.rule.max_length:
            raise self.fail(f"longer than {self.rule.max_length} characters", value)
        return text

    def repair(self, value: Any) -> str:
        text = str(value).strip()
        if self.rule.max_length is not None:
            text = text[: self.rule.max_length]
        if self.rule.min_length is not None and len(text) < self.rule.min_length:
            raise self.fail("too short to repair", value)
        return text


class EnumValidator(Validator):
    kind = "enum"

    def check(self, value: Any) -> Any:
        allowed = self.rule.allowed or ()
        if value not in allowed:
            raise self.fail(f"{value!r} is not one of {list(allowed)}", value)
        return value

    def repair(self, value: Any) -> Any:
        lowered = str(value).strip().lower()
        for option in self.rule.allowed or ():
            if str(option).lower() == lowered:
                return option
        raise self.fail(f"{value!r} has no case-insensitive match", value)


class JsonValidator(Validator):
    kind = "json"

    def check(self, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return value
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError as exc:
                raise self.fail(f"invalid JSON: {exc.msg}", value) from None
        raise self.fail(f"expected JSON, got {type(value).__name__}", value)

    def repair(self, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value.replace("'", '"'))
            except json.JSONDecodeError:
                pass
        raise self.fail("invalid JSON could not be re-parsed", value)


class RequiredValidator(Validator):
    kind = "required"

    def check(self, value: Any) -> Any:
        if value in ("", [], {}):
            raise self.fail("value is empty", value)
        return value


class ServerNameValidator(StringValidator):
    kind = "server_name"

    def check(self, value: Any) -> str:
        text = super().check(value)
        if not SERVER_NAME_PATTERN.match(text):
            raise self.fail(f"{text!r} is not a valid server name", value)
        return text

    def repair(self, value: Any) -> str:
        text = re.sub(r"\s+", "", str(value)).upper()
        if not SERVER_NAME_PATTERN.match(text):
            raise self.fail(f"{value!r} is not a valid server name", value)
        return text


class ClassTagValidator(Validator):
    kind = "class_tag"

    def check(self, value: Any) -> ClassTag:
        if isinstance(value, ClassTag):
            return value
        try:
            return ClassTag(value)
        except ValueError:
            raise self.fail(f"{value!r} is not a known class", value) from None

    def repair(self, value: Any) -> ClassTag:
        tag = ClassTag.coerce(value)
        if tag is ClassTag.UNKNOWN and str(value).strip().lower() != ClassTag.UNKNOWN.value:
            raise self.fail(f"{value!r} is not a known class", value)
        return tag


VALIDATOR_TYPES: Dict[str, type[Validator]] = {
    cls.kind: cls
    for cls in (
        IntegerValidator,
        StringValidator,
        EnumValidator,
        JsonValidator,
        RequiredValidator,
        ServerNameValidator,
        ClassTagValidator,
    )
}


class Schema:
    def __init__(self, name: str, rules: Sequence[ValidationRule]) -> None:
        self.name = name
        self.rules = tuple(rules)
        self.validators: tuple[Validator, ...] = tuple(self._resolve(rule) for rule in self.rules)

    @staticmethod
    def _resolve(rule: ValidationRule) -> Validator:
        try:
            return VALIDATOR_TYPES[rule.kind](rule)
        except KeyError:
            raise ValueError(f"Unknown validator kind {rule.kind!r} for field {rule.field!r}") from None


PLAYER_RANKING_SCHEMA = Schema(
    "player_ranking",
    [
        ValidationRule("rank", "integer", required=True, min=1, max=1000, default=999),
        ValidationRule(
            "character_name", "string", required=True, min_length=1, max_length=100, default="Unknown"
        ),
        ValidationRule("class_tag", "class_tag", default=ClassTag.UNKNOWN),
        ValidationRule("clan_name", "string", max_length=100, default=""),
        ValidationRule("power_score", "integer", required=True, min=0, max=10_000_000, default=0),
        ValidationRule("server_name", "server_name", default=""),
    ],
)

_SCORE_MAX = 5_000_000

CHARACTER_DETAILS_SCHEMA = Schema(
    "character_details",
    [
        ValidationRule("level", "integer", required=True, min=1, max=500, default=1),
        ValidationRule("prestige_level", "integer", min=0, max=100, default=0),
        ValidationRule("equipment_score", "integer", min=0, max=_SCORE_MAX, default=0),
        ValidationRule("spirit_score", "integer", min=0, max=_SCORE_MAX, default=0),
        ValidationRule("energy_score", "integer", min=0, max=_SCORE_MAX, default=0),
        ValidationRule("magical_stone_score", "integer", min=0, max=_SCORE_MAX, default=0),
        ValidationRule("codex_score", "integer", min=0, max=_SCORE_MAX, default=0),
        ValidationRule("trophy_score", "integer", min=0, max=_SCORE_MAX, default=0),
        ValidationRule("ethics", "integer", min=0, max=10_000, default=0),
        ValidationRule("achievements", "json", default=[]),
    ],
)


@dataclass
class ValidationOutcome:
    value: Dict[str, Any]
    invalid_fields: List[str] = field(default_factory=list)
    errors: List[ValidationError] = field(default_factory=list)
    quarantined: List[ErrorRecord] = field(default_factory=list)

    @property
    def has_validation_errors(self) -> bool:
        return bool(self.invalid_fields)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _error_kind(error: ValidationError) -> ErrorKind:
    if isinstance(error, MissingRequiredField):
        return ErrorKind.MISSING_FIELD
    if isinstance(error, DataInconsistency):
        return ErrorKind.INCONSISTENCY
    return ErrorKind.VALIDATION


def _quarantine_payload(schema: Schema, rule: ValidationRule, value: Any, record: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "schema": schema.name,
        "field": rule.field,
        "value": value if isinstance(value, (str, int, float, bool, list, dict, type(None))) else str(value),
        "constraints": {k: (v.value if isinstance(v, Enum) else v) for k, v in rule.constraints().items()},
        "record": {k: (v.value if isinstance(v, Enum) else v) for k, v in record.items()},
    }


def validate_record(
    record: Mapping[str, Any],
    schema: Schema = PLAYER_RANKING_SCHEMA,
    strategy: ValidationStrategy | str = ValidationStrategy.STRICT,
    *,
    quarantine: QuarantineQueue | None = None,
) -> ValidationOutcome:
    """Validate ``record`` against ``schema``.

    Raises :class:`ValidationError` under ``strict`` on the first violation and
    under ``log_only`` when a required field is missing (there is nothing to
    keep). Every other strategy returns an outcome listing the failed fields.
    """

    strategy = ValidationStrategy.coerce(strategy)
    result: Dict[str, Any] = dict(record)
    outcome = ValidationOutcome(value=result)

    for rule, validator in zip(schema.rules, schema.validators):
        raw = record.get(rule.field)
        error: ValidationError | None = None

        if _is_missing(raw):
            if rule.required:
                error = MissingRequiredField(
                    f"{rule.field}: required field is missing", field=rule.field, value=raw
                )
            else:
                result[rule.field] = rule.default
                continue
        else:
            try:
                result[rule.field] = validator.check(raw)
            except ValidationError as exc:
                error = exc

        if error is None:
            continue

        if strategy is ValidationStrategy.STRICT:
            raise error

        outcome.errors.append(error)
        outcome.invalid_fields.append(rule.field)

        if strategy is ValidationStrategy.LOG_ONLY:
            _ranking_event(
                "error",
                phase="validation",
                schema=schema.name,
                field=rule.field,
                error=str(error),
                strategy=strategy.value,
            )
            if isinstance(error, MissingRequiredField):
                raise error
            result[rule.field] = raw
        elif strategy is ValidationStrategy.DEFAULT:
            result[rule.field] = rule.default
        elif strategy is ValidationStrategy.NULL:
            result[rule.field] = None
        elif strategy is ValidationStrategy.QUARANTINE:
            result[rule.field] = rule.default
            _enqueue(outcome, quarantine, schema, rule, raw, record, error, ErrorAction.AUTO_FIX)
        elif strategy is ValidationStrategy.REPAIR:
            try:
                if _is_missing(raw):
                    raise error
                result[rule.field] = validator.repair(raw)
                _ranking_event(
                    "state",
                    phase="validation",
                    kind="repaired",
                    schema=schema.name,
                    field=rule.field,
                    value=raw,
                    repaired=result[rule.field],
                )
            except ValidationError:
                result[rule.field] = rule.default
                _enqueue(outcome, quarantine, schema, rule, raw, record, error, ErrorAction.QUARANTINE)

    return outcome


def _enqueue(
    outcome: ValidationOutcome,
    quarantine: QuarantineQueue | None,
    schema: Schema,
    rule: ValidationRule,
    raw: Any,
    record: Mapping[str, Any],
    error: ValidationError,
    action: ErrorAction,
) -> None:
    if quarantine is None:
        _ranking_event(
            "error",
            phase="validation",
            kind="no_quarantine",
            schema=schema.name,
            field=rule.field,
            error=str(error),
        )
        return
    entry = quarantine.enqueue(
        _error_kind(error),
        _quarantine_payload(schema, rule, raw, record),
        action=action,
        error=str(error),
        error_code=error.error_code,
        metadata={"schema": schema.name},
    )
    outcome.quarantined.append(entry)


@dataclass
class CollectionResult:
    items: List[Any]
    failed_count: int = 0
    flagged_count: int = 0
    errors: List[str] = field(default_factory=list)


def validate_collection(
    items: Iterable[Mapping[str, Any]],
    schema: Schema = PLAYER_RANKING_SCHEMA,
    strategy: ValidationStrategy | str = ValidationStrategy.QUARANTINE,
    *,
    quarantine: QuarantineQueue | None = None,
    factory: Callable[[ValidationOutcome], T] | None = None,
) -> CollectionResult:
    """Validate every item; items that raise are dropped and counted.

    Under ``strict`` the first failing item aborts the whole collection.
    ``factory`` turns each outcome into the caller's type; a ``ValueError`` or
    ``TypeError`` from it counts as a failed item.
    """

    strategy = ValidationStrategy.coerce(strategy)
    result = CollectionResult(items=[])
    for index, item in enumerate(items):
        try:
            outcome = validate_record(item, schema, strategy, quarantine=quarantine)
            built = factory(outcome) if factory is not None else outcome.value
        except (ValidationError, ValueError, TypeError) as exc:
            if strategy is ValidationStrategy.STRICT:
                raise
            result.failed_count += 1
            result.errors.append(f"item {index}: {exc}")
            continue
        if outcome.has_validation_errors:
            result.flagged_count += 1
        result.items.append(built)

    if result.failed_count or result.flagged_count:
        _ranking_event(
            "state",
            phase="validation",
            kind="collection",
            schema=schema.name,
            strategy=strategy.value,
            total=len(result.items) + result.failed_count,
            failed=result.failed_count,
            flagged=result.flagged_count,
        )
    return result


_MISSING_FIELD_DEFAULTS: Dict[str, Any] = {
    "rank": 999,
    "character_name": "Unknown",
    "class_tag": ClassTag.UNKNOWN.value,
    "power_score": 0,
    "level": 1,
}


def repair_error_record(record: ErrorRecord) -> RepairResult:
    """Default repair used when reprocessing ``auto_fix`` quarantine entries."""

    payload = record.payload
    field_name = payload.get("field")
    value = payload.get("value")
    constraints = payload.get("constraints") or {}

    if record.kind is ErrorKind.VALIDATION and field_name:
        if "min" in constraints or "max" in constraints:
            try:
                return RepairResult(success=True, value=float(str(value).replace(",", "")))
            except ValueError:
                pass
        max_length = constraints.get("max_length")
        if isinstance(value, str) and max_length is not None and len(value) > max_length:
            return RepairResult(success=True, value=value[:max_length])
        if isinstance(value, str) and "json" in record.error.lower():
            try:
                return RepairResult(success=True, value=json.loads(value.replace("'", '"')))
            except json.JSONDecodeError:
                pass
    elif record.kind is ErrorKind.MISSING_FIELD and field_name in _MISSING_FIELD_DEFAULTS:
        return RepairResult(success=True, value=_MISSING_FIELD_DEFAULTS[field_name])
    elif record.kind is ErrorKind.INCONSISTENCY:
        return RepairResult(success=False, error="data inconsistency cannot be repaired automatically")

    return RepairResult(
        success=False,
        error="automatic repair failed",
        next_action=ErrorAction.QUARANTINE,
    )


__all__ = [
    "ValidationStrategy",
    "ValidationRule",
    "Validator",
    "Schema",
    "PLAYER_RANKING_SCHEMA",
    "CHARACTER_DETAILS_SCHEMA",
    "ValidationOutcome",
    "CollectionResult",
    "validate_record",
    "validate_collection",
    "repair_error_record",
]
