"""フラグ値・スケジュール・JSON スキーマの検証"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

import jsonschema

from .exceptions import EntitlementRequiredError, FlagValidationError
from .models import Flag, JsonSchemaSettings, ScheduleRule, ValueType
from .organization import Entitlements, OrganizationSettings

_NUMBER_RE = re.compile(r"^-?(\d+(\.\d+)?|\.\d+)([eE][-+]?\d+)?$")


def validate_flag_value(flag: Flag, value: Any, label: str = "Value") -> str:
    """値を flag の型 (とスキーマ) に照らして検証し、保存形式の文字列を返す。

    Raises:
        FlagValidationError: 型またはスキーマに適合しない
    """
    if flag.value_type == ValueType.BOOLEAN:
        if isinstance(value, bool):
            return "true" if value else "false"
        text = str(value).strip().lower()
        if text not in ("true", "false"):
            raise FlagValidationError(f"{label} must be true or false, got {value!r}")
        return text

    if flag.value_type == ValueType.NUMBER:
        if isinstance(value, bool):
            raise FlagValidationError(f"{label} must be a number, got {value!r}")
        text = str(value).strip()
        if not _NUMBER_RE.match(text):
            raise FlagValidationError(f"{label} must be a number, got {value!r}")
        return text

    if flag.value_type == ValueType.JSON:
        if isinstance(value, str):
            try:
                parsed = json.loads(value)
            except ValueError as e:
                raise FlagValidationError(f"{label} must be valid JSON", cause=e) from e
            text = value
        else:
            parsed = value
            text = json.dumps(value)
        _validate_against_schema(flag, parsed, label)
        return text

    if not isinstance(value, str):
        raise FlagValidationError(f"{label} must be a string, got {value!r}")
    return value


def _validate_against_schema(flag: Flag, parsed: Any, label: str) -> None:
    if flag.json_schema is None or not flag.json_schema.enabled:
        return
    try:
        schema = json.loads(flag.json_schema.schema)
        jsonschema.validate(parsed, schema)
    except jsonschema.ValidationError as e:
        raise FlagValidationError(f"{label} does not match the JSON schema: {e.message}", cause=e) from e
    except (ValueError, jsonschema.SchemaError) as e:
        raise FlagValidationError(f"JSON schema of feature '{flag.id}' is invalid", cause=e) from e


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 文字列を解釈する。タイムゾーンなしは UTC とみなす。"""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def validate_schedule_rules(rules: tuple[ScheduleRule, ...]) -> None:
    """スケジュールの各時刻が有効で、時系列順に並んでいることを検証する。"""
    previous: datetime | None = None
    for rule in rules:
        if rule.timestamp is None:
            continue
        try:
            current = parse_timestamp(rule.timestamp)
        except ValueError as e:
            raise FlagValidationError(f"Invalid Date: {rule.timestamp}", cause=e) from e
        if previous is not None and current <= previous:
            raise FlagValidationError(
                f"Schedule timestamps must be in ascending order: {rule.timestamp}"
            )
        previous = current


def parse_json_schema(settings: OrganizationSettings, text: str) -> JsonSchemaSettings:
    """JSON スキーマ文字列を検証して保存形式に変換する。"""
    if not settings.has_entitlement(Entitlements.JSON_VALIDATION):
        raise EntitlementRequiredError(
            Entitlements.JSON_VALIDATION,
            "This organization does not have access to JSON schema validation. "
            "Upgrade to Enterprise.",
        )
    try:
        schema = json.loads(text)
    except ValueError as e:
        raise FlagValidationError("jsonSchema must be valid JSON", cause=e) from e
    if not isinstance(schema, dict):
        raise FlagValidationError("jsonSchema must be a JSON object")
    try:
        jsonschema.validators.validator_for(schema).check_schema(schema)
    except jsonschema.SchemaError as e:
        raise FlagValidationError(f"jsonSchema is not a valid JSON schema: {e.message}", cause=e) from e
    return JsonSchemaSettings(schema=text, enabled=True, date=datetime.now(UTC))
