"""部分更新リクエストのモデル

各フィールドは「省略」「明示的なクリア(null)」「新しい値」の三状態を持つ。
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Generic, TypeVar

from .exceptions import FlagValidationError
from .models import Prerequisite, Rule, rule_from_dict

T = TypeVar("T")


class FieldState(StrEnum):
    """パッチフィールドの状態。"""

    OMITTED = "omitted"
    CLEARED = "cleared"
    SET = "set"


@dataclass(frozen=True)
class PatchField(Generic[T]):
    """三状態のパッチフィールド。"""

    state: FieldState = FieldState.OMITTED
    value: T | None = None

    @classmethod
    def omitted(cls) -> PatchField[T]:
        return cls(FieldState.OMITTED)

    @classmethod
    def cleared(cls) -> PatchField[T]:
        return cls(FieldState.CLEARED)

    @classmethod
    def of(cls, value: T) -> PatchField[T]:
        return cls(FieldState.SET, value)

    @property
    def is_omitted(self) -> bool:
        return self.state == FieldState.OMITTED

    @property
    def is_cleared(self) -> bool:
        return self.state == FieldState.CLEARED

    @property
    def is_set(self) -> bool:
        return self.state == FieldState.SET

    def resolve(self, current: T, cleared: T) -> T:
        """現在値にパッチを適用した値を返す。"""
        if self.state == FieldState.SET:
            return self.value  # type: ignore[return-value]
        if self.state == FieldState.CLEARED:
            return cleared
        return current


def _field(body: dict[str, Any], key: str, convert: Any = None) -> PatchField[Any]:
    if key not in body:
        return PatchField.omitted()
    value = body[key]
    if value is None:
        return PatchField.cleared()
    return PatchField.of(convert(key, value) if convert is not None else value)


def _expect(kind: type, label: str) -> Callable[[str, Any], Any]:
    # bool("false") や tuple("beta") のような暗黙変換はしない
    def convert(key: str, value: Any) -> Any:
        if not isinstance(value, kind):
            raise FlagValidationError(f"'{key}' must be {label}, got {type(value).__name__}")
        return value

    return convert


def _string_tuple(key: str, value: Any) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise FlagValidationError(f"'{key}' must be an array of strings")
    return tuple(value)


def _rules(key: str, value: Any) -> tuple[Rule, ...]:
    if not isinstance(value, list) or not all(isinstance(r, dict) for r in value):
        raise FlagValidationError(f"'{key}' must be an array of rule objects")
    return tuple(rule_from_dict(r) for r in value)


def _environments(key: str, value: Any) -> dict[str, EnvironmentPatch]:
    if not isinstance(value, dict):
        raise FlagValidationError(f"'{key}' must be an object keyed by environment")
    patches: dict[str, EnvironmentPatch] = {}
    for env, settings in value.items():
        if settings is None:
            # 環境設定そのものへの null はクリア要求として扱い、check_clearable で拒否する
            patches[env] = EnvironmentPatch(enabled=PatchField.cleared(), rules=PatchField.cleared())
        elif isinstance(settings, dict):
            patches[env] = EnvironmentPatch.from_dict(settings)
        else:
            raise FlagValidationError(f"Settings of environment '{env}' must be an object")
    return patches


def _prerequisite_ids(key: str, value: Any) -> tuple[Prerequisite, ...]:
    return tuple(Prerequisite(id=i) for i in _string_tuple(key, value))


@dataclass(frozen=True)
class EnvironmentPatch:
    """環境ごとのパッチ。

    conditions_provided はルールごとに condition が明示されたかを保持する。
    """

    enabled: PatchField[bool] = field(default_factory=PatchField.omitted)
    rules: PatchField[tuple[Rule, ...]] = field(default_factory=PatchField.omitted)
    conditions_provided: tuple[bool, ...] | None = None

    def condition_provided(self, index: int) -> bool:
        if self.conditions_provided is None:
            return True
        return index < len(self.conditions_provided) and self.conditions_provided[index]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvironmentPatch:
        raw_rules = data.get("rules")
        return cls(
            enabled=_field(data, "enabled", _expect(bool, "a boolean")),
            rules=_field(data, "rules", _rules),
            conditions_provided=(
                tuple(r.get("condition") is not None for r in raw_rules)
                if isinstance(raw_rules, list)
                else None
            ),
        )


@dataclass(frozen=True)
class FlagPatch:
    """フィーチャーフラグの部分更新。"""

    owner: PatchField[str] = field(default_factory=PatchField.omitted)
    archived: PatchField[bool] = field(default_factory=PatchField.omitted)
    description: PatchField[str] = field(default_factory=PatchField.omitted)
    project: PatchField[str] = field(default_factory=PatchField.omitted)
    tags: PatchField[tuple[str, ...]] = field(default_factory=PatchField.omitted)
    default_value: PatchField[Any] = field(default_factory=PatchField.omitted)
    environments: PatchField[dict[str, EnvironmentPatch]] = field(default_factory=PatchField.omitted)
    prerequisites: PatchField[tuple[Prerequisite, ...]] = field(default_factory=PatchField.omitted)
    json_schema: PatchField[str] = field(default_factory=PatchField.omitted)

    @classmethod
    def from_dict(cls, body: dict[str, Any]) -> FlagPatch:
        """REST リクエストボディからパッチを生成する。

        前提フラグは ID の配列で受け取り、常に真を要求する条件に変換する。
        """
        return cls(
            owner=_field(body, "owner", _expect(str, "a string")),
            archived=_field(body, "archived", _expect(bool, "a boolean")),
            description=_field(body, "description", _expect(str, "a string")),
            project=_field(body, "project", _expect(str, "a string")),
            tags=_field(body, "tags", _string_tuple),
            default_value=_field(body, "defaultValue"),
            environments=_field(body, "environments", _environments),
            prerequisites=_field(body, "prerequisites", _prerequisite_ids),
            json_schema=_field(body, "jsonSchema", _expect(str, "a string")),
        )

    def check_clearable(self) -> None:
        """クリアできないフィールドへの null を拒否する。"""
        for name in ("archived", "default_value", "environments"):
            if getattr(self, name).is_cleared:
                raise FlagValidationError(f"'{name}' cannot be cleared")
        if self.environments.is_set:
            for env, env_patch in (self.environments.value or {}).items():
                if env_patch.enabled.is_cleared or env_patch.rules.is_cleared:
                    raise FlagValidationError(f"Settings of environment '{env}' cannot be cleared")

    @property
    def environment_patches(self) -> dict[str, EnvironmentPatch]:
        return dict(self.environments.value or {}) if self.environments.is_set else {}
