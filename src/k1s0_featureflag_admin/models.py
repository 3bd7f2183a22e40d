"""featureflag-admin データモデル"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar

from .exceptions import FlagValidationError

DEFAULT_CONDITION = "{}"


class ValueType(StrEnum):
    """フラグ値の型。"""

    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    JSON = "json"


class RuleType(StrEnum):
    """ルールのバリアント。"""

    FORCE = "force"
    ROLLOUT = "rollout"
    EXPERIMENT = "experiment"
    EXPERIMENT_REF = "experiment-ref"
    SAFE_ROLLOUT = "safe-rollout"


class RevisionStatus(StrEnum):
    """リビジョンステータス。"""

    DRAFT = "draft"
    PUBLISHED = "published"
    DISCARDED = "discarded"


class SavedGroupMatch(StrEnum):
    """保存済みグループの一致方法。"""

    ALL = "all"
    ANY = "any"
    NONE = "none"


@dataclass(frozen=True)
class ScheduleRule:
    """ルールの有効化スケジュール。"""

    enabled: bool
    timestamp: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleRule:
        return cls(enabled=bool(data.get("enabled", False)), timestamp=data.get("timestamp"))

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "timestamp": self.timestamp}


@dataclass(frozen=True)
class SavedGroupTarget:
    """ルールに付与する保存済みグループ条件。"""

    match: SavedGroupMatch
    ids: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SavedGroupTarget:
        return cls(match=SavedGroupMatch(data.get("match", "any")), ids=tuple(data.get("ids", [])))

    def to_dict(self) -> dict[str, Any]:
        return {"match": str(self.match), "ids": list(self.ids)}


@dataclass(frozen=True, kw_only=True)
class Rule:
    """ターゲティングルールの基底クラス。

    id はシステムが採番し、編集を跨いで安定する。
    """

    type: ClassVar[RuleType]

    id: str = ""
    condition: str = DEFAULT_CONDITION
    description: str = ""
    enabled: bool = True
    schedule_rules: tuple[ScheduleRule, ...] | None = None
    saved_groups: tuple[SavedGroupTarget, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": str(self.type),
            "id": self.id,
            "condition": self.condition,
            "description": self.description,
            "enabled": self.enabled,
        }
        if self.schedule_rules is not None:
            data["scheduleRules"] = [s.to_dict() for s in self.schedule_rules]
        if self.saved_groups:
            data["savedGroups"] = [g.to_dict() for g in self.saved_groups]
        data.update(self._variant_dict())
        return data

    def _variant_dict(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True, kw_only=True)
class ForceRule(Rule):
    """固定値を返すルール。"""

    type: ClassVar[RuleType] = RuleType.FORCE

    value: str = ""

    def _variant_dict(self) -> dict[str, Any]:
        return {"value": self.value}


@dataclass(frozen=True, kw_only=True)
class RolloutRule(Rule):
    """割合ロールアウトルール。"""

    type: ClassVar[RuleType] = RuleType.ROLLOUT

    value: str = ""
    coverage: float = 1.0
    hash_attribute: str = "id"

    def _variant_dict(self) -> dict[str, Any]:
        return {"value": self.value, "coverage": self.coverage, "hashAttribute": self.hash_attribute}


@dataclass(frozen=True)
class ExperimentValue:
    """インライン実験のバリエーション値。"""

    value: str
    weight: float
    name: str = ""


@dataclass(frozen=True, kw_only=True)
class ExperimentRule(Rule):
    """インライン実験ルール。"""

    type: ClassVar[RuleType] = RuleType.EXPERIMENT

    tracking_key: str = ""
    hash_attribute: str = "id"
    coverage: float = 1.0
    values: tuple[ExperimentValue, ...] = ()

    def _variant_dict(self) -> dict[str, Any]:
        return {
            "trackingKey": self.tracking_key,
            "hashAttribute": self.hash_attribute,
            "coverage": self.coverage,
            "values": [{"value": v.value, "weight": v.weight, "name": v.name} for v in self.values],
        }


@dataclass(frozen=True)
class ExperimentRefVariation:
    """実験バリエーションとフラグ値の対応。"""

    variation_id: str
    value: str


@dataclass(frozen=True, kw_only=True)
class ExperimentRefRule(Rule):
    """外部実験を参照するルール。条件は実験の最終フェーズと一致させる。"""

    type: ClassVar[RuleType] = RuleType.EXPERIMENT_REF

    experiment_id: str = ""
    variations: tuple[ExperimentRefVariation, ...] = ()

    def _variant_dict(self) -> dict[str, Any]:
        return {
            "experimentId": self.experiment_id,
            "variations": [
                {"variationId": v.variation_id, "value": v.value} for v in self.variations
            ],
        }


@dataclass(frozen=True, kw_only=True)
class SafeRolloutRule(Rule):
    """セーフロールアウトルール。"""

    type: ClassVar[RuleType] = RuleType.SAFE_ROLLOUT

    safe_rollout_id: str = ""
    control_value: str = ""
    variation_value: str = ""
    hash_attribute: str = "id"
    seed: str = ""
    status: str = "running"

    def _variant_dict(self) -> dict[str, Any]:
        return {
            "safeRolloutId": self.safe_rollout_id,
            "controlValue": self.control_value,
            "variationValue": self.variation_value,
            "hashAttribute": self.hash_attribute,
            "seed": self.seed,
            "status": self.status,
        }


def _common_rule_fields(data: dict[str, Any]) -> dict[str, Any]:
    schedule = data.get("scheduleRules")
    return {
        "id": data.get("id") or "",
        "condition": data.get("condition") or DEFAULT_CONDITION,
        "description": data.get("description", ""),
        "enabled": bool(data.get("enabled", True)),
        "schedule_rules": (
            tuple(ScheduleRule.from_dict(s) for s in schedule) if schedule is not None else None
        ),
        "saved_groups": tuple(SavedGroupTarget.from_dict(g) for g in data.get("savedGroups", [])),
    }


def rule_from_dict(data: dict[str, Any]) -> Rule:
    """type タグに従って Rule バリアントを生成する。"""
    common = _common_rule_fields(data)
    rule_type = data.get("type")
    if rule_type == RuleType.FORCE:
        return ForceRule(value=str(data.get("value", "")), **common)
    if rule_type == RuleType.ROLLOUT:
        return RolloutRule(
            value=str(data.get("value", "")),
            coverage=float(data.get("coverage", 1.0)),
            hash_attribute=data.get("hashAttribute", "id"),
            **common,
        )
    if rule_type == RuleType.EXPERIMENT:
        return ExperimentRule(
            tracking_key=data.get("trackingKey", ""),
            hash_attribute=data.get("hashAttribute", "id"),
            coverage=float(data.get("coverage", 1.0)),
            values=tuple(
                ExperimentValue(
                    value=str(v.get("value", "")),
                    weight=float(v.get("weight", 0)),
                    name=v.get("name", ""),
                )
                for v in data.get("values", [])
            ),
            **common,
        )
    if rule_type == RuleType.EXPERIMENT_REF:
        return ExperimentRefRule(
            experiment_id=data.get("experimentId", ""),
            variations=tuple(
                ExperimentRefVariation(variation_id=v["variationId"], value=str(v.get("value", "")))
                for v in data.get("variations", [])
            ),
            **common,
        )
    if rule_type == RuleType.SAFE_ROLLOUT:
        return SafeRolloutRule(
            safe_rollout_id=data.get("safeRolloutId", ""),
            control_value=str(data.get("controlValue", "")),
            variation_value=str(data.get("variationValue", "")),
            hash_attribute=data.get("hashAttribute", "id"),
            seed=data.get("seed", ""),
            status=data.get("status", "running"),
            **common,
        )
    raise FlagValidationError(f"Unknown rule type: {rule_type!r}")


@dataclass(frozen=True)
class EnvironmentSetting:
    """環境ごとの有効状態とルール列。ルールの順序は意味を持つ。"""

    enabled: bool = False
    rules: tuple[Rule, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnvironmentSetting:
        return cls(
            enabled=bool(data.get("enabled", False)),
            rules=tuple(rule_from_dict(r) for r in data.get("rules", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "rules": [r.to_dict() for r in self.rules]}


@dataclass(frozen=True)
class Prerequisite:
    """前提フラグ。"""

    id: str
    condition: str = '{"value": true}'


@dataclass(frozen=True)
class JsonSchemaSettings:
    """json 型フラグの値検証スキーマ。"""

    schema: str
    enabled: bool = True
    date: datetime | None = None


@dataclass
class Flag:
    """フィーチャーフラグ。"""

    id: str
    organization: str = ""
    project: str = ""
    owner: str = ""
    description: str = ""
    value_type: ValueType = ValueType.BOOLEAN
    default_value: str = "false"
    environment_settings: dict[str, EnvironmentSetting] = field(default_factory=dict)
    version: int = 1
    archived: bool = False
    tags: tuple[str, ...] = ()
    prerequisites: tuple[Prerequisite, ...] = ()
    json_schema: JsonSchemaSettings | None = None
    date_updated: datetime | None = None

    def rules_for(self, environment: str) -> tuple[Rule, ...]:
        setting = self.environment_settings.get(environment)
        return setting.rules if setting is not None else ()

    def enabled_environments(self, environment_ids: Iterable[str]) -> set[str]:
        """組織で定義済みの環境のうち、有効な環境の集合を返す。"""
        return {
            env
            for env in environment_ids
            if (setting := self.environment_settings.get(env)) is not None and setting.enabled
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flag:
        schema = data.get("jsonSchema")
        return cls(
            id=data["id"],
            organization=data.get("organization", ""),
            project=data.get("project", ""),
            owner=data.get("owner", ""),
            description=data.get("description", ""),
            value_type=ValueType(data.get("valueType", "boolean")),
            default_value=str(data.get("defaultValue", "false")),
            environment_settings={
                env: EnvironmentSetting.from_dict(s)
                for env, s in data.get("environmentSettings", {}).items()
            },
            version=int(data.get("version", 1)),
            archived=bool(data.get("archived", False)),
            tags=tuple(data.get("tags", [])),
            prerequisites=tuple(
                Prerequisite(id=p["id"], condition=p.get("condition", '{"value": true}'))
                for p in data.get("prerequisites", [])
            ),
            json_schema=(
                JsonSchemaSettings(schema=schema["schema"], enabled=schema.get("enabled", True))
                if schema
                else None
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization": self.organization,
            "project": self.project,
            "owner": self.owner,
            "description": self.description,
            "valueType": str(self.value_type),
            "defaultValue": self.default_value,
            "environmentSettings": {
                env: s.to_dict() for env, s in self.environment_settings.items()
            },
            "version": self.version,
            "archived": self.archived,
            "tags": list(self.tags),
            "prerequisites": [{"id": p.id, "condition": p.condition} for p in self.prerequisites],
            "jsonSchema": (
                {"schema": self.json_schema.schema, "enabled": self.json_schema.enabled}
                if self.json_schema
                else None
            ),
        }


@dataclass(frozen=True)
class Revision:
    """公開時点のルールとデフォルト値の不変スナップショット。"""

    flag_id: str
    base_version: int
    version: int
    default_value: str
    rules: dict[str, tuple[Rule, ...]]
    status: RevisionStatus = RevisionStatus.DRAFT
    comment: str = ""
    created_by: str = ""
    organization: str = ""
    date_created: datetime | None = None
    date_published: datetime | None = None


@dataclass
class ExperimentPhase:
    """実験フェーズ。"""

    name: str = ""
    condition: str = DEFAULT_CONDITION
    coverage: float = 1.0
    date_started: datetime | None = None


@dataclass
class Experiment:
    """実験。最後のフェーズのみがアクティブ。"""

    id: str
    organization: str = ""
    project: str = ""
    name: str = ""
    phases: list[ExperimentPhase] = field(default_factory=list)

    @property
    def current_phase(self) -> ExperimentPhase | None:
        return self.phases[-1] if self.phases else None
