"""ルール差分の計算"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace

from .models import EnvironmentSetting, Flag, Rule
from .patch import EnvironmentPatch, FlagPatch, PatchField


@dataclass(frozen=True)
class RuleDiff:
    """パッチによって実際に変化した内容。"""

    changed_environments: tuple[str, ...] = ()
    default_value_changed: bool = False

    @property
    def has_changes(self) -> bool:
        return self.default_value_changed or bool(self.changed_environments)


def compute_rule_diff(flag: Flag, patch: FlagPatch, default_value: str | None = None) -> RuleDiff:
    """保存済みフラグとパッチからルールとデフォルト値の変化を求める。

    ルール列は順序を含めた構造比較で判定する。入れ替えのみでも変更とみなす。

    Args:
        flag: 保存済みフラグ
        patch: 部分更新
        default_value: 正規化済みのデフォルト値。省略時はパッチの値を文字列化して使う。
    """
    changed = tuple(
        env
        for env, env_patch in patch.environment_patches.items()
        if env_patch.rules.is_set and tuple(env_patch.rules.value or ()) != flag.rules_for(env)
    )
    default_changed = False
    if patch.default_value.is_set:
        new_value = default_value if default_value is not None else str(patch.default_value.value)
        default_changed = new_value != flag.default_value
    return RuleDiff(changed_environments=changed, default_value_changed=default_changed)


def new_rule_id(prefix: str = "fr_") -> str:
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def assign_rule_ids(rules: tuple[Rule, ...], prefix: str = "fr_") -> tuple[Rule, ...]:
    """id を持たないルールに新しい id を採番する。"""
    return tuple(rule if rule.id else replace(rule, id=new_rule_id(prefix)) for rule in rules)


def with_rule_ids(patch: FlagPatch, prefix: str = "fr_") -> FlagPatch:
    """パッチ内の全ルールに id を採番したパッチを返す。"""
    if not patch.environments.is_set:
        return patch
    environments: dict[str, EnvironmentPatch] = {}
    for env, env_patch in patch.environment_patches.items():
        if env_patch.rules.is_set:
            rules = assign_rule_ids(tuple(env_patch.rules.value or ()), prefix)
            env_patch = replace(env_patch, rules=PatchField.of(rules))
        environments[env] = env_patch
    return replace(patch, environments=PatchField.of(environments))


def merge_environment_settings(flag: Flag, patch: FlagPatch) -> dict[str, EnvironmentSetting]:
    """保存済みの環境設定にパッチを重ねた設定を返す。"""
    merged = dict(flag.environment_settings)
    for env, env_patch in patch.environment_patches.items():
        current = merged.get(env, EnvironmentSetting())
        merged[env] = EnvironmentSetting(
            enabled=env_patch.enabled.resolve(current.enabled, current.enabled),
            rules=env_patch.rules.resolve(current.rules, current.rules),
        )
    return merged
