"""書き込み前のポリシーチェック"""

from __future__ import annotations

from dataclasses import dataclass, replace

import structlog

from .diff import merge_environment_settings
from .exceptions import (
    EntitlementRequiredError,
    FlagAdminError,
    FlagValidationError,
    PermissionDeniedError,
)
from .models import Flag, JsonSchemaSettings, ValueType
from .organization import Entitlements, OrganizationProvider, OrganizationSettings
from .patch import FlagPatch
from .permissions import PermissionChecker, PublishScope
from .values import parse_json_schema, validate_flag_value, validate_schedule_rules

logger = structlog.stdlib.get_logger(__name__)


@dataclass(frozen=True)
class GateResult:
    """ゲート通過時に確定した値。"""

    settings: OrganizationSettings
    effective_project: str
    default_value: str | None = None
    json_schema: JsonSchemaSettings | None = None


class PublishGate:
    """更新の書き込み前に、権限・エンタイトルメント・入力の妥当性を検証する。

    どのチェックも書き込みを伴わないため、失敗しても部分的な状態は残らない。
    """

    def __init__(self, organization: OrganizationProvider, permissions: PermissionChecker) -> None:
        self._organization = organization
        self._permissions = permissions

    async def check(self, flag: Flag, patch: FlagPatch) -> GateResult:
        """パッチを検証する。

        Raises:
            PermissionDeniedError: 更新権限・公開権限がない
            FlagValidationError: 環境キー・プロジェクト・ルール・値が不正
            EntitlementRequiredError: スケジュールルールや JSON スキーマの利用資格がない
        """
        try:
            return await self._check(flag, patch)
        except FlagAdminError as e:
            logger.warning("publish gate rejected update", flag_id=flag.id, code=e.code, reason=str(e))
            raise

    async def _check(self, flag: Flag, patch: FlagPatch) -> GateResult:
        settings = await self._organization.get_settings()
        env_ids = tuple(settings.environment_ids)

        patch.check_clearable()
        if not self._permissions.can_update_flag(flag, patch):
            raise PermissionDeniedError()

        effective_project = patch.project.resolve(flag.project, "")
        project_changed = not patch.project.is_omitted and effective_project != flag.project
        if (
            settings.require_project_for_features
            and flag.project
            and not effective_project
        ):
            raise FlagValidationError("Must specify a project")
        if project_changed:
            await self._check_project_change(flag, effective_project, env_ids)

        self._check_environments(patch, env_ids)
        self._check_rules(patch, settings)

        json_schema = flag.json_schema
        if patch.json_schema.is_set:
            if flag.value_type != ValueType.JSON:
                raise FlagValidationError("jsonSchema is only supported for json features")
            json_schema = parse_json_schema(settings, patch.json_schema.value or "")
        elif patch.json_schema.is_cleared:
            json_schema = None

        default_value = None
        if patch.default_value.is_set:
            default_value = validate_flag_value(
                replace(flag, json_schema=json_schema), patch.default_value.value, "defaultValue"
            )

        publishes = (
            patch.environments.is_set
            or patch.default_value.is_set
            or patch.archived.is_set
            or project_changed
        )
        if publishes:
            merged = replace(flag, environment_settings=merge_environment_settings(flag, patch))
            environments = flag.enabled_environments(env_ids) | merged.enabled_environments(env_ids)
            if not self._permissions.can_publish(PublishScope(effective_project), sorted(environments)):
                raise PermissionDeniedError(
                    f"You do not have permission to publish in environments {sorted(environments)}"
                )

        return GateResult(
            settings=settings,
            effective_project=effective_project,
            default_value=default_value,
            json_schema=json_schema,
        )

    async def _check_project_change(self, flag: Flag, project: str, env_ids: tuple[str, ...]) -> None:
        if project:
            projects = await self._organization.get_projects()
            if not any(p.id == project for p in projects):
                raise FlagValidationError(f"Project id {project} is not a valid project.")
        enabled = sorted(flag.enabled_environments(env_ids))
        if not self._permissions.can_publish(
            PublishScope(flag.project), enabled
        ) or not self._permissions.can_publish(PublishScope(project), enabled):
            raise PermissionDeniedError(
                f"You do not have permission to move this feature to project '{project}'"
            )

    @staticmethod
    def _check_environments(patch: FlagPatch, env_ids: tuple[str, ...]) -> None:
        unknown = [env for env in patch.environment_patches if env not in env_ids]
        if unknown:
            raise FlagValidationError(
                f"Unknown environments: {', '.join(unknown)}. "
                f"Valid environments are: {', '.join(env_ids)}"
            )

    @staticmethod
    def _check_rules(patch: FlagPatch, settings: OrganizationSettings) -> None:
        for env, env_patch in patch.environment_patches.items():
            if not env_patch.rules.is_set:
                continue
            seen: set[str] = set()
            for index, rule in enumerate(env_patch.rules.value or ()):
                if rule.id:
                    if rule.id in seen:
                        raise FlagValidationError(
                            f"Duplicate rule id '{rule.id}' in environment \"{env}\""
                        )
                    seen.add(rule.id)
                if rule.schedule_rules is None:
                    continue
                if not settings.has_entitlement(Entitlements.SCHEDULE_RULES):
                    raise EntitlementRequiredError(
                        Entitlements.SCHEDULE_RULES,
                        "This organization does not have access to schedule rules. "
                        "Upgrade to Pro or Enterprise.",
                    )
                try:
                    validate_schedule_rules(rule.schedule_rules)
                except FlagValidationError as e:
                    raise FlagValidationError(
                        f"Invalid scheduleRules in environment \"{env}\", rule {index + 1}: "
                        f"{e.args[0]}",
                        cause=e,
                    ) from e
