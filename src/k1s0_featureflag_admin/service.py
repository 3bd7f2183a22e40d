"""フィーチャーフラグ更新パイプライン"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

import structlog

from .audit import AuditEvent, AuditLog, audit_details_update, record_safely
from .config import FlagAdminConfig
from .diff import RuleDiff, compute_rule_diff, merge_environment_settings, with_rule_ids
from .exceptions import (
    ConcurrencyConflictError,
    ExperimentConditionChange,
    FlagAdminError,
    FlagAdminErrorCodes,
    NotFoundError,
    ReconciliationRequiredError,
)
from .experiment_sync import ExperimentRefSynchronizer
from .gate import GateResult, PublishGate
from .models import Flag, Revision
from .organization import OrganizationProvider
from .patch import FlagPatch
from .permissions import PermissionChecker
from .revision import RevisionManager
from .store import ExperimentStore, FlagStore, RevisionStore

logger = structlog.stdlib.get_logger(__name__)


@dataclass
class UpdateResult:
    """更新結果。revision はルールかデフォルト値が変化した場合のみ作成される。"""

    flag: Flag
    revision: Revision | None = None
    experiment_changes: list[ExperimentConditionChange] = field(default_factory=list)


class FlagUpdateService:
    """部分更新を検証・差分計算・実験同期・リビジョン公開の順に処理する。

    1 リクエストは完了か失敗まで逐次に実行される。自動リトライは行わない。
    """

    def __init__(
        self,
        flags: FlagStore,
        experiments: ExperimentStore,
        revisions: RevisionStore,
        organization: OrganizationProvider,
        permissions: PermissionChecker,
        audit: AuditLog,
        config: FlagAdminConfig | None = None,
    ) -> None:
        self._flags = flags
        self._revisions = revisions
        self._organization = organization
        self._audit = audit
        self._config = config or FlagAdminConfig()
        self._gate = PublishGate(organization, permissions)
        self._synchronizer = ExperimentRefSynchronizer(experiments, permissions, audit)
        self._revision_manager = RevisionManager(permissions, self._config.revision)

    async def update_flag(
        self,
        flag_id: str,
        patch: FlagPatch,
        *,
        actor: str,
        base_version: int | None = None,
    ) -> UpdateResult:
        """フラグに部分更新を適用する。

        Args:
            flag_id: 対象フラグ ID
            patch: 部分更新
            actor: 操作主体
            base_version: 呼び出し側が参照したバージョン。指定時は保存済みと一致する必要がある。

        Raises:
            NotFoundError: フラグまたは参照先の実験が存在しない
            FlagValidationError: 入力が不正
            PermissionDeniedError: 権限がない
            EntitlementRequiredError: 必要なエンタイトルメントがない
            ReviewRequiredError: レビューが必要
            ConcurrencyConflictError: バージョン不一致
            ReconciliationRequiredError: フラグ保存後にリビジョンを記録できなかった
        """
        flag = await self._flags.get(flag_id)
        if flag is None:
            raise NotFoundError("Feature", flag_id)
        if base_version is not None and base_version != flag.version:
            raise ConcurrencyConflictError(flag_id, base_version, flag.version)

        log = logger.bind(flag_id=flag_id, actor=actor, base_version=flag.version)

        gate = await self._gate.check(flag, patch)
        patch = with_rule_ids(patch, self._config.rules.id_prefix)
        diff = compute_rule_diff(flag, patch, gate.default_value)

        changes: list[ExperimentConditionChange] = []
        try:
            changes = await self._synchronizer.sync(flag, patch, actor)
            revision = self._revision_manager.prepare(
                flag,
                patch,
                diff,
                gate.settings,
                author=actor,
                default_value=gate.default_value,
            )
            updated = self._apply(flag, patch, gate, revision)
            # フラグの version が唯一の直列化点なので、フラグを先に保存する
            await self._flags.save(updated, expected_version=flag.version)
        except Exception as e:
            error = self._as_flag_admin_error(flag_id, e)
            # 同期の途中で失敗した場合、書き込み済みの変更はエラー側に添付されている
            await self._handle_partial_failure(error, changes or error.experiment_changes, actor, log)
            if error is e:
                raise
            raise error from e

        # ここから先はフラグが確定済み。実験は新しい条件のまま一致しているので書き戻さない
        if revision is not None:
            try:
                await self._revisions.add(revision)
            except Exception as e:
                reconciliation = ReconciliationRequiredError(flag_id, updated.version, e)
                reconciliation.with_experiment_changes(changes)
                log.error(
                    "feature saved but revision was not recorded",
                    code=reconciliation.code,
                    version=updated.version,
                    reason=str(e),
                    experiment_changes=[c.to_dict() for c in changes],
                )
                await self._after_commit(flag, updated, revision, diff, actor, log)
                raise reconciliation from e

        await self._after_commit(flag, updated, revision, diff, actor, log)
        return UpdateResult(flag=updated, revision=revision, experiment_changes=changes)

    @staticmethod
    def _apply(flag: Flag, patch: FlagPatch, gate: GateResult, revision: Revision | None) -> Flag:
        return replace(
            flag,
            owner=patch.owner.resolve(flag.owner, ""),
            archived=patch.archived.resolve(flag.archived, flag.archived),
            description=patch.description.resolve(flag.description, ""),
            project=gate.effective_project,
            tags=tuple(dict.fromkeys(patch.tags.resolve(flag.tags, ()))),
            default_value=gate.default_value if gate.default_value is not None else flag.default_value,
            environment_settings=merge_environment_settings(flag, patch),
            prerequisites=patch.prerequisites.resolve(flag.prerequisites, ()),
            json_schema=gate.json_schema,
            version=revision.version if revision is not None else flag.version,
            date_updated=datetime.now(UTC),
        )

    @staticmethod
    def _as_flag_admin_error(flag_id: str, error: Exception) -> FlagAdminError:
        if isinstance(error, FlagAdminError):
            return error
        return FlagAdminError(
            FlagAdminErrorCodes.STORAGE,
            f"Failed to persist feature '{flag_id}': {error}",
            cause=error,
        )

    async def _handle_partial_failure(
        self,
        error: FlagAdminError,
        changes: list[ExperimentConditionChange],
        actor: str,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        if not changes:
            return
        if self._config.experiment_sync.compensate_on_failure:
            await self._synchronizer.compensate(changes, actor)
        error.with_experiment_changes(changes)
        log.error(
            "feature update failed after experiment synchronization",
            code=error.code,
            reason=str(error),
            experiment_changes=[c.to_dict() for c in changes],
        )

    async def _after_commit(
        self,
        flag: Flag,
        updated: Flag,
        revision: Revision | None,
        diff: RuleDiff,
        actor: str,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        new_tags = [t for t in updated.tags if t not in flag.tags]
        if new_tags:
            try:
                await self._organization.add_tags(new_tags)
            except Exception as e:
                log.warning("failed to register tags", tags=new_tags, error=str(e))

        await record_safely(
            self._audit,
            AuditEvent(
                event="feature.update",
                entity_type="feature",
                entity_id=flag.id,
                actor=actor,
                details=audit_details_update(flag.to_dict(), updated.to_dict()),
            ),
        )
        if revision is not None:
            await record_safely(
                self._audit,
                AuditEvent(
                    event="feature.publish",
                    entity_type="feature",
                    entity_id=flag.id,
                    actor=actor,
                    details={
                        "version": revision.version,
                        "changed_environments": list(diff.changed_environments),
                        "default_value_changed": diff.default_value_changed,
                        "comment": revision.comment,
                    },
                ),
            )
        log.info(
            "feature updated",
            version=updated.version,
            revision=revision.version if revision is not None else None,
        )
