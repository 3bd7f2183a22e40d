"""experiment-ref ルールの条件を参照先の実験へ同期する"""

from __future__ import annotations

from dataclasses import replace

import structlog

from .audit import AuditEvent, AuditLog, record_safely
from .exceptions import (
    ExperimentConditionChange,
    FlagAdminError,
    FlagAdminErrorCodes,
    FlagValidationError,
    NotFoundError,
    PermissionDeniedError,
)
from .models import Experiment, ExperimentRefRule, Flag
from .patch import FlagPatch
from .permissions import PermissionChecker
from .store import ExperimentStore

logger = structlog.stdlib.get_logger(__name__)


class ExperimentRefSynchronizer:
    """フラグ経由で編集された experiment-ref ルールの条件を実験の最終フェーズへ書き込む。

    実験とフラグは別集約であり、ここでの書き込みはフラグの書き込みより先に確定する。
    後続が失敗した場合は compensate() で書き戻せる。
    """

    def __init__(
        self,
        experiments: ExperimentStore,
        permissions: PermissionChecker,
        audit: AuditLog,
    ) -> None:
        self._experiments = experiments
        self._permissions = permissions
        self._audit = audit

    async def verify_references(self, patch: FlagPatch) -> None:
        """パッチ内の experiment-ref ルールが既存の実験を参照していることを確認する。"""
        checked: set[str] = set()
        for env_patch in patch.environment_patches.values():
            if not env_patch.rules.is_set:
                continue
            for rule in env_patch.rules.value or ():
                if not isinstance(rule, ExperimentRefRule) or rule.experiment_id in checked:
                    continue
                await self._load(rule.experiment_id)
                checked.add(rule.experiment_id)

    async def sync(self, flag: Flag, patch: FlagPatch, actor: str) -> list[ExperimentConditionChange]:
        """条件が変更された experiment-ref ルールを同じ位置の保存済みルールと比較して同期する。

        Returns:
            書き込んだ実験フェーズ変更の一覧

        Raises:
            NotFoundError: 参照先の実験が存在しない
            PermissionDeniedError: 実験の更新権限がない
            FlagValidationError: 実験にフェーズがない
        """
        changes: list[ExperimentConditionChange] = []
        try:
            await self.verify_references(patch)
            for env, env_patch in patch.environment_patches.items():
                if not env_patch.rules.is_set:
                    continue
                stored = flag.rules_for(env)
                for index, new_rule in enumerate(env_patch.rules.value or ()):
                    old_rule = stored[index] if index < len(stored) else None
                    if not (
                        isinstance(new_rule, ExperimentRefRule)
                        and isinstance(old_rule, ExperimentRefRule)
                        and new_rule.experiment_id == old_rule.experiment_id
                        and env_patch.condition_provided(index)
                        and new_rule.condition != old_rule.condition
                    ):
                        continue
                    change = await self._update_condition(
                        new_rule.experiment_id, new_rule.condition, actor
                    )
                    if change is not None:
                        changes.append(change)
        except FlagAdminError as e:
            raise e.with_experiment_changes(changes)
        return changes

    async def compensate(self, changes: list[ExperimentConditionChange], actor: str) -> None:
        """このリクエストで書き込んだ条件を元に戻す。

        フェーズ条件が書き込んだ値のままの場合に限り戻す。戻せなかったものは
        compensated が False のまま残り、手動での突き合わせ対象になる。
        """
        for change in reversed(changes):
            if change.compensated:
                continue
            try:
                experiment = await self._experiments.get(change.experiment_id)
                if experiment is None or change.phase_index >= len(experiment.phases):
                    logger.error("experiment phase disappeared before compensation", **change.to_dict())
                    continue
                phase = experiment.phases[change.phase_index]
                if phase.condition != change.new_condition:
                    logger.error("experiment condition changed concurrently", **change.to_dict())
                    continue
                experiment.phases[change.phase_index] = replace(
                    phase, condition=change.previous_condition
                )
                await self._experiments.save(experiment)
            except Exception as e:
                logger.error("failed to compensate experiment condition", error=str(e), **change.to_dict())
                continue
            change.compensated = True
            logger.warning("experiment condition reverted", **change.to_dict())
            await record_safely(
                self._audit,
                AuditEvent(
                    event="experiment.update",
                    entity_type="experiment",
                    entity_id=change.experiment_id,
                    actor=actor,
                    details={
                        "pre": {"condition": change.new_condition},
                        "post": {"condition": change.previous_condition},
                    },
                ),
            )

    async def _load(self, experiment_id: str) -> Experiment:
        try:
            experiment = await self._experiments.get(experiment_id)
        except Exception as e:
            raise FlagAdminError(
                FlagAdminErrorCodes.STORAGE,
                f"Failed to load experiment '{experiment_id}': {e}",
                cause=e,
            ) from e
        if experiment is None:
            raise NotFoundError("Experiment", experiment_id)
        return experiment

    async def _update_condition(
        self, experiment_id: str, condition: str, actor: str
    ) -> ExperimentConditionChange | None:
        experiment = await self._load(experiment_id)
        if not self._permissions.can_update_experiment(experiment, {"condition": condition}):
            raise PermissionDeniedError(
                f"You don't have permission to update experiment '{experiment_id}'"
            )
        phase = experiment.current_phase
        if phase is None:
            raise FlagValidationError(f"No active phase found for experiment '{experiment_id}'")
        if phase.condition == condition:
            return None

        index = len(experiment.phases) - 1
        change = ExperimentConditionChange(
            experiment_id=experiment_id,
            phase_index=index,
            previous_condition=phase.condition,
            new_condition=condition,
        )
        experiment.phases[index] = replace(phase, condition=condition)
        try:
            await self._experiments.save(experiment)
        except Exception as e:
            raise FlagAdminError(
                FlagAdminErrorCodes.STORAGE,
                f"Failed to save experiment '{experiment_id}': {e}",
                cause=e,
            ) from e
        logger.info("experiment condition synchronized", **change.to_dict())
        await record_safely(
            self._audit,
            AuditEvent(
                event="experiment.update",
                entity_type="experiment",
                entity_id=experiment_id,
                actor=actor,
                details={
                    "pre": {"condition": change.previous_condition},
                    "post": {"condition": condition},
                },
            ),
        )
        return change
