"""権限チェック"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol

from .models import Experiment, Flag
from .patch import FlagPatch


@dataclass(frozen=True)
class PublishScope:
    """公開権限を判定する対象。プロジェクト変更前後の判定にも使う。"""

    project: str = ""


class PermissionChecker(Protocol):
    """パイプラインが要求する権限判定プロトコル。"""

    def can_update_flag(self, flag: Flag, patch: FlagPatch) -> bool: ...

    def can_publish(self, scope: PublishScope, environments: Iterable[str]) -> bool: ...

    def can_update_experiment(self, experiment: Experiment, changes: dict[str, Any]) -> bool: ...

    def can_bypass_approval_checks(self, flag: Flag) -> bool: ...


class Permissions:
    """権限文字列の定数。"""

    UPDATE_FLAG: str = "flag:update"
    PUBLISH_FLAG: str = "flag:publish"
    BYPASS_APPROVAL: str = "flag:bypass_approval"
    UPDATE_EXPERIMENT: str = "experiment:update"


class RbacPermissionChecker:
    """ロールベースの権限チェッカー。

    flag:publish はすべての環境、flag:publish:<env> は指定環境のみの公開を許可する。
    """

    def __init__(
        self,
        roles: list[str],
        permission_map: dict[str, list[str]] | None = None,
        project_roles: dict[str, list[str]] | None = None,
    ) -> None:
        """
        Args:
            roles: 全プロジェクトに適用するロール
            permission_map: {role: [resource:action, ...]} の辞書。
                           例: {"admin": ["*:*"], "engineer": ["flag:update", "flag:publish:dev"]}
            project_roles: {project: [role, ...]}。指定されたプロジェクトでは roles を置き換える。
        """
        self._roles = roles
        self._permission_map = permission_map or {}
        self._project_roles = project_roles or {}

    def _roles_for(self, project: str) -> list[str]:
        return self._project_roles.get(project, self._roles) if project else self._roles

    @staticmethod
    def _grants(granted: str, permission: str) -> bool:
        resource = permission.split(":", 1)[0]
        return (
            granted == permission
            or granted == "*:*"
            or granted == f"{resource}:*"
            or permission.startswith(f"{granted}:")
        )

    def has_permission(self, permission: str, project: str = "") -> bool:
        for role in self._roles_for(project):
            if any(self._grants(g, permission) for g in self._permission_map.get(role, [])):
                return True
        return False

    def can_update_flag(self, flag: Flag, patch: FlagPatch) -> bool:
        if not self.has_permission(Permissions.UPDATE_FLAG, flag.project):
            return False
        if patch.project.is_set:
            return self.has_permission(Permissions.UPDATE_FLAG, patch.project.value or "")
        return True

    def can_publish(self, scope: PublishScope, environments: Iterable[str]) -> bool:
        envs = list(environments)
        if not envs:
            return any(
                g.startswith(Permissions.PUBLISH_FLAG) or self._grants(g, Permissions.PUBLISH_FLAG)
                for role in self._roles_for(scope.project)
                for g in self._permission_map.get(role, [])
            )
        return all(
            self.has_permission(f"{Permissions.PUBLISH_FLAG}:{env}", scope.project) for env in envs
        )

    def can_update_experiment(self, experiment: Experiment, changes: dict[str, Any]) -> bool:
        return self.has_permission(Permissions.UPDATE_EXPERIMENT, experiment.project)

    def can_bypass_approval_checks(self, flag: Flag) -> bool:
        return self.has_permission(Permissions.BYPASS_APPROVAL, flag.project)
