"""リビジョン作成と承認判定"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import UTC, datetime

import structlog

from .config import RevisionSection
from .diff import RuleDiff
from .exceptions import FlagValidationError, ReviewRequiredError
from .models import Flag, Revision, RevisionStatus, Rule
from .organization import OrganizationSettings
from .patch import FlagPatch
from .permissions import PermissionChecker

logger = structlog.stdlib.get_logger(__name__)


def requires_review(
    flag: Flag,
    changed_environments: Iterable[str],
    default_value_changed: bool,
    settings: OrganizationSettings,
) -> bool:
    """組織のレビューポリシーに照らして、この変更にレビューが必要か判定する。

    プロジェクトが一致する最初のポリシーを適用する。
    """
    policy = settings.require_reviews
    if policy is True:
        return True
    if not policy:
        return False
    requirement = next(
        (r for r in policy if not r.projects or (flag.project and flag.project in r.projects)),
        None,
    )
    if requirement is None or not requirement.require_review_on:
        return False
    if default_value_changed:
        return True
    changed = list(changed_environments)
    if not requirement.environments:
        return bool(changed)
    return any(env in requirement.environments for env in changed)


class RevisionManager:
    """変更内容からリビジョンを作成し、承認要否を判定して公開する。"""

    def __init__(self, permissions: PermissionChecker, config: RevisionSection | None = None) -> None:
        self._permissions = permissions
        self._config = config or RevisionSection()

    def prepare(
        self,
        flag: Flag,
        patch: FlagPatch,
        diff: RuleDiff,
        settings: OrganizationSettings,
        *,
        author: str,
        default_value: str | None = None,
    ) -> Revision | None:
        """公開済みリビジョンを返す。変更がなければ None。

        Raises:
            ReviewRequiredError: レビューが必須で、承認バイパス権限がない
        """
        if not diff.has_changes:
            return None

        if requires_review(flag, diff.changed_environments, diff.default_value_changed, settings):
            if not self._permissions.can_bypass_approval_checks(flag):
                logger.warning(
                    "review required",
                    flag_id=flag.id,
                    changed_environments=list(diff.changed_environments),
                    default_value_changed=diff.default_value_changed,
                )
                raise ReviewRequiredError(flag.id)

        draft = self.create_draft(
            flag, patch, diff, settings.environment_ids, author=author, default_value=default_value
        )
        return self.publish(draft)

    def create_draft(
        self,
        flag: Flag,
        patch: FlagPatch,
        diff: RuleDiff,
        environment_ids: Iterable[str],
        *,
        author: str,
        default_value: str | None = None,
    ) -> Revision:
        """保存済みフラグのルールを土台に、変更のあった環境とデフォルト値を重ねる。"""
        rules: dict[str, tuple[Rule, ...]] = {
            env: flag.rules_for(env) for env in [*environment_ids, *flag.environment_settings]
        }
        env_patches = patch.environment_patches
        for env in diff.changed_environments:
            rules[env] = tuple(env_patches[env].rules.value or ())

        if diff.default_value_changed:
            if default_value is None:
                default_value = str(patch.default_value.value)
        else:
            default_value = flag.default_value

        return Revision(
            flag_id=flag.id,
            organization=flag.organization,
            base_version=flag.version,
            version=flag.version + 1,
            default_value=default_value,
            rules=rules,
            status=RevisionStatus.DRAFT,
            comment=self._config.comment,
            created_by=author,
            date_created=datetime.now(UTC),
        )

    def publish(self, revision: Revision) -> Revision:
        if revision.status != RevisionStatus.DRAFT:
            raise FlagValidationError(
                f"Revision {revision.version} of '{revision.flag_id}' is {revision.status}, not draft"
            )
        published = replace(
            revision, status=RevisionStatus.PUBLISHED, date_published=datetime.now(UTC)
        )
        logger.info(
            "revision published",
            flag_id=published.flag_id,
            base_version=published.base_version,
            version=published.version,
        )
        return published
