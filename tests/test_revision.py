"""リビジョン管理のユニットテスト"""

import pytest
from k1s0_featureflag_admin import (
    EnvironmentSetting,
    Flag,
    FlagPatch,
    FlagValidationError,
    ForceRule,
    RbacPermissionChecker,
    ReviewRequiredError,
    RevisionManager,
    RevisionStatus,
    compute_rule_diff,
    requires_review,
)
from k1s0_featureflag_admin.config import RevisionSection
from k1s0_featureflag_admin.organization import OrganizationSettings, ReviewRequirement


def make_flag(project: str = "prj_a") -> Flag:
    return Flag(
        id="checkout",
        project=project,
        version=3,
        environment_settings={
            "production": EnvironmentSetting(enabled=True, rules=(ForceRule(id="fr_1", value="true"),)),
            "dev": EnvironmentSetting(enabled=True, rules=(ForceRule(id="fr_2", value="false"),)),
        },
    )


def dev_rules_patch() -> FlagPatch:
    return FlagPatch.from_dict(
        {"environments": {"dev": {"rules": [{"type": "force", "id": "fr_2", "value": "true"}]}}}
    )


def test_requires_review_policies(settings: OrganizationSettings) -> None:
    """レビューポリシーの判定。"""
    flag = make_flag()
    assert requires_review(flag, ["dev"], False, settings) is False

    settings.require_reviews = True
    assert requires_review(flag, [], False, settings) is True

    settings.require_reviews = [ReviewRequirement(environments=["production"])]
    assert requires_review(flag, ["dev"], False, settings) is False
    assert requires_review(flag, ["production"], False, settings) is True
    assert requires_review(flag, [], True, settings) is True

    settings.require_reviews = [ReviewRequirement()]
    assert requires_review(flag, ["dev"], False, settings) is True
    assert requires_review(flag, [], False, settings) is False


def test_requires_review_first_matching_project(settings: OrganizationSettings) -> None:
    """プロジェクトが一致する最初のポリシーが適用されること。"""
    settings.require_reviews = [
        ReviewRequirement(projects=["prj_b"], require_review_on=True),
        ReviewRequirement(require_review_on=False),
    ]
    assert requires_review(make_flag("prj_a"), ["dev"], True, settings) is False
    assert requires_review(make_flag("prj_b"), ["dev"], False, settings) is True


def test_no_changes_creates_no_revision(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """変更がなければリビジョンを作らないこと。"""
    flag = make_flag()
    patch = FlagPatch.from_dict({"description": "x"})
    manager = RevisionManager(admin)
    assert manager.prepare(flag, patch, compute_rule_diff(flag, patch), settings, author="alice") is None


def test_review_required_without_bypass(settings: OrganizationSettings) -> None:
    """レビュー必須でバイパス権限がなければ ReviewRequiredError。"""
    settings.require_reviews = True
    flag = make_flag()
    patch = FlagPatch.from_dict({"defaultValue": "true"})
    editor = RbacPermissionChecker(["editor"], {"editor": ["flag:update", "flag:publish"]})
    with pytest.raises(ReviewRequiredError):
        RevisionManager(editor).prepare(
            flag, patch, compute_rule_diff(flag, patch), settings, author="alice", default_value="true"
        )


def test_published_revision(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """公開リビジョンは version+1 で、未変更の環境も含むこと。"""
    settings.require_reviews = True
    flag = make_flag()
    patch = dev_rules_patch()
    manager = RevisionManager(admin, RevisionSection(comment="bulk edit"))

    revision = manager.prepare(flag, patch, compute_rule_diff(flag, patch), settings, author="alice")

    assert revision is not None
    assert revision.status == RevisionStatus.PUBLISHED
    assert revision.base_version == 3
    assert revision.version == 4
    assert revision.default_value == "false"
    assert revision.rules["production"] == flag.rules_for("production")
    assert revision.rules["dev"] == (ForceRule(id="fr_2", value="true"),)
    assert revision.comment == "bulk edit"
    assert revision.created_by == "alice"
    assert revision.date_published is not None


def test_draft_overlays_default_value(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """デフォルト値の変更がドラフトに反映されること。"""
    flag = make_flag()
    patch = FlagPatch.from_dict({"defaultValue": "true"})
    draft = RevisionManager(admin).create_draft(
        flag, patch, compute_rule_diff(flag, patch), settings.environment_ids, author="alice"
    )
    assert draft.status == RevisionStatus.DRAFT
    assert draft.default_value == "true"
    assert draft.comment == "Created via REST API"
    assert set(draft.rules) == {"dev", "production"}


def test_only_drafts_can_be_published(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """ドラフト以外の公開は FlagValidationError。"""
    flag = make_flag()
    patch = dev_rules_patch()
    manager = RevisionManager(admin)
    revision = manager.prepare(flag, patch, compute_rule_diff(flag, patch), settings, author="alice")
    assert revision is not None
    with pytest.raises(FlagValidationError):
        manager.publish(revision)
