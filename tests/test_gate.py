"""公開ゲートのユニットテスト"""

import pytest
from k1s0_featureflag_admin import (
    EntitlementRequiredError,
    EnvironmentSetting,
    Flag,
    FlagPatch,
    FlagValidationError,
    PermissionDeniedError,
    PublishGate,
    RbacPermissionChecker,
    StaticOrganizationProvider,
    ValueType,
)
from k1s0_featureflag_admin.models import ForceRule
from k1s0_featureflag_admin.organization import Entitlements, OrganizationSettings

SCHEMA = '{"type": "object", "required": ["color"]}'


def make_flag(**overrides: object) -> Flag:
    fields: dict[str, object] = {
        "id": "checkout",
        "project": "prj_a",
        "environment_settings": {
            "production": EnvironmentSetting(enabled=True, rules=(ForceRule(id="fr_1", value="true"),)),
            "dev": EnvironmentSetting(enabled=False),
        },
    }
    fields.update(overrides)
    return Flag(**fields)  # type: ignore[arg-type]


def scheduled_rule(*timestamps: str) -> dict[str, object]:
    return {
        "type": "force",
        "value": "true",
        "scheduleRules": [{"enabled": i % 2 == 0, "timestamp": t} for i, t in enumerate(timestamps)],
    }


def make_gate(settings: OrganizationSettings, permissions: RbacPermissionChecker) -> PublishGate:
    return PublishGate(StaticOrganizationProvider(settings), permissions)


async def test_unknown_environment_is_rejected(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """組織に存在しない環境キーは FlagValidationError。"""
    patch = FlagPatch.from_dict({"environments": {"staging-typo": {"enabled": True}}})
    with pytest.raises(FlagValidationError) as exc_info:
        await make_gate(settings, admin).check(make_flag(), patch)
    assert "staging-typo" in str(exc_info.value)


async def test_schedule_rules_require_entitlement(
    settings: OrganizationSettings, admin: RbacPermissionChecker
) -> None:
    """エンタイトルメントがない組織のスケジュールルールは EntitlementRequiredError。"""
    patch = FlagPatch.from_dict(
        {"environments": {"dev": {"rules": [scheduled_rule("2026-01-01T00:00:00Z")]}}}
    )
    with pytest.raises(EntitlementRequiredError) as exc_info:
        await make_gate(settings, admin).check(make_flag(), patch)
    assert exc_info.value.entitlement == Entitlements.SCHEDULE_RULES

    settings.entitlements.add(Entitlements.SCHEDULE_RULES)
    await make_gate(settings, admin).check(make_flag(), patch)


async def test_schedule_rules_are_validated(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """不正な日時や逆順のスケジュールは FlagValidationError。"""
    settings.entitlements.add(Entitlements.SCHEDULE_RULES)
    gate = make_gate(settings, admin)
    bad = FlagPatch.from_dict({"environments": {"dev": {"rules": [scheduled_rule("not-a-date")]}}})
    with pytest.raises(FlagValidationError) as exc_info:
        await gate.check(make_flag(), bad)
    assert "Invalid Date" in str(exc_info.value)
    assert "rule 1" in str(exc_info.value)

    reversed_order = FlagPatch.from_dict(
        {
            "environments": {
                "dev": {"rules": [scheduled_rule("2026-02-01T00:00:00Z", "2026-01-01T00:00:00Z")]}
            }
        }
    )
    with pytest.raises(FlagValidationError):
        await gate.check(make_flag(), reversed_order)


async def test_duplicate_rule_ids(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """同一環境内で重複するルール ID は FlagValidationError。"""
    rule = {"type": "force", "id": "fr_1", "value": "true"}
    patch = FlagPatch.from_dict({"environments": {"production": {"rules": [rule, rule]}}})
    with pytest.raises(FlagValidationError):
        await make_gate(settings, admin).check(make_flag(), patch)


async def test_project_change_must_resolve(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """存在しないプロジェクトへの変更は FlagValidationError。"""
    gate = make_gate(settings, admin)
    with pytest.raises(FlagValidationError):
        await gate.check(make_flag(), FlagPatch.from_dict({"project": "prj_missing"}))
    result = await gate.check(make_flag(), FlagPatch.from_dict({"project": "prj_b"}))
    assert result.effective_project == "prj_b"


async def test_project_required(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """プロジェクト必須の組織ではプロジェクトを外せないこと。"""
    settings.require_project_for_features = True
    with pytest.raises(FlagValidationError):
        await make_gate(settings, admin).check(make_flag(), FlagPatch.from_dict({"project": None}))


async def test_default_value_type(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """デフォルト値は型に照らして検証・正規化されること。"""
    gate = make_gate(settings, admin)
    with pytest.raises(FlagValidationError):
        await gate.check(make_flag(), FlagPatch.from_dict({"defaultValue": "maybe"}))
    result = await gate.check(make_flag(), FlagPatch.from_dict({"defaultValue": True}))
    assert result.default_value == "true"

    number_flag = make_flag(value_type=ValueType.NUMBER, default_value="0")
    with pytest.raises(FlagValidationError):
        await gate.check(number_flag, FlagPatch.from_dict({"defaultValue": "abc"}))


async def test_json_schema_only_for_json_flags(
    settings: OrganizationSettings, admin: RbacPermissionChecker
) -> None:
    """json 型以外に jsonSchema を指定すると FlagValidationError。"""
    settings.entitlements.add(Entitlements.JSON_VALIDATION)
    with pytest.raises(FlagValidationError):
        await make_gate(settings, admin).check(make_flag(), FlagPatch.from_dict({"jsonSchema": SCHEMA}))


async def test_json_schema_requires_entitlement(
    settings: OrganizationSettings, admin: RbacPermissionChecker
) -> None:
    """JSON スキーマ検証はエンタイトルメントが必要。"""
    flag = make_flag(value_type=ValueType.JSON, default_value="{}")
    with pytest.raises(EntitlementRequiredError):
        await make_gate(settings, admin).check(flag, FlagPatch.from_dict({"jsonSchema": SCHEMA}))


async def test_default_value_checked_against_new_schema(
    settings: OrganizationSettings, admin: RbacPermissionChecker
) -> None:
    """同時に指定されたスキーマでデフォルト値が検証されること。"""
    settings.entitlements.add(Entitlements.JSON_VALIDATION)
    gate = make_gate(settings, admin)
    flag = make_flag(value_type=ValueType.JSON, default_value="{}")
    with pytest.raises(FlagValidationError):
        await gate.check(flag, FlagPatch.from_dict({"jsonSchema": SCHEMA, "defaultValue": '{"size": 1}'}))
    result = await gate.check(
        flag, FlagPatch.from_dict({"jsonSchema": SCHEMA, "defaultValue": '{"color": "red"}'})
    )
    assert result.json_schema is not None
    assert result.default_value == '{"color": "red"}'


async def test_update_permission_required(settings: OrganizationSettings) -> None:
    """更新権限がなければ PermissionDeniedError。"""
    viewer = RbacPermissionChecker(["viewer"], {"viewer": ["flag:read"]})
    with pytest.raises(PermissionDeniedError):
        await make_gate(settings, viewer).check(make_flag(), FlagPatch.from_dict({"owner": "bob"}))


async def test_publish_permission_scoped_to_enabled_environments(settings: OrganizationSettings) -> None:
    """公開権限は変更前後に有効な環境すべてに対して必要なこと。"""
    dev_publisher = RbacPermissionChecker(
        ["engineer"], {"engineer": ["flag:update", "flag:publish:dev"]}
    )
    gate = make_gate(settings, dev_publisher)

    # production が有効なのでデフォルト値変更には production の公開権限が要る
    with pytest.raises(PermissionDeniedError):
        await gate.check(make_flag(), FlagPatch.from_dict({"defaultValue": "true"}))

    dev_only = make_flag(environment_settings={"dev": EnvironmentSetting(enabled=True)})
    await gate.check(dev_only, FlagPatch.from_dict({"defaultValue": "true"}))

    # 変更後に有効になる環境も対象
    with pytest.raises(PermissionDeniedError):
        await gate.check(
            dev_only, FlagPatch.from_dict({"environments": {"production": {"enabled": True}}})
        )


async def test_disabling_environment_requires_its_publish_grant(settings: OrganizationSettings) -> None:
    """有効な環境を無効にする変更にもその環境の公開権限が必要なこと。"""
    dev_publisher = RbacPermissionChecker(
        ["engineer"], {"engineer": ["flag:update", "flag:publish:dev"]}
    )
    patch = FlagPatch.from_dict({"environments": {"production": {"enabled": False}}})
    with pytest.raises(PermissionDeniedError) as exc_info:
        await make_gate(settings, dev_publisher).check(make_flag(), patch)
    assert "production" in str(exc_info.value)

    production_publisher = RbacPermissionChecker(
        ["engineer"], {"engineer": ["flag:update", "flag:publish:production"]}
    )
    await make_gate(settings, production_publisher).check(make_flag(), patch)


async def test_metadata_change_needs_no_publish_permission(settings: OrganizationSettings) -> None:
    """説明やオーナーのみの変更には公開権限が不要なこと。"""
    editor = RbacPermissionChecker(["editor"], {"editor": ["flag:update"]})
    result = await make_gate(settings, editor).check(
        make_flag(), FlagPatch.from_dict({"owner": "bob", "description": "new"})
    )
    assert result.effective_project == "prj_a"
    assert result.default_value is None


async def test_moving_project_checks_both_projects(settings: OrganizationSettings) -> None:
    """プロジェクト移動は移動元と移動先の双方で公開権限が必要なこと。"""
    permissions = RbacPermissionChecker(
        ["viewer"],
        {"owner": ["flag:*"], "viewer": ["flag:read"]},
        project_roles={"prj_a": ["owner"]},
    )
    with pytest.raises(PermissionDeniedError):
        await make_gate(settings, permissions).check(make_flag(), FlagPatch.from_dict({"project": "prj_b"}))


async def test_cleared_archived_is_rejected(settings: OrganizationSettings, admin: RbacPermissionChecker) -> None:
    """archived へのクリアは FlagValidationError。"""
    with pytest.raises(FlagValidationError):
        await make_gate(settings, admin).check(make_flag(), FlagPatch.from_dict({"archived": None}))
