"""featureflag-admin テスト共通フィクスチャ"""

import pytest
from k1s0_featureflag_admin import (
    AttributeCatalog,
    AttributeDataType,
    AttributeDefinition,
    AttributeFormat,
    OrganizationSettings,
    RbacPermissionChecker,
    SavedGroup,
)
from k1s0_featureflag_admin.organization import EnvironmentDefinition, ProjectDefinition


@pytest.fixture
def catalog() -> AttributeCatalog:
    """型の異なる属性をひと通り含むカタログ。"""
    return AttributeCatalog(
        attributes=[
            AttributeDefinition("id", AttributeDataType.STRING, hash_attribute=True),
            AttributeDefinition("country", AttributeDataType.STRING),
            AttributeDefinition("plan", AttributeDataType.ENUM, enum=("free", "pro", "enterprise")),
            AttributeDefinition("age", AttributeDataType.NUMBER),
            AttributeDefinition("beta", AttributeDataType.BOOLEAN),
            AttributeDefinition("tags", AttributeDataType.STRING_ARRAY),
            AttributeDefinition("scores", AttributeDataType.NUMBER_ARRAY),
            AttributeDefinition("appVersion", AttributeDataType.STRING, format=AttributeFormat.VERSION),
            AttributeDefinition("email", AttributeDataType.SECURE_STRING),
            AttributeDefinition("deviceId", AttributeDataType.STRING, disable_equality_conditions=True),
            AttributeDefinition("legacy", AttributeDataType.STRING, archived=True),
        ],
        saved_groups=[SavedGroup(id="grp_beta", name="Beta testers", attribute_key="id")],
    )


@pytest.fixture
def settings() -> OrganizationSettings:
    """dev / production の 2 環境を持つ組織。"""
    return OrganizationSettings(
        id="org_1",
        environments=[EnvironmentDefinition(id="dev"), EnvironmentDefinition(id="production")],
        projects=[ProjectDefinition(id="prj_a", name="A"), ProjectDefinition(id="prj_b", name="B")],
    )


@pytest.fixture
def admin() -> RbacPermissionChecker:
    """すべての権限を持つ呼び出し元。"""
    return RbacPermissionChecker(["admin"], {"admin": ["*:*"]})
