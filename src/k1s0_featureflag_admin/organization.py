"""組織設定とそのプロバイダー"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel, Field

from .config import read_yaml, validate_model


class Entitlements:
    """プレミアム機能のエンタイトルメント名。"""

    SCHEDULE_RULES: str = "schedule-feature-flag"
    JSON_VALIDATION: str = "json-validation"


class ReviewRequirement(BaseModel):
    """レビュー必須ポリシー。projects が空なら全プロジェクトに適用。"""

    require_review_on: bool = True
    reset_review_on_change: bool = False
    environments: list[str] = Field(default_factory=list)
    projects: list[str] = Field(default_factory=list)


class EnvironmentDefinition(BaseModel):
    """組織で定義された環境。"""

    id: str
    description: str = ""
    projects: list[str] = Field(default_factory=list)


class ProjectDefinition(BaseModel):
    """プロジェクト。"""

    id: str
    name: str = ""


class OrganizationSettings(BaseModel):
    """組織設定。"""

    id: str
    environments: list[EnvironmentDefinition] = Field(default_factory=list)
    projects: list[ProjectDefinition] = Field(default_factory=list)
    # True は旧形式で、常にレビュー必須を意味する
    require_reviews: bool | list[ReviewRequirement] = False
    require_project_for_features: bool = False
    entitlements: set[str] = Field(default_factory=set)
    tags: list[str] = Field(default_factory=list)

    @property
    def environment_ids(self) -> list[str]:
        return [env.id for env in self.environments]

    def has_entitlement(self, name: str) -> bool:
        return name in self.entitlements


def load_organization_settings(path: Path) -> OrganizationSettings:
    """YAML ファイルから組織設定を読み込む。"""
    settings: OrganizationSettings = validate_model(OrganizationSettings, read_yaml(path))
    return settings


class OrganizationProvider(ABC):
    """組織設定プロバイダー抽象基底クラス。"""

    @abstractmethod
    async def get_settings(self) -> OrganizationSettings:
        """組織設定を取得する。"""
        ...

    @abstractmethod
    async def get_projects(self) -> list[ProjectDefinition]:
        """組織のプロジェクト一覧を取得する。"""
        ...

    @abstractmethod
    async def add_tags(self, tags: Iterable[str]) -> None:
        """組織のタグ一覧に未登録のタグを追加する。"""
        ...


class StaticOrganizationProvider(OrganizationProvider):
    """固定の組織設定を返すプロバイダー。"""

    def __init__(self, settings: OrganizationSettings) -> None:
        self._settings = settings

    async def get_settings(self) -> OrganizationSettings:
        return self._settings

    async def get_projects(self) -> list[ProjectDefinition]:
        return list(self._settings.projects)

    async def add_tags(self, tags: Iterable[str]) -> None:
        known = set(self._settings.tags)
        for tag in tags:
            if tag not in known:
                self._settings.tags.append(tag)
                known.add(tag)
