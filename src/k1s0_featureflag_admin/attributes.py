"""ターゲティング属性カタログ"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum


class AttributeDataType(StrEnum):
    """属性のデータ型。"""

    BOOLEAN = "boolean"
    STRING = "string"
    NUMBER = "number"
    SECURE_STRING = "secureString"
    ENUM = "enum"
    STRING_ARRAY = "string[]"
    NUMBER_ARRAY = "number[]"
    SECURE_STRING_ARRAY = "secureString[]"


class AttributeFormat(StrEnum):
    """文字列属性の書式。"""

    NONE = ""
    VERSION = "version"
    DATE = "date"
    ISO_COUNTRY_CODE = "isoCountryCode"


@dataclass(frozen=True)
class AttributeDefinition:
    """属性定義。"""

    property: str
    datatype: AttributeDataType
    enum: tuple[str, ...] = ()
    format: AttributeFormat = AttributeFormat.NONE
    disable_equality_conditions: bool = False
    projects: tuple[str, ...] = ()
    hash_attribute: bool = False
    archived: bool = False

    @property
    def array(self) -> bool:
        return self.datatype.endswith("[]")

    @property
    def is_enum(self) -> bool:
        return self.datatype == AttributeDataType.ENUM or bool(self.enum)

    @property
    def numeric(self) -> bool:
        """値を数値として扱うか。配列型は要素型で判定する。"""
        return self.datatype in (AttributeDataType.NUMBER, AttributeDataType.NUMBER_ARRAY)


@dataclass(frozen=True)
class SavedGroup:
    """保存済みグループ。"""

    id: str
    name: str
    attribute_key: str = ""
    type: str = "list"
    projects: tuple[str, ...] = ()


class AttributeCatalog:
    """条件エディタが参照する属性と保存済みグループの集合。"""

    def __init__(
        self,
        attributes: Iterable[AttributeDefinition] = (),
        saved_groups: Iterable[SavedGroup] = (),
        project: str = "",
    ) -> None:
        self._attributes: dict[str, AttributeDefinition] = {}
        for attribute in attributes:
            if attribute.archived:
                continue
            if project and attribute.projects and project not in attribute.projects:
                continue
            self._attributes[attribute.property] = attribute
        self._saved_groups = list(saved_groups)
        self._project = project

    def __len__(self) -> int:
        return len(self._attributes)

    def __contains__(self, field: object) -> bool:
        return field in self._attributes

    def get(self, field: str) -> AttributeDefinition | None:
        return self._attributes.get(field)

    def saved_groups_for(self, field: str) -> list[SavedGroup]:
        """属性をキーとする list 型グループをプロジェクトで絞り込んで返す。"""
        return [
            g
            for g in self._saved_groups
            if g.type == "list"
            and g.attribute_key == field
            and (not self._project or not g.projects or self._project in g.projects)
        ]
