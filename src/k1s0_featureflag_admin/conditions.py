"""ターゲティング条件の構造形式と式形式の相互変換

構造形式は (field, operator, value) の列で、全条件の AND を表す。
式形式は MongoDB クエリ風の JSON オブジェクト文字列。
構造形式で表現できない式は from_expression が None を返し、
呼び出し側は生の式編集モードに切り替える。
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from .attributes import AttributeCatalog, AttributeDataType, AttributeDefinition, AttributeFormat
from .exceptions import FlagValidationError

logger = structlog.stdlib.get_logger(__name__)


class Operator(StrEnum):
    """条件エディタの演算子。"""

    EQ = "$eq"
    NE = "$ne"
    IN = "$in"
    NIN = "$nin"
    EXISTS = "$exists"
    NOT_EXISTS = "$notExists"
    TRUE = "$true"
    FALSE = "$false"
    INCLUDES = "$includes"
    NOT_INCLUDES = "$notIncludes"
    EMPTY = "$empty"
    NOT_EMPTY = "$notEmpty"
    REGEX = "$regex"
    NOT_REGEX = "$notRegex"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    VEQ = "$veq"
    VNE = "$vne"
    VGT = "$vgt"
    VGTE = "$vgte"
    VLT = "$vlt"
    VLTE = "$vlte"
    IN_GROUP = "$inGroup"
    NOT_IN_GROUP = "$notInGroup"


_LIST_OPERATORS = frozenset({Operator.IN, Operator.NIN})
_GROUP_OPERATORS = (Operator.IN_GROUP, Operator.NOT_IN_GROUP)
_EQUALITY_OPERATORS = frozenset({Operator.EQ, Operator.NE, Operator.IN, Operator.NIN})
_VALUELESS_OPERATORS = frozenset(
    {
        Operator.EXISTS,
        Operator.NOT_EXISTS,
        Operator.TRUE,
        Operator.FALSE,
        Operator.EMPTY,
        Operator.NOT_EMPTY,
    }
)
# 式中でそのままキーとして現れるスカラー演算子
_SCALAR_KEY_OPERATORS = frozenset(
    {
        Operator.NE,
        Operator.REGEX,
        Operator.GT,
        Operator.GTE,
        Operator.LT,
        Operator.LTE,
        Operator.VEQ,
        Operator.VNE,
        Operator.VGT,
        Operator.VGTE,
        Operator.VLT,
        Operator.VLTE,
    }
)
_VERSION_VARIANTS = {
    Operator.EQ: Operator.VEQ,
    Operator.NE: Operator.VNE,
    Operator.GT: Operator.VGT,
    Operator.GTE: Operator.VGTE,
    Operator.LT: Operator.VLT,
    Operator.LTE: Operator.VLTE,
}
_INTEGER_RE = re.compile(r"^-?\d+$")


def operators_for(attribute: AttributeDefinition, has_saved_groups: bool = False) -> list[Operator]:
    """属性のデータ型と配列性から選択可能な演算子を返す。"""
    groups = list(_GROUP_OPERATORS) if has_saved_groups else []
    if attribute.datatype == AttributeDataType.BOOLEAN:
        options = [Operator.TRUE, Operator.FALSE, Operator.EXISTS, Operator.NOT_EXISTS]
    elif attribute.array:
        options = [
            Operator.INCLUDES,
            Operator.NOT_INCLUDES,
            Operator.EMPTY,
            Operator.NOT_EMPTY,
            Operator.EXISTS,
            Operator.NOT_EXISTS,
        ]
    elif attribute.is_enum:
        options = [
            Operator.EQ,
            Operator.NE,
            Operator.IN,
            Operator.NIN,
            Operator.EXISTS,
            Operator.NOT_EXISTS,
            *groups,
        ]
    elif attribute.datatype == AttributeDataType.STRING:
        comparators = [Operator.EQ, Operator.NE, Operator.GT, Operator.GTE, Operator.LT, Operator.LTE]
        if attribute.format == AttributeFormat.VERSION:
            comparators = [_VERSION_VARIANTS[op] for op in comparators]
        options = [
            *comparators[:2],
            Operator.REGEX,
            Operator.NOT_REGEX,
            *comparators[2:],
            Operator.IN,
            Operator.NIN,
            Operator.EXISTS,
            Operator.NOT_EXISTS,
            *groups,
        ]
    elif attribute.datatype == AttributeDataType.NUMBER:
        options = [
            Operator.EQ,
            Operator.NE,
            Operator.GT,
            Operator.GTE,
            Operator.LT,
            Operator.LTE,
            Operator.IN,
            Operator.NIN,
            Operator.EXISTS,
            Operator.NOT_EXISTS,
            *groups,
        ]
    elif attribute.datatype == AttributeDataType.SECURE_STRING:
        options = [
            Operator.EQ,
            Operator.NE,
            Operator.IN,
            Operator.NIN,
            Operator.EXISTS,
            Operator.NOT_EXISTS,
            *groups,
        ]
    else:
        options = []

    if attribute.disable_equality_conditions:
        options = [op for op in options if op not in _EQUALITY_OPERATORS]
    return options


def default_operator(attribute: AttributeDefinition) -> Operator:
    """属性を選び直したときの初期演算子。"""
    if attribute.datatype == AttributeDataType.BOOLEAN:
        return Operator.TRUE
    options = operators_for(attribute)
    return options[0] if options else Operator.EXISTS


@dataclass(frozen=True)
class SimpleCondition:
    """構造形式の単一条件。リスト演算子の値はカンマ区切り。"""

    field: str
    operator: Operator
    value: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "operator", Operator(self.operator))
        if self.operator in _LIST_OPERATORS:
            items = [item.strip() for item in self.value.split(",")]
            object.__setattr__(self, "value", ",".join(item for item in items if item))


class ValueKind(StrEnum):
    """解決済みの条件値の種別。"""

    NONE = "none"
    TEXT = "text"
    NUMBER = "number"
    LIST = "list"


@dataclass(frozen=True)
class ConditionValue:
    """演算子と属性型から解決したタグ付き値。"""

    kind: ValueKind
    text: str = ""
    number: int | float = 0
    items: tuple[ConditionValue, ...] = ()

    def to_json(self) -> Any:
        if self.kind == ValueKind.TEXT:
            return self.text
        if self.kind == ValueKind.NUMBER:
            return self.number
        if self.kind == ValueKind.LIST:
            return [item.to_json() for item in self.items]
        return None


def _parse_number(text: str, field: str) -> int | float:
    text = text.strip()
    if _INTEGER_RE.match(text):
        return int(text)
    try:
        number = float(text)
    except ValueError as e:
        raise FlagValidationError(f"Value for '{field}' must be a number: {text!r}", cause=e) from e
    if math.isnan(number) or math.isinf(number):
        raise FlagValidationError(f"Value for '{field}' must be a finite number: {text!r}")
    return number


def _number_text(number: int | float) -> str:
    return str(number) if isinstance(number, int) else repr(number)


def _scalar(text: str, attribute: AttributeDefinition) -> ConditionValue:
    if attribute.numeric:
        number = _parse_number(text, attribute.property)
        # 式から読み戻したときに同じ文字列になる表記のみ受け付ける
        if _number_text(number) != text:
            raise FlagValidationError(
                f"Value for '{attribute.property}' must be written as {_number_text(number)!r}: {text!r}"
            )
        return ConditionValue(ValueKind.NUMBER, number=number)
    return ConditionValue(ValueKind.TEXT, text=text)


def resolve_value(condition: SimpleCondition, attribute: AttributeDefinition) -> ConditionValue:
    """エディタの文字列値を演算子に応じたタグ付き値に解決する。"""
    op = condition.operator
    if op in _VALUELESS_OPERATORS:
        return ConditionValue(ValueKind.NONE)
    if op in _LIST_OPERATORS:
        items = condition.value.split(",") if condition.value else []
        return ConditionValue(ValueKind.LIST, items=tuple(_scalar(i, attribute) for i in items))
    if op in _GROUP_OPERATORS:
        if not condition.value:
            raise FlagValidationError(f"A saved group must be chosen for '{condition.field}'")
        return ConditionValue(ValueKind.TEXT, text=condition.value)
    return _scalar(condition.value, attribute)


def normalize_conditions(conditions: list[SimpleCondition], catalog: AttributeCatalog) -> list[SimpleCondition]:
    """数値属性の値を式と往復できる表記 ("1.50" -> "1.5") に揃える。

    数値として読めない値や未知の属性はそのまま残し、to_expression の検証に任せる。
    """
    normalized: list[SimpleCondition] = []
    for condition in conditions:
        attribute = catalog.get(condition.field)
        if (
            attribute is None
            or not attribute.numeric
            or condition.operator in _VALUELESS_OPERATORS
            or condition.operator in _GROUP_OPERATORS
        ):
            normalized.append(condition)
            continue
        items = condition.value.split(",") if condition.operator in _LIST_OPERATORS else [condition.value]
        try:
            texts = [_number_text(_parse_number(item, condition.field)) for item in items if item]
        except FlagValidationError:
            normalized.append(condition)
            continue
        normalized.append(SimpleCondition(condition.field, condition.operator, ",".join(texts)))
    return normalized


def _render(condition: SimpleCondition, attribute: AttributeDefinition) -> Any:
    op = condition.operator
    value = resolve_value(condition, attribute).to_json()
    if op == Operator.EQ:
        return value
    if op == Operator.TRUE:
        return True
    if op == Operator.FALSE:
        return False
    if op == Operator.EXISTS:
        return {"$exists": True}
    if op == Operator.NOT_EXISTS:
        return {"$exists": False}
    if op == Operator.NOT_REGEX:
        return {"$not": {"$regex": value}}
    if op == Operator.INCLUDES:
        return {"$elemMatch": {"$eq": value}}
    if op == Operator.NOT_INCLUDES:
        return {"$not": {"$elemMatch": {"$eq": value}}}
    if op == Operator.EMPTY:
        return {"$size": 0}
    if op == Operator.NOT_EMPTY:
        return {"$size": {"$gt": 0}}
    return {str(op): value}


def _validate(condition: SimpleCondition, catalog: AttributeCatalog) -> AttributeDefinition:
    attribute = catalog.get(condition.field)
    if attribute is None:
        raise FlagValidationError(f"Unknown attribute: '{condition.field}'")
    groups = catalog.saved_groups_for(condition.field)
    if condition.operator not in operators_for(attribute, bool(groups)):
        raise FlagValidationError(
            f"Operator '{condition.operator}' is not allowed for attribute '{condition.field}'"
        )
    if condition.operator in _GROUP_OPERATORS and condition.value not in {g.id for g in groups}:
        raise FlagValidationError(
            f"Saved group '{condition.value}' cannot target attribute '{condition.field}'"
        )
    if attribute.is_enum and condition.operator in _EQUALITY_OPERATORS and attribute.enum:
        values = condition.value.split(",") if condition.operator in _LIST_OPERATORS else [condition.value]
        unknown = [v for v in values if v and v not in attribute.enum]
        if unknown:
            raise FlagValidationError(
                f"Values {unknown} are not valid options for attribute '{condition.field}'"
            )
    return attribute


def _dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def to_expression(conditions: list[SimpleCondition], catalog: AttributeCatalog) -> str:
    """条件列を AND で結合した式文字列に変換する。

    同じ属性が複数回現れる場合は順序を保つため $and 配列で表現する。

    Raises:
        FlagValidationError: 未知の属性、許可されない演算子、不正な値
    """
    rendered = [(c.field, _render(c, _validate(c, catalog))) for c in conditions]
    fields = [f for f, _ in rendered]
    if len(set(fields)) == len(fields):
        return _dumps(dict(rendered))
    return _dumps({"$and": [{f: v} for f, v in rendered]})


class _NotRepresentable(Exception):
    """構造形式に変換できない式。"""


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    keys = [k for k, _ in pairs]
    if len(set(keys)) != len(keys):
        raise _NotRepresentable("duplicate keys")
    return dict(pairs)


def _scalar_text(raw: Any, attribute: AttributeDefinition) -> str:
    if attribute.numeric:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise _NotRepresentable("expected number")
        return _number_text(raw)
    if not isinstance(raw, str):
        raise _NotRepresentable("expected string")
    return raw


def _parse_field(field: str, raw: Any, attribute: AttributeDefinition) -> SimpleCondition:
    if isinstance(raw, bool):
        return SimpleCondition(field, Operator.TRUE if raw else Operator.FALSE)
    if not isinstance(raw, dict):
        return SimpleCondition(field, Operator.EQ, _scalar_text(raw, attribute))
    if len(raw) != 1:
        raise _NotRepresentable("multiple operators on one field")
    ((key, arg),) = raw.items()
    if key == "$exists" and isinstance(arg, bool):
        return SimpleCondition(field, Operator.EXISTS if arg else Operator.NOT_EXISTS)
    if key == "$size":
        return SimpleCondition(field, Operator.EMPTY if arg == 0 else Operator.NOT_EMPTY)
    if key == "$elemMatch" and isinstance(arg, dict) and set(arg) == {"$eq"}:
        return SimpleCondition(field, Operator.INCLUDES, _scalar_text(arg["$eq"], attribute))
    if key == "$not" and isinstance(arg, dict) and len(arg) == 1:
        ((inner_key, inner),) = arg.items()
        if inner_key == "$regex":
            return SimpleCondition(field, Operator.NOT_REGEX, _scalar_text(inner, attribute))
        if inner_key == "$elemMatch" and isinstance(inner, dict) and set(inner) == {"$eq"}:
            return SimpleCondition(
                field, Operator.NOT_INCLUDES, _scalar_text(inner["$eq"], attribute)
            )
        raise _NotRepresentable("unsupported $not")
    if key in _LIST_OPERATORS and isinstance(arg, list):
        items = [_scalar_text(item, attribute) for item in arg]
        if any("," in item or item != item.strip() or not item for item in items):
            raise _NotRepresentable("list item not expressible as comma list")
        return SimpleCondition(field, Operator(key), ",".join(items))
    if key in _GROUP_OPERATORS and isinstance(arg, str):
        return SimpleCondition(field, Operator(key), arg)
    if key in _SCALAR_KEY_OPERATORS:
        return SimpleCondition(field, Operator(key), _scalar_text(arg, attribute))
    raise _NotRepresentable(f"unsupported operator {key}")


def _field_pairs(parsed: dict[str, Any]) -> list[tuple[str, Any]]:
    if "$and" not in parsed:
        if any(k.startswith("$") for k in parsed):
            raise _NotRepresentable("logical operator at top level")
        return list(parsed.items())
    clauses = parsed["$and"]
    if len(parsed) != 1 or not isinstance(clauses, list) or not clauses:
        raise _NotRepresentable("malformed $and")
    pairs: list[tuple[str, Any]] = []
    for clause in clauses:
        if not isinstance(clause, dict) or len(clause) != 1:
            raise _NotRepresentable("$and clause is not a single field")
        ((key, value),) = clause.items()
        if key.startswith("$"):
            raise _NotRepresentable("nested logical operator")
        pairs.append((key, value))
    if len({k for k, _ in pairs}) == len(pairs):
        raise _NotRepresentable("$and without repeated fields")
    return pairs


def from_expression(expression: str | None, catalog: AttributeCatalog) -> list[SimpleCondition] | None:
    """式文字列を条件列に変換する。表現できない場合は None を返す。"""
    if expression is None or not expression.strip():
        return []
    try:
        parsed = json.loads(expression, object_pairs_hook=_reject_duplicate_keys)
        if not isinstance(parsed, dict):
            raise _NotRepresentable("root is not an object")
        conditions: list[SimpleCondition] = []
        for field, raw in _field_pairs(parsed):
            attribute = catalog.get(field)
            if attribute is None:
                raise _NotRepresentable(f"unknown attribute {field}")
            condition = _parse_field(field, raw, attribute)
            # to_expression が生成し得る形と完全一致するものだけを受け入れる
            if _dumps(_render(condition, _validate(condition, catalog))) != _dumps(raw):
                raise _NotRepresentable("not a canonical rendering")
            conditions.append(condition)
    except (_NotRepresentable, FlagValidationError, ValueError) as e:
        logger.debug("condition not representable", expression=expression, reason=str(e))
        return None
    return conditions


def is_simple(expression: str | None, catalog: AttributeCatalog) -> bool:
    """式が構造形式で編集できるか。"""
    return len(catalog) > 0 and from_expression(expression, catalog) is not None
