"""featureflag-admin の structlog 設定

ライブラリ内のロガーはすべて k1s0_featureflag_admin 配下の名前を持つ。
出力先はこの名前空間のロガーにのみ設定し、ルートロガーには触れない。
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

from .config import LogSection

LOGGER_NAME = "k1s0_featureflag_admin"
REDACTED = "[redacted]"

# ターゲティング条件の本文を保持するイベントキー
_CONDITION_KEYS = frozenset({"condition", "expression", "previous_condition", "new_condition"})


def add_component(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """ロガー名からモジュール名 (service, experiment_sync など) を component として付与する。"""
    name = str(event_dict.get("logger", ""))
    if name.startswith(f"{LOGGER_NAME}."):
        event_dict.setdefault("component", name.removeprefix(f"{LOGGER_NAME}."))
    return event_dict


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if k in _CONDITION_KEYS else _redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    return value


def redact_conditions(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """条件式の本文を伏せる。実験変更の一覧など入れ子の値も対象。

    条件式には secureString 属性の比較値がそのまま含まれ得る。
    """
    for key, value in list(event_dict.items()):
        event_dict[key] = REDACTED if key in _CONDITION_KEYS else _redact(value)
    return event_dict


def new_logger(
    level: str = "INFO",
    format: str = "json",
    *,
    redact: bool = False,
) -> structlog.stdlib.BoundLogger:
    """ライブラリのロガーを設定して返す。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")
        redact: 条件式の本文を出力しない

    Returns:
        component 付きの structlog.stdlib.BoundLogger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    library_logger = logging.getLogger(LOGGER_NAME)
    library_logger.handlers = [handler]
    library_logger.setLevel(log_level)
    library_logger.propagate = False

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_component,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if redact:
        processors.append(redact_conditions)
    if format == "json":
        processors += [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.stdlib.get_logger(LOGGER_NAME)


def configure_logging(section: LogSection) -> structlog.stdlib.BoundLogger:
    """設定セクションからロガーを構成する。"""
    return new_logger(level=section.level, format=section.format, redact=section.redact_conditions)
