"""設定型定義と YAML 読み込み"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import FlagAdminError, FlagAdminErrorCodes


class RevisionSection(BaseModel):
    """リビジョン作成設定。"""

    comment: str = "Created via REST API"


class RulesSection(BaseModel):
    """ルール採番設定。"""

    id_prefix: str = Field(default="fr_", min_length=1)


class ExperimentSyncSection(BaseModel):
    """実験条件同期の設定。"""

    # 後続のフラグ書き込み失敗時に実験フェーズ条件を書き戻す
    compensate_on_failure: bool = True


class LogSection(BaseModel):
    """ログ設定。"""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"
    # 条件式の本文をログに出さない
    redact_conditions: bool = False


class ObservabilitySection(BaseModel):
    """可観測性設定。"""

    log: LogSection = Field(default_factory=LogSection)


class FlagAdminConfig(BaseModel):
    """featureflag-admin 設定全体。"""

    revision: RevisionSection = Field(default_factory=RevisionSection)
    rules: RulesSection = Field(default_factory=RulesSection)
    experiment_sync: ExperimentSyncSection = Field(default_factory=ExperimentSyncSection)
    observability: ObservabilitySection = Field(default_factory=ObservabilitySection)
def deep_merge(base: dict[str, Any], *overrides: dict[str, Any]) -> dict[str, Any]:
    """base に overrides を順に重ねた新しい辞書を返す。

    後に指定したものほど優先される。辞書同士は再帰的に重ね、リストやスカラーは置換する。
    """
    result: dict[str, Any] = dict(base)
    for override in overrides:
        for key, value in override.items():
            current = result.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                result[key] = deep_merge(current, value)
            else:
                result[key] = value
    return result


def read_yaml(path: Path) -> dict[str, Any]:
    """YAML の設定ファイルを読み込む。空ファイルは空の設定として扱う。"""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise FlagAdminError(
            code=FlagAdminErrorCodes.READ_FILE,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise FlagAdminError(
            code=FlagAdminErrorCodes.PARSE_YAML,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise FlagAdminError(
            code=FlagAdminErrorCodes.PARSE_YAML,
            message=f"Top level of {path} must be a mapping, got {type(data).__name__}",
        )
    return data


def validate_model(model: type[BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise FlagAdminError(
            code=FlagAdminErrorCodes.CONFIG,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e


def load_config(base_path: Path, *env_paths: Path | None) -> FlagAdminConfig:
    """ベース設定に環境別設定を重ねて FlagAdminConfig を返す。

    base_path: ベース設定ファイルパス（必須）
    env_paths: 環境別設定ファイルパス。存在するものだけを指定順に重ねる。
    """
    overlays = [read_yaml(p) for p in env_paths if p is not None and p.exists()]
    config: FlagAdminConfig = validate_model(FlagAdminConfig, deep_merge(read_yaml(base_path), *overlays))
    return config
