"""ストア抽象基底クラス"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import Experiment, Flag, Revision


class FlagStore(ABC):
    """フラグストレージ抽象基底クラス。"""

    @abstractmethod
    async def get(self, flag_id: str) -> Flag | None:
        """フラグを取得する。"""
        ...

    @abstractmethod
    async def save(self, flag: Flag, expected_version: int) -> None:
        """保存済みバージョンが expected_version と一致する場合のみ保存する。

        Raises:
            ConcurrencyConflictError: バージョン不一致
        """
        ...


class ExperimentStore(ABC):
    """実験ストレージ抽象基底クラス。"""

    @abstractmethod
    async def get(self, experiment_id: str) -> Experiment | None:
        """実験を取得する。"""
        ...

    @abstractmethod
    async def save(self, experiment: Experiment) -> None:
        """実験を保存する。"""
        ...


class RevisionStore(ABC):
    """リビジョンストレージ抽象基底クラス。"""

    @abstractmethod
    async def add(self, revision: Revision) -> None:
        """リビジョンを追加する。

        Raises:
            ConcurrencyConflictError: 同じバージョンのリビジョンが既に存在する
        """
        ...

    @abstractmethod
    async def get(self, flag_id: str, version: int) -> Revision | None:
        """リビジョンを取得する。"""
        ...

    @abstractmethod
    async def list(self, flag_id: str) -> list[Revision]:
        """フラグのリビジョンをバージョン順に取得する。"""
        ...
