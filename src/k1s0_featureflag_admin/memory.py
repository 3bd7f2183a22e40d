"""インメモリストア実装"""

from __future__ import annotations

import copy

from .exceptions import ConcurrencyConflictError
from .models import Experiment, Flag, Revision
from .store import ExperimentStore, FlagStore, RevisionStore


class InMemoryFlagStore(FlagStore):
    """テスト用インメモリフラグストア。"""

    def __init__(self) -> None:
        self._flags: dict[str, Flag] = {}

    def set_flag(self, flag: Flag) -> None:
        """フラグを設定する。"""
        self._flags[flag.id] = copy.deepcopy(flag)

    async def get(self, flag_id: str) -> Flag | None:
        flag = self._flags.get(flag_id)
        return copy.deepcopy(flag) if flag is not None else None

    async def save(self, flag: Flag, expected_version: int) -> None:
        stored = self._flags.get(flag.id)
        if stored is not None and stored.version != expected_version:
            raise ConcurrencyConflictError(flag.id, expected_version, stored.version)
        self._flags[flag.id] = copy.deepcopy(flag)


class InMemoryExperimentStore(ExperimentStore):
    """テスト用インメモリ実験ストア。"""

    def __init__(self) -> None:
        self._experiments: dict[str, Experiment] = {}

    def set_experiment(self, experiment: Experiment) -> None:
        """実験を設定する。"""
        self._experiments[experiment.id] = copy.deepcopy(experiment)

    async def get(self, experiment_id: str) -> Experiment | None:
        experiment = self._experiments.get(experiment_id)
        return copy.deepcopy(experiment) if experiment is not None else None

    async def save(self, experiment: Experiment) -> None:
        self._experiments[experiment.id] = copy.deepcopy(experiment)


class InMemoryRevisionStore(RevisionStore):
    """テスト用インメモリリビジョンストア。"""

    def __init__(self) -> None:
        self._revisions: dict[tuple[str, int], Revision] = {}

    async def add(self, revision: Revision) -> None:
        key = (revision.flag_id, revision.version)
        if key in self._revisions:
            raise ConcurrencyConflictError(
                revision.flag_id, revision.base_version, revision.version
            )
        self._revisions[key] = revision

    async def get(self, flag_id: str, version: int) -> Revision | None:
        return self._revisions.get((flag_id, version))

    async def list(self, flag_id: str) -> list[Revision]:
        return sorted(
            (r for (fid, _), r in self._revisions.items() if fid == flag_id),
            key=lambda r: r.version,
        )
