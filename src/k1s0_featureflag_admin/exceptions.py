"""featureflag-admin ライブラリの例外型定義"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ExperimentConditionChange:
    """リクエスト中に書き込んだ実験フェーズ条件の記録。

    後続のフラグ書き込みが失敗した場合の手動突き合わせに使う。
    """

    experiment_id: str
    phase_index: int
    previous_condition: str
    new_condition: str
    compensated: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "experiment_id": self.experiment_id,
            "phase_index": self.phase_index,
            "previous_condition": self.previous_condition,
            "new_condition": self.new_condition,
            "compensated": self.compensated,
        }


class FlagAdminErrorCodes:
    """FlagAdminError のエラーコード定数。"""

    NOT_FOUND: str = "NOT_FOUND"
    VALIDATION: str = "VALIDATION_ERROR"
    PERMISSION_DENIED: str = "PERMISSION_DENIED"
    ENTITLEMENT_REQUIRED: str = "ENTITLEMENT_REQUIRED"
    REVIEW_REQUIRED: str = "REVIEW_REQUIRED"
    CONCURRENCY_CONFLICT: str = "CONCURRENCY_CONFLICT"
    STORAGE: str = "STORAGE_ERROR"
    RECONCILIATION_REQUIRED: str = "RECONCILIATION_REQUIRED"
    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    CONFIG: str = "CONFIG_ERROR"


class FlagAdminError(Exception):
    """featureflag-admin ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.experiment_changes: list[ExperimentConditionChange] = []
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"

    def with_experiment_changes(
        self, changes: list[ExperimentConditionChange]
    ) -> FlagAdminError:
        """既に書き込まれた実験フェーズ変更をエラーに添付する。"""
        self.experiment_changes = list(changes)
        return self


class NotFoundError(FlagAdminError):
    """フラグまたは実験が存在しない。"""

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            FlagAdminErrorCodes.NOT_FOUND, f"{entity} '{entity_id}' not found"
        )
        self.entity = entity
        self.entity_id = entity_id


class FlagValidationError(FlagAdminError):
    """入力値の検証エラー。"""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(FlagAdminErrorCodes.VALIDATION, message, cause)


class PermissionDeniedError(FlagAdminError):
    """権限不足。"""

    def __init__(self, message: str = "You do not have permission to perform this action") -> None:
        super().__init__(FlagAdminErrorCodes.PERMISSION_DENIED, message)


class EntitlementRequiredError(FlagAdminError):
    """組織が必要なプレミアム機能を保持していない。"""

    def __init__(self, entitlement: str, message: str) -> None:
        super().__init__(FlagAdminErrorCodes.ENTITLEMENT_REQUIRED, message)
        self.entitlement = entitlement


class ReviewRequiredError(FlagAdminError):
    """承認ポリシーによりレビューが必要。"""

    def __init__(self, flag_id: str) -> None:
        super().__init__(
            FlagAdminErrorCodes.REVIEW_REQUIRED,
            f"Feature '{flag_id}' requires a review and the caller does not "
            "have permission to bypass reviews",
        )
        self.flag_id = flag_id


class ConcurrencyConflictError(FlagAdminError):
    """楽観的並行性制御のバージョン不一致。"""

    def __init__(self, flag_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            FlagAdminErrorCodes.CONCURRENCY_CONFLICT,
            f"Feature '{flag_id}' is at version {actual_version}, "
            f"expected {expected_version}",
        )
        self.flag_id = flag_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ReconciliationRequiredError(FlagAdminError):
    """フラグは保存済みだが、後続の記録が失敗した。

    フラグと実験は新しい状態で一致しているため書き戻しは行わない。
    欠けたリビジョンは手動で補う必要がある。
    """

    def __init__(self, flag_id: str, version: int, cause: Exception) -> None:
        super().__init__(
            FlagAdminErrorCodes.RECONCILIATION_REQUIRED,
            f"Feature '{flag_id}' was saved at version {version} "
            f"but its revision could not be recorded: {cause}",
            cause,
        )
        self.flag_id = flag_id
        self.version = version
