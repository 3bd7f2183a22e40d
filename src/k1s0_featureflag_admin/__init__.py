"""k1s0 featureflag-admin library."""

from .attributes import AttributeCatalog, AttributeDataType, AttributeDefinition, AttributeFormat, SavedGroup
from .audit import AuditEvent, AuditLog, BufferedAuditLog
from .conditions import (
    Operator,
    SimpleCondition,
    from_expression,
    is_simple,
    normalize_conditions,
    operators_for,
    to_expression,
)
from .config import FlagAdminConfig, load_config
from .diff import RuleDiff, compute_rule_diff
from .exceptions import (
    ConcurrencyConflictError,
    EntitlementRequiredError,
    ExperimentConditionChange,
    FlagAdminError,
    FlagAdminErrorCodes,
    FlagValidationError,
    NotFoundError,
    PermissionDeniedError,
    ReconciliationRequiredError,
    ReviewRequiredError,
)
from .experiment_sync import ExperimentRefSynchronizer
from .gate import GateResult, PublishGate
from .logger import configure_logging, new_logger
from .memory import InMemoryExperimentStore, InMemoryFlagStore, InMemoryRevisionStore
from .models import (
    EnvironmentSetting,
    Experiment,
    ExperimentPhase,
    ExperimentRefRule,
    ExperimentRefVariation,
    ExperimentRule,
    Flag,
    ForceRule,
    Revision,
    RevisionStatus,
    RolloutRule,
    Rule,
    RuleType,
    SafeRolloutRule,
    ValueType,
)
from .organization import OrganizationProvider, OrganizationSettings, StaticOrganizationProvider
from .patch import EnvironmentPatch, FieldState, FlagPatch, PatchField
from .permissions import PermissionChecker, PublishScope, RbacPermissionChecker
from .revision import RevisionManager, requires_review
from .service import FlagUpdateService, UpdateResult

__all__ = [
    "AttributeCatalog",
    "AttributeDataType",
    "AttributeDefinition",
    "AttributeFormat",
    "AuditEvent",
    "AuditLog",
    "BufferedAuditLog",
    "ConcurrencyConflictError",
    "EntitlementRequiredError",
    "EnvironmentPatch",
    "EnvironmentSetting",
    "Experiment",
    "ExperimentConditionChange",
    "ExperimentPhase",
    "ExperimentRefRule",
    "ExperimentRefSynchronizer",
    "ExperimentRefVariation",
    "ExperimentRule",
    "FieldState",
    "Flag",
    "FlagAdminConfig",
    "FlagAdminError",
    "FlagAdminErrorCodes",
    "FlagPatch",
    "FlagUpdateService",
    "FlagValidationError",
    "ForceRule",
    "GateResult",
    "InMemoryExperimentStore",
    "InMemoryFlagStore",
    "InMemoryRevisionStore",
    "NotFoundError",
    "Operator",
    "OrganizationProvider",
    "OrganizationSettings",
    "PatchField",
    "PermissionChecker",
    "PermissionDeniedError",
    "PublishGate",
    "PublishScope",
    "RbacPermissionChecker",
    "ReconciliationRequiredError",
    "ReviewRequiredError",
    "Revision",
    "RevisionManager",
    "RevisionStatus",
    "RolloutRule",
    "Rule",
    "RuleDiff",
    "RuleType",
    "SafeRolloutRule",
    "SavedGroup",
    "SimpleCondition",
    "StaticOrganizationProvider",
    "UpdateResult",
    "ValueType",
    "compute_rule_diff",
    "configure_logging",
    "from_expression",
    "is_simple",
    "load_config",
    "new_logger",
    "normalize_conditions",
    "operators_for",
    "requires_review",
    "to_expression",
]
