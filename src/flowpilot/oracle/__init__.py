from flowpilot.oracle.backend import BackendOracle
from flowpilot.oracle.base import (
    MaintenanceReport,
    MaintenanceStatus,
    Oracle,
    OracleError,
    OracleQuotaError,
    OracleSchemaError,
    PlanResult,
    StepExecution,
    Verification,
    model_for_action,
)
from flowpilot.oracle.fallback import FallbackOracle
from flowpilot.oracle.offline import OfflineOracle

__all__ = [
    "BackendOracle",
    "FallbackOracle",
    "MaintenanceReport",
    "MaintenanceStatus",
    "OfflineOracle",
    "Oracle",
    "OracleError",
    "OracleQuotaError",
    "OracleSchemaError",
    "PlanResult",
    "StepExecution",
    "Verification",
    "model_for_action",
]
