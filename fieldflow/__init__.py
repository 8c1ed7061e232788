"""fieldflow: Workflow execution engine for field-service procedures."""

from .contracts import (
    ExecutionStatus,
    ProcedureTemplate,
    SignatureRecord,
    StepCompletion,
    StepSpec,
    StepStatus,
    StepTiming,
    SyncOutcome,
    SyncReport,
    Task,
    TaskStatus,
    WorkflowExecution,
    WorkflowExecutionStep,
)
from .engine import WorkflowStateMachine
from .gateway import ExecutionGateway, build_gateway
from .persistence import get_repository
from .reconcile import ReconciliationService
from .templates import TemplateRegistry, default_registry
from .timing import StepTimingTracker

__version__ = "0.1.0"
__all__ = [
    "ExecutionStatus",
    "StepStatus",
    "TaskStatus",
    "ProcedureTemplate",
    "StepSpec",
    "StepTiming",
    "StepCompletion",
    "SignatureRecord",
    "SyncOutcome",
    "SyncReport",
    "Task",
    "WorkflowExecution",
    "WorkflowExecutionStep",
    "WorkflowStateMachine",
    "StepTimingTracker",
    "TemplateRegistry",
    "default_registry",
    "ReconciliationService",
    "ExecutionGateway",
    "build_gateway",
    "get_repository",
]
