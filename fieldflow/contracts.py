"""Core data contracts for the fieldflow workflow engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Generic, List, Literal, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)

    @property
    def clears_gate(self) -> bool:
        """``True`` when later steps may proceed past this one."""
        return self in (StepStatus.COMPLETED, StepStatus.SKIPPED)


class TaskStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# ----------------------------------------------------------------------
# Templates


class StepSpec(BaseModel):
    """One ordered step of a procedure template."""

    model_config = ConfigDict(frozen=True)

    id: str
    order: int = Field(..., ge=1)
    title: str
    is_required: bool = True
    checklist_items: List[str] = Field(
        default_factory=list,
        description="Checklist keys that must be true before the step completes",
    )


class ProcedureTemplate(BaseModel):
    """Immutable ordered definition of steps for a class of work."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    steps: List[StepSpec]

    @model_validator(mode="after")
    def _check_step_order(self) -> "ProcedureTemplate":
        if not self.steps:
            raise ValueError(f"template {self.id} has no steps")
        orders = [s.order for s in self.steps]
        if len(set(orders)) != len(orders):
            raise ValueError(f"template {self.id} has duplicate step orders: {orders}")
        if sorted(orders) != list(range(1, len(orders) + 1)):
            raise ValueError(f"template {self.id} step orders are not dense from 1: {orders}")
        ids = [s.id for s in self.steps]
        if len(set(ids)) != len(ids):
            raise ValueError(f"template {self.id} has duplicate step ids: {ids}")
        object.__setattr__(self, "steps", sorted(self.steps, key=lambda s: s.order))
        return self

    def get_step(self, step_id: str) -> Optional[StepSpec]:
        return next((s for s in self.steps if s.id == step_id), None)


# ----------------------------------------------------------------------
# Step timing
#
# The timing phase is a tagged variant so that a paused timing always
# carries ``paused_at`` and a stopped timing always carries ``end_time``.


class RunningPhase(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["running"] = "running"


class PausedPhase(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["paused"] = "paused"
    paused_at: datetime


class StoppedPhase(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["stopped"] = "stopped"
    end_time: datetime


TimingPhase = Annotated[
    Union[RunningPhase, PausedPhase, StoppedPhase], Field(discriminator="kind")
]


class StepTiming(BaseModel):
    """Pause-aware elapsed-time record for a single step."""

    model_config = ConfigDict(frozen=True)

    start_time: datetime
    total_paused_seconds: int = Field(default=0, ge=0)
    phase: TimingPhase = Field(default_factory=RunningPhase)

    @property
    def is_paused(self) -> bool:
        return isinstance(self.phase, PausedPhase)

    @property
    def is_open(self) -> bool:
        return not isinstance(self.phase, StoppedPhase)

    @property
    def paused_at(self) -> Optional[datetime]:
        return self.phase.paused_at if isinstance(self.phase, PausedPhase) else None

    @property
    def end_time(self) -> Optional[datetime]:
        return self.phase.end_time if isinstance(self.phase, StoppedPhase) else None


# ----------------------------------------------------------------------
# Executions


class StepCompletion(BaseModel):
    """Data recorded against a step by the technician."""

    checklist: Dict[str, bool] = Field(default_factory=dict)
    notes: Optional[str] = None
    photos: List[str] = Field(default_factory=list, description="Opaque photo references")


class SignatureRecord(BaseModel):
    """Customer sign-off attached when an execution is finalized."""

    signer: str
    signature: str
    signed_at: Optional[datetime] = None

    def same_payload(self, other: "SignatureRecord") -> bool:
        return self.signer == other.signer and self.signature == other.signature


class WorkflowExecutionStep(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    execution_id: str
    step_id: str
    step_order: int
    title: str = ""
    is_required: bool = True
    status: StepStatus = StepStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: int = Field(default=0, ge=0)
    checklist_completion: Dict[str, bool] = Field(default_factory=dict)
    notes: Optional[str] = None
    photos: List[str] = Field(default_factory=list)
    timing: Optional[StepTiming] = None

    @classmethod
    def from_spec(cls, execution_id: str, spec: StepSpec) -> "WorkflowExecutionStep":
        return cls(
            execution_id=execution_id,
            step_id=spec.id,
            step_order=spec.order,
            title=spec.title,
            is_required=spec.is_required,
        )


class WorkflowExecution(BaseModel):
    """One run of a procedure template against one task."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    task_id: str
    template_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    signature: Optional[SignatureRecord] = None
    retired: bool = False
    revision: int = 0
    created_by: str = "system"
    updated_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    steps: List[WorkflowExecutionStep] = Field(default_factory=list)

    def ordered_steps(self) -> List[WorkflowExecutionStep]:
        return sorted(self.steps, key=lambda s: s.step_order)

    def get_step(self, step_id: str) -> Optional[WorkflowExecutionStep]:
        return next((s for s in self.steps if s.step_id == step_id), None)

    @property
    def active_step(self) -> Optional[WorkflowExecutionStep]:
        return next((s for s in self.steps if s.status == StepStatus.IN_PROGRESS), None)


class WorkflowProgress(BaseModel):
    execution_id: str
    task_id: str
    status: ExecutionStatus
    current_step_id: Optional[str] = None
    total_steps: int
    completed_steps: int
    skipped_steps: int
    percentage: float


# ----------------------------------------------------------------------
# Collaborator boundary and reconciliation


class Task(BaseModel):
    """Unit of work owned by the external task system."""

    id: str
    status: TaskStatus = TaskStatus.SCHEDULED
    template_id: Optional[str] = None
    assigned_to: Optional[str] = None


class SyncOutcome(BaseModel):
    task_id: str
    is_synced: bool
    repair_action: Optional[str] = None
    error: Optional[str] = None


class SyncReport(BaseModel):
    synced_count: int = 0
    error_count: int = 0
    outcomes: List[SyncOutcome] = Field(default_factory=list)
    cancelled: bool = False


# ----------------------------------------------------------------------
# Gateway envelopes

T = TypeVar("T")


class ErrorInfo(BaseModel):
    code: str
    message: str
    status_code: int


class GatewayResponse(BaseModel, Generic[T]):
    """Boundary-level result returned by every gateway operation."""

    success: bool
    data: Optional[T] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def ok(cls, data: Any) -> "GatewayResponse":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: str, message: str, status_code: int) -> "GatewayResponse":
        return cls(
            success=False,
            error=ErrorInfo(code=code, message=message, status_code=status_code),
        )
