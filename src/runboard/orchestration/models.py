"""Record schemas and command payloads for the task board, locks and sessions.

Records persisted to disk are pydantic models with ``extra="forbid"``; every
store write re-validates them, so a payload built with ``Record.revised`` still
goes through the schema before it reaches the filesystem.

A task's ``lease`` is optional for every status. After a lease-expiry recycle
a ``pending`` task keeps its stale lease so the next claim can continue the
attempt counter; only ``claimed``/``running`` tasks actually own their lease.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, TypeVar

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, JsonValue

from runboard.orchestration.errors import InvalidArgumentError
from runboard.orchestration.paths import (
    LEASE_TOKEN_PATTERN,
    RUN_ID_PATTERN,
    SAFE_SEGMENT_PATTERN,
)

NonEmptyStr = Annotated[str, Field(min_length=1)]
SafeSegment = Annotated[str, Field(pattern=SAFE_SEGMENT_PATTERN)]
RunId = Annotated[str, Field(pattern=RUN_ID_PATTERN)]
LeaseToken = Annotated[str, Field(pattern=LEASE_TOKEN_PATTERN)]
Sha256Hex = Annotated[str, Field(pattern=r"^[a-f0-9]{64}$")]

# Longest lease or lock grant, 30 days.
MAX_DURATION_MS = 30 * 24 * 60 * 60 * 1000

EnumT = TypeVar("EnumT", bound=Enum)


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


ACTIVE_LEASE_STATUSES = frozenset({TaskStatus.CLAIMED, TaskStatus.RUNNING})
TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class TaskType(str, Enum):
    RESEARCH = "research"
    EXECUTE = "execute"
    AUDIT = "audit"


class FailureClass(str, Enum):
    """Failure classes recorded on failed tasks."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"
    POLICY_DENIED = "policy_denied"


class LockMode(str, Enum):
    READ = "read"
    WRITE = "write"


class SessionStatus(str, Enum):
    """Run session lifecycle states."""

    CREATED = "created"
    PLANNED = "planned"
    RUNNING = "running"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class MessageType(str, Enum):
    UPDATE = "update"
    ARTIFACT = "artifact"
    QUESTION = "question"
    CONFLICT = "conflict"
    DECISION = "decision"
    RISK = "risk"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"


def parse_enum(enum_type: type[EnumT], value: Any, field_name: str) -> EnumT:
    """Coerce a caller-supplied value, reporting bad input as an invalid argument."""

    try:
        return enum_type(value)
    except ValueError as error:
        raise InvalidArgumentError(
            f"Invalid {field_name}: {value!r}",
            {field_name: str(value), "allowed": [item.value for item in enum_type]},
        ) from error


class Record(BaseModel):
    """Base for strict JSON records."""

    model_config = ConfigDict(extra="forbid")

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize for disk: ISO timestamps, enum values, no null fields."""

        return self.model_dump(mode="json", exclude_none=True)

    def revised(self, **changes: Any) -> dict[str, Any]:
        """Field values with ``changes`` applied, for the store to re-validate."""

        payload = self.model_dump()
        payload.update(changes)
        return payload


class ArtifactRef(Record):
    artifact_id: SafeSegment
    type: NonEmptyStr | None = None


class Lease(Record):
    """Time-bounded ownership grant over one task."""

    lease_token: LeaseToken
    owner_agent_id: NonEmptyStr
    lease_expire_at: AwareDatetime
    attempt: int = Field(ge=1)

    def is_expired(self, now: datetime) -> bool:
        return self.lease_expire_at <= now


class Task(Record):
    """Unit of work tracked on the task board."""

    task_id: SafeSegment
    run_id: RunId
    title: NonEmptyStr
    type: TaskType
    status: TaskStatus
    input: JsonValue = None
    assigned_role: NonEmptyStr | None = None
    depends_on: list[NonEmptyStr] | None = None
    lease: Lease | None = None
    artifact_refs: list[ArtifactRef] | None = None
    failure_class: FailureClass | None = None
    failure_message: NonEmptyStr | None = None
    blocking_tasks: list[NonEmptyStr] | None = None
    idempotency_key: NonEmptyStr | None = None
    created_at: AwareDatetime
    updated_at: AwareDatetime

    @property
    def holds_active_lease(self) -> bool:
        return self.lease is not None and self.status in ACTIVE_LEASE_STATUSES

    @property
    def attempt(self) -> int:
        """Attempts consumed so far, carried by the (possibly stale) lease."""

        return self.lease.attempt if self.lease is not None else 0


class LockRecord(Record):
    """Path-scoped read/write lock bound to a lease token."""

    lock_id: NonEmptyStr
    path: NonEmptyStr
    mode: LockMode
    lease_token: NonEmptyStr
    agent_id: NonEmptyStr
    lease_expire_at: AwareDatetime
    acquired_at: AwareDatetime

    def is_expired(self, now: datetime) -> bool:
        return self.lease_expire_at <= now


class TasksSummary(Record):
    total: int = Field(default=0, ge=0)
    pending: int = Field(default=0, ge=0)
    claimed: int = Field(default=0, ge=0)
    running: int = Field(default=0, ge=0)
    completed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    blocked: int = Field(default=0, ge=0)

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> TasksSummary:
        counts = {status.value: 0 for status in TaskStatus}
        total = 0
        for task in tasks:
            counts[task.status.value] += 1
            total += 1
        return cls(total=total, **counts)


class MessagesSummary(Record):
    total: int = Field(default=0, ge=0)
    by_type: dict[MessageType, Annotated[int, Field(ge=0)]] = Field(default_factory=dict)

    @classmethod
    def from_messages(cls, messages: Iterable[Message]) -> MessagesSummary:
        by_type: dict[MessageType, int] = {}
        total = 0
        for message in messages:
            by_type[message.type] = by_type.get(message.type, 0) + 1
            total += 1
        return cls(total=total, by_type=by_type)


class ArtifactsSummary(Record):
    total: int = Field(default=0, ge=0)
    artifact_ids: list[NonEmptyStr] = Field(default_factory=list)

    @classmethod
    def from_ids(cls, artifact_ids: Iterable[str]) -> ArtifactsSummary:
        ids = list(artifact_ids)
        return cls(total=len(ids), artifact_ids=ids)


class SessionConfig(Record):
    max_turns: int = Field(ge=1)
    timeout_ms: int = Field(gt=0)
    budget_tokens: int | None = Field(default=None, ge=1)


class Decision(Record):
    artifact_id: SafeSegment
    direction: NonEmptyStr
    decided_at: AwareDatetime


class RunSessionRecord(Record):
    """Contents of a run's ``index.json``."""

    run_id: RunId
    status: SessionStatus
    goal: NonEmptyStr
    config: SessionConfig
    created_at: AwareDatetime
    updated_at: AwareDatetime
    tasks_summary: TasksSummary = Field(default_factory=TasksSummary)
    messages_summary: MessagesSummary = Field(default_factory=MessagesSummary)
    artifacts_summary: ArtifactsSummary = Field(default_factory=ArtifactsSummary)
    decision: Decision | None = None
    failure_reason: NonEmptyStr | None = None


class Claim(Record):
    claim: NonEmptyStr
    evidence: list[NonEmptyStr]


class Message(Record):
    """Mailbox message exchanged between agents of one run."""

    msg_id: SafeSegment
    run_id: RunId
    task_refs: Annotated[list[NonEmptyStr], Field(min_length=1)]
    type: MessageType
    from_agent: NonEmptyStr
    to_agent: NonEmptyStr | None = None
    content: NonEmptyStr
    claims: list[Claim] | None = None
    artifact_refs: list[ArtifactRef] | None = None
    delivery_status: DeliveryStatus
    escalation: bool | None = None
    created_at: AwareDatetime


class MessageAck(Record):
    delivery_status: DeliveryStatus
    acknowledged_by: NonEmptyStr | None = None


class ArtifactRecord(Record):
    """Metadata stored next to an artifact payload."""

    artifact_id: SafeSegment
    type: NonEmptyStr
    path: NonEmptyStr
    sha256: Sha256Hex
    size_bytes: int = Field(ge=0)
    provenance: dict[str, JsonValue] | None = None
    created_at: AwareDatetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating one task."""

    task_id: str
    title: str
    type: TaskType | str
    input: Any = None
    depends_on: list[str] | None = None
    assigned_role: str | None = None
    idempotency_key: str | None = None


@dataclass(slots=True)
class ClaimResult:
    lease_token: str
    lease_expire_at: datetime


@dataclass(slots=True)
class SweepResult:
    """Task ids recycled to pending and task ids failed by retry exhaustion."""

    recovered: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MessageCreate:
    """Caller-supplied part of a mailbox message."""

    task_refs: list[str]
    type: MessageType | str
    from_agent: str
    content: str
    to_agent: str | None = None
    claims: list[dict[str, Any]] | None = None
    artifact_refs: list[dict[str, Any]] | None = None
    escalation: bool | None = None


@dataclass(slots=True)
class MessageFilter:
    type: MessageType | None = None
    from_agent: str | None = None
    task_refs: tuple[str, ...] | None = None

    def matches(self, message: Message) -> bool:
        if self.type is not None and message.type != self.type:
            return False
        if self.from_agent is not None and message.from_agent != self.from_agent:
            return False
        if self.task_refs is not None and not any(
            ref in message.task_refs for ref in self.task_refs
        ):
            return False
        return True
