"""Append-only mailbox between agents of one run, with conflict escalation.

Message bodies are immutable once written. Acknowledgements go to a
``<msg_id>.ack.json`` sidecar whose status is merged back on read.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from runboard.orchestration.atomic import atomic_write_json
from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.errors import InvalidArgumentError, MessageNotFoundError
from runboard.orchestration.models import (
    DeliveryStatus,
    Message,
    MessageAck,
    MessageCreate,
    MessageFilter,
    MessageType,
    parse_enum,
)
from runboard.orchestration.paths import ACK_SUFFIX
from runboard.orchestration.store import JsonRecordStore, validation_issues

logger = logging.getLogger(__name__)

MAX_ESCALATIONS = 3
SUMMARY_LIMIT = 3
SUMMARY_EXCERPT_CHARS = 60
MAILBOX_SYSTEM_AGENT = "mailbox_system"
LEAD_AGENT = "lead"


class MailboxStore(JsonRecordStore[Message]):
    record_type = Message
    not_found_error = MessageNotFoundError
    entity = "message"

    def read_message(self, run_id: str, msg_id: str) -> Message:
        paths = self.context.run_paths(run_id)
        return self._read_record(paths.message_path(msg_id), {"run_id": run_id, "msg_id": msg_id})

    def write_message(self, run_id: str, message: Message | dict[str, Any]) -> Message:
        paths = self.context.run_paths(run_id)
        validated = self._validate(message)
        atomic_write_json(paths.message_path(validated.msg_id), validated.to_json_dict())
        return validated

    def list_messages(
        self,
        run_id: str,
        message_filter: MessageFilter | None = None,
    ) -> list[Message]:
        messages = sorted(
            self._iter_records(self.context.run_paths(run_id).mailbox_dir),
            key=lambda message: (message.created_at, message.msg_id),
        )
        if message_filter is None:
            return messages
        return [message for message in messages if message_filter.matches(message)]

    def write_ack(self, run_id: str, msg_id: str, ack: MessageAck | dict[str, Any]) -> None:
        paths = self.context.run_paths(run_id)
        payload = ack.model_dump() if isinstance(ack, MessageAck) else ack
        try:
            validated = MessageAck.model_validate(payload)
        except ValidationError as error:
            raise InvalidArgumentError(
                "acknowledgement failed schema validation",
                {"run_id": run_id, "msg_id": msg_id, "issues": validation_issues(error)},
            ) from error
        atomic_write_json(paths.message_ack_path(msg_id), validated.to_json_dict())

    def _read_record(self, file_path: Path, details: dict[str, Any]) -> Message:
        payload = self._load_payload(file_path, details)
        ack_path = file_path.with_name(f"{file_path.name[: -len('.json')]}{ACK_SUFFIX}")
        if ack_path.is_file():
            ack = self._read_ack(ack_path, details)
            if isinstance(payload, dict):
                payload["delivery_status"] = ack.delivery_status
        return self._validate(payload, {**details, "file_path": str(file_path)})

    def _read_ack(self, ack_path: Path, details: dict[str, Any]) -> MessageAck:
        try:
            payload = self._load_payload(ack_path, details)
            return MessageAck.model_validate(payload)
        except MessageNotFoundError:
            return MessageAck(delivery_status=DeliveryStatus.SENT)
        except (InvalidArgumentError, ValueError) as error:
            raise InvalidArgumentError(
                f"Acknowledgement file is corrupt: {ack_path}",
                {**details, "ack_path": str(ack_path)},
            ) from error


class Mailbox:
    """Post, query and acknowledge messages of one run."""

    def __init__(
        self,
        context: OrchestrationContext,
        *,
        store: MailboxStore | None = None,
    ) -> None:
        self.context = context
        self.store = store or MailboxStore(context)

    def post_message(self, run_id: str, payload: MessageCreate) -> str:
        """Write a new message and return its ``msg_id``.

        Artifact messages must reference artifacts and conflict messages must
        carry claims. A conflict may trigger an escalation question to the lead.
        """

        message_type = parse_enum(MessageType, payload.type, "type")
        if message_type == MessageType.ARTIFACT and not payload.artifact_refs:
            raise InvalidArgumentError(
                "artifact messages require non-empty artifact_refs",
                {"type": message_type.value},
            )
        if message_type == MessageType.CONFLICT and not payload.claims:
            raise InvalidArgumentError(
                "conflict messages require non-empty claims",
                {"type": message_type.value},
            )

        message = self.store.write_message(
            run_id,
            {
                "msg_id": str(uuid4()),
                "run_id": run_id,
                "task_refs": list(payload.task_refs),
                "type": message_type,
                "from_agent": payload.from_agent,
                "to_agent": payload.to_agent,
                "content": payload.content,
                "claims": payload.claims,
                "artifact_refs": payload.artifact_refs,
                "delivery_status": DeliveryStatus.SENT,
                "escalation": payload.escalation,
                "created_at": self.context.clock(),
            },
        )
        logger.info(
            "Message posted: run_id=%s msg_id=%s type=%s from=%s",
            run_id,
            message.msg_id,
            message.type.value,
            message.from_agent,
        )

        if message.type == MessageType.CONFLICT:
            self._escalate_conflicts(run_id, message)
        return message.msg_id

    def get_messages(
        self,
        run_id: str,
        message_filter: MessageFilter | None = None,
    ) -> list[Message]:
        return self.store.list_messages(run_id, message_filter)

    def acknowledge_message(self, run_id: str, msg_id: str, agent_id: str) -> None:
        self.store.read_message(run_id, msg_id)
        self.store.write_ack(
            run_id,
            msg_id,
            {"delivery_status": DeliveryStatus.ACKNOWLEDGED, "acknowledged_by": agent_id},
        )
        logger.info("Message acknowledged: run_id=%s msg_id=%s by=%s", run_id, msg_id, agent_id)

    def _escalate_conflicts(self, run_id: str, conflict: Message) -> None:
        for task_id in conflict.task_refs:
            conflicts = self.store.list_messages(
                run_id,
                MessageFilter(type=MessageType.CONFLICT, task_refs=(task_id,)),
            )
            if len(conflicts) < 2:
                continue

            prior_artifact_ids = {
                ref.artifact_id
                for message in conflicts
                if message.msg_id != conflict.msg_id
                for ref in message.artifact_refs or []
            }
            if any(
                ref.artifact_id not in prior_artifact_ids for ref in conflict.artifact_refs or []
            ):
                continue

            questions = self.store.list_messages(
                run_id,
                MessageFilter(type=MessageType.QUESTION, task_refs=(task_id,)),
            )
            if sum(1 for message in questions if message.escalation) >= MAX_ESCALATIONS:
                logger.debug("Escalation limit reached for task %s", task_id)
                continue

            escalation = self.store.write_message(
                run_id,
                _escalation_message(run_id, task_id, conflicts, self.context.clock()),
            )
            logger.info(
                "Conflict escalated: run_id=%s task_id=%s msg_id=%s conflicts=%d",
                run_id,
                task_id,
                escalation.msg_id,
                len(conflicts),
            )


def _escalation_message(
    run_id: str,
    task_id: str,
    conflicts: list[Message],
    now: datetime,
) -> dict[str, Any]:
    recent = conflicts[-SUMMARY_LIMIT:]
    parts = [f"[{message.msg_id}] {message.content[:SUMMARY_EXCERPT_CHARS]}" for message in recent]
    omitted = len(conflicts) - len(recent)
    if omitted > 0:
        parts.insert(0, f"({omitted} earlier omitted)")

    claims = [claim for message in conflicts for claim in message.claims or []]
    return {
        "msg_id": str(uuid4()),
        "run_id": run_id,
        "task_refs": [task_id],
        "type": MessageType.QUESTION,
        "from_agent": MAILBOX_SYSTEM_AGENT,
        "to_agent": LEAD_AGENT,
        "content": (
            f"Conflict escalation: task {task_id} has {len(conflicts)} conflicts "
            f"without new evidence. {'; '.join(parts)}"
        ),
        "claims": claims or None,
        "delivery_status": DeliveryStatus.SENT,
        "escalation": True,
        "created_at": now,
    }
