from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app import events
from app.metrics import observe_notification


logger = logging.getLogger("app.principal_activity.dispatcher")

UPSTREAM_MUTATION_EVENT = "crm.upstream.mutated"

SOURCE_ENTITIES = frozenset({"organizations", "contacts", "opportunities", "interactions", "product_principals"})
OPERATIONS = frozenset({"INSERT", "UPDATE", "DELETE", "TRUNCATE"})


def _validate(source_entity: str, operation: str) -> tuple[str, str]:
    normalized_operation = operation.upper()
    if source_entity not in SOURCE_ENTITIES:
        raise ValueError(f"unsupported source entity: {source_entity}")
    if normalized_operation not in OPERATIONS:
        raise ValueError(f"unsupported operation: {operation}")
    return source_entity, normalized_operation


def notify_upstream_mutation(
    source_entity: str,
    operation: str,
    *,
    occurred_at: datetime | None = None,
    principal_ids: Iterable[uuid.UUID | str] | None = None,
    actor_user_id: str | None = None,
) -> dict[str, Any]:
    """Publish one notification for a mutating statement or batch against an upstream entity."""
    source_entity, operation = _validate(source_entity, operation)
    timestamp = occurred_at or datetime.now(timezone.utc)

    payload: dict[str, Any] = {
        "source_entity": source_entity,
        "operation": operation,
        "timestamp": timestamp.isoformat(),
    }
    if principal_ids is not None:
        payload["principal_ids"] = sorted({str(principal_id) for principal_id in principal_ids})

    envelope = events.build_envelope(UPSTREAM_MUTATION_EVENT, payload, actor_user_id=actor_user_id)
    delivered = events.publish(envelope)
    observe_notification(source_entity, operation)
    logger.info(
        "principal_activity.notification.published",
        extra={
            "event_id": envelope["event_id"],
            "source_entity": source_entity,
            "operation": operation,
            "requested": len(payload.get("principal_ids", [])),
            "status": "delivered" if delivered else "no_subscribers",
        },
    )
    return envelope


@dataclass
class MutationBatch:
    source_entity: str
    operation: str
    principal_ids: set[uuid.UUID | str] = field(default_factory=set)
    hinted: bool = False

    def touch(self, *principal_ids: uuid.UUID | str) -> None:
        self.hinted = True
        self.principal_ids.update(principal_ids)


@contextmanager
def mutation_batch(
    source_entity: str,
    operation: str,
    *,
    actor_user_id: str | None = None,
) -> Iterator[MutationBatch]:
    """Collect principal hints across a bulk write and emit a single notification when it succeeds."""
    source_entity, operation = _validate(source_entity, operation)
    batch = MutationBatch(source_entity=source_entity, operation=operation)
    yield batch
    notify_upstream_mutation(
        source_entity,
        operation,
        principal_ids=batch.principal_ids if batch.hinted else None,
        actor_user_id=actor_user_id,
    )
