"""Notification hook payloads.

The engine emits a :class:`SyncEvent` after each job; delivery belongs to
whatever ``on_event`` callback the host application registers.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Union

from src.wearables.base import SyncEventKind

logger = logging.getLogger("nutrisync.wearables.sync.events")


@dataclass(frozen=True)
class SyncEvent:
    """One notification emitted by the sync engine.

    Attributes:
        kind:        sync_completed / sync_failed / conflict_detected / device_disconnected.
        device_id:   Device the event concerns.
        user_id:     Owning user.
        occurred_at: When the engine emitted the event.
        detail:      Event-specific payload (status, counts, error text).
    """

    kind: SyncEventKind
    device_id: str
    user_id: str
    occurred_at: datetime
    detail: dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[SyncEvent], Union[Awaitable[None], None]]


async def emit(callback: EventCallback | None, event: SyncEvent) -> None:
    """Deliver an event to the registered callback (sync or async).

    A failing callback is logged and never affects the sync outcome.
    """
    if callback is None:
        return
    try:
        outcome = callback(event)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception:
        logger.exception(
            "Event callback failed for %s on device %s", event.kind.value, event.device_id
        )
