from __future__ import annotations

import queue
import threading
from typing import Any, Dict, Optional, Protocol

from keyward.logging import get_logger
from keyward.storage.models import AuditCategory, AuditEvent, AuditStatus

logger = get_logger(__name__)

_STOP = object()


class AuditSink(Protocol):
    def append_audit_event(self, event: AuditEvent) -> None: ...


class AuditEmitter:
    """Best-effort audit trail writer.

    ``emit`` never raises: a sink failure is logged and dropped so it cannot
    change the outcome of the operation being audited. In asynchronous mode
    events go through a bounded queue drained by one daemon thread, and a full
    queue drops the event instead of blocking the caller.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        asynchronous: bool = False,
        queue_size: int = 1000,
    ) -> None:
        self.sink = sink
        self.asynchronous = asynchronous
        self.dropped = 0
        self._queue: Optional[queue.Queue] = None
        self._worker: Optional[threading.Thread] = None
        if asynchronous:
            self._queue = queue.Queue(maxsize=queue_size)
            self._worker = threading.Thread(
                target=self._drain, name="keyward-audit", daemon=True
            )
            self._worker.start()

    def emit(
        self,
        category: AuditCategory,
        action: str,
        status: AuditStatus,
        *,
        account_id: Optional[str] = None,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            category=category,
            action=action,
            status=status,
            account_id=account_id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata=dict(metadata or {}),
        )
        self.record(event)
        return event

    def record(self, event: AuditEvent) -> None:
        if self._queue is None:
            self._write(event)
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "audit_event_dropped",
                action=event.action,
                category=event.category.value,
                dropped=self.dropped,
            )

    def _write(self, event: AuditEvent) -> None:
        try:
            self.sink.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=event.action,
                category=event.category.value,
                status=event.status.value,
                error=str(exc),
            )

    def _drain(self) -> None:
        assert self._queue is not None
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._write(item)
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been handed to the sink."""

        if self._queue is not None:
            self._queue.join()

    def close(self) -> None:
        if self._queue is None or self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout=5)
        self._queue = None
        self._worker = None
