"""
Audit notifications for security-relevant gateway events.

Sinks receive ``(event, payload)`` pairs. ``AuditNotifier`` hands each event
to a background worker so a slow or failing sink never delays a gateway
result; sink failures are logged and dropped.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_for_futures
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Set

from azure.core.exceptions import ResourceExistsError
from azure.storage.queue import QueueClient

from ..config import AppConfig, get_config
from ..constants import AuditEvent, Timeouts
from ..utils.json_utils import dumps
from ..utils.logger import get_logger, redact


class AuditSink(Protocol):
    def record(self, event: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingAuditSink:
    """Writes audit events to the gateway log."""

    def __init__(self):
        self.logger = get_logger()

    def record(self, event: str, payload: Dict[str, Any]) -> None:
        self.logger.warning(f"AUDIT: {event}", extra=redact(payload))


class QueueAuditSink:
    """Sends audit events as JSON messages to an Azure Storage Queue."""

    def __init__(self, connection_string: str, queue_name: str):
        self.connection_string = connection_string
        self.queue_name = queue_name
        self._queue_client: Optional[QueueClient] = None

    def _get_queue_client(self) -> QueueClient:
        if self._queue_client is None:
            client = QueueClient.from_connection_string(
                conn_str=self.connection_string, queue_name=self.queue_name
            )
            try:
                client.create_queue()
            except ResourceExistsError:
                pass
            self._queue_client = client
        return self._queue_client

    def record(self, event: str, payload: Dict[str, Any]) -> None:
        message = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "payload": redact(payload),
        }
        self._get_queue_client().send_message(dumps(message))


class AuditNotifier:
    """Fire-and-forget fan-out of audit events to one or more sinks."""

    def __init__(self, sinks: Optional[List[AuditSink]] = None, max_workers: int = 2):
        self.sinks = list(sinks) if sinks is not None else [LoggingAuditSink()]
        self.logger = get_logger()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="audit")
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "AuditNotifier":
        """Logging sink always; the audit queue as well when a storage connection is set."""
        config = config or get_config()
        if not config.security.enable_audit_logging:
            return cls(sinks=[])

        sinks: List[AuditSink] = [LoggingAuditSink()]
        if config.queue.connection_string:
            sinks.append(
                QueueAuditSink(config.queue.connection_string, config.queue.audit_queue_name)
            )
        return cls(sinks=sinks)

    def notify(self, event: str, **payload: Any) -> List[Future]:
        """Schedule ``event`` on every sink and return immediately."""
        futures = []
        for sink in self.sinks:
            future = self._executor.submit(sink.record, event, payload)
            with self._pending_lock:
                self._pending.add(future)
            future.add_done_callback(self._make_callback(event, sink))
            futures.append(future)
        return futures

    def authentication_failed(self, tenant: str, **details: Any) -> List[Future]:
        return self.notify(AuditEvent.AUTHENTICATION_FAILED.value, tenant=tenant, **details)

    def _make_callback(self, event: str, sink: AuditSink):
        def _done(future: Future) -> None:
            with self._pending_lock:
                self._pending.discard(future)
            error = future.exception()
            if error is not None:
                self.logger.error(
                    f"Audit sink failed for {event}",
                    extra={
                        "sink": type(sink).__name__,
                        "error_type": type(error).__name__,
                        "error_details": str(error),
                    },
                )

        return _done

    def shutdown(self, wait: bool = True, timeout: float = Timeouts.AUDIT_DISPATCH) -> None:
        """Stop accepting events; with ``wait`` drain what is already queued."""
        if wait:
            with self._pending_lock:
                pending = list(self._pending)
            wait_for_futures(pending, timeout=timeout)
        self._executor.shutdown(wait=wait)
