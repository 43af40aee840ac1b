"""
riskguard/audit.py
===================
Audit Trail — RiskGuard

Responsibility:
    - Record one immutable AuditLogEntry per security- or fraud-relevant
      event, tagged with a correlation id
    - Never block or fail the caller: ``log_event`` enqueues to a bounded
      asyncio.Queue drained by one worker task; the worker writes to the
      sink in a thread (``asyncio.to_thread``)
    - Fall back to a dedicated logger when the queue is full or the sink
      fails (delivery is at-least-once; dedupe on entry_id)
    - Send a best-effort webhook alert (aiohttp) for critical entries
    - Answer read-side queries: filters, correlation trail, delivery and
      error metrics, read/unread status (kept in a sidecar set)

This module does NOT:
    - Decide what is worth auditing (callers do)
    - Design the durable store (AuditSink is the boundary)
"""

import asyncio
import json
import logging
import threading
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable

import aiohttp

from riskguard.errors import ValidationError
from riskguard.models import AuditLevel, AuditLogEntry, AuditResult

logger = logging.getLogger("riskguard.audit")
fallback_logger = logging.getLogger("riskguard.audit.fallback")


DELIVERY_GROUPS: tuple[str, ...] = ("hour", "day", "channel", "notification_type")
ERROR_GROUPS: tuple[str, ...] = ("hour", "day", "event_type")
ALERT_BREAKER = "alert_webhook"
ALERT_TIMEOUT_SECONDS = 5


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class AuditSink:
    """Durable audit store boundary. ``write`` is called from a worker thread."""

    def write(self, entry: AuditLogEntry) -> None:
        raise NotImplementedError

    def entries(self) -> list[AuditLogEntry]:
        raise NotImplementedError


class InMemoryAuditSink(AuditSink):
    def __init__(self) -> None:
        self._entries: list[AuditLogEntry] = []
        self._lock = threading.Lock()

    def write(self, entry: AuditLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> list[AuditLogEntry]:
        with self._lock:
            return list(self._entries)


def _bucket(entry: AuditLogEntry, group_by: str) -> str:
    if group_by == "hour":
        return entry.timestamp.strftime("%Y-%m-%dT%H:00")
    if group_by == "day":
        return entry.timestamp.strftime("%Y-%m-%d")
    if group_by == "event_type":
        return entry.event_type
    return str(entry.metadata.get(group_by, "unknown"))


def _check_group(group_by: str, allowed: tuple[str, ...]) -> None:
    if group_by not in allowed:
        raise ValidationError(
            "Invalid group_by",
            [{"field": "group_by", "message": f"Must be one of {list(allowed)}"}],
        )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditTrail:
    """
    Args:
        sink:              Durable store (defaults to in-memory).
        queue_size:        Bound of the pending-write queue.
        alert_webhook_url: Where critical entries are POSTed (optional).
        guard:             ResilienceGuard for the alert webhook (optional).
        alert_sender:      Async ``fn(entry)`` replacing the aiohttp POST
                           (tests).
    """

    def __init__(
        self,
        sink: AuditSink | None = None,
        queue_size: int = 1000,
        alert_webhook_url: str | None = None,
        guard: Any = None,
        alert_sender: Callable[[AuditLogEntry], Any] | None = None,
    ) -> None:
        self.sink = sink or InMemoryAuditSink()
        self.queue_size = queue_size
        self.alert_webhook_url = alert_webhook_url
        self._guard = guard
        self._alert_sender = alert_sender
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._pending_alerts: set[asyncio.Task] = set()
        self._read_ids: set[str] = set()
        self._read_lock = threading.Lock()

    # --- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = asyncio.create_task(self._drain(), name="audit-writer")
        logger.info("Audit worker started (queue size %d)", self.queue_size)

    async def flush(self) -> None:
        """Wait until every queued entry has been written."""
        if self._queue is not None and self.running:
            await self._queue.join()
        if self._pending_alerts:
            await asyncio.gather(*self._pending_alerts, return_exceptions=True)

    async def stop(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._queue = None
        logger.info("Audit worker stopped")

    async def _drain(self) -> None:
        while True:
            entry = await self._queue.get()
            try:
                await asyncio.to_thread(self.sink.write, entry)
            except Exception as exc:
                self._fallback(entry, f"sink write failed: {exc}")
            finally:
                self._queue.task_done()

    # --- write side --------------------------------------------------------

    def _fallback(self, entry: AuditLogEntry, reason: str) -> None:
        try:
            fallback_logger.error(
                "AUDIT_FALLBACK (%s) %s", reason, json.dumps(entry.to_dict(), default=str),
            )
        except Exception as exc:
            logger.error("Audit fallback failed for %s: %s", entry.entry_id, exc)

    def log_event(self, entry: AuditLogEntry) -> None:
        """Record ``entry``. Never raises and never waits on the sink."""
        try:
            if self.running:
                try:
                    self._queue.put_nowait(entry)
                except asyncio.QueueFull:
                    self._fallback(entry, "queue full")
            else:
                try:
                    self.sink.write(entry)
                except Exception as exc:
                    self._fallback(entry, f"sink write failed: {exc}")

            if AuditLevel(entry.level) == AuditLevel.CRITICAL:
                self._schedule_alert(entry)
        except Exception as exc:
            self._fallback(entry, f"unexpected: {exc}")

    def _schedule_alert(self, entry: AuditLogEntry) -> None:
        if not self.alert_webhook_url and self._alert_sender is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop; critical alert for %s not sent", entry.entry_id)
            return
        task = loop.create_task(self._send_alert(entry))
        self._pending_alerts.add(task)
        task.add_done_callback(self._pending_alerts.discard)

    async def _post_alert(self, entry: AuditLogEntry) -> None:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                self.alert_webhook_url,
                json={"alert": "critical_audit_event", "entry": entry.to_dict()},
                headers={"Content-Type": "application/json"},
                timeout=aiohttp.ClientTimeout(total=ALERT_TIMEOUT_SECONDS),
            ) as resp:
                resp.raise_for_status()
                logger.info("Alert POST to %s; status %d", self.alert_webhook_url, resp.status)

    async def _send_alert(self, entry: AuditLogEntry) -> None:
        sender = self._alert_sender or self._post_alert
        try:
            if self._guard is not None:
                await self._guard.call(ALERT_BREAKER, lambda: sender(entry))
            else:
                await sender(entry)
        except Exception as exc:
            logger.error("Critical alert for %s failed: %s", entry.entry_id, exc)

    # --- typed wrappers ----------------------------------------------------

    def log_notification_delivery(
        self,
        notification_id: str,
        channel: str,
        notification_type: str,
        recipient: str,
        delivered: bool,
        error: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.log_event(AuditLogEntry(
            event_type="notification_delivery",
            action="deliver_notification",
            result=AuditResult.SUCCESS if delivered else AuditResult.FAILURE,
            user_id=recipient,
            user_type="recipient",
            resource_type="notification",
            resource_id=notification_id,
            level=AuditLevel.INFO if delivered else AuditLevel.WARNING,
            context=context or {},
            metadata={
                "channel": channel,
                "notification_type": notification_type,
                "delivered": delivered,
                "error": error,
            },
        ))

    def log_error(
        self,
        error_type: str,
        message: str,
        context: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        level: AuditLevel = AuditLevel.ERROR,
        resource_type: str = "",
        resource_id: str = "",
    ) -> None:
        self.log_event(AuditLogEntry(
            event_type=error_type,
            action="error",
            result=AuditResult.FAILURE,
            resource_type=resource_type,
            resource_id=resource_id,
            level=level,
            context=context or {},
            metadata={"message": message, **(metadata or {})},
        ))

    def log_system_event(
        self,
        action: str,
        metadata: dict[str, Any] | None = None,
        level: AuditLevel = AuditLevel.INFO,
        result: AuditResult = AuditResult.SUCCESS,
        resource_type: str = "system",
        resource_id: str = "",
    ) -> None:
        self.log_event(AuditLogEntry(
            event_type="system_event",
            action=action,
            result=result,
            resource_type=resource_type,
            resource_id=resource_id,
            level=level,
            metadata=metadata or {},
        ))

    # --- read side ---------------------------------------------------------

    def query(
        self,
        event_type: str | None = None,
        level: AuditLevel | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Newest first; ``start`` inclusive, ``end`` exclusive."""
        selected = [
            e for e in self.sink.entries()
            if (event_type is None or e.event_type == event_type)
            and (level is None or AuditLevel(e.level) == AuditLevel(level))
            and (start is None or e.timestamp >= start)
            and (end is None or e.timestamp < end)
        ]
        selected.sort(key=lambda e: e.timestamp, reverse=True)
        return selected[:limit]

    def by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        """Every entry of one request, oldest first."""
        trail = [e for e in self.sink.entries() if e.correlation_id == correlation_id]
        trail.sort(key=lambda e: e.timestamp)
        return trail

    def delivery_metrics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        group_by: str = "hour",
    ) -> dict[str, dict[str, Any]]:
        """``{bucket: {total, delivered, failed, success_rate}}``."""
        _check_group(group_by, DELIVERY_GROUPS)
        groups: dict[str, dict[str, Any]] = defaultdict(lambda: {"total": 0, "delivered": 0, "failed": 0})
        for entry in self.query("notification_delivery", start=start, end=end, limit=10**9):
            stats = groups[_bucket(entry, group_by)]
            stats["total"] += 1
            if AuditResult(entry.result) == AuditResult.SUCCESS:
                stats["delivered"] += 1
            else:
                stats["failed"] += 1
        for stats in groups.values():
            stats["success_rate"] = round(stats["delivered"] / stats["total"] * 100, 2)
        return dict(sorted(groups.items()))

    def error_metrics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        group_by: str = "hour",
    ) -> dict[str, dict[str, Any]]:
        """
        ``{bucket: {total, errors, critical, error_rate}}``.

        ``total`` counts every entry in the bucket; ``errors`` counts error
        and critical entries; ``error_rate`` is errors / total in percent.
        """
        _check_group(group_by, ERROR_GROUPS)
        groups: dict[str, dict[str, Any]] = defaultdict(lambda: {"total": 0, "errors": 0, "critical": 0})
        for entry in self.query(start=start, end=end, limit=10**9):
            level = AuditLevel(entry.level)
            stats = groups[_bucket(entry, group_by)]
            stats["total"] += 1
            if level in (AuditLevel.ERROR, AuditLevel.CRITICAL):
                stats["errors"] += 1
            if level == AuditLevel.CRITICAL:
                stats["critical"] += 1
        for stats in groups.values():
            stats["error_rate"] = round(stats["errors"] / stats["total"] * 100, 2)
        return dict(sorted(groups.items()))

    def mark_read(self, entry_id: str) -> None:
        with self._read_lock:
            self._read_ids.add(entry_id)

    def is_read(self, entry_id: str) -> bool:
        with self._read_lock:
            return entry_id in self._read_ids
