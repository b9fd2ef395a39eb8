from __future__ import annotations
import hashlib
import logging
import queue
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from PySide6 import QtCore

from .models import (
    Alert, SEVERITY_CRITICAL, SEVERITY_ERROR, SEVERITY_INFO, SEVERITY_WARNING,
)
from .workers import read_locked, write_locked

log = logging.getLogger(__name__)

# ── alert types ───────────────────────────────
ALERT_STUCK                = "agent_stuck"
ALERT_ZOMBIE               = "agent_zombie"
ALERT_IDLE                 = "agent_idle"
ALERT_RATE_LIMIT           = "rate_limit"
ALERT_QUOTA_WARNING        = "quota_warning"
ALERT_QUOTA_CRITICAL       = "quota_critical"
ALERT_ACCOUNT_SWITCHED     = "account_switched"
ALERT_ACCOUNT_SWITCH_FAILED = "account_switch_failed"
ALERT_CONTEXT_WARNING      = "context_warning"
ALERT_ROTATION_STARTED     = "rotation_started"
ALERT_ROTATION_COMPLETE    = "rotation_complete"
ALERT_ROTATION_FAILED      = "rotation_failed"
ALERT_COMPACTION_TRIGGERED = "compaction_triggered"
ALERT_COMPACTION_COMPLETE  = "compaction_complete"
ALERT_COMPACTION_FAILED    = "compaction_failed"


def generate_alert_id(alert_type: str, session: str, worker: str) -> str:
    """Same (type, session, worker) always yields the same id."""
    digest = hashlib.sha256(f"{alert_type}\x1f{session}\x1f{worker}".encode("utf-8")).hexdigest()
    return f"{alert_type}-{digest[:16]}"


# ──────────────────────────────────────────────
# AlertTracker – deduplicating active/resolved store
# ──────────────────────────────────────────────
class AlertTracker:
    def __init__(self, max_resolved: int = 500, clock: Callable[[], float] = time.time):
        self._lock = QtCore.QReadWriteLock()
        self._active: Dict[str, Alert] = {}
        self._resolved: Deque[Alert] = deque(maxlen=max_resolved)
        self._clock = clock

    def add(self, alert: Alert) -> Alert:
        """Insert or merge. Returns a copy of the stored record."""
        now = self._clock()
        if not alert.id:
            alert = alert.copy()
            alert.id = generate_alert_id(alert.type, alert.session, alert.pane)
        with write_locked(self._lock):
            current = self._active.get(alert.id)
            if current is not None:
                current.count += 1
                current.last_seen_at = alert.last_seen_at or now
                current.message = alert.message
                current.severity = alert.severity
                current.context = dict(alert.context)
                return current.copy()
            stored = alert.copy()
            stored.created_at = stored.created_at or now
            stored.last_seen_at = stored.last_seen_at or stored.created_at
            stored.count = max(1, stored.count)
            self._active[stored.id] = stored
            log.debug("alert added id=%s type=%s pane=%s", stored.id, stored.type, stored.pane)
            return stored.copy()

    def resolve(self, alert_id: str) -> bool:
        with write_locked(self._lock):
            alert = self._active.pop(alert_id, None)
            if alert is None:
                return False
            alert.last_seen_at = self._clock()
            self._resolved.append(alert)
        log.debug("alert resolved id=%s", alert_id)
        return True

    def get(self, alert_id: str) -> Optional[Alert]:
        with read_locked(self._lock):
            alert = self._active.get(alert_id)
            return alert.copy() if alert else None

    def active(self) -> List[Alert]:
        with read_locked(self._lock):
            alerts = [a.copy() for a in self._active.values()]
        alerts.sort(key=lambda a: a.created_at)
        return alerts

    def resolved(self) -> List[Alert]:
        with read_locked(self._lock):
            return [a.copy() for a in self._resolved]

    def clear(self) -> None:
        with write_locked(self._lock):
            self._active.clear()
            self._resolved.clear()


# ──────────────────────────────────────────────
# NotificationQueue – bounded push channel
# ──────────────────────────────────────────────
class NotificationQueue:
    """
    Non-blocking bounded queue for push-style delivery (dashboards).
    When full the incoming notification is dropped and logged; the
    AlertTracker still holds the alert.
    """

    def __init__(self, maxsize: int = 100):
        self._q: "queue.Queue[Alert]" = queue.Queue(maxsize=max(1, maxsize))
        self.dropped = 0

    def offer(self, alert: Alert) -> bool:
        try:
            self._q.put_nowait(alert.copy())
            return True
        except queue.Full:
            self.dropped += 1
            log.warning("notification queue full, dropping alert id=%s type=%s pane=%s",
                        alert.id, alert.type, alert.pane)
            return False

    def drain(self, limit: int = 0) -> List[Alert]:
        out: List[Alert] = []
        while not limit or len(out) < limit:
            try:
                out.append(self._q.get_nowait())
            except queue.Empty:
                break
        return out

    def qsize(self) -> int:
        return self._q.qsize()


# ──────────────────────────────────────────────
# Context lifecycle emitters (rotation / compaction)
# ──────────────────────────────────────────────
@dataclass
class RotationAlertData:
    agent_id: str
    session: str
    pane: str = ""
    context_usage: float = 0.0
    old_agent_id: str = ""
    new_agent_id: str = ""
    summary_tokens: int = 0
    duration_ms: int = 0
    error: str = ""


@dataclass
class CompactionAlertData:
    agent_id: str
    session: str
    pane: str = ""
    context_usage: float = 0.0
    minutes_to_limit: float = 0.0
    method: str = ""            # builtin|summarize|clear_history
    tokens_before: int = 0
    tokens_after: int = 0
    usage_before: float = 0.0
    usage_after: float = 0.0
    duration_ms: int = 0
    error: str = ""


def _context_alert(alert_type: str, severity: str, source: str, message: str,
                   session: str, worker: str, pane: str, context: dict) -> Alert:
    return Alert(
        id=generate_alert_id(alert_type, session, worker),
        type=alert_type,
        severity=severity,
        source=source,
        message=message,
        session=session,
        pane=pane,
        context=context,
    )


def emit_context_warning(tracker: AlertTracker, data: RotationAlertData) -> Alert:
    return tracker.add(_context_alert(
        ALERT_CONTEXT_WARNING, SEVERITY_WARNING, "context_rotation",
        f"Agent {data.agent_id} context at {data.context_usage:.0f}% - rotation soon",
        data.session, data.agent_id, data.pane,
        {"agent_id": data.agent_id, "context_usage": data.context_usage},
    ))


def emit_rotation_started(tracker: AlertTracker, data: RotationAlertData) -> Alert:
    return tracker.add(_context_alert(
        ALERT_ROTATION_STARTED, SEVERITY_INFO, "context_rotation",
        f"Rotating agent {data.agent_id} (context at {data.context_usage:.0f}%)",
        data.session, data.agent_id, data.pane,
        {"agent_id": data.agent_id, "context_usage": data.context_usage},
    ))


def emit_rotation_complete(tracker: AlertTracker, data: RotationAlertData) -> Alert:
    tracker.resolve(generate_alert_id(ALERT_ROTATION_STARTED, data.session, data.old_agent_id))
    tracker.resolve(generate_alert_id(ALERT_CONTEXT_WARNING, data.session, data.old_agent_id))
    return tracker.add(_context_alert(
        ALERT_ROTATION_COMPLETE, SEVERITY_INFO, "context_rotation",
        f"Agent {data.old_agent_id} rotated to {data.new_agent_id} successfully",
        data.session, data.old_agent_id, data.pane,
        {
            "old_agent_id": data.old_agent_id,
            "new_agent_id": data.new_agent_id,
            "summary_tokens": data.summary_tokens,
            "duration_ms": data.duration_ms,
        },
    ))


def emit_rotation_failed(tracker: AlertTracker, data: RotationAlertData) -> Alert:
    tracker.resolve(generate_alert_id(ALERT_ROTATION_STARTED, data.session, data.agent_id))
    return tracker.add(_context_alert(
        ALERT_ROTATION_FAILED, SEVERITY_ERROR, "context_rotation",
        f"Failed to rotate agent {data.agent_id}: {data.error}",
        data.session, data.agent_id, data.pane,
        {
            "agent_id": data.agent_id,
            "context_usage": data.context_usage,
            "error": data.error,
            "duration_ms": data.duration_ms,
        },
    ))


def emit_compaction_triggered(tracker: AlertTracker, data: CompactionAlertData) -> Alert:
    return tracker.add(_context_alert(
        ALERT_COMPACTION_TRIGGERED, SEVERITY_INFO, "context_compaction",
        f"Compaction triggered for {data.agent_id} "
        f"(context at {data.context_usage:.0f}%, {data.minutes_to_limit:.1f} min to limit)",
        data.session, data.agent_id, data.pane,
        {
            "agent_id": data.agent_id,
            "context_usage": data.context_usage,
            "minutes_to_limit": data.minutes_to_limit,
        },
    ))


def emit_compaction_complete(tracker: AlertTracker, data: CompactionAlertData) -> Alert:
    tracker.resolve(generate_alert_id(ALERT_COMPACTION_TRIGGERED, data.session, data.agent_id))
    tracker.resolve(generate_alert_id(ALERT_CONTEXT_WARNING, data.session, data.agent_id))
    reclaimed = data.tokens_before - data.tokens_after
    return tracker.add(_context_alert(
        ALERT_COMPACTION_COMPLETE, SEVERITY_INFO, "context_compaction",
        f"Compaction succeeded for {data.agent_id}: "
        f"{data.usage_before:.0f}% -> {data.usage_after:.0f}% (reclaimed {reclaimed} tokens)",
        data.session, data.agent_id, data.pane,
        {
            "agent_id": data.agent_id,
            "method": data.method,
            "usage_before": data.usage_before,
            "usage_after": data.usage_after,
            "tokens_before": data.tokens_before,
            "tokens_after": data.tokens_after,
            "tokens_reclaimed": reclaimed,
            "duration_ms": data.duration_ms,
        },
    ))


def emit_compaction_failed(tracker: AlertTracker, data: CompactionAlertData) -> Alert:
    tracker.resolve(generate_alert_id(ALERT_COMPACTION_TRIGGERED, data.session, data.agent_id))
    # warning, not error: rotation is still available as a fallback
    return tracker.add(_context_alert(
        ALERT_COMPACTION_FAILED, SEVERITY_WARNING, "context_compaction",
        f"Compaction failed for {data.agent_id}: {data.error}",
        data.session, data.agent_id, data.pane,
        {
            "agent_id": data.agent_id,
            "context_usage": data.context_usage,
            "method": data.method,
            "error": data.error,
            "duration_ms": data.duration_ms,
        },
    ))


def severity_for_quota(used_pct: float, warn_pct: float, critical_pct: float = 95.0) -> Optional[str]:
    if used_pct >= critical_pct:
        return SEVERITY_CRITICAL
    if used_pct >= warn_pct:
        return SEVERITY_WARNING
    return None
