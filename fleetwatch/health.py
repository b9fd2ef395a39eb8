from __future__ import annotations
import logging
import time
from collections import deque
from typing import Callable, Dict, List, Optional, Tuple

from PySide6 import QtCore

from .alerts import (
    ALERT_IDLE, ALERT_STUCK, ALERT_ZOMBIE,
    AlertTracker, NotificationQueue, generate_alert_id,
)
from .config import AppConfig
from .errors import CollaboratorTimeout, FleetwatchError, ToolUnavailable
from .identity import IdentityResolver
from .interfaces import ClassificationOracle, NetworkActivityOracle, RawClassification
from .models import (
    Alert, ClassificationEvent, ProcessMap, WorkerHealthState, WorkerIdentity,
    IDLE, SEVERITY_ERROR, SEVERITY_INFO, SEVERITY_WARNING, STUCK, UNKNOWN,
    USEFUL, WAITING, ZOMBIE, optional_float,
)
from .workers import PollingThread, read_locked, write_locked

log = logging.getLogger(__name__)

# oracle vocabulary → classification
_ORACLE_LABELS = {
    "useful": USEFUL,
    "useful_bad": USEFUL,
    "waiting": WAITING,
    "idle": IDLE,
    "stuck": STUCK,
    "abandoned": STUCK,
    "zombie": ZOMBIE,
}

# classification → (alert type, severity)
_ALERTING = {
    STUCK: (ALERT_STUCK, SEVERITY_WARNING),
    ZOMBIE: (ALERT_ZOMBIE, SEVERITY_ERROR),
    IDLE: (ALERT_IDLE, SEVERITY_INFO),
}


def map_classification(label: str) -> str:
    return _ORACLE_LABELS.get((label or "").strip().lower(), UNKNOWN)


class HealthMonitor(QtCore.QObject):
    """
    Polls every known worker, classifies it and raises duration-based alerts.

    - one batched oracle call per pass
    - stuck → waiting when the worker talked to the network this interval
    - "since" only moves when the classification changes (hysteresis)
    - zombie alerts every pass, stuck/idle only past their thresholds
    """

    alerts_ready = QtCore.Signal(list)     # List[Alert] raised by one pass

    def __init__(self, resolver: IdentityResolver, oracle: ClassificationOracle,
                 tracker: AlertTracker,
                 network: Optional[NetworkActivityOracle] = None,
                 notifications: Optional[NotificationQueue] = None,
                 check_interval: float = 30.0,
                 idle_threshold: float = 300.0,
                 stuck_threshold: float = 120.0,
                 max_history: int = 100,
                 timeout: float = 30.0,
                 probe_timeout: float = 5.0,
                 clock: Callable[[], float] = time.time):
        super().__init__()
        self.resolver = resolver
        self.oracle = oracle
        self.tracker = tracker
        self.network = network
        self.notifications = notifications or NotificationQueue()
        self.check_interval = check_interval
        self.idle_threshold = idle_threshold
        self.stuck_threshold = stuck_threshold
        self.max_history = max_history
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self._clock = clock
        self._lock = QtCore.QReadWriteLock()
        self._states: Dict[str, WorkerHealthState] = {}
        self._thread: Optional[PollingThread] = None

    @classmethod
    def from_config(cls, cfg: AppConfig, resolver: IdentityResolver, oracle: ClassificationOracle,
                    tracker: AlertTracker, network: Optional[NetworkActivityOracle] = None,
                    notifications: Optional[NotificationQueue] = None,
                    clock: Callable[[], float] = time.time) -> "HealthMonitor":
        return cls(
            resolver, oracle, tracker,
            network=network if cfg.use_network_activity else None,
            notifications=notifications or NotificationQueue(cfg.notification_queue_size),
            check_interval=cfg.health_check_interval_seconds,
            idle_threshold=cfg.idle_threshold_seconds,
            stuck_threshold=cfg.stuck_threshold_seconds,
            max_history=cfg.max_history,
            timeout=cfg.classification_timeout_seconds,
            probe_timeout=cfg.probe_timeout_seconds,
            clock=clock,
        )

    # ══════════════════════════════════════════
    # Poll pass
    # ══════════════════════════════════════════

    def poll_once(self) -> List[Alert]:
        """Run one classification pass; returns the alerts it raised."""
        started = self._clock()
        snap = self.resolver.snapshot()

        pids = list(snap.pid_to_worker.keys())
        results: Dict[int, RawClassification] = {}
        if pids:
            results = self._classify(pids)
            elapsed = self._clock() - started
            if elapsed > self.timeout:
                raise CollaboratorTimeout(f"classification pass took {elapsed:.1f}s (limit {self.timeout:.0f}s)")
        else:
            log.debug("no panes to monitor")

        last_requests = self._network_activity() if results else {}

        now = self._clock()
        raised: List[Alert] = []
        to_resolve: List[str] = []
        with write_locked(self._lock):
            seen = set()
            for key, primary in snap.worker_to_pid.items():
                picked = self._pick_result(snap, primary, results)
                if picked is None:
                    continue
                seen.add(key)
                ident = snap.pid_to_worker[primary]
                event = self._make_event(picked, last_requests.get(picked.pid), now)
                previous = self._update_state(ident, picked.pid, event)
                if previous is not None and previous != event.classification and previous in _ALERTING:
                    to_resolve.append(generate_alert_id(_ALERTING[previous][0], ident.session, key))
                alert = self._check_alerts(key, now)
                if alert is not None:
                    raised.append(alert)

            for key in [k for k in self._states if k not in seen]:
                gone = self._states.pop(key)
                if gone.classification in _ALERTING:
                    to_resolve.append(generate_alert_id(
                        _ALERTING[gone.classification][0], gone.identity.session, key))
                log.debug("removed stale pane state %s", key)

        for alert_id in to_resolve:
            self.tracker.resolve(alert_id)
        for alert in raised:
            self.notifications.offer(self.tracker.add(alert))
        if raised:
            self.alerts_ready.emit(raised)
        return raised

    def _classify(self, pids: List[int]) -> Dict[int, RawClassification]:
        batch = self.oracle.classify(pids, self.timeout)
        results: Dict[int, RawClassification] = {}
        for r in batch:
            confidence = optional_float(getattr(r, "confidence", None))
            if not isinstance(getattr(r, "pid", None), int) or confidence is None:
                log.warning("malformed classification entry dropped: %r", r)
                continue
            if r.pid in results:
                continue
            results[r.pid] = r
        return results

    def _network_activity(self) -> Dict[int, float]:
        if self.network is None:
            return {}
        try:
            return dict(self.network.last_requests(self.probe_timeout))
        except ToolUnavailable as e:
            log.info("network activity unavailable, stuck downgrade disabled: %s", e)
            self.network = None
        except FleetwatchError as e:
            log.warning("network activity skipped this pass: %s", e)
        return {}

    def _pick_result(self, snap: ProcessMap, primary: int,
                     results: Dict[int, RawClassification]) -> Optional[RawClassification]:
        # the agent runs below the pane shell; prefer its first classified descendant
        for pid in (*snap.descendants.get(primary, ()), primary):
            if pid in results:
                return results[pid]
        return None

    def _make_event(self, raw: RawClassification, last_request: Optional[float], now: float) -> ClassificationEvent:
        classification = map_classification(raw.label)
        ts = optional_float(last_request)
        network_active = ts is not None and now - ts < self.check_interval
        if network_active and classification == STUCK:
            classification = WAITING
        return ClassificationEvent(
            classification=classification,
            confidence=min(1.0, max(0.0, float(raw.confidence))),
            timestamp=now,
            reason=raw.reason,
            network_active=network_active,
        )

    # ── state update (write lock held) ────────
    def _update_state(self, ident: WorkerIdentity, pid: int, event: ClassificationEvent) -> Optional[str]:
        key = ident.key
        state = self._states.get(key)
        previous = None
        if state is None:
            state = WorkerHealthState(
                identity=ident,
                pid=pid,
                classification=event.classification,
                confidence=event.confidence,
                since=event.timestamp,
                last_check=event.timestamp,
                consecutive_count=1,
                history=deque(maxlen=self.max_history),
            )
            self._states[key] = state
        else:
            previous = state.classification
            state.identity = ident
            state.pid = pid
            state.last_check = event.timestamp
            if state.classification == event.classification:
                state.consecutive_count += 1
                state.confidence = event.confidence
            else:
                state.classification = event.classification
                state.confidence = event.confidence
                state.since = event.timestamp
                state.consecutive_count = 1
        state.history.append(event)
        return previous

    def _check_alerts(self, key: str, now: float) -> Optional[Alert]:
        state = self._states[key]
        duration = now - state.since
        if state.classification == ZOMBIE:
            message = f"Agent {key} is a zombie process"
        elif state.classification == STUCK and duration >= self.stuck_threshold:
            message = f"Agent {key} has been stuck for {duration:.0f}s"
        elif state.classification == IDLE and duration >= self.idle_threshold:
            message = f"Agent {key} has been idle for {duration:.0f}s"
        else:
            return None

        alert_type, severity = _ALERTING[state.classification]
        ident = state.identity
        log.info("alert %s pane=%s state=%s duration=%.0fs", alert_type, key, state.classification, duration)
        return Alert(
            id=generate_alert_id(alert_type, ident.session, key),
            type=alert_type,
            severity=severity,
            source="health_monitor",
            message=message,
            session=ident.session,
            pane=key,
            context={
                "pid": state.pid,
                "state": state.classification,
                "duration_seconds": duration,
                "confidence": state.confidence,
                "reason": state.history[-1].reason if state.history else "",
            },
            created_at=now,
            last_seen_at=now,
        )

    # ══════════════════════════════════════════
    # Queries
    # ══════════════════════════════════════════

    def state(self, worker: str) -> Optional[WorkerHealthState]:
        with read_locked(self._lock):
            state = self._states.get(worker)
            return state.copy() if state else None

    def all_states(self) -> Dict[str, WorkerHealthState]:
        with read_locked(self._lock):
            return {k: s.copy() for k, s in self._states.items()}

    def stats(self) -> Dict[str, object]:
        with read_locked(self._lock):
            by_state: Dict[str, int] = {}
            for s in self._states.values():
                by_state[s.classification] = by_state.get(s.classification, 0) + 1
            agent_count = len(self._states)
        return {
            "running": self.running,
            "check_interval_seconds": self.check_interval,
            "idle_threshold_seconds": self.idle_threshold,
            "stuck_threshold_seconds": self.stuck_threshold,
            "use_network_activity": self.network is not None,
            "agent_count": agent_count,
            "by_state": by_state,
            "alerts_in_queue": self.notifications.qsize(),
        }

    # ══════════════════════════════════════════
    # Lifecycle
    # ══════════════════════════════════════════

    def start(self) -> None:
        if self.running:
            return
        self._thread = PollingThread("HealthMonitor", self.check_interval, self.poll_once)
        self._thread.begin()
        log.info("health monitor started (every %.0fs, network=%s)",
                 self.check_interval, self.network is not None)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._thread.stop()
        self._thread = None
        log.info("health monitor stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_active()

    def force_check(self) -> List[Alert]:
        if not self.running:
            return []
        return self.poll_once()


def summarize(states: Dict[str, WorkerHealthState]) -> List[Tuple[str, str, float]]:
    """(worker, classification, confidence) rows sorted by worker, for dashboards."""
    return sorted((k, s.classification, s.confidence) for k, s in states.items())
