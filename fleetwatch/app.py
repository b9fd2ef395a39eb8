from __future__ import annotations
import logging
import signal
import sys
import time
from typing import Callable, Dict, List, Optional

from PySide6 import QtCore

from .alerts import AlertTracker, NotificationQueue
from .config import AppConfig, load_config
from .errors import FleetwatchError, ResolutionError, RotationUnavailable
from .health import HealthMonitor, summarize
from .identity import IdentityResolver
from .interfaces import (
    ClassificationOracle, CredentialRotator, NetworkActivityOracle,
    PaneEnumerator, UsageSource,
)
from .models import (
    Alert, RateLimitEvent, SwitchEvent,
    SEVERITY_CRITICAL, SEVERITY_ERROR, SEVERITY_WARNING,
)
from .ratelimit import RateLimitDetector
from .rotation import RotationCoordinator

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_SEVERITY_LEVELS = {
    SEVERITY_WARNING: logging.WARNING,
    SEVERITY_ERROR: logging.ERROR,
    SEVERITY_CRITICAL: logging.CRITICAL,
}


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


class FleetMonitor(QtCore.QObject):
    """
    Wires the supervisor together:
    - identity refresh every ``identity_refresh_seconds`` (own thread)
    - health pass every ``health_check_interval_seconds`` (own thread)
    - usage poll + proactive rotation every ``usage_check_interval_seconds`` (own thread)
    - rate-limit detector → coordinator reactive switch, on the caller's thread
    """

    def __init__(self, cfg: AppConfig, enumerator: PaneEnumerator, oracle: ClassificationOracle,
                 network: Optional[NetworkActivityOracle] = None,
                 rotator: Optional[CredentialRotator] = None,
                 usage: Optional[UsageSource] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__()
        self.cfg = cfg
        self.tracker = AlertTracker(clock=clock)
        self.notifications = NotificationQueue(cfg.notification_queue_size)

        self.resolver = IdentityResolver(
            enumerator,
            session=cfg.session,
            timeout=cfg.probe_timeout_seconds,
            refresh_interval=cfg.identity_refresh_seconds,
            clock=clock,
        )
        self.health = HealthMonitor.from_config(
            cfg, self.resolver, oracle, self.tracker,
            network=network, notifications=self.notifications, clock=clock,
        )
        self.detector = RateLimitDetector(cooldown=cfg.rate_limit_cooldown_seconds, clock=clock)

        self.coordinator: Optional[RotationCoordinator] = None
        if rotator is not None:
            # attaches itself as the detector callback
            self.coordinator = RotationCoordinator.from_config(
                cfg, rotator, self.tracker, detector=self.detector, usage=usage, clock=clock,
            )
            self.coordinator.switched.connect(self.on_switched)

        self._started = False

    # ── lifecycle ─────────────────────────────
    def start(self) -> None:
        if self._started:
            return
        try:
            self.resolver.refresh()
        except ResolutionError as e:
            log.warning("initial pane resolution failed, retrying on schedule: %s", e)
        self.resolver.start()
        self.health.start()
        if self.coordinator is not None:
            try:
                self.coordinator.start()
            except RotationUnavailable as e:
                log.info("account rotation disabled: %s", e)
        self._started = True
        log.info("fleet monitor started")

    def stop(self) -> None:
        if not self._started:
            return
        if self.coordinator is not None:
            self.coordinator.stop()
        self.health.stop()
        self.resolver.stop()
        self._started = False
        log.info("fleet monitor stopped")

    @property
    def running(self) -> bool:
        return self._started

    # ── inputs ────────────────────────────────
    def check_output(self, output: str, worker: str) -> Optional[RateLimitEvent]:
        """Feed captured pane output to the rate-limit detector."""
        return self.detector.check(output, worker)

    # ── outputs ───────────────────────────────
    def drain_notifications(self, limit: int = 0) -> List[Alert]:
        alerts = self.notifications.drain(limit)
        for a in alerts:
            log.log(_SEVERITY_LEVELS.get(a.severity, logging.INFO),
                    "[%s] %s (id=%s, seen %dx)", a.type, a.message, a.id, a.count)
        return alerts

    @QtCore.Slot(object)
    def on_switched(self, event: SwitchEvent):
        if event.success:
            log.info("%s account now %s (%s)", event.provider, event.new_account, event.reason)
        else:
            log.warning("%s account switch failed (%s): %s", event.provider, event.reason, event.error)

    def status(self) -> Dict[str, object]:
        return {
            "running": self._started,
            "identity": self.resolver.stats(),
            "health": self.health.stats(),
            "workers": summarize(self.health.all_states()),
            "rotation": self.coordinator.stats() if self.coordinator is not None else None,
            "active_alerts": len(self.tracker.active()),
            "notifications_dropped": self.notifications.dropped,
        }


# ──────────────────────────────────────────────
# Composition root
# ──────────────────────────────────────────────
_default: Optional[FleetMonitor] = None


def default_monitor(enumerator: Optional[PaneEnumerator] = None,
                    oracle: Optional[ClassificationOracle] = None,
                    **collaborators) -> FleetMonitor:
    """Process-wide monitor built from the on-disk config. The first call must supply collaborators."""
    global _default
    if _default is None:
        if enumerator is None or oracle is None:
            raise FleetwatchError("default monitor not built yet: pass enumerator and oracle")
        _default = FleetMonitor(load_config(), enumerator, oracle, **collaborators)
    return _default


def run(monitor: FleetMonitor, drain_interval_ms: int = 1000) -> int:
    """Host the monitor in a Qt event loop until SIGINT/SIGTERM."""
    configure_logging(monitor.cfg.log_level)
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)

    timer = QtCore.QTimer()
    timer.setInterval(drain_interval_ms)
    timer.timeout.connect(monitor.drain_notifications)

    # Python signal handlers only run when control returns to the interpreter
    def _quit(*_):
        app.quit()
    signal.signal(signal.SIGINT, _quit)
    signal.signal(signal.SIGTERM, _quit)

    monitor.start()
    timer.start()
    try:
        code = app.exec()
    finally:
        timer.stop()
        monitor.stop()
        monitor.drain_notifications()
    return code
