from __future__ import annotations
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence

from PySide6 import QtCore

from .alerts import (
    ALERT_ACCOUNT_SWITCH_FAILED, ALERT_ACCOUNT_SWITCHED, ALERT_QUOTA_CRITICAL,
    ALERT_QUOTA_WARNING, ALERT_RATE_LIMIT,
    AlertTracker, generate_alert_id, severity_for_quota,
)
from .config import AppConfig
from .errors import FleetwatchError, RotationFailed, RotationUnavailable, ToolUnavailable
from .interfaces import CredentialRotator, UsageSource
from .models import (
    Alert, RateLimitEvent, SwitchEvent,
    SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_WARNING,
)
from .ratelimit import PROVIDER_ORDER, RateLimitDetector, normalize_provider
from .workers import PollingThread, read_locked, write_locked

log = logging.getLogger(__name__)

PROACTIVE = "proactive"
REACTIVE  = "reactive"


class RotationCoordinator(QtCore.QObject):
    """
    Switches provider credentials before (proactive, usage based) or after
    (reactive, rate-limit pattern based) a worker gets throttled.

    The post-switch cooldown gates proactive switches per provider. Reactive
    switches are gated by the detector's own cooldown; both paths stamp the
    post-switch clock.
    """

    switched = QtCore.Signal(object)    # SwitchEvent

    def __init__(self, rotator: CredentialRotator, tracker: AlertTracker,
                 detector: Optional[RateLimitDetector] = None,
                 usage: Optional[UsageSource] = None,
                 providers: Sequence[str] = PROVIDER_ORDER,
                 auto_rotate: bool = True,
                 proactive_threshold: float = 90.0,
                 switch_cooldown: float = 300.0,
                 check_interval: float = 30.0,
                 quota_alert_threshold: float = 80.0,
                 rotation_timeout: float = 10.0,
                 probe_timeout: float = 5.0,
                 history_size: int = 100,
                 clock: Callable[[], float] = time.time):
        super().__init__()
        self.rotator = rotator
        self.tracker = tracker
        self.detector = detector
        self.usage = usage
        self.providers = [normalize_provider(p) for p in providers]
        self.auto_rotate = auto_rotate
        self.proactive_threshold = proactive_threshold
        self.switch_cooldown = switch_cooldown
        self.check_interval = check_interval
        self.quota_alert_threshold = quota_alert_threshold
        self.rotation_timeout = rotation_timeout
        self.probe_timeout = probe_timeout
        self._clock = clock
        self._lock = QtCore.QReadWriteLock()
        self._accounts: Dict[str, int] = {}
        self._last_switch: Dict[str, float] = {}
        self._last_usage: Dict[str, float] = {}
        self._history: Deque[SwitchEvent] = deque(maxlen=history_size)
        self._thread: Optional[PollingThread] = None
        if detector is not None:
            detector.set_callback(self.on_rate_limit)

    @classmethod
    def from_config(cls, cfg: AppConfig, rotator: CredentialRotator, tracker: AlertTracker,
                    detector: Optional[RateLimitDetector] = None,
                    usage: Optional[UsageSource] = None,
                    clock: Callable[[], float] = time.time) -> "RotationCoordinator":
        return cls(
            rotator, tracker, detector=detector, usage=usage,
            providers=cfg.providers,
            auto_rotate=cfg.auto_rotate,
            proactive_threshold=cfg.proactive_threshold_pct,
            switch_cooldown=cfg.switch_cooldown_seconds,
            check_interval=cfg.usage_check_interval_seconds,
            quota_alert_threshold=cfg.quota_alert_threshold_pct,
            rotation_timeout=cfg.rotation_timeout_seconds,
            probe_timeout=cfg.probe_timeout_seconds,
            clock=clock,
        )

    # ══════════════════════════════════════════
    # Account discovery
    # ══════════════════════════════════════════

    def refresh_accounts(self) -> List[str]:
        """Ask the rotator how many credential sets each provider has; returns rotatable providers."""
        counts: Dict[str, int] = {}
        for provider in self.providers:
            try:
                counts[provider] = int(self.rotator.account_count(provider, self.probe_timeout))
            except (FleetwatchError, TypeError, ValueError) as e:
                log.warning("account count unavailable for %s: %s", provider, e)
                counts[provider] = 0
        with write_locked(self._lock):
            self._accounts = counts
        return [p for p in self.providers if counts[p] > 1]

    def can_rotate(self, provider: str) -> bool:
        with read_locked(self._lock):
            return self._accounts.get(normalize_provider(provider), 0) > 1

    # ══════════════════════════════════════════
    # Triggers
    # ══════════════════════════════════════════

    def on_usage_signal(self, provider: str, usage_percent: float) -> Optional[SwitchEvent]:
        provider = normalize_provider(provider)
        if not self.auto_rotate:
            log.debug("auto-rotate disabled, skipping proactive switch for %s (%.1f%%)", provider, usage_percent)
            return None
        if usage_percent < self.proactive_threshold:
            return None
        if not self.can_rotate(provider):
            log.debug("%s has fewer than two accounts, not rotating", provider)
            return None

        now = self._clock()
        with write_locked(self._lock):
            last = self._last_switch.get(provider)
            if last is not None and now - last < self.switch_cooldown:
                log.debug("%s in switch cooldown, skipping (%.1f%%)", provider, usage_percent)
                return None
            # claim the slot before the call so concurrent signals cannot double-switch
            self._last_switch[provider] = now
        return self._switch(provider, usage_percent, PROACTIVE)

    def on_rate_limit(self, event: RateLimitEvent) -> RateLimitEvent:
        """Reactive path. Fills the account fields of ``event`` in place."""
        provider = normalize_provider(event.provider)
        self.tracker.add(Alert(
            id=generate_alert_id(ALERT_RATE_LIMIT, "", event.worker),
            type=ALERT_RATE_LIMIT,
            severity=SEVERITY_WARNING,
            source="rate_limit_detector",
            message=f"{provider} rate limit hit on {event.worker}"
                    + (f" (retry in {event.wait_seconds}s)" if event.wait_seconds else ""),
            pane=event.worker,
            context={
                "provider": provider,
                "patterns": list(event.patterns),
                "wait_seconds": event.wait_seconds,
            },
        ))
        if not self.auto_rotate or not self.can_rotate(provider):
            return event

        with write_locked(self._lock):
            self._last_switch[provider] = self._clock()
            usage_percent = self._last_usage.get(provider, 0.0)
        switch = self._switch(provider, usage_percent, REACTIVE)
        event.account_before = switch.previous_account
        event.account_after = switch.new_account
        event.switch_success = switch.success
        return event

    def _switch(self, provider: str, usage_percent: float, reason: str) -> SwitchEvent:
        log.info("triggering %s account switch provider=%s usage=%.1f%%", reason, provider, usage_percent)
        try:
            result = self.rotator.switch_next(provider, self.rotation_timeout)
        except (FleetwatchError, OSError) as e:
            previous = e.previous_account if isinstance(e, RotationFailed) else ""
            event = SwitchEvent(
                provider=provider, usage_percent=usage_percent, reason=reason,
                timestamp=self._clock(), success=False,
                previous_account=previous, error=str(e),
            )
            log.warning("%s account switch failed for %s: %s", reason, provider, e)
            self.tracker.add(Alert(
                id=generate_alert_id(ALERT_ACCOUNT_SWITCH_FAILED, "", provider),
                type=ALERT_ACCOUNT_SWITCH_FAILED,
                severity=SEVERITY_WARNING,
                source="rotation_coordinator",
                message=f"{reason.capitalize()} account switch failed for {provider}: {e}",
                context={"provider": provider, "usage_percent": usage_percent, "reason": reason},
            ))
        else:
            event = SwitchEvent(
                provider=provider, usage_percent=usage_percent, reason=reason,
                timestamp=self._clock(), success=True,
                previous_account=result.previous_account,
                new_account=result.new_account,
                accounts_remaining=result.accounts_remaining,
            )
            log.info("%s account switch for %s: %s -> %s (%d remaining)", reason, provider,
                     result.previous_account, result.new_account, result.accounts_remaining)
            self.tracker.resolve(generate_alert_id(ALERT_ACCOUNT_SWITCH_FAILED, "", provider))
            self.tracker.add(Alert(
                id=generate_alert_id(ALERT_ACCOUNT_SWITCHED, "", provider),
                type=ALERT_ACCOUNT_SWITCHED,
                severity=SEVERITY_INFO,
                source="rotation_coordinator",
                message=f"Switched {provider} account from {result.previous_account} "
                        f"to {result.new_account} ({reason})",
                context={
                    "provider": provider,
                    "usage_percent": usage_percent,
                    "reason": reason,
                    "previous_account": result.previous_account,
                    "new_account": result.new_account,
                    "accounts_remaining": result.accounts_remaining,
                },
            ))

        with write_locked(self._lock):
            self._history.append(event)
        self.switched.emit(event)
        return event

    # ══════════════════════════════════════════
    # Usage loop
    # ══════════════════════════════════════════

    def check_usage(self) -> List[SwitchEvent]:
        if self.usage is None:
            return []
        try:
            readings = self.usage.usage(self.probe_timeout)
        except ToolUnavailable as e:
            log.info("usage source unavailable: %s", e)
            return []

        events: List[SwitchEvent] = []
        for name, pct in sorted(readings.items()):
            provider = normalize_provider(name)
            try:
                pct = float(pct)
            except (TypeError, ValueError):
                log.warning("malformed usage reading dropped: %s=%r", name, pct)
                continue
            with write_locked(self._lock):
                self._last_usage[provider] = pct
            self._quota_alert(provider, pct)
            if pct >= self.proactive_threshold:
                event = self.on_usage_signal(provider, pct)
                if event is not None:
                    events.append(event)
        return events

    def _quota_alert(self, provider: str, pct: float) -> None:
        warning_id = generate_alert_id(ALERT_QUOTA_WARNING, "", provider)
        critical_id = generate_alert_id(ALERT_QUOTA_CRITICAL, "", provider)
        severity = severity_for_quota(pct, self.quota_alert_threshold)
        if severity is None:
            self.tracker.resolve(warning_id)
            self.tracker.resolve(critical_id)
            return
        if severity == SEVERITY_CRITICAL:
            alert_type, alert_id, stale_id = ALERT_QUOTA_CRITICAL, critical_id, warning_id
        else:
            alert_type, alert_id, stale_id = ALERT_QUOTA_WARNING, warning_id, critical_id
        self.tracker.resolve(stale_id)
        self.tracker.add(Alert(
            id=alert_id,
            type=alert_type,
            severity=severity,
            source="usage_poller",
            message=f"{provider} API quota {severity}: {pct:.1f}% used",
            context={"provider": provider, "quota_percent": pct,
                     "threshold": self.quota_alert_threshold},
        ))

    # ══════════════════════════════════════════
    # Queries
    # ══════════════════════════════════════════

    def last_switch_time(self, provider: str) -> Optional[float]:
        with read_locked(self._lock):
            return self._last_switch.get(normalize_provider(provider))

    def reset_cooldown(self, provider: str) -> None:
        with write_locked(self._lock):
            self._last_switch.pop(normalize_provider(provider), None)

    def switch_history(self, limit: int = 0) -> List[SwitchEvent]:
        with read_locked(self._lock):
            events = list(self._history)
        return events[-limit:] if limit > 0 else events

    def stats(self) -> Dict[str, object]:
        with read_locked(self._lock):
            return {
                "running": self._thread is not None and self._thread.is_active(),
                "auto_rotate": self.auto_rotate,
                "proactive_threshold": self.proactive_threshold,
                "switch_cooldown_seconds": self.switch_cooldown,
                "accounts": dict(self._accounts),
                "last_usage": dict(self._last_usage),
                "switches": len(self._history),
            }

    # ══════════════════════════════════════════
    # Lifecycle
    # ══════════════════════════════════════════

    def start(self) -> None:
        if self.running:
            return
        rotatable = self.refresh_accounts()
        if not rotatable:
            raise RotationUnavailable("no provider has more than one account configured")
        self._thread = PollingThread("RotationCoordinator", self.check_interval, self.check_usage)
        self._thread.begin()
        log.info("rotation coordinator started (providers=%s, threshold=%.0f%%)",
                 ",".join(rotatable), self.proactive_threshold)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._thread.stop()
        self._thread = None
        log.info("rotation coordinator stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_active()
