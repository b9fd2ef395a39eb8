from __future__ import annotations
import logging
import re
import time
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from PySide6 import QtCore

from .models import RateLimitEvent
from .workers import read_locked, write_locked

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Static tables
# ──────────────────────────────────────────────
# Evaluation order. When output matches several providers the first one wins.
PROVIDER_ORDER = ("claude", "openai", "gemini")

_DEFAULT_PATTERNS: Dict[str, Tuple[str, ...]] = {
    "claude": (
        r"(?i)you['’]?ve\s+hit\s+your\s+limit",
        r"(?i)please\s+wait",
        r"(?i)try\s+again\s+later",
        r"(?i)too\s+many\s+requests",
        r"(?i)usage\s+limit",
        r"(?i)request\s+limit",
        r"(?i)limit.*exceeded",
        r"(?i)api\s+limit",
        r"(?i)anthropic.*limit",
        r"(?i)claude.*limit",
    ),
    "openai": (
        r"(?i)you['’]?ve\s+reached\s+your\s+usage\s+limit",
        r"(?i)rate[\s_-]*limit",
        r"(?i)quota\s+exceeded",
        r"(?i)capacity\s+reached",
        r"(?i)maximum\s+requests",
        r"\b429\b",
        r"(?i)tokens?\s+per\s+min",
        r"(?i)requests?\s+per\s+min",
        r"(?i)openai.*limit",
        r"(?i)gpt.*limit",
        r"(?i)codex.*limit",
    ),
    "gemini": (
        r"(?i)resource[\s_-]*exhausted",
        r"(?i)limit\s+reached",
        r"(?i)gemini.*limit",
        r"(?i)google.*limit",
        r"(?i)bard.*limit",
    ),
}

_WAIT_PATTERNS: Tuple[Pattern[str], ...] = tuple(re.compile(p) for p in (
    r"(?i)try\s+again\s+in\s+(\d+)\s*s",
    r"(?i)wait\s+(\d+)\s*(?:second|sec|s)",
    r"(?i)retry\s+(?:after|in)\s+(\d+)\s*(?:s|sec)",
    r"(?i)(\d+)\s*(?:second|sec)s?\s+(?:cooldown|delay|wait)",
    r"(?i)rate.?limit.*?(\d+)\s*s",
))

_PROVIDER_ALIASES = {
    "claude": "claude", "anthropic": "claude", "claude-code": "claude", "cc": "claude",
    "openai": "openai", "gpt": "openai", "chatgpt": "openai", "codex": "openai", "cod": "openai",
    "gemini": "gemini", "google": "gemini", "gmi": "gemini",
}

_PROVIDER_HINTS = (
    ("claude", ("claude", "anthropic", "sonnet", "opus", "haiku")),
    ("openai", ("openai", "codex", "gpt-", "gpt4", "gpt5")),
    ("gemini", ("gemini", "google", "bard")),
)

PatternTable = List[Tuple[Pattern[str], str]]


def normalize_provider(name: str) -> str:
    key = (name or "").strip().lower()
    return _PROVIDER_ALIASES.get(key, key)


def detect_provider(output: str) -> str:
    low = (output or "").lower()
    for provider, hints in _PROVIDER_HINTS:
        if any(h in low for h in hints):
            return provider
    return "unknown"


def compile_patterns(patterns: Sequence[str]) -> PatternTable:
    """Compile to ordered (regex, name) pairs. Invalid patterns are skipped."""
    table: PatternTable = []
    for p in patterns:
        try:
            table.append((re.compile(p), p))
        except re.error as e:
            log.warning("skipping invalid rate-limit pattern %r: %s", p, e)
    return table


def parse_wait_seconds(output: str) -> int:
    for rx in _WAIT_PATTERNS:
        m = rx.search(output or "")
        if m:
            seconds = int(m.group(1))
            if seconds > 0:
                return seconds
    return 0


# ──────────────────────────────────────────────
# RateLimitDetector
# ──────────────────────────────────────────────
RateLimitCallback = Callable[[RateLimitEvent], None]


class RateLimitDetector:
    """
    Recognises provider throttling in worker output.

    Cooldown is tracked per provider: an accepted detection for one provider
    silences that provider only, for ``cooldown`` seconds.
    """

    def __init__(self, cooldown: float = 30.0,
                 extra_patterns: Optional[Dict[str, Sequence[str]]] = None,
                 order: Sequence[str] = PROVIDER_ORDER,
                 clock: Callable[[], float] = time.time):
        self._order = tuple(order)
        self._patterns: Dict[str, PatternTable] = {}
        for provider in self._order:
            names = list(_DEFAULT_PATTERNS.get(provider, ()))
            names.extend((extra_patterns or {}).get(provider, ()))
            self._patterns[provider] = compile_patterns(names)
        self._cooldown = cooldown
        self._last: Dict[str, float] = {}
        self._callback: Optional[RateLimitCallback] = None
        self._clock = clock
        self._lock = QtCore.QReadWriteLock()

    @property
    def providers(self) -> Tuple[str, ...]:
        return self._order

    def set_callback(self, cb: Optional[RateLimitCallback]) -> None:
        with write_locked(self._lock):
            self._callback = cb

    def set_cooldown(self, seconds: float) -> None:
        with write_locked(self._lock):
            self._cooldown = seconds

    def last_detection(self, provider: str) -> Optional[float]:
        with read_locked(self._lock):
            return self._last.get(normalize_provider(provider))

    def reset(self, provider: Optional[str] = None) -> None:
        with write_locked(self._lock):
            if provider is None:
                self._last.clear()
            else:
                self._last.pop(normalize_provider(provider), None)

    def matching_patterns(self, provider: str, output: str) -> List[str]:
        return [name for rx, name in self._patterns.get(provider, ()) if rx.search(output)]

    def check(self, output: str, worker: str) -> Optional[RateLimitEvent]:
        if not output:
            return None
        for provider in self._order:
            matched = self.matching_patterns(provider, output)
            if not matched:
                continue

            now = self._clock()
            with write_locked(self._lock):
                last = self._last.get(provider)
                if last is not None and now - last < self._cooldown:
                    log.debug("rate limit for %s on %s suppressed (cooldown)", provider, worker)
                    continue
                self._last[provider] = now
                callback = self._callback

            event = RateLimitEvent(
                provider=provider,
                worker=worker,
                detected_at=now,
                patterns=matched,
                wait_seconds=parse_wait_seconds(output),
            )
            log.info("rate limit detected provider=%s worker=%s patterns=%d wait=%ds",
                     provider, worker, len(matched), event.wait_seconds)
            if callback is not None:
                callback(event)
            return event
        return None
