from __future__ import annotations
import re
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, List, Optional, Tuple

# ── classifications ───────────────────────────
USEFUL  = "useful"
WAITING = "waiting"
IDLE    = "idle"
STUCK   = "stuck"
ZOMBIE  = "zombie"
UNKNOWN = "unknown"

# ── severities ────────────────────────────────
SEVERITY_INFO     = "info"
SEVERITY_WARNING  = "warning"
SEVERITY_ERROR    = "error"
SEVERITY_CRITICAL = "critical"

# {session}__{kind}_{ordinal}[_variant][tags]
_PANE_TITLE_RE = re.compile(r"^.+__(\w+?)_(\d+)(?:_[A-Za-z0-9._/@:+-]+)?(?:\[[^\]]*\])?$")
_AGENT_KINDS = {"cc", "cod", "gmi"}


def parse_pane_title(title: str) -> Tuple[str, int]:
    """Returns (kind, ordinal); non-agent titles map to ("user", 0)."""
    m = _PANE_TITLE_RE.match(title or "")
    if not m or m.group(1) not in _AGENT_KINDS:
        return "user", 0
    return m.group(1), int(m.group(2))


@dataclass(frozen=True)
class WorkerIdentity:
    session: str
    pane_index: int
    pane_title: str
    kind: str = "user"
    ordinal: int = 0

    @property
    def key(self) -> str:
        # agent titles carry their session; anything else is only unique by position
        if self.pane_title.startswith(f"{self.session}__"):
            return self.pane_title
        return f"{self.session}:{self.pane_index}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class ProcessMap:
    """One resolution snapshot. Built once, never mutated afterwards."""
    worker_to_pid: Dict[str, int] = field(default_factory=dict)
    pid_to_worker: Dict[int, WorkerIdentity] = field(default_factory=dict)
    descendants: Dict[int, Tuple[int, ...]] = field(default_factory=dict)
    refreshed_at: float = 0.0
    session: str = ""

    def stats(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        for ident in self.pid_to_worker.values():
            by_kind[ident.kind] = by_kind.get(ident.kind, 0) + 1
        child_count = sum(len(c) for c in self.descendants.values())
        return {
            "pane_count": len(self.worker_to_pid),
            "total_pid_count": len(self.pid_to_worker),
            "primary_pid_count": len(self.worker_to_pid),
            "descendant_pid_count": child_count,
            "refreshed_at": self.refreshed_at,
            "session": self.session,
            "by_kind": by_kind,
        }


@dataclass(frozen=True)
class ClassificationEvent:
    classification: str
    confidence: float
    timestamp: float
    reason: str = ""
    network_active: bool = False


@dataclass
class WorkerHealthState:
    identity: WorkerIdentity
    pid: int
    classification: str
    confidence: float
    since: float
    last_check: float
    consecutive_count: int = 1
    history: Deque[ClassificationEvent] = field(default_factory=lambda: deque(maxlen=100))

    def copy(self) -> "WorkerHealthState":
        return replace(self, history=deque(self.history, maxlen=self.history.maxlen))


@dataclass
class Alert:
    id: str
    type: str
    severity: str       # info|warning|error|critical
    source: str
    message: str
    session: str = ""
    pane: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    last_seen_at: float = 0.0
    count: int = 1

    def copy(self) -> "Alert":
        return replace(self, context=dict(self.context))


@dataclass
class RateLimitEvent:
    provider: str
    worker: str
    detected_at: float
    patterns: List[str] = field(default_factory=list)
    wait_seconds: int = 0
    account_before: str = ""
    account_after: str = ""
    switch_success: bool = False


@dataclass(frozen=True)
class SwitchEvent:
    provider: str
    usage_percent: float
    reason: str                 # proactive|reactive
    timestamp: float
    success: bool = False
    previous_account: str = ""
    new_account: str = ""
    error: str = ""
    accounts_remaining: int = 0


def optional_float(v: Any) -> Optional[float]:
    try:
        return float(v)
    except (TypeError, ValueError):
        return None
