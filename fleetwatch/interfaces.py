"""
Collaborator roles consumed by the core. Concrete adapters (tmux, process
triage, network observer, account manager, usage poller) live outside this
package and are injected at construction time.

Every call takes a ``timeout`` in seconds. Implementations raise
``CollaboratorTimeout`` when it is exceeded, ``ToolUnavailable`` when the
backing tool is missing and ``MalformedResponse`` on unparseable output.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, List, Protocol, runtime_checkable


@dataclass(frozen=True)
class PaneInfo:
    session: str
    index: int
    title: str
    pid: int


@dataclass(frozen=True)
class RawClassification:
    pid: int
    label: str          # oracle vocabulary, mapped by the health monitor
    confidence: float
    reason: str = ""


@dataclass(frozen=True)
class SwitchResult:
    previous_account: str
    new_account: str
    accounts_remaining: int = 0


@runtime_checkable
class PaneEnumerator(Protocol):
    def list_sessions(self, timeout: float) -> List[str]: ...

    def list_panes(self, session: str, timeout: float) -> List[PaneInfo]: ...


@runtime_checkable
class ClassificationOracle(Protocol):
    def classify(self, pids: List[int], timeout: float) -> List[RawClassification]:
        """One batched call. Exited or unknown PIDs are omitted from the result."""
        ...


@runtime_checkable
class NetworkActivityOracle(Protocol):
    def last_requests(self, timeout: float) -> Dict[int, float]:
        """PID -> epoch seconds of the last outbound request."""
        ...


@runtime_checkable
class CredentialRotator(Protocol):
    def switch_next(self, provider: str, timeout: float) -> SwitchResult:
        """Raises RotationFailed on a structured failure."""
        ...

    def account_count(self, provider: str, timeout: float) -> int: ...


@runtime_checkable
class UsageSource(Protocol):
    def usage(self, timeout: float) -> Dict[str, float]:
        """Provider -> quota used, in percent."""
        ...
