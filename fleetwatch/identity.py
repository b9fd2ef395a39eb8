from __future__ import annotations
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from PySide6 import QtCore

from .collectors import ProcessTree
from .errors import FleetwatchError, ResolutionError
from .interfaces import PaneEnumerator, PaneInfo
from .models import ProcessMap, WorkerIdentity, parse_pane_title
from .workers import PollingThread, read_locked, write_locked

log = logging.getLogger(__name__)


class IdentityResolver:
    """
    Maps workers (session panes) to their OS process trees.

    Every refresh builds a brand new ProcessMap and swaps it in under the write
    lock; readers only ever see a complete snapshot.
    """

    def __init__(self, enumerator: PaneEnumerator, session: str = "",
                 tree: Optional[ProcessTree] = None,
                 timeout: float = 5.0,
                 refresh_interval: float = 15.0,
                 clock: Callable[[], float] = time.time):
        self.enumerator = enumerator
        self.session = session
        self.tree = tree or ProcessTree()
        self.timeout = timeout
        self.refresh_interval = refresh_interval
        self._clock = clock
        self._lock = QtCore.QReadWriteLock()
        self._map = ProcessMap(session=session)
        self._thread: Optional[PollingThread] = None

    # ── refresh ───────────────────────────────
    def refresh(self, session: Optional[str] = None) -> ProcessMap:
        scope = self.session if session is None else session
        panes = self._enumerate(scope)

        # primaries first so a pane's own PID is never claimed as another pane's child
        worker_to_pid: Dict[str, int] = {}
        pid_to_worker: Dict[int, WorkerIdentity] = {}
        roots: List[Tuple[int, WorkerIdentity]] = []
        for pane in panes:
            if pane.pid <= 0:
                continue
            kind, ordinal = parse_pane_title(pane.title)
            ident = WorkerIdentity(
                session=pane.session, pane_index=pane.index, pane_title=pane.title,
                kind=kind, ordinal=ordinal,
            )
            if pane.pid in pid_to_worker:
                log.warning("pid %d reported for both %s and %s, keeping the first",
                            pane.pid, pid_to_worker[pane.pid], ident)
                continue
            if ident.key in worker_to_pid:
                log.warning("duplicate pane %s (pid %d), keeping the first", ident, pane.pid)
                continue
            worker_to_pid[ident.key] = pane.pid
            pid_to_worker[pane.pid] = ident
            roots.append((pane.pid, ident))

        descendants: Dict[int, Tuple[int, ...]] = {}
        for pid, ident in roots:
            try:
                found = self.tree.descendants(pid)
            except OSError as e:
                log.debug("failed to get child pids for %s (pid %d): %s", ident, pid, e)
                found = []
            owned = []
            for child in found:
                if child in pid_to_worker:
                    continue
                pid_to_worker[child] = ident
                owned.append(child)
            descendants[pid] = tuple(owned)
            log.debug("mapped pane %s pid=%d children=%d", ident, pid, len(owned))

        snapshot = ProcessMap(
            worker_to_pid=worker_to_pid,
            pid_to_worker=pid_to_worker,
            descendants=descendants,
            refreshed_at=self._clock(),
            session=scope,
        )
        with write_locked(self._lock):
            self._map = snapshot
        log.info("refreshed process map: %d panes, %d pids", len(worker_to_pid), len(pid_to_worker))
        return snapshot

    def _enumerate(self, scope: str) -> List[PaneInfo]:
        if scope:
            try:
                return list(self.enumerator.list_panes(scope, self.timeout))
            except (FleetwatchError, OSError) as e:
                raise ResolutionError(f"failed to get panes for session {scope}: {e}") from e

        try:
            sessions = list(self.enumerator.list_sessions(self.timeout))
        except (FleetwatchError, OSError) as e:
            raise ResolutionError(f"failed to list sessions: {e}") from e

        panes: List[PaneInfo] = []
        for name in sessions:
            try:
                panes.extend(self.enumerator.list_panes(name, self.timeout))
            except (FleetwatchError, OSError) as e:
                log.warning("failed to get panes for session %s: %s", name, e)
        return panes

    # ── queries ───────────────────────────────
    def snapshot(self) -> ProcessMap:
        with read_locked(self._lock):
            return self._map

    def lookup(self, pid: int) -> Optional[WorkerIdentity]:
        return self.snapshot().pid_to_worker.get(pid)

    def primary_pid(self, worker: str) -> Optional[int]:
        return self.snapshot().worker_to_pid.get(worker)

    def all_pids(self, worker: str) -> List[int]:
        snap = self.snapshot()
        pid = snap.worker_to_pid.get(worker)
        if pid is None:
            return []
        return [pid, *snap.descendants.get(pid, ())]

    def pid_labels(self) -> Dict[int, str]:
        return {pid: str(ident) for pid, ident in self.snapshot().pid_to_worker.items()}

    def stats(self) -> Dict[str, object]:
        return self.snapshot().stats()

    # ── lifecycle ─────────────────────────────
    def start(self) -> None:
        if self.running:
            return
        self._thread = PollingThread("IdentityResolver", self.refresh_interval, self.refresh)
        self._thread.begin()
        log.info("identity resolver started (session=%r, every %.0fs)", self.session, self.refresh_interval)

    def stop(self) -> None:
        if self._thread is None:
            return
        self._thread.stop()
        self._thread = None
        log.info("identity resolver stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_active()
