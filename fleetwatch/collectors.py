from __future__ import annotations
import logging
import os
from typing import Callable, Dict, List, Optional, Set

import psutil

log = logging.getLogger(__name__)

PROC_ROOT = "/proc"


def process_table() -> Dict[int, int]:
    """pid → ppid for every process psutil can see."""
    table: Dict[int, int] = {}
    for p in psutil.process_iter(["pid", "ppid"]):
        try:
            table[int(p.info["pid"])] = int(p.info.get("ppid") or 0)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return table


# ──────────────────────────────────────────────
# ProcessTree – descendant discovery
# ──────────────────────────────────────────────
class ProcessTree:
    """
    Two-tier descendant lookup:
    - fast path: kernel children list (/proc/<pid>/task/<pid>/children, Linux 3.5+)
    - fallback: full process-table scan matching parent PIDs, O(n·depth)
    The fallback only runs when the kernel list is missing for the root PID.
    """

    def __init__(self, proc_root: str = PROC_ROOT,
                 table_source: Callable[[], Dict[int, int]] = process_table):
        self.proc_root = proc_root
        self._table_source = table_source
        self.fallback_scans = 0

    def descendants(self, pid: int) -> List[int]:
        found = self.descendants_from_kernel(pid)
        if found is not None:
            return found
        self.fallback_scans += 1
        log.debug("kernel children list unavailable for pid %d, scanning process table", pid)
        return self.descendants_from_scan(pid, self._table_source())

    # ── fast path ─────────────────────────────
    def kernel_children(self, pid: int) -> Optional[List[int]]:
        path = os.path.join(self.proc_root, str(pid), "task", str(pid), "children")
        try:
            with open(path, "r", encoding="ascii") as fh:
                data = fh.read()
        except OSError:
            return None
        return [int(f) for f in data.split() if f.isdigit() and int(f) > 0]

    def descendants_from_kernel(self, pid: int, _seen: Optional[Set[int]] = None) -> Optional[List[int]]:
        children = self.kernel_children(pid)
        if children is None:
            return None
        seen = _seen if _seen is not None else {pid}
        out: List[int] = []
        for child in children:
            if child in seen:
                continue
            seen.add(child)
            out.append(child)
            # a child that exited mid-walk has no list; keep what we have
            out.extend(self.descendants_from_kernel(child, seen) or [])
        return out

    # ── fallback ──────────────────────────────
    def descendants_from_scan(self, pid: int, table: Dict[int, int],
                              _seen: Optional[Set[int]] = None) -> List[int]:
        seen = _seen if _seen is not None else {pid}
        out: List[int] = []
        for child, parent in sorted(table.items()):
            if parent != pid or child in seen:
                continue
            seen.add(child)
            out.append(child)
            out.extend(self.descendants_from_scan(child, table, seen))
        return out
