"""Per-parent record of the runs a run triggered."""

import logging
import threading
import weakref
from typing import List, Union

from .host import ExecutionHost
from .models import Run

logger = logging.getLogger(__name__)


def _run_id(run: Union[Run, str]) -> str:
    return run.id if isinstance(run, Run) else run


class DownstreamTracker:
    """
    Append-only list of child run ids attached to a parent run.

    Appends for the same parent are serialized by one lock per parent. A
    lock lives only while some thread holds it.
    """

    def __init__(self, host: ExecutionHost):
        self.host = host
        self._locks = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()

    def _lock_for(self, parent_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(parent_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[parent_id] = lock
            return lock

    def record(self, parent: Union[Run, str], child: Union[Run, str]) -> None:
        parent_id, child_id = _run_id(parent), _run_id(child)
        with self._lock_for(parent_id):
            self.host.append_downstream(parent_id, child_id)
        logger.debug("Recorded %s as downstream of %s", child_id, parent_id)

    def list(self, parent: Union[Run, str]) -> List[str]:
        return list(self.host.list_downstream(_run_id(parent)))

    def resolve(self, parent: Union[Run, str]) -> List[Run]:
        """Look each child up again; children the host has discarded are skipped."""
        runs = []
        for child_id in self.list(parent):
            run = self.host.get_run(child_id)
            if run is not None:
                runs.append(run)
        return runs
