"""
In-Memory Run Storage for shipline.

This module keeps pipeline runs for the lifetime of the process so the
trigger API and the operator CLI can report progress while a run executes
in the background. It uses a reentrant lock because the API's request
handlers and the background pipeline tasks share one instance.

Note:
    Runs are lost when the process restarts. The pipeline itself does not
    depend on this history: re-running converges because every step is
    idempotent.

Classes:
    InMemoryDB: Thread-safe in-memory storage for runs

Author: Nosa Omorodion
Version: 0.3.0
"""

from __future__ import annotations

from threading import RLock
from typing import Dict, List, Optional

from .models import Run


class InMemoryDB:
    """
    Thread-safe in-memory store of pipeline runs, indexed by run id.

    Attributes:
        _runs (Dict[str, Run]): Run storage indexed by ID
        _lock (RLock): Reentrant lock for thread safety
    """

    def __init__(self) -> None:
        self._runs: Dict[str, Run] = {}
        self._lock = RLock()

    def create_run(self, run: Run) -> Run:
        """Store a new run and return it."""
        with self._lock:
            self._runs[run.id] = run
            return run

    def list_runs(self, revision: Optional[str] = None) -> List[Run]:
        """
        Return stored runs, newest revision timestamps first.

        Args:
            revision: Only return runs for this revision id
        """
        with self._lock:
            runs = list(self._runs.values())
        if revision is not None:
            runs = [r for r in runs if r.revision.id == revision]
        return sorted(runs, key=lambda r: r.revision.timestamp, reverse=True)

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def update_run(self, run_id: str, run: Run) -> Optional[Run]:
        """
        Replace a stored run with its latest state.

        Returns:
            Optional[Run]: The run if it was known, None otherwise
        """
        with self._lock:
            if run_id not in self._runs:
                return None
            self._runs[run_id] = run
            return run


# Global database instance
db = InMemoryDB()
