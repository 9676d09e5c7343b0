"""Deterministic job state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Every transition recorded in the Run Ledger
- State rebuilt from the ledger when a run is restored
"""

from __future__ import annotations

import logging
import threading

from shipwright.core.job_graph import JobGraph
from shipwright.core.run_ledger import RunLedger
from shipwright.models.jobs import VALID_TRANSITIONS, JobState
from shipwright.models.ledger import LedgerEntry

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


class JobMachine:
    """Tracks the state of every job of a run.

    Parameters
    ----------
    ledger:
        Where transitions are recorded.  ``None`` keeps them in memory
        only, which is enough for a run that never parks.
    """

    def __init__(self, ledger: RunLedger | None = None) -> None:
        self._ledger = ledger
        self._lock = threading.Lock()
        # run_id -> {job_name -> JobState}
        self._states: dict[str, dict[str, JobState]] = {}
        self._stages: dict[str, dict[str, str]] = {}
        self._memory: dict[str, list[LedgerEntry]] = {}

    @property
    def ledger(self) -> RunLedger | None:
        return self._ledger

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def initialize_run(self, run_id: str, graph: JobGraph) -> dict[str, JobState]:
        """Start every job of ``graph`` in CREATED for a new run."""
        with self._lock:
            self._states[run_id] = {j.name: JobState.CREATED for j in graph.jobs}
            self._stages[run_id] = {j.name: j.stage for j in graph.jobs}
            self._memory.setdefault(run_id, [])
            return dict(self._states[run_id])

    def restore_run(self, run_id: str, graph: JobGraph) -> dict[str, JobState]:
        """Rebuild in-memory state from recorded transitions (for resume).

        Entries naming jobs the graph no longer has are ignored.
        """
        states = {j.name: JobState.CREATED for j in graph.jobs}
        for entry in self.entries(run_id):
            if entry.job_name in states:
                states[entry.job_name] = JobState(entry.to_state)
        with self._lock:
            self._states[run_id] = states
            self._stages[run_id] = {j.name: j.stage for j in graph.jobs}
            return dict(states)

    def get_current_state(self, run_id: str, job_name: str) -> JobState:
        with self._lock:
            return self._states[run_id][job_name]

    def get_all_states(self, run_id: str) -> dict[str, JobState]:
        with self._lock:
            return dict(self._states[run_id])

    def entries(self, run_id: str) -> list[LedgerEntry]:
        if self._ledger is not None:
            return self._ledger.get_run_entries(run_id)
        return list(self._memory.get(run_id, []))

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        run_id: str,
        job_name: str,
        target_state: JobState,
        *,
        detail: str = "",
    ) -> LedgerEntry:
        """Move ``job_name`` to ``target_state``, recording the transition."""
        with self._lock:
            current = self._states[run_id][job_name]
            allowed = VALID_TRANSITIONS.get(current, set())
            if target_state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {job_name} from {current.value} to "
                    f"{target_state.value}. Allowed: {sorted(s.value for s in allowed)}"
                )

            entry = LedgerEntry(
                run_id=run_id,
                job_name=job_name,
                stage=self._stages[run_id][job_name],
                state_transition=f"{current.value}->{target_state.value}",
                detail=detail,
            )
            if self._ledger is not None:
                self._ledger.append(entry)
            else:
                self._memory[run_id].append(entry)
            self._states[run_id][job_name] = target_state

        logger.debug("%s %s: %s", run_id, job_name, entry.state_transition)
        return entry

    def get_available_transitions(self, run_id: str, job_name: str) -> set[JobState]:
        return VALID_TRANSITIONS.get(self.get_current_state(run_id, job_name), set())
