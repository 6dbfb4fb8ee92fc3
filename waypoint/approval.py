"""Approval gates that hold a workflow until a human decides."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple, Union

from .contracts import ApprovalDecision, WorkflowTask

logger = logging.getLogger(__name__)

AutoDecision = Union[ApprovalDecision, Tuple[ApprovalDecision, Optional[str]], None]
AutoDecider = Callable[[WorkflowTask], AutoDecision]


class ApprovalGate:
    """Pending decision for one approval-gate task."""

    def __init__(self, task: WorkflowTask, future: asyncio.Future) -> None:
        self.task = task
        self.decision: Optional[ApprovalDecision] = None
        self.reason: Optional[str] = None
        self._future = future
        self._loop = future.get_loop()

    @property
    def is_decided(self) -> bool:
        return self.decision is not None

    def _resolve(self) -> None:
        if not self._future.done():
            self._future.set_result(self.decision)


class ApprovalGateCoordinator:
    """Tracks open gates and routes approve/reject calls to them.

    ``approve`` and ``reject`` may be called from any thread, for example a
    presentation layer's UI thread. An optional ``auto_decide`` callable is
    consulted when a gate opens; returning ``None`` leaves the gate waiting
    for a manual decision.
    """

    def __init__(
        self,
        auto_decide: Optional[AutoDecider] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._gates: Dict[str, ApprovalGate] = {}
        self._lock = threading.Lock()
        self._auto_decide = auto_decide
        self._logger = logger or logging.getLogger(__name__)

    def open(self, task: WorkflowTask) -> ApprovalGate:
        """Register a gate for ``task``. Must be called on the event loop."""
        future = asyncio.get_running_loop().create_future()
        gate = ApprovalGate(task, future)
        with self._lock:
            self._gates[task.name] = gate
        self._logger.info(f"Approval gate opened for task '{task.name}'")

        if self._auto_decide is not None:
            decided = self._auto_decide(task)
            if decided is not None:
                if isinstance(decided, tuple):
                    decision, reason = decided
                else:
                    decision, reason = decided, None
                self._decide(task.name, decision, reason)
        return gate

    def pending(self) -> List[WorkflowTask]:
        with self._lock:
            return [gate.task for gate in self._gates.values() if not gate.is_decided]

    def is_pending(self, task_name: str) -> bool:
        with self._lock:
            gate = self._gates.get(task_name)
            return gate is not None and not gate.is_decided

    def approve(self, task_name: str, reason: Optional[str] = None) -> bool:
        """Approve the gate. Returns False when no gate is waiting."""
        return self._decide(task_name, ApprovalDecision.APPROVED, reason)

    def reject(self, task_name: str, reason: Optional[str] = None) -> bool:
        """Reject the gate. Returns False when no gate is waiting.

        Raises:
            ValueError: If the task requires a reason and none was given.
        """
        with self._lock:
            gate = self._gates.get(task_name)
        if gate is not None and gate.task.require_reason and not (reason or "").strip():
            raise ValueError(f"Rejecting '{task_name}' requires a reason")
        return self._decide(task_name, ApprovalDecision.REJECTED, reason)

    def discard(self, task_name: str) -> None:
        """Drop a gate without deciding it, e.g. when the run is cancelled."""
        with self._lock:
            self._gates.pop(task_name, None)

    def _decide(
        self, task_name: str, decision: ApprovalDecision, reason: Optional[str]
    ) -> bool:
        with self._lock:
            gate = self._gates.get(task_name)
            if gate is None or gate.is_decided:
                return False
            gate.decision = decision
            gate.reason = reason
        gate._loop.call_soon_threadsafe(gate._resolve)
        self._logger.info(
            f"Approval gate '{task_name}' decided: {decision.value}"
            + (f" ({reason})" if reason else "")
        )
        return True

    async def wait_for_decision(
        self, task_name: str, timeout: Optional[float] = None
    ) -> ApprovalDecision:
        """Suspend until the gate for ``task_name`` is decided or times out.

        The decision and reason are recorded on the task. A ``timeout`` of
        ``None`` or ``0`` waits indefinitely.
        """
        with self._lock:
            gate = self._gates.get(task_name)
        if gate is None:
            raise KeyError(f"No approval gate open for task '{task_name}'")

        try:
            await asyncio.wait_for(asyncio.shield(gate._future), timeout or None)
        except asyncio.TimeoutError:
            with self._lock:
                if not gate.is_decided:
                    gate.decision = ApprovalDecision.TIMED_OUT
                    gate.reason = f"No decision within {timeout:g} seconds"
            self._logger.warning(f"Approval gate '{task_name}' timed out")
        finally:
            with self._lock:
                self._gates.pop(task_name, None)
            if gate.is_decided:
                gate.task.approval_decision = gate.decision
                gate.task.approval_reason = gate.reason

        assert gate.decision is not None
        return gate.decision
