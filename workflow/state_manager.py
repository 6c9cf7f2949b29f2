"""
Workflow State Snapshots & Reporting.

Keeps a timeline of point-in-time copies of a workflow's state so a run
can be reconstructed after the fact and turned into a report.

Architecture:
- ``save_state`` appends a snapshot; earlier snapshots for the same
  workflow are never overwritten
- Optionally every snapshot is also appended as one JSON line to
  ``<storage_dir>/<workflow_id>.jsonl`` and can be replayed with
  ``load_snapshots``
- Status changes between consecutive snapshots are exposed as
  transitions for timeline views
- ``generate_report`` is a pure function of the state it is given
"""

import copy
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from workflow.models import StepStatus, WorkflowState

logger = structlog.get_logger(__name__)


def _safe_serialize(obj):
    """Copy ``obj`` into plain JSON types, stringifying anything else.

    Values are never truncated: a snapshot must restore to the same state.
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): _safe_serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_safe_serialize(v) for v in obj]
    return str(obj)


@dataclass(frozen=True)
class StateSnapshot:
    """An immutable, timestamped copy of a workflow's state."""
    id: str
    workflow_id: str
    sequence: int
    taken_at: datetime
    state: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.state.get("status", "")

    def restore(self) -> WorkflowState:
        """Rebuild a ``WorkflowState`` from this snapshot."""
        return WorkflowState.from_dict(copy.deepcopy(self.state))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "sequence": self.sequence,
            "taken_at": self.taken_at.isoformat(),
            "state": self.state,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateSnapshot":
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            sequence=data["sequence"],
            taken_at=datetime.fromisoformat(data["taken_at"]),
            state=data["state"],
            metadata=data.get("metadata", {}),
        )


@dataclass(frozen=True)
class StateTransition:
    """A status change observed between two consecutive snapshots."""
    workflow_id: str
    from_status: str
    to_status: str
    at: datetime
    current_step: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "at": self.at.isoformat(),
            "current_step": self.current_step,
        }


@dataclass
class WorkflowMetrics:
    """Summary numbers for one workflow's snapshot timeline."""
    workflow_id: str
    snapshot_count: int
    status: str
    duration_ms: Optional[int]
    total_steps: int
    steps_by_status: Dict[str, int]
    error_count: int
    total_attempts: int
    success_rate: float
    first_snapshot: Optional[StateSnapshot] = None
    latest_snapshot: Optional[StateSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "snapshot_count": self.snapshot_count,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "total_steps": self.total_steps,
            "steps_by_status": self.steps_by_status,
            "error_count": self.error_count,
            "total_attempts": self.total_attempts,
            "success_rate": self.success_rate,
            "first_snapshot_at": self.first_snapshot.taken_at.isoformat() if self.first_snapshot else None,
            "latest_snapshot_at": self.latest_snapshot.taken_at.isoformat() if self.latest_snapshot else None,
        }


def _wall_clock_ms(state: Dict[str, Any]) -> Optional[int]:
    started, ended = state.get("started_at"), state.get("ended_at")
    if not started or not ended:
        return None
    delta = datetime.fromisoformat(ended) - datetime.fromisoformat(started)
    return int(delta.total_seconds() * 1000)


def _count_by_status(step_results: List[Dict[str, Any]]) -> Dict[str, int]:
    counts = {status.value: 0 for status in StepStatus}
    for result in step_results:
        counts[result["status"]] = counts.get(result["status"], 0) + 1
    return counts


class WorkflowStateManager:
    """
    Records state snapshots per workflow id and derives metrics/reports.

    Works purely in memory unless ``storage_dir`` is given, in which case
    snapshots are also appended to JSON-lines files for later replay.
    """

    def __init__(self, storage_dir: Optional[str] = None):
        self.storage_dir = Path(storage_dir) if storage_dir else None
        self._snapshots: Dict[str, List[StateSnapshot]] = {}

    async def save_state(
        self,
        workflow_id: str,
        state: WorkflowState,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StateSnapshot:
        """Append a snapshot of ``state`` to ``workflow_id``'s timeline."""
        timeline = self._snapshots.setdefault(workflow_id, [])
        snapshot = StateSnapshot(
            id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            sequence=len(timeline) + 1,
            taken_at=datetime.now(timezone.utc),
            state=_safe_serialize(state.to_dict()),
            metadata=_safe_serialize(metadata or {}),
        )
        timeline.append(snapshot)

        self._persist_snapshot(snapshot)

        logger.debug(
            "State snapshot saved",
            workflow_id=workflow_id,
            sequence=snapshot.sequence,
            status=snapshot.status,
        )
        return snapshot

    def _persist_snapshot(self, snapshot: StateSnapshot) -> None:
        if not self.storage_dir:
            return

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            path = self.storage_dir / f"{snapshot.workflow_id}.jsonl"
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(snapshot.to_dict()) + "\n")
        except OSError as e:
            logger.error("Failed to persist snapshot", error=str(e), workflow_id=snapshot.workflow_id)

    def load_snapshots(self, workflow_id: str) -> List[StateSnapshot]:
        """Replay a workflow's timeline from disk into memory."""
        if not self.storage_dir:
            return self.get_snapshots(workflow_id)

        path = self.storage_dir / f"{workflow_id}.jsonl"
        if not path.exists():
            return []

        with path.open(encoding="utf-8") as f:
            snapshots = [StateSnapshot.from_dict(json.loads(line)) for line in f if line.strip()]

        self._snapshots[workflow_id] = snapshots
        logger.info("Snapshots loaded", workflow_id=workflow_id, count=len(snapshots))
        return list(snapshots)

    def get_snapshots(self, workflow_id: str) -> List[StateSnapshot]:
        return list(self._snapshots.get(workflow_id, []))

    def get_latest(self, workflow_id: str) -> Optional[StateSnapshot]:
        timeline = self._snapshots.get(workflow_id)
        return timeline[-1] if timeline else None

    @property
    def workflow_ids(self) -> List[str]:
        return list(self._snapshots)

    def get_transitions(self, workflow_id: str) -> List[StateTransition]:
        transitions = []
        previous = None
        for snapshot in self._snapshots.get(workflow_id, []):
            if previous is not None and snapshot.status != previous.status:
                transitions.append(StateTransition(
                    workflow_id=workflow_id,
                    from_status=previous.status,
                    to_status=snapshot.status,
                    at=snapshot.taken_at,
                    current_step=snapshot.state.get("current_step", 0),
                ))
            previous = snapshot
        return transitions

    def get_metrics(self, workflow_id: str) -> Optional[WorkflowMetrics]:
        timeline = self._snapshots.get(workflow_id)
        if not timeline:
            return None

        first, latest = timeline[0], timeline[-1]
        state = latest.state
        results = state.get("step_results", [])
        counts = _count_by_status(results)
        total_steps = state.get("total_steps", 0)

        return WorkflowMetrics(
            workflow_id=workflow_id,
            snapshot_count=len(timeline),
            status=latest.status,
            duration_ms=_wall_clock_ms(state),
            total_steps=total_steps,
            steps_by_status=counts,
            error_count=len(state.get("errors", [])),
            total_attempts=sum(r.get("attempts", 1) for r in results),
            success_rate=round(counts[StepStatus.COMPLETED.value] / total_steps * 100, 1) if total_steps else 0.0,
            first_snapshot=first,
            latest_snapshot=latest,
        )

    def generate_report(self, state: WorkflowState) -> Dict[str, Any]:
        """Build a JSON-ready report from a (normally terminal) state."""
        data = _safe_serialize(state.to_dict())
        results = data["step_results"]
        counts = _count_by_status(results)
        total_steps = data["total_steps"]

        return {
            "status": data["status"],
            "started_at": data["started_at"],
            "ended_at": data["ended_at"],
            "duration_ms": _wall_clock_ms(data),
            "summary": {
                "total_steps": total_steps,
                "executed_steps": len(results),
                "not_executed_steps": total_steps - len(results),
                "completed": counts[StepStatus.COMPLETED.value],
                "failed": counts[StepStatus.FAILED.value],
                "skipped": counts[StepStatus.SKIPPED.value],
                "errors": len(data["errors"]),
                "success_rate": round(counts[StepStatus.COMPLETED.value] / total_steps * 100, 1) if total_steps else 0.0,
            },
            "steps": [
                {
                    "step": r["step_number"],
                    "name": r["name"],
                    "application": r["application"],
                    "status": r["status"],
                    "duration_ms": r["duration_ms"],
                    "attempts": r["attempts"],
                    "screenshots": r["screenshots"],
                    "error": r["error"]["message"] if r["error"] else None,
                }
                for r in results
            ],
            "errors": data["errors"],
            "data_keys": sorted(data["data"]),
        }

    def clear(self, workflow_id: Optional[str] = None) -> None:
        """Drop in-memory snapshots (files on disk are kept)."""
        if workflow_id is None:
            self._snapshots.clear()
        else:
            self._snapshots.pop(workflow_id, None)
