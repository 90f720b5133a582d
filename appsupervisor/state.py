"""
Instance state machine and the table that owns every instance's state.

InstanceTable.transition() is the only writer of instance records. Readers get
copies taken under the table lock, so a status query never sees a half-applied
transition.
"""

import logging
import signal
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Optional

from .errors import InvalidTransition

logger = logging.getLogger(__name__)


class InstanceState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"
    ERRORED = "errored"  # Stopped, and never auto-restarted again


TRANSITIONS: dict[InstanceState, frozenset] = {
    InstanceState.STOPPED: frozenset({InstanceState.STARTING}),
    InstanceState.STARTING: frozenset({InstanceState.RUNNING, InstanceState.CRASHED, InstanceState.STOPPED}),
    InstanceState.RUNNING: frozenset({InstanceState.STOPPING, InstanceState.CRASHED}),
    InstanceState.STOPPING: frozenset({InstanceState.STOPPED}),
    InstanceState.CRASHED: frozenset({InstanceState.STARTING, InstanceState.STOPPED, InstanceState.ERRORED}),
    InstanceState.ERRORED: frozenset({InstanceState.STARTING, InstanceState.STOPPED}),
}

# States in which no child process exists and no restart is pending
IDLE_STATES = frozenset({InstanceState.STOPPED, InstanceState.ERRORED})


@dataclass(frozen=True)
class ExitStatus:
    """How a child process ended."""

    returncode: Optional[int]
    signal: Optional[int] = None
    at: datetime = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        # asyncio reports death-by-signal as a negative return code
        if returncode is not None and returncode < 0:
            return cls(returncode=None, signal=-returncode, at=datetime.now())
        return cls(returncode=returncode, signal=None, at=datetime.now())

    @property
    def signal_name(self) -> Optional[str]:
        if self.signal is None:
            return None
        try:
            return signal.Signals(self.signal).name
        except ValueError:
            return str(self.signal)

    @property
    def clean(self) -> bool:
        return self.returncode == 0

    def describe(self) -> str:
        if self.signal is not None:
            return f"signal {self.signal_name}"
        return f"exit code {self.returncode}"

    def to_dict(self) -> dict:
        return {
            "returncode": self.returncode,
            "signal": self.signal_name,
            "reason": self.describe(),
            "at": self.at.isoformat() if self.at else None,
        }


@dataclass
class InstanceRecord:
    """Observable state of one instance of an app."""

    app_name: str
    index: int
    state: InstanceState = InstanceState.STOPPED
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    restart_count: int = 0
    last_exit: Optional[ExitStatus] = None
    alert: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.app_name}[{self.index}]"

    def uptime_seconds(self, now: datetime = None) -> float:
        if self.state != InstanceState.RUNNING or not self.started_at:
            return 0.0
        return ((now or datetime.now()) - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "app": self.app_name,
            "instance": self.index,
            "state": self.state.value,
            "pid": self.pid,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": round(self.uptime_seconds(), 1),
            "restart_count": self.restart_count,
            "last_exit": self.last_exit.to_dict() if self.last_exit else None,
            "alert": self.alert,
        }


_UNSET = object()


class InstanceTable:
    """Owns the InstanceRecord of every instance of every app."""

    def __init__(self):
        self._records: dict[tuple[str, int], InstanceRecord] = {}
        self._lock = threading.Lock()

    def ensure(self, app_name: str, index: int) -> InstanceRecord:
        """Create a Stopped record if the instance is new; return a copy either way."""
        with self._lock:
            record = self._records.get((app_name, index))
            if record is None:
                record = InstanceRecord(app_name=app_name, index=index)
                self._records[(app_name, index)] = record
            return replace(record)

    def transition(
        self,
        app_name: str,
        index: int,
        state: InstanceState,
        *,
        pid=_UNSET,
        started_at=_UNSET,
        last_exit=_UNSET,
        alert=_UNSET,
        restarted: bool = False,
    ) -> InstanceRecord:
        """
        Move an instance to `state`, applying the accompanying field changes atomically.

        Raises InvalidTransition when the state machine has no such edge.
        Returns a copy of the updated record.
        """
        with self._lock:
            record = self._records.get((app_name, index))
            if record is None:
                raise InvalidTransition(f"{app_name}[{index}] is not a known instance")
            if state not in TRANSITIONS[record.state]:
                raise InvalidTransition(
                    f"{record.label}: cannot go from {record.state.value} to {state.value}"
                )
            previous = record.state
            record.state = state
            if pid is not _UNSET:
                record.pid = pid
            if started_at is not _UNSET:
                record.started_at = started_at
            if last_exit is not _UNSET:
                record.last_exit = last_exit
            if alert is not _UNSET:
                record.alert = alert
            if restarted:
                record.restart_count += 1
            snapshot = replace(record)

        logger.debug(f"{snapshot.label}: {previous.value} -> {state.value}")
        return snapshot

    def get(self, app_name: str, index: int) -> Optional[InstanceRecord]:
        with self._lock:
            record = self._records.get((app_name, index))
            return replace(record) if record else None

    def snapshot(self, app_name: str = None) -> list[InstanceRecord]:
        """Copies of all records (of one app, if given), ordered by app and index."""
        with self._lock:
            records = [
                replace(record)
                for key, record in self._records.items()
                if app_name is None or key[0] == app_name
            ]
        return sorted(records, key=lambda r: (r.app_name, r.index))

    def discard(self, app_name: str, index: int = None):
        """Forget an instance, or every instance of an app."""
        with self._lock:
            for key in list(self._records):
                if key[0] == app_name and (index is None or key[1] == index):
                    del self._records[key]
