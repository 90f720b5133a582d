"""
Process supervisor for declared apps.

Launches every instance of an app as a child process, captures its
stdout/stderr, and reacts to exits through a single control loop that applies
the restart policy. Each child is awaited by its own task; exits, backoff
timers and watch notifications reach the control loop as messages, so the loop
never blocks on any one child.
"""

import asyncio
import logging
import os
import shutil
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

from .config import Config, config
from .descriptor import AppDescriptor
from .errors import (
    CrashExit,
    LaunchError,
    RestartBudgetExceeded,
    ShutdownTimeout,
    UnknownAppError,
    ValidationError,
)
from .policy import RestartPolicy, RestartTracker
from .state import IDLE_STATES, ExitStatus, InstanceRecord, InstanceState, InstanceTable
from .watch import DirectoryWatcher

logger = logging.getLogger(__name__)

STREAM_LIMIT = 1024 * 1024


@dataclass
class OutputLine:
    """A captured line of child output."""

    instance: int
    stream: str
    message: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "instance": self.instance,
            "stream": self.stream,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _Slot:
    """Runtime handles for one instance. Its state lives in the InstanceTable."""

    app_name: str
    index: int
    tracker: RestartTracker
    output: deque
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    process: Optional[asyncio.subprocess.Process] = None
    waiter: Optional[asyncio.Task] = None
    restart_timer: Optional[asyncio.Task] = None
    # Bumped on every launch and stop; messages carrying an older value are stale
    generation: int = 0


@dataclass(frozen=True)
class _Exited:
    app_name: str
    index: int
    generation: int
    status: ExitStatus


@dataclass(frozen=True)
class _RestartDue:
    app_name: str
    index: int
    generation: int


@dataclass(frozen=True)
class _WatchTriggered:
    app_name: str


def detect_level(stream: str, line: str) -> str:
    """Guess a log level for a line of child output."""
    level = "error" if stream == "stderr" else "info"
    lower = line.lower()
    if "error" in lower or "exception" in lower or "traceback" in lower:
        level = "error"
    elif "warning" in lower or "warn" in lower:
        level = "warning"
    return level


class Supervisor:
    """Owns the lifecycle of every instance of every registered app."""

    def __init__(self, settings: Config = None):
        self.settings = settings or config
        self.table = InstanceTable()
        self._apps: dict[str, AppDescriptor] = {}
        self._slots: dict[tuple[str, int], _Slot] = {}
        self._watchers: dict[str, DirectoryWatcher] = {}
        self._events: Optional[asyncio.Queue] = None
        self._control_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._on_log: Callable[[str, int, str, str], None] = None
        self._on_event: Callable[[str, int, str, str, Optional[ExitStatus]], None] = None

    def set_log_callback(self, callback: Callable[[str, int, str, str], None]):
        """Set callback for captured output: callback(app_name, instance, level, message)."""
        self._on_log = callback

    def set_event_callback(self, callback: Callable[[str, int, str, str, Optional[ExitStatus]], None]):
        """Set callback for lifecycle events: callback(app_name, instance, kind, message, exit_status)."""
        self._on_event = callback

    # Lifecycle of the supervisor itself

    @property
    def running(self) -> bool:
        return self._control_task is not None and not self._control_task.done()

    async def open(self):
        """Start the control loop."""
        if self.running:
            return
        self._events = asyncio.Queue()
        self._control_task = asyncio.create_task(self.monitor())
        logger.info("Supervisor control loop started")

    async def shutdown(self):
        """Stop watchers, cancel pending restarts, stop every app, then stop the control loop."""
        logger.info("Shutting down all apps...")
        for watcher in self._watchers.values():
            watcher.stop()
        for slot in self._slots.values():
            self._cancel_timer(slot)

        await asyncio.gather(
            *(self._stop_instance(self._apps[slot.app_name], slot) for slot in list(self._slots.values())),
            return_exceptions=True,
        )

        if self._control_task:
            self._control_task.cancel()
            try:
                await self._control_task
            except asyncio.CancelledError:
                pass
            self._control_task = None

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        # Descriptors and their instances live only as long as the supervisor runs
        self._watchers.clear()
        for name in list(self._apps):
            self.table.discard(name)
        self._slots.clear()
        self._apps.clear()
        logger.info("Supervisor stopped")

    # Registry

    def descriptors(self) -> list[AppDescriptor]:
        return list(self._apps.values())

    def get_descriptor(self, name: str) -> AppDescriptor:
        descriptor = self._apps.get(name)
        if descriptor is None:
            raise UnknownAppError(name)
        return descriptor

    def _register(self, descriptor: AppDescriptor):
        previous = self._apps.get(descriptor.name)
        self._apps[descriptor.name] = descriptor
        policy = RestartPolicy.for_app(descriptor, self.settings)
        for slot in self._app_slots(descriptor.name):
            slot.tracker.policy = policy

        watcher = self._watchers.get(descriptor.name)
        watch_changed = previous is None or (
            previous.working_directory != descriptor.working_directory
            or previous.ignore_watch != descriptor.ignore_watch
        )
        if watcher and (not descriptor.watch_enabled or watch_changed):
            watcher.stop()
            del self._watchers[descriptor.name]
            watcher = None
        if descriptor.watch_enabled and watcher is None:
            watcher = DirectoryWatcher(
                descriptor.name,
                descriptor.working_directory,
                descriptor.ignore_watch,
                self.settings.watch_debounce,
                self._on_watch_settled,
                loop=asyncio.get_running_loop(),
            )
            self._watchers[descriptor.name] = watcher
            watcher.start()

    def _slot(self, descriptor: AppDescriptor, index: int) -> _Slot:
        key = (descriptor.name, index)
        slot = self._slots.get(key)
        if slot is None:
            slot = _Slot(
                app_name=descriptor.name,
                index=index,
                tracker=RestartTracker(RestartPolicy.for_app(descriptor, self.settings)),
                output=deque(maxlen=self.settings.output_buffer_lines),
            )
            self._slots[key] = slot
            self.table.ensure(descriptor.name, index)
        return slot

    def _app_slots(self, name: str) -> list[_Slot]:
        return sorted(
            (slot for key, slot in self._slots.items() if key[0] == name),
            key=lambda s: s.index,
        )

    def _drop_slot(self, slot: _Slot):
        self._slots.pop((slot.app_name, slot.index), None)
        self.table.discard(slot.app_name, slot.index)

    # Management operations

    async def start(self, descriptor: AppDescriptor, restarted: bool = False) -> list[InstanceRecord]:
        """
        Start every instance of an app.

        Raises ValidationError before spawning anything if the descriptor is
        unusable, and LaunchError if any instance could not be created (the
        other instances are still started).
        """
        descriptor.validate_runtime()
        current = self._apps.get(descriptor.name)
        if current is not None and current != descriptor and self._has_active(descriptor.name):
            raise ValidationError(
                f"App '{descriptor.name}' is already running with a different descriptor, reload it instead"
            )
        self._register(descriptor)

        failures = []
        for index in range(descriptor.instance_count):
            try:
                await self._start_instance(descriptor, index, restarted=restarted)
            except LaunchError as e:
                failures.append(e)

        # Instances left over from a larger instance count
        for slot in self._app_slots(descriptor.name):
            if slot.index >= descriptor.instance_count:
                await self._stop_instance(descriptor, slot)
                self._drop_slot(slot)

        if failures:
            raise failures[0]
        return self.status(descriptor.name)

    async def stop(self, name: str) -> list[InstanceRecord]:
        """Stop every instance of an app. Stopping a stopped app is a no-op."""
        descriptor = self.get_descriptor(name)
        await asyncio.gather(*(self._stop_instance(descriptor, slot) for slot in self._app_slots(name)))
        logger.info(f"Stopped app {name}")
        return self.status(name)

    async def restart(self, name: str) -> list[InstanceRecord]:
        """Stop then start every instance, clearing any Errored state."""
        descriptor = self.get_descriptor(name)
        await self.stop(name)
        return await self.start(descriptor, restarted=True)

    async def reload(self, descriptor: Union[AppDescriptor, str]) -> list[InstanceRecord]:
        """
        Replace an app's instances one at a time.

        With more than one instance the others keep running while each one is
        cycled. Accepts a new descriptor, or a name to cycle the current one.
        """
        if isinstance(descriptor, str):
            descriptor = self.get_descriptor(descriptor)
        descriptor.validate_runtime()

        previous = self._apps.get(descriptor.name)
        if previous is None:
            return await self.start(descriptor)

        self._register(descriptor)
        logger.info(f"Reloading app {descriptor.name} ({descriptor.instance_count} instance(s))")

        # Added instances come up before any existing one is taken down
        for index in range(previous.instance_count, descriptor.instance_count):
            await self._start_instance(descriptor, index)

        for index in range(min(previous.instance_count, descriptor.instance_count)):
            slot = self._slot(descriptor, index)
            await self._stop_instance(previous, slot)
            await self._start_instance(descriptor, index, restarted=True)

        for slot in self._app_slots(descriptor.name):
            if slot.index >= descriptor.instance_count:
                await self._stop_instance(previous, slot)
                self._drop_slot(slot)

        return self.status(descriptor.name)

    async def remove(self, name: str):
        """Stop an app and forget its descriptor."""
        await self.stop(name)
        watcher = self._watchers.pop(name, None)
        if watcher:
            watcher.stop()
        for slot in self._app_slots(name):
            self._drop_slot(slot)
        del self._apps[name]
        logger.info(f"Removed app {name}")

    def status(self, name: str = None) -> list[InstanceRecord]:
        """Snapshot of every instance of an app, or of all apps."""
        if name is not None:
            self.get_descriptor(name)
        return self.table.snapshot(name)

    def logs(self, name: str, instance: int = None, lines: int = 100) -> list[OutputLine]:
        """Most recent captured output lines of an app, oldest first."""
        self.get_descriptor(name)
        collected = []
        for slot in self._app_slots(name):
            if instance is None or slot.index == instance:
                collected.extend(slot.output)
        collected.sort(key=lambda line: line.timestamp)
        return collected[-lines:] if lines else collected

    def _has_active(self, name: str) -> bool:
        return any(record.state not in IDLE_STATES for record in self.table.snapshot(name))

    # Instance lifecycle

    async def _start_instance(self, descriptor: AppDescriptor, index: int, restarted: bool = False):
        slot = self._slot(descriptor, index)
        self._cancel_timer(slot)
        async with slot.lock:
            record = self.table.get(descriptor.name, index)
            if record.state in (InstanceState.RUNNING, InstanceState.STARTING):
                logger.info(f"{record.label} is already running")
                return
            if record.state == InstanceState.CRASHED:
                slot.generation += 1
            slot.tracker.reset()
            await self._launch(descriptor, slot, restarted=restarted)

    async def _launch(self, descriptor: AppDescriptor, slot: _Slot, restarted: bool):
        """Spawn the child for a slot. Caller holds slot.lock."""
        self.table.transition(slot.app_name, slot.index, InstanceState.STARTING, alert=None)
        try:
            process = await self._spawn(descriptor, slot.index)
        except LaunchError as e:
            logger.error(str(e))
            self._record_event(slot, "launch_failed", str(e))
            if descriptor.auto_restart:
                self.table.transition(slot.app_name, slot.index, InstanceState.CRASHED, pid=None)
                self._apply_restart_policy(descriptor, slot, uptime=None)
            else:
                self.table.transition(slot.app_name, slot.index, InstanceState.STOPPED, pid=None)
            raise

        slot.generation += 1
        slot.process = process
        record = self.table.transition(
            slot.app_name,
            slot.index,
            InstanceState.RUNNING,
            pid=process.pid,
            started_at=datetime.now(),
            restarted=restarted,
        )
        pumps = [
            self._spawn_task(self._capture_output(descriptor, slot, process.stdout, "stdout")),
            self._spawn_task(self._capture_output(descriptor, slot, process.stderr, "stderr")),
        ]
        slot.waiter = self._spawn_task(self._wait_for_exit(slot, process, slot.generation, pumps))
        logger.info(f"Started {record.label} with PID {process.pid}")
        self._record_event(slot, "restarted" if restarted else "started", f"PID {process.pid}")

    def _build_command(self, descriptor: AppDescriptor, index: int) -> list[str]:
        entry = descriptor.entry_path()
        interpreter = descriptor.resolved_interpreter()

        if interpreter:
            if shutil.which(interpreter) is None:
                raise LaunchError(descriptor.name, index, f"interpreter '{interpreter}' not found")
            if not entry.exists():
                raise LaunchError(descriptor.name, index, f"entry point {entry} not found")
            return [interpreter, str(entry), *descriptor.args]

        if entry.exists():
            return [str(entry), *descriptor.args]
        # Bare command names are looked up on PATH
        if shutil.which(descriptor.entry_point):
            return [descriptor.entry_point, *descriptor.args]
        raise LaunchError(descriptor.name, index, f"entry point {entry} not found")

    async def _spawn(self, descriptor: AppDescriptor, index: int) -> asyncio.subprocess.Process:
        cmd = self._build_command(descriptor, index)
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(descriptor.working_directory),
                env=descriptor.child_env(index),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,  # Own process group, so signals reach its children too
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            raise LaunchError(descriptor.name, index, str(e)) from e

    async def _wait_for_exit(self, slot: _Slot, process, generation: int, pumps: list[asyncio.Task]):
        returncode = await process.wait()
        # Grandchildren may keep the pipes open after the child itself is gone
        _, pending = await asyncio.wait(pumps, timeout=self.settings.output_drain_timeout)
        for task in pending:
            task.cancel()
        self._events.put_nowait(
            _Exited(slot.app_name, slot.index, generation, ExitStatus.from_returncode(returncode))
        )

    async def _capture_output(self, descriptor: AppDescriptor, slot: _Slot, stream, stream_name: str):
        """Capture process output and write it to the instance log file, buffer and callback."""
        log_dir = self.settings.logs_dir / descriptor.name
        log_dir.mkdir(parents=True, exist_ok=True)
        with open(log_dir / f"{stream_name}-{slot.index}.log", "a") as log_file:
            while True:
                try:
                    line = await stream.readline()
                except ValueError:
                    # Oversized line; asyncio has discarded it, keep reading raw chunks
                    line = await stream.read(STREAM_LIMIT)
                if not line:
                    break
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if not decoded:
                    continue

                entry = OutputLine(instance=slot.index, stream=stream_name, message=decoded)
                log_file.write(f"[{entry.timestamp.isoformat()}] {decoded}\n")
                log_file.flush()
                slot.output.append(entry)

                if self._on_log:
                    try:
                        self._on_log(descriptor.name, slot.index, detect_level(stream_name, decoded), decoded)
                    except Exception as e:
                        logger.error(f"Error processing log line for {descriptor.name}: {e}")

    async def _stop_instance(self, descriptor: AppDescriptor, slot: _Slot):
        self._cancel_timer(slot)
        slot.generation += 1
        async with slot.lock:
            record = self.table.get(slot.app_name, slot.index)
            if record is None or record.state == InstanceState.STOPPED:
                return
            if record.state in (InstanceState.CRASHED, InstanceState.ERRORED):
                self.table.transition(slot.app_name, slot.index, InstanceState.STOPPED, alert=None)
                self._record_event(slot, "stopped", f"from {record.state.value}")
                return

            self.table.transition(slot.app_name, slot.index, InstanceState.STOPPING)
            status = await self._terminate(descriptor, slot, slot.process)
            slot.process = None
            self.table.transition(slot.app_name, slot.index, InstanceState.STOPPED, pid=None, last_exit=status)
            logger.info(f"Stopped {record.label} ({status.describe()})")
            self._record_event(slot, "stopped", status.describe(), status)

    async def _terminate(self, descriptor: AppDescriptor, slot: _Slot, process) -> ExitStatus:
        """SIGTERM the child's process group, SIGKILL it if it outlives the grace period."""
        timeout = descriptor.kill_timeout or self.settings.kill_timeout
        self._signal(process, signal.SIGTERM)
        try:
            returncode = await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            warning = ShutdownTimeout(slot.app_name, slot.index, timeout)
            logger.warning(str(warning))
            self._record_event(slot, "shutdown_timeout", str(warning))
            self._signal(process, signal.SIGKILL)
            returncode = await process.wait()

        if slot.waiter:
            await asyncio.gather(slot.waiter, return_exceptions=True)
            slot.waiter = None
        return ExitStatus.from_returncode(returncode)

    @staticmethod
    def _signal(process, sig: int):
        try:
            os.killpg(os.getpgid(process.pid), sig)
        except ProcessLookupError:
            pass

    # Control loop

    async def monitor(self):
        """Consume exit, restart and watch messages; the single place crashes are handled."""
        while True:
            event = await self._events.get()
            try:
                if isinstance(event, _Exited):
                    self._handle_exit(event)
                elif isinstance(event, _RestartDue):
                    self._spawn_task(self._relaunch(event))
                elif isinstance(event, _WatchTriggered):
                    self._spawn_task(self._restart_for_changes(event.app_name))
            except Exception as e:
                logger.exception(f"Error handling {event}: {e}")

    def _handle_exit(self, event: _Exited):
        slot = self._slots.get((event.app_name, event.index))
        if slot is None or slot.generation != event.generation:
            return
        record = self.table.get(event.app_name, event.index)
        if record is None or record.state != InstanceState.RUNNING:
            return

        uptime = record.uptime_seconds()
        if event.status.clean:
            message = f"{record.label} exited with code 0 after {uptime:.1f}s"
            logger.info(message)
        else:
            message = str(CrashExit(event.app_name, event.index, event.status.returncode, event.status.signal_name))
            logger.warning(message)
        slot.process = None
        slot.waiter = None
        self.table.transition(event.app_name, event.index, InstanceState.CRASHED, pid=None, last_exit=event.status)
        self._record_event(slot, "exited", message, event.status)

        descriptor = self._apps.get(event.app_name)
        if descriptor is None or not descriptor.auto_restart:
            self.table.transition(event.app_name, event.index, InstanceState.STOPPED)
            return
        self._apply_restart_policy(descriptor, slot, uptime)

    def _apply_restart_policy(self, descriptor: AppDescriptor, slot: _Slot, uptime: Optional[float]):
        """Schedule a delayed restart of a crashed instance, or park it as Errored."""
        delay = slot.tracker.record_crash(uptime)
        if delay is None:
            policy = slot.tracker.policy
            exceeded = RestartBudgetExceeded(slot.app_name, slot.index, policy.max_restarts, policy.window)
            logger.error(str(exceeded))
            self.table.transition(slot.app_name, slot.index, InstanceState.ERRORED, alert=str(exceeded))
            self._record_event(slot, "errored", str(exceeded))
            return

        logger.info(f"Restarting {slot.app_name}[{slot.index}] in {delay:.2f}s")
        slot.restart_timer = self._spawn_task(self._restart_after(slot, delay, slot.generation))

    async def _restart_after(self, slot: _Slot, delay: float, generation: int):
        await asyncio.sleep(delay)
        self._events.put_nowait(_RestartDue(slot.app_name, slot.index, generation))

    async def _relaunch(self, event: _RestartDue):
        slot = self._slots.get((event.app_name, event.index))
        if slot is None:
            return
        async with slot.lock:
            if slot.generation != event.generation:
                return
            record = self.table.get(event.app_name, event.index)
            descriptor = self._apps.get(event.app_name)
            if record is None or descriptor is None or record.state != InstanceState.CRASHED:
                return
            slot.restart_timer = None
            try:
                await self._launch(descriptor, slot, restarted=True)
            except LaunchError:
                # Already reported; _launch handed the failure to the restart policy
                return
            except Exception as e:
                logger.exception(f"Error relaunching {event.app_name}[{event.index}]: {e}")

    def _on_watch_settled(self, app_name: str):
        if self._events is not None:
            self._events.put_nowait(_WatchTriggered(app_name))

    async def _restart_for_changes(self, name: str):
        """Cycle the instances of an app that are meant to be up. Stopped and Errored ones wait for an operator."""
        descriptor = self._apps.get(name)
        if descriptor is None:
            return
        active = []
        for slot in self._app_slots(name):
            record = self.table.get(name, slot.index)
            if record is not None and record.state not in IDLE_STATES:
                active.append(slot)
        if not active:
            logger.info(f"Files changed for {name}, no active instances to restart")
            return

        logger.info(f"Files changed for {name}, restarting {len(active)} instance(s)")
        try:
            descriptor.validate_runtime()
        except ValidationError as e:
            logger.error(f"Restart after file change failed for {name}: {e}")
            return

        await asyncio.gather(*(self._stop_instance(descriptor, slot) for slot in active))
        for slot in active:
            try:
                await self._start_instance(descriptor, slot.index, restarted=True)
            except LaunchError as e:
                logger.error(f"Restart after file change failed for {name}: {e}")

    # Helpers

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _cancel_timer(slot: _Slot):
        if slot.restart_timer is not None:
            slot.restart_timer.cancel()
            slot.restart_timer = None

    def _record_event(self, slot: _Slot, kind: str, message: str, status: ExitStatus = None):
        if self._on_event:
            try:
                self._on_event(slot.app_name, slot.index, kind, message, status)
            except Exception as e:
                logger.error(f"Error recording {kind} event for {slot.app_name}[{slot.index}]: {e}")


# Global supervisor instance
supervisor = Supervisor()
