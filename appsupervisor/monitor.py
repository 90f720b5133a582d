"""
Resource monitoring for supervised instances.

Reports CPU and memory usage of running instances (including their child
processes) and periodically removes old log entries and lifecycle events from
the database.
"""

import asyncio
import logging
from datetime import datetime, timedelta

import psutil

from .config import config
from .models import InstanceEvent, LogEntry

logger = logging.getLogger(__name__)


class ResourceMonitor:
    """Tracks resource usage of instance processes and prunes old history."""

    def __init__(self):
        self._running = False
        self._task = None
        # psutil needs the same Process object across calls for meaningful cpu_percent
        self._procs: dict[int, psutil.Process] = {}

    async def start(self):
        """Start the maintenance loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Resource monitor started")

    async def stop(self):
        """Stop the maintenance loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Resource monitor stopped")

    async def _monitor_loop(self):
        """Main maintenance loop."""
        while self._running:
            try:
                await self._cleanup_old_data()
                self._forget_dead_processes()
            except Exception as e:
                logger.error(f"Error in monitor loop: {e}")

            await asyncio.sleep(config.monitor_interval)

    async def _cleanup_old_data(self):
        """Remove old log entries and lifecycle events."""
        cutoff = datetime.now() - timedelta(days=config.log_retention_days)

        deleted_logs = LogEntry.delete().where(LogEntry.timestamp < cutoff).execute()
        if deleted_logs:
            logger.debug(f"Cleaned up {deleted_logs} old log entries")

        deleted_events = InstanceEvent.delete().where(InstanceEvent.timestamp < cutoff).execute()
        if deleted_events:
            logger.debug(f"Cleaned up {deleted_events} old instance events")

    def _forget_dead_processes(self):
        for pid in [pid for pid, proc in self._procs.items() if not proc.is_running()]:
            del self._procs[pid]

    def get_usage(self, pid: int) -> dict:
        """Current CPU and memory usage of a process and its children."""
        result = {"cpu_percent": 0.0, "memory_mb": 0.0, "child_processes": 0}
        if not pid:
            return result

        try:
            proc = self._procs.get(pid)
            if proc is None or not proc.is_running():
                proc = psutil.Process(pid)
                self._procs[pid] = proc
            cpu_percent = proc.cpu_percent(interval=None)
            memory_mb = proc.memory_info().rss / 1024 / 1024

            # Include children
            child_count = 0
            try:
                children = proc.children(recursive=True)
                child_count = len(children)
                for child in children:
                    memory_mb += child.memory_info().rss / 1024 / 1024
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass

            result.update({
                "cpu_percent": round(cpu_percent, 1),
                "memory_mb": round(memory_mb, 1),
                "child_processes": child_count,
            })

        except psutil.NoSuchProcess:
            self._procs.pop(pid, None)
        except psutil.AccessDenied:
            logger.warning(f"Access denied reading usage of PID {pid}")

        return result


# Global monitor instance
resource_monitor = ResourceMonitor()
