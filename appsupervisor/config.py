"""
Configuration for the app supervisor.

Loads settings from environment variables with sensible defaults.
All persistent data is stored in ~/.appsupervisor/ unless SUPERVISOR_DATA_DIR
points elsewhere.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    """Supervisor configuration."""

    # Paths
    data_dir: Path = Path(os.environ.get("SUPERVISOR_DATA_DIR", str(Path.home() / ".appsupervisor")))
    db_path: Path = None
    logs_dir: Path = None
    supervisor_log: Path = None
    apps_file: Path = Path(os.environ.get("SUPERVISOR_APPS_FILE", "ecosystem.json"))

    # Logging
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))
    output_buffer_lines: int = int(os.environ.get("OUTPUT_BUFFER_LINES", "1000"))

    # Server
    host: str = os.environ.get("SUPERVISOR_HOST", "127.0.0.1")
    port: int = int(os.environ.get("SUPERVISOR_PORT", "9900"))

    # Monitoring
    monitor_interval: int = int(os.environ.get("MONITOR_INTERVAL", "60"))
    log_retention_days: int = int(os.environ.get("LOG_RETENTION_DAYS", "7"))

    # Process management
    restart_delay: float = float(os.environ.get("RESTART_DELAY", "1"))
    restart_max_delay: float = float(os.environ.get("RESTART_MAX_DELAY", "30"))
    max_restart_attempts: int = int(os.environ.get("MAX_RESTART_ATTEMPTS", "3"))
    restart_window: float = float(os.environ.get("RESTART_WINDOW", "60"))
    min_uptime: float = float(os.environ.get("MIN_UPTIME", "30"))  # Runs longer than this reset the backoff
    kill_timeout: float = float(os.environ.get("KILL_TIMEOUT", "10"))
    output_drain_timeout: float = float(os.environ.get("OUTPUT_DRAIN_TIMEOUT", "1"))

    # File watching
    watch_debounce: float = float(os.environ.get("WATCH_DEBOUNCE", "0.5"))

    def __post_init__(self):
        """Initialize derived paths and create directories."""
        self.data_dir = Path(self.data_dir)
        if self.db_path is None:
            self.db_path = self.data_dir / "supervisor.db"
        if self.logs_dir is None:
            self.logs_dir = self.data_dir / "logs"
        if self.supervisor_log is None:
            self.supervisor_log = self.data_dir / "supervisor.log"

        # Create directories
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


config = Config()
