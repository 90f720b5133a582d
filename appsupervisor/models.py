"""
Database models for the supervisor.

Uses Peewee ORM with SQLite. Stores the captured output of every instance and
a history of lifecycle events (starts, exits, restarts, budget alerts).
"""

import os
from datetime import datetime
from pathlib import Path

from peewee import (
    AutoField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    IntegerField,
    Model,
    SqliteDatabase,
    TextField,
)

from .config import config

database = DatabaseProxy()


def initialize_db(db_path: Path = None):
    """Initialize database connection and create tables."""
    db_path = Path(db_path or config.db_path)
    os.makedirs(os.path.dirname(db_path), exist_ok=True)
    db = SqliteDatabase(
        str(db_path),
        pragmas={
            "journal_mode": "wal",
            "cache_size": -64 * 1000,
            "busy_timeout": 5000,
        },
    )
    database.initialize(db)
    database.create_tables([LogEntry, InstanceEvent], safe=True)


class BaseModel(Model):
    """Base model with common configuration."""

    class Meta:
        database = database


class LogEntry(BaseModel):
    """A line from an instance's stdout/stderr."""

    id = AutoField()
    app_name = CharField(index=True)
    instance = IntegerField(default=0)
    level = CharField(default="info")  # info, warning, error
    message = TextField()
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "log_entries"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "app": self.app_name,
            "instance": self.instance,
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }


class InstanceEvent(BaseModel):
    """A lifecycle event of one instance."""

    id = AutoField()
    app_name = CharField(index=True)
    instance = IntegerField(default=0)
    kind = CharField()  # started, restarted, exited, launch_failed, errored, shutdown_timeout, stopped
    message = TextField(null=True)
    exit_code = IntegerField(null=True)
    signal = CharField(null=True)
    timestamp = DateTimeField(default=datetime.now, index=True)

    class Meta:
        table_name = "instance_events"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "app": self.app_name,
            "instance": self.instance,
            "kind": self.kind,
            "message": self.message,
            "exit_code": self.exit_code,
            "signal": self.signal,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
