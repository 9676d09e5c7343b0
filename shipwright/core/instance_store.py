"""Last-known artifact key of every deployed instance (SQLite).

The container runtime on the remote host is the real state.  What is
stored here is written by the Remote Apply Engine after a confirmed start
and corrected by ``reconcile`` whenever someone asks.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from shipwright.core.runtime import DockerRuntime
from shipwright.models.instances import EnvironmentDefinition, Instance

logger = logging.getLogger(__name__)

_CREATE_INSTANCES = """
CREATE TABLE IF NOT EXISTS instances (
    environment     TEXT NOT NULL,
    instance        TEXT NOT NULL,
    container_name  TEXT NOT NULL,
    artifact_key    TEXT,
    updated_at      TEXT NOT NULL,
    PRIMARY KEY (environment, instance)
);
"""


def key_from_image(image: str | None) -> str | None:
    """``registry:5000/app:abc123`` -> ``abc123``; untagged images yield ``None``."""
    if not image:
        return None
    name = image.split("@", 1)[0]
    last = name.rsplit("/", 1)[-1]
    if ":" not in last:
        return None
    return last.rsplit(":", 1)[1]


class InstanceStore:
    """SQLite table of ``(environment, instance) -> artifact key``.

    Parameters
    ----------
    db_path:
        SQLite file; may be shared with the Run Ledger.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(_CREATE_INSTANCES)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def record(
        self,
        environment: str,
        instance: Instance,
        artifact_key: str | None,
    ) -> Instance:
        """Store ``artifact_key`` as ``instance``'s current key."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO instances
                    (environment, instance, container_name, artifact_key, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(environment, instance) DO UPDATE SET
                    container_name = excluded.container_name,
                    artifact_key = excluded.artifact_key,
                    updated_at = excluded.updated_at
                """,
                (
                    environment,
                    instance.name,
                    instance.container_name,
                    artifact_key,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()
        return instance.model_copy(update={"current_artifact_key": artifact_key})

    def current_key(self, environment: str, instance: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT artifact_key FROM instances WHERE environment = ? AND instance = ?",
                (environment, instance),
            ).fetchone()
        return row[0] if row else None

    def known(self, environment: EnvironmentDefinition) -> list[Instance]:
        """Instances of ``environment`` with their last recorded key."""
        return [
            inst.model_copy(
                update={"current_artifact_key": self.current_key(environment.name, inst.name)}
            )
            for inst in environment.instances
        ]

    def reconcile(
        self,
        environment: EnvironmentDefinition,
        runtime: DockerRuntime,
    ) -> list[Instance]:
        """Ask the runtime what each container runs and fix the records.

        A missing or stopped container reconciles to ``None``.
        """
        reconciled: list[Instance] = []
        for inst in environment.instances:
            actual = None
            if runtime.is_running(inst.container_name):
                actual = key_from_image(runtime.current_image(inst.container_name))
            recorded = self.current_key(environment.name, inst.name)
            if actual != recorded:
                logger.info(
                    "instance %s/%s drifted: recorded %s, running %s",
                    environment.name, inst.name, recorded, actual,
                )
            reconciled.append(self.record(environment.name, inst, actual))
        return reconciled
