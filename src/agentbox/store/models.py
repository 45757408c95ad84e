from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy import text as sql_text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class EnvironmentRow(Base):
    __tablename__ = "environments"

    id = Column(String(64), primary_key=True)
    name = Column(String(63), nullable=False)
    image = Column(String(512), nullable=False)
    status = Column(
        String(32), nullable=False, index=True, server_default=sql_text("'pending'")
    )
    namespace = Column(String(128), nullable=False, unique=True)
    user_id = Column(String(128), nullable=False, index=True, default="")
    timeout = Column(Integer, nullable=False, default=0)

    # Structured fields are opaque JSON blobs so new policy shapes need no migration.
    resources = Column(JSON, nullable=False, default=dict)
    env = Column(JSON, nullable=True)
    command = Column(JSON, nullable=True)
    labels = Column(JSON, nullable=True)
    node_selector = Column(JSON, nullable=True)
    tolerations = Column(JSON, nullable=True)
    isolation = Column(JSON, nullable=True)
    pool = Column(JSON, nullable=True)

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sql_text("CURRENT_TIMESTAMP"),
    )
    started_at = Column(DateTime(timezone=True), nullable=True)

    reconciliation_retry_count = Column(Integer, nullable=False, default=0)
    last_reconciliation_error = Column(Text, nullable=True)
    last_reconciliation_at = Column(DateTime(timezone=True), nullable=True)


class ExecutionRow(Base):
    __tablename__ = "executions"

    id = Column(String(64), primary_key=True)
    environment_id = Column(String(64), nullable=False, index=True)
    command = Column(JSON, nullable=False, default=list)
    env = Column(JSON, nullable=True)
    status = Column(
        String(32), nullable=False, index=True, server_default=sql_text("'pending'")
    )
    user_id = Column(String(128), nullable=False, default="")
    pod_name = Column(String(253), nullable=False, default="")
    namespace = Column(String(128), nullable=False, default="")

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        server_default=sql_text("CURRENT_TIMESTAMP"),
    )
    queued_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    exit_code = Column(Integer, nullable=True)
    stdout = Column(Text, nullable=False, default="")
    stderr = Column(Text, nullable=False, default="")
    error = Column(Text, nullable=False, default="")
    duration_ms = Column(Integer, nullable=True)


class EnvironmentEventRow(Base):
    """Append-only lifecycle log per environment."""

    __tablename__ = "environment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    environment_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(Text, nullable=False, default="")
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sql_text("CURRENT_TIMESTAMP"),
    )
