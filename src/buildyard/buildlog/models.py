from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# UUIDs are stored as 36-char strings so the same schema works on
# PostgreSQL and on the SQLite databases used in tests.
UUID_LEN = 36
HASH_LEN = 64


class Base(DeclarativeBase):
    pass


class Submit(Base):
    __tablename__ = "submits"
    uuid: Mapped[str] = mapped_column(sa.String(UUID_LEN), primary_key=True)
    submitted_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    targets: Mapped[List[str]] = mapped_column(sa.JSON, nullable=False, default=list)
    images: Mapped[List[str]] = mapped_column(sa.JSON, nullable=False, default=list)
    repo_hash: Mapped[Optional[str]] = mapped_column(sa.String(40), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    outcome: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)


class Job(Base):
    """Identity of one job of one submit. Its history lives in job_transitions."""
    __tablename__ = "jobs"
    uuid: Mapped[str] = mapped_column(sa.String(UUID_LEN), primary_key=True)
    submit_uuid: Mapped[str] = mapped_column(
        sa.String(UUID_LEN), sa.ForeignKey("submits.uuid", ondelete="CASCADE"), nullable=False, index=True
    )
    package_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    package_version: Mapped[str] = mapped_column(sa.Text, nullable=False)
    image: Mapped[str] = mapped_column(sa.Text, nullable=False)
    phases: Mapped[List[str]] = mapped_column(sa.JSON, nullable=False, default=list)


class JobTransition(Base):
    __tablename__ = "job_transitions"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    job_uuid: Mapped[str] = mapped_column(
        sa.String(UUID_LEN), sa.ForeignKey("jobs.uuid", ondelete="CASCADE"), nullable=False, index=True
    )
    state: Mapped[str] = mapped_column(sa.Text, nullable=False)
    at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    endpoint: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    input_hash: Mapped[Optional[str]] = mapped_column(sa.String(HASH_LEN), nullable=True, index=True)
    cached: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    error_kind: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    skipped_because: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)


class PhaseRecord(Base):
    __tablename__ = "phase_executions"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    job_uuid: Mapped[str] = mapped_column(
        sa.String(UUID_LEN), sa.ForeignKey("jobs.uuid", ondelete="CASCADE"), nullable=False, index=True
    )
    phase: Mapped[str] = mapped_column(sa.Text, nullable=False)
    endpoint: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    output: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    error_message: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


class ArtifactRecord(Base):
    __tablename__ = "artifacts"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    job_uuid: Mapped[str] = mapped_column(
        sa.String(UUID_LEN), sa.ForeignKey("jobs.uuid", ondelete="CASCADE"), nullable=False, index=True
    )
    hash: Mapped[str] = mapped_column(sa.String(HASH_LEN), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    size: Mapped[int] = mapped_column(sa.BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)


class ReleaseRecord(Base):
    __tablename__ = "releases"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    job_uuid: Mapped[str] = mapped_column(
        sa.String(UUID_LEN), sa.ForeignKey("jobs.uuid", ondelete="CASCADE"), nullable=False, index=True
    )
    artifact_hash: Mapped[str] = mapped_column(sa.String(HASH_LEN), nullable=False, index=True)
    store: Mapped[str] = mapped_column(sa.Text, nullable=False)
    released_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
