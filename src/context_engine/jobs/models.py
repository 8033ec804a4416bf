"""Job persistence model.

JobModel rows are mutated only through the lifecycle manager's
conditional updates (WHERE id AND state AND version). ``version``
increments on every transition.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from src.context_engine.core.database import Base


class JobModel(Base):
    """An asynchronous job attached to a plan."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("idx_jobs_plan_created", "plan_id", "created_at"),
        Index("idx_jobs_state", "state"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    params: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )
    state: Mapped[str] = mapped_column(
        String(20), default="pending", server_default=text("'pending'")
    )
    retry_count: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0")
    )
    version: Mapped[int] = mapped_column(
        Integer, default=1, server_default=text("1")
    )
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
