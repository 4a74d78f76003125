"""Local mirror of remote job records.

One row per job id. ``payload`` holds the full ``JobData`` JSON; the other
columns exist for filtering and for optimistic concurrency (``version``).
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models import Base


class MirroredJob(Base):
    __tablename__ = "mirrored_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    # --- Filter columns (copied out of the payload) ---
    user_id: Mapped[str | None] = mapped_column(String(64), index=True, default=None)
    template_id: Mapped[str] = mapped_column(String(64), index=True, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    # --- Record ---
    payload: Mapped[dict] = mapped_column(JSON)

    # Bumped on every write; compared when a caller passes expected_version
    version: Mapped[int] = mapped_column(Integer, default=1)
    mirrored_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
