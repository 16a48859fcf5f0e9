"""
VulnWatch - Processed Commit Model
"""
from datetime import datetime
from typing import Optional
from sqlalchemy import String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from backend.db.database import Base
import uuid


class ProcessedCommit(Base):
    """A commit handed off to the correlator"""
    __tablename__ = "processed_commits"
    __table_args__ = (UniqueConstraint("repository_id", "commit_sha", name="uq_processed_commit"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    repository_id: Mapped[str] = mapped_column(String(36), ForeignKey("repositories.id"), index=True)
    commit_sha: Mapped[str] = mapped_column(String(64))
    committed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
