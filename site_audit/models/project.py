"""Project SQLAlchemy model."""

import uuid
from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from site_audit.database import Base, UTCDateTime, utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


class Project(Base):
    """A website owned by an organization.

    Projects are managed by the web application; the pipeline only reads
    the current ``url`` when a scheduled audit fires.
    """

    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    audits: Mapped[list["SiteAudit"]] = relationship(  # noqa: F821
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    schedules: Mapped[list["AuditSchedule"]] = relationship(  # noqa: F821
        back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Project id={self.id} url={self.url!r}>"
