from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CRMLead(Base):
    __tablename__ = "crm_lead"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_name: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="New", server_default="New")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _LeadScoped:
    @property
    def company_name(self) -> str | None:
        lead = getattr(self, "lead", None)
        return lead.company_name if lead is not None else None


class ActivityLog(_LeadScoped, Base):
    __tablename__ = "activity_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(Integer, ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    phase: Mapped[str | None] = mapped_column(String(64), nullable=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False, default="Call", server_default="Call")
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    attachment_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    deleted_activity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    delete_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    lead: Mapped[CRMLead] = relationship("CRMLead", lazy="joined")

    @property
    def status(self) -> str | None:
        return "Deleted" if self.deleted_at is not None else None


class ActivityReminder(_LeadScoped, Base):
    __tablename__ = "activity_reminder"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(Integer, ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False)
    remind_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="Pending", server_default="Pending")
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    activity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    visibility: Mapped[str] = mapped_column(String(16), nullable=False, default="visible", server_default="visible")
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lead: Mapped[CRMLead] = relationship("CRMLead", lazy="joined")


class ActivityMeeting(_LeadScoped, Base):
    __tablename__ = "activity_meeting"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(Integer, ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    meeting_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    phase: Mapped[str] = mapped_column(String(32), nullable=False, default="Scheduled", server_default="Scheduled")
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_agenda: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    location_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lead: Mapped[CRMLead] = relationship("CRMLead", lazy="joined")


class ActivityDemo(_LeadScoped, Base):
    __tablename__ = "activity_demo"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(Integer, ForeignKey("crm_lead.id", ondelete="CASCADE"), nullable=False)
    assigned_to: Mapped[str | None] = mapped_column(String(128), nullable=True)
    scheduled_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    event_end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    phase: Mapped[str] = mapped_column(String(32), nullable=False, default="Scheduled", server_default="Scheduled")
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_agenda: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_link: Mapped[str | None] = mapped_column(Text, nullable=True)
    location_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    lead: Mapped[CRMLead] = relationship("CRMLead", lazy="joined")


Index("ix_activity_log_lead_id", ActivityLog.lead_id)
Index("ix_activity_reminder_lead_id", ActivityReminder.lead_id)
Index("ix_activity_reminder_status_time", ActivityReminder.status, ActivityReminder.remind_time)
Index("ix_activity_meeting_lead_id", ActivityMeeting.lead_id)
Index("ix_activity_meeting_phase_time", ActivityMeeting.phase, ActivityMeeting.event_time)
Index("ix_activity_demo_lead_id", ActivityDemo.lead_id)
Index("ix_activity_demo_phase_time", ActivityDemo.phase, ActivityDemo.start_time)
