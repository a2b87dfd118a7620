"""
Lead and Appointment Models - the CRM records written by business action nodes
"""
import enum

from sqlalchemy import Column, Integer, String, Text, Date, DateTime, ForeignKey

from crmbot.db.database import Base, utcnow


class LeadStage(str, enum.Enum):
    FIRST_CONTACT = "first_contact"
    QUALIFIED = "qualified"
    NURTURING = "nurturing"
    UNQUALIFIED = "unqualified"
    APPOINTMENT_SCHEDULED = "appointment_scheduled"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Lead(Base):
    """A prospect captured through the chatbot"""
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    full_name = Column(String(200), nullable=True)
    phone = Column(String(50), nullable=True, index=True)
    email = Column(String(200), nullable=True, index=True)
    source = Column(String(50), nullable=False, default="chatbot")
    stage = Column(String(30), nullable=False, default=LeadStage.FIRST_CONTACT.value)
    score = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class LeadActivity(Base):
    """Timeline entry on a lead (appointment created, stage changed...)"""

    __tablename__ = "lead_activities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False, index=True)
    activity_type = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Appointment(Base):
    """A booked slot; appointment_time is HH:MM in the tenant's local time"""

    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    lead_id = Column(Integer, ForeignKey("leads.id"), nullable=False)
    agent_id = Column(String(64), nullable=True)
    appointment_date = Column(Date, nullable=False, index=True)
    appointment_time = Column(String(5), nullable=False)
    location = Column(String(200), nullable=False, default="Virtual")
    notes = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    created_at = Column(DateTime, default=utcnow)
