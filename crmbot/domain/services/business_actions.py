"""
Business Action Adapters - CRM operations triggered from flow nodes.

Each adapter receives (tenant_id, state_data, node_data) and answers with an
ActionResult: the handle to follow ("yes"/"no"), an optional message and the
new state context. Adapters raise freely; the node executor turns failures
into an apology and an "error" transition.

Adapters only flush. The conversation turn owns the transaction and commits
their writes together with the bot messages.
"""
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Mapping, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from crmbot.core.exceptions import BusinessActionError, ErrorCode
from crmbot.core.logging import get_logger
from crmbot.db.database import utcnow
from crmbot.db.models.lead import (
    Appointment,
    AppointmentStatus,
    Lead,
    LeadActivity,
    LeadStage,
)
from crmbot.state_machine.conditions import ConditionError, evaluate_condition
from crmbot.state_machine.nodes import normalize_business_tag, render_template

logger = get_logger(__name__)

DEFAULT_WORK_HOURS = (
    "09:00", "10:00", "11:00", "12:00",
    "14:00", "15:00", "16:00", "17:00",
)
DEFAULT_QUALIFICATION_THRESHOLD = 50

# Appointments in these statuses occupy their slot
BLOCKING_STATUSES = (AppointmentStatus.SCHEDULED.value, AppointmentStatus.CONFIRMED.value)

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass
class ActionResult:
    next_handle: str
    message: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)


def parse_date(value: Any, today: Optional[date] = None) -> date:
    """
    Accepts YYYY-MM-DD, DD/MM/YYYY and today/tomorrow (English or Spanish).

    Raises ValueError for anything else.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value or "").strip().lower()
    today = today or utcnow().date()
    if text in ("today", "hoy"):
        return today
    if text in ("tomorrow", "mañana", "manana"):
        return today + timedelta(days=1)

    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date: {value!r}")


def normalize_time(value: Any) -> str:
    """'9:00' -> '09:00'; raises ValueError when not a HH:MM time"""
    text = str(value or "").strip()
    if re.match(r"^\d:\d\d$", text):
        text = f"0{text}"
    if not _TIME_PATTERN.match(text):
        raise ValueError(f"Unrecognized time: {value!r}")
    return text


class BusinessActionAdapter(ABC):
    """Base class for adapters; owns the shared lead/appointment queries"""

    action: str = ""

    def __init__(self, db: AsyncSession):
        self.db = db

    @abstractmethod
    async def execute(
        self,
        tenant_id: str,
        state_data: dict[str, Any],
        node_data: Mapping[str, Any],
    ) -> ActionResult:
        ...

    def _fail(self, message: str, error_code: ErrorCode = ErrorCode.BUSINESS_ACTION_FAILED):
        raise BusinessActionError(message, self.action, error_code=error_code)

    def _read_date(self, state_data: Mapping[str, Any], node_data: Mapping[str, Any]) -> date:
        variable = node_data.get("dateVariable") or "appointment_date"
        raw = state_data.get(variable) or node_data.get("date")
        if not raw:
            self._fail(f"No date found in '{variable}'")
        try:
            return parse_date(raw)
        except ValueError as e:
            raise BusinessActionError(str(e), self.action)

    async def _taken_slots(self, tenant_id: str, day: date) -> set[str]:
        result = await self.db.execute(
            select(Appointment.appointment_time).where(
                Appointment.tenant_id == tenant_id,
                Appointment.appointment_date == day,
                Appointment.status.in_(BLOCKING_STATUSES),
            )
        )
        return set(result.scalars().all())

    @staticmethod
    def _contact(state_data: Mapping[str, Any]) -> Optional[str]:
        contact = (
            state_data.get("email")
            or state_data.get("phone")
            or state_data.get("user_channel_id")
        )
        return str(contact) if contact else None

    @staticmethod
    def _name(state_data: Mapping[str, Any], node_data: Mapping[str, Any]) -> Optional[str]:
        variable = node_data.get("nameVariable") or "name"
        name = (
            state_data.get(variable)
            or state_data.get("user_name")
            or state_data.get("nombre")
        )
        return str(name) if name else None

    async def _find_or_create_lead(
        self,
        tenant_id: str,
        state_data: Mapping[str, Any],
        node_data: Mapping[str, Any],
    ) -> Optional[Lead]:
        try:
            lead_id = int(state_data.get("lead_id") or 0)
        except (TypeError, ValueError):
            lead_id = 0
        if lead_id:
            result = await self.db.execute(
                select(Lead).where(Lead.id == lead_id, Lead.tenant_id == tenant_id)
            )
            lead = result.scalar_one_or_none()
            if lead:
                return lead

        contact = self._contact(state_data)
        if not contact:
            return None

        result = await self.db.execute(
            select(Lead)
            .where(
                Lead.tenant_id == tenant_id,
                or_(Lead.phone == contact, Lead.email == contact),
            )
            .limit(1)
        )
        lead = result.scalar_one_or_none()
        if lead:
            return lead

        is_email = "@" in contact
        lead = Lead(
            tenant_id=tenant_id,
            full_name=self._name(state_data, node_data),
            email=contact if is_email else None,
            phone=None if is_email else contact,
            source="chatbot",
            stage=LeadStage.FIRST_CONTACT.value,
        )
        self.db.add(lead)
        await self.db.flush()
        logger.info(
            "Lead created from chatbot",
            extra_data={"tenant_id": tenant_id, "lead_id": lead.id},
        )
        return lead


class AvailabilityAdapter(BusinessActionAdapter):
    action = "check_availability"

    async def execute(self, tenant_id, state_data, node_data) -> ActionResult:
        day = self._read_date(state_data, node_data)
        slots = [normalize_time(s) for s in (node_data.get("slots") or DEFAULT_WORK_HOURS)]
        taken = await self._taken_slots(tenant_id, day)
        available = [slot for slot in slots if slot not in taken]

        context = dict(state_data)
        context.update({
            "appointment_date": day.isoformat(),
            "available_slots": available,
            "has_availability": bool(available),
        })
        view = {**context, "available_slots": ", ".join(available)}

        if available:
            template = node_data.get("availableMessage") or (
                "These times are available on {{appointment_date}}: {{available_slots}}"
            )
            return ActionResult("yes", render_template(template, view), context)

        template = node_data.get("unavailableMessage") or (
            "Sorry, there are no available times on {{appointment_date}}."
        )
        return ActionResult("no", render_template(template, view), context)


class BookingAdapter(BusinessActionAdapter):
    action = "book_appointment"

    async def execute(self, tenant_id, state_data, node_data) -> ActionResult:
        day = self._read_date(state_data, node_data)
        time_variable = node_data.get("timeVariable") or "appointment_time"
        raw_time = state_data.get(time_variable) or node_data.get("time")
        if not raw_time:
            self._fail(f"No time found in '{time_variable}'")
        try:
            slot = normalize_time(raw_time)
        except ValueError as e:
            raise BusinessActionError(str(e), self.action)

        context = dict(state_data)
        context.update({"appointment_date": day.isoformat(), "appointment_time": slot})

        if slot in await self._taken_slots(tenant_id, day):
            context["appointment_confirmed"] = False
            template = node_data.get("unavailableMessage") or (
                "Sorry, {{appointment_time}} on {{appointment_date}} is already taken."
            )
            return ActionResult("no", render_template(template, context), context)

        lead = await self._find_or_create_lead(tenant_id, state_data, node_data)
        if lead is None:
            self._fail("Cannot book without a lead or a contact")

        appointment = Appointment(
            tenant_id=tenant_id,
            lead_id=lead.id,
            agent_id=node_data.get("agentId"),
            appointment_date=day,
            appointment_time=slot,
            location=node_data.get("location") or "Virtual",
            notes=state_data.get("appointment_notes") or node_data.get("notes"),
            status=AppointmentStatus.SCHEDULED.value,
        )
        self.db.add(appointment)
        lead.stage = LeadStage.APPOINTMENT_SCHEDULED.value
        self.db.add(
            LeadActivity(
                tenant_id=tenant_id,
                lead_id=lead.id,
                activity_type="appointment_created",
                description=f"Appointment scheduled for {day.isoformat()} at {slot}",
            )
        )
        await self.db.flush()

        logger.info(
            "Appointment booked from chatbot",
            extra_data={
                "tenant_id": tenant_id,
                "lead_id": lead.id,
                "appointment_id": appointment.id,
                "date": day.isoformat(),
                "time": slot,
            },
        )

        context.update({
            "appointment_id": appointment.id,
            "lead_id": lead.id,
            "appointment_confirmed": True,
        })
        template = node_data.get("successMessage") or (
            "Your appointment is confirmed for {{appointment_date}} at {{appointment_time}}."
        )
        return ActionResult("yes", render_template(template, context), context)


class LeadQualificationAdapter(BusinessActionAdapter):
    """
    Scores a lead from criteria of the form {"condition": expr, "points": n}.

    Conditions use the conditional-node grammar; a criterion that cannot be
    evaluated scores zero.
    """

    action = "lead_qualification"

    async def execute(self, tenant_id, state_data, node_data) -> ActionResult:
        criteria = node_data.get("criteria") or []
        threshold = node_data.get("threshold", DEFAULT_QUALIFICATION_THRESHOLD)
        try:
            threshold = float(threshold)
        except (TypeError, ValueError):
            raise BusinessActionError(f"Invalid threshold: {threshold!r}", self.action)

        score = 0
        for criterion in criteria:
            if not isinstance(criterion, Mapping):
                continue
            try:
                matched = evaluate_condition(str(criterion.get("condition") or ""), state_data)
            except ConditionError as e:
                logger.warning(
                    "Skipping qualification criterion",
                    extra_data={"condition": criterion.get("condition"), "error": str(e)},
                )
                continue
            if matched:
                score += int(criterion.get("points") or 0)

        qualified = score >= threshold
        context = dict(state_data)
        context.update({"lead_score": score, "lead_qualified": qualified})

        lead = await self._find_or_create_lead(tenant_id, state_data, node_data)
        if lead is not None:
            lead.score = score
            if lead.stage != LeadStage.APPOINTMENT_SCHEDULED.value:
                lead.stage = (
                    LeadStage.QUALIFIED.value if qualified else LeadStage.NURTURING.value
                )
            await self.db.flush()
            context["lead_id"] = lead.id

        if qualified:
            template = node_data.get("qualifiedMessage")
        else:
            template = node_data.get("unqualifiedMessage")
        message = render_template(template, context) if template else None
        return ActionResult("yes" if qualified else "no", message, context)


class BusinessActionRegistry:
    """Node type tag -> adapter, sharing one database session"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._adapters: dict[str, BusinessActionAdapter] = {}
        for adapter_class in (AvailabilityAdapter, BookingAdapter, LeadQualificationAdapter):
            self.register(adapter_class.action, adapter_class(db))

    def register(self, type_tag: str, adapter: BusinessActionAdapter) -> None:
        self._adapters[normalize_business_tag(type_tag)] = adapter

    def get(self, type_tag: str) -> Optional[BusinessActionAdapter]:
        return self._adapters.get(normalize_business_tag(type_tag))
