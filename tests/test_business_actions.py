"""
Tests for CRM business action adapters (availability, booking, qualification)
"""
from datetime import date, timedelta

import pytest
from sqlalchemy import select

from crmbot.core.exceptions import BusinessActionError
from crmbot.db.models.lead import Appointment, Lead, LeadActivity
from crmbot.domain.services.business_actions import (
    DEFAULT_WORK_HOURS,
    AvailabilityAdapter,
    BookingAdapter,
    BusinessActionRegistry,
    LeadQualificationAdapter,
    normalize_time,
    parse_date,
)
from tests.conftest import TENANT_ID

DAY = "2030-05-14"


class TestParsing:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        ("2030-05-14", date(2030, 5, 14)),
        ("14/05/2030", date(2030, 5, 14)),
        ("today", date(2030, 1, 1)),
        ("Hoy", date(2030, 1, 1)),
        ("tomorrow", date(2030, 1, 2)),
        ("mañana", date(2030, 1, 2)),
        (date(2030, 3, 3), date(2030, 3, 3)),
    ])
    def test_parse_date(self, raw, expected):
        assert parse_date(raw, today=date(2030, 1, 1)) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", None, "next week", "2030-13-01"])
    def test_parse_date_rejects(self, raw):
        with pytest.raises(ValueError):
            parse_date(raw)

    @pytest.mark.unit
    def test_normalize_time(self):
        assert normalize_time("9:00") == "09:00"
        assert normalize_time("17:30") == "17:30"
        with pytest.raises(ValueError):
            normalize_time("25:00")


class TestRegistry:

    @pytest.mark.unit
    def test_lookup_accepts_tag_variants(self, db_session):
        registry = BusinessActionRegistry(db_session)
        assert isinstance(registry.get("check-availability"), AvailabilityAdapter)
        assert isinstance(registry.get("BOOK_APPOINTMENT"), BookingAdapter)
        assert isinstance(registry.get("lead_qualification"), LeadQualificationAdapter)
        assert registry.get("send_invoice") is None


class TestAvailability:

    @pytest.mark.integration
    async def test_all_slots_free(self, db_session):
        result = await AvailabilityAdapter(db_session).execute(
            TENANT_ID, {"appointment_date": DAY, "name": "Ana"}, {}
        )

        assert result.next_handle == "yes"
        assert result.context["available_slots"] == list(DEFAULT_WORK_HOURS)
        assert result.context["has_availability"] is True
        # Existing state is carried over, never replaced
        assert result.context["name"] == "Ana"
        assert "09:00" in result.message

    @pytest.mark.integration
    async def test_booked_slots_are_excluded(self, db_session):
        booking = BookingAdapter(db_session)
        await booking.execute(
            TENANT_ID, {"appointment_date": DAY, "appointment_time": "10:00", "phone": "+1555"}, {}
        )

        result = await AvailabilityAdapter(db_session).execute(
            TENANT_ID, {"appointment_date": DAY}, {"slots": ["10:00", "11:00"]}
        )

        assert result.next_handle == "yes"
        assert result.context["available_slots"] == ["11:00"]

    @pytest.mark.integration
    async def test_no_availability(self, db_session):
        booking = BookingAdapter(db_session)
        await booking.execute(
            TENANT_ID, {"appointment_date": DAY, "appointment_time": "10:00", "phone": "+1555"}, {}
        )

        result = await AvailabilityAdapter(db_session).execute(
            TENANT_ID, {"appointment_date": DAY}, {"slots": ["10:00"]}
        )

        assert result.next_handle == "no"
        assert result.context["has_availability"] is False

    @pytest.mark.integration
    async def test_other_tenants_do_not_block(self, db_session):
        await BookingAdapter(db_session).execute(
            "other-tenant", {"appointment_date": DAY, "appointment_time": "10:00", "phone": "+1555"}, {}
        )

        result = await AvailabilityAdapter(db_session).execute(
            TENANT_ID, {"appointment_date": DAY}, {"slots": ["10:00"]}
        )

        assert result.next_handle == "yes"

    @pytest.mark.integration
    async def test_missing_date_raises(self, db_session):
        with pytest.raises(BusinessActionError):
            await AvailabilityAdapter(db_session).execute(TENANT_ID, {}, {})


class TestBooking:

    @pytest.mark.integration
    async def test_books_and_creates_lead(self, db_session):
        state = {"appointment_date": DAY, "appointment_time": "9:00", "name": "Ana", "email": "ana@example.com"}

        result = await BookingAdapter(db_session).execute(TENANT_ID, state, {"location": "Office"})

        assert result.next_handle == "yes"
        assert result.context["appointment_confirmed"] is True
        assert result.context["appointment_time"] == "09:00"

        lead = (await db_session.execute(select(Lead))).scalar_one()
        assert lead.email == "ana@example.com"
        assert lead.full_name == "Ana"
        assert lead.stage == "appointment_scheduled"
        assert result.context["lead_id"] == lead.id

        appointment = (await db_session.execute(select(Appointment))).scalar_one()
        assert appointment.id == result.context["appointment_id"]
        assert appointment.location == "Office"
        assert appointment.appointment_date == date(2030, 5, 14)

        activities = (await db_session.execute(select(LeadActivity))).scalars().all()
        assert [a.activity_type for a in activities] == ["appointment_created"]

    @pytest.mark.integration
    async def test_existing_lead_is_reused(self, db_session):
        adapter = BookingAdapter(db_session)
        await adapter.execute(TENANT_ID, {"appointment_date": DAY, "appointment_time": "09:00", "phone": "+1555"}, {})
        await adapter.execute(TENANT_ID, {"appointment_date": DAY, "appointment_time": "10:00", "phone": "+1555"}, {})

        leads = (await db_session.execute(select(Lead))).scalars().all()
        assert len(leads) == 1

    @pytest.mark.integration
    async def test_taken_slot_takes_no(self, db_session):
        adapter = BookingAdapter(db_session)
        state = {"appointment_date": DAY, "appointment_time": "10:00", "phone": "+1555"}
        await adapter.execute(TENANT_ID, state, {})

        result = await adapter.execute(TENANT_ID, dict(state, phone="+1666"), {})

        assert result.next_handle == "no"
        assert result.context["appointment_confirmed"] is False
        appointments = (await db_session.execute(select(Appointment))).scalars().all()
        assert len(appointments) == 1

    @pytest.mark.integration
    async def test_custom_variables(self, db_session):
        tomorrow = (date.today() + timedelta(days=1)).isoformat()
        result = await BookingAdapter(db_session).execute(
            TENANT_ID,
            {"fecha": tomorrow, "hora": "15:00", "user_channel_id": "+1777"},
            {"dateVariable": "fecha", "timeVariable": "hora"},
        )
        assert result.next_handle == "yes"
        assert result.context["appointment_date"] == tomorrow

    @pytest.mark.integration
    async def test_missing_time_raises(self, db_session):
        with pytest.raises(BusinessActionError):
            await BookingAdapter(db_session).execute(TENANT_ID, {"appointment_date": DAY}, {})

    @pytest.mark.integration
    async def test_without_contact_raises(self, db_session):
        with pytest.raises(BusinessActionError):
            await BookingAdapter(db_session).execute(
                TENANT_ID, {"appointment_date": DAY, "appointment_time": "10:00"}, {}
            )


class TestLeadQualification:

    CRITERIA = [
        {"condition": "stateData.budget >= 1000", "points": 40},
        {"condition": "stateData.timeline == 'now'", "points": 30},
        {"condition": "stateData.budget >>> 1", "points": 100},
    ]

    @pytest.mark.integration
    async def test_qualified_lead(self, db_session):
        state = {"budget": "5000", "timeline": "now", "phone": "+1555"}

        result = await LeadQualificationAdapter(db_session).execute(
            TENANT_ID, state, {"criteria": self.CRITERIA, "qualifiedMessage": "Score {{lead_score}}"}
        )

        assert result.next_handle == "yes"
        assert result.context["lead_score"] == 70
        assert result.context["lead_qualified"] is True
        assert result.message == "Score 70"

        lead = (await db_session.execute(select(Lead))).scalar_one()
        assert lead.score == 70
        assert lead.stage == "qualified"

    @pytest.mark.integration
    async def test_unqualified_lead(self, db_session):
        result = await LeadQualificationAdapter(db_session).execute(
            TENANT_ID, {"budget": 10, "phone": "+1555"}, {"criteria": self.CRITERIA, "threshold": 50}
        )

        assert result.next_handle == "no"
        assert result.context["lead_score"] == 0
        assert result.message is None
        lead = (await db_session.execute(select(Lead))).scalar_one()
        assert lead.stage == "nurturing"

    @pytest.mark.integration
    async def test_scoring_without_contact_skips_lead(self, db_session):
        result = await LeadQualificationAdapter(db_session).execute(
            TENANT_ID, {"budget": 2000}, {"criteria": self.CRITERIA, "threshold": 40}
        )

        assert result.next_handle == "yes"
        assert "lead_id" not in result.context
        assert (await db_session.execute(select(Lead))).first() is None

    @pytest.mark.integration
    async def test_invalid_threshold_raises(self, db_session):
        with pytest.raises(BusinessActionError):
            await LeadQualificationAdapter(db_session).execute(
                TENANT_ID, {}, {"criteria": [], "threshold": "high"}
            )
