from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

import httpx

from agents.base import BaseAgent
from agents.script_context import EMAIL_RE
from compliance.audit_logger import AuditLogger
from memory.case_repository import CaseRepository
from models.schemas import AIResponse, Case, ConversationEntry, FunnelStatus, MessageRole, NextIntent, TurnAction
from tenants.registry import TenantRegistry
from tools.calendar_tools import WEEKDAYS, CalendarNotConnectedError, GoogleCalendarTools, local_tz

logger = logging.getLogger(__name__)

SLOTS_SHOWN_RE = re.compile(r"(hor[aá]rios|times)\s*:", re.IGNORECASE)
SLOT_DETAIL_RE = re.compile(r"\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}|\b\d{1,2}:\d{2}\b")
TIME_RE = re.compile(r"(?<![\d/])([01]?\d|2[0-3])\s*(?::|h)\s*([0-5]\d)?(?![\d/])", re.IGNORECASE)
ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
BR_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")

WEEKDAY_WORDS = {
    "segunda": 0, "terca": 1, "terça": 1, "quarta": 2, "quinta": 3, "sexta": 4, "sabado": 5, "sábado": 5, "domingo": 6,
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3, "friday": 4, "saturday": 5, "sunday": 6,
}


@dataclass
class SlotSelection:
    hour: int
    minute: int
    day: Optional[date] = None
    weekday: Optional[int] = None


def parse_selection(text: str, today: date) -> Optional[SlotSelection]:
    """A chosen time plus a date or weekday, as written by the client."""
    lowered = (text or "").lower()
    day: Optional[date] = None
    iso = ISO_DATE_RE.search(lowered)
    if iso:
        try:
            day = date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            day = None
        lowered = ISO_DATE_RE.sub(" ", lowered)
    else:
        br = BR_DATE_RE.search(lowered)
        if br:
            year = int(br.group(3)) if br.group(3) else today.year
            if year < 100:
                year += 2000
            try:
                day = date(year, int(br.group(2)), int(br.group(1)))
            except ValueError:
                day = None
            lowered = BR_DATE_RE.sub(" ", lowered)
    weekday = next((num for word, num in WEEKDAY_WORDS.items() if re.search(rf"\b{word}", lowered)), None)
    found = TIME_RE.search(lowered)
    if not found or (day is None and weekday is None):
        return None
    return SlotSelection(hour=int(found.group(1)), minute=int(found.group(2) or 0), day=day, weekday=weekday)


def slots_presented(history: List[ConversationEntry]) -> bool:
    return any(
        e.role == MessageRole.ASSISTANT and SLOTS_SHOWN_RE.search(e.content) and SLOT_DETAIL_RE.search(e.content)
        for e in history
    )


def find_email(text: str) -> Optional[str]:
    found = EMAIL_RE.search(text or "")
    return found.group(0) if found else None


class CalendarAutoBooker(BaseAgent):
    """Books a presented slot without a model call once the client gave a time and an e-mail."""

    def __init__(
        self,
        calendar: GoogleCalendarTools,
        registry: TenantRegistry,
        repository: CaseRepository,
        audit_logger: AuditLogger,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__("calendar_auto_booker", audit_logger)
        self.calendar = calendar
        self.registry = registry
        self.repository = repository
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def try_book(
        self,
        case: Case,
        message: str,
        history: List[ConversationEntry],
        known_email: Optional[str] = None,
    ) -> Optional[AIResponse]:
        if not slots_presented(history):
            return None
        today = self.clock().astimezone(local_tz()).date()
        client_turns = [e.content for e in history if e.role == MessageRole.CLIENT]

        email_now = find_email(message)
        email = email_now or next((find_email(t) for t in reversed(client_turns) if find_email(t)), None) or known_email
        selection_now = parse_selection(message, today)
        selection = selection_now or next(
            (s for s in (parse_selection(t, today) for t in reversed(client_turns)) if s is not None), None
        )
        if email_now is None and selection_now is None:
            return None
        if email and selection is None and email_now:
            return AIResponse(
                response_text=f"Thank you! I've noted your e-mail ({email}). Which of the times I sent works best for you?",
                action=TurnAction.STAY,
                next_intent=NextIntent.SCHEDULE_CONSULT,
            )
        if not email or selection is None:
            return None
        return await self._book(case, selection, email)

    async def _book(self, case: Case, selection: SlotSelection, email: str) -> Optional[AIResponse]:
        try:
            slots = await self.calendar.get_availability(case.user_id, days_ahead=14)
        except CalendarNotConnectedError:
            return None
        except httpx.HTTPError as exc:
            logger.warning("autobook_availability_failed", extra={"case_id": case.id, "error": repr(exc)})
            return None
        slot = next(
            (
                s
                for s in slots
                if s.start.hour == selection.hour
                and s.start.minute == selection.minute
                and (selection.day is None or s.start.date() == selection.day)
                and (selection.weekday is None or selection.day is not None or s.start.weekday() == selection.weekday)
            ),
            None,
        )
        if slot is None:
            return AIResponse(
                response_text="Sorry, that time is not free anymore. Could you choose another one of the times I sent?",
                action=TurnAction.STAY,
                next_intent=NextIntent.SCHEDULE_CONSULT,
            )
        settings = await self.registry.schedule_settings(case.user_id)
        try:
            event = await self.calendar.create_event(
                case.user_id,
                slot.start.date().isoformat(),
                slot.start.strftime("%H:%M"),
                f"Consultation - {case.client_name}",
                settings.appointment_duration_minutes,
                email,
            )
        except httpx.HTTPError as exc:
            logger.warning("autobook_create_failed", extra={"case_id": case.id, "error": repr(exc)})
            return AIResponse(
                response_text="Sorry, I couldn't confirm that booking right now. Could you try another time?",
                action=TurnAction.STAY,
                next_intent=NextIntent.SCHEDULE_CONSULT,
            )
        await self.repository.set_contact_email(case.user_id, case.client_phone, email)
        await self.record_event(
            case,
            "calendar_event_created",
            metadata={"event_id": event.get("id"), "start": slot.start.isoformat(), "source": "auto_booking"},
        )
        when = f"{WEEKDAYS[slot.start.weekday()]}, {slot.start.strftime('%d/%m/%Y')} at {slot.start.strftime('%H:%M')}"
        return AIResponse(
            response_text=(
                f"All set, {case.client_name}! Your consultation is booked for {when}. "
                f"The invitation was sent to {email}."
            ),
            action=TurnAction.STAY,
            new_status=FunnelStatus.QUALIFIED,
            next_intent=NextIntent.SCHEDULE_CONSULT,
        )
