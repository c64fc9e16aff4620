from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from models.schemas import CalendarSlot, ScheduleSettings
from settings import SETTINGS
from tenants.registry import TenantRegistry
from tools.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_URL = "https://www.googleapis.com/calendar/v3"
REFRESH_MARGIN = timedelta(minutes=5)
WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

Interval = Tuple[datetime, datetime]


class CalendarNotConnectedError(RuntimeError):
    pass


def local_tz(utc_offset_hours: int | None = None) -> timezone:
    hours = SETTINGS.calendar_utc_offset_hours if utc_offset_hours is None else utc_offset_hours
    return timezone(timedelta(hours=hours))


def _sunday_first_weekday(day: date) -> int:
    return day.isoweekday() % 7


def generate_slots(
    settings: ScheduleSettings,
    busy: Sequence[Interval],
    now_utc: datetime,
    days_ahead: int = 7,
    utc_offset_hours: int | None = None,
) -> List[CalendarSlot]:
    """Free appointment slots from today on, in local time.

    Slots start at the work-day start and advance by the appointment duration.
    A slot touching lunch jumps to the end of lunch; a slot overlapping any busy
    interval is skipped; slots already started are dropped.
    """
    tz = local_tz(utc_offset_hours)
    now_local = now_utc.astimezone(tz)
    duration = timedelta(minutes=settings.appointment_duration_minutes)
    has_lunch = settings.lunch_start_hour is not None and settings.lunch_end_hour is not None
    slots: List[CalendarSlot] = []
    for offset in range(days_ahead):
        day = now_local.date() + timedelta(days=offset)
        if _sunday_first_weekday(day) not in settings.work_days:
            continue
        cursor = datetime.combine(day, time(settings.work_start_hour), tz)
        day_end = datetime.combine(day, time(settings.work_end_hour), tz)
        lunch_start = datetime.combine(day, time(settings.lunch_start_hour), tz) if has_lunch else None
        lunch_end = datetime.combine(day, time(settings.lunch_end_hour), tz) if has_lunch else None
        while cursor + duration <= day_end:
            slot_end = cursor + duration
            if cursor <= now_local:
                cursor = slot_end
                continue
            if lunch_start and lunch_end and cursor < lunch_end and slot_end > lunch_start:
                cursor = lunch_end
                continue
            if any(cursor < b_end and slot_end > b_start for b_start, b_end in busy):
                cursor = slot_end
                continue
            slots.append(CalendarSlot(start=cursor, end=slot_end))
            cursor = slot_end
    return slots


def format_slots(slots: Sequence[CalendarSlot], limit: int = 20) -> str:
    by_day: Dict[date, List[str]] = {}
    for slot in list(slots)[:limit]:
        by_day.setdefault(slot.start.date(), []).append(slot.start.strftime("%H:%M"))
    lines: List[str] = []
    for day, times in by_day.items():
        lines.append(f"📆 {WEEKDAYS[day.weekday()]}, {day.strftime('%d/%m/%Y')} ({day.isoformat()}):\n   Times: {', '.join(times)}")
    return "\n".join(lines)


def _parse_google_time(raw: str) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


class GoogleCalendarTools:
    def __init__(
        self,
        registry: TenantRegistry,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.retry_policy = retry_policy
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds, transport=self.transport)

    async def access_token(self, user_id: str) -> Tuple[str, Optional[str]]:
        token = await self.registry.calendar_token(user_id)
        if token is None:
            raise CalendarNotConnectedError(user_id)
        now = self.clock()
        if _as_utc(token.expires_at) - now > REFRESH_MARGIN or not token.refresh_token:
            return token.access_token, token.calendar_id

        async def _refresh() -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": SETTINGS.google_client_id,
                        "client_secret": SETTINGS.google_client_secret,
                        "refresh_token": token.refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
                resp.raise_for_status()
                return resp.json()

        data = await with_retry(_refresh, label="google_token_refresh", policy=self.retry_policy)
        access = str(data["access_token"])
        expires_at = now + timedelta(seconds=int(data.get("expires_in", 3600)))
        await self.registry.save_calendar_token(user_id, access, expires_at)
        logger.info("calendar_token_refreshed", extra={"user_id": user_id})
        return access, token.calendar_id

    async def busy_intervals(self, access: str, calendar_id: str, time_min: datetime, time_max: datetime) -> List[Interval]:
        async def _query() -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(
                    f"{GOOGLE_CALENDAR_URL}/freeBusy",
                    headers={"Authorization": f"Bearer {access}"},
                    json={
                        "timeMin": time_min.isoformat(),
                        "timeMax": time_max.isoformat(),
                        "items": [{"id": calendar_id}],
                    },
                )
                resp.raise_for_status()
                return resp.json()

        data = await with_retry(_query, label="google_freebusy", policy=self.retry_policy)
        busy = ((data.get("calendars") or {}).get(calendar_id) or {}).get("busy") or []
        return [(_parse_google_time(b["start"]), _parse_google_time(b["end"])) for b in busy if b.get("start") and b.get("end")]

    async def get_availability(self, user_id: str, days_ahead: int = 7) -> List[CalendarSlot]:
        access, calendar_id = await self.access_token(user_id)
        settings = await self.registry.schedule_settings(user_id)
        now = self.clock()
        busy = await self.busy_intervals(access, calendar_id or "primary", now, now + timedelta(days=days_ahead + 1))
        return generate_slots(settings, busy, now, days_ahead)

    def parse_local(self, date_str: str, time_str: str) -> datetime:
        start = datetime.strptime(f"{date_str} {time_str}", "%Y-%m-%d %H:%M").replace(tzinfo=local_tz())
        current_year = self.clock().astimezone(local_tz()).year
        if start.year < current_year:
            start = start.replace(year=current_year)
        return start

    async def create_event(
        self,
        user_id: str,
        date_str: str,
        time_str: str,
        summary: str,
        duration_minutes: int,
        attendee_email: str | None = None,
    ) -> Dict[str, Any]:
        access, _ = await self.access_token(user_id)
        start = self.parse_local(date_str, time_str)
        end = start + timedelta(minutes=duration_minutes)
        body: Dict[str, Any] = {
            "summary": summary,
            "start": {"dateTime": start.isoformat(), "timeZone": SETTINGS.calendar_timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": SETTINGS.calendar_timezone},
        }
        params: Dict[str, str] = {}
        if attendee_email:
            body["attendees"] = [{"email": attendee_email}]
            params["sendUpdates"] = "all"

        async def _create() -> Dict[str, Any]:
            async with self._client() as client:
                resp = await client.post(
                    f"{GOOGLE_CALENDAR_URL}/calendars/primary/events",
                    headers={"Authorization": f"Bearer {access}"},
                    params=params,
                    json=body,
                )
                resp.raise_for_status()
                return resp.json()

        event = await with_retry(_create, label="google_create_event", policy=self.retry_policy)
        logger.info("calendar_event_created", extra={"user_id": user_id, "event_id": event.get("id"), "start": start.isoformat()})
        return event
