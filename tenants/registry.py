from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict

from pydantic import ValidationError

from memory.record_store import RecordStore
from models.schemas import CalendarToken, NotificationSettings, ScheduleSettings, SignatureSettings, TenantInstance
from settings import SETTINGS

logger = logging.getLogger(__name__)


class TenantRegistry:
    """Per-tenant configuration rows: channel instance, notifications, schedule, integrations."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self._instances: Dict[str, TenantInstance] = {}

    async def resolve_instance(self, instance_name: str) -> TenantInstance | None:
        if instance_name in self._instances:
            return self._instances[instance_name]
        row = await self.store.select_one("evolution_api_settings", {"instance_name": instance_name})
        if not row or not row.get("user_id"):
            return None
        instance = TenantInstance(
            instance_name=instance_name,
            user_id=str(row["user_id"]),
            api_url=str(row.get("api_url") or SETTINGS.evolution_api_url),
            api_key=str(row.get("api_key") or SETTINGS.evolution_api_key),
        )
        self._instances[instance_name] = instance
        return instance

    async def instance_for_user(self, user_id: str) -> TenantInstance | None:
        row = await self.store.select_one("evolution_api_settings", {"user_id": user_id})
        if not row:
            return None
        return await self.resolve_instance(str(row["instance_name"]))

    async def notification_settings(self, user_id: str) -> NotificationSettings:
        row = await self.store.select_one("notification_settings", {"user_id": user_id})
        return NotificationSettings.model_validate(row) if row else NotificationSettings(user_id=user_id)

    async def schedule_settings(self, user_id: str) -> ScheduleSettings:
        row = await self.store.select_one("schedule_settings", {"user_id": user_id})
        if not row:
            return ScheduleSettings()
        try:
            return ScheduleSettings.model_validate(row)
        except ValidationError as exc:
            logger.warning("schedule_settings_invalid", extra={"user_id": user_id, "errors": exc.errors()})
            return ScheduleSettings()

    async def calendar_token(self, user_id: str) -> CalendarToken | None:
        row = await self.store.select_one("google_calendar_tokens", {"user_id": user_id})
        return CalendarToken.model_validate(row) if row else None

    async def calendar_connected(self, user_id: str) -> bool:
        return await self.calendar_token(user_id) is not None

    async def save_calendar_token(self, user_id: str, access_token: str, expires_at: datetime) -> None:
        await self.store.update(
            "google_calendar_tokens",
            {"user_id": user_id},
            {"access_token": access_token, "expires_at": expires_at.isoformat()},
        )

    async def signature_settings(self, user_id: str) -> SignatureSettings | None:
        row = await self.store.select_one("signature_settings", {"user_id": user_id})
        if not row:
            return None
        settings = SignatureSettings.model_validate(row)
        return settings if settings.is_enabled and settings.api_token else None
