from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Tuple

from channels.whatsapp_dispatcher import OutboundDispatcher
from models.schemas import Case, FunnelStatus, TenantInstance
from tenants.registry import TenantRegistry
from tools.calendar_tools import local_tz

logger = logging.getLogger(__name__)

STAGE_NOTIFICATIONS: Dict[FunnelStatus, Tuple[str, str, str]] = {
    FunnelStatus.NEW_CONTACT: ("notify_new_lead", "🆕", "New Lead"),
    FunnelStatus.IN_PROGRESS: ("notify_new_lead", "💬", "In Progress"),
    FunnelStatus.QUALIFIED: ("notify_qualified_lead", "⭐", "Qualified Lead"),
    FunnelStatus.CONVERTED: ("notify_contract_signed", "✅", "Converted"),
}


def render_notification(case: Case, status: FunnelStatus, emoji: str, label: str, at: datetime) -> str:
    stamp = at.astimezone(local_tz()).strftime("%d/%m/%Y %H:%M")
    return f"{emoji} {label}\nClient: {case.client_name}\nPhone: {case.client_phone}\nStatus: {status.value}\nTime: {stamp}"


class StatusNotifier:
    """Operator notifications on stage changes, gated per tenant and stage type."""

    def __init__(self, registry: TenantRegistry, dispatcher: OutboundDispatcher) -> None:
        self.registry = registry
        self.dispatcher = dispatcher

    async def notify(self, instance: TenantInstance, case: Case, status: FunnelStatus) -> bool:
        mapping = STAGE_NOTIFICATIONS.get(status)
        if mapping is None:
            return False
        key, emoji, label = mapping
        try:
            settings = await self.registry.notification_settings(case.user_id)
            if not settings.is_enabled or not settings.notification_phone or not getattr(settings, key):
                return False
            text = render_notification(case, status, emoji, label, datetime.now(timezone.utc))
            await self.dispatcher.send_to_number(instance, settings.notification_phone, text)
        except Exception:
            logger.exception("status_notification_failed", extra={"case_id": case.id, "status": status.value})
            return False
        return True
