from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime

from celery import Celery
from pydantic import BaseModel, Field

from channels.whatsapp_dispatcher import OutboundDispatcher
from memory.case_repository import CaseRepository
from memory.record_store import build_record_store
from settings import SETTINGS
from tenants.registry import TenantRegistry

logger = logging.getLogger(__name__)


celery_app = Celery("legal_funnel_engine")
if SETTINGS.redis_url:
    celery_app.conf.broker_url = SETTINGS.redis_url
    celery_app.conf.result_backend = SETTINGS.redis_url
# one attempt per greeting: ack on receipt, no redelivery
celery_app.conf.task_acks_late = False


class DelayedGreeting(BaseModel):
    case_id: str
    user_id: str
    instance_name: str
    text: str
    scheduled_at: datetime = Field(default_factory=datetime.utcnow)


class GreetingScheduler(ABC):
    @abstractmethod
    async def schedule(self, greeting: DelayedGreeting, delay_seconds: int) -> None:
        raise NotImplementedError


class CeleryGreetingScheduler(GreetingScheduler):
    async def schedule(self, greeting: DelayedGreeting, delay_seconds: int) -> None:
        payload = greeting.model_dump(mode="json")
        await asyncio.to_thread(lambda: send_delayed_greeting.apply_async(args=[payload], countdown=delay_seconds))
        logger.info("delayed_greeting_scheduled", extra={"case_id": greeting.case_id, "delay_s": delay_seconds})


class DelayedGreetingSender:
    def __init__(self, repository: CaseRepository, registry: TenantRegistry, dispatcher: OutboundDispatcher) -> None:
        self.repository = repository
        self.registry = registry
        self.dispatcher = dispatcher

    async def run(self, greeting: DelayedGreeting) -> str:
        case = await self.repository.get_case(greeting.case_id)
        if case is None:
            return "case_not_found"
        if case.is_paused:
            logger.info("delayed_greeting_skipped_paused", extra={"case_id": case.id})
            return "agent_paused"
        instance = await self.registry.resolve_instance(greeting.instance_name)
        if instance is None:
            return "no_owner"
        await self.dispatcher.send(instance, case, greeting.text)
        await self.repository.update_case(
            case.id, {"last_message": greeting.text, "last_message_at": datetime.utcnow().isoformat()}
        )
        return "greeting_sent"


def build_sender() -> DelayedGreetingSender:
    store = build_record_store()
    repository = CaseRepository(store)
    return DelayedGreetingSender(repository, TenantRegistry(store), OutboundDispatcher(repository))


@celery_app.task(name="tasks.delayed_greeting.send_delayed_greeting", max_retries=0)
def send_delayed_greeting(payload: dict) -> str:
    return asyncio.run(build_sender().run(DelayedGreeting.model_validate(payload)))
