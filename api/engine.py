from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

import httpx

from agents.case_state import CaseStateMachine
from agents.conversation_router import ConversationRouter
from agents.funnel_engine import FunnelEngine
from agents.handoff_manager import HandoffManager
from agents.llm_runtime import LLMRuntime
from agents.orchestrator import AIOrchestrator
from agents.signature_tracker import SignatureTracker
from channels.media_transcriber import MediaTranscriber
from channels.whatsapp_dispatcher import ChannelClient, OutboundDispatcher
from compliance.audit_logger import AuditLogger
from memory.case_lock import CaseLockRegistry
from memory.case_repository import CaseRepository
from memory.record_store import RecordStore, build_record_store
from memory.retrieval import RetrievalEngine
from models.schemas import SignatureSettings, TenantInstance
from tasks.background import BackgroundRunner
from tasks.delayed_greeting import CeleryGreetingScheduler, GreetingScheduler
from tenants.registry import TenantRegistry
from tools.calendar_tools import GoogleCalendarTools
from tools.notification_tools import StatusNotifier
from tools.signature_tools import ZapSignTools


@dataclass
class Engine:
    store: RecordStore
    repository: CaseRepository
    registry: TenantRegistry
    llm: LLMRuntime
    dispatcher: OutboundDispatcher
    retrieval: RetrievalEngine
    state_machine: CaseStateMachine
    handoff: HandoffManager
    router: ConversationRouter
    signatures: SignatureTracker
    runner: BackgroundRunner


def build_engine(
    store: RecordStore | None = None,
    llm: LLMRuntime | None = None,
    client_factory: Callable[[TenantInstance], ChannelClient] | None = None,
    scheduler: GreetingScheduler | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    calendar_transport: httpx.AsyncBaseTransport | None = None,
    signature_factory: Callable[[SignatureSettings], ZapSignTools] | None = None,
    clock: Callable[[], datetime] | None = None,
    locks: CaseLockRegistry | None = None,
) -> Engine:
    """Wire every funnel component over one record store."""
    store = store or build_record_store()
    llm = llm or LLMRuntime()
    repository = CaseRepository(store)
    registry = TenantRegistry(store)
    audit = AuditLogger(store)
    runner = BackgroundRunner()
    dispatcher = OutboundDispatcher(repository, client_factory=client_factory, sleep=sleep)
    retrieval = RetrievalEngine(store, llm)
    funnel = FunnelEngine(repository, audit, llm)
    notifier = StatusNotifier(registry, dispatcher)
    state_machine = CaseStateMachine(repository, dispatcher, notifier, funnel, runner, audit)
    handoff = HandoffManager(repository, dispatcher, state_machine, scheduler or CeleryGreetingScheduler(), audit, llm)
    calendar = GoogleCalendarTools(registry, transport=calendar_transport, clock=clock)
    orchestrator = AIOrchestrator(
        repository,
        registry,
        retrieval,
        calendar,
        audit,
        llm=llm,
        signature_factory=signature_factory,
        clock=clock,
    )
    router = ConversationRouter(
        repository,
        registry,
        dispatcher,
        MediaTranscriber(llm),
        state_machine,
        funnel,
        handoff,
        orchestrator,
        retrieval,
        runner,
        locks or CaseLockRegistry(),
        audit,
    )
    return Engine(
        store=store,
        repository=repository,
        registry=registry,
        llm=llm,
        dispatcher=dispatcher,
        retrieval=retrieval,
        state_machine=state_machine,
        handoff=handoff,
        router=router,
        signatures=SignatureTracker(repository, registry, state_machine, audit),
        runner=runner,
    )
