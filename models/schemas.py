from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class FunnelStatus(str, Enum):
    NEW_CONTACT = "New Contact"
    IN_PROGRESS = "In Progress"
    QUALIFIED = "Qualified"
    NOT_QUALIFIED = "Not Qualified"
    CONVERTED = "Converted"
    ARCHIVED = "Archived"


class MessageRole(str, Enum):
    CLIENT = "client"
    ASSISTANT = "assistant"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class TurnAction(str, Enum):
    PROCEED = "PROCEED"
    STAY = "STAY"


class NextIntent(str, Enum):
    DIRECT_CONTRACT = "DIRECT_CONTRACT"
    SCHEDULE_CONSULT = "SCHEDULE_CONSULT"
    CONTINUE = "CONTINUE"


class MediaKind(str, Enum):
    AUDIO = "audio"
    IMAGE = "image"
    DOCUMENT = "document"


class Case(BaseModel):
    id: str
    user_id: str
    client_phone: str
    client_name: str = "Client"
    status: FunnelStatus = FunnelStatus.NEW_CONTACT
    active_agent_id: Optional[str] = None
    current_step_id: Optional[str] = None
    is_paused: bool = False
    unread_count: int = 0
    case_description: Optional[str] = None
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Agent(BaseModel):
    id: str
    user_id: str
    name: str
    category: Optional[str] = None
    is_active: bool = True
    is_default: bool = False


class ScriptStep(BaseModel):
    id: str
    agent_id: str
    step_order: int
    situation: str = ""
    message_to_send: str = ""


class AgentRules(BaseModel):
    agent_id: str
    system_prompt: str = ""
    welcome_message: str = ""
    forbidden_actions: str = ""
    allowed_behaviors: str = ""


class FAQ(BaseModel):
    id: str
    agent_id: str
    question: str
    answer: str


class ConversationEntry(BaseModel):
    id: str
    case_id: str
    role: MessageRole
    content: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    external_message_id: Optional[str] = None
    message_status: DeliveryStatus = DeliveryStatus.SENT
    created_at: datetime = Field(default_factory=datetime.utcnow)


class CaseFields(BaseModel):
    case_id: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    extracted_at: Optional[datetime] = None


class HandoffArtifact(BaseModel):
    summary: str = ""
    facts: List[str] = Field(default_factory=list)
    collected_fields: Dict[str, Any] = Field(default_factory=dict)
    open_questions: List[str] = Field(default_factory=list)
    next_best_action: str = ""
    risk_flags: List[str] = Field(default_factory=list)
    confidence: Literal["low", "medium", "high"] = "low"


class HandoffRecord(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    case_id: str
    user_id: str
    from_agent_id: Optional[str] = None
    to_agent_id: str
    reason: str
    artifact: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class WorkflowEvent(BaseModel):
    case_id: str
    user_id: str
    event_type: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    from_agent_id: Optional[str] = None
    to_agent_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TenantInstance(BaseModel):
    instance_name: str
    user_id: str
    api_url: str
    api_key: str


class NotificationSettings(BaseModel):
    user_id: str
    is_enabled: bool = False
    notification_phone: str = ""
    notify_new_lead: bool = True
    notify_qualified_lead: bool = True
    notify_contract_signed: bool = True


class ScheduleSettings(BaseModel):
    work_start_hour: int = 9
    work_end_hour: int = 18
    lunch_start_hour: Optional[int] = None
    lunch_end_hour: Optional[int] = None
    appointment_duration_minutes: int = Field(default=60, ge=1)
    # 0 = Sunday
    work_days: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])

    @field_validator("appointment_duration_minutes", mode="before")
    @classmethod
    def _default_duration(cls, value: Any) -> Any:
        return 60 if value is None else value


class CalendarToken(BaseModel):
    user_id: str
    access_token: str
    refresh_token: str = ""
    expires_at: datetime
    calendar_id: Optional[str] = None


class SignatureSettings(BaseModel):
    user_id: str
    api_token: str
    is_enabled: bool = False
    sandbox: bool = True


class CalendarSlot(BaseModel):
    start: datetime
    end: datetime


class AIResponse(BaseModel):
    response_text: str
    action: TurnAction = TurnAction.STAY
    new_status: Optional[FunnelStatus] = None
    next_intent: Optional[NextIntent] = None
    finalization_forced: bool = False


class CheckCalendarAvailability(BaseModel):
    tool: Literal["check_calendar_availability"] = "check_calendar_availability"
    days_ahead: int = Field(default=7, ge=1, le=30)


class CreateCalendarEvent(BaseModel):
    tool: Literal["create_calendar_event"] = "create_calendar_event"
    date: str
    time: str
    summary: str = "Consultation"
    duration_minutes: Optional[int] = Field(default=None, ge=15, le=480)
    client_email: Optional[str] = None


class SendSignatureDocument(BaseModel):
    tool: Literal["send_signature_document"] = "send_signature_document"
    template_id: str = "default"
    signer_name: str
    signer_email: Optional[str] = None
    signer_phone: Optional[str] = None
    fields: Dict[str, str] = Field(default_factory=dict)


class SendResponse(BaseModel):
    tool: Literal["send_response"] = "send_response"
    response_text: str
    action: TurnAction = TurnAction.STAY
    new_status: Optional[FunnelStatus] = None
    next_intent: Optional[NextIntent] = None


ToolCall = Annotated[
    Union[CheckCalendarAvailability, CreateCalendarEvent, SendSignatureDocument, SendResponse],
    Field(discriminator="tool"),
]
TOOL_CALL_ADAPTER: TypeAdapter = TypeAdapter(ToolCall)


def parse_tool_call(name: str, arguments: Dict[str, Any]) -> ToolCall:
    """Validate raw model arguments into the typed variant named by ``name``."""
    return TOOL_CALL_ADAPTER.validate_python({**(arguments or {}), "tool": name})


class InboundMessage(BaseModel):
    instance: str
    phone: str
    client_name: str = "Client"
    text: str = ""
    external_message_id: Optional[str] = None
    media_kind: Optional[MediaKind] = None
    media_mimetype: Optional[str] = None
    media_filename: Optional[str] = None
    media_caption: Optional[str] = None
    raw_key: Dict[str, Any] = Field(default_factory=dict)
    raw_message: Dict[str, Any] = Field(default_factory=dict)


class DeliveryUpdate(BaseModel):
    instance: str = ""
    external_message_id: str
    status: DeliveryStatus


class KnowledgeIngestRequest(BaseModel):
    user_id: str
    agent_id: Optional[str] = None
    title: str = ""
    content: str


class HandoffRequest(BaseModel):
    to_agent_id: str
    reason: str = "operator_request"
    target_status: Optional[FunnelStatus] = None
