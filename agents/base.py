from __future__ import annotations

from typing import Any, Dict

from compliance.audit_logger import AuditLogger
from models.schemas import Case, WorkflowEvent


class BaseAgent:
    """Common plumbing for funnel components: a name and the workflow audit trail."""

    def __init__(self, name: str, audit_logger: AuditLogger) -> None:
        self.name = name
        self.audit_logger = audit_logger

    async def record_event(
        self,
        case: Case,
        event_type: str,
        from_status: str | None = None,
        to_status: str | None = None,
        from_agent_id: str | None = None,
        to_agent_id: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> WorkflowEvent:
        event = WorkflowEvent(
            case_id=case.id,
            user_id=case.user_id,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            from_agent_id=from_agent_id,
            to_agent_id=to_agent_id,
            metadata={"component": self.name, **(metadata or {})},
        )
        await self.audit_logger.log_event(event)
        return event
