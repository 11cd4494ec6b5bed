"""
Event Store service for append-only audit logging.

Identity and moderation changes are logged here inside the same
transaction as the change itself.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from chatforum.kernel.models.event_log import EventLog, EventType


class EventStore:
    """
    Service for managing the immutable event log.

    Usage:
        event_store = EventStore(session)
        await event_store.log(
            event_type=EventType.USER_BANNED,
            entity_type="user",
            entity_id=target_id,
            user_id=admin.id,
            payload={"reason": reason, "expires_at": expires_at},
        )
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def log(
        self,
        event_type: EventType,
        entity_type: str,
        entity_id: int,
        user_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> EventLog:
        """
        Append an event to the audit log.

        Args:
            event_type: The type of event
            entity_type: The type of entity (user, punishment, ...)
            entity_id: The ID of the entity
            user_id: The acting user (None for system events such as timed expiry)
            payload: Additional event data
            ip_address: Client IP address
            user_agent: Client user agent

        Returns:
            The created EventLog record
        """
        if payload:
            payload = self._serialize_payload(payload)

        event = EventLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            payload=payload or {},
            ip_address=ip_address,
            user_agent=user_agent,
        )

        self.session.add(event)
        # Caller flushes/commits with the rest of the unit of work
        return event

    async def get_entity_history(
        self,
        entity_type: str,
        entity_id: int,
        event_types: Optional[List[EventType]] = None,
        limit: int = 100,
    ) -> List[EventLog]:
        """Event history for one entity, newest first."""
        query = select(EventLog).where(
            and_(
                EventLog.entity_type == entity_type,
                EventLog.entity_id == entity_id,
            )
        )

        if event_types:
            query = query.where(EventLog.event_type.in_([t.value for t in event_types]))

        query = query.order_by(desc(EventLog.created_at), desc(EventLog.id)).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    def _serialize_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Convert payload values to JSON-serializable types."""
        result = {}
        for key, value in payload.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
            elif isinstance(value, dict):
                result[key] = self._serialize_payload(value)
            elif isinstance(value, (list, tuple, set)):
                result[key] = [
                    self._serialize_payload(v) if isinstance(v, dict)
                    else v.isoformat() if isinstance(v, datetime)
                    else v
                    for v in value
                ]
            else:
                result[key] = value
        return result
