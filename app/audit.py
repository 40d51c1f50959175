"""
Audit trail for state changes (user creation, deletions, plan changes).
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

DetailValue = Union[str, int, float, bool, None]


class AuditEvent(BaseModel):
    timestamp: str
    action: str
    entity_type: str
    entity_id: str
    user_id: str
    details: Dict[str, DetailValue] = Field(default_factory=dict)


def log_audit_event(
    logger: logging.Logger,
    action: str,
    entity_type: str,
    entity_id: str,
    user_id: str,
    details: Optional[Dict[str, DetailValue]] = None,
) -> AuditEvent:
    """Validate and emit one audit entry as a JSON log line."""
    event = AuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=user_id,
        details=details or {},
    )
    logger.info("AUDIT: %s", json.dumps(event.model_dump(), default=str))
    return event
