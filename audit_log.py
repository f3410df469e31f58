"""Audit-log sink. Recording an entry never breaks the operation being logged."""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from database import AuditLogEntry

logger = logging.getLogger(__name__)


class AuditLogger:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def record(
        self,
        actor_id: str,
        module: str,
        entity_id: Optional[str],
        entity_type: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
        action: Optional[str] = None,
    ) -> None:
        try:
            with self.session_factory() as session:
                session.add(
                    AuditLogEntry(
                        user_id=actor_id,
                        action=action,
                        module=module,
                        entity_id=entity_id,
                        entity_type=entity_type,
                        payload=payload,
                    )
                )
                session.commit()
        except Exception as e:
            logger.error(f"Failed to create audit log entry: {str(e)}")
