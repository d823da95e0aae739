import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from preik.db.base import db_session
from preik.db.models import AuditLog

logger = logging.getLogger(__name__)


def log_audit(
    actor_email: str,
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    # Never blocks the main operation
    try:
        with db_session() as s:
            s.add(
                AuditLog(
                    id=str(uuid.uuid4()),
                    actor_email=actor_email,
                    action=action,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    details=details or {},
                )
            )
    except (SQLAlchemyError, RuntimeError) as e:
        logger.error("audit: failed to record %s on %s/%s: %s", action, entity_type, entity_id, e)
