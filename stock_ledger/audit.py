from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stock_ledger.logging_config import get_logger
from stock_ledger.models import AuditLog

logger = get_logger(__name__)


def log_event(
    db: Session,
    actor_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
) -> None:
    """Write an audit row in its own commit; audit failures never undo stock work."""
    row = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        detail=json.dumps(detail, ensure_ascii=False, default=str) if detail is not None else None,
    )
    db.add(row)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning(
            "audit_write_failed",
            extra={"action": action, "entity_type": entity_type, "entity_id": entity_id},
            exc_info=True,
        )
