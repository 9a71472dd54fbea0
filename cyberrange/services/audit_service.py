#!/usr/bin/env python3
"""Audit trail for lab lifecycle and template administration."""

import logging
from typing import List, Optional

from cyberrange.models import AuditLog, db

logger = logging.getLogger(__name__)


class AuditLogService:

    def log(self, action: str, actor_id: Optional[str], target_type: str,
            target_id: Optional[str], metadata: Optional[dict] = None) -> AuditLog:
        entry = AuditLog(
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=metadata or {},
        )
        db.session.add(entry)
        db.session.commit()
        logger.info("Audit: %s by %s on %s %s", action, actor_id or 'system', target_type, target_id)
        return entry

    def for_target(self, target_type: str, target_id: str) -> List[AuditLog]:
        return AuditLog.query.filter_by(target_type=target_type, target_id=target_id) \
            .order_by(AuditLog.id.asc()).all()
