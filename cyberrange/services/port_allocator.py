#!/usr/bin/env python3
"""
Host port allocation for lab instances.

Ports come from the configured range and are recorded in the
port_allocations ledger. Exclusivity rests on the unique ``active_port``
column: two concurrent allocations can pick the same candidate, but only
one insert survives, and the loser moves on to the next port. History is
append-only; release nulls ``active_port`` instead of deleting the row.
"""

import logging
import socket
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from cyberrange.config import LabsConfig
from cyberrange.errors import PortExhaustedError
from cyberrange.models import PortAllocation, PortAllocationStatus, db

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = '0.0.0.0') -> bool:
    """Return True if something on this host already listens on ``port``."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return False
    except OSError:
        return True
    finally:
        sock.close()


class PortAllocator:
    """Hands out unique host ports from ``[port_start, port_end]``."""

    def __init__(self, config: LabsConfig, probe=None):
        self.config = config
        self._probe = probe or is_port_in_use

    def allocate(self, instance_id: str) -> int:
        """Assign the lowest free port in the range to ``instance_id``.

        Raises:
            PortExhaustedError: every port in the range is taken
        """
        try:
            port = self._claim_first_free(instance_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Allocated port %s to lab instance %s", port, instance_id)
        return port

    def _claim_first_free(self, instance_id: str) -> int:
        start, end = self.config.port_start, self.config.port_end

        # FOR UPDATE serializes allocators on backends that support row locks
        claimed = {
            row.active_port
            for row in PortAllocation.query
            .filter(PortAllocation.active_port.isnot(None))
            .with_for_update()
            .all()
        }

        for candidate in range(start, end + 1):
            if candidate in claimed:
                continue
            if self.config.probe_host_ports and self._probe(candidate):
                logger.debug("Port %s is occupied on this host, skipping", candidate)
                continue

            try:
                with db.session.begin_nested():
                    db.session.add(PortAllocation(
                        port=candidate,
                        active_port=candidate,
                        lab_instance_id=instance_id,
                        status=PortAllocationStatus.ASSIGNED,
                        allocated_at=datetime.utcnow(),
                    ))
            except IntegrityError:
                # Lost the race for this port to a concurrent allocation
                logger.debug("Port %s claimed concurrently, trying next", candidate)
                continue

            return candidate

        raise PortExhaustedError(
            f"No available port in allocation range {start}-{end}.",
            details={'port_start': start, 'port_end': end},
        )

    def release(self, instance_id: str) -> int:
        """Release every port currently assigned to ``instance_id``.

        Returns the number of ledger rows released.
        """
        now = datetime.utcnow()
        try:
            released = PortAllocation.query.filter(
                PortAllocation.lab_instance_id == instance_id,
                PortAllocation.status == PortAllocationStatus.ASSIGNED,
                PortAllocation.active_port.isnot(None),
            ).update({
                'status': PortAllocationStatus.RELEASED,
                'active_port': None,
                'released_at': now,
            }, synchronize_session=False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if released:
            logger.info("Released %d port allocation(s) for lab instance %s", released, instance_id)
        return released

    def release_stale(self) -> int:
        """Release ASSIGNED rows that no longer point at an instance."""
        try:
            released = PortAllocation.query.filter(
                PortAllocation.lab_instance_id.is_(None),
                PortAllocation.status == PortAllocationStatus.ASSIGNED,
                PortAllocation.active_port.isnot(None),
            ).update({
                'status': PortAllocationStatus.RELEASED,
                'active_port': None,
                'released_at': datetime.utcnow(),
            }, synchronize_session=False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Stale port allocations cleaned: %d", released)
        return released

    def active_for_instance(self, instance_id: str) -> Optional[PortAllocation]:
        return PortAllocation.query.filter(
            PortAllocation.lab_instance_id == instance_id,
            PortAllocation.status == PortAllocationStatus.ASSIGNED,
        ).order_by(PortAllocation.allocated_at.desc()).first()

    def history(self, port: int) -> List[PortAllocation]:
        return PortAllocation.query.filter_by(port=port) \
            .order_by(PortAllocation.allocated_at.asc()).all()
