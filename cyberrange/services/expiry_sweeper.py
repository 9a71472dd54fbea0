#!/usr/bin/env python3
"""
TTL enforcement for lab instances.

ACTIVE instances past ``expires_at`` are stopped through the admin
force-stop path. An instance that cannot be stopped is marked ABANDONED
with the failure recorded in ``last_error``.

Runs either from cron (scripts/cleanup_expired_labs.py) or as an optional
daemon thread started by create_app when LABS_SWEEPER_ENABLED is set.
"""

import logging
from datetime import datetime
from threading import Event, Thread
from typing import Dict, Optional

from cyberrange.models import LabInstance, LabInstanceState, db

logger = logging.getLogger(__name__)

# Sweeper daemon control
sweeper_active = False
sweeper_thread: Optional[Thread] = None
sweeper_stop_event = Event()


def find_expired_instance_ids(now: Optional[datetime] = None):
    now = now or datetime.utcnow()
    rows = db.session.query(LabInstance.id).filter(
        LabInstance.state == LabInstanceState.ACTIVE,
        LabInstance.expires_at.isnot(None),
        LabInstance.expires_at <= now,
    ).all()
    return [row.id for row in rows]


def sweep_expired_instances(services, now: Optional[datetime] = None) -> Dict[str, int]:
    """Stop every expired ACTIVE instance. Returns ``{'stopped': n, 'failed': m}``."""
    expired = find_expired_instance_ids(now)
    if not expired:
        logger.debug("No expired lab instances")
        return {'stopped': 0, 'failed': 0}

    stopped = failed = 0
    for instance_id in expired:
        try:
            services.instances.force_stop_by_admin(instance_id)
            stopped += 1
        except Exception as e:
            failed += 1
            db.session.rollback()
            logger.warning("Failed stopping expired lab instance %s: %s", instance_id, e)
            instance = db.session.get(LabInstance, instance_id)
            if instance is not None:
                instance.state = LabInstanceState.ABANDONED
                instance.last_error = f'TTL cleanup failed: {e}'
                instance.last_activity_at = datetime.utcnow()
                db.session.commit()

    logger.info("Expired cleanup done. stopped=%d, failed=%d", stopped, failed)
    return {'stopped': stopped, 'failed': failed}


def start_expiry_sweeper(app):
    """Start the expiry sweeper background daemon."""
    global sweeper_active, sweeper_thread

    if sweeper_active:
        logger.info("Expiry sweeper already running")
        return

    sweeper_stop_event.clear()
    sweeper_thread = Thread(
        target=_sweeper_worker,
        args=(app,),
        daemon=True,
        name="LabExpirySweeper"
    )
    sweeper_thread.start()
    sweeper_active = True
    logger.info("Expiry sweeper started")


def stop_expiry_sweeper():
    """Stop the expiry sweeper background daemon."""
    global sweeper_active

    if not sweeper_active:
        return

    logger.info("Stopping expiry sweeper...")
    sweeper_stop_event.set()
    sweeper_active = False


def _sweeper_worker(app):
    from cyberrange.services import get_services

    interval = app.extensions['cyberrange'].config.sweeper_interval_seconds
    logger.info("Expiry sweeper worker started (interval %ss)", interval)

    while not sweeper_stop_event.is_set():
        try:
            with app.app_context():
                sweep_expired_instances(get_services())
        except Exception as e:
            logger.error(f"Error in expiry sweeper: {e}", exc_info=True)

        sweeper_stop_event.wait(interval)

    logger.info("Expiry sweeper worker stopped")
