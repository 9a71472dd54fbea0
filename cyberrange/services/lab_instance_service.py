#!/usr/bin/env python3
"""
Lab instance lifecycle.

Owns the state machine for a user's lab session:

    INACTIVE --activate--> ACTIVE --deactivate--> INACTIVE
    ACTIVE --restart--> ACTIVE
    any --upgrade--> ACTIVE
    any --driver failure on activate--> ABANDONED
    ACTIVE --progress 100--> COMPLETED

One instance exists per (user, template family). Activation always finds
that row first and re-points it; upgrades re-point it to the new template
version instead of creating a second row.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from cyberrange.config import LabsConfig
from cyberrange.errors import (
    DomainRuleError, DriverError, IncompatibleUpgradeError, LabError, NotFoundError,
    OrchestrationOperationError, OwnershipError,
)
from cyberrange.models import LabInstance, LabInstanceState, LabTemplate, UpgradeStrategy, db

logger = logging.getLogger(__name__)

_OPERATION_PREFIXES = {
    'start': 'Failed to start lab instance.',
    'stop': 'Failed to stop lab instance.',
    'restart': 'Failed to restart lab instance.',
    'upgrade': 'Failed to upgrade lab instance.',
}


def humanize_runtime_error(raw: str, operation: str) -> str:
    """Turn a raw driver error into a message a learner can act on."""
    normalized = (raw or '').lower()
    prefix = _OPERATION_PREFIXES.get(operation, 'Lab runtime operation failed.')

    if 'permission denied' in normalized and 'docker.sock' in normalized:
        return prefix + ' Docker daemon unreachable / permission denied on socket. ' \
                        'Check remediation hints in details.preflight.'
    if 'failed to create workdir' in normalized:
        return prefix + ' Runtime workdir is not writable. Check remediation hints in details.preflight.'
    if 'cannot connect to the docker daemon' in normalized:
        return prefix + ' Docker daemon unreachable. Check remediation hints in details.preflight.'
    return f'{prefix} {raw}'


def is_in_place_compatible(current: LabTemplate, target: LabTemplate) -> bool:
    """IN_PLACE keeps the running session, so family and container port must match."""
    if current.template_family != target.template_family:
        return False
    return current.container_port == target.container_port


class LabInstanceService:

    def __init__(self, config: LabsConfig, templates, orchestrator, ports, preflight, audit):
        self.config = config
        self.templates = templates
        self.orchestrator = orchestrator
        self.ports = ports
        self.preflight = preflight
        self.audit = audit

    def _expiry(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.config.max_ttl_minutes)

    def _operation_error(self, operation: str, error: Exception) -> OrchestrationOperationError:
        report = self.preflight.run()
        return OrchestrationOperationError(
            humanize_runtime_error(str(error), operation),
            details={
                'operation': operation,
                'raw_error': str(error),
                'hints': self.preflight.hints(report),
                'preflight': report,
            },
            error_code=f'LAB_{operation.upper()}_FAILED',
        )

    def _record_failure(self, instance: LabInstance, error: Exception, state: Optional[str] = None) -> None:
        db.session.rollback()
        if state:
            instance.state = state
        instance.last_error = str(error)
        instance.last_activity_at = datetime.utcnow()
        db.session.commit()

    # -- lookups -----------------------------------------------------------

    def find_instance_for_user_or_fail(self, instance_id: str, user) -> LabInstance:
        instance = db.session.get(LabInstance, instance_id)
        if instance is None:
            raise NotFoundError('Lab instance not found.', details={'instance_id': instance_id})
        if instance.user_id != user.id:
            raise OwnershipError('Lab instance belongs to another user.', details={'instance_id': instance_id})
        return instance

    def find_instance_or_fail(self, instance_id: str) -> LabInstance:
        instance = db.session.get(LabInstance, instance_id)
        if instance is None:
            raise NotFoundError('Lab instance not found.', details={'instance_id': instance_id})
        return instance

    def find_for_family(self, user, family: str) -> Optional[LabInstance]:
        return LabInstance.query.join(LabTemplate, LabTemplate.id == LabInstance.lab_template_id) \
            .filter(LabInstance.user_id == user.id, LabTemplate.template_family == family) \
            .order_by(LabInstance.last_activity_at.desc()) \
            .first()

    def my_instances(self, user, state: Optional[str] = None, page: int = 1, per_page: int = 15):
        query = LabInstance.query.filter_by(user_id=user.id)
        if state:
            query = query.filter_by(state=state)
        return query.order_by(LabInstance.last_activity_at.desc()) \
            .paginate(page=page, per_page=per_page, error_out=False)

    # -- user lifecycle ----------------------------------------------------

    def activate(self, template_id_or_slug: str, user, pin_version: Optional[str] = None) -> LabInstance:
        """Start (or resume) the caller's instance of a published lab.

        Raises:
            NotFoundError: no published template matches
            DomainRuleError: ``pin_version`` is not a published version of the family
            PreflightError: environment checks failed
            OrchestrationOperationError: the driver could not start the lab
        """
        template = self.templates.find_published_for_catalog_or_fail(template_id_or_slug)

        if pin_version:
            pinned = self.templates.find_published_by_version(template.template_family, pin_version)
            if pinned is None:
                raise DomainRuleError('Requested pin_version not available.',
                                      details={'pin_version': pin_version})
            template = pinned

        instance = self.find_for_family(user, template.template_family)
        if instance is None:
            instance = LabInstance(
                user_id=user.id,
                lab_template_id=template.id,
                template_version_pinned=template.version,
                state=LabInstanceState.INACTIVE,
                progress_percent=0,
                attempts_count=0,
                notes='',
                score=0,
            )
            db.session.add(instance)
            db.session.commit()
            logger.info("Created lab instance %s for user %s (%s)", instance.id, user.id, template.slug)

        if self.config.preflight_on_activate:
            self.preflight.assert_ready()

        allocated_here = False
        try:
            port = instance.assigned_port
            if not port:
                port = self.ports.allocate(instance.id)
                allocated_here = True
            self.orchestrator.start_instance(instance, template, port)
        except LabError as e:
            logger.error("Activation of lab instance %s failed: %s", instance.id, e)
            self._record_failure(instance, e, state=LabInstanceState.ABANDONED)
            if allocated_here:
                self.ports.release(instance.id)
                instance.clear_connection()
                db.session.commit()
            if isinstance(e, DriverError):
                raise self._operation_error('start', e) from e
            raise

        now = datetime.utcnow()
        instance.lab_template_id = template.id
        instance.template_version_pinned = template.version
        instance.state = LabInstanceState.ACTIVE
        instance.attempts_count = (instance.attempts_count or 0) + 1
        instance.last_activity_at = now
        instance.started_at = instance.started_at or now
        instance.expires_at = self._expiry(now)
        instance.last_error = None
        db.session.commit()

        logger.info("Lab instance %s ACTIVE on port %s", instance.id, instance.assigned_port)
        self.audit.log('LAB_INSTANCE_ACTIVATED', user.id, 'LabInstance', instance.id, {
            'template_id': template.id,
            'version': template.version,
        })
        return instance

    def deactivate(self, instance_id: str, user) -> LabInstance:
        instance = self.find_instance_for_user_or_fail(instance_id, user)

        try:
            self.orchestrator.stop_instance(instance)
        except DriverError as e:
            logger.error("Deactivation of lab instance %s failed: %s", instance.id, e)
            self._record_failure(instance, e)
            raise self._operation_error('stop', e) from e

        self.ports.release(instance.id)
        instance.state = LabInstanceState.INACTIVE
        instance.last_activity_at = datetime.utcnow()
        instance.last_error = None
        db.session.commit()

        logger.info("Lab instance %s INACTIVE", instance.id)
        self.audit.log('LAB_INSTANCE_DEACTIVATED', user.id, 'LabInstance', instance.id)
        return instance

    def restart(self, instance_id: str, user) -> LabInstance:
        instance = self.find_instance_for_user_or_fail(instance_id, user)

        try:
            self.orchestrator.restart_instance(instance)
        except DriverError as e:
            logger.error("Restart of lab instance %s failed: %s", instance.id, e)
            self._record_failure(instance, e)
            raise self._operation_error('restart', e) from e

        now = datetime.utcnow()
        instance.last_activity_at = now
        instance.expires_at = self._expiry(now)
        instance.last_error = None
        db.session.commit()
        return instance

    def _resolve_upgrade_target(self, current: LabTemplate, target_template_id: Optional[str],
                                to_version: Optional[str]) -> Optional[LabTemplate]:
        if target_template_id:
            return db.session.get(LabTemplate, target_template_id)
        if to_version:
            return self.templates.find_published_by_version(current.template_family, to_version)
        return self.templates.find_latest_published_for_family(current.template_family)

    def upgrade(self, instance_id: str, target_template_id: Optional[str], strategy: str, user,
                to_version: Optional[str] = None) -> LabInstance:
        """Move an instance to another template version.

        IN_PLACE keeps progress and requires a compatible target; RESET
        starts the learner over.

        Raises:
            DomainRuleError: no published target found, unknown strategy, or the
                user already owns an instance of the target family
            IncompatibleUpgradeError: IN_PLACE across families or container ports
        """
        instance = self.find_instance_for_user_or_fail(instance_id, user)
        current = instance.template

        strategy = (strategy or '').strip().upper()
        if strategy not in UpgradeStrategy.ALL:
            raise DomainRuleError(f"Unknown upgrade strategy '{strategy}'.",
                                  details={'allowed': list(UpgradeStrategy.ALL)})

        target = self._resolve_upgrade_target(current, target_template_id, to_version)
        if target is None or not target.is_published:
            raise DomainRuleError('Target version not found.', details={
                'target_template_id': target_template_id,
                'to_version': to_version,
            })

        if target.template_family != current.template_family:
            owned = self.find_for_family(user, target.template_family)
            if owned is not None and owned.id != instance.id:
                raise DomainRuleError('You already have an instance of the target lab.', details={
                    'instance_id': owned.id,
                    'target_family': target.template_family,
                })

        if strategy == UpgradeStrategy.IN_PLACE and not is_in_place_compatible(current, target):
            raise IncompatibleUpgradeError(
                'IN_PLACE upgrade is not compatible with this target version.',
                details={
                    'current_family': current.template_family,
                    'target_family': target.template_family,
                    'current_port': current.container_port,
                    'target_port': target.container_port,
                },
            )

        if strategy == UpgradeStrategy.RESET:
            instance.progress_percent = 0
            instance.notes = ''
            instance.score = 0
            instance.completed_at = None
            db.session.commit()

        port = instance.assigned_port
        allocated_here = not port
        if allocated_here:
            port = self.ports.allocate(instance.id)

        try:
            self.orchestrator.upgrade_instance(instance, target, strategy, port)
        except DriverError as e:
            logger.error("Upgrade of lab instance %s failed: %s", instance.id, e)
            self._record_failure(instance, e)
            if allocated_here:
                self.ports.release(instance.id)
            raise self._operation_error('upgrade', e) from e

        from_version = current.version
        instance.lab_template_id = target.id
        instance.template_version_pinned = target.version
        instance.state = LabInstanceState.ACTIVE
        instance.last_activity_at = datetime.utcnow()
        instance.last_error = None
        db.session.commit()

        logger.info("Lab instance %s upgraded %s -> %s (%s)", instance.id, from_version, target.version, strategy)
        self.audit.log('LAB_INSTANCE_UPGRADED', user.id, 'LabInstance', instance.id, {
            'from_version': from_version,
            'to_version': target.version,
            'strategy': strategy,
        })
        return instance

    def update_instance(self, instance_id: str, user, progress_percent: Optional[int] = None,
                        notes: Optional[str] = None) -> LabInstance:
        instance = self.find_instance_for_user_or_fail(instance_id, user)
        if progress_percent is not None:
            instance.progress_percent = max(0, min(100, int(progress_percent)))
        if notes is not None:
            instance.notes = notes
        instance.last_activity_at = datetime.utcnow()
        db.session.commit()
        return instance

    def record_progress(self, instance_id: str, percent: int) -> LabInstance:
        """Progress hook for the challenge subsystem. 100 completes the lab."""
        instance = self.find_instance_or_fail(instance_id)
        instance.progress_percent = max(0, min(100, int(percent)))
        instance.last_activity_at = datetime.utcnow()
        if instance.progress_percent >= 100 and instance.state != LabInstanceState.COMPLETED:
            instance.state = LabInstanceState.COMPLETED
            instance.completed_at = datetime.utcnow()
            logger.info("Lab instance %s COMPLETED", instance.id)
        db.session.commit()
        return instance

    # -- admin lifecycle ---------------------------------------------------

    def force_stop_by_admin(self, instance_id: str, actor_id: Optional[str] = None) -> LabInstance:
        instance = self.find_instance_or_fail(instance_id)

        self.orchestrator.stop_instance(instance)
        self.ports.release(instance.id)
        instance.state = LabInstanceState.INACTIVE
        instance.last_activity_at = datetime.utcnow()
        instance.last_error = None
        db.session.commit()

        self.audit.log('ADMIN_ORCHESTRATION_FORCE_STOP', actor_id, 'LabInstance', instance.id)
        return instance

    def force_restart_by_admin(self, instance_id: str, actor_id: Optional[str] = None) -> LabInstance:
        instance = self.find_instance_or_fail(instance_id)

        self.orchestrator.restart_instance(instance)
        instance.state = LabInstanceState.ACTIVE
        instance.last_activity_at = datetime.utcnow()
        instance.last_error = None
        db.session.commit()

        self.audit.log('ADMIN_ORCHESTRATION_FORCE_RESTART', actor_id, 'LabInstance', instance.id)
        return instance

    def force_destroy_by_admin(self, instance_id: str, actor_id: Optional[str] = None) -> LabInstance:
        instance = self.find_instance_or_fail(instance_id)

        self.orchestrator.destroy_instance(instance)
        self.ports.release(instance.id)
        instance.state = LabInstanceState.INACTIVE
        instance.last_activity_at = datetime.utcnow()
        db.session.commit()

        self.audit.log('ADMIN_ORCHESTRATION_FORCE_DESTROY', actor_id, 'LabInstance', instance.id)
        return instance
