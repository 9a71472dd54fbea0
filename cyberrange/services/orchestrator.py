#!/usr/bin/env python3
"""
Lab orchestrator.

Glue between the execution driver, public access resolution and the
instance row. It records driver output and connection details but never
decides lifecycle state; that belongs to LabInstanceService. Driver errors
propagate unchanged.
"""

import logging

from cyberrange.models import LabInstanceRuntime, db
from cyberrange.services.lab_driver import LabDriver
from cyberrange.services.public_access import PublicAccessResolver

logger = logging.getLogger(__name__)


class Orchestrator:

    def __init__(self, driver: LabDriver, public_access: PublicAccessResolver):
        self.driver = driver
        self.public_access = public_access

    def start_instance(self, instance, template, port: int):
        metadata = self.driver.start(instance, template, port)
        access = self.public_access.resolve(instance, port)

        instance.merge_runtime_metadata('start', metadata)
        instance.assigned_port = port
        instance.connection_url = access['access_url']
        self._sync_runtime(instance, metadata, access)
        db.session.commit()

        logger.info("Started lab instance %s at %s", instance.id, instance.connection_url)
        return instance

    def stop_instance(self, instance):
        metadata = self.driver.stop(instance)

        instance.merge_runtime_metadata('stop', metadata)
        instance.clear_connection()
        if instance.runtime is not None:
            runtime = instance.runtime
            runtime.host_port = None
            runtime.public_host = None
            runtime.access_url = None
            runtime.runtime_meta = dict(runtime.runtime_meta or {}, stop=metadata)
        db.session.commit()

        logger.info("Stopped lab instance %s", instance.id)
        return instance

    def restart_instance(self, instance):
        metadata = self.driver.restart(instance)

        instance.merge_runtime_metadata('restart', metadata)
        db.session.commit()

        logger.info("Restarted lab instance %s", instance.id)
        return instance

    def upgrade_instance(self, instance, target_template, strategy: str, port: int):
        metadata = self.driver.upgrade(instance, target_template, strategy, port)
        access = self.public_access.resolve(instance, port)

        instance.merge_runtime_metadata('upgrade', metadata)
        instance.assigned_port = port
        instance.connection_url = access['access_url']
        self._sync_runtime(instance, metadata, access)
        db.session.commit()

        logger.info("Upgraded lab instance %s to template %s (%s)", instance.id, target_template.id, strategy)
        return instance

    def destroy_instance(self, instance):
        """Tear down the runtime and forget the descriptor in one transaction."""
        try:
            metadata = self.driver.destroy(instance)
            instance.merge_runtime_metadata('destroy', metadata)
            instance.clear_connection()
            if instance.runtime is not None:
                db.session.delete(instance.runtime)
                instance.runtime = None
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Destroyed lab instance %s", instance.id)
        return instance

    @staticmethod
    def _sync_runtime(instance, metadata: dict, access: dict) -> None:
        runtime = instance.runtime
        if runtime is None:
            runtime = LabInstanceRuntime(lab_instance_id=instance.id)
            instance.runtime = runtime

        runtime.workdir = metadata.get('workdir')
        runtime.compose_path = metadata.get('compose_path')
        runtime.project_name = metadata.get('project_name')
        runtime.network_name = metadata.get('network_name')
        runtime.container_name = metadata.get('container_name')
        runtime.host_port = access.get('host_port')
        runtime.public_host = access.get('public_host')
        runtime.access_url = access.get('access_url')
        runtime.runtime_meta = metadata
