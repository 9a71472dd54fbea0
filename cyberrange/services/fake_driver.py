#!/usr/bin/env python3
"""Deterministic in-memory driver for tests and demos. Never touches a runtime."""

from cyberrange.config import DRIVER_FAKE
from cyberrange.services.lab_driver import LabDriver, register_driver


@register_driver(DRIVER_FAKE)
class FakeDriver(LabDriver):

    def start(self, instance, template, port: int) -> dict:
        return {
            'driver': 'fake',
            'status': 'started',
            'container_name': f'lab_{instance.id}',
            'project_name': f"lab_{instance.id.replace('-', '')[:12]}",
            'compose_path': f'/tmp/fake/{instance.id}/docker-compose.yml',
            'workdir': f'/tmp/fake/{instance.id}',
            'network_name': f'lab_net_{instance.id}',
            'assigned_port': port,
            'template_id': template.id,
        }

    def stop(self, instance) -> dict:
        return {'driver': 'fake', 'status': 'stopped'}

    def restart(self, instance) -> dict:
        return {'driver': 'fake', 'status': 'restarted'}

    def destroy(self, instance) -> dict:
        return {'driver': 'fake', 'status': 'destroyed'}

    def upgrade(self, instance, target_template, strategy: str, port: int) -> dict:
        metadata = self.start(instance, target_template, port)
        metadata.update({
            'status': 'upgraded',
            'strategy': strategy,
            'target_template_id': target_template.id,
        })
        return metadata
