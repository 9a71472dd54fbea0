#!/usr/bin/env python3
"""
Placeholder for a cluster-scheduler backend.

Selecting this driver proves the orchestration layer is backend-agnostic;
every call fails until a real scheduler integration exists.
"""

from cyberrange.config import DRIVER_CLUSTER
from cyberrange.errors import DriverNotImplementedError
from cyberrange.services.lab_driver import LabDriver, register_driver


@register_driver(DRIVER_CLUSTER)
class ClusterDriver(LabDriver):

    def _not_implemented(self, operation: str):
        raise DriverNotImplementedError(
            f"Cluster driver is not implemented yet ({operation}).",
            details={'driver': self.name, 'operation': operation},
        )

    def start(self, instance, template, port: int) -> dict:
        self._not_implemented('start')

    def stop(self, instance) -> dict:
        self._not_implemented('stop')

    def restart(self, instance) -> dict:
        self._not_implemented('restart')

    def destroy(self, instance) -> dict:
        self._not_implemented('destroy')

    def upgrade(self, instance, target_template, strategy: str, port: int) -> dict:
        self._not_implemented('upgrade')
