#!/usr/bin/env python3
"""
Execution driver interface.

A driver is the only component that talks to the container runtime. Each
call returns a metadata dict which the orchestrator records on the instance
under the operation's name. The variant is chosen once, from configuration,
when the services are built.
"""

import logging
from typing import Dict, Type

from cyberrange.config import LabsConfig
from cyberrange.errors import ConfigurationError

logger = logging.getLogger(__name__)


class LabDriver:
    """Base class for execution backends."""
    name = 'base'

    def __init__(self, config: LabsConfig):
        self.config = config

    def start(self, instance, template, port: int) -> dict:
        raise NotImplementedError

    def stop(self, instance) -> dict:
        raise NotImplementedError

    def restart(self, instance) -> dict:
        raise NotImplementedError

    def destroy(self, instance) -> dict:
        raise NotImplementedError

    def upgrade(self, instance, target_template, strategy: str, port: int) -> dict:
        raise NotImplementedError

    def __repr__(self):
        return f'<{type(self).__name__} driver={self.name}>'


_DRIVERS: Dict[str, Type[LabDriver]] = {}


def register_driver(name: str):
    """Class decorator adding a driver to the registry under ``name``."""
    def decorator(cls):
        cls.name = name
        _DRIVERS[name] = cls
        return cls
    return decorator


def available_drivers():
    return sorted(_DRIVERS)


def build_driver(config: LabsConfig) -> LabDriver:
    """Instantiate the driver named by ``config.driver``."""
    # Imported for their registration side effect
    from cyberrange.services import cluster_driver, fake_driver, local_docker_driver  # noqa: F401

    driver_cls = _DRIVERS.get((config.driver or '').strip().lower())
    if driver_cls is None:
        raise ConfigurationError(
            f"Unknown lab driver '{config.driver}'. Expected one of: {', '.join(available_drivers())}.",
            details={'driver': config.driver},
        )
    logger.info("Using lab execution driver: %s", driver_cls.name)
    return driver_cls(config)
