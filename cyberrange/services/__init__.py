# Services package - wires the orchestration components together
#
# build_services() is called once per app by create_app(); routes and
# scripts reach the result through get_services().

from dataclasses import dataclass

from flask import current_app

from cyberrange.config import LabsConfig
from cyberrange.services.admin_inspector import AdminInspector
from cyberrange.services.audit_service import AuditLogService
from cyberrange.services.lab_driver import LabDriver, build_driver
from cyberrange.services.lab_instance_service import LabInstanceService
from cyberrange.services.lab_template_service import LabTemplateService
from cyberrange.services.orchestrator import Orchestrator
from cyberrange.services.port_allocator import PortAllocator
from cyberrange.services.preflight_service import PreflightService
from cyberrange.services.public_access import PublicAccessResolver


@dataclass
class LabServices:
    config: LabsConfig
    driver: LabDriver
    ports: PortAllocator
    public_access: PublicAccessResolver
    orchestrator: Orchestrator
    preflight: PreflightService
    audit: AuditLogService
    templates: LabTemplateService
    instances: LabInstanceService
    inspector: AdminInspector


def build_services(config: LabsConfig, driver: LabDriver = None, request_host_getter=None) -> LabServices:
    """Construct every service from one immutable config."""
    driver = driver or build_driver(config)
    ports = PortAllocator(config)
    public_access = PublicAccessResolver(config, request_host_getter)
    orchestrator = Orchestrator(driver, public_access)
    preflight = PreflightService(config, public_access)
    audit = AuditLogService()
    templates = LabTemplateService(audit)
    instances = LabInstanceService(config, templates, orchestrator, ports, preflight, audit)

    return LabServices(
        config=config,
        driver=driver,
        ports=ports,
        public_access=public_access,
        orchestrator=orchestrator,
        preflight=preflight,
        audit=audit,
        templates=templates,
        instances=instances,
        inspector=AdminInspector(config),
    )


def get_services() -> LabServices:
    """Services bound to the current Flask app."""
    return current_app.extensions['cyberrange']
