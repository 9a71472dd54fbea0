#!/usr/bin/env python3
"""
Local Docker Compose driver.

Renders a compose project per instance under the runtime root and shells
out to ``docker compose``. Any non-zero exit is fatal for the call; nothing
is retried here. The one exception is tearing down a project that may not
exist (destroy, and the cleanup before a fresh start): its failures are
logged and discarded.
"""

import json
import logging
import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from cyberrange.config import DRIVER_LOCAL_DOCKER
from cyberrange.errors import DriverError
from cyberrange.services.lab_driver import LabDriver, register_driver

logger = logging.getLogger(__name__)

PORT_PLACEHOLDER = '${PORT}'
MAX_COMPOSE_LENGTH = 65535
APP_SERVICE = 'app'
PUBLIC_BIND_ADDRESS = '0.0.0.0'
LOOPBACK_ADDRESSES = ('127.0.0.1', 'localhost', '::1', '[::1]')

INT_TAG = "tag:yaml.org,2002:int"

# Directives that would let a lab escape its sandbox
FORBIDDEN_COMPOSE_PATTERNS = [
    re.compile(r'docker\.sock', re.IGNORECASE),
    re.compile(r'privileged\s*:\s*true', re.IGNORECASE),
    re.compile(r'network_mode\s*:\s*["\']?host["\']?', re.IGNORECASE),
    re.compile(r'pid\s*:\s*["\']?host["\']?', re.IGNORECASE),
    re.compile(r'ipc\s*:\s*["\']?host["\']?', re.IGNORECASE),
    re.compile(r'cap_add\s*:', re.IGNORECASE),
    re.compile(r'devices\s*:', re.IGNORECASE),
    re.compile(r'security_opt\s*:', re.IGNORECASE),
]


class ComposeLoader(yaml.SafeLoader):
    """SafeLoader with YAML 1.2 integers, as docker compose reads them.

    YAML 1.1 reads an unquoted ``20000:22`` port entry as a base-60 integer.
    """


ComposeLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != INT_TAG]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}
ComposeLoader.add_implicit_resolver(
    INT_TAG,
    re.compile(r"^(?:[-+]?(?:0|[1-9][0-9]*)|0x[0-9a-fA-F]+)$"),
    list("-+0123456789"),
)


def is_compose_safe(compose: str) -> bool:
    """Reject compose content carrying host-escape directives."""
    return not any(pattern.search(compose) for pattern in FORBIDDEN_COMPOSE_PATTERNS)


def project_name_for(instance) -> str:
    return 'lab_' + instance.id.replace('-', '')[:12]


def network_name_for(instance) -> str:
    return f'lab_{instance.id}'


def _as_mapping(value, separator='=') -> Dict[str, str]:
    """Normalize compose list-or-dict sections (labels, environment) to a dict."""
    if isinstance(value, dict):
        return {str(k): v for k, v in value.items()}
    result = {}
    for item in value or []:
        key, _, val = str(item).partition(separator)
        result[key] = val
    return result


def bind_public_port(entry):
    """Rewrite one ``ports`` entry so its host side listens on all interfaces."""
    if isinstance(entry, dict):
        if entry.get('published') is not None and \
                (not entry.get('host_ip') or entry.get('host_ip') in LOOPBACK_ADDRESSES):
            entry = dict(entry)
            entry['host_ip'] = PUBLIC_BIND_ADDRESS
        return entry

    if not isinstance(entry, str):
        return entry

    mapping, slash, protocol = entry.partition('/')
    # IPv6 host addresses are bracketed, e.g. [::1]:8080:80
    if mapping.startswith('['):
        address, _, rest = mapping[1:].partition(']:')
        parts = ['[' + address + ']'] + rest.split(':')
    else:
        parts = mapping.split(':')

    if len(parts) == 2:
        parts = [PUBLIC_BIND_ADDRESS] + parts
    elif len(parts) == 3 and parts[0] in LOOPBACK_ADDRESSES:
        parts[0] = PUBLIC_BIND_ADDRESS
    else:
        return entry
    return ':'.join(parts) + (slash + protocol if slash else '')


@register_driver(DRIVER_LOCAL_DOCKER)
class LocalDockerDriver(LabDriver):
    """Runs each lab as a ``docker compose`` project on this host."""

    # -- paths ---------------------------------------------------------------

    def workdir_for(self, instance) -> Path:
        return Path(self.config.runtime_root.rstrip('/') or '/') / instance.id

    def _compose_target(self, instance):
        compose_path = instance.runtime_value('compose_path')
        project_name = instance.runtime_value('project_name') or project_name_for(instance)
        return compose_path, project_name

    # -- process helpers -------------------------------------------------------

    def _env(self) -> dict:
        env = dict(os.environ)
        if self.config.docker_host:
            env['DOCKER_HOST'] = self.config.docker_host
        return env

    def _run(self, args: List[str], operation: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a docker CLI command; raise DriverError on failure when ``check``."""
        logger.debug("Running: %s", ' '.join(args))
        try:
            result = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.config.compose_timeout_seconds,
                env=self._env(),
            )
        except subprocess.TimeoutExpired as e:
            if not check:
                raise
            raise DriverError(
                f"docker {operation} timed out after {self.config.compose_timeout_seconds}s",
                details={'operation': operation, 'command': args},
            ) from e
        except OSError as e:
            if not check:
                raise
            raise DriverError(
                f"docker {operation} could not run: {e}",
                details={'operation': operation, 'command': args},
            ) from e

        if check and result.returncode != 0:
            logger.error("docker %s failed (exit %s): %s", operation, result.returncode, result.stderr.strip())
            raise DriverError(
                f"docker {operation} failed: {result.stderr.strip() or result.stdout.strip()}",
                details={'operation': operation, 'exit_code': result.returncode, 'command': args},
            )
        return result

    def _compose(self, project_name: str, compose_path: str, *args: str) -> List[str]:
        return ['docker', 'compose', '--project-name', project_name, '-f', str(compose_path), *args]

    def _down_quietly(self, project_name: str, compose_path: str) -> None:
        """Tear down a project that may not exist. Failures are logged and dropped."""
        try:
            result = self._run(
                self._compose(project_name, compose_path, 'down', '--volumes', '--remove-orphans'),
                'destroy', check=False,
            )
            if result.returncode != 0:
                logger.warning("Best-effort teardown of %s failed: %s", project_name, result.stderr.strip())
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning("Best-effort teardown of %s failed: %s", project_name, e)

    # -- driver operations -----------------------------------------------------

    def start(self, instance, template, port: int) -> dict:
        workdir = self.workdir_for(instance)
        compose_path = workdir / 'docker-compose.yml'
        project_name = project_name_for(instance)

        try:
            workdir.mkdir(mode=0o775, parents=True, exist_ok=True)
        except OSError as e:
            raise DriverError(f"Failed to create workdir: {workdir} ({e})",
                              details={'operation': 'start', 'workdir': str(workdir)}) from e

        if compose_path.exists():
            # Leftover from a previous run; it must not hold the port
            self._down_quietly(project_name, str(compose_path))

        compose_path.write_text(self.render_compose(instance, template, port))
        logger.info("Starting lab instance %s (project %s) on port %s", instance.id, project_name, port)

        self._run(self._compose(project_name, compose_path, 'up', '-d', '--remove-orphans'), 'start')

        container_id = None
        ps = self._run(self._compose(project_name, compose_path, 'ps', '-q', APP_SERVICE), 'start', check=False)
        if ps.returncode == 0:
            container_id = ps.stdout.strip() or None

        network = self.inspect_network(container_id) if container_id else \
            {'ip_address': None, 'gateway': None, 'ports': []}

        return {
            'driver': self.name,
            'status': 'started',
            'container_name': f'lab_{instance.id}',
            'container_id': container_id,
            'compose_path': str(compose_path),
            'workdir': str(workdir),
            'project_name': project_name,
            'network_name': network_name_for(instance),
            'assigned_port': port,
            'ip_address': network['ip_address'],
            'gateway': network['gateway'],
            'ports': network['ports'],
        }

    def stop(self, instance) -> dict:
        compose_path, project_name = self._compose_target(instance)
        if compose_path:
            self._run(self._compose(project_name, compose_path, 'down', '--volumes', '--remove-orphans'), 'stop')
        else:
            logger.info("Lab instance %s has no compose project, nothing to stop", instance.id)
        return {'driver': self.name, 'status': 'stopped'}

    def restart(self, instance) -> dict:
        compose_path, project_name = self._compose_target(instance)
        if compose_path:
            self._run(self._compose(project_name, compose_path, 'restart'), 'restart')
        return {'driver': self.name, 'status': 'restarted'}

    def destroy(self, instance) -> dict:
        compose_path, project_name = self._compose_target(instance)
        workdir = instance.runtime_value('workdir') or str(self.workdir_for(instance))

        if compose_path:
            self._down_quietly(project_name, compose_path)

        if workdir and os.path.isdir(workdir):
            shutil.rmtree(workdir, ignore_errors=True)

        return {'driver': self.name, 'status': 'destroyed'}

    def upgrade(self, instance, target_template, strategy: str, port: int) -> dict:
        self.destroy(instance)
        metadata = self.start(instance, target_template, port)
        metadata.update({
            'status': 'upgraded',
            'strategy': strategy,
            'target_template_id': target_template.id,
        })
        return metadata

    # -- compose rendering -------------------------------------------------------

    def render_compose(self, instance, template, port: int) -> str:
        """Build the compose file for ``instance`` with ``port`` published publicly."""
        raw = (template.configuration_content or '').strip()
        document = None

        if raw and len(raw) <= MAX_COMPOSE_LENGTH and is_compose_safe(raw):
            try:
                document = yaml.load(raw.replace(PORT_PLACEHOLDER, str(port)), Loader=ComposeLoader)
            except yaml.YAMLError as e:
                logger.warning("Template %s compose is not valid YAML, using fallback: %s", template.id, e)
                document = None

        if not self._has_app_service(document):
            if raw:
                logger.warning("Template %s compose rejected, generating fallback compose", template.id)
            document = self._fallback_compose(template, port)

        self._apply_runtime_guards(document, instance, template)
        for service in document['services'].values():
            if isinstance(service, dict) and service.get('ports'):
                service['ports'] = [bind_public_port(entry) for entry in service['ports']]

        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)

    @staticmethod
    def _has_app_service(document) -> bool:
        return isinstance(document, dict) and \
            isinstance(document.get('services'), dict) and \
            APP_SERVICE in document['services'] and \
            isinstance(document['services'][APP_SERVICE] or {}, dict)

    def _limits(self, template) -> Dict[str, str]:
        limits = template.resource_limits or {}
        return {
            'memory': str(limits.get('memory') or self.config.default_memory_limit),
            'cpus': str(limits.get('cpus') or self.config.default_cpu_limit),
        }

    def _fallback_compose(self, template, port: int) -> dict:
        image = template.docker_image or 'nginx:alpine'
        return {
            'services': {
                APP_SERVICE: {
                    'image': image,
                    'ports': [f'{port}:{template.container_port}'],
                },
            },
        }

    def _apply_runtime_guards(self, document: dict, instance, template) -> None:
        network_name = network_name_for(instance)
        service = document['services'][APP_SERVICE] or {}
        document['services'][APP_SERVICE] = service

        labels = _as_mapping(service.get('labels'))
        labels.update({
            'lab_instance_id': str(instance.id),
            'user_id': str(instance.user_id),
            'lab_template_id': str(template.id),
        })
        service['labels'] = labels

        environment = _as_mapping(service.get('environment'))
        for key, value in (template.env_vars or {}).items():
            if isinstance(value, (str, int, float, bool)):
                environment[str(key)] = str(value)
        environment.update({
            'LAB_INSTANCE_ID': str(instance.id),
            'LAB_TEMPLATE_ID': str(template.id),
            'LAB_USER_ID': str(instance.user_id),
        })
        service['environment'] = environment

        service['read_only'] = True
        service['tmpfs'] = ['/tmp']
        service['security_opt'] = ['no-new-privileges:true']
        service['cap_drop'] = ['ALL']

        networks = service.get('networks')
        if isinstance(networks, dict):
            networks.setdefault(network_name, None)
        else:
            networks = list(networks or [])
            if network_name not in networks:
                networks.append(network_name)
        service['networks'] = networks

        deploy = service.setdefault('deploy', {}) or {}
        service['deploy'] = deploy
        resources = deploy.setdefault('resources', {}) or {}
        deploy['resources'] = resources
        resources['limits'] = self._limits(template)

        top_networks = document.get('networks') or {}
        top_networks.setdefault(network_name, {'driver': 'bridge'})
        document['networks'] = top_networks

    # -- inspection --------------------------------------------------------------

    def inspect_network(self, container_id: str) -> dict:
        empty = {'ip_address': None, 'gateway': None, 'ports': []}
        result = self._run(['docker', 'inspect', container_id], 'inspect', check=False)
        if result.returncode != 0:
            return empty

        inspect = parse_inspect_output(result.stdout)
        if not inspect:
            return empty

        settings = inspect.get('NetworkSettings') or {}
        return {
            'ip_address': settings.get('IPAddress'),
            'gateway': settings.get('Gateway'),
            'ports': extract_port_bindings(inspect) or [],
        }


def parse_inspect_output(output: str) -> Optional[dict]:
    """Return the first object of ``docker inspect`` JSON output, or None."""
    try:
        decoded = json.loads(output)
    except (TypeError, ValueError):
        return None
    if not isinstance(decoded, list) or not decoded or not isinstance(decoded[0], dict):
        return None
    return decoded[0]


def extract_port_bindings(inspect: dict) -> Optional[List[dict]]:
    """Flatten NetworkSettings.Ports into [{container_port, host_port}]."""
    ports = (inspect.get('NetworkSettings') or {}).get('Ports')
    if not isinstance(ports, dict):
        return None

    result = []
    for container_port, bindings in ports.items():
        if not isinstance(bindings, list):
            result.append({'container_port': container_port, 'host_port': None})
            continue
        for binding in bindings:
            result.append({
                'container_port': container_port,
                'host_port': (binding or {}).get('HostPort'),
            })
    return result
