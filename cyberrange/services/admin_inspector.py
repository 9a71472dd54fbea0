#!/usr/bin/env python3
"""
Admin inspection of running lab instances.

Every docker probe here is best-effort: a missing container, a failing
CLI or the fake driver yields empty data rather than an error, so the
admin dashboard always renders.
"""

import json
import logging
import os
import re
import subprocess
from datetime import datetime
from typing import Optional

from cyberrange.config import DRIVER_FAKE, LabsConfig
from cyberrange.models import LabInstance, LabInstanceState
from cyberrange.services.local_docker_driver import extract_port_bindings, parse_inspect_output

logger = logging.getLogger(__name__)

NOT_AVAILABLE = 'not implemented'
REDACTED = '********'

_SENSITIVE_KEY_RE = re.compile(r'(PASS|SECRET|TOKEN|KEY|FLAG)', re.IGNORECASE)
_MEM_RE = re.compile(r'^([0-9.]+)\s*([KMG]i?B)$', re.IGNORECASE)

_DOCKER_STATUS = {
    'running': 'RUNNING',
    'created': 'STARTING',
    'restarting': 'STARTING',
    'exited': 'STOPPED',
    'dead': 'STOPPED',
}

_DB_STATUS = {
    LabInstanceState.ACTIVE: 'RUNNING',
    LabInstanceState.INACTIVE: 'STOPPED',
    LabInstanceState.PAUSED: 'STOPPED',
    LabInstanceState.COMPLETED: 'STOPPED',
    LabInstanceState.ABANDONED: 'ERROR',
}


def resolve_status(db_state: str, docker_state: Optional[str]) -> str:
    """Live container state wins over the database state."""
    if docker_state is not None:
        return _DOCKER_STATUS.get(docker_state.lower(), 'ERROR')
    return _DB_STATUS.get((db_state or '').upper(), 'ERROR')


def parse_cpu_percent(value: str) -> Optional[float]:
    value = (value or '').strip().replace('%', '')
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_mem_usage(value: str) -> Optional[float]:
    """MiB used from a ``docker stats`` MemUsage cell like ``12.5MiB / 1GiB``."""
    first = (value or '').split('/')[0].strip()
    match = _MEM_RE.match(first)
    if not match:
        return None

    amount = float(match.group(1))
    unit = match.group(2).upper()
    if unit in ('KIB', 'KB'):
        return round(amount / 1024, 2)
    if unit in ('MIB', 'MB'):
        return round(amount, 2)
    if unit in ('GIB', 'GB'):
        return round(amount * 1024, 2)
    return None


def redact_env(env_rows) -> dict:
    result = {}
    for row in env_rows or []:
        if not isinstance(row, str):
            continue
        key, _, value = row.partition('=')
        result[key] = REDACTED if _SENSITIVE_KEY_RE.search(key) else value
    return result


class AdminInspector:

    def __init__(self, config: LabsConfig):
        self.config = config

    @property
    def _probing_enabled(self) -> bool:
        return (self.config.driver or '').lower() != DRIVER_FAKE

    def _docker(self, *args: str) -> Optional[subprocess.CompletedProcess]:
        try:
            result = subprocess.run(
                ['docker', *args],
                capture_output=True,
                text=True,
                timeout=self.config.preflight_timeout_seconds,
                env=dict(os.environ, DOCKER_HOST=self.config.docker_host or 'unix:///var/run/docker.sock'),
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.warning("docker %s failed: %s", args[0], e)
            return None
        if result.returncode != 0:
            logger.debug("docker %s exited %s: %s", args[0], result.returncode, result.stderr.strip())
            return None
        return result

    @staticmethod
    def container_ref(instance: LabInstance) -> str:
        for key in ('container_id', 'container_name'):
            value = instance.runtime_value(key)
            if value:
                return str(value)
        return ''

    def docker_inspect(self, ref: str) -> dict:
        if not ref or not self._probing_enabled:
            return {}
        result = self._docker('inspect', ref)
        if result is None:
            return {}
        return parse_inspect_output(result.stdout) or {}

    def docker_stats(self, ref: str) -> dict:
        empty = {'cpu_percent': None, 'mem_mb': None}
        if not ref or not self._probing_enabled:
            return empty
        result = self._docker('stats', '--no-stream', '--format', '{{json .}}', ref)
        if result is None:
            return empty
        try:
            decoded = json.loads(result.stdout.strip())
        except ValueError:
            return empty
        if not isinstance(decoded, dict):
            return empty
        return {
            'cpu_percent': parse_cpu_percent(str(decoded.get('CPUPerc', ''))),
            'mem_mb': parse_mem_usage(str(decoded.get('MemUsage', ''))),
        }

    def docker_logs(self, ref: str) -> str:
        if not ref or not self._probing_enabled:
            return NOT_AVAILABLE
        result = self._docker('logs', '--tail', '200', ref)
        if result is None:
            return NOT_AVAILABLE
        output = f"{result.stdout}\n{result.stderr}".strip()
        return output or NOT_AVAILABLE

    def inspect(self, instance: LabInstance) -> dict:
        ref = self.container_ref(instance)
        inspect = self.docker_inspect(ref)
        stats = self.docker_stats(ref)
        logs = self.docker_logs(ref)

        docker_state = (inspect.get('State') or {}).get('Status')
        settings = inspect.get('NetworkSettings') or {}
        user = instance.user
        template = instance.template

        uptime = 0
        if instance.started_at:
            uptime = max(0, int((datetime.utcnow() - instance.started_at).total_seconds()))

        return {
            'instance_id': instance.id,
            'user': {
                'id': user.id if user else None,
                'username': user.username if user else None,
            },
            'lab': {
                'id': template.id if template else None,
                'title': template.title if template else None,
                'slug': template.slug if template else None,
                'version': template.version if template else None,
                'image': template.docker_image if template else None,
            },
            'container_id': ref or None,
            'state': instance.state,
            'status': resolve_status(instance.state, docker_state),
            'started_at': instance.started_at.isoformat() if instance.started_at else None,
            'uptime_seconds': uptime,
            'resources': stats,
            'network': {
                'container_ip': settings.get('IPAddress'),
                'gateway': settings.get('Gateway'),
                'exposed_ports': extract_port_bindings(inspect),
            },
            'assigned_port': instance.assigned_port,
            'connection_url': instance.connection_url,
            'logs_tail': logs,
            'env': redact_env((inspect.get('Config') or {}).get('Env')),
            'last_error': instance.last_error,
        }

    def list_active(self, page: int = 1, per_page: int = 20) -> dict:
        pagination = LabInstance.query.filter_by(state=LabInstanceState.ACTIVE) \
            .order_by(LabInstance.last_activity_at.desc()) \
            .paginate(page=page, per_page=per_page, error_out=False)
        return {
            'items': [self.inspect(instance) for instance in pagination.items],
            'page': pagination.page,
            'per_page': pagination.per_page,
            'total': pagination.total,
        }
