#!/usr/bin/env python3
"""
Orchestration preflight checks.

Three independent checks, each reported as ``{ok, message, hints[]}``:
- workdir: the runtime root can be created and written
- runtime: the container runtime answers ``docker info``
- public_endpoint: the public URL settings are consistent

Failures carry remediation hints so operators can fix the host instead of
reading a raw driver error.
"""

import logging
import os
import secrets
import subprocess
from datetime import datetime
from typing import List

from cyberrange.config import (
    DRIVER_CLUSTER, DRIVER_FAKE, PUBLIC_MODE_DIRECT, PUBLIC_MODE_PROXY, LabsConfig,
)
from cyberrange.errors import PreflightError

logger = logging.getLogger(__name__)


def _unique(items: List[str]) -> List[str]:
    seen = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return seen


class PreflightService:

    def __init__(self, config: LabsConfig, public_access=None):
        self.config = config
        self.public_access = public_access

    def run(self) -> dict:
        checks = {
            'workdir': self.check_workdir(),
            'runtime': self.check_runtime(),
            'public_endpoint': self.check_public_endpoint(),
        }
        report = {
            'ok': all(check['ok'] for check in checks.values()),
            'checked_at': datetime.utcnow().isoformat() + 'Z',
            'checks': checks,
        }
        if not report['ok']:
            failed = [name for name, check in checks.items() if not check['ok']]
            logger.warning("Orchestration preflight failed: %s", ', '.join(failed))
        return report

    def assert_ready(self) -> dict:
        report = self.run()
        if not report['ok']:
            raise PreflightError(report)
        return report

    @staticmethod
    def hints(report: dict) -> List[str]:
        """Flatten the hints of every check into one de-duplicated list."""
        hints = []
        for check in (report.get('checks') or {}).values():
            if isinstance(check, dict):
                hints.extend(h for h in check.get('hints') or [] if isinstance(h, str))
        return _unique(hints)

    # ------------------------------------------------------------------

    def check_workdir(self) -> dict:
        root = self.config.runtime_root.rstrip('/') or '/'
        result = {
            'ok': True,
            'path': root,
            'message': 'Runtime root is writable.',
            'hints': [],
        }

        try:
            os.makedirs(root, mode=0o775, exist_ok=True)

            probe_dir = os.path.join(root, '.preflight-' + secrets.token_hex(4))
            try:
                os.makedirs(probe_dir, mode=0o775)
            except OSError as e:
                raise OSError(f"Unable to create probe directory: {probe_dir} ({e})") from e

            probe_file = os.path.join(probe_dir, 'probe.txt')
            try:
                with open(probe_file, 'w') as f:
                    f.write('ok')
            except OSError as e:
                raise OSError(f"Unable to write probe file: {probe_file} ({e})") from e
            finally:
                if os.path.exists(probe_file):
                    os.unlink(probe_file)
                os.rmdir(probe_dir)
        except OSError as e:
            result.update({
                'ok': False,
                'message': 'Runtime workdir root is not writable.',
                'error': str(e),
                'hints': [
                    f'Host mode (root/systemd): mkdir -p {root} && chown -R <service-user>:<service-group> {root} '
                    f'&& chmod -R 775 {root}',
                    f'Container mode: mount writable volume {root}:{root} to backend container.',
                    'If Docker host enables userns-remap, add userns_mode: host for backend container '
                    'to align UID/GID mapping.',
                    f'For rootless setups, ensure backend user can write {root} and uses matching '
                    'DOCKER_HOST socket path.',
                ],
            })

        return result

    def check_runtime(self) -> dict:
        docker_host = self.config.docker_host or 'unix:///var/run/docker.sock'
        driver = (self.config.driver or '').strip().lower()

        if driver == DRIVER_FAKE:
            return {
                'ok': True,
                'driver': driver,
                'message': 'Fake driver in use, container runtime not required.',
                'hints': [],
            }
        if driver == DRIVER_CLUSTER:
            return {
                'ok': False,
                'driver': driver,
                'message': 'Cluster driver is not implemented.',
                'hints': ['Set DOCKER_LAB_DRIVER=local_docker until the cluster backend is available.'],
            }

        env = dict(os.environ, DOCKER_HOST=docker_host)
        try:
            proc = subprocess.run(
                ['docker', 'info'],
                capture_output=True,
                text=True,
                timeout=self.config.preflight_timeout_seconds,
                env=env,
            )
            ok = proc.returncode == 0
            error_output = f"{proc.stderr} {proc.stdout}".strip()
        except subprocess.TimeoutExpired:
            ok = False
            error_output = f'docker info timed out after {self.config.preflight_timeout_seconds}s'
        except FileNotFoundError:
            ok = False
            error_output = 'docker: executable file not found in $PATH'
        except OSError as e:
            ok = False
            error_output = str(e)

        result = {
            'ok': ok,
            'driver': driver,
            'docker_host': docker_host,
            'message': 'Docker daemon reachable.' if ok else 'Docker daemon unreachable.',
            'hints': [],
        }
        if not ok:
            result['error'] = error_output
            result['hints'] = self._runtime_hints(error_output, docker_host)
        return result

    def _runtime_hints(self, error_output: str, docker_host: str) -> List[str]:
        normalized = error_output.lower()
        root = self.config.runtime_root.rstrip('/') or '/'

        specific = []
        if docker_host.startswith('unix:///run/user/'):
            specific.append('Detected rootless DOCKER_HOST. Ensure this same socket is mounted and accessible '
                            'in backend runtime.')
        if 'command not found' in normalized or 'executable file not found' in normalized:
            specific.append("Docker CLI missing in backend runtime image. Install docker client and ensure "
                            "it's in PATH.")
        if 'cannot connect to the docker daemon' in normalized:
            specific.append('Docker daemon is not running or not reachable from current namespace/socket.')
        if 'permission denied' in normalized and 'docker.sock' in normalized:
            specific.append('Docker socket permission denied. Verify socket ownership/group and backend '
                            'process privileges.')
        if 'timed out' in normalized:
            specific.append('Docker daemon did not answer in time. Check daemon load and socket reachability.')

        generic = [
            'Host mode (root/systemd): run backend service as root or add service user to docker group '
            '(usermod -aG docker <service-user>) and restart service.',
            f'Container mode: mount /var/run/docker.sock and {root} into backend container.',
            'If Docker daemon uses userns-remap, set backend container userns_mode: host.',
            'Rootless Docker: set DOCKER_HOST=unix:///run/user/<uid>/docker.sock and mount that socket path '
            'into backend container.',
        ]
        return _unique(specific + generic)

    def check_public_endpoint(self) -> dict:
        problems = []
        hints = []

        mode = (self.config.public_mode or '').strip().lower()
        if mode not in (PUBLIC_MODE_DIRECT, PUBLIC_MODE_PROXY):
            problems.append(f"Unknown public port mode '{self.config.public_mode}'.")
            hints.append('Set CYBERRANGE_PUBLIC_PORT_MODE to direct or proxy.')

        if mode == PUBLIC_MODE_PROXY:
            base = (self.config.public_base_url or '').strip()
            if not base:
                problems.append('Proxy mode requires a public base URL.')
                hints.append('Set CYBERRANGE_PUBLIC_BASE_URL, e.g. https://labs.example.org.')
            elif not base.lower().startswith(('http://', 'https://')):
                problems.append('Public base URL must start with http:// or https://.')
                hints.append('Use an absolute URL for CYBERRANGE_PUBLIC_BASE_URL.')

        scheme = (self.config.public_scheme or '').strip().lower()
        if scheme not in ('http', 'https'):
            problems.append(f"Unknown public scheme '{self.config.public_scheme}'.")
            hints.append('Set CYBERRANGE_PUBLIC_SCHEME to http or https.')

        if self.public_access is not None:
            allowed_start, allowed_end = self.public_access.allowed_port_bounds()
            if self.config.port_start < allowed_start or self.config.port_end > allowed_end:
                problems.append(
                    f'Allocation range {self.config.port_start}-{self.config.port_end} is outside the '
                    f'allowed public range {allowed_start}-{allowed_end}.'
                )
                hints.append('Align DOCKER_LAB_PORT_RANGE_START/END with CYBERRANGE_ALLOWED_PORT_RANGE.')

        return {
            'ok': not problems,
            'mode': mode,
            'message': 'Public endpoint configuration is valid.' if not problems else ' '.join(problems),
            'hints': hints,
        }
