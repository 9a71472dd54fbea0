#!/usr/bin/env python3
"""
Tests for orchestration preflight checks.

Run with: python -m pytest tests/test_preflight.py -v
"""

import subprocess
from unittest.mock import patch

import pytest

from cyberrange.config import LabsConfig
from cyberrange.errors import PreflightError
from cyberrange.services.preflight_service import PreflightService
from cyberrange.services.public_access import PublicAccessResolver

RUN = 'cyberrange.services.preflight_service.subprocess.run'


def _service(**fields):
    values = dict(port_start=21000, port_end=21009)
    values.update(fields)
    config = LabsConfig(**values)
    return PreflightService(config, PublicAccessResolver(config, request_host_getter=lambda: None))


def _completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=['docker', 'info'], returncode=returncode, stdout=stdout, stderr=stderr)


class TestWorkdir:

    def test_writable_root(self, tmp_path):
        root = tmp_path / 'instances'
        check = _service(runtime_root=str(root), driver='fake').check_workdir()

        assert check['ok'] is True
        assert root.is_dir()
        assert list(root.iterdir()) == []

    def test_unwritable_root_has_hints(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('')
        root = str(blocker / 'instances')

        check = _service(runtime_root=root, driver='fake').check_workdir()

        assert check['ok'] is False
        assert check['error']
        assert any('chown' in hint and root in hint for hint in check['hints'])
        assert any('userns' in hint for hint in check['hints'])


class TestRuntime:

    def test_fake_driver_skips_probe(self, tmp_path):
        with patch(RUN) as run:
            check = _service(driver='fake').check_runtime()
        assert check['ok'] is True
        run.assert_not_called()

    def test_cluster_driver_not_ready(self):
        check = _service(driver='cluster').check_runtime()
        assert check['ok'] is False
        assert 'not implemented' in check['message']

    def test_docker_info_success(self):
        with patch(RUN, return_value=_completed()) as run:
            check = _service(driver='local_docker', preflight_timeout_seconds=3).check_runtime()
        assert check['ok'] is True
        assert run.call_args.args[0] == ['docker', 'info']
        assert run.call_args.kwargs['timeout'] == 3

    def test_socket_permission_hint_first(self):
        stderr = ('permission denied while trying to connect to the Docker daemon socket at '
                  'unix:///var/run/docker.sock')
        with patch(RUN, return_value=_completed(1, stderr=stderr)):
            check = _service(driver='local_docker').check_runtime()
        assert check['ok'] is False
        assert check['hints'][0].startswith('Docker socket permission denied')

    def test_missing_cli(self):
        with patch(RUN, side_effect=FileNotFoundError('docker')):
            check = _service(driver='local_docker').check_runtime()
        assert check['ok'] is False
        assert any(hint.startswith('Docker CLI missing') for hint in check['hints'])

    def test_timeout(self):
        with patch(RUN, side_effect=subprocess.TimeoutExpired(['docker', 'info'], 8)):
            check = _service(driver='local_docker').check_runtime()
        assert check['ok'] is False
        assert 'timed out' in check['error']

    def test_rootless_docker_host(self):
        with patch(RUN, return_value=_completed(1, stderr='Cannot connect to the Docker daemon')):
            check = _service(driver='local_docker', docker_host='unix:///run/user/1000/docker.sock').check_runtime()
        assert check['hints'][0].startswith('Detected rootless DOCKER_HOST')
        assert any('not running' in hint for hint in check['hints'])


class TestPublicEndpoint:

    def test_direct_mode_ok(self):
        assert _service(public_mode='direct').check_public_endpoint()['ok'] is True

    def test_proxy_without_base_url(self):
        check = _service(public_mode='proxy').check_public_endpoint()
        assert check['ok'] is False
        assert any('CYBERRANGE_PUBLIC_BASE_URL' in hint for hint in check['hints'])

    def test_proxy_with_relative_base_url(self):
        check = _service(public_mode='proxy', public_base_url='labs.example.org').check_public_endpoint()
        assert check['ok'] is False

    def test_unknown_mode(self):
        assert _service(public_mode='tunnel').check_public_endpoint()['ok'] is False

    def test_allocation_range_outside_allowed_range(self):
        check = _service(allowed_port_range='21000-21004').check_public_endpoint()
        assert check['ok'] is False
        assert '21000-21004' in check['message']


class TestReport:

    def test_run_all_green(self, tmp_path):
        report = _service(runtime_root=str(tmp_path), driver='fake').run()
        assert report['ok'] is True
        assert set(report['checks']) == {'workdir', 'runtime', 'public_endpoint'}
        assert report['checked_at'].endswith('Z')

    def test_assert_ready_carries_every_check(self, tmp_path):
        blocker = tmp_path / 'file'
        blocker.write_text('')
        service = _service(runtime_root=str(blocker / 'instances'), driver='local_docker', public_mode='proxy')

        with patch(RUN, return_value=_completed(1, stderr='Cannot connect to the Docker daemon at unix:///var/run/docker.sock')):
            with pytest.raises(PreflightError) as exc:
                service.assert_ready()

        report = exc.value.report
        assert report['ok'] is False
        assert {name: check['ok'] for name, check in report['checks'].items()} == {
            'workdir': False,
            'runtime': False,
            'public_endpoint': False,
        }
        assert exc.value.status_code == 503
        assert exc.value.to_dict()['details']['preflight'] == report

    def test_hints_are_flattened_and_unique(self):
        report = {'checks': {
            'a': {'hints': ['one', 'two']},
            'b': {'hints': ['two', 'three']},
            'c': {'hints': []},
        }}
        assert PreflightService.hints(report) == ['one', 'two', 'three']
