#!/usr/bin/env python3
"""
Tests for public URL resolution.

Run with: python -m pytest tests/test_public_access.py -v
"""

from types import SimpleNamespace

import pytest

from cyberrange.config import LabsConfig
from cyberrange.errors import ConfigurationError
from cyberrange.services.public_access import PublicAccessResolver, is_safe_public_host

INSTANCE = SimpleNamespace(id='0b0c4a9e-instance')


def _resolver(request_host=None, **overrides):
    fields = dict(port_start=21000, port_end=21009)
    fields.update(overrides)
    return PublicAccessResolver(LabsConfig(**fields), request_host_getter=lambda: request_host)


class TestBounds:

    def test_defaults_to_allocation_range(self):
        assert _resolver().allowed_port_bounds() == (21000, 21009)

    def test_configured_range_inverted(self):
        assert _resolver(allowed_port_range='22000 - 21500').allowed_port_bounds() == (21500, 22000)

    def test_garbage_range_ignored(self):
        assert _resolver(allowed_port_range='lots').allowed_port_bounds() == (21000, 21009)

    def test_out_of_range_port_is_fatal(self):
        with pytest.raises(ConfigurationError) as exc:
            _resolver(public_host='labs.example.org').resolve(INSTANCE, 30000)
        assert exc.value.status_code == 422


class TestDirectMode:

    def test_configured_public_host_wins(self):
        access = _resolver(request_host='other.example.org', public_host='labs.example.org') \
            .resolve(INSTANCE, 21003)
        assert access == {
            'access_url': 'http://labs.example.org:21003',
            'host_port': 21003,
            'public_host': 'labs.example.org',
            'mode': 'direct',
        }

    def test_request_host_used_without_port(self):
        access = _resolver(request_host='portal.example.org:8443').resolve(INSTANCE, 21000)
        assert access['access_url'] == 'http://portal.example.org:21000'

    def test_loopback_request_host_rejected_for_app_url(self):
        access = _resolver(request_host='127.0.0.1:8080', app_url='https://range.example.org/app') \
            .resolve(INSTANCE, 21000)
        assert access['public_host'] == 'range.example.org'

    def test_fallback_host(self):
        access = _resolver(request_host='localhost', app_url='http://localhost', fallback_host='10.0.0.5') \
            .resolve(INSTANCE, 21000)
        assert access['access_url'] == 'http://10.0.0.5:21000'

    def test_https_scheme(self):
        access = _resolver(public_host='labs.example.org', public_scheme='HTTPS').resolve(INSTANCE, 21000)
        assert access['access_url'].startswith('https://')

    def test_invalid_scheme_becomes_http(self):
        access = _resolver(public_host='labs.example.org', public_scheme='gopher').resolve(INSTANCE, 21000)
        assert access['access_url'].startswith('http://')

    def test_unknown_mode_falls_back_to_direct(self):
        access = _resolver(public_host='labs.example.org', public_mode='tunnel').resolve(INSTANCE, 21000)
        assert access['mode'] == 'direct'


class TestProxyMode:

    def test_proxy_url(self):
        access = _resolver(public_mode='proxy', public_base_url='https://labs.example.org/',
                           public_proxy_prefix='/lab/').resolve(INSTANCE, 21002)
        assert access['access_url'] == f'https://labs.example.org/lab/{INSTANCE.id}/'
        assert access['public_host'] == 'labs.example.org'
        assert access['host_port'] == 21002
        assert access['mode'] == 'proxy'

    def test_proxy_requires_base_url(self):
        with pytest.raises(ConfigurationError) as exc:
            _resolver(public_mode='proxy').resolve(INSTANCE, 21000)
        assert exc.value.status_code == 500
        assert 'CYBERRANGE_PUBLIC_BASE_URL' in exc.value.message


@pytest.mark.parametrize('host,safe', [
    ('labs.example.org', True),
    ('203.0.113.10', True),
    ('', False),
    ('localhost', False),
    ('127.0.0.1', False),
    ('0.0.0.0', False),
    ('::1', False),
])
def test_is_safe_public_host(host, safe):
    assert is_safe_public_host(host) is safe


def test_default_getter_reads_flask_request(app):
    from cyberrange.services.public_access import PublicAccessResolver

    resolver = PublicAccessResolver(LabsConfig(port_start=21000, port_end=21009))
    with app.test_request_context('/', base_url='http://portal.example.org'):
        assert resolver.resolve_public_host() == 'portal.example.org'
    assert resolver.resolve_public_host() == 'localhost'
