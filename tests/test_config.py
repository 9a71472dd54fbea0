#!/usr/bin/env python3
"""
Tests for LabsConfig loading and driver selection.

Run with: python -m pytest tests/test_config.py -v
"""

import pytest

from cyberrange.config import LabsConfig


class TestLabsConfig:

    def test_defaults(self):
        config = LabsConfig()
        assert config.driver == 'local_docker'
        assert (config.port_start, config.port_end) == (20000, 40000)
        assert config.max_ttl_minutes == 120
        assert config.public_mode == 'direct'
        assert config.probe_host_ports is True
        assert config.trust_user_header is False

    def test_from_mapping_reads_env_style_keys(self):
        config = LabsConfig.from_mapping({
            'DOCKER_LAB_DRIVER': 'fake',
            'DOCKER_LAB_PORT_RANGE_START': '25000',
            'DOCKER_LAB_PORT_RANGE_END': '25100',
            'DOCKER_LAB_PROBE_PORTS': 'false',
            'CYBERRANGE_PUBLIC_HOST': ' labs.example.org ',
            'CYBERRANGE_TRUST_USER_HEADER': 'yes',
        })
        assert config.driver == 'fake'
        assert config.port_range == range(25000, 25101)
        assert config.probe_host_ports is False
        assert config.public_host == 'labs.example.org'
        assert config.trust_user_header is True

    def test_missing_keys_keep_base_values(self):
        base = LabsConfig(driver='fake', max_ttl_minutes=30)
        config = LabsConfig.from_mapping({'DOCKER_LAB_HOST': 'fallback.example'}, base=base)
        assert config.driver == 'fake'
        assert config.max_ttl_minutes == 30
        assert config.fallback_host == 'fallback.example'

    def test_bad_integer_falls_back_to_current(self):
        config = LabsConfig.from_mapping({'DOCKER_LAB_MAX_TTL_MINUTES': 'soon'})
        assert config.max_ttl_minutes == 120

    def test_inverted_port_range_is_swapped(self):
        config = LabsConfig(port_start=30000, port_end=29000)
        assert (config.port_start, config.port_end) == (29000, 30000)

    def test_config_is_immutable(self):
        config = LabsConfig()
        with pytest.raises(Exception):
            config.driver = 'fake'


class TestDriverSelection:

    def test_known_drivers_registered(self):
        from cyberrange.services.lab_driver import available_drivers, build_driver

        build_driver(LabsConfig(driver='fake'))
        assert {'fake', 'local_docker', 'cluster'} <= set(available_drivers())

    def test_unknown_driver_is_configuration_error(self):
        from cyberrange.errors import ConfigurationError
        from cyberrange.services.lab_driver import build_driver

        with pytest.raises(ConfigurationError) as exc:
            build_driver(LabsConfig(driver='podman'))
        assert 'podman' in exc.value.message

    def test_cluster_driver_not_implemented(self):
        from types import SimpleNamespace

        from cyberrange.errors import DriverNotImplementedError
        from cyberrange.services.lab_driver import build_driver

        driver = build_driver(LabsConfig(driver='cluster'))
        with pytest.raises(DriverNotImplementedError) as exc:
            driver.start(SimpleNamespace(id='i-1'), SimpleNamespace(id='t-1'), 21000)
        assert exc.value.status_code == 501


def test_testing_app_disables_port_probe(app):
    from cyberrange.services import get_services

    assert get_services().config.probe_host_ports is False
    assert get_services().config.driver == 'fake'
