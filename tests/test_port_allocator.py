#!/usr/bin/env python3
"""
Tests for host port allocation.

Run with: python -m pytest tests/test_port_allocator.py -v
"""

import pytest

from cyberrange.config import LabsConfig
from cyberrange.errors import PortExhaustedError
from cyberrange.models import PortAllocation, PortAllocationStatus, db
from cyberrange.services.port_allocator import PortAllocator


def _allocator(start=21000, end=21009, probe=None, probe_host_ports=False):
    config = LabsConfig(port_start=start, port_end=end, probe_host_ports=probe_host_ports)
    return PortAllocator(config, probe=probe)


class TestAllocate:

    def test_lowest_free_port_first(self, app):
        ports = _allocator()
        assert ports.allocate('instance-a') == 21000
        assert ports.allocate('instance-b') == 21001

    def test_every_allocation_inserts_a_row(self, app):
        ports = _allocator()
        first = ports.allocate('instance-a')
        second = ports.allocate('instance-a')

        assert first != second
        assert PortAllocation.query.filter_by(lab_instance_id='instance-a').count() == 2

    def test_occupied_host_port_is_skipped(self, app):
        ports = _allocator(probe=lambda port: port == 21000, probe_host_ports=True)
        assert ports.allocate('instance-a') == 21001

    def test_probe_not_called_when_disabled(self, app):
        def probe(port):
            raise AssertionError('probe should not run')

        assert _allocator(probe=probe).allocate('instance-a') == 21000

    def test_exhausted_range(self, app):
        ports = _allocator(start=21000, end=21001)
        ports.allocate('instance-a')
        ports.allocate('instance-b')

        with pytest.raises(PortExhaustedError) as exc:
            ports.allocate('instance-c')
        assert exc.value.status_code == 409
        assert PortAllocation.query.count() == 2

    def test_active_port_is_unique(self, app):
        from sqlalchemy.exc import IntegrityError

        db.session.add(PortAllocation(port=21005, active_port=21005, lab_instance_id='a'))
        db.session.commit()
        db.session.add(PortAllocation(port=21005, active_port=21005, lab_instance_id='b'))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()


class TestRelease:

    def test_release_keeps_history(self, app):
        ports = _allocator()
        port = ports.allocate('instance-a')

        assert ports.release('instance-a') == 1

        row = PortAllocation.query.filter_by(lab_instance_id='instance-a').one()
        assert row.status == PortAllocationStatus.RELEASED
        assert row.active_port is None
        assert row.released_at is not None
        assert row.port == port

    def test_released_port_can_be_reused(self, app):
        ports = _allocator()
        first = ports.allocate('instance-a')
        ports.release('instance-a')

        assert ports.allocate('instance-b') == first
        history = ports.history(first)
        assert [row.lab_instance_id for row in history] == ['instance-a', 'instance-b']
        assert [row.status for row in history] == [PortAllocationStatus.RELEASED, PortAllocationStatus.ASSIGNED]

    def test_release_without_allocation_is_noop(self, app):
        assert _allocator().release('missing') == 0

    def test_release_stale_only_touches_orphans(self, app):
        ports = _allocator()
        ports.allocate('instance-a')
        db.session.add(PortAllocation(port=21008, active_port=21008, lab_instance_id=None))
        db.session.commit()

        assert ports.release_stale() == 1
        assert ports.active_for_instance('instance-a') is not None
        orphan = PortAllocation.query.filter_by(port=21008).one()
        assert orphan.status == PortAllocationStatus.RELEASED
