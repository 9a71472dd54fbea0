#!/usr/bin/env python3
"""
Shared pytest fixtures.

Every test app runs on in-memory SQLite with the fake driver, a tmp_path
runtime root and host port probing disabled.
"""

import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

PORT_START = 21000
PORT_END = 21009
PUBLIC_HOST = 'labs.example.test'


@pytest.fixture
def app_config(tmp_path):
    return {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'DOCKER_LAB_DRIVER': 'fake',
        'DOCKER_LAB_RUNTIME_ROOT': str(tmp_path / 'instances'),
        'DOCKER_LAB_PORT_RANGE_START': PORT_START,
        'DOCKER_LAB_PORT_RANGE_END': PORT_END,
        'CYBERRANGE_PUBLIC_PORT_MODE': 'direct',
        'CYBERRANGE_PUBLIC_HOST': PUBLIC_HOST,
        'CYBERRANGE_PUBLIC_BASE_URL': '',
        'CYBERRANGE_ALLOWED_PORT_RANGE': '',
        'DOCKER_LAB_MAX_TTL_MINUTES': 120,
        'LABS_PREFLIGHT_ON_ACTIVATE': True,
        'LABS_SWEEPER_ENABLED': False,
        'CYBERRANGE_TRUST_USER_HEADER': True,
    }


@pytest.fixture
def app(app_config):
    from cyberrange import create_app
    from cyberrange.models import db

    app = create_app(app_config)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def services(app):
    from cyberrange.services import get_services
    return get_services()


@pytest.fixture
def client(app):
    return app.test_client()


def _make_user(username, role='user'):
    from cyberrange.models import User, db

    user = User(username=username, role=role)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin(app):
    return _make_user('admin', role='admin')


@pytest.fixture
def learner(app):
    return _make_user('learner')


@pytest.fixture
def other_learner(app):
    return _make_user('other')


@pytest.fixture
def make_published(services, admin):
    """Create a draft and publish it. Returns (draft, published)."""
    def factory(title='Web Basics', version='1.0.0', **fields):
        draft = services.templates.create(dict({'title': title}, **fields), admin.id)
        published = services.templates.publish(draft, version, f'Release {version}', admin.id)
        return draft, published
    return factory


@pytest.fixture
def auth_headers():
    def headers(user):
        return {'X-User-Id': user.id}
    return headers
