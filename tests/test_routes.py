#!/usr/bin/env python3
"""
HTTP tests for the learner and admin APIs.

Run with: python -m pytest tests/test_routes.py -v
"""

from cyberrange.models import LabInstanceState

from conftest import PORT_START, PUBLIC_HOST


class TestAuth:

    def test_anonymous_rejected(self, client):
        response = client.get('/api/labs')
        assert response.status_code == 401
        assert response.get_json()['code'] == 'UNAUTHENTICATED'

    def test_unknown_user_rejected(self, client):
        assert client.get('/api/labs', headers={'X-User-Id': 'nobody'}).status_code == 401

    def test_learner_cannot_use_admin_api(self, client, learner, auth_headers):
        response = client.post('/api/admin/labs', json={'title': 'X'}, headers=auth_headers(learner))
        assert response.status_code == 403
        assert response.get_json()['code'] == 'FORBIDDEN'

    def test_session_identity(self, client, learner):
        with client.session_transaction() as sess:
            sess['user_id'] = learner.id
        assert client.get('/api/labs').status_code == 200

    def test_header_ignored_unless_gateway_trusted(self, app_config):
        from cyberrange import create_app
        from cyberrange.models import User, db

        untrusted = create_app(dict(app_config, CYBERRANGE_TRUST_USER_HEADER=False))
        with untrusted.app_context():
            try:
                admin = User(username='admin', role='admin')
                db.session.add(admin)
                db.session.commit()
                client = untrusted.test_client()

                response = client.post('/api/admin/labs', json={'title': 'X'}, headers={'X-User-Id': admin.id})
                assert response.status_code == 401

                with client.session_transaction() as sess:
                    sess['user_id'] = admin.id
                assert client.post('/api/admin/labs', json={'title': 'X'}).status_code == 201
            finally:
                db.session.remove()
                db.drop_all()

    def test_health_is_public(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        assert response.get_json() == {'ok': True, 'driver': 'fake'}


class TestCatalog:

    def test_list_and_detail(self, client, make_published, learner, auth_headers):
        make_published(title='Web Basics')

        listing = client.get('/api/labs', headers=auth_headers(learner)).get_json()
        assert listing['total'] == 1
        assert listing['labs'][0]['slug'] == 'web-basics'

        detail = client.get('/api/labs/web-basics', headers=auth_headers(learner)).get_json()
        assert detail['lab']['version'] == '1.0.0'
        assert detail['instance'] is None

    def test_unknown_lab_is_json_404(self, client, learner, auth_headers):
        response = client.get('/api/labs/missing', headers=auth_headers(learner))
        assert response.status_code == 404
        body = response.get_json()
        assert body['ok'] is False
        assert body['code'] == 'NOT_FOUND'


class TestLearnerFlow:

    def test_activate_then_deactivate(self, client, make_published, learner, auth_headers):
        _, template = make_published()
        headers = auth_headers(learner)

        response = client.post(f'/api/labs/{template.id}/activate', headers=headers)
        assert response.status_code == 200
        instance = response.get_json()['instance']
        assert instance['state'] == LabInstanceState.ACTIVE
        assert instance['connection_url'] == f'http://{PUBLIC_HOST}:{PORT_START}'

        detail = client.get(f'/api/labs/{template.id}', headers=headers).get_json()
        assert detail['instance']['id'] == instance['id']

        response = client.post(f"/api/lab-instances/{instance['id']}/deactivate", headers=headers)
        assert response.get_json()['instance']['state'] == LabInstanceState.INACTIVE

        mine = client.get('/api/me/lab-instances?state=INACTIVE', headers=headers).get_json()
        assert [row['id'] for row in mine['instances']] == [instance['id']]

    def test_invalid_state_filter(self, client, learner, auth_headers):
        response = client.get('/api/me/lab-instances?state=BOGUS', headers=auth_headers(learner))
        assert response.status_code == 400

    def test_other_users_instance_forbidden(self, client, services, make_published, learner,
                                            other_learner, auth_headers):
        _, template = make_published()
        instance = services.instances.activate(template.id, learner)

        response = client.post(f'/api/lab-instances/{instance.id}/restart', headers=auth_headers(other_learner))
        assert response.status_code == 403
        assert response.get_json()['code'] == 'NOT_INSTANCE_OWNER'

    def test_patch_progress(self, client, services, make_published, learner, auth_headers):
        _, template = make_published()
        instance = services.instances.activate(template.id, learner)

        response = client.patch(f'/api/lab-instances/{instance.id}',
                                json={'progress_percent': 55, 'notes': 'halfway'},
                                headers=auth_headers(learner))
        body = response.get_json()['instance']
        assert body['progress_percent'] == 55
        assert body['notes'] == 'halfway'

        response = client.patch(f'/api/lab-instances/{instance.id}', json={'progress_percent': 'lots'},
                                headers=auth_headers(learner))
        assert response.status_code == 400

    def test_upgrade_rejects_unknown_strategy(self, client, services, make_published, learner, auth_headers):
        _, template = make_published()
        instance = services.instances.activate(template.id, learner)

        response = client.post(f'/api/lab-instances/{instance.id}/upgrade', json={'strategy': 'MERGE'},
                               headers=auth_headers(learner))
        assert response.status_code == 400

    def test_incompatible_upgrade_is_422(self, client, services, make_published, admin, learner, auth_headers):
        draft, v1 = make_published(version='1.0.0')
        services.templates.update(draft, {'internal_port': 8080, 'configuration_base_port': 8080}, admin.id)
        services.templates.publish(draft, '2.0.0', '', admin.id)
        instance = services.instances.activate(v1.id, learner)

        response = client.post(f'/api/lab-instances/{instance.id}/upgrade', json={},
                               headers=auth_headers(learner))
        assert response.status_code == 422
        assert response.get_json()['code'] == 'INCOMPATIBLE_UPGRADE'


class TestAdminLabs:

    def test_create_and_publish(self, client, admin, auth_headers):
        headers = auth_headers(admin)

        response = client.post('/api/admin/labs', json={'title': 'Recon 101', 'category': 'network'},
                               headers=headers)
        assert response.status_code == 201
        draft = response.get_json()['lab']
        assert draft['status'] == 'DRAFT'

        response = client.post(f"/api/admin/labs/{draft['id']}/publish", json={'version': '1.0.0'},
                               headers=headers)
        assert response.status_code == 201
        published = response.get_json()['lab']
        assert published['is_latest'] is True
        assert published['id'] != draft['id']

        versions = client.get(f"/api/admin/labs/{draft['id']}/versions", headers=headers).get_json()
        assert [row['version'] for row in versions['versions']] == ['0.1.0', '1.0.0']

        response = client.patch(f"/api/admin/labs/{published['id']}", json={'title': 'Changed'},
                                headers=headers)
        assert response.status_code == 422
        assert response.get_json()['code'] == 'TEMPLATE_IMMUTABLE'

    def test_create_requires_title(self, client, admin, auth_headers):
        assert client.post('/api/admin/labs', json={}, headers=auth_headers(admin)).status_code == 400

    def test_publish_requires_version(self, client, services, admin, auth_headers):
        draft = services.templates.create({'title': 'X'}, admin.id)
        response = client.post(f'/api/admin/labs/{draft.id}/publish', json={}, headers=auth_headers(admin))
        assert response.status_code == 400

    def test_duplicate_version_is_422(self, client, make_published, admin, auth_headers):
        draft, _ = make_published(version='1.0.0')
        response = client.post(f'/api/admin/labs/{draft.id}/publish', json={'version': '1.0.0'},
                               headers=auth_headers(admin))
        assert response.status_code == 422
        assert response.get_json()['code'] == 'VERSION_EXISTS'


class TestAdminOrchestration:

    def test_preflight_ok(self, client, admin, auth_headers):
        response = client.get('/api/admin/orchestration/preflight', headers=auth_headers(admin))
        assert response.status_code == 200
        body = response.get_json()
        assert body['ok'] is True
        assert set(body['preflight']['checks']) == {'workdir', 'runtime', 'public_endpoint'}

    def test_preflight_failure_is_503(self, client, services, admin, auth_headers, monkeypatch):
        monkeypatch.setattr(services.preflight, 'check_runtime',
                            lambda: {'ok': False, 'message': 'down', 'hints': []})
        response = client.get('/api/admin/orchestration/preflight', headers=auth_headers(admin))
        assert response.status_code == 503

    def test_inspect_and_force_stop(self, client, services, make_published, admin, learner, auth_headers):
        _, template = make_published()
        instance = services.instances.activate(template.id, learner)
        headers = auth_headers(admin)

        listing = client.get('/api/admin/orchestration/instances', headers=headers).get_json()
        assert listing['total'] == 1

        detail = client.get(f'/api/admin/orchestration/instances/{instance.id}', headers=headers).get_json()
        assert detail['instance']['status'] == 'RUNNING'

        response = client.post(f'/api/admin/orchestration/instances/{instance.id}/force-stop', headers=headers)
        assert response.get_json()['instance']['state'] == LabInstanceState.INACTIVE

        listing = client.get('/api/admin/orchestration/instances', headers=headers).get_json()
        assert listing['total'] == 0

    def test_destroy_unknown_instance(self, client, admin, auth_headers):
        response = client.post('/api/admin/orchestration/instances/nope/destroy', headers=auth_headers(admin))
        assert response.status_code == 404
