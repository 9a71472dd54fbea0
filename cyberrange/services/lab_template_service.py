#!/usr/bin/env python3
"""
Lab template authoring, versioning and catalog lookups.

Lifecycle: DRAFT -> PUBLISHED -> ARCHIVED. Drafts are edited in place.
Publishing never mutates a published row; it inserts a new PUBLISHED row
for the requested version, copies every editable field, and moves the
family's ``is_latest`` flag onto it in the same transaction.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_

from cyberrange.errors import NotFoundError, TemplateImmutableError, VersionExistsError
from cyberrange.models import LabTemplate, LabTemplateStatus, db

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = 'nginx:alpine'
DEFAULT_PORT = 80
DEFAULT_VERSION = '0.1.0'


def default_compose(internal_port: int) -> str:
    return (
        "services:\n"
        "  app:\n"
        f"    image: {DEFAULT_IMAGE}\n"
        "    ports:\n"
        f"      - \"${{PORT}}:{internal_port}\"\n"
    )


def normalize_payload(data: dict) -> dict:
    """Map API aliases onto column names and fill execution defaults."""
    data = dict(data or {})

    if data.get('guide_markdown') is not None:
        data['long_description'] = data.pop('guide_markdown')
    data.pop('guide_markdown', None)

    if data.get('est_minutes') is not None:
        data['estimated_time_minutes'] = data.pop('est_minutes')
    data.pop('est_minutes', None)

    if data.get('docker_compose_yaml') is not None:
        data['configuration_type'] = 'docker-compose'
        data['configuration_content'] = data.pop('docker_compose_yaml')
    data.pop('docker_compose_yaml', None)

    configuration = data.pop('configuration', None)
    if isinstance(configuration, dict):
        data['configuration_type'] = configuration.get('type')
        data['configuration_content'] = configuration.get('content')
        data['configuration_base_port'] = configuration.get('base_port')

    if data.get('internal_port') is None:
        data['internal_port'] = data.get('configuration_base_port') or DEFAULT_PORT
    if data.get('configuration_base_port') is None:
        data['configuration_base_port'] = data['internal_port']
    if data.get('configuration_type') is None:
        data['configuration_type'] = 'docker-compose'
    if data.get('configuration_content') is None:
        data['configuration_content'] = default_compose(data['internal_port'])
    if data.get('docker_image') is None:
        data['docker_image'] = DEFAULT_IMAGE

    return data


def _assign(template: LabTemplate, data: dict) -> None:
    for field in LabTemplate.EDITABLE_FIELDS:
        if field in data:
            setattr(template, field, data[field])


class LabTemplateService:

    def __init__(self, audit):
        self.audit = audit

    # -- authoring ---------------------------------------------------------

    def create(self, data: dict, actor_id: Optional[str]) -> LabTemplate:
        data = normalize_payload(data)
        family = data.get('template_family') or str(uuid.uuid4())
        version = data.get('version') or DEFAULT_VERSION

        if self._version_exists(family, version):
            raise VersionExistsError('Version already exists in this lab family.',
                                     details={'template_family': family, 'version': version})

        template = LabTemplate(
            template_family=family,
            version=version,
            status=LabTemplateStatus.DRAFT,
            is_latest=False,
            changelog=data.get('changelog') or [],
            objectives=[],
            prerequisites=[],
            tags=[],
            assets=[],
            estimated_time_minutes=60,
            long_description='# Lab Guide',
        )
        _assign(template, {k: v for k, v in data.items() if v is not None})
        if not template.slug:
            template.slug = (template.title or 'lab').strip().lower().replace(' ', '-')

        db.session.add(template)
        db.session.commit()
        logger.info("Created lab template %s (%s v%s)", template.id, template.slug, template.version)

        self.audit.log('ADMIN_LAB_CREATED', actor_id, 'LabTemplate', template.id, {'slug': template.slug})
        return template

    def update(self, template: LabTemplate, data: dict, actor_id: Optional[str]) -> LabTemplate:
        if not template.is_draft:
            raise TemplateImmutableError(
                f'Lab template {template.slug} v{template.version} is {template.status}; '
                'only drafts can be edited. Publish a new version instead.',
                details={'template_id': template.id, 'status': template.status},
            )

        # Only keys the caller actually sent, after alias mapping
        provided = set(data or {})
        normalized = normalize_payload(data)
        aliases = {
            'guide_markdown': ['long_description'],
            'est_minutes': ['estimated_time_minutes'],
            'docker_compose_yaml': ['configuration_type', 'configuration_content'],
            'configuration': ['configuration_type', 'configuration_content', 'configuration_base_port'],
        }
        fields = set(provided)
        for alias, targets in aliases.items():
            if alias in provided:
                fields.update(targets)

        _assign(template, {k: v for k, v in normalized.items() if k in fields})
        db.session.commit()

        self.audit.log('ADMIN_LAB_UPDATED', actor_id, 'LabTemplate', template.id)
        return template

    def publish(self, template: LabTemplate, version: str, notes: str, actor_id: Optional[str]) -> LabTemplate:
        """Publish ``template`` as ``version`` of its family.

        Raises:
            VersionExistsError: the family already has that version (nothing changes)
        """
        version = (version or '').strip()
        if self._version_exists(template.template_family, version):
            raise VersionExistsError('Version already exists in this lab family.',
                                     details={'template_family': template.template_family, 'version': version})

        now = datetime.utcnow()
        changelog = list(template.changelog or [])
        changelog.append({
            'version': version,
            'date': now.date().isoformat(),
            'notes': notes or '',
        })

        try:
            LabTemplate.query.filter(
                LabTemplate.template_family == template.template_family,
                LabTemplate.is_latest.is_(True),
            ).update({'is_latest': False}, synchronize_session='fetch')

            published = LabTemplate(
                template_family=template.template_family,
                version=version,
                status=LabTemplateStatus.PUBLISHED,
                is_latest=True,
                published_at=now,
                changelog=changelog,
            )
            _assign(published, {field: getattr(template, field) for field in LabTemplate.EDITABLE_FIELDS})
            db.session.add(published)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info("Published lab template %s v%s as %s", template.slug, version, published.id)
        self.audit.log('ADMIN_LAB_PUBLISHED', actor_id, 'LabTemplate', published.id, {
            'version': version,
            'source_template_id': template.id,
        })
        return published

    def archive(self, template: LabTemplate, actor_id: Optional[str]) -> LabTemplate:
        template.status = LabTemplateStatus.ARCHIVED
        db.session.commit()
        logger.info("Archived lab template %s v%s", template.slug, template.version)

        self.audit.log('ADMIN_LAB_ARCHIVED', actor_id, 'LabTemplate', template.id)
        return template

    # -- lookups -----------------------------------------------------------

    @staticmethod
    def _version_exists(family: str, version: str) -> bool:
        return db.session.query(
            LabTemplate.query.filter_by(template_family=family, version=version).exists()
        ).scalar()

    @staticmethod
    def _by_id_or_slug(id_or_slug: str, latest_only: bool):
        query = LabTemplate.query.filter(or_(LabTemplate.id == id_or_slug, LabTemplate.slug == id_or_slug))
        if latest_only:
            query = query.filter(LabTemplate.is_latest.is_(True))
        return query.order_by(
            LabTemplate.is_latest.desc(),
            LabTemplate.published_at.desc(),
            LabTemplate.created_at.desc(),
        ).first()

    def find_or_fail(self, id_or_slug: str) -> LabTemplate:
        template = self._by_id_or_slug(id_or_slug, latest_only=False)
        if template is None:
            raise NotFoundError('Lab template not found.', details={'template': id_or_slug})
        return template

    def find_published_for_catalog_or_fail(self, id_or_slug: str) -> LabTemplate:
        template = self._by_id_or_slug(id_or_slug, latest_only=True)
        if template is None or not template.is_published:
            raise NotFoundError('Published lab template not found.', details={'template': id_or_slug})
        return template

    def find_published_by_version(self, family: str, version: str) -> Optional[LabTemplate]:
        return LabTemplate.query.filter_by(
            template_family=family,
            version=version,
            status=LabTemplateStatus.PUBLISHED,
        ).first()

    def find_latest_published_for_family(self, family: str) -> Optional[LabTemplate]:
        # Ordered rather than filtered on is_latest so a family that somehow
        # ends up with two latest rows still resolves to the newest one
        return LabTemplate.query.filter_by(
            template_family=family,
            status=LabTemplateStatus.PUBLISHED,
        ).order_by(
            LabTemplate.is_latest.desc(),
            LabTemplate.published_at.desc(),
            LabTemplate.created_at.desc(),
        ).first()

    def list_published(self, page: int = 1, per_page: int = 15, search: str = None,
                       category: str = None, difficulty: str = None, sort: str = 'newest'):
        query = LabTemplate.query.filter(
            LabTemplate.status == LabTemplateStatus.PUBLISHED,
            LabTemplate.is_latest.is_(True),
        )
        if search:
            pattern = f'%{search.strip().lower()}%'
            query = query.filter(or_(
                func.lower(LabTemplate.title).like(pattern),
                func.lower(LabTemplate.short_description).like(pattern),
                func.lower(LabTemplate.category).like(pattern),
            ))
        if category:
            query = query.filter(LabTemplate.category == category)
        if difficulty:
            query = query.filter(LabTemplate.difficulty == difficulty)

        order = {
            'title_asc': LabTemplate.title.asc(),
            'title_desc': LabTemplate.title.desc(),
            'oldest': LabTemplate.published_at.asc(),
        }.get(sort, LabTemplate.published_at.desc())

        return query.order_by(order).paginate(page=page, per_page=per_page, error_out=False)

    def list_family(self, family: str):
        return LabTemplate.query.filter_by(template_family=family) \
            .order_by(LabTemplate.created_at.asc()).all()
