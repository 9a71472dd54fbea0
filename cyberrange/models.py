#!/usr/bin/env python3
"""
Database models for lab instance orchestration.

Schema:
- User: Identity mirror (id, username, role) supplied by the identity provider
- LabTemplate: Versioned lab definition, one row per (family, version)
- LabInstance: One runtime session per (user, template family)
- LabInstanceRuntime: Driver-side descriptor (workdir, compose, network)
- PortAllocation: Append-only ledger of host port bindings
- AuditLog: Who did what to which instance/template

All tables use SQLite via SQLAlchemy by default.
"""

import logging
import os
import uuid
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import text

logger = logging.getLogger(__name__)

# Initialize SQLAlchemy (will be bound to Flask app in create_app)
db = SQLAlchemy()


def _uuid() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class LabTemplateStatus:
    DRAFT = 'DRAFT'
    PUBLISHED = 'PUBLISHED'
    ARCHIVED = 'ARCHIVED'

    ALL = (DRAFT, PUBLISHED, ARCHIVED)


class LabInstanceState:
    INACTIVE = 'INACTIVE'
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'
    COMPLETED = 'COMPLETED'
    ABANDONED = 'ABANDONED'

    ALL = (INACTIVE, ACTIVE, PAUSED, COMPLETED, ABANDONED)


class PortAllocationStatus:
    ASSIGNED = 'ASSIGNED'
    RELEASED = 'RELEASED'


class UpgradeStrategy:
    IN_PLACE = 'IN_PLACE'
    RESET = 'RESET'

    ALL = (IN_PLACE, RESET)


class User(db.Model):
    """Local mirror of an identity-provider user."""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default='user')  # admin, user
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    lab_instances = db.relationship('LabInstance', back_populates='user', lazy='dynamic')

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'username': self.username,
            'role': self.role,
            'created_at': _iso(self.created_at),
        }

    def __repr__(self):
        return f'<User {self.username} ({self.role})>'


class LabTemplate(db.Model):
    """Versioned lab definition.

    Rows sharing ``template_family`` are versions of the same lab. Exactly one
    PUBLISHED row per family carries ``is_latest``. Published rows are never
    edited; publishing inserts a new row.
    """
    __tablename__ = 'lab_templates'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    template_family = db.Column(db.String(36), nullable=False, index=True, default=_uuid)
    slug = db.Column(db.String(120), nullable=False, index=True)
    title = db.Column(db.String(255), nullable=False)
    difficulty = db.Column(db.String(50), nullable=False, default='BEGINNER')
    category = db.Column(db.String(100), nullable=False, default='general')
    short_description = db.Column(db.String(500), nullable=False, default='')
    long_description = db.Column(db.Text, nullable=False, default='# Lab Guide')  # Guide markdown
    estimated_time_minutes = db.Column(db.Integer, nullable=False, default=60)
    objectives = db.Column(db.JSON, nullable=False, default=list)
    prerequisites = db.Column(db.JSON, nullable=False, default=list)
    tags = db.Column(db.JSON, nullable=False, default=list)
    assets = db.Column(db.JSON, nullable=False, default=list)

    # Versioning
    version = db.Column(db.String(32), nullable=False, default='0.1.0')
    status = db.Column(db.String(20), nullable=False, default=LabTemplateStatus.DRAFT, index=True)
    is_latest = db.Column(db.Boolean, nullable=False, default=False)
    published_at = db.Column(db.DateTime, nullable=True)
    changelog = db.Column(db.JSON, nullable=False, default=list)  # [{version, date, notes}]

    # Execution configuration
    docker_image = db.Column(db.String(255), nullable=False, default='nginx:alpine')
    internal_port = db.Column(db.Integer, nullable=False, default=80)
    env_vars = db.Column(db.JSON, nullable=True)
    resource_limits = db.Column(db.JSON, nullable=True)  # {"memory": "512m", "cpus": "0.5"}
    configuration_type = db.Column(db.String(40), nullable=False, default='docker-compose')
    configuration_content = db.Column(db.Text, nullable=True)  # Compose YAML with ${PORT} placeholder
    configuration_base_port = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    instances = db.relationship('LabInstance', back_populates='template', lazy='dynamic')

    __table_args__ = (
        db.UniqueConstraint('template_family', 'version', name='uix_template_family_version'),
        db.Index('idx_template_family_latest', 'template_family', 'is_latest'),
        db.Index('idx_template_slug_latest', 'slug', 'is_latest'),
    )

    # Fields copied verbatim when a new version row is published
    EDITABLE_FIELDS = (
        'slug', 'title', 'difficulty', 'category', 'short_description',
        'long_description', 'estimated_time_minutes', 'objectives',
        'prerequisites', 'tags', 'assets', 'docker_image', 'internal_port',
        'env_vars', 'resource_limits', 'configuration_type',
        'configuration_content', 'configuration_base_port',
    )

    @property
    def container_port(self) -> int:
        """Port the lab listens on inside its container."""
        return int(self.configuration_base_port or self.internal_port or 80)

    @property
    def is_draft(self) -> bool:
        return self.status == LabTemplateStatus.DRAFT

    @property
    def is_published(self) -> bool:
        return self.status == LabTemplateStatus.PUBLISHED

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'template_family': self.template_family,
            'slug': self.slug,
            'title': self.title,
            'difficulty': self.difficulty,
            'category': self.category,
            'short_description': self.short_description,
            'long_description': self.long_description,
            'estimated_time_minutes': self.estimated_time_minutes,
            'objectives': self.objectives or [],
            'prerequisites': self.prerequisites or [],
            'tags': self.tags or [],
            'assets': self.assets or [],
            'version': self.version,
            'status': self.status,
            'is_latest': bool(self.is_latest),
            'published_at': _iso(self.published_at),
            'changelog': self.changelog or [],
            'configuration': {
                'type': self.configuration_type,
                'content': self.configuration_content,
                'base_port': self.configuration_base_port,
                'docker_image': self.docker_image,
                'internal_port': self.internal_port,
                'resource_limits': self.resource_limits or {},
            },
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        latest = " latest" if self.is_latest else ""
        return f'<LabTemplate {self.slug} v{self.version} [{self.status}{latest}]>'


class LabInstance(db.Model):
    """A user's runtime session for one template family.

    The same row is re-pointed to a new template id on upgrade, so there is
    never more than one instance per (user, family).
    """
    __tablename__ = 'lab_instances'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id'), nullable=False, index=True)
    lab_template_id = db.Column(db.String(36), db.ForeignKey('lab_templates.id'), nullable=False, index=True)
    template_version_pinned = db.Column(db.String(32), nullable=False)
    state = db.Column(db.String(20), nullable=False, default=LabInstanceState.INACTIVE, index=True)
    progress_percent = db.Column(db.Integer, nullable=False, default=0)
    attempts_count = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=False, default='')
    score = db.Column(db.Integer, nullable=False, default=0)

    started_at = db.Column(db.DateTime, nullable=True)
    last_activity_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    # Only set while the instance is effectively running
    assigned_port = db.Column(db.Integer, nullable=True)
    connection_url = db.Column(db.String(500), nullable=True)

    runtime_metadata = db.Column(db.JSON, nullable=True)  # {operation: driver output}
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = db.relationship('User', back_populates='lab_instances')
    template = db.relationship('LabTemplate', back_populates='instances')
    runtime = db.relationship('LabInstanceRuntime', back_populates='instance',
                              uselist=False, cascade='all, delete-orphan')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'lab_template_id', name='uix_instance_user_template'),
        db.Index('idx_instance_user_state', 'user_id', 'state'),
    )

    def merge_runtime_metadata(self, operation: str, metadata: dict) -> None:
        """Record driver output under its operation name, keeping earlier entries."""
        merged = dict(self.runtime_metadata or {})
        merged[operation] = metadata
        self.runtime_metadata = merged

    def runtime_value(self, key: str, default=None):
        """Look up a driver-side value: descriptor first, then recorded driver output."""
        if self.runtime is not None:
            value = getattr(self.runtime, key, None)
            if value:
                return value
            value = (self.runtime.runtime_meta or {}).get(key)
            if value:
                return value
        meta = self.runtime_metadata or {}
        for operation in ('upgrade', 'start'):
            value = (meta.get(operation) or {}).get(key)
            if value:
                return value
        return default

    def clear_connection(self) -> None:
        self.assigned_port = None
        self.connection_url = None

    @property
    def is_active(self) -> bool:
        return self.state == LabInstanceState.ACTIVE

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'user_id': self.user_id,
            'lab_template_id': self.lab_template_id,
            'template_version_pinned': self.template_version_pinned,
            'template_title': self.template.title if self.template else None,
            'template_slug': self.template.slug if self.template else None,
            'state': self.state,
            'progress_percent': self.progress_percent,
            'attempts_count': self.attempts_count,
            'notes': self.notes,
            'score': self.score,
            'started_at': _iso(self.started_at),
            'last_activity_at': _iso(self.last_activity_at),
            'completed_at': _iso(self.completed_at),
            'expires_at': _iso(self.expires_at),
            'assigned_port': self.assigned_port,
            'connection_url': self.connection_url,
            'runtime_metadata': self.runtime_metadata or {},
            'last_error': self.last_error,
        }

    def __repr__(self):
        return f'<LabInstance {self.id} user={self.user_id} v{self.template_version_pinned} [{self.state}]>'


class LabInstanceRuntime(db.Model):
    """Driver-side runtime descriptor, written only by the orchestrator."""
    __tablename__ = 'lab_instance_runtimes'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    lab_instance_id = db.Column(db.String(36), db.ForeignKey('lab_instances.id'),
                                unique=True, nullable=False, index=True)
    workdir = db.Column(db.String(500), nullable=True)
    compose_path = db.Column(db.String(500), nullable=True)
    project_name = db.Column(db.String(120), nullable=True)
    network_name = db.Column(db.String(120), nullable=True)
    container_name = db.Column(db.String(120), nullable=True)
    host_port = db.Column(db.Integer, nullable=True)
    public_host = db.Column(db.String(255), nullable=True)
    access_url = db.Column(db.String(500), nullable=True)
    runtime_meta = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    instance = db.relationship('LabInstance', back_populates='runtime')

    def to_dict(self) -> dict:
        return {
            'workdir': self.workdir,
            'compose_path': self.compose_path,
            'project_name': self.project_name,
            'network_name': self.network_name,
            'container_name': self.container_name,
            'host_port': self.host_port,
            'public_host': self.public_host,
            'access_url': self.access_url,
        }


class PortAllocation(db.Model):
    """One row per attempt at binding a host port to an instance.

    ``port`` repeats across history; ``active_port`` is unique and only set
    on the row that currently holds the port.
    """
    __tablename__ = 'port_allocations'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    port = db.Column(db.Integer, nullable=False, index=True)
    active_port = db.Column(db.Integer, nullable=True, unique=True)
    lab_instance_id = db.Column(db.String(36), db.ForeignKey('lab_instances.id', ondelete='SET NULL'),
                                nullable=True, index=True)
    status = db.Column(db.String(20), nullable=False, default=PortAllocationStatus.ASSIGNED)
    allocated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    released_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index('idx_port_instance_status', 'lab_instance_id', 'status'),
    )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'port': self.port,
            'active_port': self.active_port,
            'lab_instance_id': self.lab_instance_id,
            'status': self.status,
            'allocated_at': _iso(self.allocated_at),
            'released_at': _iso(self.released_at),
        }

    def __repr__(self):
        return f'<PortAllocation {self.port} [{self.status}] -> {self.lab_instance_id}>'


class AuditLog(db.Model):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(36), nullable=True, index=True)
    action = db.Column(db.String(80), nullable=False, index=True)
    target_type = db.Column(db.String(80), nullable=False)
    target_id = db.Column(db.String(36), nullable=True, index=True)
    # "metadata" is reserved on declarative models
    details = db.Column('metadata', db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'actor_id': self.actor_id,
            'action': self.action,
            'target_type': self.target_type,
            'target_id': self.target_id,
            'metadata': self.details or {},
            'created_at': _iso(self.created_at),
        }


def init_db(app):
    """Initialize database with Flask app context.

    Call this in create_app() to set up the database.
    """
    # Set database URI if not already configured
    if 'SQLALCHEMY_DATABASE_URI' not in app.config:
        from cyberrange.config import DATABASE_URI
        if DATABASE_URI:
            app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URI
        else:
            db_path = os.path.join(os.path.dirname(__file__), 'cyberrange.db')
            app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{db_path}'
            # Improve SQLite concurrency: allow cross-thread access and increase lock timeout
            app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
                'connect_args': {
                    'check_same_thread': False,
                    'timeout': 15,
                }
            }

    # Disable modification tracking (not needed and impacts performance)
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    # Initialize SQLAlchemy with the app
    db.init_app(app)

    # Create tables if they don't exist
    with app.app_context():
        if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///') and \
                ':memory:' not in app.config['SQLALCHEMY_DATABASE_URI']:
            # Enable WAL journal mode to reduce write-lock contention
            try:
                db.session.execute(text("PRAGMA journal_mode=WAL;"))
                db.session.execute(text("PRAGMA busy_timeout=15000;"))
                db.session.commit()
            except Exception as e:
                db.session.rollback()
                logger.warning("Could not enable SQLite WAL mode: %s", e)
        db.create_all()
