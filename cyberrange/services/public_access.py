#!/usr/bin/env python3
"""
Public access resolution: turns an allocated host port into the URL a
learner opens in the browser.

Two modes:
- direct: scheme://host:port, host picked from configuration, the inbound
  request, APP_URL, then the fallback host
- proxy: {base_url}{prefix}/{instance_id}/ behind a reverse proxy
"""

import logging
import re
from typing import Callable, Optional, Tuple
from urllib.parse import urlparse

from cyberrange.config import LabsConfig, PUBLIC_MODE_DIRECT, PUBLIC_MODE_PROXY
from cyberrange.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Hosts that only make sense from the server itself
UNSAFE_HOST_MARKERS = ('localhost', '127.0.0.1', '0.0.0.0', '::1')

_RANGE_RE = re.compile(r'^(\d+)\s*-\s*(\d+)$')


def _flask_request_host() -> Optional[str]:
    """Host of the current Flask request, or None outside a request."""
    from flask import has_request_context, request

    if not has_request_context():
        return None
    return request.host


def is_safe_public_host(host: Optional[str]) -> bool:
    host = (host or '').strip()
    if not host:
        return False
    return not any(marker in host for marker in UNSAFE_HOST_MARKERS)


def strip_port(host: str) -> str:
    """Drop a trailing :port from a Host header value."""
    if host.startswith('['):
        return host.split(']')[0] + ']'
    if host.count(':') == 1:
        return host.split(':')[0]
    return host


class PublicAccessResolver:
    """Builds externally reachable URLs for lab instances."""

    def __init__(self, config: LabsConfig, request_host_getter: Callable[[], Optional[str]] = None):
        self.config = config
        self._request_host = request_host_getter or _flask_request_host

    def allowed_port_bounds(self) -> Tuple[int, int]:
        match = _RANGE_RE.match((self.config.allowed_port_range or '').strip())
        if match:
            start, end = int(match.group(1)), int(match.group(2))
        else:
            start, end = self.config.port_start, self.config.port_end
        if start > end:
            start, end = end, start
        return start, end

    @property
    def mode(self) -> str:
        mode = (self.config.public_mode or '').strip().lower()
        if mode not in (PUBLIC_MODE_DIRECT, PUBLIC_MODE_PROXY):
            return PUBLIC_MODE_DIRECT
        return mode

    def resolve(self, instance, host_port: int) -> dict:
        """Return ``{access_url, host_port, public_host, mode}`` for ``instance``.

        Raises:
            ConfigurationError: port outside the allowed public range (422),
                or proxy mode without a base URL (500)
        """
        start, end = self.allowed_port_bounds()
        if host_port < start or host_port > end:
            raise ConfigurationError(
                f"Assigned port {host_port} is outside allowed public range {start}-{end}.",
                details={'host_port': host_port, 'allowed_range': [start, end]},
                status_code=422,
            )

        if self.mode == PUBLIC_MODE_PROXY:
            base = (self.config.public_base_url or '').rstrip('/')
            if not base:
                raise ConfigurationError(
                    'CYBERRANGE_PUBLIC_BASE_URL is required when CYBERRANGE_PUBLIC_PORT_MODE=proxy.'
                )
            prefix = '/' + (self.config.public_proxy_prefix or '/lab').strip('/')
            return {
                'access_url': f'{base}{prefix}/{instance.id}/',
                'host_port': host_port,
                'public_host': urlparse(base).hostname or 'proxy',
                'mode': PUBLIC_MODE_PROXY,
            }

        scheme = (self.config.public_scheme or 'http').strip().lower()
        if scheme not in ('http', 'https'):
            scheme = 'http'

        public_host = self.resolve_public_host()
        return {
            'access_url': f'{scheme}://{public_host}:{host_port}',
            'host_port': host_port,
            'public_host': public_host,
            'mode': PUBLIC_MODE_DIRECT,
        }

    def resolve_public_host(self) -> str:
        configured = (self.config.public_host or '').strip()
        if configured:
            return configured

        request_host = strip_port((self._request_host() or '').strip())
        if is_safe_public_host(request_host):
            return request_host

        app_host = urlparse(self.config.app_url or '').hostname
        if is_safe_public_host(app_host):
            return app_host

        fallback = (self.config.fallback_host or '').strip()
        if not fallback:
            return 'localhost'
        logger.debug("No public host configured or derivable, using fallback %s", fallback)
        return fallback
