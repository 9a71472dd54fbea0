#!/usr/bin/env python3
"""
Error taxonomy for lab orchestration.

Every error carries an HTTP-equivalent status code, a stable error code and
an optional details payload so routes can render an actionable message.

- ConfigurationError: bad public endpoint settings, out-of-range ports
- PortExhaustedError: no free port in the allocation range
- DriverError: the execution backend failed (non-zero exit, unreachable)
- DomainRuleError: incompatible upgrade, duplicate version, immutable row
- OwnershipError: instance belongs to another user
- NotFoundError: missing instance or template
- PreflightError: environment checks failed, carries the full report
"""

from typing import Any, Dict, Optional


class LabError(Exception):
    """Base class for all orchestration errors."""
    status_code = 500
    error_code = 'LAB_ERROR'

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def to_dict(self) -> dict:
        return {
            'ok': False,
            'error': self.message,
            'code': self.error_code,
            'details': self.details,
        }


class ConfigurationError(LabError):
    """Fatal misconfiguration; never retried."""
    status_code = 500
    error_code = 'CONFIGURATION_ERROR'


class PortExhaustedError(LabError):
    """No free port in the configured range."""
    status_code = 409
    error_code = 'PORT_EXHAUSTED'


class DriverError(LabError):
    """Execution backend call failed."""
    status_code = 503
    error_code = 'DRIVER_ERROR'


class DriverNotImplementedError(DriverError):
    status_code = 501
    error_code = 'DRIVER_NOT_IMPLEMENTED'


class OrchestrationOperationError(DriverError):
    """Driver failure surfaced to the user with remediation hints."""
    error_code = 'LAB_OPERATION_FAILED'


class DomainRuleError(LabError):
    status_code = 422
    error_code = 'DOMAIN_RULE_VIOLATION'


class IncompatibleUpgradeError(DomainRuleError):
    error_code = 'INCOMPATIBLE_UPGRADE'


class VersionExistsError(DomainRuleError):
    error_code = 'VERSION_EXISTS'


class TemplateImmutableError(DomainRuleError):
    error_code = 'TEMPLATE_IMMUTABLE'


class OwnershipError(DomainRuleError):
    status_code = 403
    error_code = 'NOT_INSTANCE_OWNER'


class NotFoundError(LabError):
    status_code = 404
    error_code = 'NOT_FOUND'


class PreflightError(LabError):
    """Raised by PreflightService.assert_ready with the full report attached."""
    status_code = 503
    error_code = 'PREFLIGHT_FAILED'

    def __init__(self, report: Dict[str, Any],
                 message: str = 'Orchestration preflight failed. Check remediation hints in response details.'):
        super().__init__(message, details={'preflight': report})
        self.report = report
