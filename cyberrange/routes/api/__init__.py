# API routes package - exports for package consumers
# noqa: F401 comments are required because these are re-exports for external use
from cyberrange.routes.api.lab_instances import api_lab_instances_bp as api_lab_instances_bp  # noqa: F401
from cyberrange.routes.api.labs import api_labs_bp as api_labs_bp  # noqa: F401
