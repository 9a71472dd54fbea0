# Admin routes package - exports for package consumers
from cyberrange.routes.admin.labs import admin_labs_bp as admin_labs_bp  # noqa: F401
from cyberrange.routes.admin.orchestration import admin_orchestration_bp as admin_orchestration_bp  # noqa: F401
