# Routes package - contains Flask blueprints

# Import blueprints for easy access
from cyberrange.routes.api.labs import api_labs_bp
from cyberrange.routes.api.lab_instances import api_lab_instances_bp
from cyberrange.routes.admin.labs import admin_labs_bp
from cyberrange.routes.admin.orchestration import admin_orchestration_bp


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    app.register_blueprint(api_labs_bp)
    app.register_blueprint(api_lab_instances_bp)
    app.register_blueprint(admin_labs_bp)
    app.register_blueprint(admin_orchestration_bp)
