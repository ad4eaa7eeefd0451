# outreach_app/routes/__init__.py
"""
Application routes package
"""

from .health import health_blueprint
from .intake import intake_blueprint


def init_routes(app):
    """Register the intake webhooks and health endpoints"""
    for blueprint in (intake_blueprint, health_blueprint):
        if blueprint.name not in app.blueprints:
            app.register_blueprint(blueprint)
