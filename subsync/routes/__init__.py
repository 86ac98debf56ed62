from subsync.routes.health import bp as health_bp
from subsync.routes.webhooks import bp as webhooks_bp


def register_routes(app):
    app.register_blueprint(health_bp)
    app.register_blueprint(webhooks_bp)
