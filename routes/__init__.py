"""Blueprint registration."""

from routes.commissions import commissions_bp
from routes.invoices import invoices_bp
from routes.reservations import reservations_bp
from routes.table_sessions import table_sessions_bp

ALL_BLUEPRINTS = [
    commissions_bp,
    invoices_bp,
    table_sessions_bp,
    reservations_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
