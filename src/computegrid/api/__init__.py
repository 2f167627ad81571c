from computegrid.api.errors import install_error_handlers, status_for
from computegrid.api.routes import get_service, router

__all__ = ["get_service", "install_error_handlers", "router", "status_for"]
