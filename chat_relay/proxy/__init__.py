from .server import RelayServices, build_services, create_app

__all__ = [
    "RelayServices",
    "build_services",
    "create_app",
]
