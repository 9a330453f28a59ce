from fastapi import Request

from apps.pass_sync.services.errors import ConfigurationError
from apps.pass_sync.services.registry import PassServices


def get_services(request: Request) -> PassServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationError("Pass services are not initialised")
    return services
