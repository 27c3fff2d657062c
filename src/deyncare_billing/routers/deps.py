import threading

from fastapi import Request

from deyncare_billing.bootstrap import Services, build_services

_build_lock = threading.Lock()


def get_services(request: Request) -> Services:
    """Services of this app, built from the environment on first use."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        with _build_lock:
            services = getattr(request.app.state, "services", None)
            if services is None:
                services = build_services()
                request.app.state.services = services
    return services
