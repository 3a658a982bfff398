"""
Route dependencies.
"""
from fastapi import Request

from courier_dispatch.core.exceptions import ConfigurationException
from courier_dispatch.services.assignment.engine import AssignmentEngine
from courier_dispatch.services.assignment.sweeper import TimeoutSweeper
from courier_dispatch.services.container import DispatchServices


def get_services(request: Request) -> DispatchServices:
    """Dispatch services built during application startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise ConfigurationException("Dispatch services are not initialised")
    return services


def get_engine(request: Request) -> AssignmentEngine:
    return get_services(request).engine


def get_sweeper(request: Request) -> TimeoutSweeper:
    return get_services(request).sweeper
