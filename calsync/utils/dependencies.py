from typing import Any, Callable, Dict, Type, TypeVar, cast

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from calsync.db.session import get_db

# Type variable for service classes
T = TypeVar("T")

# Global registry of service factories
_service_registry: Dict[Type[Any], Callable[..., Any]] = {}


def register_service(service_class: Type[T], factory: Callable[..., T]) -> None:
    """
    Register a service factory function.

    Args:
        service_class: The class of the service
        factory: Function that creates an instance of the service from a session
    """
    _service_registry[service_class] = factory


def get_registered_factory(service_class: Type[T]) -> Callable[..., T]:
    """Factory for ``service_class``, registering a ``service_class(db)`` default if needed."""
    if service_class not in _service_registry:
        register_service(service_class, lambda db: service_class(db))
    return _service_registry[service_class]


def get_service(service_class: Type[T]) -> Callable[..., T]:
    """
    Get a dependency provider for a service.

    The returned FastAPI dependency builds the service once per request from
    the request's database session and caches it on ``request.state``.

    Args:
        service_class: The class of the service to provide

    Returns:
        A FastAPI dependency that provides the service
    """

    def _get_service(request: Request, db: Session = Depends(get_db)) -> T:
        service_key = f"service:{service_class.__name__}"
        if hasattr(request.state, service_key):
            return cast(T, getattr(request.state, service_key))

        # Looked up per request so tests can swap the factory
        service = get_registered_factory(service_class)(db)
        setattr(request.state, service_key, service)
        return service

    return _get_service
