"""
Service registry module.

This module registers the services with the dependency injection system.
"""
from calsync.services.calendar_service import CalendarService
from calsync.services.token_service import TokenService


def register_services():
    """Register all services with the dependency injection system."""
    # Late import to avoid a cycle through calsync.db.session
    from calsync.utils.dependencies import register_service

    register_service(CalendarService, lambda db: CalendarService(db))
    register_service(TokenService, lambda db: TokenService(db))
