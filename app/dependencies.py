"""FastAPI dependencies."""

from typing import Annotated

import redis
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import HTTPConnection

from app.core.connection_registry import ConnectionRegistry
from app.core.redis_client import CacheManager, get_redis_client
from app.core.security import user_id_from_token
from app.database import get_db
from app.services.appointment_service import AppointmentService
from app.services.authorization_service import Actor, AuthorizationService
from app.services.notification_service import NotificationService
from app.services.payment_service import PaymentService

# Security
security = HTTPBearer()


async def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> int:
    """
    Extract and validate user ID from JWT token.

    Args:
        credentials: Bearer token credentials

    Returns:
        User ID from token

    Raises:
        HTTPException: If token is invalid or expired
    """
    user_id = user_id_from_token(credentials.credentials)

    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user_id


async def get_current_user(
    user_id: Annotated[int, Depends(get_current_user_id)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict:
    """
    Get current user from database.

    Raises:
        UnauthorizedException: If user not found
        ForbiddenException: If the account is deactivated
    """
    return await AuthorizationService(db).get_active_user(user_id)


async def get_current_actor(
    current_user: Annotated[dict, Depends(get_current_user)],
) -> Actor:
    """Authenticated user as an actor for service calls."""
    return Actor.from_user(current_user)


async def require_admin(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """
    Dependency to ensure current user has admin role.

    Raises:
        ForbiddenException: If user is not admin
    """
    AuthorizationService.ensure_admin(actor)
    return actor


def get_cache_manager(
    redis_client: Annotated[redis.Redis, Depends(get_redis_client)],
) -> CacheManager:
    """Cache manager over the shared Redis client."""
    return CacheManager(redis_client)


def get_connection_registry(conn: HTTPConnection) -> ConnectionRegistry:
    """Registry of live WebSocket channels owned by the application."""
    return conn.app.state.connection_registry


def get_notification_service(
    registry: Annotated[ConnectionRegistry, Depends(get_connection_registry)],
) -> NotificationService:
    """Notification service bound to the application's registry."""
    return NotificationService(registry)


def get_appointment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    notifier: Annotated[NotificationService, Depends(get_notification_service)],
    cache_manager: Annotated[CacheManager, Depends(get_cache_manager)],
) -> AppointmentService:
    """Appointment service for the current request."""
    return AppointmentService(db, notifier=notifier, cache_manager=cache_manager)


def get_payment_service(
    appointments: Annotated[AppointmentService, Depends(get_appointment_service)],
) -> PaymentService:
    """Payment simulator sharing the request's appointment service."""
    return PaymentService(appointments)


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUserId = Annotated[int, Depends(get_current_user_id)]
CurrentUser = Annotated[dict, Depends(get_current_user)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
AdminActor = Annotated[Actor, Depends(require_admin)]
CacheManagerDep = Annotated[CacheManager, Depends(get_cache_manager)]
Registry = Annotated[ConnectionRegistry, Depends(get_connection_registry)]
Notifier = Annotated[NotificationService, Depends(get_notification_service)]
Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
Payments = Annotated[PaymentService, Depends(get_payment_service)]
