"""
Request identity.

Real authentication is out of scope; every request acts as the configured
demo user.
"""
import logging

from fastapi import Request

from shared.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


async def get_current_user(request: Request) -> dict:
    """
    Dependency returning the simulated user.

    Returns:
        User payload with user_id, email and name
    """
    logger.debug(f"Simulated user for {request.method} {request.url.path}")
    return {
        "user_id": settings.demo_user_id,
        "email": settings.demo_user_email,
        "name": settings.demo_user_name,
    }
