# dependencies.py
import secrets
import os
import logging
from typing import AsyncGenerator
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from models import async_session_maker

security = HTTPBasic()

def check_credentials(credentials: HTTPBasicCredentials = Depends(security)):
    """Checks the admin credentials against the environment."""

    env_user = os.environ.get("ADMIN_USER", "admin")
    env_pass = os.environ.get("ADMIN_PASS")

    if not env_pass:
        logging.error("CRITICAL: ADMIN_PASS is not set in the environment!")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="System is not configured (admin password missing)",
        )

    is_user_ok = secrets.compare_digest(credentials.username, env_user)
    is_pass_ok = secrets.compare_digest(credentials.password, env_pass)

    if not (is_user_ok and is_pass_ok):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Wrong username or password",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username

async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Creates a database session for the endpoint."""
    async with async_session_maker() as session:
        yield session

def get_staff_notifier(request: Request):
    """StaffNotifier created at startup (None when running without lifespan)."""
    return getattr(request.app.state, "staff_notifier", None)

def get_status_notifier(request: Request):
    """StatusNotifier for the website webhook."""
    return getattr(request.app.state, "status_notifier", None)
