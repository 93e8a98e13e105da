from typing import Optional
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.infrastructure.database import get_session_factory


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> str:
    # Authentication happens upstream; the gateway forwards the acting user
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )
    return x_user_id


def get_aggregation_session_factory(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> Optional[async_sessionmaker]:
    """Session factory for the concurrent charge fan-out, or None to run in turn"""
    if not settings.BILLING_PARALLEL_AGGREGATION:
        return None
    return session_factory
