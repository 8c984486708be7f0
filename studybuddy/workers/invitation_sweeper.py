import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from botocore.client import BaseClient
from fastapi import FastAPI
from sqlalchemy.orm import Session

from studybuddy.core.config import Settings, get_settings
from studybuddy.core.database import SessionLocal
from studybuddy.services import invitation_service
from studybuddy.storage import build_dynamodb_storage, build_sql_storage

logger = logging.getLogger(__name__)


def run_sweep_tick(
    *,
    settings: Settings | None = None,
    dynamodb_client: BaseClient | None = None,
    session_factory: Callable[[], Session] = SessionLocal,
    close_session: bool = True,
    now: datetime | None = None,
) -> int:
    """
    Expire overdue pending invitations once.

    Returns the number of invitations flipped to expired.
    """
    settings = settings or get_settings()
    now = now or datetime.now(UTC)

    if settings.group_store == "dynamodb":
        if dynamodb_client is None:
            logger.debug("Invitation sweep skipped: DynamoDB client not ready")
            return 0
        storage = build_dynamodb_storage(dynamodb_client, settings)
        return invitation_service.cleanup_expired(storage, now)

    session = session_factory()
    try:
        storage = build_sql_storage(session, settings)
        return invitation_service.cleanup_expired(storage, now)
    finally:
        if close_session:
            session.close()


async def sweeper_loop(app: FastAPI) -> None:
    settings = get_settings()
    interval = settings.invitation_sweep_interval_seconds

    while True:
        try:
            expired = await asyncio.to_thread(
                run_sweep_tick,
                settings=settings,
                dynamodb_client=getattr(app.state, "dynamodb_client", None),
            )
            logger.debug("Invitation sweep tick finished, %s expired", expired)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Invitation sweep tick failed")

        await asyncio.sleep(interval)
