import logging
from datetime import date

from botocore.client import BaseClient
from pydantic import ValidationError as PydanticValidationError

from studybuddy.core.config import get_settings
from studybuddy.core.database import SessionLocal
from studybuddy.core.errors import StudyBuddyError
from studybuddy.schemas.users import SignupIn
from studybuddy.storage.users import CognitoUserStore, SqlUserStore, UserStore

logger = logging.getLogger(__name__)

_PLACEHOLDER_BIRTHDATE = date(2000, 1, 1)


def _ensure_super_admin(users: UserStore, email: str, password: str | None) -> bool:
    user = users.get_by_email(email)
    if user is None:
        if not password:
            logger.warning(
                "Bootstrap super admin %s does not exist and no password was given",
                email,
            )
            return False
        user = users.create(
            SignupIn(
                email=email,
                password=password,
                first_name="Super",
                last_name="Admin",
                date_of_birth=_PLACEHOLDER_BIRTHDATE,
            )
        )
        logger.info("Created bootstrap super admin %s", user.user_id)
        if user.is_super_admin:
            return True

    if user.is_super_admin:
        return False
    users.promote(user.user_id)
    return True


def run_super_admin_bootstrap(cognito_client: BaseClient | None = None) -> bool:
    """Seed or promote ``BOOTSTRAP_SUPER_ADMIN_EMAIL``; returns True when anything changed."""
    settings = get_settings()
    email = (settings.bootstrap_super_admin_email or "").strip().lower()
    if not email:
        return False

    db = None
    if settings.user_store == "cognito" and cognito_client is not None:
        users: UserStore = CognitoUserStore(cognito_client, settings)
    else:
        db = SessionLocal()
        users = SqlUserStore(db, settings)

    try:
        return _ensure_super_admin(
            users, email, settings.bootstrap_super_admin_password
        )
    except (StudyBuddyError, PydanticValidationError):
        logger.exception("Super admin bootstrap for %s failed", email)
        return False
    finally:
        if db is not None:
            db.close()
