import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from functools import lru_cache
from typing import Literal

from fastapi import FastAPI
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_env: str = Field(default="development", alias="APP_ENV")
    database_url: str = Field(
        default="sqlite:///./studybuddy.db", alias="DATABASE_URL"
    )

    jwt_secret: str = Field(alias="JWT_SECRET")
    jwt_algo: str = Field(default="HS256", alias="JWT_ALGO")
    access_min: int = Field(default=60, alias="ACCESS_MIN", ge=1)

    user_store: Literal["sql", "cognito"] = Field(default="sql", alias="USER_STORE")
    group_store: Literal["sql", "dynamodb"] = Field(
        default="sql", alias="GROUP_STORE"
    )
    email_backend: Literal["smtp", "ses", "disabled"] = Field(
        default="disabled", alias="EMAIL_BACKEND"
    )

    smtp_host: str = Field(default="smtp.gmail.com", alias="SMTP_HOST")
    smtp_port: int = Field(default=587, alias="SMTP_PORT")
    smtp_username: str | None = Field(default=None, alias="SMTP_USERNAME")
    smtp_password: str | None = Field(default=None, alias="SMTP_PASSWORD")
    mail_from: str = Field(default="noreply@studybuddy.app", alias="MAIL_FROM")

    aws_access_key_id: str | None = Field(default=None, alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: str | None = Field(
        default=None, alias="AWS_SECRET_ACCESS_KEY"
    )
    aws_region: str = Field(default="us-east-1", alias="AWS_REGION")
    aws_s3_bucket: str = Field(default="studybuddy-resources", alias="AWS_S3_BUCKET")

    ddb_endpoint: str | None = Field(default=None, alias="DYNAMODB_ENDPOINT")
    ddb_table_prefix: str = Field(default="StudyBuddy-", alias="DYNAMODB_TABLE_PREFIX")

    cognito_user_pool_id: str | None = Field(
        default=None, alias="COGNITO_USER_POOL_ID"
    )
    cognito_client_id: str | None = Field(default=None, alias="COGNITO_CLIENT_ID")
    cognito_client_secret: str | None = Field(
        default=None, alias="COGNITO_CLIENT_SECRET"
    )

    super_admin_emails_raw: str = Field(default="", alias="SUPER_ADMIN_EMAILS")
    bootstrap_super_admin_email: str | None = Field(
        default=None, alias="BOOTSTRAP_SUPER_ADMIN_EMAIL"
    )
    bootstrap_super_admin_password: str | None = Field(
        default=None, alias="BOOTSTRAP_SUPER_ADMIN_PASSWORD"
    )

    frontend_url: str = Field(default="http://localhost:3000", alias="FRONTEND_URL")
    meeting_link_base: str = Field(
        default="https://meet.google.com", alias="MEETING_LINK_BASE"
    )
    invitation_ttl_days: int = Field(default=7, alias="INVITATION_TTL_DAYS", ge=1)
    invitation_sweep_interval_seconds: int = Field(
        default=3600, alias="INVITATION_SWEEP_INTERVAL_SECONDS", ge=0
    )
    storage_timeout_seconds: int = Field(
        default=10, alias="STORAGE_TIMEOUT_SECONDS", ge=1
    )
    notes_max_length: int = Field(default=10000, alias="NOTES_MAX_LENGTH", ge=1)

    @property
    def super_admin_emails(self) -> set[str]:
        return {
            email.strip().lower()
            for email in self.super_admin_emails_raw.split(",")
            if email.strip()
        }


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore


@asynccontextmanager
async def lifespan(app: FastAPI):
    from studybuddy.bootstrap.super_admin import run_super_admin_bootstrap
    from studybuddy.core.aws import (
        build_cognito_client,
        build_dynamodb_client,
        build_s3_client,
        build_ses_client,
        ensure_dynamodb_tables,
    )
    from studybuddy.services.notification_service import build_email_sender
    from studybuddy.workers.invitation_sweeper import sweeper_loop

    settings = get_settings()

    s3_client = build_s3_client()
    app.state.s3_client = s3_client

    ddb_client = None
    if settings.group_store == "dynamodb":
        ddb_client = build_dynamodb_client()
        await asyncio.to_thread(ensure_dynamodb_tables, ddb_client)
    app.state.dynamodb_client = ddb_client

    cognito_client = None
    if settings.user_store == "cognito":
        cognito_client = build_cognito_client()
    app.state.cognito_client = cognito_client

    ses_client = build_ses_client() if settings.email_backend == "ses" else None
    app.state.ses_client = ses_client
    app.state.email_sender = build_email_sender(settings, ses_client=ses_client)

    await asyncio.to_thread(run_super_admin_bootstrap, cognito_client)

    sweeper_task = None
    if settings.invitation_sweep_interval_seconds > 0:
        sweeper_task = asyncio.create_task(sweeper_loop(app))

    try:
        yield
    finally:
        if sweeper_task is not None:
            sweeper_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper_task
        for aws_client in (s3_client, ddb_client, cognito_client, ses_client):
            close = getattr(aws_client, "close", None)
            if callable(close):
                close()
        logger.info("AWS clients closed")
