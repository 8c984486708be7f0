import logging
from typing import Literal

import boto3
from boto3.session import Session
from botocore.client import BaseClient
from botocore.config import Config
from fastapi import Request

from studybuddy.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

GROUPS_TABLE = "Groups"
MEMBERS_TABLE = "GroupMembers"
JOIN_REQUESTS_TABLE = "JoinRequests"
INVITATIONS_TABLE = "Invitations"
DISCUSSIONS_TABLE = "Discussions"
NOTES_TABLE = "Notes"
USER_PROFILES_TABLE = "UserProfiles"


def _build_session() -> Session:
    return boto3.Session(
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name=settings.aws_region,
    )


def _client_config(**kwargs) -> Config:
    return Config(
        connect_timeout=settings.storage_timeout_seconds,
        read_timeout=settings.storage_timeout_seconds,
        retries={"max_attempts": 3, "mode": "standard"},
        **kwargs,
    )


def build_s3_client() -> BaseClient:
    session = _build_session()
    return session.client("s3", config=_client_config(signature_version="s3v4"))


def build_dynamodb_client() -> BaseClient:
    session = _build_session()
    endpoint: str | None = settings.ddb_endpoint
    if endpoint:
        return session.client(
            "dynamodb", endpoint_url=endpoint, config=_client_config()
        )
    return session.client("dynamodb", config=_client_config())


def build_ses_client() -> BaseClient:
    session = _build_session()
    return session.client("ses", config=_client_config())


def build_cognito_client() -> BaseClient:
    session = _build_session()
    return session.client("cognito-idp", config=_client_config())


def get_s3_client(request: Request) -> BaseClient:
    s3_client = getattr(request.app.state, "s3_client", None)
    if s3_client is None:
        raise RuntimeError("S3 client is not configured on application state")
    return s3_client


def get_dynamodb_client(request: Request) -> BaseClient:
    ddb_client = getattr(request.app.state, "dynamodb_client", None)
    if ddb_client is None:
        raise RuntimeError("DynamoDB client is not configured on application state")
    return ddb_client


def get_cognito_client(request: Request) -> BaseClient:
    cognito_client = getattr(request.app.state, "cognito_client", None)
    if cognito_client is None:
        raise RuntimeError("Cognito client is not configured on application state")
    return cognito_client


def table_name(base: str) -> str:
    return f"{settings.ddb_table_prefix}{base}"


def presign_url(
    s3_client: BaseClient,
    key: str,
    method: Literal["GET", "PUT"] = "PUT",
    expires: int = 3600,
    content_type: str | None = None,
) -> str:
    if method == "PUT":
        client_method = "put_object"
    elif method == "GET":
        client_method = "get_object"
    else:
        raise ValueError(f"Unsupported method for presign: {method}")

    params = {"Bucket": settings.aws_s3_bucket, "Key": key}
    if content_type and method == "PUT":
        params["ContentType"] = content_type

    return s3_client.generate_presigned_url(
        ClientMethod=client_method,
        Params=params,
        ExpiresIn=expires,
        HttpMethod=method,
    )


def list_s3_objects_with_prefix(
    s3_client: BaseClient,
    prefix: str,
) -> list[dict]:
    """
    Return the objects stored under ``prefix`` as raw ``list_objects_v2`` entries.
    """
    paginator = s3_client.get_paginator("list_objects_v2")

    objects: list[dict] = []

    for page in paginator.paginate(
        Bucket=settings.aws_s3_bucket,
        Prefix=prefix,
    ):
        objects.extend(page.get("Contents", []))

    return objects


def _gsi(name: str, hash_key: str, range_key: str | None = None) -> dict:
    key_schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    if range_key:
        key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
    return {
        "IndexName": name,
        "KeySchema": key_schema,
        "Projection": {"ProjectionType": "ALL"},
    }


def _table_definitions() -> list[dict]:
    def attrs(*names: str) -> list[dict]:
        return [{"AttributeName": n, "AttributeType": "S"} for n in names]

    return [
        {
            "TableName": table_name(GROUPS_TABLE),
            "KeySchema": [{"AttributeName": "group_id", "KeyType": "HASH"}],
            "AttributeDefinitions": attrs(
                "group_id", "status", "created_at", "created_by"
            ),
            "GlobalSecondaryIndexes": [
                _gsi("StatusIndex", "status", "created_at"),
                _gsi("CreatorIndex", "created_by"),
            ],
        },
        {
            "TableName": table_name(MEMBERS_TABLE),
            "KeySchema": [
                {"AttributeName": "group_id", "KeyType": "HASH"},
                {"AttributeName": "user_id", "KeyType": "RANGE"},
            ],
            "AttributeDefinitions": attrs("group_id", "user_id"),
            "GlobalSecondaryIndexes": [_gsi("UserIdIndex", "user_id")],
        },
        {
            "TableName": table_name(JOIN_REQUESTS_TABLE),
            "KeySchema": [{"AttributeName": "request_id", "KeyType": "HASH"}],
            "AttributeDefinitions": attrs("request_id", "group_id", "requested_at"),
            "GlobalSecondaryIndexes": [
                _gsi("GroupIdIndex", "group_id", "requested_at")
            ],
        },
        {
            "TableName": table_name(INVITATIONS_TABLE),
            "KeySchema": [{"AttributeName": "token_hash", "KeyType": "HASH"}],
            "AttributeDefinitions": attrs(
                "token_hash", "group_id", "status", "expires_at"
            ),
            "GlobalSecondaryIndexes": [
                _gsi("GroupIdIndex", "group_id"),
                _gsi("StatusIndex", "status", "expires_at"),
            ],
        },
        {
            "TableName": table_name(DISCUSSIONS_TABLE),
            "KeySchema": [{"AttributeName": "group_id", "KeyType": "HASH"}],
            "AttributeDefinitions": attrs("group_id"),
        },
        {
            "TableName": table_name(NOTES_TABLE),
            "KeySchema": [
                {"AttributeName": "user_id", "KeyType": "HASH"},
                {"AttributeName": "group_id", "KeyType": "RANGE"},
            ],
            "AttributeDefinitions": attrs("user_id", "group_id"),
            "GlobalSecondaryIndexes": [_gsi("GroupIdIndex", "group_id")],
        },
        {
            "TableName": table_name(USER_PROFILES_TABLE),
            "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
            "AttributeDefinitions": attrs("user_id"),
        },
    ]


def ensure_dynamodb_tables(ddb_client: BaseClient) -> list[str]:
    """
    Create any missing StudyBuddy table and block until it is active.

    Returns the names of the tables that were created.
    """
    if settings.app_env == "test":
        return []
    if settings.app_env == "production" and not settings.ddb_endpoint:
        return []

    created: list[str] = []
    for definition in _table_definitions():
        name = definition["TableName"]
        try:
            ddb_client.describe_table(TableName=name)
            continue
        except ddb_client.exceptions.ResourceNotFoundException:
            pass

        ddb_client.create_table(BillingMode="PAY_PER_REQUEST", **definition)
        ddb_client.get_waiter("table_exists").wait(TableName=name)
        logger.info("Created DynamoDB table %s", name)
        created.append(name)
    return created
