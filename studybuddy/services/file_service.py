import logging
import re
from datetime import UTC, datetime

from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError

from studybuddy.core.aws import list_s3_objects_with_prefix, presign_url
from studybuddy.core.config import get_settings
from studybuddy.core.errors import ForbiddenError, StorageError
from studybuddy.schemas.files import FileOut, UploadUrlOut
from studybuddy.schemas.users import UserOut
from studybuddy.services.permissions import require_member
from studybuddy.storage import Storage

logger = logging.getLogger(__name__)

UPLOAD_URL_TTL = 3600
DOWNLOAD_URL_TTL = 3600
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def group_prefix(group_id: str) -> str:
    return f"groups/{group_id}/"


def safe_filename(filename: str) -> str:
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE.sub("_", name).strip("._")
    return name or "file"


def _display_name(key: str) -> str:
    name = key.rsplit("/", 1)[-1]
    stamp, sep, rest = name.partition("-")
    return rest if sep and stamp.isdigit() else name


def create_upload_url(
    storage: Storage,
    s3_client: BaseClient,
    caller: UserOut,
    group_id: str,
    filename: str,
    content_type: str | None = None,
) -> UploadUrlOut:
    storage.groups.get(group_id)
    require_member(storage, group_id, caller)

    millis = int(datetime.now(UTC).timestamp() * 1000)
    key = f"{group_prefix(group_id)}{millis}-{safe_filename(filename)}"
    try:
        url = presign_url(
            s3_client,
            key,
            method="PUT",
            expires=UPLOAD_URL_TTL,
            content_type=content_type,
        )
    except (ClientError, BotoCoreError) as exc:
        logger.exception("Could not presign upload for %s", key)
        raise StorageError("Could not create the upload URL") from exc
    return UploadUrlOut(upload_url=url, key=key, expires_in=UPLOAD_URL_TTL)


def list_group_files(
    storage: Storage, s3_client: BaseClient, caller: UserOut, group_id: str
) -> list[FileOut]:
    storage.groups.get(group_id)
    require_member(storage, group_id, caller)

    try:
        objects = list_s3_objects_with_prefix(s3_client, group_prefix(group_id))
        files = [
            FileOut(
                key=obj["Key"],
                filename=_display_name(obj["Key"]),
                size=obj.get("Size", 0),
                last_modified=obj.get("LastModified"),
                download_url=presign_url(
                    s3_client, obj["Key"], method="GET", expires=DOWNLOAD_URL_TTL
                ),
            )
            for obj in objects
            if not obj["Key"].endswith("/")
        ]
    except (ClientError, BotoCoreError) as exc:
        logger.exception("Could not list files for group %s", group_id)
        raise StorageError("Could not list group files") from exc
    files.sort(key=lambda f: f.key, reverse=True)
    return files


def delete_group_file(
    storage: Storage,
    s3_client: BaseClient,
    caller: UserOut,
    group_id: str,
    key: str,
) -> None:
    storage.groups.get(group_id)
    require_member(storage, group_id, caller)
    prefix = group_prefix(group_id)
    if not key.startswith(prefix) or ".." in key[len(prefix):].split("/"):
        raise ForbiddenError("File does not belong to this group")

    try:
        s3_client.delete_object(Bucket=get_settings().aws_s3_bucket, Key=key)
    except (ClientError, BotoCoreError) as exc:
        logger.exception("Could not delete %s", key)
        raise StorageError("Could not delete the file") from exc
    logger.info("User %s deleted %s", caller.user_id, key)
