from botocore.client import BaseClient
from fastapi import APIRouter, Depends, Query, Response, status

from studybuddy.api.deps import get_current_user, get_storage, get_user_store
from studybuddy.core.aws import get_s3_client
from studybuddy.core.config import Settings, get_settings
from studybuddy.schemas.discussions import (
    DiscussionOut,
    MessageIn,
    MessageOut,
    NotesIn,
    NotesOut,
)
from studybuddy.schemas.files import FileOut, UploadUrlIn, UploadUrlOut
from studybuddy.schemas.groups import (
    GroupBrowseOut,
    GroupCreate,
    GroupDetailOut,
    GroupFilters,
    GroupLevel,
    GroupOut,
    MeetingLinkOut,
    ResourceIn,
    ResourceOut,
    TimeCommitment,
)
from studybuddy.schemas.users import UserOut
from studybuddy.services import (
    discussion_service,
    file_service,
    group_service,
    notes_service,
)
from studybuddy.storage import Storage
from studybuddy.storage.users import UserStore

router = APIRouter(prefix="/groups", tags=["groups"])


@router.post("", response_model=GroupOut, status_code=status.HTTP_201_CREATED)
def create_group(
    payload: GroupCreate,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> GroupOut:
    return group_service.create_group(storage, current_user, payload)


@router.get("", response_model=list[GroupBrowseOut])
def browse_groups(
    level: GroupLevel | None = None,
    time_commitment: TimeCommitment | None = None,
    concept: str | None = Query(default=None, max_length=200),
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> list[GroupBrowseOut]:
    filters = GroupFilters(
        level=level,
        time_commitment=time_commitment,
        concept=concept.strip() if concept and concept.strip() else None,
    )
    return group_service.browse_groups(storage, current_user, filters)


@router.get("/mine", response_model=list[GroupBrowseOut])
def my_groups(
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> list[GroupBrowseOut]:
    return group_service.my_groups(storage, current_user)


@router.get("/{group_id}", response_model=GroupDetailOut)
def get_group(
    group_id: str,
    storage: Storage = Depends(get_storage),
    users: UserStore = Depends(get_user_store),
    current_user: UserOut = Depends(get_current_user),
) -> GroupDetailOut:
    return group_service.get_group_detail(storage, users, current_user, group_id)


@router.post("/{group_id}/meeting-link", response_model=MeetingLinkOut)
def generate_meeting_link(
    group_id: str,
    storage: Storage = Depends(get_storage),
    settings: Settings = Depends(get_settings),
    current_user: UserOut = Depends(get_current_user),
) -> MeetingLinkOut:
    return group_service.generate_meeting_link(
        storage, settings, current_user, group_id
    )


@router.delete(
    "/{group_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT
)
def remove_member(
    group_id: str,
    user_id: str,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> Response:
    group_service.remove_member(storage, current_user, group_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{group_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
def leave_group(
    group_id: str,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> Response:
    group_service.leave_group(storage, current_user, group_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/{group_id}/resources",
    response_model=ResourceOut,
    status_code=status.HTTP_201_CREATED,
)
def add_resource(
    group_id: str,
    payload: ResourceIn,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> ResourceOut:
    return group_service.add_resource(storage, current_user, group_id, payload)


@router.delete(
    "/{group_id}/resources/{resource_id}", status_code=status.HTTP_204_NO_CONTENT
)
def remove_resource(
    group_id: str,
    resource_id: str,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> Response:
    group_service.remove_resource(storage, current_user, group_id, resource_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{group_id}/upload-url", response_model=UploadUrlOut)
def create_upload_url(
    group_id: str,
    payload: UploadUrlIn,
    storage: Storage = Depends(get_storage),
    s3_client: BaseClient = Depends(get_s3_client),
    current_user: UserOut = Depends(get_current_user),
) -> UploadUrlOut:
    return file_service.create_upload_url(
        storage,
        s3_client,
        current_user,
        group_id,
        payload.filename,
        payload.content_type,
    )


@router.get("/{group_id}/files", response_model=list[FileOut])
def list_files(
    group_id: str,
    storage: Storage = Depends(get_storage),
    s3_client: BaseClient = Depends(get_s3_client),
    current_user: UserOut = Depends(get_current_user),
) -> list[FileOut]:
    return file_service.list_group_files(storage, s3_client, current_user, group_id)


@router.delete("/{group_id}/files", status_code=status.HTTP_204_NO_CONTENT)
def delete_file(
    group_id: str,
    key: str = Query(min_length=1),
    storage: Storage = Depends(get_storage),
    s3_client: BaseClient = Depends(get_s3_client),
    current_user: UserOut = Depends(get_current_user),
) -> Response:
    file_service.delete_group_file(storage, s3_client, current_user, group_id, key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{group_id}/discussion", response_model=DiscussionOut)
def get_discussion(
    group_id: str,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> DiscussionOut:
    return discussion_service.get_discussion(storage, current_user, group_id)


@router.post(
    "/{group_id}/discussion/messages",
    response_model=MessageOut,
    status_code=status.HTTP_201_CREATED,
)
def add_message(
    group_id: str,
    payload: MessageIn,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> MessageOut:
    return discussion_service.add_message(
        storage, current_user, group_id, payload.message
    )


@router.get("/{group_id}/notes", response_model=NotesOut)
def get_notes(
    group_id: str,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> NotesOut:
    return notes_service.get_notes(storage, current_user, group_id)


@router.put("/{group_id}/notes", response_model=NotesOut)
def save_notes(
    group_id: str,
    payload: NotesIn,
    storage: Storage = Depends(get_storage),
    current_user: UserOut = Depends(get_current_user),
) -> NotesOut:
    return notes_service.save_notes(storage, current_user, group_id, payload.notes)
