import re
from datetime import UTC, datetime

import boto3
import pytest
from botocore.config import Config
from botocore.stub import Stubber

from studybuddy.core.aws import get_s3_client
from studybuddy.main import app
from studybuddy.services.file_service import safe_filename


@pytest.fixture
def s3_stub(client):
    s3_client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="test",
        aws_secret_access_key="test",
        config=Config(signature_version="s3v4"),
    )
    stubber = Stubber(s3_client)
    stubber.activate()
    app.dependency_overrides[get_s3_client] = lambda: s3_client
    try:
        yield stubber
    finally:
        app.dependency_overrides.pop(get_s3_client, None)
        stubber.deactivate()


def test_upload_url_is_scoped_to_group(
    client, s3_stub, active_group, creator, auth_headers
):
    response = client.post(
        f"/groups/{active_group.group_id}/upload-url",
        json={"filename": "my notes.pdf", "content_type": "application/pdf"},
        headers=auth_headers(creator),
    )

    assert response.status_code == 200
    body = response.json()
    assert re.fullmatch(
        rf"groups/{active_group.group_id}/\d+-my_notes\.pdf", body["key"]
    )
    assert body["key"] in body["upload_url"]
    assert "X-Amz-Signature" in body["upload_url"]
    assert body["expires_in"] == 3600


def test_list_files_returns_download_links(
    client, s3_stub, settings, active_group, creator, auth_headers
):
    prefix = f"groups/{active_group.group_id}/"
    s3_stub.add_response(
        "list_objects_v2",
        {
            "IsTruncated": False,
            "KeyCount": 2,
            "Contents": [
                {
                    "Key": f"{prefix}1700000000000-week1.pdf",
                    "Size": 42,
                    "LastModified": datetime(2024, 1, 1, tzinfo=UTC),
                    "ETag": '"etag1"',
                },
                {
                    "Key": f"{prefix}1700000005000-week2.pdf",
                    "Size": 128,
                    "LastModified": datetime(2024, 1, 2, tzinfo=UTC),
                    "ETag": '"etag2"',
                },
            ],
            "Name": settings.aws_s3_bucket,
            "Prefix": prefix,
            "MaxKeys": 1000,
        },
        {"Bucket": settings.aws_s3_bucket, "Prefix": prefix},
    )

    response = client.get(
        f"/groups/{active_group.group_id}/files", headers=auth_headers(creator)
    )

    assert response.status_code == 200
    files = response.json()
    assert [f["filename"] for f in files] == ["week2.pdf", "week1.pdf"]
    assert files[0]["size"] == 128
    assert files[0]["key"] in files[0]["download_url"]
    s3_stub.assert_no_pending_responses()


def test_list_files_maps_s3_failures(
    client, s3_stub, active_group, creator, auth_headers
):
    s3_stub.add_client_error("list_objects_v2", service_error_code="AccessDenied")

    response = client.get(
        f"/groups/{active_group.group_id}/files", headers=auth_headers(creator)
    )

    assert response.status_code == 503
    assert response.json()["kind"] == "StorageError"


def test_delete_file_only_inside_group_prefix(
    client, s3_stub, settings, active_group, creator, auth_headers
):
    key = f"groups/{active_group.group_id}/1700000000000-week1.pdf"
    s3_stub.add_response(
        "delete_object", {}, {"Bucket": settings.aws_s3_bucket, "Key": key}
    )
    url = f"/groups/{active_group.group_id}/files"

    outside = client.delete(
        url, params={"key": "groups/GOTHER/secret.pdf"}, headers=auth_headers(creator)
    )
    assert outside.status_code == 403

    deleted = client.delete(url, params={"key": key}, headers=auth_headers(creator))
    assert deleted.status_code == 204
    s3_stub.assert_no_pending_responses()


def test_files_require_membership(client, s3_stub, active_group, student, auth_headers):
    response = client.post(
        f"/groups/{active_group.group_id}/upload-url",
        json={"filename": "a.txt"},
        headers=auth_headers(student),
    )

    assert response.status_code == 403


def test_safe_filename():
    assert safe_filename("../../etc/passwd") == "passwd"
    assert safe_filename("C:\\docs\\Week 1 (final).pdf") == "Week_1_final_.pdf"
    assert safe_filename("...") == "file"
