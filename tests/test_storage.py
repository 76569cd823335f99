"""
Tests for blob storage and the storage router.
"""

import threading
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from media_digest.core.storage import BlobStorage, StorageRouter, translate_client_error
from media_digest.utils.error_handling import BadRequestError, StorageError, StorageErrorCode

MB = 1024 * 1024


def client_error(code, status=None, operation="UploadPart"):
    response = {"Error": {"Code": code, "Message": code}}
    if status is not None:
        response["ResponseMetadata"] = {"HTTPStatusCode": status}
    return ClientError(response, operation)


@pytest.fixture
def s3_client():
    client = MagicMock()
    client.create_multipart_upload.return_value = {"UploadId": "upload-1"}
    return client


def make_router(client, **kwargs):
    options = {
        "local_threshold": 100 * MB,
        "block_size": 4,
        "max_concurrency": 2,
        "block_attempts": 3,
        "retry_delay": 0,
    }
    options.update(kwargs)
    return StorageRouter(BlobStorage(bucket="test-bucket", client=client), **options)


def flaky_upload_part(failures_per_part):
    """upload_part stand-in failing the first N calls for selected parts."""
    calls = {}
    lock = threading.Lock()

    def upload_part(**kwargs):
        number = kwargs["PartNumber"]
        with lock:
            calls[number] = calls.get(number, 0) + 1
            attempt = calls[number]
        if attempt <= failures_per_part.get(number, 0):
            raise client_error("InternalError", 500)
        return {"ETag": f"etag-{number}"}

    return upload_part


def test_should_route_only_above_threshold(s3_client):
    router = make_router(s3_client)
    assert router.should_route(150 * MB)
    assert not router.should_route(100 * MB)
    assert not router.should_route(1)


@pytest.mark.asyncio
async def test_block_retried_until_it_succeeds(s3_client):
    s3_client.upload_part.side_effect = flaky_upload_part({2: 2})
    router = make_router(s3_client)
    progress = []

    result = await router.upload("video.mp4", b"abcdefghij", on_progress=progress.append)

    assert result.block_count == 3
    assert result.attempts == {1: 1, 2: 3, 3: 1}
    assert result.size_bytes == 10
    assert progress[-1] == 100
    s3_client.complete_multipart_upload.assert_called_once_with(
        Bucket="test-bucket",
        Key="video.mp4",
        UploadId="upload-1",
        MultipartUpload={"Parts": [
            {"PartNumber": 1, "ETag": "etag-1"},
            {"PartNumber": 2, "ETag": "etag-2"},
            {"PartNumber": 3, "ETag": "etag-3"},
        ]},
    )
    s3_client.abort_multipart_upload.assert_not_called()


@pytest.mark.asyncio
async def test_exhausted_block_aborts_without_commit(s3_client):
    s3_client.upload_part.side_effect = flaky_upload_part({2: 3})
    router = make_router(s3_client)

    with pytest.raises(StorageError) as error:
        await router.upload("video.mp4", b"abcdefghij")

    assert "after 3 attempts" in error.value.message
    assert error.value.details["block"] == 2
    s3_client.complete_multipart_upload.assert_not_called()
    s3_client.abort_multipart_upload.assert_called_once_with(
        Bucket="test-bucket", Key="video.mp4", UploadId="upload-1"
    )


@pytest.mark.asyncio
async def test_stream_payload_is_cut_into_blocks(s3_client):
    s3_client.upload_part.side_effect = flaky_upload_part({})
    router = make_router(s3_client)

    async def stream():
        for chunk in (b"abc", b"defgh", b"ij"):
            yield chunk

    result = await router.upload("video.mp4", stream(), size=10)

    bodies = {
        call.kwargs["PartNumber"]: call.kwargs["Body"] for call in s3_client.upload_part.call_args_list
    }
    assert bodies == {1: b"abcd", 2: b"efgh", 3: b"ij"}
    assert result.block_count == 3


@pytest.mark.asyncio
async def test_file_payload(s3_client, tmp_path):
    s3_client.upload_part.side_effect = flaky_upload_part({})
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"0123456789")

    result = await make_router(s3_client).upload("clip.mp4", path, size=10)

    assert result.block_count == 3
    assert result.url == "https://test-bucket.s3.amazonaws.com/clip.mp4"


@pytest.mark.asyncio
async def test_empty_payload_is_rejected(s3_client):
    with pytest.raises(BadRequestError):
        await make_router(s3_client).upload("empty.mp4", b"")

    s3_client.complete_multipart_upload.assert_not_called()
    s3_client.abort_multipart_upload.assert_called_once()


@pytest.mark.asyncio
async def test_download_streams_and_closes_body(s3_client):
    body = MagicMock()
    body.read.side_effect = [b"ab", b"cd", b""]
    s3_client.get_object.return_value = {"Body": body}

    chunks = [chunk async for chunk in make_router(s3_client).download("video.mp4")]

    assert chunks == [b"ab", b"cd"]
    body.close.assert_called_once()


@pytest.mark.asyncio
async def test_download_error_reaches_consumer(s3_client):
    s3_client.get_object.side_effect = client_error("NoSuchKey", 404, "GetObject")

    with pytest.raises(StorageError) as error:
        async for _ in make_router(s3_client).download("gone.mp4"):
            pass

    assert error.value.storage_code == StorageErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_exists(s3_client):
    router = make_router(s3_client)
    assert await router.exists("video.mp4")

    s3_client.head_object.side_effect = client_error("404", 404, "HeadObject")
    assert not await router.exists("video.mp4")

    s3_client.head_object.side_effect = client_error("AccessDenied", 403, "HeadObject")
    with pytest.raises(StorageError) as error:
        await router.exists("video.mp4")
    assert error.value.storage_code == StorageErrorCode.UNAUTHORIZED


@pytest.mark.asyncio
async def test_generate_upload_url(s3_client):
    s3_client.generate_presigned_url.return_value = "https://signed.example/video.mp4"

    upload_url = await make_router(s3_client).generate_upload_url("video.mp4")

    assert upload_url.url == "https://signed.example/video.mp4"
    assert upload_url.blob_name == "video.mp4"
    s3_client.generate_presigned_url.assert_called_once_with(
        "put_object",
        Params={"Bucket": "test-bucket", "Key": "video.mp4"},
        ExpiresIn=30 * 60,
    )


@pytest.mark.parametrize("code,status,expected", [
    ("AccessDenied", 403, StorageErrorCode.UNAUTHORIZED),
    ("InvalidAccessKeyId", None, StorageErrorCode.UNAUTHORIZED),
    ("NoSuchKey", 404, StorageErrorCode.NOT_FOUND),
    ("SlowDown", 503, StorageErrorCode.UNKNOWN),
])
def test_translate_client_error(code, status, expected):
    error = translate_client_error(client_error(code, status), "upload", "video.mp4")
    assert error.storage_code == expected
    assert error.code == f"STORAGE_{expected.value}"


def test_unconfigured_storage():
    storage = BlobStorage(bucket="")

    assert not storage.is_configured
    with pytest.raises(StorageError) as error:
        storage.begin_upload("video.mp4")
    assert error.value.storage_code == StorageErrorCode.NOT_INITIALIZED


def test_url_for_custom_endpoint():
    storage = BlobStorage(bucket="media", client=MagicMock(), endpoint_url="http://minio:9000/")
    assert storage.url_for("a.mp4") == "http://minio:9000/media/a.mp4"
