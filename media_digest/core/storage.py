"""
Module for staging large uploads through S3-compatible blob storage.
"""

import asyncio
import datetime
from contextlib import aclosing, contextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from retry.api import retry_call

from media_digest.config import config
from media_digest.models.schemas import UploadResult, UploadUrl
from media_digest.utils.error_handling import BadRequestError, StorageError, StorageErrorCode
from media_digest.utils.helpers import format_size
from media_digest.utils.logger import logging


READ_CHUNK_SIZE = 256 * 1024

UNAUTHORIZED_CODES = {
    "AccessDenied", "InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken", "InvalidToken",
}
NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "NoSuchUpload", "NotFound", "404"}

UploadPayload = Union[bytes, bytearray, str, Path, AsyncIterator[bytes]]


def translate_client_error(error: ClientError, action: str, blob_name: str) -> StorageError:
    """Map a botocore ClientError onto the storage error taxonomy."""
    code = error.response.get("Error", {}).get("Code", "")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")

    if code in UNAUTHORIZED_CODES or status in (401, 403):
        storage_code = StorageErrorCode.UNAUTHORIZED
    elif code in NOT_FOUND_CODES or status == 404:
        storage_code = StorageErrorCode.NOT_FOUND
    else:
        storage_code = StorageErrorCode.UNKNOWN

    return StorageError(
        f"Storage {action} failed for {blob_name}",
        storage_code,
        details={"blob_name": blob_name, "aws_code": code, "status": status},
    )


@contextmanager
def storage_errors(action: str, blob_name: str):
    try:
        yield
    except ClientError as e:
        raise translate_client_error(e, action, blob_name) from e
    except BotoCoreError as e:
        raise StorageError(
            f"Storage {action} failed for {blob_name}",
            StorageErrorCode.UNKNOWN,
            details={"blob_name": blob_name, "reason": str(e)},
        ) from e


class BlobStorage:
    """
    Thin synchronous wrapper over a boto3 S3 client.

    The client is created once and shared by every request; boto3 clients are
    safe to use from several threads. Async callers go through StorageRouter,
    which runs these methods in worker threads.
    """

    def __init__(
        self,
        bucket: Optional[str] = None,
        client: Any = None,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
    ):
        self.bucket = bucket if bucket is not None else config.STORAGE_BUCKET
        self.endpoint_url = endpoint_url if endpoint_url is not None else config.STORAGE_ENDPOINT_URL
        self.region = region if region is not None else config.STORAGE_REGION

        if client is None and self.bucket:
            client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                region_name=self.region,
                config=BotoConfig(signature_version="s3v4", max_pool_connections=32),
            )
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket) and self._client is not None

    @property
    def client(self):
        if not self.is_configured:
            raise StorageError(
                "Blob storage is not configured. Set STORAGE_BUCKET to process large files.",
                StorageErrorCode.NOT_INITIALIZED,
            )
        return self._client

    def url_for(self, blob_name: str) -> str:
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{blob_name}"
        return f"https://{self.bucket}.s3.amazonaws.com/{blob_name}"

    def begin_upload(self, blob_name: str, content_type: str = "application/octet-stream") -> str:
        with storage_errors("upload", blob_name):
            response = self.client.create_multipart_upload(
                Bucket=self.bucket, Key=blob_name, ContentType=content_type
            )
        return response["UploadId"]

    def upload_block(self, blob_name: str, upload_id: str, part_number: int, data: bytes) -> str:
        with storage_errors("block upload", blob_name):
            response = self.client.upload_part(
                Bucket=self.bucket,
                Key=blob_name,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=data,
            )
        return response["ETag"]

    def commit_upload(self, blob_name: str, upload_id: str, parts: List[Dict[str, Any]]) -> None:
        with storage_errors("commit", blob_name):
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=blob_name,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )

    def abort_upload(self, blob_name: str, upload_id: str) -> None:
        with storage_errors("abort", blob_name):
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=blob_name, UploadId=upload_id)

    def open_download(self, blob_name: str):
        with storage_errors("download", blob_name):
            response = self.client.get_object(Bucket=self.bucket, Key=blob_name)
        return response["Body"]

    def read(self, body, blob_name: str, amount: int = READ_CHUNK_SIZE) -> bytes:
        with storage_errors("download", blob_name):
            return body.read(amount)

    def delete(self, blob_name: str) -> None:
        with storage_errors("delete", blob_name):
            self.client.delete_object(Bucket=self.bucket, Key=blob_name)

    def exists(self, blob_name: str) -> bool:
        try:
            with storage_errors("lookup", blob_name):
                self.client.head_object(Bucket=self.bucket, Key=blob_name)
        except StorageError as e:
            if e.storage_code == StorageErrorCode.NOT_FOUND:
                return False
            raise
        return True

    def generate_upload_url(self, blob_name: str, expires_in: int) -> str:
        with storage_errors("upload URL generation", blob_name):
            return self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": blob_name},
                ExpiresIn=expires_in,
            )


class StorageRouter:
    """Decides when an upload goes through blob storage and moves it there and back."""

    def __init__(
        self,
        storage: BlobStorage,
        local_threshold: int = config.MAX_LOCAL_FILE_SIZE,
        block_size: int = config.STORAGE_BLOCK_SIZE,
        max_concurrency: int = config.STORAGE_MAX_CONCURRENCY,
        block_attempts: int = config.STORAGE_BLOCK_ATTEMPTS,
        retry_delay: float = config.STORAGE_RETRY_DELAY,
        upload_url_expiry_minutes: int = config.UPLOAD_URL_EXPIRY_MINUTES,
    ):
        self.storage = storage
        self.local_threshold = local_threshold
        self.block_size = block_size
        self.max_concurrency = max_concurrency
        self.block_attempts = block_attempts
        self.retry_delay = retry_delay
        self.upload_url_expiry_minutes = upload_url_expiry_minutes

    def should_route(self, size_bytes: int) -> bool:
        """Whether a payload of this size must be staged through blob storage."""
        return size_bytes > self.local_threshold

    async def _blocks(self, payload: UploadPayload) -> AsyncIterator[Tuple[int, bytes]]:
        if isinstance(payload, (bytes, bytearray)):
            for number, offset in enumerate(range(0, len(payload), self.block_size), start=1):
                yield number, bytes(payload[offset:offset + self.block_size])
        elif isinstance(payload, (str, Path)):
            with open(payload, "rb") as handle:
                number = 0
                while True:
                    block = await asyncio.to_thread(handle.read, self.block_size)
                    if not block:
                        break
                    number += 1
                    yield number, block
        else:
            pending = bytearray()
            number = 0
            async for chunk in payload:
                pending.extend(chunk)
                while len(pending) >= self.block_size:
                    number += 1
                    yield number, bytes(pending[:self.block_size])
                    del pending[:self.block_size]
            if pending:
                yield number + 1, bytes(pending)

    def _upload_block_with_retry(
        self, blob_name: str, upload_id: str, number: int, block: bytes, attempts: Dict[int, int]
    ) -> str:
        def attempt() -> str:
            attempts[number] = attempts.get(number, 0) + 1
            return self.storage.upload_block(blob_name, upload_id, number, block)

        try:
            return retry_call(attempt, tries=self.block_attempts, delay=self.retry_delay, logger=logging)
        except StorageError as e:
            storage_code, reason = e.storage_code, e.message
        except Exception as e:
            storage_code, reason = StorageErrorCode.UNKNOWN, str(e)

        raise StorageError(
            f"Failed to upload block {number} of {blob_name} after {attempts[number]} attempts",
            storage_code,
            details={"blob_name": blob_name, "block": number, "attempts": attempts[number], "reason": reason},
        )

    async def upload(
        self,
        blob_name: str,
        payload: UploadPayload,
        size: Optional[int] = None,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> UploadResult:
        """
        Upload a payload as a multipart blob.

        Blocks are staged with bounded concurrency and each block is retried
        independently. The block list is committed only when every block
        succeeded; otherwise the multipart upload is aborted.

        Args:
            blob_name: Target blob name
            payload: bytes, a file path, or an async iterator of bytes
            size: Total size, used for progress reporting
            on_progress: Called with the uploaded percentage

        Returns:
            UploadResult with the blob URL and per-block attempt counts
        """
        if size is None and isinstance(payload, (bytes, bytearray)):
            size = len(payload)

        logging.info(f"Uploading {blob_name} ({format_size(size)}) in {format_size(self.block_size)} blocks")
        upload_id = await asyncio.to_thread(self.storage.begin_upload, blob_name)

        semaphore = asyncio.Semaphore(self.max_concurrency)
        attempts: Dict[int, int] = {}
        etags: Dict[int, str] = {}
        tasks: List[asyncio.Task] = []
        uploaded = 0

        async def stage(number: int, block: bytes) -> None:
            nonlocal uploaded
            try:
                etags[number] = await asyncio.to_thread(
                    self._upload_block_with_retry, blob_name, upload_id, number, block, attempts
                )
            finally:
                semaphore.release()
            uploaded += len(block)
            if on_progress and size:
                on_progress(min(100.0, uploaded / size * 100))

        try:
            async with aclosing(self._blocks(payload)) as blocks:
                async for number, block in blocks:
                    await semaphore.acquire()
                    if _has_failed(tasks):
                        semaphore.release()
                        break
                    tasks.append(asyncio.create_task(stage(number, block)))

            await asyncio.gather(*tasks)
            if not etags:
                raise BadRequestError("Cannot upload an empty file")

            parts = [{"PartNumber": number, "ETag": etags[number]} for number in sorted(etags)]
            await asyncio.to_thread(self.storage.commit_upload, blob_name, upload_id, parts)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self._abort(blob_name, upload_id)
            raise

        total = uploaded if size is None else size
        logging.info(f"Uploaded {blob_name}: {len(etags)} blocks, {format_size(total)}")
        return UploadResult(
            blob_name=blob_name,
            url=self.storage.url_for(blob_name),
            size_bytes=total,
            block_count=len(etags),
            attempts=dict(attempts),
        )

    async def _abort(self, blob_name: str, upload_id: str) -> None:
        try:
            await asyncio.to_thread(self.storage.abort_upload, blob_name, upload_id)
            logging.warning(f"Aborted multipart upload of {blob_name}")
        except StorageError as e:
            logging.error(f"Could not abort multipart upload of {blob_name}: {e.message}")

    async def download(self, blob_name: str) -> AsyncIterator[bytes]:
        """Stream a blob. Errors raised by the remote side propagate to the consumer."""
        body = await asyncio.to_thread(self.storage.open_download, blob_name)
        try:
            while True:
                chunk = await asyncio.to_thread(self.storage.read, body, blob_name)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    async def delete(self, blob_name: str) -> None:
        await asyncio.to_thread(self.storage.delete, blob_name)
        logging.info(f"Deleted blob {blob_name}")

    async def exists(self, blob_name: str) -> bool:
        return await asyncio.to_thread(self.storage.exists, blob_name)

    async def generate_upload_url(self, blob_name: str, expiry_minutes: Optional[int] = None) -> UploadUrl:
        """
        Create a presigned PUT URL for a single blob.

        Args:
            blob_name: Blob the client may write
            expiry_minutes: Lifetime of the URL (defaults to the configured expiry)

        Returns:
            UploadUrl with the URL and its expiry time
        """
        minutes = expiry_minutes or self.upload_url_expiry_minutes
        url = await asyncio.to_thread(self.storage.generate_upload_url, blob_name, minutes * 60)
        expires_at = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(minutes=minutes)
        return UploadUrl(url=url, blob_name=blob_name, expires_at=expires_at.isoformat())


def _has_failed(tasks: List[asyncio.Task]) -> bool:
    return any(task.done() and not task.cancelled() and task.exception() is not None for task in tasks)
