"""
Multipart upload planning and orchestration
"""

import hashlib
import inspect
import logging
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional

from .error import EntityTooLargeException, UnexpectedShortReadException, ValidationException
from .models import MultipartInfo, Part, PutObjectResult, Upload, UploadSession

if TYPE_CHECKING:
    from .client import NimbusClient

MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10000
MAX_MULTIPART_OBJECT_SIZE = 5 * 1024 * 1024 * 1024 * 1024
MAX_STREAM_OBJECT_SIZE = MAX_PARTS * MIN_PART_SIZE
UNKNOWN_SIZE = -1


def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def calculate_multipart_size(size: int) -> MultipartInfo:
    """
    Split ``size`` bytes into at most ``MAX_PARTS`` parts.

    The part size is a multiple of ``MIN_PART_SIZE``; only the last part may
    be smaller. ``UNKNOWN_SIZE`` plans for the largest streamable object.
    """
    if size == UNKNOWN_SIZE:
        size = MAX_STREAM_OBJECT_SIZE
    if size < 0:
        raise ValidationException(f"Invalid object size {size}.")
    if size > MAX_MULTIPART_OBJECT_SIZE:
        raise EntityTooLargeException(size, MAX_MULTIPART_OBJECT_SIZE)

    part_size = _ceil_div(size, MAX_PARTS)
    part_size = max(MIN_PART_SIZE, _ceil_div(part_size, MIN_PART_SIZE) * MIN_PART_SIZE)
    part_count = max(1, _ceil_div(size, part_size))
    last_part_size = size - (part_count - 1) * part_size
    return MultipartInfo(part_size=part_size, part_count=part_count, last_part_size=last_part_size)


async def read_full(stream, size: int) -> Optional[bytes]:
    """
    Read up to ``size`` bytes, calling ``stream.read`` until filled or exhausted.

    Works with both blocking and ``async`` readers. Returns ``None`` when the
    stream had nothing left, and a shorter buffer when it ran out early.
    """
    buffer = bytearray()
    while len(buffer) < size:
        chunk = stream.read(size - len(buffer))
        if inspect.isawaitable(chunk):
            chunk = await chunk
        if not chunk:
            break
        buffer.extend(chunk)
    if not buffer:
        return None
    return bytes(buffer)


class UploadState(Enum):
    NOT_STARTED = "not_started"
    PLANNING = "planning"
    RESUMING_EXISTING = "resuming_existing"
    STARTING_FRESH = "starting_fresh"
    UPLOADING_PARTS = "uploading_parts"
    COMPLETING = "completing"
    DONE = "done"
    ABORTED = "aborted"


class MultipartUploader:
    """
    Uploads one object in parts, resuming an earlier incomplete upload of the
    same key when the server still has it.

    Parts go up one at a time in increasing order. A part already on the
    server is reused only when its size and MD5 match the local bytes. A
    failed upload is left on the server so a later call can resume it.

    Example:
        uploader = MultipartUploader(client)
        result = await uploader.upload("videos", "raw/take-01.mov", f, size)
    """

    def __init__(self, client: "NimbusClient"):
        self._client = client
        self._logger = logging.getLogger(__name__)
        self.state = UploadState.NOT_STARTED
        self.session: Optional[UploadSession] = None

    def _transition(self, state: UploadState, bucket_name: str, object_name: str) -> None:
        self._logger.debug(
            "[NimbusStorage][Multipart] %s -> %s bucket=%s object=%s",
            self.state.value,
            state.value,
            bucket_name,
            object_name,
        )
        self.state = state

    async def upload(
        self,
        bucket_name: str,
        object_name: str,
        data,
        size: int = UNKNOWN_SIZE,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> PutObjectResult:
        """Upload ``size`` bytes (or everything, for ``UNKNOWN_SIZE``) read from ``data``."""
        self._transition(UploadState.PLANNING, bucket_name, object_name)
        info = calculate_multipart_size(size)

        try:
            existing = await self._open_session(bucket_name, object_name, content_type, metadata)
            session = self.session

            self._transition(UploadState.UPLOADING_PARTS, bucket_name, object_name)
            uploaded = reused = total_read = 0

            for part_number in range(1, info.part_count + 1):
                expected = info.last_part_size if part_number == info.part_count else info.part_size
                chunk = await read_full(data, expected)

                if size == UNKNOWN_SIZE:
                    if chunk is None:
                        if part_number > 1:
                            break
                        chunk = b""
                else:
                    chunk = chunk or b""
                    if len(chunk) < expected:
                        raise UnexpectedShortReadException(total_read + len(chunk), size)

                total_read += len(chunk)

                server_part = existing.get(part_number)
                if server_part is not None and self._matches(server_part, chunk):
                    self._logger.debug(
                        "[NimbusStorage][Multipart] reusing part=%s uploadId=%s",
                        part_number,
                        session.upload_id,
                    )
                    session.parts.append(server_part)
                    reused += 1
                    continue

                part = await self._client.upload_part(
                    bucket_name, object_name, session.upload_id, part_number, chunk
                )
                session.parts.append(part)
                uploaded += 1

            if size == UNKNOWN_SIZE and await read_full(data, 1):
                raise EntityTooLargeException(total_read + 1, MAX_STREAM_OBJECT_SIZE)

            self._transition(UploadState.COMPLETING, bucket_name, object_name)
            result = await self._client.complete_multipart_upload(
                bucket_name, object_name, session.upload_id, session.parts
            )
        except Exception:
            self._transition(UploadState.ABORTED, bucket_name, object_name)
            raise

        self._transition(UploadState.DONE, bucket_name, object_name)
        self._logger.info(
            "[NimbusStorage][Multipart] completed bucket=%s object=%s bytes=%s uploaded=%s reused=%s",
            bucket_name,
            object_name,
            total_read,
            uploaded,
            reused,
        )
        return PutObjectResult(
            bucket_name=bucket_name,
            object_name=object_name,
            etag=result.get("etag"),
            upload_id=session.upload_id,
            parts_uploaded=uploaded,
            parts_reused=reused,
        )

    async def _open_session(
        self,
        bucket_name: str,
        object_name: str,
        content_type: str,
        metadata: Optional[Dict[str, str]],
    ) -> Dict[int, Part]:
        """Resume the latest incomplete upload of the key or start a new one; return its server parts."""
        latest = await self._latest_incomplete_upload(bucket_name, object_name)

        if latest is not None:
            self._transition(UploadState.RESUMING_EXISTING, bucket_name, object_name)
            upload_id = latest.upload_id
            existing = {
                part.part_number: part
                async for part in self._client.list_parts(bucket_name, object_name, upload_id)
            }
        else:
            self._transition(UploadState.STARTING_FRESH, bucket_name, object_name)
            upload_id = await self._client.initiate_multipart_upload(
                bucket_name, object_name, content_type=content_type, metadata=metadata
            )
            existing = {}

        self.session = UploadSession(bucket_name, object_name, upload_id, content_type=content_type)
        return existing

    async def _latest_incomplete_upload(self, bucket_name: str, object_name: str) -> Optional[Upload]:
        latest = None
        async for upload in self._client.list_incomplete_uploads(bucket_name, prefix=object_name):
            if upload.key != object_name:
                continue
            if latest is None or upload.initiated > latest.initiated:
                latest = upload
        return latest

    @staticmethod
    def _matches(server_part: Part, chunk: bytes) -> bool:
        if server_part.size != len(chunk):
            return False
        return server_part.etag.lower() == hashlib.md5(chunk).hexdigest()
