"""
NimbusClient - S3-compatible client for NimbusStorage
"""

import io
import logging
import re
from datetime import datetime, timedelta, UTC
from email.utils import parsedate_to_datetime
from typing import AsyncIterator, BinaryIO, Callable, Dict, List, Optional, Tuple, Union
from urllib.parse import urlparse

import httpx

from . import _xml
from ._http import HttpClient, RetryPolicy
from ._signer import AwsSignatureV4Signer, SignableRequest
from .credentials import CredentialsProvider, StaticProvider
from .error import (
    BucketNotFoundException,
    ErrorResponseHandler,
    ServerException,
    UnexpectedShortReadException,
)
from .models import (
    Bucket,
    BucketPolicyResult,
    ObjectMetadata,
    Part,
    PresignedUrlResult,
    PutObjectResult,
    Upload,
)
from .multipart import MIN_PART_SIZE, UNKNOWN_SIZE, MultipartUploader, read_full
from .policy import BucketPolicy, PolicyType
from .post_policy import PostPolicy
from .validation import validate_bucket_name, validate_object_name

DEFAULT_REGION = "us-east-1"
MAX_DELETE_OBJECTS = 1000

_AWS_HOST_RE = re.compile(r"^s3[.-](?:dualstack\.)?([a-z0-9-]+)\.amazonaws\.com(?:\.cn)?$")


def get_region_from_endpoint(endpoint: str) -> str:
    """Return the region named by an AWS S3 endpoint host, or "" for anything else."""
    host = endpoint.split("://")[-1].split("/")[0].split(":")[0].lower()
    match = _AWS_HOST_RE.match(host)
    if not match or match.group(1) == "external-1":
        return ""
    return match.group(1)


def _split_endpoint(endpoint: str, use_ssl: bool) -> Tuple[str, bool]:
    """Normalize an endpoint to (host[:port], secure)."""
    if endpoint.startswith("http://") or endpoint.startswith("https://"):
        parsed = urlparse(endpoint)
        return parsed.netloc, parsed.scheme.lower() == "https"
    return endpoint.rstrip("/"), use_ssl


def _etag(value: Optional[str]) -> Optional[str]:
    return value.strip('"') if value else None


def _remaining_length(stream) -> int:
    """Bytes left in a seekable stream, else UNKNOWN_SIZE."""
    seekable = getattr(stream, "seekable", None)
    if seekable is None or not seekable():
        return UNKNOWN_SIZE
    position = stream.tell()
    end = stream.seek(0, io.SEEK_END)
    stream.seek(position)
    return end - position


class NimbusClient:
    """
    S3-compatible client for NimbusStorage.

    Example:
        async with NimbusClient(
            endpoint="storage.example.com:9000",
            access_key="AKIA...",
            secret_key="...",
        ) as client:
            with open("image.jpg", "rb") as f:
                result = await client.put_object(
                    bucket_name="photos",
                    object_name="archive/camera-001/image.jpg",
                    data=f,
                    length=os.path.getsize("image.jpg"),
                    content_type="image/jpeg",
                )
    """

    def __init__(
        self,
        endpoint: str = "localhost:9000",
        access_key: str = "",
        secret_key: str = "",
        session_token: Optional[str] = None,
        credentials: Optional[CredentialsProvider] = None,
        region: Optional[str] = None,
        use_ssl: bool = False,
        public_endpoint: Optional[str] = None,
        request_timeout: float = 30,
        retry_policy: Optional[RetryPolicy] = None,
        error_handler: Optional[ErrorResponseHandler] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize NimbusClient.

        Args:
            endpoint: Server address and port (e.g., "storage.local:9000"), optionally with a scheme
            access_key: S3 access key for request signing; empty for anonymous access
            secret_key: S3 secret key for request signing
            session_token: Temporary session token sent with every request
            credentials: Credentials provider; overrides the three arguments above
            region: Signing region; derived from AWS endpoints, else us-east-1
            use_ssl: Use HTTPS instead of HTTP
            public_endpoint: Endpoint used for browser-accessible presigned URLs
            request_timeout: Request timeout in seconds
            retry_policy: Optional wrapper around each HTTP attempt (see backoff_retry_policy)
            error_handler: Maps failed responses to exceptions
            transport: httpx transport, mainly for tests
            clock: Returns the current UTC time used for signing
        """
        self.host, self.use_ssl = _split_endpoint(endpoint, use_ssl)
        if not self.host:
            raise ValueError(f"Invalid endpoint '{endpoint}'.")

        self.public_host, self.public_use_ssl = (
            _split_endpoint(public_endpoint, self.use_ssl) if public_endpoint else (self.host, self.use_ssl)
        )
        self.region = region or get_region_from_endpoint(self.host) or DEFAULT_REGION

        self._credentials = credentials or StaticProvider(access_key, secret_key, session_token)
        self._http = HttpClient(timeout=request_timeout, retry_policy=retry_policy, transport=transport)
        self._signer = AwsSignatureV4Signer()
        self._error_handler = error_handler or ErrorResponseHandler()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = logging.getLogger(__name__)

    async def _execute(
        self,
        method: str,
        bucket_name: Optional[str] = None,
        object_name: Optional[str] = None,
        query: Optional[List[Tuple[str, str]]] = None,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
        upload_id: Optional[str] = None,
    ) -> httpx.Response:
        """Sign and send one path-style request, raising for error responses."""
        path = "/"
        if bucket_name:
            path += bucket_name
            if object_name:
                path += "/" + object_name

        request = SignableRequest(
            method=method,
            host=self.host,
            path=path,
            query=list(query or []),
            headers=httpx.Headers(headers or {}),
            body=body,
            secure=self.use_ssl,
        )
        signed = self._signer.sign_request(request, self._credentials.retrieve(), self.region, self._clock())
        response = await self._http.send(signed)
        self._error_handler.handle(response, bucket_name, object_name, upload_id)
        return response

    @staticmethod
    def _parse(parser, response: httpx.Response):
        try:
            return parser(response.content)
        except _xml.XmlParseError as ex:
            raise ServerException(str(ex), response.status_code) from ex

    # Bucket operations

    async def bucket_exists(self, bucket_name: str) -> bool:
        """Check if a bucket exists."""
        validate_bucket_name(bucket_name)
        try:
            await self._execute("HEAD", bucket_name)
            return True
        except BucketNotFoundException:
            return False

    async def make_bucket(self, bucket_name: str, region: Optional[str] = None) -> None:
        """Create a new bucket."""
        validate_bucket_name(bucket_name)
        region = region or self.region
        body = None
        headers = {}
        if region != DEFAULT_REGION:
            body = _xml.build_create_bucket_configuration(region)
            headers["Content-Type"] = "application/xml"
        await self._execute("PUT", bucket_name, headers=headers, body=body)

    async def remove_bucket(self, bucket_name: str) -> None:
        """Remove a bucket (must be empty)."""
        validate_bucket_name(bucket_name)
        await self._execute("DELETE", bucket_name)

    async def list_buckets(self) -> List[Bucket]:
        """List all buckets."""
        response = await self._execute("GET")
        return [Bucket(**item) for item in self._parse(_xml.parse_list_buckets, response)]

    # Object operations

    async def put_object(
        self,
        bucket_name: str,
        object_name: str,
        data: Union[BinaryIO, bytes],
        length: Optional[int] = None,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> PutObjectResult:
        """
        Upload an object to the bucket.

        Objects smaller than 5 MiB go up in a single PUT. Larger ones, and
        streams of unknown length, use a resumable multipart upload.
        """
        validate_bucket_name(bucket_name)
        validate_object_name(object_name)

        if isinstance(data, (bytes, bytearray)):
            length = len(data) if length is None else length
            data = io.BytesIO(data)
        if length is None:
            length = _remaining_length(data)

        if 0 <= length < MIN_PART_SIZE:
            content = await read_full(data, length) or b""
            if len(content) < length:
                raise UnexpectedShortReadException(len(content), length)

            headers = {"Content-Type": content_type}
            for key, value in (metadata or {}).items():
                headers[f"x-amz-meta-{key}"] = value

            response = await self._execute("PUT", bucket_name, object_name, headers=headers, body=content)
            return PutObjectResult(
                bucket_name=bucket_name,
                object_name=object_name,
                etag=_etag(response.headers.get("ETag")),
                version_id=response.headers.get("x-amz-version-id"),
            )

        uploader = MultipartUploader(self)
        return await uploader.upload(
            bucket_name,
            object_name,
            data,
            length,
            content_type=content_type,
            metadata=metadata,
        )

    async def get_object(
        self,
        bucket_name: str,
        object_name: str,
        output: BinaryIO,
    ) -> ObjectMetadata:
        """Download an object from the bucket."""
        validate_bucket_name(bucket_name)
        validate_object_name(object_name)

        response = await self._execute("GET", bucket_name, object_name)
        output.write(response.content)

        metadata = self._metadata_from_headers(bucket_name, object_name, response.headers)
        metadata.size = len(response.content)
        return metadata

    async def stat_object(
        self,
        bucket_name: str,
        object_name: str,
    ) -> ObjectMetadata:
        """Get object metadata without downloading."""
        validate_bucket_name(bucket_name)
        validate_object_name(object_name)

        response = await self._execute("HEAD", bucket_name, object_name)
        return self._metadata_from_headers(bucket_name, object_name, response.headers)

    @staticmethod
    def _metadata_from_headers(bucket_name: str, object_name: str, headers: httpx.Headers) -> ObjectMetadata:
        last_modified = headers.get("Last-Modified")
        return ObjectMetadata(
            object_name=object_name,
            bucket_name=bucket_name,
            size=int(headers.get("Content-Length", 0)),
            etag=_etag(headers.get("ETag")),
            last_modified=parsedate_to_datetime(last_modified) if last_modified else None,
            content_type=headers.get("Content-Type"),
            metadata={
                key[len("x-amz-meta-"):]: value
                for key, value in headers.items()
                if key.lower().startswith("x-amz-meta-")
            },
        )

    async def remove_object(
        self,
        bucket_name: str,
        object_name: str,
    ) -> None:
        """Remove an object from the bucket."""
        validate_bucket_name(bucket_name)
        validate_object_name(object_name)

        try:
            await self._execute("DELETE", bucket_name, object_name)
        except ServerException as e:
            # Don't fail if object doesn't exist
            if e.status_code != 404 or e.error_code == "NoSuchBucket":
                raise

    async def remove_objects(self, bucket_name: str, object_names: List[str]) -> Dict[str, List[Dict[str, str]]]:
        """Remove multiple objects, 1000 keys per multi-object delete request."""
        validate_bucket_name(bucket_name)
        result = {"deleted": [], "errors": []}

        for start in range(0, len(object_names), MAX_DELETE_OBJECTS):
            batch = object_names[start:start + MAX_DELETE_OBJECTS]
            response = await self._execute(
                "POST",
                bucket_name,
                query=[("delete", "")],
                headers={"Content-Type": "application/xml"},
                body=_xml.build_delete_objects(batch),
            )
            if not response.content.strip():
                result["deleted"].extend({"key": name} for name in batch)
                continue
            batch_result = self._parse(_xml.parse_delete_result, response)
            result["deleted"].extend(batch_result["deleted"])
            result["errors"].extend(batch_result["errors"])

        return result

    async def list_objects(
        self,
        bucket_name: str,
        prefix: str = "",
        recursive: bool = True,
        max_keys: int = 1000,
    ) -> AsyncIterator[ObjectMetadata]:
        """Yield the objects (and, when not recursive, common prefixes) under ``prefix``."""
        validate_bucket_name(bucket_name)
        continuation_token = None

        while True:
            query = [("list-type", "2"), ("max-keys", str(max_keys))]
            if prefix:
                query.append(("prefix", prefix))
            if not recursive:
                query.append(("delimiter", "/"))
            if continuation_token:
                query.append(("continuation-token", continuation_token))

            response = await self._execute("GET", bucket_name, query=query)
            objects, prefixes, continuation_token, truncated = self._parse(_xml.parse_list_objects_v2, response)

            for item in objects:
                yield ObjectMetadata(
                    object_name=item["key"],
                    bucket_name=bucket_name,
                    size=item["size"],
                    etag=item["etag"],
                    last_modified=item["last_modified"],
                )
            for common_prefix in prefixes:
                yield ObjectMetadata(object_name=common_prefix, bucket_name=bucket_name, is_prefix=True)

            if not truncated or not continuation_token:
                break

    # Multipart operations

    async def initiate_multipart_upload(
        self,
        bucket_name: str,
        object_name: str,
        content_type: str = "application/octet-stream",
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Initiate multipart upload and return upload_id."""
        headers = {"Content-Type": content_type}
        for key, value in (metadata or {}).items():
            headers[f"x-amz-meta-{key}"] = value

        response = await self._execute("POST", bucket_name, object_name, query=[("uploads", "")], headers=headers)
        upload_id = self._parse(_xml.parse_initiate_multipart_upload, response)
        self._logger.debug(
            "[NimbusStorage][Multipart] initiated bucket=%s object=%s uploadId=%s",
            bucket_name,
            object_name,
            upload_id,
        )
        return upload_id

    async def upload_part(
        self,
        bucket_name: str,
        object_name: str,
        upload_id: str,
        part_number: int,
        data: bytes,
    ) -> Part:
        """Upload one multipart part."""
        response = await self._execute(
            "PUT",
            bucket_name,
            object_name,
            query=[("partNumber", str(part_number)), ("uploadId", upload_id)],
            body=data,
            upload_id=upload_id,
        )
        etag = _etag(response.headers.get("ETag"))
        if not etag:
            raise ServerException(f"Upload of part {part_number} did not return an ETag.", response.status_code)
        return Part(part_number=part_number, etag=etag, size=len(data))

    async def list_parts(self, bucket_name: str, object_name: str, upload_id: str) -> AsyncIterator[Part]:
        """Yield the parts the server holds for ``upload_id``, in part-number order."""
        marker = 0
        while True:
            query = [
                ("uploadId", upload_id),
                ("part-number-marker", str(marker)),
                ("max-parts", "1000"),
            ]
            response = await self._execute("GET", bucket_name, object_name, query=query, upload_id=upload_id)
            parts, next_marker, truncated = self._parse(_xml.parse_list_parts, response)
            for item in parts:
                yield Part(**item)
            if not truncated or next_marker <= marker:
                break
            marker = next_marker

    async def complete_multipart_upload(
        self,
        bucket_name: str,
        object_name: str,
        upload_id: str,
        parts: List[Part],
    ) -> Dict[str, Optional[str]]:
        """Complete multipart upload with part list."""
        payload = _xml.build_complete_multipart_upload((part.part_number, part.etag) for part in parts)
        response = await self._execute(
            "POST",
            bucket_name,
            object_name,
            query=[("uploadId", upload_id)],
            headers={"Content-Type": "application/xml"},
            body=payload,
            upload_id=upload_id,
        )
        result = self._parse(_xml.parse_complete_multipart_upload, response)
        if not result["etag"]:
            result["etag"] = _etag(response.headers.get("ETag"))
        return result

    async def abort_multipart_upload(
        self,
        bucket_name: str,
        object_name: str,
        upload_id: str,
    ) -> None:
        """Abort multipart upload."""
        await self._execute("DELETE", bucket_name, object_name, query=[("uploadId", upload_id)], upload_id=upload_id)

    async def list_incomplete_uploads(
        self,
        bucket_name: str,
        prefix: str = "",
        recursive: bool = True,
    ) -> AsyncIterator[Upload]:
        """Yield the incomplete multipart uploads under ``prefix``."""
        validate_bucket_name(bucket_name)
        key_marker = upload_id_marker = ""

        while True:
            query = [
                ("uploads", ""),
                ("prefix", prefix),
                ("key-marker", key_marker),
                ("upload-id-marker", upload_id_marker),
                ("delimiter", "" if recursive else "/"),
                ("max-uploads", "1000"),
            ]
            response = await self._execute("GET", bucket_name, query=query)
            uploads, next_key_marker, next_upload_id_marker, truncated = self._parse(
                _xml.parse_list_multipart_uploads, response
            )
            for item in uploads:
                yield Upload(**item)
            if not truncated:
                break
            if (next_key_marker, next_upload_id_marker) in (("", ""), (key_marker, upload_id_marker)):
                break
            key_marker, upload_id_marker = next_key_marker, next_upload_id_marker

    async def remove_incomplete_upload(self, bucket_name: str, object_name: str) -> int:
        """Abort every incomplete upload of ``object_name``; return how many were aborted."""
        validate_bucket_name(bucket_name)
        validate_object_name(object_name)

        upload_ids = [
            upload.upload_id
            async for upload in self.list_incomplete_uploads(bucket_name, prefix=object_name)
            if upload.key == object_name
        ]
        for upload_id in upload_ids:
            await self.abort_multipart_upload(bucket_name, object_name, upload_id)
        return len(upload_ids)

    # Bucket policy operations

    async def get_bucket_policy(self, bucket_name: str) -> BucketPolicyResult:
        """Return the raw policy JSON of a bucket; ``policy_json`` is None when it has none."""
        validate_bucket_name(bucket_name)
        try:
            response = await self._execute("GET", bucket_name, query=[("policy", "")])
        except ServerException as e:
            if e.error_code == "NoSuchBucketPolicy":
                return BucketPolicyResult(bucket_name=bucket_name)
            raise
        return BucketPolicyResult(bucket_name=bucket_name, policy_json=response.text)

    async def set_bucket_policy(self, bucket_name: str, policy_json: str) -> None:
        """Replace the bucket policy with the given JSON document."""
        validate_bucket_name(bucket_name)
        await self._execute(
            "PUT",
            bucket_name,
            query=[("policy", "")],
            headers={"Content-Type": "application/json"},
            body=policy_json.encode("utf-8"),
        )

    async def delete_bucket_policy(self, bucket_name: str) -> None:
        validate_bucket_name(bucket_name)
        await self._execute("DELETE", bucket_name, query=[("policy", "")])

    async def _load_policy(self, bucket_name: str) -> BucketPolicy:
        result = await self.get_bucket_policy(bucket_name)
        if not result.policy_json or not result.policy_json.strip():
            return BucketPolicy(bucket_name)
        return BucketPolicy.from_json(result.policy_json, bucket_name)

    async def get_policy(self, bucket_name: str, prefix: str = "") -> PolicyType:
        """Return the canned policy in effect for objects under ``prefix``."""
        policy = await self._load_policy(bucket_name)
        return policy.get_policy(prefix)

    async def set_policy(self, bucket_name: str, policy_type: Union[PolicyType, str], prefix: str = "") -> None:
        """Apply a canned policy to objects under ``prefix``, keeping the rest of the bucket policy."""
        policy = await self._load_policy(bucket_name)
        policy.set_policy(policy_type, prefix)
        if policy.statements:
            await self.set_bucket_policy(bucket_name, policy.to_json())
        else:
            await self.delete_bucket_policy(bucket_name)
        self._logger.info(
            "[NimbusStorage][Policy] bucket=%s prefix=%s policy=%s statements=%s",
            bucket_name,
            prefix,
            PolicyType(policy_type).value,
            len(policy.statements),
        )

    async def list_policies(self, bucket_name: str, prefix: str = "") -> Dict[str, PolicyType]:
        """Return ``{bucket/prefix*: PolicyType}`` for every prefix under ``prefix`` named in the policy."""
        policy = await self._load_policy(bucket_name)
        wanted = f"{bucket_name}/{prefix}"
        return {key: value for key, value in policy.get_policies().items() if key.startswith(wanted)}

    # Presigned operations

    def _presign(self, method: str, bucket_name: str, object_name: str, expires_in_seconds: int) -> PresignedUrlResult:
        validate_bucket_name(bucket_name)
        validate_object_name(object_name)

        now = self._clock()
        request = SignableRequest(
            method=method,
            host=self.public_host,
            path=f"/{bucket_name}/{object_name}",
            secure=self.public_use_ssl,
        )
        url = self._signer.generate_presigned_url(
            request,
            self._credentials.retrieve(),
            self.region,
            expires_in_seconds,
            now,
        )

        self._logger.info(
            "[NimbusStorage][PresignedUrl] method=%s host=%s expirySeconds=%s bucket=%s object=%s",
            method,
            self.public_host,
            expires_in_seconds,
            bucket_name,
            object_name,
        )
        return PresignedUrlResult(url=url, expires_at=now + timedelta(seconds=int(expires_in_seconds)))

    async def presigned_get_object(
        self,
        bucket_name: str,
        object_name: str,
        expires_in_seconds: int = 3600,
    ) -> PresignedUrlResult:
        """Generate a presigned GET URL using local AWS SigV4 signing."""
        return self._presign("GET", bucket_name, object_name, expires_in_seconds)

    async def presigned_put_object(
        self,
        bucket_name: str,
        object_name: str,
        expires_in_seconds: int = 3600,
    ) -> PresignedUrlResult:
        """Generate a presigned PUT URL using local AWS SigV4 signing."""
        return self._presign("PUT", bucket_name, object_name, expires_in_seconds)

    async def presigned_post_policy(self, policy: PostPolicy) -> Tuple[str, Dict[str, str]]:
        """Sign a browser upload policy; return the form action URL and its fields."""
        policy.validate()
        validate_bucket_name(policy.bucket_name)

        form_data = self._signer.presign_post_policy(
            policy,
            self._credentials.retrieve(),
            self.region,
            self._clock(),
        )
        scheme = "https" if self.public_use_ssl else "http"
        url = f"{scheme}://{self.public_host}/{policy.bucket_name}"
        self._logger.info(
            "[NimbusStorage][PresignedPost] host=%s bucket=%s key=%s",
            self.public_host,
            policy.bucket_name,
            policy.key,
        )
        return url, form_data

    async def close(self) -> None:
        """Close the client and cleanup resources."""
        await self._http.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
