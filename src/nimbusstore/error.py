"""
Exception classes for NimbusStorage SDK
"""

from typing import Optional

import httpx

from . import _xml


class NimbusStorageException(Exception):
    """
    Base exception for all NimbusStorage SDK errors.
    """

    def __init__(self, message: str, status_code: int = None, error_code: str = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code


# Local validation errors. These are raised before any request is sent.


class ValidationException(NimbusStorageException, ValueError):
    """Thrown when an argument fails local validation."""


class InvalidBucketNameException(ValidationException):
    """Thrown when a bucket name is invalid."""

    def __init__(self, bucket_name: str, reason: str):
        super().__init__(f"Bucket name '{bucket_name}' is invalid. {reason}")
        self.bucket_name = bucket_name
        self.reason = reason


class InvalidObjectNameException(ValidationException):
    """Thrown when an object name is invalid."""

    def __init__(self, object_name: str, reason: str = "Object name is invalid."):
        super().__init__(f"Object name '{object_name}' is invalid. {reason}")
        self.object_name = object_name
        self.reason = reason


class InvalidExpiryException(ValidationException):
    """Thrown when a presigned expiry is out of range."""

    def __init__(self, expires_in_seconds: int):
        super().__init__(
            f"Expiry {expires_in_seconds} is invalid. Expiry must be between 1 second "
            "and 604800 seconds (7 days) per AWS S3 specification."
        )
        self.expires_in_seconds = expires_in_seconds


class PolicyException(ValidationException):
    """Thrown when a policy structure cannot be modified as requested."""


class InvalidPolicyException(PolicyException):
    """Thrown when bucket policy JSON cannot be parsed."""


class EntityTooLargeException(ValidationException):
    """Thrown when an upload exceeds the maximum multipart object size."""

    def __init__(self, size: int, maximum: int):
        super().__init__(
            f"Your proposed upload size {size} exceeds the maximum allowed object size {maximum}",
            error_code="EntityTooLarge",
        )
        self.size = size
        self.maximum = maximum


class UnexpectedShortReadException(NimbusStorageException):
    """Thrown when the input stream ends before the declared size was read."""

    def __init__(self, read: int, expected: int):
        super().__init__(f"Data read {read} is shorter than the expected size {expected} of input buffer.")
        self.read = read
        self.expected = expected


# Errors reported by the server.


class ServerException(NimbusStorageException):
    """Thrown when the server returns an error."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_code: str = None,
        resource: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message, status_code, error_code)
        self.resource = resource
        self.request_id = request_id


class BucketNotFoundException(ServerException):
    """Thrown when a bucket is not found."""

    def __init__(self, bucket_name: str, message: str = None, request_id: str = None):
        super().__init__(
            message or f"Bucket '{bucket_name}' not found.",
            status_code=404,
            error_code="NoSuchBucket",
            request_id=request_id,
        )
        self.bucket_name = bucket_name


class BucketAlreadyExistsException(ServerException):
    """Thrown when trying to create a bucket that already exists."""

    def __init__(self, bucket_name: str, error_code: str = "BucketAlreadyExists"):
        super().__init__(
            f"Bucket '{bucket_name}' already exists.",
            status_code=409,
            error_code=error_code,
        )
        self.bucket_name = bucket_name


class ObjectNotFoundException(ServerException):
    """Thrown when an object is not found."""

    def __init__(self, bucket_name: str, object_name: str, message: str = None):
        super().__init__(
            message or f"Object '{object_name}' not found in bucket '{bucket_name}'.",
            status_code=404,
            error_code="NoSuchKey",
        )
        self.bucket_name = bucket_name
        self.object_name = object_name


class NoSuchUploadException(ServerException):
    """Thrown when a multipart upload id is unknown to the server."""

    def __init__(self, message: str, upload_id: str = None):
        super().__init__(message, status_code=404, error_code="NoSuchUpload")
        self.upload_id = upload_id


class AuthenticationException(ServerException):
    """Thrown when authentication fails."""

    def __init__(self, message: str, error_code: str = "InvalidAccessKeyId"):
        super().__init__(
            message,
            status_code=401,
            error_code=error_code,
        )


class AccessDeniedException(ServerException):
    """Thrown when access is denied."""

    def __init__(self, message: str):
        super().__init__(
            message,
            status_code=403,
            error_code="AccessDenied",
        )


class ErrorResponseHandler:
    """
    Maps a failed HTTP response to a typed exception.

    The client is given one instance at construction time. Subclass it and
    override ``handle`` to special-case codes for a particular deployment.
    """

    _AUTH_CODES = {"InvalidAccessKeyId", "SignatureDoesNotMatch", "ExpiredToken", "InvalidToken"}

    def handle(
        self,
        response: httpx.Response,
        bucket_name: Optional[str] = None,
        object_name: Optional[str] = None,
        upload_id: Optional[str] = None,
    ) -> None:
        """Raise for any non-success response; return silently otherwise."""
        if response.status_code < 300:
            return
        raise self.to_exception(response, bucket_name, object_name, upload_id)

    def to_exception(
        self,
        response: httpx.Response,
        bucket_name: Optional[str] = None,
        object_name: Optional[str] = None,
        upload_id: Optional[str] = None,
    ) -> ServerException:
        status = response.status_code
        details = _xml.parse_error(response.content) if response.content else {}
        code = details.get("Code") or self._code_from_status(status, bucket_name, object_name)
        message = details.get("Message") or f"Request failed with status {status}"

        if code == "NoSuchBucket":
            return BucketNotFoundException(bucket_name or details.get("BucketName", ""), message, details.get("RequestId"))
        if code == "NoSuchKey":
            return ObjectNotFoundException(bucket_name or "", object_name or details.get("Key", ""), message)
        if code == "NoSuchUpload":
            return NoSuchUploadException(message, upload_id)
        if code in ("BucketAlreadyExists", "BucketAlreadyOwnedByYou"):
            return BucketAlreadyExistsException(bucket_name or details.get("BucketName", ""), code)
        if code == "AccessDenied":
            return AccessDeniedException(message)
        if code in self._AUTH_CODES:
            return AuthenticationException(message, code)
        return ServerException(
            message,
            status,
            code,
            resource=details.get("Resource"),
            request_id=details.get("RequestId"),
        )

    @staticmethod
    def _code_from_status(status: int, bucket_name: Optional[str], object_name: Optional[str]) -> Optional[str]:
        # HEAD responses carry no body, so the code has to be inferred.
        if status == 404:
            if object_name:
                return "NoSuchKey"
            if bucket_name:
                return "NoSuchBucket"
            return "NotFound"
        if status == 403:
            return "AccessDenied"
        if status == 409 and bucket_name and not object_name:
            return "BucketAlreadyExists"
        return None
