"""
Bucket and object name validation.

Each function raises a ``ValidationException`` subclass before any request
is built, so invalid names never reach the wire.
"""

import re

from .error import InvalidBucketNameException, InvalidObjectNameException

# Dots are allowed; such buckets are always addressed path-style.
_BUCKET_RE = re.compile(r"^[a-z0-9][a-z0-9.\-]{1,61}[a-z0-9]$")

_MAX_OBJECT_NAME_BYTES = 1024


def validate_bucket_name(bucket_name: str) -> None:
    """Validate a bucket name against the S3 naming rules.

    Raises:
        InvalidBucketNameException: with a reason naming the broken rule.
    """
    if not bucket_name:
        raise InvalidBucketNameException(bucket_name, "Bucket name cannot be empty.")
    if len(bucket_name) < 3:
        raise InvalidBucketNameException(bucket_name, "Bucket name cannot be smaller than 3 characters.")
    if len(bucket_name) > 63:
        raise InvalidBucketNameException(bucket_name, "Bucket name cannot be greater than 63 characters.")
    if bucket_name[0] == "." or bucket_name[-1] == ".":
        raise InvalidBucketNameException(bucket_name, "Bucket name cannot start or end with a '.' dot.")
    if any(c.isupper() for c in bucket_name):
        raise InvalidBucketNameException(bucket_name, "Bucket name cannot have upper case characters")
    if ".." in bucket_name:
        raise InvalidBucketNameException(bucket_name, "Bucket name cannot have successive periods.")
    if not _BUCKET_RE.match(bucket_name):
        raise InvalidBucketNameException(bucket_name, "Bucket name contains invalid characters.")


def validate_object_name(object_name: str) -> None:
    """Validate an object key: non-empty and at most 1024 UTF-8 bytes."""
    if not object_name or not object_name.strip():
        raise InvalidObjectNameException(object_name, "Object name cannot be empty.")
    if len(object_name.encode("utf-8")) > _MAX_OBJECT_NAME_BYTES:
        raise InvalidObjectNameException(object_name, "Object name cannot be greater than 1024 characters.")
