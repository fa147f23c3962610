"""
Data models for NimbusStorage SDK
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict


@dataclass
class Bucket:
    """Represents a bucket."""
    name: str
    creation_date: Optional[datetime] = None


@dataclass
class ObjectMetadata:
    """Represents object metadata."""
    object_name: str
    bucket_name: str
    size: int = 0
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    is_prefix: bool = False


@dataclass
class PutObjectResult:
    """Represents the result of a put object operation."""
    bucket_name: str
    object_name: str
    etag: Optional[str]
    version_id: Optional[str] = None
    upload_id: Optional[str] = None
    parts_uploaded: int = 0
    parts_reused: int = 0


@dataclass
class PresignedUrlResult:
    """Represents a presigned URL response."""
    url: str
    expires_at: datetime


@dataclass
class BucketPolicyResult:
    """Represents bucket policy information."""
    bucket_name: str
    policy_json: Optional[str] = None


@dataclass
class Part:
    """One uploaded part of a multipart upload. The etag has no quotes."""
    part_number: int
    etag: str
    size: int = 0
    last_modified: Optional[datetime] = None


@dataclass
class Upload:
    """An incomplete multipart upload as reported by the server."""
    key: str
    upload_id: str
    initiated: str = ""


@dataclass
class UploadSession:
    """State of one multipart upload, owned by a single put_object call."""
    bucket_name: str
    object_name: str
    upload_id: str
    parts: List[Part] = field(default_factory=list)
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class MultipartInfo:
    """Part layout for an object of a given size."""
    part_size: int
    part_count: int
    last_part_size: int
