"""
NimbusStorage Python SDK - S3-compatible client with SigV4 signing,
resumable multipart uploads and canned bucket policies
"""

__version__ = "1.0.0"

from ._http import backoff_retry_policy
from ._signer import AwsSignatureV4Signer, SignableRequest
from .client import NimbusClient
from .conditions import ConditionKeyMap, ConditionMap
from .credentials import Credentials, CredentialsProvider, StaticProvider
from .models import (
    Bucket,
    ObjectMetadata,
    Part,
    PutObjectResult,
    PresignedUrlResult,
    BucketPolicyResult,
    Upload,
    UploadSession,
    MultipartInfo,
)
from .multipart import MultipartUploader, UploadState, calculate_multipart_size, read_full
from .policy import BucketPolicy, PolicyType, Statement, diff_policies
from .post_policy import PostPolicy
from .resources import ResourceSet
from .error import (
    NimbusStorageException,
    ValidationException,
    InvalidBucketNameException,
    InvalidObjectNameException,
    InvalidExpiryException,
    PolicyException,
    InvalidPolicyException,
    EntityTooLargeException,
    UnexpectedShortReadException,
    ServerException,
    BucketNotFoundException,
    BucketAlreadyExistsException,
    ObjectNotFoundException,
    NoSuchUploadException,
    AuthenticationException,
    AccessDeniedException,
    ErrorResponseHandler,
)

__all__ = [
    "NimbusClient",
    "AwsSignatureV4Signer",
    "SignableRequest",
    "backoff_retry_policy",
    "Credentials",
    "CredentialsProvider",
    "StaticProvider",
    "Bucket",
    "ObjectMetadata",
    "Part",
    "PutObjectResult",
    "PresignedUrlResult",
    "BucketPolicyResult",
    "Upload",
    "UploadSession",
    "MultipartInfo",
    "MultipartUploader",
    "UploadState",
    "calculate_multipart_size",
    "read_full",
    "BucketPolicy",
    "PolicyType",
    "Statement",
    "diff_policies",
    "PostPolicy",
    "ResourceSet",
    "ConditionKeyMap",
    "ConditionMap",
    "NimbusStorageException",
    "ValidationException",
    "InvalidBucketNameException",
    "InvalidObjectNameException",
    "InvalidExpiryException",
    "PolicyException",
    "InvalidPolicyException",
    "EntityTooLargeException",
    "UnexpectedShortReadException",
    "ServerException",
    "BucketNotFoundException",
    "BucketAlreadyExistsException",
    "ObjectNotFoundException",
    "NoSuchUploadException",
    "AuthenticationException",
    "AccessDeniedException",
    "ErrorResponseHandler",
]
