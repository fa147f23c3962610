"""
AWS Signature V4 signer for NimbusStorage SDK
"""

import base64
import hashlib
import hmac
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from .credentials import Credentials
from .error import InvalidExpiryException, ValidationException
from .post_policy import PostPolicy

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE_NAME = "s3"
SCOPE_TERMINATOR = "aws4_request"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
MAX_PRESIGNED_EXPIRES = 604800  # 7 days

# User-Agent and Content-Type are rewritten by proxies and browsers, and the
# payload hash already pins the length, so these never take part in signing.
_IGNORED_HEADERS = {"authorization", "content-length", "content-type", "user-agent"}


@dataclass
class SignableRequest:
    """
    Everything the signer needs to know about one HTTP request.

    ``path`` is the raw (unencoded) path, ``query`` an ordered list of
    unencoded ``(name, value)`` pairs with unique names. ``unsigned_payload``
    marks a streamed body whose hash is not known up front.
    """
    method: str
    host: str
    path: str = "/"
    query: List[Tuple[str, str]] = field(default_factory=list)
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: Optional[bytes] = None
    unsigned_payload: bool = False
    secure: bool = False

    def __post_init__(self):
        self.method = self.method.upper()
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers)
        names = [name for name, _ in self.query]
        if len(names) != len(set(names)):
            raise ValidationException(f"Duplicate query parameter in {names}.")

    @property
    def scheme(self) -> str:
        return "https" if self.secure else "http"

    @property
    def canonical_host(self) -> str:
        """Host as sent in the Host header: default ports are dropped."""
        default_port = ":443" if self.secure else ":80"
        if self.host.endswith(default_port):
            return self.host[: -len(default_port)]
        return self.host

    def url(self) -> str:
        url = f"{self.scheme}://{self.canonical_host}{uri_encode_path(self.path)}"
        query = canonical_query_string(self.query)
        return f"{url}?{query}" if query else url


def uri_encode(value: str, encode_slash: bool = True) -> str:
    """Percent-encode everything except RFC 3986 unreserved characters."""
    return quote(value, safe="" if encode_slash else "/")


def uri_encode_path(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return uri_encode(path, encode_slash=False)


def canonical_query_string(query: List[Tuple[str, str]]) -> str:
    encoded = sorted((uri_encode(name), uri_encode(str(value))) for name, value in query)
    return "&".join(f"{name}={value}" for name, value in encoded)


def _trim(value: str) -> str:
    return " ".join(value.split())


def canonical_headers(headers: httpx.Headers) -> Tuple[str, str]:
    """Return (canonical header block, signed header list) for the given headers."""
    values: Dict[str, List[str]] = {}
    for name, value in headers.multi_items():
        name = name.lower()
        if name in _IGNORED_HEADERS:
            continue
        values.setdefault(name, []).append(_trim(value))
    names = sorted(values)
    block = "".join(f"{name}:{','.join(values[name])}\n" for name in names)
    return block, ";".join(names)


def derive_signing_key(secret_key: str, datestamp: str, region: str, service: str = SERVICE_NAME) -> bytes:
    """Derive the signing key for AWS Signature V4."""
    k_date = _hmac(f"AWS4{secret_key}".encode(), datestamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, SCOPE_TERMINATOR)


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode(), hashlib.sha256).digest()


def _md5_base64(body: bytes) -> str:
    return base64.b64encode(hashlib.md5(body).digest()).decode()


def _utc(timestamp: Optional[datetime]) -> datetime:
    if timestamp is None:
        return datetime.now(UTC)
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=UTC)
    return timestamp.astimezone(UTC)


class AwsSignatureV4Signer:
    """
    Signs requests using AWS Signature Version 4.

    The signer holds no state; credentials, region and time are passed to
    every call, so one instance can be shared by any number of tasks.
    """

    def sign_request(
        self,
        request: SignableRequest,
        credentials: Credentials,
        region: str,
        timestamp: Optional[datetime] = None,
    ) -> SignableRequest:
        """
        Return a copy of ``request`` carrying integrity and authorization headers.

        Anonymous credentials produce an unsigned request; PUT and POST bodies
        still get a Content-MD5 header. Authenticated requests always carry
        x-amz-content-sha256, plus Content-MD5 over TLS.
        """
        headers = httpx.Headers(request.headers)
        headers["Host"] = request.canonical_host

        has_body = request.method in ("PUT", "POST") and request.body is not None
        is_multi_delete = request.method == "POST" and any(name == "delete" for name, _ in request.query)

        if credentials.is_anonymous:
            if has_body:
                headers["Content-MD5"] = _md5_base64(request.body)
            return replace(request, headers=headers)

        if not region:
            raise ValidationException("Region is required to sign a request.")

        if has_body and (request.secure or is_multi_delete):
            headers["Content-MD5"] = _md5_base64(request.body)

        timestamp = _utc(timestamp)
        amz_date = timestamp.strftime("%Y%m%dT%H%M%SZ")
        datestamp = timestamp.strftime("%Y%m%d")

        payload_hash = self._hash_payload(request)
        headers["x-amz-content-sha256"] = payload_hash
        headers["x-amz-date"] = amz_date
        if credentials.session_token:
            headers["x-amz-security-token"] = credentials.session_token

        header_block, signed_headers = canonical_headers(headers)
        canonical_request = "\n".join([
            request.method,
            uri_encode_path(request.path),
            canonical_query_string(request.query),
            header_block,
            signed_headers,
            payload_hash,
        ])

        credential_scope = self._scope(datestamp, region)
        signature = self._signature(credentials, datestamp, region, amz_date, credential_scope, canonical_request)

        headers["Authorization"] = (
            f"{ALGORITHM} Credential={credentials.access_key}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, Signature={signature}"
        )
        return replace(request, headers=headers)

    def generate_presigned_url(
        self,
        request: SignableRequest,
        credentials: Credentials,
        region: str,
        expires_in_seconds: int = 3600,
        timestamp: Optional[datetime] = None,
    ) -> str:
        """
        Generate a presigned URL with AWS Signature V4.

        Only the host header is signed and the payload is UNSIGNED-PAYLOAD,
        so the URL can be used by any HTTP agent until it expires.
        """
        if expires_in_seconds < 1 or expires_in_seconds > MAX_PRESIGNED_EXPIRES:
            raise InvalidExpiryException(expires_in_seconds)

        if credentials.is_anonymous:
            return request.url()

        if not region:
            raise ValidationException("Region is required to presign a request.")

        timestamp = _utc(timestamp)
        amz_date = timestamp.strftime("%Y%m%dT%H%M%SZ")
        datestamp = timestamp.strftime("%Y%m%d")
        credential_scope = self._scope(datestamp, region)

        query = list(request.query)
        query.extend([
            ("X-Amz-Algorithm", ALGORITHM),
            ("X-Amz-Credential", f"{credentials.access_key}/{credential_scope}"),
            ("X-Amz-Date", amz_date),
            ("X-Amz-Expires", str(expires_in_seconds)),
            ("X-Amz-SignedHeaders", "host"),
        ])
        if credentials.session_token:
            query.append(("X-Amz-Security-Token", credentials.session_token))

        canonical_request = "\n".join([
            request.method,
            uri_encode_path(request.path),
            canonical_query_string(query),
            f"host:{request.canonical_host}\n",
            "host",
            UNSIGNED_PAYLOAD,
        ])

        signature = self._signature(credentials, datestamp, region, amz_date, credential_scope, canonical_request)
        query.append(("X-Amz-Signature", signature))
        return replace(request, query=query).url()

    def presign_post_policy(
        self,
        policy: PostPolicy,
        credentials: Credentials,
        region: str,
        timestamp: Optional[datetime] = None,
    ) -> Dict[str, str]:
        """Sign a browser POST policy and return the form fields to submit."""
        policy.validate()
        if credentials.is_anonymous:
            raise ValidationException("Presigned POST policies require credentials.")
        if not region:
            raise ValidationException("Region is required to presign a POST policy.")

        timestamp = _utc(timestamp)
        amz_date = timestamp.strftime("%Y%m%dT%H%M%SZ")
        datestamp = timestamp.strftime("%Y%m%d")

        signing_fields = {
            "x-amz-algorithm": ALGORITHM,
            "x-amz-credential": f"{credentials.access_key}/{self._scope(datestamp, region)}",
            "x-amz-date": amz_date,
        }
        if credentials.session_token:
            signing_fields["x-amz-security-token"] = credentials.session_token

        encoded_policy = policy.base64(signing_fields)
        signing_key = derive_signing_key(credentials.secret_key, datestamp, region)
        signature = hmac.new(signing_key, encoded_policy.encode(), hashlib.sha256).hexdigest()

        form_data = policy.form_data()
        form_data.update(signing_fields)
        form_data["policy"] = encoded_policy
        form_data["x-amz-signature"] = signature
        return form_data

    @staticmethod
    def _scope(datestamp: str, region: str) -> str:
        return f"{datestamp}/{region}/{SERVICE_NAME}/{SCOPE_TERMINATOR}"

    @staticmethod
    def _hash_payload(request: SignableRequest) -> str:
        if request.unsigned_payload:
            return UNSIGNED_PAYLOAD
        if request.body is None:
            return EMPTY_SHA256
        return hashlib.sha256(request.body).hexdigest()

    @staticmethod
    def _signature(
        credentials: Credentials,
        datestamp: str,
        region: str,
        amz_date: str,
        credential_scope: str,
        canonical_request: str,
    ) -> str:
        string_to_sign = "\n".join([
            ALGORITHM,
            amz_date,
            credential_scope,
            hashlib.sha256(canonical_request.encode()).hexdigest(),
        ])
        signing_key = derive_signing_key(credentials.secret_key, datestamp, region)
        return hmac.new(signing_key, string_to_sign.encode(), hashlib.sha256).hexdigest()
