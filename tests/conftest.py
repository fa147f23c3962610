"""Shared fixtures: an in-memory S3 service behind ``httpx.MockTransport``.

``FakeS3`` implements just enough of the path-style REST/XML protocol for
the client, the multipart uploader and the policy calls. It records every
request so tests can assert on what went over the wire.
"""

import hashlib
import hmac
import xml.etree.ElementTree as ET
from datetime import datetime, UTC
from typing import Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from nimbusstore import NimbusClient
from nimbusstore._signer import canonical_query_string, derive_signing_key

ACCESS_KEY = "AKIDEXAMPLE"
SECRET_KEY = "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY"
FIXED_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def _xml_response(root: ET.Element, status: int = 200) -> httpx.Response:
    return httpx.Response(
        status,
        content=ET.tostring(root, encoding="utf-8"),
        headers={"Content-Type": "application/xml"},
    )


def _sub(parent: ET.Element, tag: str, text) -> ET.Element:
    el = ET.SubElement(parent, tag)
    el.text = str(text)
    return el


def _local(tag: str) -> str:
    return tag.split("}")[-1]


class FakeS3:
    """Minimal S3 server state plus a MockTransport handler."""

    def __init__(self):
        self.buckets: Dict[str, Dict[str, bytes]] = {}
        self.uploads: Dict[str, dict] = {}
        self.policies: Dict[str, str] = {}
        self.requests: List[httpx.Request] = []
        self.part_uploads = 0
        self.parts_page_size = 1000
        self.uploads_page_size = 1000
        self.uploads_send_markers = True
        self.objects_page_size = 1000
        self.verify_signatures = False
        self.fail_part_number: Optional[int] = None
        self._upload_counter = 0

    # Helpers used directly by tests

    def add_upload(self, bucket: str, key: str, initiated: str) -> str:
        self._upload_counter += 1
        upload_id = f"upload-{self._upload_counter}"
        self.uploads[upload_id] = {"bucket": bucket, "key": key, "initiated": initiated, "parts": {}}
        return upload_id

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    # Request handling

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.verify_signatures and not self._signature_ok(request):
            return self._error(403, "SignatureDoesNotMatch", "The request signature we calculated does not match.", request)

        params = request.url.params
        bucket, _, key = request.url.path.lstrip("/").partition("/")
        method = request.method

        if not bucket:
            return self._list_buckets()

        creating = method == "PUT" and not key and "policy" not in params
        if bucket not in self.buckets and not creating:
            return self._error(404, "NoSuchBucket", "The specified bucket does not exist.", request, bucket=bucket)

        if not key:
            return self._bucket_request(request, bucket, params)
        return self._object_request(request, bucket, key, params)

    def _error(self, status: int, code: str, message: str, request: httpx.Request, bucket: str = "") -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(status)
        root = ET.Element("Error")
        _sub(root, "Code", code)
        _sub(root, "Message", message)
        if bucket:
            _sub(root, "BucketName", bucket)
        _sub(root, "RequestId", "4442587FB7D0A2F9")
        return _xml_response(root, status)

    def _list_buckets(self) -> httpx.Response:
        root = ET.Element("ListAllMyBucketsResult", xmlns="http://s3.amazonaws.com/doc/2006-03-01/")
        container = ET.SubElement(root, "Buckets")
        for name in sorted(self.buckets):
            node = ET.SubElement(container, "Bucket")
            _sub(node, "Name", name)
            _sub(node, "CreationDate", "2026-01-01T00:00:00.000Z")
        return _xml_response(root)

    def _bucket_request(self, request: httpx.Request, bucket: str, params) -> httpx.Response:
        method = request.method

        if "policy" in params:
            if method == "GET":
                if bucket not in self.policies:
                    return self._error(404, "NoSuchBucketPolicy", "The bucket policy does not exist", request, bucket)
                return httpx.Response(200, content=self.policies[bucket].encode())
            if method == "PUT":
                self.policies[bucket] = request.content.decode()
                return httpx.Response(204)
            if method == "DELETE":
                self.policies.pop(bucket, None)
                return httpx.Response(204)

        if method == "HEAD":
            return httpx.Response(200)
        if method == "PUT":
            if bucket in self.buckets:
                return self._error(409, "BucketAlreadyOwnedByYou", "Your previous request to create the named bucket succeeded.", request, bucket)
            self.buckets[bucket] = {}
            return httpx.Response(200)
        if method == "DELETE":
            if self.buckets[bucket]:
                return self._error(409, "BucketNotEmpty", "The bucket you tried to delete is not empty", request, bucket)
            del self.buckets[bucket]
            return httpx.Response(204)
        if method == "GET" and "uploads" in params:
            return self._list_uploads(bucket, params)
        if method == "GET":
            return self._list_objects(bucket, params)
        if method == "POST" and "delete" in params:
            return self._delete_objects(request, bucket)
        return self._error(405, "MethodNotAllowed", "The specified method is not allowed.", request)

    def _list_uploads(self, bucket: str, params) -> httpx.Response:
        prefix = params.get("prefix", "")
        key_marker = params.get("key-marker", "")
        upload_id_marker = params.get("upload-id-marker", "")

        candidates = sorted(
            (info["key"], upload_id, info["initiated"])
            for upload_id, info in self.uploads.items()
            if info["bucket"] == bucket and info["key"].startswith(prefix)
        )
        if key_marker:
            candidates = [c for c in candidates if (c[0], c[1]) > (key_marker, upload_id_marker)]

        page = candidates[: self.uploads_page_size]
        truncated = len(candidates) > len(page)

        root = ET.Element("ListMultipartUploadsResult")
        _sub(root, "Bucket", bucket)
        for key, upload_id, initiated in page:
            node = ET.SubElement(root, "Upload")
            _sub(node, "Key", key)
            _sub(node, "UploadId", upload_id)
            _sub(node, "Initiated", initiated)
        if page and self.uploads_send_markers:
            _sub(root, "NextKeyMarker", page[-1][0])
            _sub(root, "NextUploadIdMarker", page[-1][1])
        _sub(root, "IsTruncated", "true" if truncated else "false")
        return _xml_response(root)

    def _list_objects(self, bucket: str, params) -> httpx.Response:
        prefix = params.get("prefix", "")
        delimiter = params.get("delimiter", "")
        start = int(params.get("continuation-token", "0") or 0)

        keys = sorted(k for k in self.buckets[bucket] if k.startswith(prefix))
        contents, prefixes = [], []
        for name in keys:
            rest = name[len(prefix):]
            if delimiter and delimiter in rest:
                common = prefix + rest.split(delimiter, 1)[0] + delimiter
                if common not in prefixes:
                    prefixes.append(common)
            else:
                contents.append(name)

        page = contents[start:start + self.objects_page_size]
        truncated = start + len(page) < len(contents)

        root = ET.Element("ListBucketResult", xmlns="http://s3.amazonaws.com/doc/2006-03-01/")
        _sub(root, "Name", bucket)
        for name in page:
            node = ET.SubElement(root, "Contents")
            data = self.buckets[bucket][name]
            _sub(node, "Key", name)
            _sub(node, "Size", len(data))
            _sub(node, "ETag", f'"{hashlib.md5(data).hexdigest()}"')
            _sub(node, "LastModified", "2026-01-01T00:00:00.000Z")
        if start == 0:
            for common in prefixes:
                node = ET.SubElement(root, "CommonPrefixes")
                _sub(node, "Prefix", common)
        _sub(root, "IsTruncated", "true" if truncated else "false")
        if truncated:
            _sub(root, "NextContinuationToken", start + len(page))
        return _xml_response(root)

    def _delete_objects(self, request: httpx.Request, bucket: str) -> httpx.Response:
        if "content-md5" not in request.headers:
            return self._error(400, "MissingContentMD5", "Missing required header for this request: Content-MD5", request)
        doc = ET.fromstring(request.content)
        root = ET.Element("DeleteResult")
        for obj in doc:
            if _local(obj.tag) != "Object":
                continue
            name = next(child.text for child in obj if _local(child.tag) == "Key")
            self.buckets[bucket].pop(name, None)
            node = ET.SubElement(root, "Deleted")
            _sub(node, "Key", name)
        return _xml_response(root)

    def _object_request(self, request: httpx.Request, bucket: str, key: str, params) -> httpx.Response:
        method = request.method

        if method == "POST" and "uploads" in params:
            self._upload_counter += 1
            upload_id = f"upload-{self._upload_counter}"
            self.uploads[upload_id] = {
                "bucket": bucket,
                "key": key,
                "initiated": f"2026-03-01T12:00:{self._upload_counter:02d}.000Z",
                "parts": {},
            }
            root = ET.Element("InitiateMultipartUploadResult", xmlns="http://s3.amazonaws.com/doc/2006-03-01/")
            _sub(root, "Bucket", bucket)
            _sub(root, "Key", key)
            _sub(root, "UploadId", upload_id)
            return _xml_response(root)

        if "uploadId" in params:
            upload_id = params["uploadId"]
            upload = self.uploads.get(upload_id)
            if upload is None:
                return self._error(404, "NoSuchUpload", "The specified upload does not exist.", request)
            if method == "PUT":
                return self._upload_part(request, upload, int(params["partNumber"]))
            if method == "GET":
                return self._list_parts(upload, params)
            if method == "POST":
                return self._complete(request, bucket, key, upload_id, upload)
            if method == "DELETE":
                del self.uploads[upload_id]
                return httpx.Response(204)

        objects = self.buckets[bucket]
        if method == "PUT":
            objects[key] = request.content
            return httpx.Response(200, headers={"ETag": f'"{hashlib.md5(request.content).hexdigest()}"'})
        if method in ("GET", "HEAD"):
            if key not in objects:
                return self._error(404, "NoSuchKey", "The specified key does not exist.", request)
            data = objects[key]
            headers = {
                "ETag": f'"{hashlib.md5(data).hexdigest()}"',
                "Content-Type": "application/octet-stream",
                "Last-Modified": "Sun, 01 Mar 2026 12:00:00 GMT",
                "x-amz-meta-camera": "cam-1",
            }
            if method == "HEAD":
                headers["Content-Length"] = str(len(data))
                return httpx.Response(200, headers=headers)
            return httpx.Response(200, content=data, headers=headers)
        if method == "DELETE":
            objects.pop(key, None)
            return httpx.Response(204)
        return self._error(405, "MethodNotAllowed", "The specified method is not allowed.", request)

    def _upload_part(self, request: httpx.Request, upload: dict, part_number: int) -> httpx.Response:
        if part_number == self.fail_part_number:
            return self._error(500, "InternalError", "We encountered an internal error. Please try again.", request)
        self.part_uploads += 1
        upload["parts"][part_number] = request.content
        return httpx.Response(200, headers={"ETag": f'"{hashlib.md5(request.content).hexdigest()}"'})

    def _list_parts(self, upload: dict, params) -> httpx.Response:
        marker = int(params.get("part-number-marker", "0") or 0)
        max_parts = min(int(params.get("max-parts", "1000")), self.parts_page_size)
        numbers = sorted(n for n in upload["parts"] if n > marker)
        page = numbers[:max_parts]
        truncated = len(numbers) > len(page)

        root = ET.Element("ListPartsResult")
        for number in page:
            data = upload["parts"][number]
            node = ET.SubElement(root, "Part")
            _sub(node, "PartNumber", number)
            _sub(node, "ETag", f'"{hashlib.md5(data).hexdigest()}"')
            _sub(node, "Size", len(data))
            _sub(node, "LastModified", "2026-03-01T11:00:00.000Z")
        if page:
            _sub(root, "NextPartNumberMarker", page[-1])
        _sub(root, "IsTruncated", "true" if truncated else "false")
        return _xml_response(root)

    def _complete(self, request: httpx.Request, bucket: str, key: str, upload_id: str, upload: dict) -> httpx.Response:
        doc = ET.fromstring(request.content)
        numbers, body, digests = [], b"", b""
        for part in doc:
            fields = {_local(child.tag): child.text for child in part}
            number = int(fields["PartNumber"])
            data = upload["parts"].get(number)
            if data is None or fields["ETag"].strip('"') != hashlib.md5(data).hexdigest():
                return self._error(400, "InvalidPart", "One or more of the specified parts could not be found.", request)
            numbers.append(number)
            body += data
            digests += hashlib.md5(data).digest()
        if numbers != sorted(numbers):
            return self._error(400, "InvalidPartOrder", "The list of parts was not in ascending order.", request)

        self.buckets[bucket][key] = body
        del self.uploads[upload_id]
        etag = f"{hashlib.md5(digests).hexdigest()}-{len(numbers)}"
        root = ET.Element("CompleteMultipartUploadResult", xmlns="http://s3.amazonaws.com/doc/2006-03-01/")
        _sub(root, "Location", f"http://localhost:9000/{bucket}/{key}")
        _sub(root, "Bucket", bucket)
        _sub(root, "Key", key)
        _sub(root, "ETag", f'"{etag}"')
        return _xml_response(root)

    # Server-side signature check, independent of the client's request objects.

    def _signature_ok(self, request: httpx.Request) -> bool:
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("AWS4-HMAC-SHA256 "):
            return False
        fields = dict(item.strip().split("=", 1) for item in auth[len("AWS4-HMAC-SHA256 "):].split(","))
        access_key, datestamp, region, service, _ = fields["Credential"].split("/")
        if access_key != ACCESS_KEY:
            return False

        raw_path, _, raw_query = request.url.raw_path.decode().partition("?")
        signed_headers = fields["SignedHeaders"].split(";")
        header_block = "".join(
            f"{name}:{','.join(' '.join(v.split()) for v in request.headers.get_list(name))}\n"
            for name in signed_headers
        )
        canonical_request = "\n".join([
            request.method,
            raw_path,
            canonical_query_string(parse_qsl(raw_query, keep_blank_values=True)),
            header_block,
            fields["SignedHeaders"],
            request.headers["x-amz-content-sha256"],
        ])
        string_to_sign = "\n".join([
            "AWS4-HMAC-SHA256",
            request.headers["x-amz-date"],
            f"{datestamp}/{region}/{service}/aws4_request",
            hashlib.sha256(canonical_request.encode()).hexdigest(),
        ])
        key = derive_signing_key(SECRET_KEY, datestamp, region, service)
        expected = hmac.new(key, string_to_sign.encode(), hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, fields["Signature"])


@pytest.fixture
def fake_s3() -> FakeS3:
    server = FakeS3()
    server.buckets["photos"] = {}
    return server


@pytest.fixture
def make_client(fake_s3):
    """Build a NimbusClient wired to the fake service with a fixed clock."""

    def factory(**kwargs) -> NimbusClient:
        options = {
            "endpoint": "localhost:9000",
            "access_key": ACCESS_KEY,
            "secret_key": SECRET_KEY,
            "transport": fake_s3.transport(),
            "clock": lambda: FIXED_TIME,
        }
        options.update(kwargs)
        return NimbusClient(**options)

    return factory
