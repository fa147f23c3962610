"""
XML request/response helpers for S3-compatible endpoints
"""

import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

S3_NAMESPACE = "http://s3.amazonaws.com/doc/2006-03-01/"


class XmlParseError(Exception):
    """Raised when a service response body is not the XML we expected."""


def _tag(node: ET.Element) -> str:
    return node.tag.split("}")[-1]


def _parse(body: bytes) -> ET.Element:
    try:
        return ET.fromstring(body)
    except ET.ParseError as ex:
        raise XmlParseError(f"Failed to parse response XML. {ex}") from ex


def _children(node: ET.Element, name: str) -> List[ET.Element]:
    return [child for child in node if _tag(child) == name]


def _text(node: ET.Element, name: str, default: Optional[str] = None) -> Optional[str]:
    for child in node:
        if _tag(child) == name:
            return child.text if child.text is not None else ""
    return default


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_error(body: bytes) -> Dict[str, str]:
    """Return the child elements of an S3 <Error> document, or {} if unparseable."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return {}
    if _tag(root) != "Error":
        return {}
    return {_tag(child): (child.text or "") for child in root}


def parse_initiate_multipart_upload(body: bytes) -> str:
    root = _parse(body)
    upload_id = _text(root, "UploadId")
    if not upload_id:
        raise XmlParseError("Multipart upload initiation did not return an upload ID.")
    return upload_id


def parse_list_parts(body: bytes) -> Tuple[List[dict], int, bool]:
    """Return (parts, next part-number marker, is truncated)."""
    root = _parse(body)
    parts = []
    for node in _children(root, "Part"):
        parts.append(
            {
                "part_number": int(_text(node, "PartNumber", "0")),
                "etag": (_text(node, "ETag") or "").strip('"'),
                "size": int(_text(node, "Size", "0")),
                "last_modified": parse_timestamp(_text(node, "LastModified")),
            }
        )
    next_marker = int(_text(root, "NextPartNumberMarker") or 0)
    return parts, next_marker, _is_true(_text(root, "IsTruncated"))


def parse_list_multipart_uploads(body: bytes) -> Tuple[List[dict], str, str, bool]:
    """Return (uploads, next key marker, next upload-id marker, is truncated)."""
    root = _parse(body)
    uploads = []
    for node in _children(root, "Upload"):
        uploads.append(
            {
                "key": _text(node, "Key", ""),
                "upload_id": _text(node, "UploadId", ""),
                "initiated": _text(node, "Initiated", ""),
            }
        )
    return (
        uploads,
        _text(root, "NextKeyMarker") or "",
        _text(root, "NextUploadIdMarker") or "",
        _is_true(_text(root, "IsTruncated")),
    )


def parse_list_objects_v2(body: bytes) -> Tuple[List[dict], List[str], Optional[str], bool]:
    """Return (objects, common prefixes, next continuation token, is truncated)."""
    root = _parse(body)
    objects = []
    for node in _children(root, "Contents"):
        objects.append(
            {
                "key": _text(node, "Key", ""),
                "size": int(_text(node, "Size", "0")),
                "etag": (_text(node, "ETag") or "").strip('"') or None,
                "last_modified": parse_timestamp(_text(node, "LastModified")),
            }
        )
    prefixes = [_text(node, "Prefix", "") for node in _children(root, "CommonPrefixes")]
    return objects, prefixes, _text(root, "NextContinuationToken"), _is_true(_text(root, "IsTruncated"))


def parse_list_buckets(body: bytes) -> List[dict]:
    root = _parse(body)
    buckets = []
    for container in _children(root, "Buckets"):
        for node in _children(container, "Bucket"):
            buckets.append(
                {
                    "name": _text(node, "Name", ""),
                    "creation_date": parse_timestamp(_text(node, "CreationDate")),
                }
            )
    return buckets


def parse_complete_multipart_upload(body: bytes) -> Dict[str, Optional[str]]:
    result = {"etag": None, "location": None}
    if not body or not body.strip():
        return result
    root = _parse(body)
    if _tag(root) == "Error":
        # S3 may report a failed completion with a 200 status.
        details = {_tag(child): (child.text or "") for child in root}
        raise XmlParseError(details.get("Message") or details.get("Code") or "CompleteMultipartUpload failed.")
    etag = _text(root, "ETag")
    result["etag"] = etag.strip('"') if etag else None
    result["location"] = _text(root, "Location")
    return result


def parse_delete_result(body: bytes) -> Dict[str, List[Dict[str, str]]]:
    root = _parse(body)
    result = {"deleted": [], "errors": []}
    for node in _children(root, "Deleted"):
        result["deleted"].append({"key": _text(node, "Key", "")})
    for node in _children(root, "Error"):
        result["errors"].append(
            {
                "key": _text(node, "Key", ""),
                "code": _text(node, "Code", ""),
                "message": _text(node, "Message", ""),
            }
        )
    return result


def build_complete_multipart_upload(parts: Iterable[Tuple[int, str]]) -> bytes:
    root = ET.Element("CompleteMultipartUpload")
    for part_number, etag in sorted(parts):
        part_el = ET.SubElement(root, "Part")
        ET.SubElement(part_el, "PartNumber").text = str(part_number)
        if etag and not etag.startswith('"'):
            etag = f'"{etag}"'
        ET.SubElement(part_el, "ETag").text = etag
    return ET.tostring(root, encoding="utf-8", method="xml")


def build_delete_objects(object_names: Iterable[str]) -> bytes:
    delete_el = ET.Element("Delete")
    for name in object_names:
        obj_el = ET.SubElement(delete_el, "Object")
        ET.SubElement(obj_el, "Key").text = name
    return ET.tostring(delete_el, encoding="utf-8", method="xml")


def build_create_bucket_configuration(region: str) -> bytes:
    root = ET.Element("CreateBucketConfiguration", xmlns=S3_NAMESPACE)
    ET.SubElement(root, "LocationConstraint").text = region
    return ET.tostring(root, encoding="utf-8", method="xml")
