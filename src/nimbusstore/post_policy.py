"""
Browser POST upload policy builder
"""

import base64
import json
from datetime import datetime, UTC
from typing import Dict, List, Optional

from .error import ValidationException


class PostPolicy:
    """
    Conditions a browser form upload must satisfy.

    Build one with the setters, then hand it to
    ``NimbusClient.presigned_post_policy`` to get the signed form fields.
    """

    def __init__(self):
        self.bucket_name: Optional[str] = None
        self.key: Optional[str] = None
        self.expiration: Optional[datetime] = None
        self._conditions: List[list] = []
        self._form_data: Dict[str, str] = {}

    def set_bucket(self, bucket_name: str) -> "PostPolicy":
        if not bucket_name:
            raise ValidationException("Bucket name cannot be empty.")
        self.bucket_name = bucket_name
        self._add_equals("$bucket", bucket_name, form_field=None)
        return self

    def set_key(self, key: str) -> "PostPolicy":
        if not key:
            raise ValidationException("Object key cannot be empty.")
        self.key = key
        self._add_equals("$key", key, form_field="key")
        return self

    def set_key_starts_with(self, prefix: str) -> "PostPolicy":
        if not prefix:
            raise ValidationException("Object key prefix cannot be empty.")
        self.key = prefix
        self._conditions.append(["starts-with", "$key", prefix])
        self._form_data["key"] = prefix
        return self

    def set_expiration(self, expiration: datetime) -> "PostPolicy":
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=UTC)
        self.expiration = expiration.astimezone(UTC)
        return self

    def set_content_type(self, content_type: str) -> "PostPolicy":
        if not content_type:
            raise ValidationException("Content type cannot be empty.")
        self._add_equals("$Content-Type", content_type, form_field="Content-Type")
        return self

    def set_content_length_range(self, low: int, high: int) -> "PostPolicy":
        if low < 0 or low > high:
            raise ValidationException(f"Invalid content length range {low}-{high}.")
        self._conditions.append(["content-length-range", low, high])
        return self

    def set_user_metadata(self, key: str, value: str) -> "PostPolicy":
        header = f"x-amz-meta-{key}"
        self._add_equals(f"${header}", value, form_field=header)
        return self

    def _add_equals(self, element: str, value: str, form_field: Optional[str]) -> None:
        self._conditions = [c for c in self._conditions if not (c[0] == "eq" and c[1] == element)]
        self._conditions.append(["eq", element, value])
        if form_field:
            self._form_data[form_field] = value

    def validate(self) -> None:
        if not self.bucket_name:
            raise ValidationException("Bucket name must be set on the POST policy.")
        if not self.key:
            raise ValidationException("Object key must be set on the POST policy.")
        if self.expiration is None:
            raise ValidationException("Expiration must be set on the POST policy.")

    def marshal(self, extra_fields: Optional[Dict[str, str]] = None) -> bytes:
        """Serialize to the policy JSON document, including signing fields."""
        conditions = list(self._conditions)
        for name, value in (extra_fields or {}).items():
            conditions.append(["eq", f"${name}", value])
        document = {
            "expiration": self.expiration.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            "conditions": conditions,
        }
        return json.dumps(document, separators=(",", ":")).encode("utf-8")

    def base64(self, extra_fields: Optional[Dict[str, str]] = None) -> str:
        return base64.b64encode(self.marshal(extra_fields)).decode()

    def form_data(self) -> Dict[str, str]:
        return dict(self._form_data)
