"""
Bucket policy engine

Translates between a canned ``PolicyType`` applied to an object prefix and
the IAM-style statements S3 stores as the bucket policy.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple, Union

from .conditions import ConditionKeyMap, ConditionMap
from .error import InvalidPolicyException
from .resources import ResourceSet

AWS_RESOURCE_PREFIX = "arn:aws:s3:::"
POLICY_VERSION = "2012-10-17"

COMMON_BUCKET_ACTIONS = frozenset({"s3:GetBucketLocation"})
READ_ONLY_BUCKET_ACTIONS = frozenset({"s3:ListBucket"})
WRITE_ONLY_BUCKET_ACTIONS = frozenset({"s3:ListBucketMultipartUploads"})
READ_ONLY_OBJECT_ACTIONS = frozenset({"s3:GetObject"})
WRITE_ONLY_OBJECT_ACTIONS = frozenset({
    "s3:AbortMultipartUpload",
    "s3:DeleteObject",
    "s3:ListMultipartUploadParts",
    "s3:PutObject",
})

READ_WRITE_BUCKET_ACTIONS = READ_ONLY_BUCKET_ACTIONS | WRITE_ONLY_BUCKET_ACTIONS
READ_WRITE_OBJECT_ACTIONS = READ_ONLY_OBJECT_ACTIONS | WRITE_ONLY_OBJECT_ACTIONS
VALID_ACTIONS = COMMON_BUCKET_ACTIONS | READ_WRITE_BUCKET_ACTIONS | READ_WRITE_OBJECT_ACTIONS


class PolicyType(str, Enum):
    NONE = "none"
    READ_ONLY = "readonly"
    WRITE_ONLY = "writeonly"
    READ_WRITE = "readwrite"


def bucket_resource_of(bucket_name: str) -> str:
    return AWS_RESOURCE_PREFIX + bucket_name


def object_resource_of(bucket_name: str, prefix: str) -> str:
    return f"{AWS_RESOURCE_PREFIX}{bucket_name}/{prefix}*"


def _single_or_list(value, what: str) -> Set[str]:
    if isinstance(value, str):
        return {value}
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return set(value)
    raise InvalidPolicyException(f"Policy {what} must be a string or a list of strings.")


@dataclass
class Statement:
    """One policy statement. ``principal`` maps principal type to ids, e.g. ``{"AWS": {"*"}}``."""
    actions: Set[str] = field(default_factory=set)
    resources: ResourceSet = field(default_factory=ResourceSet)
    effect: str = "Allow"
    principal: Dict[str, Set[str]] = field(default_factory=lambda: {"AWS": {"*"}})
    conditions: Optional[ConditionMap] = None
    sid: str = ""

    def __post_init__(self):
        self.actions = set(self.actions)
        if not isinstance(self.resources, ResourceSet):
            self.resources = ResourceSet(self.resources)

    @property
    def aws(self) -> Set[str]:
        return self.principal.get("AWS", set())

    def is_public_allow(self) -> bool:
        return self.effect == "Allow" and "*" in self.aws

    @classmethod
    def from_dict(cls, data: dict) -> "Statement":
        if not isinstance(data, dict):
            raise InvalidPolicyException("Policy statement must be a JSON object.")

        principal_data = data.get("Principal", {})
        if principal_data == "*":
            principal = {"AWS": {"*"}}
        elif isinstance(principal_data, dict):
            principal = {kind: _single_or_list(ids, "principal") for kind, ids in principal_data.items()}
        else:
            raise InvalidPolicyException("Policy principal must be '*' or a JSON object.")

        conditions = None
        if data.get("Condition"):
            if not isinstance(data["Condition"], dict) or not all(
                isinstance(key_map, dict) for key_map in data["Condition"].values()
            ):
                raise InvalidPolicyException("Policy condition must map operators to key maps.")
            conditions = ConditionMap()
            for operator, key_map in data["Condition"].items():
                conditions[operator] = ConditionKeyMap(
                    {key: _single_or_list(values, "condition value") for key, values in key_map.items()}
                )

        effect = data.get("Effect", "")
        sid = data.get("Sid", "")
        if not isinstance(effect, str) or not isinstance(sid, str):
            raise InvalidPolicyException("Policy Effect and Sid must be strings.")

        return cls(
            actions=_single_or_list(data.get("Action", []), "action"),
            resources=ResourceSet(_single_or_list(data.get("Resource", []), "resource")),
            effect=effect,
            principal=principal,
            conditions=conditions,
            sid=sid,
        )

    def to_dict(self) -> dict:
        data = {
            "Action": sorted(self.actions),
            "Effect": self.effect,
            "Principal": {kind: sorted(ids) for kind, ids in sorted(self.principal.items())},
            "Resource": sorted(self.resources),
            "Sid": self.sid,
        }
        if self.conditions:
            data["Condition"] = self.conditions.to_dict()
        return data

    def is_valid(self, bucket_name: str) -> bool:
        """Whether this statement is one the canned policy logic may rewrite for ``bucket_name``."""
        if not bucket_name:
            return False
        if not self.actions or not self.actions <= VALID_ACTIONS:
            return False
        if self.effect != "Allow":
            return False
        if self.aws != {"*"}:
            return False
        if not self.resources:
            return False
        bucket_resource = bucket_resource_of(bucket_name)
        return all(
            resource == bucket_resource or resource.startswith(bucket_resource + "/")
            for resource in self.resources
        )

    def remove_object_actions(self, object_resource: str) -> None:
        if self.conditions is not None:
            return
        if len(self.resources) > 1:
            self.resources.discard(object_resource)
        else:
            self.actions -= READ_WRITE_OBJECT_ACTIONS

    def remove_bucket_actions(
        self,
        prefix: str,
        bucket_resource: str,
        read_only_in_use: bool,
        write_only_in_use: bool,
    ) -> None:
        if len(self.resources) > 1:
            self.resources.discard(bucket_resource)
            return
        if not read_only_in_use:
            self._remove_read_only_bucket_actions(prefix)
        if not write_only_in_use:
            self._remove_write_only_bucket_actions()

    def _remove_read_only_bucket_actions(self, prefix: str) -> None:
        if not READ_ONLY_BUCKET_ACTIONS <= self.actions:
            return
        if self.conditions is None:
            self.actions -= READ_ONLY_BUCKET_ACTIONS
            return
        if not prefix:
            return

        string_equals = self.conditions.get("StringEquals")
        if string_equals is not None:
            string_equals.remove("s3:prefix", {prefix})
            if not string_equals:
                del self.conditions["StringEquals"]

        # ListBucket stays while other prefixes are still granted through the condition.
        if not self.conditions:
            self.conditions = None
            self.actions -= READ_ONLY_BUCKET_ACTIONS

    def _remove_write_only_bucket_actions(self) -> None:
        if self.conditions is None:
            self.actions -= WRITE_ONLY_BUCKET_ACTIONS

    def bucket_policy(self, prefix: str) -> Tuple[bool, bool, bool]:
        """Return (common found, read-only, write-only) for bucket-level actions."""
        common_found = read_only = write_only = False
        if not self.is_public_allow():
            return common_found, read_only, write_only

        if COMMON_BUCKET_ACTIONS <= self.actions and self.conditions is None:
            common_found = True
        if WRITE_ONLY_BUCKET_ACTIONS <= self.actions and self.conditions is None:
            write_only = True

        if READ_ONLY_BUCKET_ACTIONS <= self.actions:
            if prefix and self.conditions is not None:
                if "StringEquals" in self.conditions:
                    values = self.conditions["StringEquals"].get("s3:prefix")
                    read_only = values is not None and prefix in values
                elif "StringNotEquals" in self.conditions:
                    values = self.conditions["StringNotEquals"].get("s3:prefix")
                    read_only = values is not None and prefix not in values
            elif self.conditions is None:
                read_only = True

        return common_found, read_only, write_only

    def object_policy(self) -> Tuple[bool, bool]:
        """Return (read-only, write-only) for object-level actions."""
        if not self.is_public_allow() or self.conditions is not None:
            return False, False
        return READ_ONLY_OBJECT_ACTIONS <= self.actions, WRITE_ONLY_OBJECT_ACTIONS <= self.actions


class BucketPolicy:
    """
    The policy document of one bucket.

    ``set_policy`` rewrites the statement list in place, so one instance
    must not be modified from several tasks at once.
    """

    def __init__(self, bucket_name: str = "", statements: Optional[List[Statement]] = None, version: str = POLICY_VERSION):
        self.bucket_name = bucket_name
        self.statements: List[Statement] = statements if statements is not None else []
        self.version = version

    @property
    def bucket_resource(self) -> str:
        return bucket_resource_of(self.bucket_name)

    @classmethod
    def from_json(cls, data: Union[str, bytes], bucket_name: str) -> "BucketPolicy":
        """Parse a policy document. Statements the engine does not understand are kept as-is."""
        try:
            document = json.loads(data)
        except (TypeError, ValueError) as ex:
            raise InvalidPolicyException(f"Bucket policy for '{bucket_name}' is not valid JSON. {ex}") from ex

        if not isinstance(document, dict):
            raise InvalidPolicyException("Bucket policy must be a JSON object.")

        raw_statements = document.get("Statement", [])
        if isinstance(raw_statements, dict):
            raw_statements = [raw_statements]
        if not isinstance(raw_statements, list):
            raise InvalidPolicyException("Bucket policy 'Statement' must be a list.")

        return cls(
            bucket_name,
            [Statement.from_dict(item) for item in raw_statements],
            document.get("Version", POLICY_VERSION),
        )

    def to_dict(self) -> dict:
        return {"Version": self.version, "Statement": [s.to_dict() for s in self.statements]}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def set_policy(self, policy_type: Union[PolicyType, str], prefix: str = "") -> None:
        """Apply ``policy_type`` to objects under ``prefix``, replacing what was there."""
        policy_type = PolicyType(policy_type)
        self._remove_statements(prefix)
        for statement in self._new_statements(policy_type, prefix):
            self._append_statement(statement)

    def get_policy(self, prefix: str = "") -> PolicyType:
        """Return the canned policy in effect for objects under ``prefix``."""
        bucket_resource = self.bucket_resource
        object_resource = object_resource_of(self.bucket_name, prefix)

        bucket_common_found = bucket_read_only = bucket_write_only = False
        matched_resource = ""
        obj_read_only = obj_write_only = False

        for statement in self.statements:
            if object_resource in statement.resources:
                matched = {object_resource}
            else:
                matched = statement.resources.match(object_resource)

            if matched:
                read_only, write_only = statement.object_policy()
                for resource in matched:
                    if len(matched_resource) < len(resource):
                        obj_read_only, obj_write_only = read_only, write_only
                        matched_resource = resource
                    elif len(matched_resource) == len(resource):
                        obj_read_only = obj_read_only or read_only
                        obj_write_only = obj_write_only or write_only
                        matched_resource = resource
            elif bucket_resource in statement.resources:
                common_found, read_only, write_only = statement.bucket_policy(prefix)
                bucket_common_found = bucket_common_found or common_found
                bucket_read_only = bucket_read_only or read_only
                bucket_write_only = bucket_write_only or write_only

        if not bucket_common_found:
            return PolicyType.NONE
        if bucket_read_only and bucket_write_only and obj_read_only and obj_write_only:
            return PolicyType.READ_WRITE
        if bucket_read_only and obj_read_only:
            return PolicyType.READ_ONLY
        if bucket_write_only and obj_write_only:
            return PolicyType.WRITE_ONLY
        return PolicyType.NONE

    def get_policies(self) -> Dict[str, PolicyType]:
        """Return the policy of every object prefix named in the statements, keyed ``bucket/prefix*``."""
        return {key: self.get_policy(prefix) for key, prefix in self._object_prefixes().items()}

    def _object_prefixes(self) -> Dict[str, str]:
        bucket_resource = self.bucket_resource
        resources = set()
        for statement in self.statements:
            resources |= statement.resources.starts_with(bucket_resource + "/")

        prefixes = {}
        for resource in sorted(resources):
            asterisk = ""
            if resource.endswith("*"):
                resource = resource[:-1]
                asterisk = "*"
            object_path = resource[len(bucket_resource) + 1:]
            prefixes[f"{self.bucket_name}/{object_path}{asterisk}"] = object_path
        return prefixes

    def _in_use_policy(self, prefix: str) -> Tuple[bool, bool]:
        """Whether read-only and write-only object actions are granted to other prefixes."""
        resource_prefix = self.bucket_resource + "/"
        object_resource = object_resource_of(self.bucket_name, prefix)

        read_only_in_use = write_only_in_use = False
        for statement in self.statements:
            if object_resource not in statement.resources and statement.resources.starts_with(resource_prefix):
                if READ_ONLY_OBJECT_ACTIONS <= statement.actions:
                    read_only_in_use = True
                if WRITE_ONLY_OBJECT_ACTIONS <= statement.actions:
                    write_only_in_use = True
            if read_only_in_use and write_only_in_use:
                break
        return read_only_in_use, write_only_in_use

    def _remove_statements(self, prefix: str) -> None:
        bucket_resource = self.bucket_resource
        object_resource = object_resource_of(self.bucket_name, prefix)
        read_only_in_use, write_only_in_use = self._in_use_policy(prefix)

        out: List[Statement] = []
        s3_prefix_values: Set[str] = set()
        read_only_bucket_statements: List[Statement] = []

        for statement in self.statements:
            if not statement.is_valid(self.bucket_name):
                out.append(statement)
                continue

            if bucket_resource in statement.resources:
                if statement.conditions is not None:
                    statement.remove_bucket_actions(prefix, bucket_resource, False, False)
                else:
                    statement.remove_bucket_actions(prefix, bucket_resource, read_only_in_use, write_only_in_use)
            elif object_resource in statement.resources:
                statement.remove_object_actions(object_resource)

            if not statement.actions:
                continue

            if (
                bucket_resource in statement.resources
                and READ_ONLY_BUCKET_ACTIONS <= statement.actions
                and statement.is_public_allow()
            ):
                if statement.conditions is not None:
                    values = statement.conditions.get("StringEquals", {}).get("s3:prefix", set())
                    s3_prefix_values |= {f"{bucket_resource}/{value}*" for value in values}
                elif s3_prefix_values:
                    read_only_bucket_statements.append(statement)
                    continue

            out.append(statement)

        skip_bucket_statement = True
        resource_prefix = bucket_resource + "/"
        for statement in out:
            if statement.resources.starts_with(resource_prefix) and not (s3_prefix_values & statement.resources):
                skip_bucket_statement = False
                break

        for statement in read_only_bucket_statements:
            if (
                skip_bucket_statement
                and bucket_resource in statement.resources
                and statement.is_public_allow()
                and statement.conditions is None
            ):
                continue
            out.append(statement)

        if len(out) == 1:
            statement = out[0]
            if (
                bucket_resource in statement.resources
                and COMMON_BUCKET_ACTIONS <= statement.actions
                and statement.is_public_allow()
                and statement.conditions is None
            ):
                out = []

        self.statements = out

    def _append_statement(self, statement: Statement) -> None:
        """
        Add ``statement``, folding it into an existing one where possible.

        An existing statement with the same effect and a principal superset
        absorbs the new one when:

        - its actions cover the new actions and both carry the same conditions:
          the resources are unioned;
        - its resources cover the new resources and both carry the same
          conditions: the actions are unioned;
        - it covers both actions and resources: identical conditions make the
          new statement a duplicate, differing ones are merged.

        The first two rules need conditions on both sides, so unconditioned
        statements for different actions stay separate.
        """
        for existing in self.statements:
            if existing.effect != statement.effect or not existing.aws or not existing.aws >= statement.aws:
                continue

            conditions_match = existing.conditions is not None and existing.conditions == statement.conditions

            if conditions_match and existing.actions >= statement.actions:
                existing.resources |= statement.resources
                return

            if conditions_match and existing.resources >= statement.resources:
                existing.actions |= statement.actions
                return

            if existing.resources >= statement.resources and existing.actions >= statement.actions:
                if existing.conditions == statement.conditions:
                    return
                if existing.conditions is not None and statement.conditions is not None:
                    existing.conditions.put_all(statement.conditions)
                    return

        if statement.actions and statement.resources:
            self.statements.append(statement)

    def _new_statements(self, policy_type: PolicyType, prefix: str) -> List[Statement]:
        if policy_type == PolicyType.NONE or not self.bucket_name:
            return []
        return self._new_bucket_statements(policy_type, prefix) + [self._new_object_statement(policy_type, prefix)]

    def _new_bucket_statements(self, policy_type: PolicyType, prefix: str) -> List[Statement]:
        bucket_resource = self.bucket_resource
        statements = [Statement(actions=set(COMMON_BUCKET_ACTIONS), resources=ResourceSet({bucket_resource}))]

        if policy_type in (PolicyType.READ_ONLY, PolicyType.READ_WRITE):
            statement = Statement(actions=set(READ_ONLY_BUCKET_ACTIONS), resources=ResourceSet({bucket_resource}))
            if prefix:
                statement.conditions = ConditionMap({"StringEquals": {"s3:prefix": {prefix}}})
            statements.append(statement)

        if policy_type in (PolicyType.WRITE_ONLY, PolicyType.READ_WRITE):
            statements.append(
                Statement(actions=set(WRITE_ONLY_BUCKET_ACTIONS), resources=ResourceSet({bucket_resource}))
            )
        return statements

    def _new_object_statement(self, policy_type: PolicyType, prefix: str) -> Statement:
        if policy_type == PolicyType.READ_ONLY:
            actions = READ_ONLY_OBJECT_ACTIONS
        elif policy_type == PolicyType.WRITE_ONLY:
            actions = WRITE_ONLY_OBJECT_ACTIONS
        else:
            actions = READ_WRITE_OBJECT_ACTIONS
        return Statement(
            actions=set(actions),
            resources=ResourceSet({object_resource_of(self.bucket_name, prefix)}),
        )


def diff_policies(old: BucketPolicy, new: BucketPolicy) -> Dict[str, Tuple[PolicyType, PolicyType]]:
    """Return ``{bucket/prefix*: (old type, new type)}`` for every prefix whose policy changed."""
    prefixes = old._object_prefixes()
    prefixes.update(new._object_prefixes())

    changes = {}
    for key in sorted(prefixes):
        before = old.get_policy(prefixes[key])
        after = new.get_policy(prefixes[key])
        if before != after:
            changes[key] = (before, after)
    return changes
