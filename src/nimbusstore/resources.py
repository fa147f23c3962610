"""
Resource ARN sets used by the bucket policy engine
"""

from typing import Iterable, Optional


def _glob_match(pattern: str, resource: str) -> bool:
    """Match ``resource`` against ``pattern`` where ``*`` matches any run of characters."""
    if pattern == "":
        return resource == ""
    if pattern == "*":
        return True

    parts = pattern.split("*")
    if len(parts) == 1:
        return pattern == resource

    if not resource.startswith(parts[0]):
        return False
    remaining = resource[len(parts[0]):]

    for part in parts[1:-1]:
        index = remaining.find(part)
        if index < 0:
            return False
        remaining = remaining[index + len(part):]

    return pattern.endswith("*") or remaining.endswith(parts[-1])


class ResourceSet(set):
    """A set of resource ARN strings, some of which may contain ``*`` wildcards."""

    def __init__(self, resources: Optional[Iterable[str]] = None):
        super().__init__(resources or ())

    def match(self, resource: str) -> "ResourceSet":
        """Return the patterns in this set that match ``resource``."""
        return ResourceSet(pattern for pattern in self if _glob_match(pattern, resource))

    def starts_with(self, prefix: str) -> "ResourceSet":
        """Return the members that begin with ``prefix``."""
        return ResourceSet(resource for resource in self if resource.startswith(prefix))

    def copy(self) -> "ResourceSet":
        return ResourceSet(self)

    def __repr__(self) -> str:
        return f"ResourceSet({sorted(self)!r})"
