"""
Credentials used to sign requests
"""

from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Optional, Protocol


@dataclass(frozen=True)
class Credentials:
    """
    An access key / secret key pair with an optional session token.

    Instances never change. A provider that refreshes credentials returns a
    new instance, so concurrent readers see either the old or the new value.
    """
    access_key: str = ""
    secret_key: str = ""
    session_token: Optional[str] = None
    expiration: Optional[datetime] = None

    @property
    def is_anonymous(self) -> bool:
        return not self.access_key and not self.secret_key

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expiration is None:
            return False
        expiration = self.expiration
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=UTC)
        now = now or datetime.now(UTC)
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        return now >= expiration


ANONYMOUS = Credentials()


class CredentialsProvider(Protocol):
    """Anything that can hand out the current credentials."""

    def retrieve(self) -> Credentials:
        ...


class StaticProvider:
    """Always returns the same credentials."""

    def __init__(self, access_key: str = "", secret_key: str = "", session_token: Optional[str] = None):
        self._credentials = Credentials(access_key, secret_key, session_token or None)

    def retrieve(self) -> Credentials:
        return self._credentials
