from __future__ import annotations

import hmac
import secrets
import string
import sys
from dataclasses import dataclass
from threading import Lock
from typing import Optional, Protocol

from headscale_admin.config import Settings
from headscale_admin.logger import get_logger
from headscale_admin.security import hash_password, verify_password

_logger = get_logger("identity")


@dataclass(frozen=True)
class Principal:
    name: str
    role: str = "admin"


class IdentityProvider(Protocol):
    def authenticate(self, username: str, password: str) -> Optional[Principal]: ...

    def resolve(self, name: str) -> Optional[Principal]: ...

    def change_password(
        self, principal: Principal, *, current_password: str, new_password: str
    ) -> tuple[bool, str]: ...


def generate_random_password(length: int = 24) -> str:
    alphabet = string.ascii_letters + string.digits + "-_"
    return "".join(secrets.choice(alphabet) for _ in range(max(length, 16)))


class ConfiguredIdentityProvider:
    """A single administrator whose credentials come from configuration.

    Password changes replace the hash held in memory; they last until the
    process restarts and the configured hash applies again.
    """

    def __init__(self, username: str, password_hash: str) -> None:
        self._username = username.strip()
        self._password_hash = password_hash
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfiguredIdentityProvider":
        password_hash = settings.admin_password_hash.strip()
        if not password_hash:
            password = generate_random_password()
            password_hash = hash_password(password)
            _logger.warning(
                "identity.defaults",
                "ADMIN_PASSWORD_HASH is not set; generated a one-time admin password",
                username=settings.admin_username,
            )
            print(
                f"One-time password for {settings.admin_username}: {password}",
                file=sys.stderr,
            )
        return cls(settings.admin_username, password_hash)

    def _matches(self, username: str) -> bool:
        return hmac.compare_digest(username.strip().casefold(), self._username.casefold())

    def authenticate(self, username: str, password: str) -> Optional[Principal]:
        if not username or not password:
            return None
        with self._lock:
            current_hash = self._password_hash
        if self._matches(username) and verify_password(password, current_hash):
            return Principal(name=self._username)
        return None

    def resolve(self, name: str) -> Optional[Principal]:
        if name and self._matches(name):
            return Principal(name=self._username)
        return None

    def change_password(
        self, principal: Principal, *, current_password: str, new_password: str
    ) -> tuple[bool, str]:
        if not self._matches(principal.name):
            return False, "Authenticated user does not match the configured account."
        with self._lock:
            if not verify_password(current_password, self._password_hash):
                return False, "Current password is incorrect."
            self._password_hash = hash_password(new_password)
        _logger.info("identity.password.update", "Updated admin password", username=self._username)
        return True, ""
