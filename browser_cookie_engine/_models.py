from dataclasses import dataclass
from enum import Enum
from typing import Optional


class StoreFormat(Enum):
    CHROMIUM_SQL = "chromium_sql"
    FIREFOX_SQL = "firefox_sql"
    SAFARI_BINARY = "safari_binary"


class SameSite(Enum):
    UNSPECIFIED = "unspecified"
    NONE = "none"
    LAX = "lax"
    STRICT = "strict"


@dataclass(frozen=True)
class StoreLocation:
    store_path: str
    profile_root: str
    format: StoreFormat
    # firefox userContextId to keep, 0 keeps cookies outside every container, None keeps all
    container_id: Optional[int] = None


@dataclass(frozen=True)
class RawCookieRecord:
    host: str
    path: str
    name: str
    value: bytes
    is_secure: bool = False
    is_httponly: bool = False
    expires: Optional[int] = None  # unix seconds, None for session cookies
    same_site: SameSite = SameSite.UNSPECIFIED
    encryption_version: str = ""  # "" means the value is already plaintext
    domain_hash_prefixed: bool = False

    @property
    def identity(self) -> tuple[str, str, str]:
        return self.host, self.path, self.name


@dataclass(frozen=True)
class DecryptedCookie:
    host: str
    path: str
    name: str
    value: str
    is_secure: bool = False
    is_httponly: bool = False
    expires: Optional[int] = None
    same_site: SameSite = SameSite.UNSPECIFIED

    @property
    def identity(self) -> tuple[str, str, str]:
        return self.host, self.path, self.name

    @property
    def is_session(self) -> bool:
        return self.expires is None
