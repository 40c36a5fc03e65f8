import importlib.metadata

__version__ = importlib.metadata.version("browser_cookie_engine")

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Union

from ._browsers import ALL_BROWSERS, get_browser, locate
from ._crypto import CipherVersion, KeyMaterial, decrypt, derive_key
from ._errors import (
    BrowserCookieError,
    BrowserNotInstalledError,
    ContainerNotApplicableError,
    ContainerNotFoundError,
    CookieDecryptionError,
    CorruptStoreError,
    DecryptError,
    ExtractionCancelled,
    KeyringNotApplicableError,
    LocateError,
    MalformedSpecError,
    ProfileNotFoundError,
    SpecError,
    StoreError,
    StoreIOError,
    StoreLockedError,
    UnknownBrowserError,
    UnsupportedCipherVersionError,
    UnsupportedOSError,
)
from ._jar import CookieInjector, CookieJar, create_cookie, header_for, host_changed, select
from ._keys import KeyProvider, StaticKeyProvider, SystemKeyProvider
from ._models import DecryptedCookie, RawCookieRecord, SameSite, StoreFormat, StoreLocation
from ._platform import SupportedOS, current_os
from ._readers import open_store, read
from ._spec import SUPPORTED_KEYRINGS, BrowserFamily, BrowserName, BrowserSpec, parse

__doc__ = "Extract browser cookies and build Cookie headers from them"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Extraction:
    spec: BrowserSpec
    location: StoreLocation
    jar: CookieJar
    diagnostics: tuple[DecryptError, ...] = field(default=(), repr=False)

    def injector(self, url: str) -> CookieInjector:
        return CookieInjector(self.jar, url)

    def header_for(self, url: str, now: Optional[float] = None) -> str:
        return header_for(self.jar, url, now)


def _check_cancelled(cancel_event: Optional[threading.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise ExtractionCancelled(f"Cookie extraction cancelled after {stage}")


def extract(
    spec: Union[str, BrowserSpec],
    *,
    os_name: Optional[SupportedOS] = None,
    key_provider: Optional[KeyProvider] = None,
    strict: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> Extraction:
    """Read and decrypt every cookie of the store `spec` selects

    Cookies that fail to decrypt are left out of the jar and reported in `Extraction.diagnostics`,
    unless `strict` is set, in which case the first failure is raised."""
    if isinstance(spec, str):
        spec = parse(spec)
    os_name = os_name or current_os()
    key_provider = key_provider or SystemKeyProvider()

    location = locate(spec, os_name)
    logger.info(f"reading {spec} cookies from {location.store_path}")
    _check_cancelled(cancel_event, "locating the cookie store")

    cookies: list[DecryptedCookie] = []
    diagnostics: list[DecryptError] = []
    with open_store(location) as records:
        _check_cancelled(cancel_event, "reading the cookie store")

        key_material = KeyMaterial("none", os_name)
        if any(record.encryption_version for record in records):
            key_material = key_provider.get_key_material(spec, location, os_name)
            logger.debug(f"using key material from {key_material.source}")

        for record in records:
            try:
                cookies.append(decrypt(record, key_material))
            except DecryptError as e:
                if strict:
                    raise
                logger.warning(f"skipping cookie: {e}")
                diagnostics.append(e)
    _check_cancelled(cancel_event, "decrypting cookies")

    if diagnostics:
        logger.warning(f"{len(diagnostics)} of {len(records)} cookies could not be decrypted")
    logger.info(f"extracted {len(cookies)} cookies from {spec}")
    return Extraction(spec, location, CookieJar(cookies), tuple(diagnostics))


__all__ = [
    "ALL_BROWSERS",
    "SUPPORTED_KEYRINGS",
    "BrowserCookieError",
    "BrowserFamily",
    "BrowserName",
    "BrowserNotInstalledError",
    "BrowserSpec",
    "CipherVersion",
    "ContainerNotApplicableError",
    "ContainerNotFoundError",
    "CookieDecryptionError",
    "CookieInjector",
    "CookieJar",
    "CorruptStoreError",
    "DecryptError",
    "DecryptedCookie",
    "Extraction",
    "ExtractionCancelled",
    "KeyMaterial",
    "KeyProvider",
    "KeyringNotApplicableError",
    "LocateError",
    "MalformedSpecError",
    "ProfileNotFoundError",
    "RawCookieRecord",
    "SameSite",
    "SpecError",
    "StaticKeyProvider",
    "StoreError",
    "StoreFormat",
    "StoreIOError",
    "StoreLocation",
    "StoreLockedError",
    "SupportedOS",
    "SystemKeyProvider",
    "UnknownBrowserError",
    "UnsupportedCipherVersionError",
    "UnsupportedOSError",
    "create_cookie",
    "current_os",
    "decrypt",
    "derive_key",
    "extract",
    "get_browser",
    "header_for",
    "host_changed",
    "locate",
    "open_store",
    "parse",
    "read",
    "select",
]
