from typing import Optional


class BrowserCookieError(Exception): ...


class UnsupportedOSError(BrowserCookieError): ...


class ExtractionCancelled(BrowserCookieError): ...


class SpecError(BrowserCookieError):
    def __init__(self, message: str, spec: str) -> None:
        super().__init__(f"{message} (browser specification: {spec!r})")
        self.spec = spec


class MalformedSpecError(SpecError): ...


class UnknownBrowserError(SpecError): ...


class KeyringNotApplicableError(SpecError): ...


class ContainerNotApplicableError(SpecError): ...


class LocateError(BrowserCookieError): ...


class BrowserNotInstalledError(LocateError): ...


class ProfileNotFoundError(LocateError): ...


class ContainerNotFoundError(LocateError): ...


class StoreError(BrowserCookieError):
    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(f"{message}: {path}" if path else message)
        self.path = path


class StoreLockedError(StoreError): ...


class CorruptStoreError(StoreError): ...


class StoreIOError(StoreError): ...


class DecryptError(BrowserCookieError):
    def __init__(self, message: str, record: Optional[tuple[str, str, str]] = None) -> None:
        if record is not None:
            host, path, name = record
            message = f"{message} (cookie {name!r} for {host}{path})"
        super().__init__(message)
        self.record = record


class UnsupportedCipherVersionError(DecryptError): ...


class CookieDecryptionError(DecryptError): ...
