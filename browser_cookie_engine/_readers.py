"""Readers for the on-disk cookie stores of every supported browser family"""

import json
import logging
import math
import os
import re
import shutil
import sqlite3
import struct
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, ClassVar, Optional, Union

import lz4.block

from ._errors import CorruptStoreError, StoreIOError, StoreLockedError
from ._models import RawCookieRecord, SameSite, StoreFormat, StoreLocation

logger = logging.getLogger(__name__)

_VERSION_TAG = re.compile(rb"v\d\d")
_SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


def _text_factory(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data  # type: ignore


def _to_bytes(value: Any) -> bytes:
    if not value:
        return b""
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


def _identity_text(value: Any, column: str, store_path: str) -> str:
    # _text_factory hands back bytes for TEXT that is not valid UTF-8
    if not isinstance(value, str):
        raise CorruptStoreError(f"Cookie {column} is not UTF-8 text ({value!r})", store_path)
    return value


class _DatabaseConnection:
    """Read-only connection to a browser sqlite database

    The live file is opened read-only first. If the browser holds a lock on it, the database and its
    journal files are copied to a private temporary directory, which is removed again by `close()`."""

    def __init__(self, database_file: str) -> None:
        self.__database_file = database_file
        self.__temp_dir: Optional[tempfile.TemporaryDirectory] = None
        self.__connection: Optional[sqlite3.Connection] = None

    def __enter__(self) -> sqlite3.Connection:
        try:
            return self.get_connection()
        except BaseException:
            self.close()
            raise

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    @staticmethod
    def __check_connection(connection: sqlite3.Connection) -> Optional[sqlite3.DatabaseError]:
        try:
            connection.execute("select 1 from sqlite_master").fetchall()
        except sqlite3.DatabaseError as e:
            return e
        return None

    def __raise_if_corrupt(self, error: sqlite3.DatabaseError) -> None:
        if "not a database" in str(error) or "malformed" in str(error):
            raise CorruptStoreError(f"Not a valid sqlite database ({error})", self.__database_file)

    def __sqlite3_connect_readonly(self) -> Optional[sqlite3.Connection]:
        uri: str = Path(self.__database_file).absolute().as_uri()
        try:
            con = sqlite3.connect(uri + "?mode=ro", uri=True)
        except sqlite3.OperationalError as e:
            logger.debug(f"could not open {self.__database_file} read-only: {e}")
            return None
        error = self.__check_connection(con)
        if error is None:
            return con
        con.close()
        self.__raise_if_corrupt(error)
        logger.debug(f"{self.__database_file} is not readable in place ({error}), falling back to a copy")
        return None

    def __get_connection_copy(self) -> sqlite3.Connection:
        self.__temp_dir = tempfile.TemporaryDirectory(prefix="browser_cookie_engine")
        temp_cookie_file = os.path.join(self.__temp_dir.name, os.path.basename(self.__database_file))
        try:
            shutil.copyfile(self.__database_file, temp_cookie_file)
            for suffix in _SIDECAR_SUFFIXES:
                if os.path.exists(self.__database_file + suffix):
                    shutil.copyfile(self.__database_file + suffix, temp_cookie_file + suffix)
        except PermissionError:
            raise StoreLockedError("Cookie database is locked, close the browser and try again", self.__database_file) from None
        except OSError as e:
            raise StoreIOError(f"Unable to copy cookie database ({e})", self.__database_file) from None

        con = sqlite3.connect(temp_cookie_file)
        error = self.__check_connection(con)
        if error is None:
            return con
        con.close()
        self.__raise_if_corrupt(error)
        raise StoreLockedError(f"Unable to read cookie database ({error})", self.__database_file)

    def get_connection(self) -> sqlite3.Connection:
        if self.__connection:
            return self.__connection
        if not os.path.isfile(self.__database_file):
            raise StoreIOError("Cookie database does not exist", self.__database_file)
        self.__connection = self.__sqlite3_connect_readonly() or self.__get_connection_copy()
        return self.__connection

    def close(self) -> None:
        if self.__connection:
            self.__connection.close()
            self.__connection = None
        if self.__temp_dir:
            self.__temp_dir.cleanup()
            self.__temp_dir = None


def _get_column_names(con: sqlite3.Connection, table_name: str) -> list[str]:
    return [row[1] for row in con.execute(f"PRAGMA table_info({table_name})").fetchall()]


def _first_column(columns: list[str], *candidates: str, default: str = "0") -> str:
    return next((column for column in candidates if column in columns), default)


class ChromiumReader:
    UNIX_TO_NT_EPOCH_OFFSET: ClassVar[int] = 11644473600  # seconds from 1601-01-01T00:00:00Z to 1970-01-01T00:00:00Z
    SAME_SITE: ClassVar[dict[int, SameSite]] = {0: SameSite.NONE, 1: SameSite.LAX, 2: SameSite.STRICT}

    def __init__(self, location: StoreLocation) -> None:
        self.location = location

    @staticmethod
    def _has_integrity_check_for_cookie_domain(con: sqlite3.Connection) -> bool:
        """Starting from version 24, the sha256 of the domain is prepended to the encrypted value
        of the cookie.

        See:
            - https://issues.chromium.org/issues/40185252
            - https://chromium-review.googlesource.com/c/chromium/src/+/5792044
        """
        try:
            row = con.execute("SELECT value FROM meta WHERE key = 'version';").fetchone()
        except sqlite3.OperationalError:
            return False
        try:
            return row is not None and int(row[0]) >= 24
        except ValueError:
            return False

    @classmethod
    def _expires(cls, expires_nt_time_epoch: Optional[int]) -> Optional[int]:
        # Chromium-based browsers store cookies' expiration timestamps as MICROSECONDS elapsed
        # since the Windows NT epoch (1601-01-01 0:00:00 GMT), or 0 for session cookies.
        if not expires_nt_time_epoch:
            return None
        return expires_nt_time_epoch // 1000000 - cls.UNIX_TO_NT_EPOCH_OFFSET

    def read(self, con: sqlite3.Connection) -> list[RawCookieRecord]:
        con.text_factory = _text_factory
        columns = _get_column_names(con, "cookies")
        if not columns:
            raise CorruptStoreError("Not a Chromium-based browser cookie file", self.location.store_path)
        hash_prefixed = self._has_integrity_check_for_cookie_domain(con)

        query = (
            "SELECT host_key, name, value, {encrypted}, path, expires_utc, {secure}, {httponly}, {samesite} "
            "FROM cookies"
        ).format(
            encrypted=_first_column(columns, "encrypted_value", default="NULL"),
            secure=_first_column(columns, "is_secure", "secure"),
            httponly=_first_column(columns, "is_httponly", "httponly"),
            samesite=_first_column(columns, "samesite", default="-1"),
        )
        try:
            rows = con.execute(query).fetchall()
        except sqlite3.DatabaseError as e:
            raise CorruptStoreError(f"Unable to read Chromium cookies ({e})", self.location.store_path) from None

        store_path = self.location.store_path
        records = []
        for host, name, value, enc_value, path, expires_utc, secure, http_only, same_site in rows:
            value, enc_value = _to_bytes(value), _to_bytes(enc_value)
            version = ""
            if enc_value:
                # encrypted_value takes precedence over the legacy plaintext column
                tag = enc_value[:3]
                version = tag.decode("ascii") if _VERSION_TAG.fullmatch(tag) else "dpapi"
                value = enc_value

            records.append(
                RawCookieRecord(
                    host=_identity_text(host, "host_key", store_path),
                    path=_identity_text(path, "path", store_path),
                    name=_identity_text(name, "name", store_path),
                    value=value,
                    is_secure=bool(secure),
                    is_httponly=bool(http_only),
                    expires=self._expires(expires_utc),
                    same_site=self.SAME_SITE.get(same_site, SameSite.UNSPECIFIED),
                    encryption_version=version,
                    domain_hash_prefixed=hash_prefixed and bool(version),
                )
            )
        return records


def _firefox_context_id(origin_attributes: Any) -> int:
    """Return the userContextId of a cookie, from either the sqlite string or the session-store dict form"""
    if isinstance(origin_attributes, dict):
        context_id = origin_attributes.get("userContextId", 0)
    else:
        # e.g. "^userContextId=2&firstPartyDomain=example.com"
        attributes = dict(
            part.partition("=")[::2] for part in str(origin_attributes or "").lstrip("^").split("&") if part
        )
        context_id = attributes.get("userContextId", 0)
    try:
        return int(context_id)
    except (TypeError, ValueError):
        return 0


class FirefoxReader:
    SAME_SITE: ClassVar[dict[int, SameSite]] = {0: SameSite.NONE, 1: SameSite.LAX, 2: SameSite.STRICT}
    MILLISECOND_EXPIRY_SCHEMA: ClassVar[int] = 16
    MOZ_LZ4_MAGIC: ClassVar[bytes] = b"mozLz40\0"

    def __init__(self, location: StoreLocation) -> None:
        self.location = location
        self.session_file = os.path.join(location.profile_root, "sessionstore.js")
        self.session_file_lz4 = os.path.join(location.profile_root, "sessionstore-backups", "recovery.jsonlz4")

    def _wanted(self, origin_attributes: Any) -> bool:
        if self.location.container_id is None:
            return True
        return _firefox_context_id(origin_attributes) == self.location.container_id

    def read(self, con: sqlite3.Connection) -> list[RawCookieRecord]:
        con.text_factory = _text_factory
        columns = _get_column_names(con, "moz_cookies")
        if not columns:
            raise CorruptStoreError("Not a Firefox cookie file", self.location.store_path)
        (schema_version,) = con.execute("PRAGMA user_version;").fetchone()

        query = "SELECT host, name, value, path, {expiry}, {secure}, {httponly}, {samesite}, {origin} FROM moz_cookies".format(
            expiry=_first_column(columns, "expiry", "expires", default="NULL"),
            secure=_first_column(columns, "isSecure", "is_secure"),
            httponly=_first_column(columns, "isHttpOnly", "is_http_only"),
            samesite=_first_column(columns, "sameSite", default="-1"),
            origin=_first_column(columns, "originAttributes", default="''"),
        )
        try:
            rows = con.execute(query).fetchall()
        except sqlite3.DatabaseError as e:
            raise CorruptStoreError(f"Unable to read Firefox cookies ({e})", self.location.store_path) from None

        store_path = self.location.store_path
        records = []
        for host, name, value, path, expiry, secure, http_only, same_site, origin_attributes in rows:
            if not self._wanted(origin_attributes):
                continue
            # 0 marks a session cookie, any other value is kept even when it lies in the past
            expires = None
            if expiry:
                expires = expiry // 1000 if schema_version >= self.MILLISECOND_EXPIRY_SCHEMA else expiry
            records.append(
                RawCookieRecord(
                    host=_identity_text(host, "host", store_path),
                    path=_identity_text(path, "path", store_path),
                    name=_identity_text(name, "name", store_path),
                    value=_to_bytes(value),
                    is_secure=bool(secure),
                    is_httponly=bool(http_only),
                    expires=expires,
                    same_site=self.SAME_SITE.get(same_site, SameSite.UNSPECIFIED),
                )
            )
        records.extend(self.read_session_cookies())
        return records

    def __create_session_cookie(self, cookie_json: dict[str, Any]) -> RawCookieRecord:
        return RawCookieRecord(
            host=cookie_json.get("host", ""),
            path=cookie_json.get("path", "/"),
            name=cookie_json.get("name", ""),
            value=str(cookie_json.get("value", "")).encode("utf-8"),
            is_secure=bool(cookie_json.get("secure", False)),
            is_httponly=bool(cookie_json.get("httponly", False)),
        )

    def _load_session_json(self) -> Optional[dict[str, Any]]:
        if os.path.isfile(self.session_file_lz4):
            try:
                with open(self.session_file_lz4, "rb") as file_obj:
                    if file_obj.read(8) != self.MOZ_LZ4_MAGIC:
                        raise ValueError("missing mozLz4 header")
                    return json.loads(lz4.block.decompress(file_obj.read()))
            except (OSError, ValueError, lz4.block.LZ4BlockError) as e:
                logger.warning(f"Error parsing Firefox session store {self.session_file_lz4}: {e}")
        if os.path.isfile(self.session_file):
            try:
                with open(self.session_file, "rb") as file_obj:
                    return json.load(file_obj)
            except (OSError, ValueError) as e:
                logger.warning(f"Error parsing Firefox session store {self.session_file}: {e}")
        return None

    def read_session_cookies(self) -> list[RawCookieRecord]:
        """Cookies of the running session, which Firefox only keeps in its session store"""
        json_data = self._load_session_json()
        if not json_data:
            return []
        cookies = list(json_data.get("cookies", []))
        for window in json_data.get("windows", []):
            cookies.extend(window.get("cookies", []))
        records = [
            self.__create_session_cookie(cookie)
            for cookie in cookies
            if cookie.get("name") and self._wanted(cookie.get("originAttributes"))
        ]
        logger.debug(f"found {len(records)} session cookies in the Firefox session store")
        return records


class SafariReader:
    """Parser for Safari's `Cookies.binarycookies`

    The file starts with a big endian header (magic, page count, page sizes) followed by the pages.
    Pages and cookie records are little endian. Every size and offset is checked against the data
    it points into before it is used.

    References:
        - https://github.com/libyal/dtformats/blob/main/documentation/Safari%20Cookies.asciidoc
    """

    MAGIC: ClassVar[bytes] = b"cook"
    PAGE_MAGIC: ClassVar[bytes] = b"\x00\x00\x01\x00"
    APPLE_TO_UNIX_TIME: ClassVar[int] = 978307200
    RECORD_HEADER: ClassVar[struct.Struct] = struct.Struct("<IIIIIIIIIIdd")
    FLAG_SECURE: ClassVar[int] = 0x1
    FLAG_HTTPONLY: ClassVar[int] = 0x4

    def __init__(self, location: StoreLocation) -> None:
        self.location = location

    def _corrupt(self, message: str) -> CorruptStoreError:
        return CorruptStoreError(f"Corrupt Safari cookie file ({message})", self.location.store_path)

    def read(self) -> list[RawCookieRecord]:
        try:
            with open(self.location.store_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise StoreIOError(f"Unable to read Safari cookies ({e})", self.location.store_path) from None
        return self.parse(data)

    def _unpack(self, fmt: str, data: bytes, offset: int) -> tuple:
        if offset < 0 or offset + struct.calcsize(fmt) > len(data):
            raise self._corrupt(f"read past the end of the data at offset {offset}")
        return struct.unpack_from(fmt, data, offset)

    def parse(self, data: bytes) -> list[RawCookieRecord]:
        if data[:4] != self.MAGIC:
            raise self._corrupt("bad file signature")
        (total_pages,) = self._unpack(">I", data, 4)
        header_size = 8 + 4 * total_pages
        if header_size > len(data):
            raise self._corrupt(f"{total_pages} pages declared in a file of {len(data)} bytes")
        page_sizes = self._unpack(f">{total_pages}I", data, 8)
        if header_size + sum(page_sizes) > len(data):
            raise self._corrupt(f"declared page sizes exceed the file length of {len(data)} bytes")

        records = []
        offset = header_size
        for page_size in page_sizes:
            records.extend(self._parse_page(data[offset : offset + page_size]))
            offset += page_size
        logger.debug(f"parsed {len(records)} cookies from {len(page_sizes)} Safari pages")
        return records

    def _parse_page(self, page: bytes) -> Iterator[RawCookieRecord]:
        if page[:4] != self.PAGE_MAGIC:
            raise self._corrupt("bad page signature")
        (n_cookies,) = self._unpack("<I", page, 4)
        cookie_offsets = self._unpack(f"<{n_cookies}I", page, 8)
        for cookie_offset in cookie_offsets:
            yield self._parse_cookie(page, cookie_offset)

    def _read_cstring(self, record: bytes, offset: int) -> str:
        if not 0 < offset < len(record):
            raise self._corrupt(f"string offset {offset} outside of a {len(record)} byte record")
        end = record.find(b"\x00", offset)
        if end == -1:
            raise self._corrupt("unterminated string")
        try:
            return record[offset:end].decode("utf-8")
        except UnicodeDecodeError:
            raise self._corrupt("string is not valid UTF-8") from None

    def _parse_cookie(self, page: bytes, cookie_offset: int) -> RawCookieRecord:
        (size,) = self._unpack("<I", page, cookie_offset)
        if size < self.RECORD_HEADER.size or cookie_offset + size > len(page):
            raise self._corrupt(f"cookie record of {size} bytes at offset {cookie_offset} does not fit its page")
        record = page[cookie_offset : cookie_offset + size]
        (
            _,
            _,  # unknown
            flags,
            _,  # unknown
            host_offset,
            name_offset,
            path_offset,
            value_offset,
            _,  # comment offset
            _,  # end of header marker
            expiry_date,
            _,  # creation time
        ) = self.RECORD_HEADER.unpack_from(record)
        if not math.isfinite(expiry_date):
            raise self._corrupt(f"cookie record at offset {cookie_offset} has a non-finite expiry date")

        return RawCookieRecord(
            host=self._read_cstring(record, host_offset),
            path=self._read_cstring(record, path_offset),
            name=self._read_cstring(record, name_offset),
            value=self._read_cstring(record, value_offset).encode("utf-8"),
            is_secure=bool(flags & self.FLAG_SECURE),
            is_httponly=bool(flags & self.FLAG_HTTPONLY),
            expires=int(expiry_date + self.APPLE_TO_UNIX_TIME),
        )


_SQLITE_READERS: dict[StoreFormat, type[Union[ChromiumReader, FirefoxReader]]] = {
    StoreFormat.CHROMIUM_SQL: ChromiumReader,
    StoreFormat.FIREFOX_SQL: FirefoxReader,
}


@contextmanager
def open_store(location: StoreLocation) -> Iterator[list[RawCookieRecord]]:
    """Read every cookie of the store at `location`

    A temporary copy made to get past a browser lock stays alive for the enclosed block and is removed
    when it exits, whether it exits normally or not."""
    if location.format is StoreFormat.SAFARI_BINARY:
        records = SafariReader(location).read()
        logger.info(f"read {len(records)} cookies from {location.store_path}")
        yield records
        return

    with _DatabaseConnection(location.store_path) as con:
        records = _SQLITE_READERS[location.format](location).read(con)
        logger.info(f"read {len(records)} cookies from {location.store_path}")
        yield records


def read(location: StoreLocation) -> list[RawCookieRecord]:
    with open_store(location) as records:
        return records
