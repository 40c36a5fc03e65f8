"""Versioned cookie value decryption

Chromium prefixes every encrypted value with a three byte version tag. Which cipher a tag stands for
depends on the operating system that wrote it, so the ciphers are looked up by ``(os, version)``.
Legacy Windows values have no tag at all and are plain DPAPI blobs.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ClassVar, Optional, Union

from Cryptodome.Cipher import AES
from Cryptodome.Protocol.KDF import PBKDF2
from Cryptodome.Util.Padding import unpad

from ._errors import CookieDecryptionError, UnsupportedCipherVersionError
from ._models import DecryptedCookie, RawCookieRecord
from ._platform import _IS_WINDOWS, SupportedOS

logger = logging.getLogger(__name__)

SALT = b"saltysalt"
CBC_IV = b" " * 16
CBC_KEY_LENGTH = 16
GCM_NONCE_LENGTH = 12
GCM_TAG_LENGTH = 16
DOMAIN_HASH_LENGTH = 32  # sha256 of the host, prepended from cookie database version 24 on


class CipherVersion(str, Enum):
    V10 = "v10"
    V11 = "v11"
    V20 = "v20"
    DPAPI = "dpapi"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class KeyMaterial:
    """Candidate keys per cipher version, tried in order"""

    source: str
    os_name: SupportedOS
    keys: Mapping[CipherVersion, tuple[bytes, ...]] = field(default_factory=dict, repr=False, compare=False)

    def keys_for(self, version: CipherVersion) -> tuple[bytes, ...]:
        return tuple(self.keys.get(version, ()))


def derive_key(password: Union[bytes, str], iterations: int) -> bytes:
    """Derive the AES-128 key Chromium uses on Linux and macOS from a keyring password"""
    return PBKDF2(password, SALT, CBC_KEY_LENGTH, iterations)  # type: ignore


# Code adapted slightly from https://github.com/Arnie97/chrome-cookies
def _crypt_unprotect_data(
    cipher_text: bytes = b"", entropy: bytes = b"", reserved=None, prompt_struct=None, is_key: bool = False
) -> tuple[Optional[str], bytes]:
    assert _IS_WINDOWS
    import ctypes
    import ctypes.wintypes

    class DataBlob(ctypes.Structure):
        _fields_: ClassVar = [("cbData", ctypes.wintypes.DWORD), ("pbData", ctypes.POINTER(ctypes.c_char))]

        def __init__(self, data: bytes):
            super().__init__(len(data), ctypes.create_string_buffer(data))

    blob_in, blob_entropy, blob_out = (DataBlob(data) for data in [cipher_text, entropy, b""])
    desc = ctypes.c_wchar_p()

    CRYPTPROTECT_UI_FORBIDDEN = 0x01

    if not ctypes.windll.crypt32.CryptUnprotectData(  # type: ignore
        ctypes.byref(blob_in),
        ctypes.byref(desc),
        ctypes.byref(blob_entropy),
        reserved,
        prompt_struct,
        CRYPTPROTECT_UI_FORBIDDEN,
        ctypes.byref(blob_out),
    ):
        raise RuntimeError("Failed to decrypt the cipher text with DPAPI")

    description = desc.value
    buffer_out = ctypes.create_string_buffer(int(blob_out.cbData))
    ctypes.memmove(buffer_out, blob_out.pbData, blob_out.cbData)
    for pointer in (desc, blob_out.pbData):
        ctypes.windll.kernel32.LocalFree(pointer)  # type: ignore
    if is_key:
        return description, buffer_out.raw
    return description, buffer_out.value


def _decrypt_cbc(data: bytes, key: bytes) -> bytes:
    # raises ValueError on bad padding, which is what a wrong key looks like
    cipher = AES.new(key, AES.MODE_CBC, CBC_IV)
    return unpad(cipher.decrypt(data), AES.block_size)


def _decrypt_gcm(data: bytes, key: bytes) -> bytes:
    if len(data) < GCM_NONCE_LENGTH + GCM_TAG_LENGTH:
        raise ValueError("ciphertext is shorter than nonce and tag")
    nonce, tag = data[:GCM_NONCE_LENGTH], data[-GCM_TAG_LENGTH:]
    cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
    # raises ValueError (MAC check failed) if the key is wrong
    return cipher.decrypt_and_verify(data[GCM_NONCE_LENGTH:-GCM_TAG_LENGTH], tag)


def _decrypt_dpapi(data: bytes, key: bytes) -> bytes:
    if not _IS_WINDOWS:
        raise ValueError("DPAPI is only available on Windows")
    try:
        _, plaintext = _crypt_unprotect_data(data)
    except RuntimeError as e:
        raise ValueError(str(e)) from None
    return plaintext


_Cipher = Callable[[bytes, bytes], bytes]

_CIPHERS: dict[tuple[SupportedOS, CipherVersion], _Cipher] = {
    ("linux", CipherVersion.V10): _decrypt_cbc,
    ("linux", CipherVersion.V11): _decrypt_cbc,
    ("osx", CipherVersion.V10): _decrypt_cbc,
    ("windows", CipherVersion.V10): _decrypt_gcm,
    ("windows", CipherVersion.V11): _decrypt_gcm,
    ("windows", CipherVersion.V20): _decrypt_gcm,
    ("windows", CipherVersion.DPAPI): _decrypt_dpapi,
}


def _strip_domain_hash(plaintext: bytes) -> bytes:
    if len(plaintext) < DOMAIN_HASH_LENGTH:
        raise ValueError("value is shorter than the domain hash")
    return plaintext[DOMAIN_HASH_LENGTH:]


def _decrypted(record: RawCookieRecord, value: str) -> DecryptedCookie:
    return DecryptedCookie(
        host=record.host,
        path=record.path,
        name=record.name,
        value=value,
        is_secure=record.is_secure,
        is_httponly=record.is_httponly,
        expires=record.expires,
        same_site=record.same_site,
    )


def decrypt(record: RawCookieRecord, key_material: KeyMaterial) -> DecryptedCookie:
    """Turn a raw record into a cookie with a plaintext value

    Records without a version tag are returned as they are. Every candidate key of the record's
    cipher version is tried in order, the first one that yields valid UTF-8 wins."""
    if not record.encryption_version:
        try:
            return _decrypted(record, record.value.decode("utf-8"))
        except UnicodeDecodeError:
            raise CookieDecryptionError("Cookie value is not valid UTF-8", record.identity) from None

    try:
        version = CipherVersion(record.encryption_version)
    except ValueError:
        msg = f"Unknown cipher version {record.encryption_version!r}"
        raise UnsupportedCipherVersionError(msg, record.identity) from None

    cipher = _CIPHERS.get((key_material.os_name, version))
    if cipher is None:
        msg = f"{version} cookies are not used on {key_material.os_name}"
        raise UnsupportedCipherVersionError(msg, record.identity)

    if version is CipherVersion.DPAPI:
        data, candidates = record.value, (b"",)
    else:
        data, candidates = record.value[len(version.value) :], key_material.keys_for(version)
    if not candidates:
        raise CookieDecryptionError(f"No key available for {version} cookies", record.identity)

    last_error: Optional[ValueError] = None
    for key in candidates:
        try:
            plaintext = cipher(data, key)
            if record.domain_hash_prefixed:
                plaintext = _strip_domain_hash(plaintext)
            return _decrypted(record, plaintext.decode("utf-8"))
        except ValueError as e:  # UnicodeDecodeError included
            last_error = e
    msg = f"Unable to decrypt {version} cookie with {len(candidates)} key(s) from {key_material.source} ({last_error})"
    raise CookieDecryptionError(msg, record.identity)
