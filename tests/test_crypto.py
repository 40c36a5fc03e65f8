import pytest

from browser_cookie_engine import (
    CipherVersion,
    CookieDecryptionError,
    KeyMaterial,
    RawCookieRecord,
    UnsupportedCipherVersionError,
    decrypt,
    derive_key,
)

from .utils.stores import encrypt_cbc, encrypt_gcm, with_domain_hash

WINDOWS_KEY = bytes(range(32))
APP_BOUND_KEY = bytes(range(32, 64))


def _record(value: bytes, version: str, hash_prefixed: bool = False) -> RawCookieRecord:
    return RawCookieRecord(
        host="example.com",
        path="/",
        name="session",
        value=value,
        is_secure=True,
        expires=2000000000,
        encryption_version=version,
        domain_hash_prefixed=hash_prefixed,
    )


@pytest.fixture
def linux_material() -> KeyMaterial:
    keys = {
        CipherVersion.V10: (derive_key(b"peanuts", 1),),
        CipherVersion.V11: (derive_key(b"secret", 1), derive_key(b"", 1)),
    }
    return KeyMaterial("test", "linux", keys)


@pytest.fixture
def windows_material() -> KeyMaterial:
    keys = {
        CipherVersion.V10: (WINDOWS_KEY,),
        CipherVersion.V11: (WINDOWS_KEY,),
        CipherVersion.V20: (APP_BOUND_KEY,),
    }
    return KeyMaterial("test", "windows", keys)


class TestPlaintext:
    def test_untagged_value_is_returned_unchanged(self, linux_material: KeyMaterial):
        cookie = decrypt(_record(b"abc123", ""), linux_material)
        assert cookie.value == "abc123"
        assert cookie.identity == ("example.com", "/", "session")
        assert cookie.is_secure
        assert cookie.expires == 2000000000

    def test_needs_no_keys(self):
        assert decrypt(_record(b"x", ""), KeyMaterial("none", "osx")).value == "x"

    def test_invalid_utf8(self, linux_material: KeyMaterial):
        with pytest.raises(CookieDecryptionError):
            decrypt(_record(b"\xff\xfe", ""), linux_material)


class TestLinux:
    def test_v10(self, linux_material: KeyMaterial):
        assert decrypt(_record(encrypt_cbc(b"abc123"), "v10"), linux_material).value == "abc123"

    def test_v11_keyring_password(self, linux_material: KeyMaterial):
        value = encrypt_cbc(b"abc123", b"secret", version=b"v11")
        assert decrypt(_record(value, "v11"), linux_material).value == "abc123"

    def test_v11_empty_password(self, linux_material: KeyMaterial):
        value = encrypt_cbc(b"abc123", b"", version=b"v11")
        assert decrypt(_record(value, "v11"), linux_material).value == "abc123"

    def test_domain_hash_is_stripped(self, linux_material: KeyMaterial):
        value = encrypt_cbc(with_domain_hash("example.com", b"abc123"))
        assert decrypt(_record(value, "v10", hash_prefixed=True), linux_material).value == "abc123"

    def test_wrong_key(self, linux_material: KeyMaterial):
        value = encrypt_cbc(b"abc123", b"another password", version=b"v11")
        with pytest.raises(CookieDecryptionError) as exc_info:
            decrypt(_record(value, "v11"), linux_material)
        assert exc_info.value.record == ("example.com", "/", "session")

    def test_missing_key(self):
        with pytest.raises(CookieDecryptionError, match="No key"):
            decrypt(_record(encrypt_cbc(b"x", version=b"v11"), "v11"), KeyMaterial("none", "linux"))

    def test_v20_is_not_used_on_linux(self, linux_material: KeyMaterial):
        with pytest.raises(UnsupportedCipherVersionError):
            decrypt(_record(b"v20" + b"\x00" * 32, "v20"), linux_material)


class TestMacOS:
    def test_v10_uses_1003_iterations(self):
        material = KeyMaterial("test", "osx", {CipherVersion.V10: (derive_key(b"keychain", 1003),)})
        value = encrypt_cbc(b"abc123", b"keychain", iterations=1003)
        assert decrypt(_record(value, "v10"), material).value == "abc123"

    def test_v11_is_unsupported(self):
        with pytest.raises(UnsupportedCipherVersionError):
            decrypt(_record(b"v11" + b"\x00" * 16, "v11"), KeyMaterial("test", "osx"))


class TestWindows:
    def test_v10(self, windows_material: KeyMaterial):
        value = encrypt_gcm(b"abc123", WINDOWS_KEY)
        assert decrypt(_record(value, "v10"), windows_material).value == "abc123"

    def test_v20(self, windows_material: KeyMaterial):
        value = encrypt_gcm(with_domain_hash("example.com", b"abc123"), APP_BOUND_KEY, version=b"v20")
        assert decrypt(_record(value, "v20", hash_prefixed=True), windows_material).value == "abc123"

    def test_tag_mismatch(self, windows_material: KeyMaterial):
        value = bytearray(encrypt_gcm(b"abc123", WINDOWS_KEY))
        value[-1] ^= 0xFF
        with pytest.raises(CookieDecryptionError):
            decrypt(_record(bytes(value), "v10"), windows_material)

    def test_truncated_value(self, windows_material: KeyMaterial):
        with pytest.raises(CookieDecryptionError):
            decrypt(_record(b"v10" + b"\x00" * 8, "v10"), windows_material)

    def test_v20_without_app_bound_key(self):
        material = KeyMaterial("dpapi", "windows", {CipherVersion.V10: (WINDOWS_KEY,)})
        value = encrypt_gcm(b"abc123", APP_BOUND_KEY, version=b"v20")
        with pytest.raises(CookieDecryptionError, match="No key available for v20"):
            decrypt(_record(value, "v20"), material)


class TestUnknownVersion:
    @pytest.mark.parametrize("os_name", ["linux", "osx", "windows"])
    def test_unknown_tag(self, os_name):
        with pytest.raises(UnsupportedCipherVersionError) as exc_info:
            decrypt(_record(b"v99" + b"\x00" * 32, "v99"), KeyMaterial("test", os_name))
        assert exc_info.value.record == ("example.com", "/", "session")


def test_key_material_repr_hides_keys(linux_material: KeyMaterial):
    assert "keys" not in repr(linux_material)
    assert linux_material.keys_for(CipherVersion.V20) == ()
