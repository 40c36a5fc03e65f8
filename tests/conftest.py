import time
from pathlib import Path

import pytest

from browser_cookie_engine import CipherVersion, StaticKeyProvider, derive_key

from .utils.stores import (
    ChromiumRow,
    FirefoxRow,
    chromium_time,
    encrypt_cbc,
    make_chromium_db,
    make_chromium_user_data,
    make_firefox_containers,
    make_firefox_db,
    make_profiles_ini,
    with_domain_hash,
)

_DESKTOP_VARIABLES = (
    "XDG_CURRENT_DESKTOP",
    "DESKTOP_SESSION",
    "GNOME_DESKTOP_SESSION_ID",
    "KDE_FULL_SESSION",
    "KDE_SESSION_VERSION",
)

FUTURE = int(time.time()) + 3600 * 24 * 365


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An empty home directory, without any desktop session that could reach a real keyring"""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    for variable in _DESKTOP_VARIABLES:
        monkeypatch.delenv(variable, raising=False)
    return home


@pytest.fixture
def chrome_data_dir(home: Path) -> Path:
    """Chrome on Linux with a default profile and a profile named "work" stored in `Profile 1`"""
    data_dir = make_chromium_user_data(home / ".config" / "google-chrome", {"Default": "Person 1", "Profile 1": "work"})
    make_chromium_db(
        data_dir / "Default" / "Network" / "Cookies",
        [ChromiumRow("example.com", "session", "personal", expires_utc=chromium_time(FUTURE))],
    )
    make_chromium_db(
        data_dir / "Profile 1" / "Network" / "Cookies",
        [
            ChromiumRow(
                "example.com",
                "session",
                encrypted_value=encrypt_cbc(with_domain_hash("example.com", b"abc123")),
                expires_utc=chromium_time(FUTURE),
                is_secure=1,
                is_httponly=1,
            ),
            ChromiumRow(".example.com", "theme", "dark", path="/dashboard"),
            ChromiumRow("other.org", "tracking", "1"),
            ChromiumRow(
                ".example.com",
                "keyring",
                encrypted_value=encrypt_cbc(with_domain_hash(".example.com", b"from-keyring"), b"secret", version=b"v11"),
            ),
        ],
    )
    return data_dir


@pytest.fixture
def firefox_profile(home: Path) -> Path:
    """Firefox on Linux with one default profile using two containers, each holding its own `session` cookie"""
    data_dir = home / ".mozilla" / "firefox"
    profile_dir = data_dir / "abcd1234.default-release"
    profile_dir.mkdir(parents=True)
    make_profiles_ini(data_dir, {"default-release": "abcd1234.default-release"}, default="default-release")
    make_firefox_containers(
        profile_dir,
        [
            {"userContextId": 1, "public": True, "l10nID": "userContextPersonal.label"},
            {"userContextId": 2, "public": True, "l10nID": "userContextWork.label"},
            {"userContextId": 5, "public": True, "name": "Shopping"},
        ],
    )
    make_firefox_db(
        profile_dir / "cookies.sqlite",
        [
            FirefoxRow("example.com", "plain", "outside", expiry=FUTURE * 1000),
            FirefoxRow("example.com", "personal", "p1", origin_attributes="^userContextId=1"),
            FirefoxRow("example.com", "work", "w1", origin_attributes="^userContextId=2"),
            FirefoxRow(".example.com", "personal_wide", "p2", origin_attributes="^userContextId=1&firstPartyDomain=x"),
            FirefoxRow("example.com", "session", "outside-sid"),
            FirefoxRow("example.com", "session", "personal-sid", origin_attributes="^userContextId=1"),
            FirefoxRow("example.com", "session", "work-sid", origin_attributes="^userContextId=2"),
        ],
    )
    return profile_dir


@pytest.fixture
def linux_keys() -> StaticKeyProvider:
    return StaticKeyProvider(
        {
            CipherVersion.V10: derive_key(b"peanuts", 1),
            CipherVersion.V11: [derive_key(b"secret", 1), derive_key(b"", 1)],
        },
        os_name="linux",
    )
