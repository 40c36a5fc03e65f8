import json
from pathlib import Path

import pytest

from browser_cookie_engine import (
    BrowserNotInstalledError,
    ContainerNotFoundError,
    ProfileNotFoundError,
    StoreFormat,
    UnsupportedOSError,
    current_os,
    get_browser,
    locate,
    parse,
)

from .utils.stores import ChromiumRow, FirefoxRow, make_chromium_db, make_firefox_db, make_profiles_ini


class TestChromiumLocate:
    def test_default_profile(self, chrome_data_dir: Path):
        location = locate(parse("chrome"), "linux")
        assert location.store_path == str(chrome_data_dir / "Default" / "Network" / "Cookies")
        assert location.profile_root == str(chrome_data_dir / "Default")
        assert location.format is StoreFormat.CHROMIUM_SQL

    def test_profile_by_display_name(self, chrome_data_dir: Path):
        location = locate(parse("chrome:WORK"), "linux")
        assert location.profile_root == str(chrome_data_dir / "Profile 1")

    def test_profile_by_directory_name(self, chrome_data_dir: Path):
        location = locate(parse("chrome:Profile 1"), "linux")
        assert location.store_path == str(chrome_data_dir / "Profile 1" / "Network" / "Cookies")

    def test_profile_as_path(self, chrome_data_dir: Path):
        location = locate(parse(f"chrome:{chrome_data_dir / 'Profile 1'}"), "linux")
        assert location.store_path == str(chrome_data_dir / "Profile 1" / "Network" / "Cookies")

    def test_cookie_file_as_path(self, chrome_data_dir: Path):
        cookie_file = chrome_data_dir / "Profile 1" / "Network" / "Cookies"
        location = locate(parse(f"chromium:{cookie_file}"), "linux")
        assert location.store_path == str(cookie_file)
        assert location.profile_root == str(chrome_data_dir / "Profile 1")

    def test_legacy_cookie_file_location(self, home: Path):
        make_chromium_db(home / ".config" / "chromium" / "Default" / "Cookies", [ChromiumRow("a.com", "a", "1")])
        location = locate(parse("chromium"), "linux")
        assert location.store_path == str(home / ".config" / "chromium" / "Default" / "Cookies")

    def test_first_numbered_profile_without_default(self, home: Path):
        data_dir = home / ".config" / "BraveSoftware" / "Brave-Browser"
        make_chromium_db(data_dir / "Profile 2" / "Network" / "Cookies", [])
        make_chromium_db(data_dir / "Profile 3" / "Network" / "Cookies", [])
        assert locate(parse("brave"), "linux").profile_root == str(data_dir / "Profile 2")

    def test_xdg_config_home(self, home: Path, monkeypatch: pytest.MonkeyPatch):
        config = home / "custom-config"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(config))
        make_chromium_db(config / "google-chrome-beta" / "Default" / "Network" / "Cookies", [])
        assert locate(parse("chrome"), "linux").store_path.startswith(str(config))

    def test_osx_data_dir(self, home: Path):
        data_dir = home / "Library" / "Application Support" / "Microsoft Edge"
        make_chromium_db(data_dir / "Default" / "Network" / "Cookies", [])
        assert locate(parse("edge"), "osx").profile_root == str(data_dir / "Default")

    def test_not_installed(self, home: Path):
        with pytest.raises(BrowserNotInstalledError):
            locate(parse("vivaldi"), "linux")

    def test_unknown_profile(self, chrome_data_dir: Path):
        with pytest.raises(ProfileNotFoundError):
            locate(parse("chrome:holidays"), "linux")

    def test_browser_not_available_on_os(self, home: Path):
        with pytest.raises(UnsupportedOSError):
            locate(parse("arc"), "linux")
        with pytest.raises(UnsupportedOSError):
            get_browser(parse("safari").browser, "windows")


class TestFirefoxLocate:
    def test_default_profile(self, firefox_profile: Path):
        location = locate(parse("firefox"), "linux")
        assert location.store_path == str(firefox_profile / "cookies.sqlite")
        assert location.format is StoreFormat.FIREFOX_SQL
        assert location.container_id is None

    def test_named_profile(self, firefox_profile: Path):
        data_dir = firefox_profile.parent
        other = data_dir / "wxyz.dev-edition"
        make_firefox_db(other / "cookies.sqlite", [FirefoxRow("a.com", "a", "1")])
        make_profiles_ini(
            data_dir,
            {"default-release": firefox_profile.name, "Dev Edition": other.name},
            default="default-release",
        )
        assert locate(parse("firefox:dev edition"), "linux").profile_root == str(other)

    def test_install_section_takes_precedence(self, firefox_profile: Path):
        data_dir = firefox_profile.parent
        other = data_dir / "wxyz.other"
        make_firefox_db(other / "cookies.sqlite", [])
        ini = make_profiles_ini(data_dir, {"default-release": firefox_profile.name, "other": other.name}, default="default-release")
        with ini.open("a", encoding="utf8") as f:
            f.write(f"\n[Install4F96D1932A9F858E]\nDefault={other.name}\nLocked=1\n")
        assert locate(parse("firefox"), "linux").profile_root == str(other)

    def test_profile_directory_suffix(self, firefox_profile: Path):
        (firefox_profile.parent / "profiles.ini").unlink()
        assert locate(parse("firefox:default-release"), "linux").profile_root == str(firefox_profile)

    def test_container_by_l10n_id(self, firefox_profile: Path):
        assert locate(parse("firefox::Personal"), "linux").container_id == 1
        assert locate(parse("firefox::Work"), "linux").container_id == 2

    def test_container_by_name(self, firefox_profile: Path):
        assert locate(parse("firefox::Shopping"), "linux").container_id == 5

    def test_no_container(self, firefox_profile: Path):
        assert locate(parse("firefox::none"), "linux").container_id == 0

    def test_unknown_container(self, firefox_profile: Path):
        with pytest.raises(ContainerNotFoundError):
            locate(parse("firefox::Banking"), "linux")

    def test_container_without_containers_file(self, firefox_profile: Path):
        (firefox_profile / "containers.json").unlink()
        with pytest.raises(ContainerNotFoundError):
            locate(parse("firefox::Personal"), "linux")

    def test_broken_containers_file(self, firefox_profile: Path):
        (firefox_profile / "containers.json").write_text(json.dumps({"identities": [{"name": "Personal"}]}))
        with pytest.raises(ContainerNotFoundError):
            locate(parse("firefox::Personal"), "linux")

    def test_missing_profile(self, firefox_profile: Path):
        with pytest.raises(ProfileNotFoundError):
            locate(parse("firefox:nightly"), "linux")


class TestSafariLocate:
    def test_default_cookie_file(self, home: Path):
        cookie_file = home / "Library" / "Cookies" / "Cookies.binarycookies"
        cookie_file.parent.mkdir(parents=True)
        cookie_file.write_bytes(b"cook\x00\x00\x00\x00")
        location = locate(parse("safari"), "osx")
        assert location.store_path == str(cookie_file)
        assert location.format is StoreFormat.SAFARI_BINARY

    def test_sandboxed_cookie_file_first(self, home: Path):
        for directory in ("Library/Cookies", "Library/Containers/com.apple.Safari/Data/Library/Cookies"):
            (home / directory).mkdir(parents=True)
            (home / directory / "Cookies.binarycookies").write_bytes(b"cook\x00\x00\x00\x00")
        assert "com.apple.Safari" in locate(parse("safari"), "osx").store_path

    def test_custom_file(self, tmp_path: Path, home: Path):
        cookie_file = tmp_path / "exported.binarycookies"
        cookie_file.write_bytes(b"cook\x00\x00\x00\x00")
        assert locate(parse(f"safari:{cookie_file}"), "osx").store_path == str(cookie_file)

    def test_not_installed(self, home: Path):
        with pytest.raises(BrowserNotInstalledError):
            locate(parse("safari"), "osx")


@pytest.mark.parametrize("platform_os", ["linux", "osx", "windows"])
def test_current_os(monkeypatch: pytest.MonkeyPatch, platform_os: str):
    monkeypatch.setattr("browser_cookie_engine._platform._CURRENT_OS", platform_os)
    assert current_os() == platform_os


def test_unrecognized_os(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr("browser_cookie_engine._platform._CURRENT_OS", "unknown")
    with pytest.raises(UnsupportedOSError):
        current_os()
