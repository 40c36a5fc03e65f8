"""Browser definitions and cookie store discovery"""

import configparser
import glob
import json
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import ClassVar, Optional, Union

from ._errors import (
    BrowserNotInstalledError,
    ContainerNotFoundError,
    ProfileNotFoundError,
    UnsupportedOSError,
)
from ._models import StoreFormat, StoreLocation
from ._platform import _IS_WINDOWS, SupportedOS, _expand_paths, _expand_user, _is_path, _WinPath, current_os
from ._spec import BrowserName, BrowserSpec

logger = logging.getLogger(__name__)

_StrTuple = tuple[str, ...]
_DataDirs = tuple[Union[str, _WinPath], ...]


def _windows_group_policy_path() -> Optional[str]:
    assert _IS_WINDOWS
    # we know that we're running under windows at this point so it's safe to do these imports
    from winreg import HKEY_LOCAL_MACHINE, REG_EXPAND_SZ, REG_SZ, ConnectRegistry, OpenKeyEx, QueryValueEx  # type: ignore  # noqa: I001

    try:
        root = ConnectRegistry(None, HKEY_LOCAL_MACHINE)
        policy_key = OpenKeyEx(root, r"SOFTWARE\Policies\Google\Chrome")
        user_data_dir, type_ = QueryValueEx(policy_key, "UserDataDir")
        if type_ == REG_EXPAND_SZ:
            user_data_dir = os.path.expandvars(user_data_dir)
        elif type_ != REG_SZ:
            return None
    except OSError:
        return None
    return user_data_dir if os.path.isdir(user_data_dir) else None


def _generate_nix_paths_chromium(paths: _StrTuple, channels: _StrTuple) -> list[str]:
    """Generate paths for chromium based browsers on *nix systems."""
    return [path.format(channel=chan) for chan in channels for path in paths]


def _generate_win_paths_chromium(paths: _DataDirs, channels: _StrTuple) -> list[_WinPath]:
    """Generate paths for chromium based browsers on windows"""
    generated_paths: list[_WinPath] = []
    for chan in channels:
        for path in paths:
            if isinstance(path, _WinPath):
                generated_paths.append(_WinPath(path.env, path.path.format(channel=chan)))
                continue
            full_path = path.format(channel=chan)
            generated_paths.append(_WinPath("LOCALAPPDATA", full_path))
            generated_paths.append(_WinPath("APPDATA", full_path))
    return generated_paths


def _newest(files: list[str]) -> Optional[str]:
    return max(files, key=lambda path: os.stat(path).st_mtime, default=None)


class _Browser(ABC):
    """Base class of all browsers

    Subclasses must define NAME, FORMAT, SUPPORTED_OPERATING_SYSTEMS and the data dirs of every supported OS"""

    NAME: ClassVar[BrowserName]
    DISPLAY_NAME: ClassVar[str] = ""
    FORMAT: ClassVar[StoreFormat]
    SUPPORTED_OPERATING_SYSTEMS: ClassVar[tuple[SupportedOS, ...]] = ()

    LINUX_DATA_DIRS: ClassVar[_DataDirs] = ()
    WINDOWS_DATA_DIRS: ClassVar[_DataDirs] = ()
    OSX_DATA_DIRS: ClassVar[_DataDirs] = ()

    def __init__(self, os_name: Optional[SupportedOS] = None) -> None:
        self.os_name: SupportedOS = os_name or current_os()
        if not self.is_supported(self.os_name):
            msg = f"{self.DISPLAY_NAME} browser is only supported on: {self.SUPPORTED_OPERATING_SYSTEMS}"
            raise UnsupportedOSError(msg)

    def __str__(self) -> str:
        return self.DISPLAY_NAME

    @classmethod
    def is_supported(cls, os_name: str) -> bool:
        return os_name in cls.SUPPORTED_OPERATING_SYSTEMS

    def _data_dir_candidates(self) -> _DataDirs:
        return {
            "linux": self.LINUX_DATA_DIRS,
            "osx": self.OSX_DATA_DIRS,
            "windows": self.WINDOWS_DATA_DIRS,
        }[self.os_name]

    def find_data_dir(self) -> str:
        for path in self._data_dir_candidates():
            expanded = _expand_paths(self.os_name, path)
            if expanded and os.path.isdir(expanded):
                logger.debug(f"found {self} data directory at: {expanded}")
                return expanded
        raise BrowserNotInstalledError(f"Could not find {self} data directory, is it installed?")

    @abstractmethod
    def locate(self, spec: BrowserSpec) -> StoreLocation: ...


class ChromiumBased(_Browser):
    """Super class for all Chromium based browsers"""

    FORMAT = StoreFormat.CHROMIUM_SQL
    SUPPORTED_OPERATING_SYSTEMS: ClassVar[tuple[SupportedOS, ...]] = ("windows", "osx", "linux")
    SUPPORTS_PROFILES: ClassVar[bool] = True
    COOKIE_FILES: ClassVar[_StrTuple] = (os.path.join("Network", "Cookies"), "Cookies")

    LINUX_CHANNELS: ClassVar[_StrTuple] = ("",)
    LINUX_OS_CRYPT_NAME: ClassVar[str] = ""

    WINDOWS_CHANNELS: ClassVar[_StrTuple] = ("",)

    OSX_CHANNELS: ClassVar[_StrTuple] = ("",)
    OSX_KEY_SERVICE: ClassVar[str] = ""
    OSX_KEY_USER: ClassVar[str] = ""

    def _data_dir_candidates(self) -> _DataDirs:
        if self.os_name == "osx":
            return tuple(_generate_nix_paths_chromium(self.OSX_DATA_DIRS, self.OSX_CHANNELS))  # type: ignore
        if self.os_name == "linux":
            return tuple(_generate_nix_paths_chromium(self.LINUX_DATA_DIRS, self.LINUX_CHANNELS))  # type: ignore
        return tuple(_generate_win_paths_chromium(self.WINDOWS_DATA_DIRS, self.WINDOWS_CHANNELS))

    def find_data_dir(self) -> str:
        if self.os_name == "windows" and self.NAME is BrowserName.CHROME and _IS_WINDOWS:
            if group_policy_path := _windows_group_policy_path():
                logger.debug(f"using {self} data directory from group policy: {group_policy_path}")
                return group_policy_path
        return super().find_data_dir()

    def _find_cookie_file(self, profile_dir: str) -> Optional[str]:
        for name in self.COOKIE_FILES:
            path = os.path.join(profile_dir, name)
            if os.path.isfile(path):
                return path
        return None

    @staticmethod
    def _read_profile_registry(data_dir: str) -> dict[str, str]:
        """Map profile display names (lower case) to profile directories, as listed in `Local State`"""
        local_state = os.path.join(data_dir, "Local State")
        try:
            with open(local_state, encoding="utf8") as f:
                info_cache = json.load(f).get("profile", {}).get("info_cache", {})
        except (OSError, ValueError, AttributeError):
            logger.debug(f"could not read profile registry at: {local_state}")
            return {}
        registry = {}
        for directory, info in info_cache.items():
            if isinstance(info, dict) and info.get("name"):
                registry[str(info["name"]).lower()] = directory
        return registry

    def _default_profile_dir(self, data_dir: str) -> Optional[str]:
        if not self.SUPPORTS_PROFILES:
            return data_dir
        default = os.path.join(data_dir, "Default")
        if os.path.isdir(default):
            return default
        return next(iter(sorted(glob.glob(os.path.join(glob.escape(data_dir), "Profile *")))), None)

    def _named_profile_dir(self, data_dir: str, profile: str) -> Optional[str]:
        if not self.SUPPORTS_PROFILES:
            logger.warning(f"{self} does not support profiles, ignoring profile {profile!r}")
            return data_dir
        directory = self._read_profile_registry(data_dir).get(profile.lower(), profile)
        profile_dir = os.path.join(data_dir, directory)
        return profile_dir if os.path.isdir(profile_dir) else None

    def locate(self, spec: BrowserSpec) -> StoreLocation:
        if spec.profile and _is_path(spec.profile):
            return self._locate_path(spec.profile)

        data_dir = self.find_data_dir()
        if spec.profile:
            profile_dir = self._named_profile_dir(data_dir, spec.profile)
        else:
            profile_dir = self._default_profile_dir(data_dir)
        if profile_dir is None:
            raise ProfileNotFoundError(f"Could not find {self} profile {spec.profile or 'Default'!r} in {data_dir}")

        cookie_file = self._find_cookie_file(profile_dir)
        if cookie_file is None:
            raise ProfileNotFoundError(f"Could not find a cookies database for {self} in {profile_dir}")
        logger.debug(f"found {self} cookies database at: {cookie_file}")
        return StoreLocation(cookie_file, profile_dir, self.FORMAT)

    def _locate_path(self, profile: str) -> StoreLocation:
        path = _expand_user(profile)
        if os.path.isfile(path):
            profile_dir = os.path.dirname(os.path.abspath(path))
            if os.path.basename(profile_dir) == "Network":
                profile_dir = os.path.dirname(profile_dir)
            return StoreLocation(path, profile_dir, self.FORMAT)
        if os.path.isdir(path) and (cookie_file := self._find_cookie_file(path)):
            return StoreLocation(cookie_file, path, self.FORMAT)
        raise ProfileNotFoundError(f"Could not find a {self} cookies database at {path}")


class Chrome(ChromiumBased):
    """Class for Google Chrome"""

    NAME = BrowserName.CHROME
    DISPLAY_NAME = "Chrome"
    OSX_KEY_SERVICE = "Chrome Safe Storage"
    OSX_KEY_USER = "Chrome"
    OSX_CHANNELS = ("", " Beta", " Dev", " Canary")
    WINDOWS_CHANNELS = ("", " Beta", " Dev", " SxS")
    LINUX_CHANNELS = ("", "-beta", "-unstable")
    LINUX_OS_CRYPT_NAME = "chrome"

    LINUX_DATA_DIRS = (
        "$XDG_CONFIG_HOME/google-chrome{channel}",
        "~/.var/app/com.google.Chrome/config/google-chrome{channel}",
    )
    OSX_DATA_DIRS = ("~/Library/Application Support/Google/Chrome{channel}",)
    WINDOWS_DATA_DIRS = ("Google\\Chrome{channel}\\User Data",)


class Arc(ChromiumBased):
    """Class for Arc"""

    NAME = BrowserName.ARC
    DISPLAY_NAME = "Arc"
    SUPPORTED_OPERATING_SYSTEMS = ("osx",)
    OSX_DATA_DIRS = ("~/Library/Application Support/Arc/User Data",)
    OSX_KEY_USER = "Arc"
    OSX_KEY_SERVICE = "Arc Safe Storage"


class Chromium(ChromiumBased):
    """Class for Chromium"""

    NAME = BrowserName.CHROMIUM
    DISPLAY_NAME = "Chromium"
    LINUX_DATA_DIRS = (
        "$XDG_CONFIG_HOME/chromium",
        "~/.var/app/org.chromium.Chromium/config/chromium",
        "~/snap/chromium/common/chromium",
    )
    WINDOWS_DATA_DIRS = ("Chromium\\User Data",)
    OSX_DATA_DIRS = ("~/Library/Application Support/Chromium",)
    LINUX_OS_CRYPT_NAME = "chromium"
    OSX_KEY_SERVICE = "Chromium Safe Storage"
    OSX_KEY_USER = "Chromium"


class Opera(ChromiumBased):
    """Class for Opera"""

    NAME = BrowserName.OPERA
    DISPLAY_NAME = "Opera"
    SUPPORTS_PROFILES = False
    LINUX_DATA_DIRS = (
        "$XDG_CONFIG_HOME/opera{channel}",
        "~/.var/app/com.opera.Opera/config/opera{channel}",
    )
    LINUX_CHANNELS = ("", "-beta", "-developer")
    WINDOWS_DATA_DIRS = (_WinPath("APPDATA", "Opera Software\\Opera {channel}"),)
    WINDOWS_CHANNELS = ("Stable", "Next", "Developer")
    OSX_DATA_DIRS = ("~/Library/Application Support/com.operasoftware.Opera{channel}",)
    OSX_CHANNELS = ("", "Next", "Developer")
    LINUX_OS_CRYPT_NAME = "chromium"
    OSX_KEY_SERVICE = "Opera Safe Storage"
    OSX_KEY_USER = "Opera"


class OperaGX(ChromiumBased):
    """Class for Opera GX"""

    NAME = BrowserName.OPERA_GX
    DISPLAY_NAME = "Opera GX"
    SUPPORTED_OPERATING_SYSTEMS = ("osx", "windows")
    SUPPORTS_PROFILES = False
    WINDOWS_DATA_DIRS = (_WinPath("APPDATA", "Opera Software\\Opera GX {channel}"),)
    WINDOWS_CHANNELS = ("Stable",)
    OSX_DATA_DIRS = ("~/Library/Application Support/com.operasoftware.OperaGX",)
    OSX_KEY_SERVICE = "Opera Safe Storage"
    OSX_KEY_USER = "Opera"


class Brave(ChromiumBased):
    NAME = BrowserName.BRAVE
    DISPLAY_NAME = "Brave"
    LINUX_DATA_DIRS = (
        "$XDG_CONFIG_HOME/BraveSoftware/Brave-Browser{channel}",
        "~/.var/app/com.brave.Browser/config/BraveSoftware/Brave-Browser{channel}",
    )
    LINUX_CHANNELS = ("", "-Beta", "-Dev", "-Nightly")
    WINDOWS_DATA_DIRS = ("BraveSoftware\\Brave-Browser{channel}\\User Data",)
    WINDOWS_CHANNELS = ("", "-Beta", "-Dev", "-Nightly")
    OSX_DATA_DIRS = ("~/Library/Application Support/BraveSoftware/Brave-Browser{channel}",)
    OSX_CHANNELS = ("", "-Beta", "-Dev", "-Nightly")
    LINUX_OS_CRYPT_NAME = "brave"
    OSX_KEY_SERVICE = "Brave Safe Storage"
    OSX_KEY_USER = "Brave"


class Edge(ChromiumBased):
    """Class for Microsoft Edge"""

    NAME = BrowserName.EDGE
    DISPLAY_NAME = "Edge"
    LINUX_DATA_DIRS = (
        "$XDG_CONFIG_HOME/microsoft-edge{channel}",
        "~/.var/app/com.microsoft.Edge/config/microsoft-edge{channel}",
    )
    LINUX_CHANNELS = ("", "-beta", "-dev")
    WINDOWS_DATA_DIRS = ("Microsoft\\Edge{channel}\\User Data",)
    WINDOWS_CHANNELS = ("", " Beta", " Dev", " SxS")
    OSX_DATA_DIRS = ("~/Library/Application Support/Microsoft Edge{channel}",)
    OSX_CHANNELS = ("", " Beta", " Dev", " Canary")
    LINUX_OS_CRYPT_NAME = "chromium"
    OSX_KEY_SERVICE = "Microsoft Edge Safe Storage"
    OSX_KEY_USER = "Microsoft Edge"


class Vivaldi(ChromiumBased):
    """Class for Vivaldi Browser"""

    NAME = BrowserName.VIVALDI
    DISPLAY_NAME = "Vivaldi"
    LINUX_DATA_DIRS = (
        "$XDG_CONFIG_HOME/vivaldi",
        "$XDG_CONFIG_HOME/vivaldi-snapshot",
        "~/.var/app/com.vivaldi.Vivaldi/config/vivaldi",
    )
    WINDOWS_DATA_DIRS = ("Vivaldi\\User Data",)
    OSX_DATA_DIRS = ("~/Library/Application Support/Vivaldi",)
    LINUX_OS_CRYPT_NAME = "chrome"
    OSX_KEY_SERVICE = "Vivaldi Safe Storage"
    OSX_KEY_USER = "Vivaldi"


class Whale(ChromiumBased):
    """Class for Naver Whale"""

    NAME = BrowserName.WHALE
    DISPLAY_NAME = "Whale"
    LINUX_DATA_DIRS = ("$XDG_CONFIG_HOME/naver-whale",)
    WINDOWS_DATA_DIRS = ("Naver\\Naver Whale\\User Data",)
    OSX_DATA_DIRS = ("~/Library/Application Support/Naver/Whale",)
    LINUX_OS_CRYPT_NAME = "whale"
    OSX_KEY_SERVICE = "Whale Safe Storage"
    OSX_KEY_USER = "Whale"


class FirefoxBased(_Browser):
    """Superclass for Firefox based browsers"""

    FORMAT = StoreFormat.FIREFOX_SQL
    SUPPORTED_OPERATING_SYSTEMS: ClassVar[tuple[SupportedOS, ...]] = ("windows", "osx", "linux")
    NO_CONTAINER: ClassVar[str] = "none"

    @staticmethod
    def _read_profiles_ini(data_dir: str) -> Optional[configparser.ConfigParser]:
        profiles_ini_path = os.path.join(data_dir, "profiles.ini")
        if not os.path.isfile(profiles_ini_path):
            return None
        config = configparser.ConfigParser(interpolation=None)
        try:
            _ = config.read(profiles_ini_path, encoding="utf8")
        except configparser.Error as e:
            logger.warning(f"could not parse {profiles_ini_path}: {e}")
            return None
        return config

    @staticmethod
    def _profile_path(data_dir: str, section: configparser.SectionProxy) -> str:
        path = section.get("Path", "")
        absolute = section.get("IsRelative") == "0"
        return path if absolute else os.path.join(data_dir, path)

    def get_default_profile(self, data_dir: str) -> Optional[str]:
        config = self._read_profiles_ini(data_dir)
        if config is None:
            return self._newest_profile(data_dir)

        profile_path = None
        for section in config.sections():
            if section.startswith("Install"):
                profile_path = config[section].get("Default")
                break
            # in ff 72.0.1, if both an Install section and one with Default=1 are present, the former takes precedence
            elif config[section].get("Default") == "1" and not profile_path:
                profile_path = config[section].get("Path")

        profiles = [config[section] for section in config.sections() if config[section].get("Path")]
        for section in profiles:
            # the Install section has no relative/absolute info, so check the profiles
            if profile_path is None or section.get("Path") == profile_path:
                return self._profile_path(data_dir, section)
        if profile_path and os.path.isdir(os.path.join(data_dir, profile_path)):
            return os.path.join(data_dir, profile_path)
        return self._newest_profile(data_dir)

    def _newest_profile(self, data_dir: str) -> Optional[str]:
        escaped = glob.escape(data_dir)
        cookie_dbs = [
            path for pattern in ("*", os.path.join("Profiles", "*")) for path in glob.glob(os.path.join(escaped, pattern, "cookies.sqlite"))
        ]
        newest = _newest(cookie_dbs)
        return os.path.dirname(newest) if newest else None

    def get_named_profile(self, data_dir: str, profile: str) -> Optional[str]:
        config = self._read_profiles_ini(data_dir)
        if config is not None:
            for section in config.sections():
                if config[section].get("Name", "").lower() == profile.lower() and config[section].get("Path"):
                    return self._profile_path(data_dir, config[section])

        escaped = glob.escape(data_dir)
        for pattern in (profile, f"*.{profile}", os.path.join("Profiles", profile), os.path.join("Profiles", f"*.{profile}")):
            matches = sorted(p for p in glob.glob(os.path.join(escaped, pattern)) if os.path.isdir(p))
            if matches:
                return matches[0]
        return None

    @classmethod
    def resolve_container(cls, profile_dir: str, container: str) -> int:
        if container.lower() == cls.NO_CONTAINER:
            return 0
        containers_path = os.path.join(profile_dir, "containers.json")
        try:
            with open(containers_path, encoding="utf8") as f:
                identities = json.load(f).get("identities", [])
        except OSError:
            raise ContainerNotFoundError(f"Could not read containers.json in {profile_dir}") from None
        except ValueError as e:
            raise ContainerNotFoundError(f"Could not parse {containers_path}: {e}") from None

        for identity in identities:
            l10n_match = re.fullmatch(r"userContext([^.]+)\.label", str(identity.get("l10nID", "")))
            names = (identity.get("name"), l10n_match and l10n_match.group(1))
            context_id = identity.get("userContextId")
            if container in names and isinstance(context_id, int):
                return context_id
        raise ContainerNotFoundError(f"Could not find {cls.NAME} container {container!r} in {containers_path}")

    def locate(self, spec: BrowserSpec) -> StoreLocation:
        if spec.profile and _is_path(spec.profile):
            path = _expand_user(spec.profile)
            profile_dir = os.path.dirname(os.path.abspath(path)) if os.path.isfile(path) else path
        else:
            data_dir = self.find_data_dir()
            if spec.profile:
                profile_dir = self.get_named_profile(data_dir, spec.profile)
            else:
                profile_dir = self.get_default_profile(data_dir)
            if profile_dir is None:
                raise ProfileNotFoundError(f"Could not find {self} profile {spec.profile or 'default'!r} in {data_dir}")

        cookie_file = os.path.join(profile_dir, "cookies.sqlite")
        if not os.path.isfile(cookie_file):
            raise ProfileNotFoundError(f"Could not find a cookies database for {self} in {profile_dir}")
        logger.debug(f"found {self} cookies database at: {cookie_file}")

        container_id = None
        if spec.container:
            container_id = self.resolve_container(profile_dir, spec.container)
            logger.debug(f"only loading cookies from {self} container {spec.container!r}, ID {container_id}")
        return StoreLocation(cookie_file, profile_dir, self.FORMAT, container_id)


class Firefox(FirefoxBased):
    """Class for Firefox"""

    NAME = BrowserName.FIREFOX
    DISPLAY_NAME = "Firefox"
    LINUX_DATA_DIRS = (
        "~/.mozilla/firefox",
        "~/snap/firefox/common/.mozilla/firefox",
        "~/.var/app/org.mozilla.firefox/.mozilla/firefox",
    )
    WINDOWS_DATA_DIRS = (
        _WinPath("APPDATA", r"Mozilla\Firefox"),
        _WinPath("LOCALAPPDATA", r"Mozilla\Firefox"),
    )
    OSX_DATA_DIRS = ("~/Library/Application Support/Firefox",)


class LibreWolf(FirefoxBased):
    """Class for LibreWolf"""

    NAME = BrowserName.LIBREWOLF
    DISPLAY_NAME = "LibreWolf"
    LINUX_DATA_DIRS = (
        "~/.librewolf",
        "~/snap/librewolf/common/.librewolf",
        "~/.var/app/io.gitlab.librewolf-community/.librewolf",
    )
    WINDOWS_DATA_DIRS = (
        _WinPath("APPDATA", "librewolf"),
        _WinPath("LOCALAPPDATA", "librewolf"),
    )
    OSX_DATA_DIRS = ("~/Library/Application Support/librewolf",)


class Safari(_Browser):
    """Class for Safari"""

    NAME = BrowserName.SAFARI
    DISPLAY_NAME = "Safari"
    FORMAT = StoreFormat.SAFARI_BINARY
    SUPPORTED_OPERATING_SYSTEMS = ("osx",)
    OSX_COOKIE_PATHS: ClassVar[_StrTuple] = (
        "~/Library/Containers/com.apple.Safari/Data/Library/Cookies/Cookies.binarycookies",
        "~/Library/Cookies/Cookies.binarycookies",
    )

    def locate(self, spec: BrowserSpec) -> StoreLocation:
        if spec.profile:
            if not _is_path(spec.profile):
                raise ProfileNotFoundError(f"{self} profiles must be given as a path to a .binarycookies file")
            cookie_file = _expand_user(spec.profile)
            if not os.path.isfile(cookie_file):
                raise ProfileNotFoundError(f"Could not find {self} cookies file at {cookie_file}")
        else:
            cookie_file = _expand_paths(self.os_name, *self.OSX_COOKIE_PATHS)
            if cookie_file is None:
                raise BrowserNotInstalledError(f"Could not find {self} cookies file, is it installed?")
        logger.debug(f"found {self} cookies file at: {cookie_file}")
        return StoreLocation(cookie_file, os.path.dirname(cookie_file), self.FORMAT)


ALL_BROWSERS: list[type[_Browser]] = [
    Chrome,
    Chromium,
    Opera,
    OperaGX,
    Brave,
    Edge,
    Vivaldi,
    Whale,
    Arc,
    Firefox,
    LibreWolf,
    Safari,
]

_BROWSER_MAP: dict[BrowserName, type[_Browser]] = {browser.NAME: browser for browser in ALL_BROWSERS}


def get_browser(name: BrowserName, os_name: Optional[SupportedOS] = None) -> _Browser:
    return _BROWSER_MAP[name](os_name)


def locate(spec: BrowserSpec, os_name: Optional[SupportedOS] = None) -> StoreLocation:
    """Find the cookie store selected by `spec` on `os_name` (the current OS by default)"""
    return get_browser(spec.browser, os_name).locate(spec)
