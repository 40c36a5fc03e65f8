"""Key material for cookie decryption

`SystemKeyProvider` asks the operating system for the secret a Chromium based browser protects its cookies
with: the Secret Service or KWallet on Linux, the Keychain on macOS and DPAPI on Windows. `StaticKeyProvider`
hands out keys the caller already has.
"""

import base64
import json
import logging
import os
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from enum import Enum, auto
from typing import Any, Optional, Union

from ._browsers import ChromiumBased, get_browser
from ._crypto import CipherVersion, KeyMaterial, _crypt_unprotect_data, derive_key
from ._models import StoreLocation
from ._platform import _IS_LINUX, _IS_WINDOWS, SupportedOS
from ._spec import BrowserSpec, LinuxKeyring

if _IS_LINUX:
    import jeepney
    from jeepney.io.blocking import open_dbus_connection

logger = logging.getLogger(__name__)

CHROMIUM_DEFAULT_PASSWORD = b"peanuts"
LINUX_ITERATIONS = 1
OSX_ITERATIONS = 1003  # number of pbkdf2 iterations on mac


class KeyProvider(ABC):
    @abstractmethod
    def get_key_material(self, spec: BrowserSpec, location: StoreLocation, os_name: SupportedOS) -> KeyMaterial:
        """Return the keys needed to decrypt the cookies of the store at `location`"""


class StaticKeyProvider(KeyProvider):
    """Provides the same keys for every store

    Values may be a single key or a sequence of candidate keys:

        StaticKeyProvider({CipherVersion.V20: app_bound_key}, os_name="windows")
    """

    def __init__(
        self,
        keys: Mapping[Union[CipherVersion, str], Union[bytes, Iterable[bytes]]],
        os_name: Optional[SupportedOS] = None,
        source: str = "static keys",
    ) -> None:
        self.os_name = os_name
        self.source = source
        self._keys = {
            CipherVersion(version): (value,) if isinstance(value, bytes) else tuple(value)
            for version, value in keys.items()
        }

    def get_key_material(self, spec: BrowserSpec, location: StoreLocation, os_name: SupportedOS) -> KeyMaterial:
        return KeyMaterial(self.source, self.os_name or os_name, self._keys)


class _LinuxDesktopEnvironment(Enum):
    """
    https://chromium.googlesource.com/chromium/src/+/refs/heads/main/base/nix/xdg_util.h
    DesktopEnvironment
    """

    OTHER = auto()
    CINNAMON = auto()
    DEEPIN = auto()
    GNOME = auto()
    KDE3 = auto()
    KDE4 = auto()
    KDE5 = auto()
    KDE6 = auto()
    PANTHEON = auto()
    UKUI = auto()
    UNITY = auto()
    XFCE = auto()
    LXQT = auto()


_XDG_DESKTOPS = {
    "Deepin": _LinuxDesktopEnvironment.DEEPIN,
    "GNOME": _LinuxDesktopEnvironment.GNOME,
    "X-Cinnamon": _LinuxDesktopEnvironment.CINNAMON,
    "Pantheon": _LinuxDesktopEnvironment.PANTHEON,
    "XFCE": _LinuxDesktopEnvironment.XFCE,
    "UKUI": _LinuxDesktopEnvironment.UKUI,
    "LXQt": _LinuxDesktopEnvironment.LXQT,
}

_KDE_VERSIONS = {
    "4": _LinuxDesktopEnvironment.KDE4,
    "5": _LinuxDesktopEnvironment.KDE5,
    "6": _LinuxDesktopEnvironment.KDE6,
}


def _get_linux_desktop_environment(env: Mapping[str, str]) -> _LinuxDesktopEnvironment:
    """
    https://chromium.googlesource.com/chromium/src/+/refs/heads/main/base/nix/xdg_util.cc
    GetDesktopEnvironment
    """
    xdg_current_desktop = env.get("XDG_CURRENT_DESKTOP")
    desktop_session = env.get("DESKTOP_SESSION")
    if xdg_current_desktop is not None:
        for part in map(str.strip, xdg_current_desktop.split(":")):
            if part == "Unity":
                if desktop_session is not None and "gnome-fallback" in desktop_session:
                    return _LinuxDesktopEnvironment.GNOME
                return _LinuxDesktopEnvironment.UNITY
            if part == "KDE":
                kde_version = env.get("KDE_SESSION_VERSION")
                if kde_version not in _KDE_VERSIONS:
                    logger.info(f'unknown KDE version: "{kde_version}". Assuming KDE4')
                return _KDE_VERSIONS.get(kde_version or "", _LinuxDesktopEnvironment.KDE4)
            if part in _XDG_DESKTOPS:
                return _XDG_DESKTOPS[part]
        logger.info(f'XDG_CURRENT_DESKTOP is set to an unknown value: "{xdg_current_desktop}"')

    elif desktop_session is not None:
        if desktop_session == "deepin":
            return _LinuxDesktopEnvironment.DEEPIN
        if desktop_session in ("mate", "gnome"):
            return _LinuxDesktopEnvironment.GNOME
        if desktop_session in ("kde4", "kde-plasma"):
            return _LinuxDesktopEnvironment.KDE4
        if desktop_session == "kde":
            if "KDE_SESSION_VERSION" in env:
                return _LinuxDesktopEnvironment.KDE4
            return _LinuxDesktopEnvironment.KDE3
        if "xfce" in desktop_session or desktop_session == "xubuntu":
            return _LinuxDesktopEnvironment.XFCE
        if desktop_session == "ukui":
            return _LinuxDesktopEnvironment.UKUI
        logger.info(f'DESKTOP_SESSION is set to an unknown value: "{desktop_session}"')

    else:
        if "GNOME_DESKTOP_SESSION_ID" in env:
            return _LinuxDesktopEnvironment.GNOME
        if "KDE_FULL_SESSION" in env:
            if "KDE_SESSION_VERSION" in env:
                return _LinuxDesktopEnvironment.KDE4
            return _LinuxDesktopEnvironment.KDE3
    return _LinuxDesktopEnvironment.OTHER


def _choose_linux_keyring(env: Optional[Mapping[str, str]] = None) -> LinuxKeyring:
    """
    SelectBackend in
    https://chromium.googlesource.com/chromium/src/+/refs/heads/main/components/os_crypt/sync/key_storage_util_linux.cc
    """
    desktop_environment = _get_linux_desktop_environment(os.environ if env is None else env)
    logger.debug(f"detected desktop environment: {desktop_environment.name}")
    if desktop_environment is _LinuxDesktopEnvironment.KDE4:
        return LinuxKeyring.KWALLET
    if desktop_environment is _LinuxDesktopEnvironment.KDE5:
        return LinuxKeyring.KWALLET5
    if desktop_environment is _LinuxDesktopEnvironment.KDE6:
        return LinuxKeyring.KWALLET6
    if desktop_environment in (
        _LinuxDesktopEnvironment.KDE3,
        _LinuxDesktopEnvironment.LXQT,
        _LinuxDesktopEnvironment.OTHER,
    ):
        return LinuxKeyring.BASICTEXT
    return LinuxKeyring.GNOMEKEYRING


class _JeepneyConnection:
    def __init__(self, object_path: str, bus_name: str, interface: str) -> None:
        self.__dbus_address = jeepney.DBusAddress(object_path, bus_name, interface)

    def __enter__(self) -> "_JeepneyConnection":
        try:
            self.__connection = open_dbus_connection()
        except (OSError, KeyError) as e:
            raise RuntimeError(f"Unable to connect to the D-Bus session bus ({e!r})") from None
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def close(self) -> None:
        self.__connection.close()

    def call_method(self, method_name: str, signature: Optional[str] = None, *args: Any) -> Any:
        method = jeepney.new_method_call(self.__dbus_address, method_name, signature, args)
        response = self.__connection.send_and_get_reply(method)
        if response.header.message_type == jeepney.MessageType.error:
            raise RuntimeError(response.body[0])
        return response.body[0] if len(response.body) == 1 else response.body


_KWALLET_ADDRESSES = {
    LinuxKeyring.KWALLET: ("/modules/kwalletd", "org.kde.kwalletd", "org.kde.KWallet"),
    LinuxKeyring.KWALLET5: ("/modules/kwalletd5", "org.kde.kwalletd5", "org.kde.KWallet"),
    LinuxKeyring.KWALLET6: ("/modules/kwalletd6", "org.kde.kwalletd6", "org.kde.KWallet"),
}


class _LinuxPasswordManager:
    """Retrieve password used to encrypt cookies from KDE Wallet or SecretService"""

    _APP_ID = "browser-cookie-engine"

    def get_password(self, os_crypt_name: str, keyring: LinuxKeyring) -> Optional[bytes]:
        """Return the stored password, or None if the keyring has none for this browser"""
        if keyring is LinuxKeyring.BASICTEXT:
            return None
        try:
            if keyring is LinuxKeyring.GNOMEKEYRING:
                return self.__get_secretstorage_password(os_crypt_name)
            return self.__get_kdewallet_password_jeepney(os_crypt_name, keyring)
        except RuntimeError as e:
            logger.warning(f"failed to read the {os_crypt_name} password from {keyring.name}: {e}")
            return None

    def __get_secretstorage_password(self, os_crypt_name: str) -> bytes:
        schemas = ["chrome_libsecret_os_crypt_password_v2", "chrome_libsecret_os_crypt_password_v1"]
        for schema in schemas:
            try:
                return self.__get_secretstorage_item_jeepney(schema, os_crypt_name)
            except RuntimeError as e:
                logger.debug(f"no {schema} secret for {os_crypt_name}: {e}")
        raise RuntimeError(f"Can not find secret for {os_crypt_name}")

    def __get_secretstorage_item_jeepney(self, schema: str, application: str) -> bytes:
        con_params = ["/org/freedesktop/secrets", "org.freedesktop.secrets", "org.freedesktop.Secret.Service"]
        with _JeepneyConnection(*con_params) as connection:
            params = {"xdg:schema": schema, "application": application}
            object_path_1 = connection.call_method("SearchItems", "a{ss}", params)
            object_path_list: list = [obj for obj in object_path_1 if len(obj) > 0]
            if len(object_path_list) == 0:
                raise RuntimeError(f"Can not find secret for {application}")
            object_path: str = object_path_list[0][0]
            connection.call_method("Unlock", "ao", [object_path])
            _, session = connection.call_method("OpenSession", "sv", "plain", ("s", ""))
            _, _, secret, _ = connection.call_method("GetSecrets", "aoo", [object_path], session)[object_path]
            return secret

    def __get_kdewallet_password_jeepney(self, os_crypt_name: str, keyring: LinuxKeyring) -> bytes:
        folder = f"{os_crypt_name.capitalize()} Keys"
        key = f"{os_crypt_name.capitalize()} Safe Storage"
        with _JeepneyConnection(*_KWALLET_ADDRESSES[keyring]) as connection:
            network_wallet = connection.call_method("networkWallet")
            logger.debug(f'NetworkWallet = "{network_wallet}"')
            handle = connection.call_method("open", "sxs", network_wallet, 0, self._APP_ID)
            try:
                has_folder: bool = connection.call_method("hasFolder", "iss", handle, folder, self._APP_ID)
                if not has_folder:
                    raise RuntimeError(f"KDE Wallet folder {folder} not found.")
                password: str = connection.call_method("readPassword", "isss", handle, folder, key, self._APP_ID)
            finally:
                connection.call_method("close", "ibs", handle, False, self._APP_ID)
            return password.encode("utf-8")


def _get_osx_keychain_password(osx_key_service: str, osx_key_user: str) -> Optional[bytes]:
    """Retrieve password used to encrypt cookies from OSX Keychain"""

    cmd = ["/usr/bin/security", "-q", "find-generic-password", "-w", "-a", osx_key_user, "-s", osx_key_service]
    try:
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        logger.warning(f"failed to run {cmd[0]}: {e}")
        return None
    out, _ = proc.communicate()
    if proc.returncode != 0:
        logger.warning(f"{osx_key_service!r} was not found in the keychain")
        return None
    return out.strip()


def _find_local_state(profile_root: str) -> Optional[str]:
    # profile directories keep it one level up, browsers without profiles keep it next to the cookies
    for directory in (profile_root, os.path.dirname(profile_root)):
        path = os.path.join(directory, "Local State")
        if os.path.isfile(path):
            return path
    return None


def _get_windows_v10_key(profile_root: str) -> Optional[bytes]:
    key_file = _find_local_state(profile_root)
    if key_file is None:
        logger.warning(f"could not find the Local State file for {profile_root}")
        return None
    try:
        with open(key_file, "rb") as f:
            key64: str = json.load(f)["os_crypt"]["encrypted_key"]
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning(f"no usable os_crypt key in {key_file}: {e!r}")
        return None

    # Decode Key, get rid of DPAPI prefix, unprotect data
    encrypted_key = base64.standard_b64decode(key64)
    if not encrypted_key.startswith(b"DPAPI"):
        logger.warning(f"the os_crypt key in {key_file} is not DPAPI protected")
        return None
    try:
        _, v10_key = _crypt_unprotect_data(encrypted_key[len(b"DPAPI") :], is_key=True)
    except RuntimeError as e:
        logger.warning(f"failed to unprotect the os_crypt key: {e}")
        return None
    return v10_key


class SystemKeyProvider(KeyProvider):
    """Read key material from the keyring of the operating system the store belongs to"""

    def __init__(self, password_manager: Optional[_LinuxPasswordManager] = None) -> None:
        self._password_manager = password_manager or _LinuxPasswordManager()

    def get_key_material(self, spec: BrowserSpec, location: StoreLocation, os_name: SupportedOS) -> KeyMaterial:
        browser = get_browser(spec.browser, os_name)
        if not isinstance(browser, ChromiumBased):
            return KeyMaterial("none", os_name)
        if os_name == "linux":
            return self._linux_keys(browser, spec)
        if os_name == "osx":
            return self._osx_keys(browser)
        return self._windows_keys(location)

    def _linux_keys(self, browser: ChromiumBased, spec: BrowserSpec) -> KeyMaterial:
        keyring = LinuxKeyring[spec.keyring] if spec.keyring else _choose_linux_keyring()
        logger.debug(f"using {keyring.name} keyring for {browser}")
        password = self._password_manager.get_password(browser.LINUX_OS_CRYPT_NAME, keyring)
        v11_keys = [derive_key(password, LINUX_ITERATIONS)] if password is not None else []

        # Due to a bug in previous version of chromium,
        # the key used to encrypt the cookies in some linux systems was empty
        # After the bug was fixed, old cookies are still encrypted with an empty key
        v11_keys.append(derive_key(b"", LINUX_ITERATIONS))
        keys = {
            CipherVersion.V10: (derive_key(CHROMIUM_DEFAULT_PASSWORD, LINUX_ITERATIONS),),
            CipherVersion.V11: tuple(v11_keys),
        }
        return KeyMaterial(keyring.name, "linux", keys)

    def _osx_keys(self, browser: ChromiumBased) -> KeyMaterial:
        password = _get_osx_keychain_password(browser.OSX_KEY_SERVICE, browser.OSX_KEY_USER)
        keys = {CipherVersion.V10: (derive_key(password, OSX_ITERATIONS),)} if password is not None else {}
        return KeyMaterial("keychain", "osx", keys)

    def _windows_keys(self, location: StoreLocation) -> KeyMaterial:
        if not _IS_WINDOWS:
            logger.warning("DPAPI protected keys can only be read on Windows")
            return KeyMaterial("dpapi", "windows")
        v10_key = _get_windows_v10_key(location.profile_root)
        # the app-bound v20 key needs SYSTEM privileges, pass it in with a StaticKeyProvider
        keys = {CipherVersion.V10: (v10_key,), CipherVersion.V11: (v10_key,)} if v10_key else {}
        return KeyMaterial("dpapi", "windows", keys)
