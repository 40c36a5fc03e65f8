import glob
import os
import sys
from collections.abc import Iterator
from typing import Literal, NamedTuple, Optional, Union, get_args

from ._errors import UnsupportedOSError

SupportedOS = Literal["windows", "osx", "linux"]

_IS_LINUX = _IS_WINDOWS = False
if sys.platform.startswith("linux") or "bsd" in sys.platform.lower():
    _IS_LINUX = True
    _CURRENT_OS = "linux"
elif sys.platform == "win32":
    _IS_WINDOWS = True
    _CURRENT_OS = "windows"
elif sys.platform == "darwin":
    _CURRENT_OS = "osx"
else:
    _CURRENT_OS = "unknown"


class _WinPath(NamedTuple):
    env: str
    path: str


def current_os() -> SupportedOS:
    if _CURRENT_OS not in get_args(SupportedOS):
        raise UnsupportedOSError(f"OS not recognized: {sys.platform}")
    return _CURRENT_OS  # type: ignore


def _expand_win_path(path: Union[_WinPath, str]) -> Optional[str]:
    if not isinstance(path, tuple):
        path = _WinPath("LOCALAPPDATA", path)
    app_data = os.getenv(path.env)
    if not app_data:
        return None
    return os.path.join(app_data, path.path)


def _config_home() -> str:
    return os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")


def _expand_user(path: str) -> str:
    if path.startswith("$XDG_CONFIG_HOME"):
        return _config_home() + path[len("$XDG_CONFIG_HOME") :]
    return os.path.expanduser(path)


def _expand_paths_impl(os_name: SupportedOS, *paths: Union[_WinPath, str]) -> Iterator[str]:
    """Expands user paths on Linux, OSX, and windows"""
    assert os_name in get_args(SupportedOS)
    for path in paths:
        if os_name == "windows":
            expanded = _expand_win_path(path)
        else:
            assert not isinstance(path, _WinPath), "Windows paths are not supported in this platform"
            expanded = _expand_user(path)
        if not expanded:
            continue
        # glob will return results in arbitrary order. sorted() is use to make output predictable.
        yield from sorted(glob.iglob(expanded))


def _expand_paths(os_name: SupportedOS, *paths: Union[_WinPath, str]) -> Optional[str]:
    return next(_expand_paths_impl(os_name, *paths), None)


def _is_path(value: str) -> bool:
    return "/" in value or "\\" in value or value.startswith("~")
