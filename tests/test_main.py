import json
from pathlib import Path

import pytest

from browser_cookie_engine.__main__ import main

from .utils.stores import ChromiumRow, make_chromium_db


@pytest.fixture
def chromium_store(home: Path) -> Path:
    return make_chromium_db(
        home / ".config" / "chromium" / "Default" / "Network" / "Cookies",
        [ChromiumRow(".example.com", "sid", "abc", is_httponly=1, samesite=2), ChromiumRow("example.com", "lang", "en")],
    )


def test_prints_header(chromium_store: Path, capsys: pytest.CaptureFixture):
    main(["chromium", "https://www.example.com/"])
    assert capsys.readouterr().out.strip() == "sid=abc; lang=en"


def test_json(chromium_store: Path, capsys: pytest.CaptureFixture):
    main(["--json", "chromium", "https://example.com/"])
    cookies = json.loads(capsys.readouterr().out)
    assert [cookie["name"] for cookie in cookies] == ["sid", "lang"]
    assert cookies[0]["httponly"] is True
    assert cookies[0]["samesite"] == "strict"
    assert cookies[1]["expires"] is None


def test_nothing_applies(chromium_store: Path):
    with pytest.raises(SystemExit) as exc_info:
        main(["chromium", "https://other.org/"])
    assert exc_info.value.code == 1


@pytest.mark.parametrize("spec", ["netscape", "chromium::Work", "vivaldi"])
def test_errors(chromium_store: Path, spec: str, capsys: pytest.CaptureFixture):
    with pytest.raises(SystemExit) as exc_info:
        main([spec, "https://example.com/"])
    assert exc_info.value.code == 2
    assert "error:" in capsys.readouterr().err
