import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from utils.sanitize import sanitize, sanitize_value


def test_sanitize_strips_markup_and_control_chars() -> None:
    assert sanitize("  <b>ABCD</b>1234\x07 ") == "ABCD1234"
    assert sanitize("<script>") == ""
    assert sanitize(None) == ""
    assert sanitize("a > b") == "a  b"


def test_sanitize_value_recurses_into_containers() -> None:
    value = {"<i>name</i>": ["<b>x</b>", 3, {"deep": " y\x00 "}], "n": 1.5}
    assert sanitize_value(value) == {"name": ["x", 3, {"deep": "y"}], "n": 1.5}
