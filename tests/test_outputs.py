from __future__ import annotations

from pathlib import Path

import pytest

from fusion_api.app.errors import OutputStorageError
from fusion_api.app.outputs import output_filename, output_url, resolve_output_path, write_output


def test_output_names_and_urls() -> None:
    assert output_filename("t1", "png") == "t1.png"
    assert output_url("t1.png") == "/outputs/t1.png"
    assert output_url("a b#1.jpg") == "/outputs/a%20b%231.jpg"


def test_resolve_output_path_accepts_direct_children(tmp_path: Path) -> None:
    assert resolve_output_path(tmp_path, "t1.png") == (tmp_path / "t1.png").resolve()


@pytest.mark.parametrize(
    "filename",
    ["", "../t1.png", "../../etc/passwd", "nested/t1.png", "/etc/passwd", ".", "bad\x00.png"],
)
def test_resolve_output_path_rejects_escapes(tmp_path: Path, filename: str) -> None:
    assert resolve_output_path(tmp_path, filename) is None


def test_write_output_creates_directory(tmp_path: Path) -> None:
    target_dir = tmp_path / "outputs"

    path = write_output(target_dir, "t1.png", b"png")

    assert path.read_bytes() == b"png"
    assert path.parent == target_dir.resolve()


def test_write_output_refuses_unsafe_name(tmp_path: Path) -> None:
    with pytest.raises(OutputStorageError) as excinfo:
        write_output(tmp_path, "../escape.png", b"png")
    assert excinfo.value.code == "OUTPUT_WRITE_FAILED"
    assert not (tmp_path.parent / "escape.png").exists()
