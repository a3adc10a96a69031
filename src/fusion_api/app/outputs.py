"""Output file naming and path safety for generated images."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import quote

from .errors import OutputStorageError

OUTPUT_URL_PREFIX = "/outputs"


def output_filename(task_id: str, extension: str) -> str:
    return f"{task_id}.{extension}"


def output_url(filename: str) -> str:
    return f"{OUTPUT_URL_PREFIX}/{quote(filename, safe='')}"


def resolve_output_path(output_dir: Path, filename: str) -> Path | None:
    """Return the absolute path for `filename`, or None if it leaves `output_dir`.

    The output directory is flat: only direct children are valid.
    """
    if not filename or "\x00" in filename:
        return None
    base = output_dir.resolve()
    candidate = (base / filename).resolve()
    if candidate.parent != base:
        return None
    return candidate


def write_output(output_dir: Path, filename: str, data: bytes) -> Path:
    path = resolve_output_path(output_dir, filename)
    if path is None:
        raise OutputStorageError(
            f"Refusing to write output outside the output directory: {filename}",
            details={"filename": filename},
        )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
    except OSError as exc:
        raise OutputStorageError(
            f"Failed to write output file {filename}: {exc}",
            details={"filename": filename},
        ) from exc
    return path
