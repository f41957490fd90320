"""Artifact naming and temporary file handling for transcode jobs.

Originals are stored under ``uploads/`` and outputs under ``transcoded/``,
both keyed by ``<base>_<unique suffix>.<ext>`` so that two uploads with the
same filename never overwrite each other.
"""

import logging
import mimetypes
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import PurePath

logger = logging.getLogger(__name__)

ORIGINALS_PREFIX = "uploads"
TRANSCODED_PREFIX = "transcoded"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class ArtifactKeys:
    """Object store keys for one job's original and transcoded files."""
    modified_name: str
    original_key: str
    transcoded_key: str


def sanitize_base_name(filename: str) -> tuple[str, str]:
    """Split an uploaded filename into a safe base and its extension.

    Directory components are dropped, so ``../../etc/passwd`` becomes
    ``passwd``.
    """
    name = PurePath(filename.replace("\\", "/")).name
    base, ext = os.path.splitext(name)
    base = _UNSAFE_CHARS.sub("_", base).strip("._") or "video"
    ext = _UNSAFE_CHARS.sub("", ext.lower())
    return base[:100], ext


def make_modified_name(filename: str) -> str:
    """Append a fresh unique suffix to the base of ``filename``."""
    base, _ = sanitize_base_name(filename)
    return f"{base}_{uuid.uuid4().hex}"


def build_artifact_keys(filename: str, output_extension: str) -> ArtifactKeys:
    """Derive collision-resistant keys for a job's original and output."""
    _, original_ext = sanitize_base_name(filename)
    modified_name = make_modified_name(filename)
    return ArtifactKeys(
        modified_name=modified_name,
        original_key=f"{ORIGINALS_PREFIX}/{modified_name}{original_ext}",
        transcoded_key=f"{TRANSCODED_PREFIX}/{modified_name}.{output_extension}",
    )


def guess_content_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


def temp_input_path(temp_dir: str, job_id: str, filename: str) -> str:
    _, ext = sanitize_base_name(filename)
    return os.path.join(temp_dir, f"{job_id}.input{ext}")


def temp_output_path(temp_dir: str, job_id: str, extension: str) -> str:
    return os.path.join(temp_dir, f"{job_id}.output.{extension}")


def write_temp_file(path: str, content: bytes) -> None:
    """Spool uploaded bytes to disk for the encoder."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "wb") as f:
        f.write(content)


def cleanup_local_file(file_path: str) -> bool:
    """Remove a temporary file.

    Returns:
        True if a file was deleted
    """
    if not file_path:
        return False
    try:
        if os.path.exists(file_path):
            os.remove(file_path)
            return True
        return False
    except OSError as e:
        logger.warning(f"Failed to remove temporary file {file_path}: {e}")
        return False
