"""Unpacking of compiled ``.app`` packages and their bundled AL source tree."""

import logging
import os
import re
import shutil
import zipfile
from pathlib import Path
from typing import Callable, List, Optional, Union
from urllib.parse import unquote

import blake3

from ..errors import ExtractionError
from .models import AppArtifact, ExtractedTree

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_UNSAFE_DIR_CHARS = re.compile(r"[^A-Za-z0-9_-]")

DEFAULT_APP_NAME = "Unknown"
DEFAULT_APP_VERSION = "1.0"

Notify = Optional[Callable[[str], None]]


def short_digest(value: str, length: int = 8) -> str:
    """Return the first ``length`` hex characters of the Blake3 hash of ``value``."""
    return blake3.blake3(value.encode("utf-8")).hexdigest()[:length]


def sanitize_app_name(name: str) -> str:
    """Replace characters that are not allowed in directory names."""
    return _UNSAFE_NAME_CHARS.sub("_", name)


def parse_artifact_identity(artifact_path: Union[str, Path]) -> Optional[AppArtifact]:
    """Derive app name and version from ``<publisher>_<name>_<version>.app``.

    Missing segments fall back to ``"Unknown"`` and ``"1.0"`` and mark the
    identity as degraded. A file with a single segment uses the whole stem
    as the name.

    Args:
        artifact_path: Path of the package file

    Returns:
        Parsed identity, or None when the filename has no usable stem
    """
    file_name = Path(artifact_path).name
    stem = file_name[:-4] if file_name.lower().endswith(".app") else file_name
    if not stem.strip("_ "):
        return None

    parts = stem.split("_")
    if len(parts) == 1:
        return AppArtifact(str(artifact_path), parts[0], DEFAULT_APP_VERSION, degraded=True)

    app_name = parts[1] or DEFAULT_APP_NAME
    app_version = parts[2] if len(parts) > 2 and parts[2] else DEFAULT_APP_VERSION
    degraded = not parts[1] or len(parts) < 3 or not parts[2]
    return AppArtifact(str(artifact_path), app_name, app_version, degraded=degraded)


def source_tree_dir(artifact: AppArtifact, dest_base: Union[str, Path]) -> Path:
    """Directory the source tree of ``artifact`` is (or will be) written to."""
    dir_name = sanitize_app_name(artifact.app_name)
    if artifact.degraded:
        dir_name = f"{dir_name}-{short_digest(Path(artifact.path).name)}"
    return Path(dest_base) / dir_name / sanitize_app_name(artifact.app_version)


def open_archive(artifact_path: Union[str, Path]) -> zipfile.ZipFile:
    """Open a package as a zip archive.

    Packages carry a short binary header before the zip payload; the zip
    reader locates the central directory from the end of the file, so the
    prefix is tolerated.

    Raises:
        ExtractionError: If the file is missing, unreadable or not an archive
    """
    name = Path(artifact_path).name
    try:
        return zipfile.ZipFile(artifact_path)
    except zipfile.BadZipFile as e:
        raise ExtractionError(f"{name} is not a valid archive", str(artifact_path)) from e
    except OSError as e:
        raise ExtractionError(f"Cannot read {name}: {e}", str(artifact_path)) from e


def scratch_dir_name(artifact_path: Union[str, Path]) -> str:
    """Artifact-private scratch directory name."""
    path = Path(artifact_path)
    normalized = _UNSAFE_DIR_CHARS.sub("_", path.name)
    return f"{normalized}-{short_digest(str(path.absolute()))}"


def _safe_target(root: Path, member_name: str) -> Optional[Path]:
    target = (root / member_name).resolve()
    if target == root or root not in target.parents:
        return None
    return target


def extract(artifact_path: Union[str, Path], scratch_dir: Union[str, Path]) -> ExtractedTree:
    """Unpack every member of a package into a private scratch directory.

    Args:
        artifact_path: Path of the package file
        scratch_dir: Parent directory for scratch extractions

    Returns:
        The extracted tree

    Raises:
        ExtractionError: If the archive cannot be opened or written
    """
    root = (Path(scratch_dir) / scratch_dir_name(artifact_path)).resolve()
    files: List[str] = []

    with open_archive(artifact_path) as archive:
        try:
            root.mkdir(parents=True, exist_ok=True)
            for info in archive.infolist():
                if info.is_dir():
                    continue
                target = _safe_target(root, info.filename)
                if target is None:
                    logger.warning(f"Rejected archive member outside extraction root: {info.filename}")
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with archive.open(info) as source, open(target, "wb") as destination:
                    shutil.copyfileobj(source, destination)
                files.append(info.filename)
        except OSError as e:
            raise ExtractionError(
                f"Cannot write {Path(artifact_path).name} to {root}: {e}", str(artifact_path)
            ) from e
        except zipfile.BadZipFile as e:
            raise ExtractionError(
                f"{Path(artifact_path).name} is not a valid archive", str(artifact_path)
            ) from e

    logger.debug(f"Extracted {len(files)} members of {artifact_path} into {root}")
    return ExtractedTree(artifact_path=str(artifact_path), root=root, files=files)


def _decode_segment(segment: str) -> str:
    try:
        return unquote(unquote(segment, errors="strict"), errors="strict")
    except UnicodeDecodeError:
        pass
    try:
        return unquote(segment, errors="strict")
    except UnicodeDecodeError:
        return segment


def _relative_source_path(member_name: str) -> Optional[str]:
    name = member_name.replace("\\", "/")
    index = name.lower().rfind("/src/")
    if index >= 0:
        return name[index + len("/src/") :]
    if name.lower().startswith("src/"):
        return name[len("src/") :]
    return None


def extract_source_tree(
    artifact_path: Union[str, Path],
    archive: zipfile.ZipFile,
    dest_base: Union[str, Path],
    on_progress: Notify = None,
    on_warning: Notify = None,
) -> bool:
    """Write the ``.al`` files found under ``src/`` to the persistent source tree.

    Existing files are always overwritten.

    Args:
        artifact_path: Path of the package file
        archive: The opened package
        dest_base: Root of the persistent source tree
        on_progress: Called once per written file
        on_warning: Called for source files outside a ``src/`` folder

    Returns:
        False when the filename cannot be decomposed into name and version

    Raises:
        ExtractionError: If the destination cannot be written
    """
    artifact = parse_artifact_identity(artifact_path)
    if artifact is None:
        logger.error(f"Cannot derive app name and version from {artifact_path}")
        return False

    destination = source_tree_dir(artifact, dest_base)
    written = 0

    for info in archive.infolist():
        if info.is_dir() or not info.filename.lower().endswith(".al"):
            continue

        relative = _relative_source_path(info.filename)
        if relative is None:
            if on_warning:
                on_warning(f"Source file outside src folder skipped: {info.filename}")
            continue

        segments = [
            sanitize_app_name(_decode_segment(segment))
            for segment in relative.split("/")
            if segment and segment not in (".", "..")
        ]
        if not segments:
            continue

        target = destination.joinpath(*segments)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(archive.read(info))
        except OSError as e:
            raise ExtractionError(f"Cannot write source file {target}: {e}", str(artifact_path)) from e

        written += 1
        if on_progress:
            on_progress(f"Extracted {'/'.join(segments)}")

    logger.info(f"Extracted {written} source files of {artifact.app_name} {artifact.app_version}")
    return True


def has_extracted_sources(directory: Union[str, Path]) -> bool:
    """Check whether at least one ``.al`` file exists below ``directory``."""
    if not os.path.isdir(directory):
        return False
    for _, _, file_names in os.walk(directory):
        if any(name.lower().endswith(".al") for name in file_names):
            return True
    return False


def remove_tree(path: Union[str, Path]) -> None:
    """Delete a scratch directory, logging instead of raising on failure."""
    try:
        shutil.rmtree(path)
        logger.debug(f"Removed {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
