"""Archive helpers used by the backup manager."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

LOGGER = logging.getLogger(__name__)


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be produced."""


def detect_zstd_support() -> bool:
    """Return True when both tar and zstd binaries are available."""
    return shutil.which("tar") is not None and shutil.which("zstd") is not None


def resolve_algorithm(configured: str) -> str:
    """Translate ``auto`` into a concrete algorithm for this host."""
    if configured == "auto":
        return "zstd" if detect_zstd_support() else "gzip"
    return configured


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "zstd":
        return "tar.zst"
    return "tar"


def algorithm_for_archive(archive_path: Path) -> str:
    """Infer the compression algorithm from an archive file name."""
    name = archive_path.name
    if name.endswith(".tar.zst"):
        return "zstd"
    if name.endswith(".tar.gz"):
        return "gzip"
    return "none"


def create_archive(
    source: Path,
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
    *,
    mode: int = 0o600,
) -> None:
    """Archive *source* (a file or directory) at *archive_path*.

    Mode bits of the archived entries are preserved; the archive itself is
    restricted to *mode*. A partial archive is removed on failure.
    """
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    env = os.environ.copy()
    cmd: list[str] = [tar_bin, "--preserve-permissions"]

    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    elif algorithm == "zstd":
        cmd.extend(["--zstd", "-cf", str(archive_path)])
        if compression_level is not None:
            env["ZSTD_CLEVEL"] = str(compression_level)
    else:
        cmd.extend(["-cf", str(archive_path)])

    cmd.extend(["-C", str(source.parent), source.name])

    try:
        result = subprocess.run(  # noqa: S603 - controlled command execution
            cmd,
            capture_output=True,
            text=True,
            env=env,
            check=False,
        )
    except OSError as exc:
        archive_path.unlink(missing_ok=True)
        raise ArchiveError(f"Unable to run tar: {exc}") from exc
    if result.returncode != 0:
        archive_path.unlink(missing_ok=True)
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    try:
        os.chmod(archive_path, mode)
    except OSError as exc:
        LOGGER.warning("Unable to set mode %04o on %s: %s", mode, archive_path, exc)


def extract_archive(archive_path: Path, destination_dir: Path) -> None:
    """Extract *archive_path* into *destination_dir*, keeping mode bits."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to extract archives.")

    cmd: list[str] = [tar_bin, "--preserve-permissions"]
    algorithm = algorithm_for_archive(archive_path)
    if algorithm == "zstd":
        cmd.extend(["--zstd", "-xf", str(archive_path)])
    elif algorithm == "gzip":
        cmd.extend(["-xzf", str(archive_path)])
    else:
        cmd.extend(["-xf", str(archive_path)])
    cmd.extend(["-C", str(destination_dir)])

    try:
        result = subprocess.run(  # noqa: S603 - controlled command execution
            cmd,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ArchiveError(f"Unable to run tar: {exc}") from exc
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar extraction failed"
        raise ArchiveError(message.strip())


__all__ = [
    "ArchiveError",
    "algorithm_for_archive",
    "compression_extension",
    "create_archive",
    "detect_zstd_support",
    "extract_archive",
    "resolve_algorithm",
]
