"""Single-entry extraction from opencode release archives."""

from __future__ import annotations

import os
import shutil
import tarfile
import zipfile
from pathlib import Path, PurePosixPath


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be read or lacks the expected binary."""


def _matches(name: str, binary_name: str) -> bool:
    if name.startswith("/") or "\\" in name:
        return False
    parts = [part for part in PurePosixPath(name).parts if part != "."]
    return parts == [binary_name]


def _copy_stream(source, staging: Path) -> None:
    with staging.open("wb") as target:
        shutil.copyfileobj(source, target)


def extract_binary(archive: Path, extension: str, binary_name: str, destination: Path) -> Path:
    """Extract ``binary_name`` from ``archive`` into ``destination``.

    Only a regular file whose normalized member name is exactly the binary
    name is written; every other member is ignored. The file lands under a
    staging name first and is renamed into place once fully written.
    """

    destination.mkdir(parents=True, exist_ok=True)
    staging = destination / f".{binary_name}.partial"
    final = destination / binary_name
    found = False

    try:
        if extension == "tar.gz":
            try:
                with tarfile.open(archive, "r:gz") as bundle:
                    for member in bundle.getmembers():
                        if not member.isfile() or not _matches(member.name, binary_name):
                            continue
                        source = bundle.extractfile(member)
                        if source is None:
                            continue
                        with source:
                            _copy_stream(source, staging)
                        found = True
                        break
            except (tarfile.TarError, EOFError, OSError) as exc:
                raise ArchiveError(f"Failed to open archive {archive.name}: {exc}") from exc
        elif extension == "zip":
            try:
                with zipfile.ZipFile(archive) as bundle:
                    for info in bundle.infolist():
                        if info.is_dir() or not _matches(info.filename, binary_name):
                            continue
                        with bundle.open(info) as source:
                            _copy_stream(source, staging)
                        found = True
                        break
            except (zipfile.BadZipFile, OSError) as exc:
                raise ArchiveError(f"Failed to open archive {archive.name}: {exc}") from exc
        else:
            raise ArchiveError(f"Unsupported archive extension: {extension}")

        if not found:
            raise ArchiveError(f"{binary_name} not found in archive {archive.name}")

        os.replace(staging, final)
    finally:
        staging.unlink(missing_ok=True)

    return final


__all__ = ["ArchiveError", "extract_binary"]
