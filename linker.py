"""Hard-link helpers used to materialize source files into the drop tree."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Union

logger = logging.getLogger("shoko-importer.linker")

PathLike = Union[str, os.PathLike]


class LinkError(RuntimeError):
    """Raised when a source file cannot be linked into the destination tree."""


def ensure_directory(path: PathLike) -> Path:
    """Create *path* if needed and return its canonical absolute form."""

    directory = Path(path).expanduser()
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise LinkError(f"Cannot create directory at path: {directory}") from exc
    try:
        return directory.resolve(strict=True)
    except OSError as exc:
        raise LinkError(f"Invalid path: {directory}") from exc


def destination_for(src_base_dir: PathLike, src_file: PathLike, dst_base_dir: PathLike) -> Path:
    src_base = Path(src_base_dir)
    src = Path(src_file)
    try:
        relative = src.relative_to(src_base)
    except ValueError as exc:
        raise LinkError(f"Fail to strip path {src_base} from path {src}") from exc
    return Path(dst_base_dir) / relative


def link_file(src_base_dir: PathLike, src_file: PathLike, dst_base_dir: PathLike) -> Path:
    """Hard link *src_file* under *dst_base_dir*, mirroring its path below *src_base_dir*.

    Missing parent directories of the destination are created. Nothing is
    cleaned up when a step fails.
    """

    dst_file = destination_for(src_base_dir, src_file, dst_base_dir)
    dst_parent = dst_file.parent
    if dst_parent == dst_file:
        raise LinkError(f"Invalid parent path for file path: {dst_file}")

    try:
        dst_parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise LinkError(f"Cannot create directory at path: {dst_parent}") from exc

    try:
        os.link(src_file, dst_file)
    except OSError as exc:
        raise LinkError(f"Failed to hardlink from {src_file} to {dst_file}: {exc}") from exc

    logger.debug("Linked %s -> %s", src_file, dst_file)
    return dst_file
