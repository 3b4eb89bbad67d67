"""Writing labels out as key=value lines, to a stream or atomically to a file."""

from __future__ import annotations

import io
import logging
import os
import shutil
import sys
import tempfile
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_PERMISSIONS = 0o644
_TMP_DIR_NAME = "gfd-tmp"


class WriterOutputer:
    """Writes labels to a text stream, one key=value per line."""

    def __init__(self, writer) -> None:
        self.writer = writer

    def output(self, labels) -> None:
        for key, value in labels.items():
            self.writer.write(f"{key}={value}\n")


class FileOutputer:
    """Writes labels atomically to a file."""

    def __init__(self, path) -> None:
        self.path = os.fspath(path)

    def output(self, labels) -> None:
        log.info("Writing labels to output file %s", self.path)
        buffer = io.StringIO()
        WriterOutputer(buffer).output(labels)
        try:
            write_file_atomically(self.path, buffer.getvalue().encode(), DEFAULT_PERMISSIONS)
        except OSError as err:
            raise OSError(f"error atomically writing file '{self.path}': {err}") from err


def to_file(path):
    """Return an outputer for the path; an empty path means standard output."""
    if not path:
        return WriterOutputer(sys.stdout)
    return FileOutputer(path)


def write_file_atomically(path, contents: bytes, perm: int) -> None:
    """Write contents through a temporary file, then rename it into place.

    The temporary file lives in a gfd-tmp directory beside the target; that
    directory is removed if the write fails.
    """
    path = os.fspath(path)
    tmp_dir = Path(path).resolve().parent / _TMP_DIR_NAME

    try:
        tmp_dir.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        raise OSError(f"failed to create temporary directory: {err}") from err

    tmp_name = None
    try:
        try:
            fd, tmp_name = tempfile.mkstemp(dir=tmp_dir, prefix="gfd-")
        except OSError as err:
            raise OSError(f"fail to create temporary output file: {err}") from err

        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(contents)
        except OSError as err:
            raise OSError(f"error writing temporary file '{tmp_name}': {err}") from err

        try:
            os.replace(tmp_name, path)
        except OSError as err:
            raise OSError(f"error moving temporary file to '{path}': {err}") from err

        try:
            os.chmod(path, perm)
        except OSError as err:
            raise OSError(f"error setting permissions on '{path}': {err}") from err
    except OSError:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.remove(tmp_name)
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise