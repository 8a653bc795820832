"""Positional reads from a file on disk."""

import logging
import os

from sofixer.elf import ElfError

log = logging.getLogger(__name__)


class FileReader:
    """A read-only binary file with seekable, length-checked reads."""

    def __init__(self, path):
        self.path = os.fspath(path)
        self.file_size = 0
        self._file = None

    @property
    def is_open(self):
        return self._file is not None

    def open(self):
        """Open the file and record its size; raises OSError if it cannot be opened."""
        if self._file is not None:
            raise ElfError(f'"{self.path}" is already open')
        self._file = open(self.path, "rb")
        self._file.seek(0, os.SEEK_END)
        self.file_size = self._file.tell()
        self._file.seek(0)
        return self

    def close(self):
        """Close the file; return whether it had been open."""
        if self._file is None:
            return False
        self._file.close()
        self._file = None
        return True

    def read(self, length, offset=None):
        """Read up to ``length`` bytes, from ``offset`` when it is given and not negative."""
        if self._file is None:
            raise ElfError(f'"{self.path}" is not open')
        if length < 0:
            raise ElfError(f"invalid read length {length}")
        if offset is not None and offset >= 0:
            self._file.seek(offset)
        data = self._file.read(length)
        if len(data) != length:
            log.error(
                '"%s" has no enough data at %x:%x, not a valid file or you need to dump more data',
                self.path, -1 if offset is None else offset, length,
            )
        return data

    def __enter__(self):
        if self._file is None:
            self.open()
        return self

    def __exit__(self, *args):
        self.close()