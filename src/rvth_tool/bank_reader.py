from __future__ import annotations

import io
import os
import typing


class BankReader(io.IOBase):
    """
    Read-only window over `size` bytes of a device image, starting at `base_offset`.
    Offsets given to `seek` and returned by `tell` are relative to the window.
    """

    _file: typing.BinaryIO

    def __init__(self, file: typing.BinaryIO, base_offset: int, size: int):
        self._file = file
        self._base_offset = base_offset
        self._size = size
        self._position = 0

    @property
    def size(self) -> int:
        return self._size

    def read(self, size: int = -1) -> bytes:
        remaining = max(0, self._size - self._position)
        if size < 0 or size > remaining:
            size = remaining

        self._file.seek(self._base_offset + self._position)
        data = self._file.read(size)
        self._position += len(data)
        return data

    def read_at(self, offset: int, size: int) -> bytes:
        self.seek(offset)
        return self.read(size)

    def seek(self, offset: int, whence: int = os.SEEK_SET, /) -> int:
        if whence == os.SEEK_CUR:
            offset += self._position
        elif whence == os.SEEK_END:
            offset += self._size

        if offset < 0:
            raise ValueError(f"negative seek position {offset}")
        self._position = offset
        return self._position

    def tell(self) -> int:
        return self._position

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def writable(self) -> bool:
        return False
