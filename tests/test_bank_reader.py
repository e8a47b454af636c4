from __future__ import annotations

import io
import os

import construct
import pytest

from rvth_tool.adapters.enum_adapter import EnumAdapter
from rvth_tool.bank_reader import BankReader
from rvth_tool.nhcd import BankType


@pytest.fixture()
def device() -> io.BytesIO:
    return io.BytesIO(bytes(range(256)) * 4)


def test_window(device):
    reader = BankReader(device, 0x100, 0x80)

    assert reader.read(4) == b"\x00\x01\x02\x03"
    assert reader.tell() == 4
    assert reader.read_at(0x7E, 0x10) == b"\x7e\x7f"
    assert reader.read() == b""


def test_seek(device):
    reader = BankReader(device, 0x100, 0x80)

    assert reader.seek(-2, os.SEEK_END) == 0x7E
    assert reader.seek(1, os.SEEK_CUR) == 0x7F
    with pytest.raises(ValueError, match="negative seek position"):
        reader.seek(-1)


def test_read_only(device):
    reader = BankReader(device, 0, 0x10)

    assert reader.readable()
    assert reader.seekable()
    assert not reader.writable()


def test_enum_adapter():
    strict = EnumAdapter(BankType)
    lenient = EnumAdapter(BankType, allow_unknown=True)

    assert strict.parse(b"GC1L") == BankType.GCN
    assert strict.build(BankType.WII_DL) == b"NN2L"
    assert lenient.parse(b"ABCD") == 0x41424344
    with pytest.raises(construct.MappingError):
        strict.parse(b"ABCD")
