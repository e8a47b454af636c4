"""
RVT-H Reader bank table ("NHCD").

The table sits at LBA 0x300: a 512-byte header followed by one 512-byte entry per bank.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import os
import typing

import construct

from rvth_tool.adapters.enum_adapter import EnumAdapter
from rvth_tool.bank_reader import BankReader
from rvth_tool.disc import gcn, wii
from rvth_tool.exceptions import FormatError, InvalidDirectory, NoSuchBank

if typing.TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

LBA_SIZE = 512
NHCD_MAGIC = b"NHCD"
BANK_TABLE_ADDRESS_LBA = 0x300
BANK_TABLE_ADDRESS = BANK_TABLE_ADDRESS_LBA * LBA_SIZE
MAX_BANKS = 8
BANK_TABLE_SIZE = LBA_SIZE * (1 + MAX_BANKS)
FIRST_BANK_LBA = 0x600
BANK_SIZE_LBA = 0x8C4A00


class BankType(enum.IntEnum):
    EMPTY = 0
    GCN = 0x4743314C  # "GC1L"
    WII_SL = 0x4E4E314C  # "NN1L"
    WII_DL = 0x4E4E324C  # "NN2L"


class DiscType(enum.Enum):
    GAMECUBE = "GameCube"
    WII_RETAIL = "Wii (retail encryption)"
    WII_DEBUG = "Wii (debug encryption)"
    WII_UNENCRYPTED = "Wii (unencrypted)"
    # Empty or invalid bank
    EMPTY = "empty"

    @property
    def is_wii(self) -> bool:
        return self in (DiscType.WII_RETAIL, DiscType.WII_DEBUG, DiscType.WII_UNENCRYPTED)


BankTableHeader = construct.Struct(
    magic=construct.Bytes(4),
    x004=construct.Int32ub,
    bank_count=construct.Int32ub,
    x00C=construct.Int32ub,
    x010=construct.Int32ub,
    _unknown=construct.Padding(492),
)
assert BankTableHeader.sizeof() == LBA_SIZE

BankTableEntry = construct.Struct(
    type=EnumAdapter(BankType, allow_unknown=True),
    all_zero=construct.Bytes(14),
    timestamp=construct.Bytes(14),  # "YYYYMMDDHHMMSS"
    lba_start=construct.Int32ub,
    lba_len=construct.Int32ub,
    _unknown=construct.Padding(472),
)
assert BankTableEntry.sizeof() == LBA_SIZE


@dataclasses.dataclass(frozen=True)
class BankEntry:
    index: int
    type: BankType | int
    lba_start: int
    lba_len: int
    timestamp: str | None
    disc_type: DiscType
    usable: bool
    problem: str | None = None

    @property
    def offset(self) -> int:
        return self.lba_start * LBA_SIZE

    @property
    def size(self) -> int:
        return self.lba_len * LBA_SIZE

    @property
    def type_name(self) -> str:
        if isinstance(self.type, BankType):
            return self.type.name
        return f"0x{self.type:08X}"

    def __str__(self):
        return f"bank {self.index + 1} ({self.disc_type.value})"


def default_bank_lba(index: int) -> int:
    return FIRST_BANK_LBA + index * BANK_SIZE_LBA


def _decode_timestamp(raw: bytes) -> str | None:
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError:
        return None
    if not text.isdigit():
        return None
    return f"{text[0:4]}-{text[4:6]}-{text[6:8]} {text[8:10]}:{text[10:12]}:{text[12:14]}"


def classify_wii_bank(reader: typing.BinaryIO) -> DiscType:
    """
    Reads the disc header and partition tickets of a Wii bank to find how it is encrypted.
    """
    reader.seek(0)
    header = gcn.parse_disc_header(reader.read(gcn.DISC_HEADER_SIZE))
    if header.disc_noCrypt:
        return DiscType.WII_UNENCRYPTED

    partitions = [wii.read_partition(reader, *info) for info in wii.read_partition_table(reader)]
    crypto = wii.crypto_type(header, partitions)
    if crypto == wii.CryptoType.DEBUG:
        return DiscType.WII_DEBUG
    return DiscType.WII_RETAIL


class BankTable:
    _entries: tuple[BankEntry, ...]

    def __init__(self, entries: typing.Iterable[BankEntry], device_size: int):
        self._entries = tuple(entries)
        self.device_size = device_size

    @classmethod
    def parse(cls, data: bytes, device_size: int, device: typing.BinaryIO | None = None) -> BankTable:
        """
        Parses the bank table. A bad header raises InvalidDirectory; a bad entry only marks that bank unusable.

        :param data: The bank table bytes (header and entries).
        :param device_size: Size of the whole device, in bytes.
        :param device: When given, Wii banks are read to tell retail, debug and unencrypted images apart.
                       Otherwise they are presumed to be debug-encrypted, which is what RVT-H banks normally hold.
        :return:
        """
        if len(data) < LBA_SIZE:
            raise InvalidDirectory(f"header is truncated (0x{len(data):X} bytes)")

        header = BankTableHeader.parse(data[:LBA_SIZE])
        if header.magic != NHCD_MAGIC:
            raise InvalidDirectory(f"bad magic {header.magic!r}")
        if not 1 <= header.bank_count <= MAX_BANKS:
            raise InvalidDirectory(f"bank count {header.bank_count} is not between 1 and {MAX_BANKS}")

        needed = LBA_SIZE * (1 + header.bank_count)
        if len(data) < needed:
            raise InvalidDirectory(f"{header.bank_count} banks need 0x{needed:X} bytes, got 0x{len(data):X}")

        device_lbas = device_size // LBA_SIZE
        entries: list[BankEntry] = []
        for index in range(header.bank_count):
            raw = BankTableEntry.parse(data[LBA_SIZE * (index + 1) : LBA_SIZE * (index + 2)])
            entry = cls._decode_entry(index, raw, device_lbas, entries, device)
            if not entry.usable and entry.type != BankType.EMPTY:
                logger.warning("Bank %d is unusable: %s", index + 1, entry.problem)
            entries.append(entry)

        return cls(entries, device_size)

    @classmethod
    def read(cls, device: typing.BinaryIO) -> BankTable:
        """
        Reads and parses the bank table of a device image stream.
        """
        device_size = device.seek(0, os.SEEK_END)
        device.seek(BANK_TABLE_ADDRESS)
        return cls.parse(device.read(BANK_TABLE_SIZE), device_size, device)

    @classmethod
    def _decode_entry(
        cls,
        index: int,
        raw: construct.Container,
        device_lbas: int,
        previous: list[BankEntry],
        device: typing.BinaryIO | None,
    ) -> BankEntry:
        lba_start = raw.lba_start
        if lba_start == 0 and raw.type != BankType.EMPTY:
            lba_start = default_bank_lba(index)

        def unusable(problem: str) -> BankEntry:
            return BankEntry(
                index=index,
                type=raw.type,
                lba_start=lba_start,
                lba_len=raw.lba_len,
                timestamp=_decode_timestamp(raw.timestamp),
                disc_type=DiscType.EMPTY,
                usable=False,
                problem=problem,
            )

        if raw.type == BankType.EMPTY:
            slot_lba = lba_start or default_bank_lba(index)
            for other in previous:
                if (
                    other.usable
                    and other.type == BankType.WII_DL
                    and other.lba_start < slot_lba < other.lba_start + other.lba_len
                ):
                    return unusable(f"second layer of bank {other.index + 1}")
            return unusable("empty")

        if not isinstance(raw.type, BankType):
            return unusable(f"unknown bank type 0x{raw.type:08X}")

        if raw.all_zero != b"\x00" * len(raw.all_zero):
            return unusable("reserved bytes are not zero")

        if raw.lba_len == 0:
            return unusable("bank length is zero")

        if lba_start + raw.lba_len > device_lbas:
            return unusable(
                f"LBAs 0x{lba_start:X}+0x{raw.lba_len:X} extend past the end of the device (0x{device_lbas:X})"
            )

        for other in previous:
            if not other.usable:
                continue
            if lba_start < other.lba_start + other.lba_len and other.lba_start < lba_start + raw.lba_len:
                return unusable(f"overlaps bank {other.index + 1}")

        if raw.type == BankType.GCN:
            disc_type = DiscType.GAMECUBE
        elif device is None:
            disc_type = DiscType.WII_DEBUG
        else:
            try:
                disc_type = classify_wii_bank(BankReader(device, lba_start * LBA_SIZE, raw.lba_len * LBA_SIZE))
            except FormatError as e:
                logger.warning("Bank %d: unable to read the disc, presuming debug encryption: %s", index + 1, e)
                disc_type = DiscType.WII_DEBUG

        return BankEntry(
            index=index,
            type=raw.type,
            lba_start=lba_start,
            lba_len=raw.lba_len,
            timestamp=_decode_timestamp(raw.timestamp),
            disc_type=disc_type,
            usable=True,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[BankEntry]:
        return iter(self._entries)

    def __getitem__(self, index: int) -> BankEntry:
        return self._entries[index]

    def get(self, index: int) -> BankEntry:
        if not 0 <= index < len(self._entries):
            raise NoSuchBank(index, len(self._entries))
        return self._entries[index]
