"""
GameCube/Wii disc header, boot block (boot.bin), boot info (bi2.bin) and DOL header.

Every field is big-endian. Strings are fixed-width byte slices and are never NUL-terminated.
"""

from __future__ import annotations

import enum
import typing

import construct

from rvth_tool.adapters.enum_adapter import EnumAdapter
from rvth_tool.exceptions import FormatError, UnrecognizedDisc

WII_MAGIC = 0x5D1C9EA3
GCN_MAGIC = 0xC2339F3D

DISC_HEADER_SIZE = 0x68
BOOT_BLOCK_ADDRESS = 0x420
BOOT_INFO_ADDRESS = 0x440
# Bytes needed from the start of a disc (or partition) to read the header, boot block and boot info.
BOOT_CHAIN_SIZE = BOOT_INFO_ADDRESS + 48


class DiscKind(enum.Enum):
    GAMECUBE = "gamecube"
    WII = "wii"


class Region(enum.IntEnum):
    JPN = 0
    USA = 1
    PAL = 2
    ALL = 3
    # Wii-only, but accepted on GameCube too.
    KOR = 4
    CHN = 5
    TWN = 6


class ShiftedInteger(construct.Adapter):
    """
    An int, shifted by 2 after parsing. Used in Wii addresses and offsets.
    """

    def _decode(self, obj, context, path):
        return obj << 2

    def _encode(self, obj, context, path):
        return obj >> 2


DiscHeader = construct.Struct(
    id4=construct.Bytes(4),
    company=construct.Bytes(2),
    id6=construct.Computed(construct.this.id4 + construct.this.company),
    disc_number=construct.Int8ub,
    revision=construct.Int8ub,
    audio_streaming=construct.Int8ub,
    stream_buffer_size=construct.Int8ub,
    _reserved1=construct.Padding(14),
    magic_wii=construct.Hex(construct.Int32ub),
    magic_gcn=construct.Hex(construct.Int32ub),
    game_title=construct.Bytes(64),
    # Wii only. Zero on retail and RVT-R discs, meaning the disc is encrypted and hashed.
    hash_verify=construct.Int8ub,
    disc_noCrypt=construct.Int8ub,
    _reserved2=construct.Padding(6),
)
assert DiscHeader.sizeof() == DISC_HEADER_SIZE


def _boot_block(offset_type: construct.Construct) -> construct.Construct:
    return construct.Struct(
        boot_file_position=offset_type,
        fst_position=offset_type,
        fst_length=offset_type,
        fst_max_length=offset_type,
        fst_address=construct.Hex(construct.Int32ub),
        user_position=construct.Int32ub,
        user_length=construct.Int32ub,
        _reserved=construct.Padding(4),
    )


GcnBootBlock = _boot_block(construct.Int32ub)
# Positions and lengths are 34-bit on Wii, stored shifted right by 2.
WiiBootBlock = _boot_block(ShiftedInteger(construct.Int32ub))
assert GcnBootBlock.sizeof() == WiiBootBlock.sizeof() == 32

BootInfo = construct.Struct(
    debug_monitor_size=construct.Int32ub,
    simulated_memory_size=construct.Int32ub,
    argument_offset=construct.Int32ub,
    debug_flag=construct.Int32ub,
    track_address=construct.Int32ub,
    track_size=construct.Int32ub,
    region_code=EnumAdapter(Region, allow_unknown=True),
    _reserved1=construct.Padding(12),
    dol_limit=construct.Int32ub,  # 0 means unlimited
    _reserved2=construct.Padding(4),
)
assert BootInfo.sizeof() == 48

DolHeader = construct.Struct(
    text_offset=construct.Int32ub[7],
    data_offset=construct.Int32ub[11],
    text_base_address=construct.Int32ub[7],
    data_base_address=construct.Int32ub[11],
    text_size=construct.Int32ub[7],
    data_size=construct.Int32ub[11],
    bss_start=construct.Int32ub,
    bss_size=construct.Int32ub,
    entrypoint=construct.Int32ub,
    _padding=construct.Padding(28),
)
assert DolHeader.sizeof() == 256


class DolSection(typing.NamedTuple):
    kind: str
    index: int
    offset: int
    address: int
    size: int

    @property
    def end_address(self) -> int:
        return self.address + self.size

    def __repr__(self):
        return f"{self.kind}{self.index} @ 0x{self.address:08X} [0x{self.size:X}] (file offset 0x{self.offset:X})"


def _parse(struct: construct.Construct, data: bytes, what: str, **context) -> construct.Container:
    try:
        return struct.parse(data, **context)
    except construct.ConstructError as e:
        raise FormatError(f"Unable to parse {what}: {e}") from e


def _require(data: bytes, size: int, what: str) -> None:
    if len(data) < size:
        raise FormatError(f"{what} is truncated: need 0x{size:X} bytes, got 0x{len(data):X}")


def parse_disc_header(data: bytes) -> construct.Container:
    _require(data, DISC_HEADER_SIZE, "Disc header")
    return _parse(DiscHeader, data[:DISC_HEADER_SIZE], "disc header")


def disc_kind(header: construct.Container) -> DiscKind:
    """
    Wii magic wins over GameCube magic, since Wii discs may carry both.
    """
    if header.magic_wii == WII_MAGIC:
        return DiscKind.WII
    if header.magic_gcn == GCN_MAGIC:
        return DiscKind.GAMECUBE
    raise UnrecognizedDisc(header.magic_wii, header.magic_gcn)


def parse_boot_block(data: bytes, is_wii: bool) -> construct.Container:
    """
    Parses the boot block. `data` starts at the disc (or Wii partition data) start.
    """
    _require(data, BOOT_BLOCK_ADDRESS + 32, "Boot block")
    struct = WiiBootBlock if is_wii else GcnBootBlock
    return _parse(struct, data[BOOT_BLOCK_ADDRESS : BOOT_BLOCK_ADDRESS + 32], "boot block")


def parse_boot_info(data: bytes) -> construct.Container:
    _require(data, BOOT_CHAIN_SIZE, "Boot info")
    return _parse(BootInfo, data[BOOT_INFO_ADDRESS:BOOT_CHAIN_SIZE], "boot info")


def dol_sections(header: construct.Container) -> typing.Iterator[DolSection]:
    """
    Yields the active sections (non-zero size), text sections first.
    """
    for kind, count in (("text", 7), ("data", 11)):
        offsets = header[f"{kind}_offset"]
        addresses = header[f"{kind}_base_address"]
        sizes = header[f"{kind}_size"]
        for i in range(count):
            if sizes[i] != 0:
                yield DolSection(kind, i, offsets[i], addresses[i], sizes[i])


def parse_dol_header(data: bytes, container_size: int | None = None) -> construct.Container:
    """
    Parses a DOL header. When `container_size` is known, every active section must fit inside it.
    """
    _require(data, DolHeader.sizeof(), "DOL header")
    header = _parse(DolHeader, data[: DolHeader.sizeof()], "DOL header")

    if container_size is not None:
        for section in dol_sections(header):
            if section.offset + section.size > container_size:
                raise FormatError(f"DOL section {section!r} ends past the end of its container (0x{container_size:X})")

    return header
