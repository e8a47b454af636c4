from __future__ import annotations

import dataclasses
import enum
import logging
import typing

import construct

from rvth_tool.adapters.enum_adapter import EnumAdapter
from rvth_tool.disc.gcn import ShiftedInteger
from rvth_tool.disc.partition_crypto import CLUSTER_SIZE
from rvth_tool.exceptions import FormatError

logger = logging.getLogger(__name__)

VOLUME_GROUP_TABLE_ADDRESS = 0x40000
VOLUME_GROUP_COUNT = 4
# Real discs have a handful of partitions; anything above this is a corrupt table.
MAX_PARTITIONS_PER_GROUP = 64
H3_TABLE_SIZE = 0x18000

RETAIL_TICKET_ISSUER = b"Root-CA00000001-XS00000003"
DEBUG_TICKET_ISSUER = b"Root-CA00000002-XS00000006"


class PartitionKind(enum.IntEnum):
    DATA = 0
    UPDATE = 1
    CHANNEL = 2


class SigType(enum.IntEnum):
    RSA_4096 = 0x00010000
    RSA_2048 = 0x00010001
    ELLIPTICAL_CURVE = 0x00010002


class CryptoType(enum.Enum):
    NONE = "unencrypted"
    RETAIL = "retail"
    DEBUG = "debug"


VolumeGroupTable = construct.Struct(
    "groups"
    / construct.Struct(
        total_partitions=construct.Int32ub,
        info_offset=ShiftedInteger(construct.Int32ub),
    )[VOLUME_GROUP_COUNT],
)
PartInfo = construct.Struct(
    data_offset=ShiftedInteger(construct.Int32ub),
    kind=EnumAdapter(PartitionKind, allow_unknown=True),
)

Ticket = construct.Struct(
    "sig_type" / construct.Const(SigType.RSA_2048, EnumAdapter(SigType)),
    "sig" / construct.Bytes(256),
    construct.Padding(60),
    "sig_issuer" / construct.Bytes(64),
    "ecdh" / construct.Bytes(60),
    construct.Padding(3),
    "enc_key" / construct.Bytes(16),
    construct.Padding(1),
    "ticket_id" / construct.Bytes(8),
    "console_id" / construct.Bytes(4),
    "title_id" / construct.Bytes(8),
    construct.Padding(2),
    "ticket_version" / construct.Int16ub,
    "permitted_titles_mask" / construct.Int32ub,
    "permit_mask" / construct.Int32ub,
    "title_export_allowed" / construct.Flag,
    "common_key_idx" / construct.Int8ub,
    construct.Padding(48),
    "content_access_permissions" / construct.Bytes(64),
    construct.Padding(2),
    "time_limits"
    / construct.Struct(
        enable_time_limit=construct.Int32ub,
        time_limit=construct.Int32ub,
    )[8],
)
assert Ticket.sizeof() == 0x2A4

PartitionHeader = construct.Struct(
    ticket=Ticket,
    tmd_size=construct.Int32ub,
    tmd_offset=ShiftedInteger(construct.Int32ub),
    cert_chain_size=construct.Int32ub,
    cert_chain_offset=ShiftedInteger(construct.Int32ub),
    h3_offset=ShiftedInteger(construct.Int32ub),
    data_offset=ShiftedInteger(construct.Int32ub),
    data_size=ShiftedInteger(construct.Int32ub),
)
assert PartitionHeader.sizeof() == 0x2C0

TMD = construct.Struct(
    header=construct.Aligned(
        64,
        construct.Struct(
            sig_type=EnumAdapter(SigType),
            sig=construct.Bytes(256),
        ),
    ),
    sig_issuer=construct.Bytes(64),
    versions=construct.Aligned(
        4,
        construct.Struct(
            main=construct.Byte,
            ca_crl=construct.Byte,
            signer_crl=construct.Byte,
        ),
    ),
    ios_id_major=construct.Int32ub,
    ios_id_minor=construct.Int32ub,
    title_id_major=construct.Int32ub,
    title_id_minor=construct.Bytes(4),
    title_type=construct.Int32ub,
    group_id=construct.Int16ub,
    padding3=construct.Bytes(62),
    access_flags=construct.Int32ub,
    title_version=construct.Int16ub,
    _num_contents=construct.Rebuild(construct.Int16ub, construct.len_(construct.this.contents)),
    boot_idx=construct.Int16ub,
    padding4=construct.Int16ub,
    contents=construct.Array(
        construct.this._num_contents,
        construct.Struct(
            id=construct.Int32ub,
            index=construct.Int16ub,
            type=construct.Int16ub,
            size=construct.Int64ub,
            hash=construct.Bytes(20),
        ),
    ),
)


def partition_kind_name(kind: PartitionKind | int) -> str:
    if isinstance(kind, PartitionKind):
        return kind.name
    return f"0x{kind:08X}"


@dataclasses.dataclass(frozen=True)
class PartitionEntry:
    group: int
    index: int
    offset: int  # disc-relative
    kind: PartitionKind | int
    encrypted_title_key: bytes
    common_key_index: int
    title_id: bytes
    issuer: bytes
    # The following offsets are relative to the partition start.
    tmd_offset: int
    tmd_size: int
    h3_offset: int
    data_offset: int
    data_size: int
    # SHA-1 of the H3 table, as bound by the signed TMD. None when the TMD lists no contents.
    signed_h4: bytes | None

    @property
    def kind_name(self) -> str:
        return partition_kind_name(self.kind)

    @property
    def cluster_count(self) -> int:
        return self.data_size // CLUSTER_SIZE

    def __str__(self):
        return f"partition {self.group}.{self.index} ({self.kind_name}) @ 0x{self.offset:X}"


def _parse_stream(struct: construct.Construct, stream: typing.BinaryIO, what: str) -> construct.Container:
    try:
        return struct.parse_stream(stream)
    except construct.ConstructError as e:
        raise FormatError(f"Unable to parse {what}: {e}") from e


def read_partition_table(source: typing.BinaryIO) -> list[tuple[int, int, construct.Container]]:
    """
    Reads the volume group table of a Wii disc.

    :return: (group, index, part_info) for every partition, in table order.
    """
    source.seek(VOLUME_GROUP_TABLE_ADDRESS)
    table = _parse_stream(VolumeGroupTable, source, "volume group table")

    result = []
    for group_index, group in enumerate(table.groups):
        if group.total_partitions == 0:
            continue
        if group.total_partitions > MAX_PARTITIONS_PER_GROUP:
            raise FormatError(f"Volume group {group_index} claims {group.total_partitions} partitions")

        source.seek(group.info_offset)
        for i in range(group.total_partitions):
            part_info = _parse_stream(PartInfo, source, f"partition table entry {group_index}.{i}")
            result.append((group_index, i, part_info))

    if not result:
        raise FormatError("Volume group table lists no partitions")
    return result


def read_partition(source: typing.BinaryIO, group: int, index: int, part_info: construct.Container) -> PartitionEntry:
    """
    Reads the header and TMD of one partition.
    """
    where = f"partition {group}.{index}"
    source.seek(part_info.data_offset)
    header = _parse_stream(PartitionHeader, source, f"{where} header")

    source.seek(part_info.data_offset + header.tmd_offset)
    tmd = _parse_stream(TMD, source, f"{where} TMD")

    signed_h4 = tmd.contents[0].hash if tmd.contents else None
    if signed_h4 is None:
        logger.warning("%s: TMD has no contents, H4 cannot be checked", where)

    return PartitionEntry(
        group=group,
        index=index,
        offset=part_info.data_offset,
        kind=part_info.kind,
        encrypted_title_key=header.ticket.enc_key,
        common_key_index=header.ticket.common_key_idx,
        title_id=header.ticket.title_id,
        issuer=header.ticket.sig_issuer.rstrip(b"\x00"),
        tmd_offset=header.tmd_offset,
        tmd_size=header.tmd_size,
        h3_offset=header.h3_offset,
        data_offset=header.data_offset,
        data_size=header.data_size,
        signed_h4=signed_h4,
    )


def read_h3_table(source: typing.BinaryIO, partition: PartitionEntry) -> bytes:
    source.seek(partition.offset + partition.h3_offset)
    h3_table = source.read(H3_TABLE_SIZE)
    if len(h3_table) != H3_TABLE_SIZE:
        raise FormatError(f"{partition}: H3 table is truncated (0x{len(h3_table):X} bytes)")
    return h3_table


def crypto_type(disc_header: construct.Container, partitions: typing.Sequence[PartitionEntry]) -> CryptoType:
    """
    Decides how a Wii disc is encrypted, from the disc header and the ticket issuers.
    """
    if disc_header.disc_noCrypt:
        return CryptoType.NONE

    for partition in partitions:
        if partition.issuer == DEBUG_TICKET_ISSUER:
            return CryptoType.DEBUG
        if partition.issuer == RETAIL_TICKET_ISSUER:
            return CryptoType.RETAIL

    logger.debug("No known ticket issuer found, assuming retail encryption")
    return CryptoType.RETAIL
