"""
Wii partition cluster decryption.

A cluster is 0x8000 bytes: a 0x400-byte hash region followed by 0x7C00 bytes of user data.
Decryption has two phases. The hash region is decrypted first (AES-128-CBC, zero IV), then the
data region is decrypted using as IV the 16 stored bytes at 0x3D0, which are the tail of the
encrypted H2 table.
"""

from __future__ import annotations

import dataclasses
import logging
import typing

import construct
from Crypto.Cipher import AES

from rvth_tool.bank_reader import BankReader
from rvth_tool.exceptions import FormatError

logger = logging.getLogger(__name__)

CLUSTER_SIZE = 0x8000
HASH_REGION_SIZE = 0x400
CLUSTER_DATA_SIZE = CLUSTER_SIZE - HASH_REGION_SIZE
H0_BLOCK_SIZE = 0x400
H0_BLOCKS_PER_CLUSTER = CLUSTER_DATA_SIZE // H0_BLOCK_SIZE
DATA_IV_OFFSET = 0x3D0

Sha1Hash = construct.Bytes(20)

HashTable = construct.Struct(
    h0=Sha1Hash[H0_BLOCKS_PER_CLUSTER],
    _padding0=construct.Padding(20),
    h1=Sha1Hash[8],
    _padding1=construct.Padding(32),
    h2=Sha1Hash[8],
    _padding2=construct.Padding(32),
)
assert HashTable.sizeof() == HASH_REGION_SIZE


@dataclasses.dataclass(frozen=True)
class DecryptedCluster:
    hash_table: construct.Container
    raw_hash_table: bytes
    data: bytes


def _check_cluster(cluster: bytes) -> None:
    if len(cluster) != CLUSTER_SIZE:
        raise FormatError(f"Cluster is 0x{len(cluster):X} bytes, expected 0x{CLUSTER_SIZE:X}")


def decrypt_hash_region(title_key: bytes | None, cluster: bytes) -> bytes:
    """
    Phase one: decrypts the hash region. A `title_key` of None means the cluster is stored in the clear.
    """
    _check_cluster(cluster)
    region = bytes(cluster[:HASH_REGION_SIZE])
    if title_key is None:
        return region
    return AES.new(key=title_key, mode=AES.MODE_CBC, iv=b"\x00" * 16).decrypt(region)


def data_iv(cluster: bytes) -> bytes:
    _check_cluster(cluster)
    return bytes(cluster[DATA_IV_OFFSET : DATA_IV_OFFSET + 16])


def decrypt_data_region(title_key: bytes | None, cluster: bytes, iv: bytes) -> bytes:
    """
    Phase two: decrypts the user data, with the IV taken from the cluster's hash region.
    """
    _check_cluster(cluster)
    region = bytes(cluster[HASH_REGION_SIZE:])
    if title_key is None:
        return region
    return AES.new(key=title_key, mode=AES.MODE_CBC, iv=iv).decrypt(region)


def parse_hash_table(raw_hash_table: bytes) -> construct.Container:
    return HashTable.parse(raw_hash_table)


def decrypt_cluster(title_key: bytes | None, cluster: bytes) -> DecryptedCluster:
    raw_hash_table = decrypt_hash_region(title_key, cluster)
    data = decrypt_data_region(title_key, cluster, data_iv(cluster))
    return DecryptedCluster(
        hash_table=parse_hash_table(raw_hash_table),
        raw_hash_table=raw_hash_table,
        data=data,
    )


class PartitionReader(BankReader):
    """
    Reads the user data of a Wii partition, decrypting clusters as needed.

    Offsets are in user-data space: 0x7C00 bytes per cluster when clusters carry a hash region,
    0x8000 otherwise (unhashed, unencrypted discs).
    """

    def __init__(
        self,
        file: typing.BinaryIO,
        base_offset: int,
        cluster_count: int,
        title_key: bytes | None,
        has_hashes: bool = True,
    ):
        super().__init__(file, base_offset, cluster_count * CLUSTER_SIZE)
        self._title_key = title_key
        self._has_hashes = has_hashes
        self._cluster_data_size = CLUSTER_DATA_SIZE if has_hashes else CLUSTER_SIZE
        self._user_size = cluster_count * self._cluster_data_size
        self._cur_cluster = -1
        self._dec_buf = b""

    @property
    def size(self) -> int:
        return self._user_size

    def _load_cluster(self, cluster: int) -> None:
        self._file.seek(self._base_offset + cluster * CLUSTER_SIZE)
        raw = self._file.read(CLUSTER_SIZE)
        if len(raw) != CLUSTER_SIZE:
            raise FormatError(f"Cluster {cluster} is truncated (0x{len(raw):X} bytes)")

        if not self._has_hashes:
            self._dec_buf = raw
        else:
            self._dec_buf = decrypt_data_region(self._title_key, raw, data_iv(raw))
        self._cur_cluster = cluster

    def read(self, size: int = -1) -> bytes:
        remaining = max(0, self._user_size - self._position)
        if size < 0 or size > remaining:
            size = remaining

        cluster, cluster_offset = divmod(self._position, self._cluster_data_size)
        ret = bytearray()

        while len(ret) < size:
            if cluster != self._cur_cluster:
                self._load_cluster(cluster)

            chunk = min(size - len(ret), self._cluster_data_size - cluster_offset)
            ret += self._dec_buf[cluster_offset : cluster_offset + chunk]
            cluster_offset = 0
            cluster += 1

        self._position += size
        return bytes(ret)

    def seek(self, offset: int, whence: int = 0, /) -> int:
        if whence == 2:
            offset += self._user_size
            whence = 0
        return super().seek(offset, whence)
