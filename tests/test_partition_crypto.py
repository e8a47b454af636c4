from __future__ import annotations

import io

import pytest

from rvth_tool.disc import partition_crypto
from rvth_tool.disc.partition_crypto import (
    CLUSTER_DATA_SIZE,
    CLUSTER_SIZE,
    DATA_IV_OFFSET,
    PartitionReader,
    decrypt_cluster,
    decrypt_hash_region,
)
from rvth_tool.exceptions import FormatError
from tests import test_lib


@pytest.fixture(scope="module")
def user_data() -> bytes:
    return bytes(i % 251 for i in range(3 * CLUSTER_DATA_SIZE))


@pytest.fixture(scope="module")
def partition_data(user_data) -> test_lib.PartitionData:
    return test_lib.encrypt_partition_data(user_data)


def test_decrypt_cluster(user_data, partition_data):
    for i, cluster in enumerate(partition_data.clusters):
        decrypted = decrypt_cluster(test_lib.TITLE_KEY, cluster)
        assert decrypted.data == user_data[i * CLUSTER_DATA_SIZE : (i + 1) * CLUSTER_DATA_SIZE]
        assert decrypted.hash_table.h0[0] == test_lib.sha1(decrypted.data[:0x400])


def test_data_iv_is_stored_bytes(partition_data):
    cluster = partition_data.clusters[0]

    decrypted_hashes = decrypt_hash_region(test_lib.TITLE_KEY, cluster)

    # The IV is taken before the hash region is decrypted
    assert partition_crypto.data_iv(cluster) == cluster[DATA_IV_OFFSET : DATA_IV_OFFSET + 16]
    assert partition_crypto.data_iv(cluster) != decrypted_hashes[DATA_IV_OFFSET : DATA_IV_OFFSET + 16]


def test_clear_clusters(user_data):
    data = test_lib.encrypt_partition_data(user_data, title_key=None)

    decrypted = decrypt_cluster(None, data.clusters[1])
    assert decrypted.data == user_data[CLUSTER_DATA_SIZE : 2 * CLUSTER_DATA_SIZE]


@pytest.mark.parametrize("size", [0, CLUSTER_SIZE - 1, CLUSTER_SIZE + 1])
def test_bad_cluster_size(size):
    with pytest.raises(FormatError, match="Cluster is"):
        decrypt_cluster(test_lib.TITLE_KEY, b"\x00" * size)


def test_partition_reader(user_data, partition_data):
    source = io.BytesIO(b"\xaa" * 0x100 + b"".join(partition_data.clusters))
    reader = PartitionReader(source, 0x100, len(partition_data.clusters), test_lib.TITLE_KEY)

    assert reader.size == len(user_data)
    # Crosses the boundary between the first two clusters
    boundary = CLUSTER_DATA_SIZE
    assert reader.read_at(boundary - 0x10, 0x20) == user_data[boundary - 0x10 : boundary + 0x10]
    assert reader.read() == user_data[boundary + 0x10 :]
    assert reader.read(0x10) == b""


def test_partition_reader_without_hashes():
    data = bytes(range(256)) * (2 * CLUSTER_SIZE // 256)
    reader = PartitionReader(io.BytesIO(data), 0, 2, None, has_hashes=False)

    assert reader.size == 2 * CLUSTER_SIZE
    assert reader.read_at(CLUSTER_SIZE - 4, 8) == data[CLUSTER_SIZE - 4 : CLUSTER_SIZE + 4]


def test_partition_reader_truncated(partition_data):
    source = io.BytesIO(partition_data.clusters[0])
    reader = PartitionReader(source, 0, 2, test_lib.TITLE_KEY)

    with pytest.raises(FormatError, match="Cluster 1 is truncated"):
        reader.read_at(CLUSTER_DATA_SIZE, 0x10)
