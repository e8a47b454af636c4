from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from rvth_tool.disc.hash_tree import (
    CLUSTERS_PER_GROUP,
    ClusterMismatch,
    HashLevel,
    cluster_position,
    verify_partition,
)
from rvth_tool.disc.partition_crypto import CLUSTER_DATA_SIZE, HASH_REGION_SIZE
from tests import test_lib


def _corrupt(data: test_lib.PartitionData, cluster: int, offset: int = HASH_REGION_SIZE + 0x100) -> list[bytes]:
    clusters = list(data.clusters)
    clusters[cluster] = test_lib.flip_byte(clusters[cluster], offset)
    return clusters


@pytest.fixture(scope="module")
def partition_data() -> test_lib.PartitionData:
    return test_lib.encrypt_partition_data(test_lib.partition_user_data())


@pytest.fixture(scope="module")
def two_group_data() -> test_lib.PartitionData:
    return test_lib.encrypt_partition_data(b"\x5a" * ((CLUSTERS_PER_GROUP + 1) * CLUSTER_DATA_SIZE))


def test_cluster_position():
    assert cluster_position(0) == (0, 0, 0)
    assert cluster_position(13) == (0, 1, 5)
    assert cluster_position(70) == (1, 0, 6)


def test_clean_partition(partition_data):
    result = verify_partition(test_lib.TITLE_KEY, partition_data.clusters, partition_data.h3_table, partition_data.h4)

    assert result.clean
    assert result.cluster_count == 3
    assert result.mismatches == ()
    assert result.h4_matches


def test_data_byte_mutation(partition_data):
    clusters = _corrupt(partition_data, 1)

    result = verify_partition(test_lib.TITLE_KEY, clusters, partition_data.h3_table, partition_data.h4)

    assert not result.clean
    assert result.mismatches == (ClusterMismatch(1, HashLevel.H0),)
    assert result.h4_matches
    assert str(result.mismatches[0]) == "cluster 1 (0x8000): H0 mismatch"


def test_stored_h3_mutation(partition_data):
    h3_table = test_lib.flip_byte(partition_data.h3_table, 0)

    result = verify_partition(test_lib.TITLE_KEY, partition_data.clusters, h3_table, partition_data.h4)

    assert [m.level for m in result.mismatches] == [HashLevel.H3] * 3
    assert not result.h4_matches


@pytest.mark.parametrize(
    ("cluster", "offset", "level"),
    [
        # H1 entry of the cluster's own slot
        (0, 0x280, HashLevel.H1),
        # H2 entry of the cluster's subgroup
        (2, 0x340, HashLevel.H2),
    ],
)
def test_hash_region_mutation(cluster, offset, level):
    data = test_lib.encrypt_partition_data(test_lib.partition_user_data(), title_key=None)
    clusters = _corrupt(data, cluster, offset)

    result = verify_partition(None, clusters, data.h3_table, data.h4)

    assert result.mismatches == (ClusterMismatch(cluster, level),)


def test_missing_signed_h4(partition_data):
    result = verify_partition(test_lib.TITLE_KEY, partition_data.clusters, partition_data.h3_table, None)

    assert result.mismatches == ()
    assert not result.h4_matches
    assert not result.clean


def test_stop_on_first_error(partition_data):
    clusters = _corrupt(partition_data, 1)
    clusters[2] = test_lib.flip_byte(clusters[2], HASH_REGION_SIZE + 0x100)

    result = verify_partition(
        test_lib.TITLE_KEY, clusters, partition_data.h3_table, partition_data.h4, stop_on_first_error=True
    )

    assert result.mismatches == (ClusterMismatch(1, HashLevel.H0),)
    assert result.stopped_early


def test_executor_matches_sequential(two_group_data):
    clusters = _corrupt(two_group_data, CLUSTERS_PER_GROUP)
    clusters[3] = test_lib.flip_byte(clusters[3], HASH_REGION_SIZE + 0x100)
    args = (test_lib.TITLE_KEY, clusters, two_group_data.h3_table, two_group_data.h4)

    sequential = verify_partition(*args)
    with ThreadPoolExecutor(max_workers=2) as executor:
        concurrent = verify_partition(*args, executor=executor)

    assert concurrent == sequential
    assert sequential.cluster_count == CLUSTERS_PER_GROUP + 1
    assert sequential.mismatches == (
        ClusterMismatch(3, HashLevel.H0),
        ClusterMismatch(CLUSTERS_PER_GROUP, HashLevel.H0),
    )
