"""
Wii partition hash tree verification.

Clusters are organised in subgroups of 8 and groups of 8 subgroups (64 clusters, 2 MiB).
Each cluster's hash region holds:
- H0: SHA-1 of each 0x400-byte block of its user data
- H1: SHA-1 of the H0 table of each cluster in its subgroup
- H2: SHA-1 of the H1 table of each subgroup in its group
The H3 table (one SHA-1 of the H2 table per group) lives next to the partition header, and
its own SHA-1 (H4) is the content hash signed in the TMD.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import enum
import hashlib
import itertools
import logging
import typing

from rvth_tool.disc.partition_crypto import CLUSTER_SIZE, H0_BLOCK_SIZE, H0_BLOCKS_PER_CLUSTER, decrypt_cluster

if typing.TYPE_CHECKING:
    from collections.abc import Iterable

    from rvth_tool.disc.partition_crypto import DecryptedCluster

logger = logging.getLogger(__name__)

CLUSTERS_PER_SUBGROUP = 8
SUBGROUPS_PER_GROUP = 8
CLUSTERS_PER_GROUP = CLUSTERS_PER_SUBGROUP * SUBGROUPS_PER_GROUP
# Bounds memory use when groups are verified by an executor: 2 MiB of cluster data per pending group.
MAX_PENDING_GROUPS = 16


class HashLevel(enum.IntEnum):
    H0 = 0
    H1 = 1
    H2 = 2
    H3 = 3
    H4 = 4


@dataclasses.dataclass(frozen=True)
class ClusterMismatch:
    cluster: int
    level: HashLevel

    @property
    def offset(self) -> int:
        """Offset of the cluster, relative to the start of the partition data."""
        return self.cluster * CLUSTER_SIZE

    def __str__(self):
        return f"cluster {self.cluster} (0x{self.offset:X}): {self.level.name} mismatch"


@dataclasses.dataclass(frozen=True)
class HashTreeResult:
    cluster_count: int
    mismatches: tuple[ClusterMismatch, ...]
    h4_matches: bool
    stopped_early: bool = False

    @property
    def clean(self) -> bool:
        return not self.mismatches and self.h4_matches


def sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()


def cluster_position(cluster: int) -> tuple[int, int, int]:
    """
    :return: group, subgroup within the group, slot within the subgroup
    """
    group, in_group = divmod(cluster, CLUSTERS_PER_GROUP)
    subgroup, slot = divmod(in_group, CLUSTERS_PER_SUBGROUP)
    return group, subgroup, slot


def h3_entry(h3_table: bytes, group: int) -> bytes:
    return h3_table[group * 20 : (group + 1) * 20]


def check_cluster(cluster: int, decrypted: DecryptedCluster, h3_table: bytes) -> HashLevel | None:
    """
    Checks one decrypted cluster against its hash region and the H3 table.
    :return: the lowest level that does not match, or None when the cluster is intact.
    """
    table = decrypted.hash_table
    data = decrypted.data

    for i in range(H0_BLOCKS_PER_CLUSTER):
        if sha1(data[i * H0_BLOCK_SIZE : (i + 1) * H0_BLOCK_SIZE]) != table.h0[i]:
            return HashLevel.H0

    group, subgroup, slot = cluster_position(cluster)

    if sha1(b"".join(table.h0)) != table.h1[slot]:
        return HashLevel.H1

    if sha1(b"".join(table.h1)) != table.h2[subgroup]:
        return HashLevel.H2

    if sha1(b"".join(table.h2)) != h3_entry(h3_table, group):
        return HashLevel.H3

    return None


def verify_cluster(title_key: bytes | None, cluster: int, cluster_bytes: bytes, h3_table: bytes) -> HashLevel | None:
    return check_cluster(cluster, decrypt_cluster(title_key, cluster_bytes), h3_table)


def _verify_group(
    title_key: bytes | None,
    first_cluster: int,
    clusters: list[bytes],
    h3_table: bytes,
    stop_on_first_error: bool,
) -> list[ClusterMismatch]:
    result = []
    for cluster, cluster_bytes in enumerate(clusters, first_cluster):
        level = verify_cluster(title_key, cluster, cluster_bytes, h3_table)
        if level is not None:
            logger.debug("Cluster %d: %s mismatch", cluster, level.name)
            result.append(ClusterMismatch(cluster, level))
            if stop_on_first_error:
                break

    logger.debug("Verified group %d: %d mismatches", first_cluster // CLUSTERS_PER_GROUP, len(result))
    return result


def verify_partition(
    title_key: bytes | None,
    clusters: Iterable[bytes],
    h3_table: bytes,
    signed_h4: bytes | None,
    executor: concurrent.futures.Executor | None = None,
    stop_on_first_error: bool = False,
) -> HashTreeResult:
    """
    Verifies every cluster of a partition, in ascending order, and the H3 table against the signed H4.

    :param title_key: Decrypted title key, or None for clusters stored in the clear.
    :param clusters: The raw 0x8000-byte clusters of the partition data, in order.
    :param h3_table: The partition's 0x18000-byte H3 table.
    :param signed_h4: The content hash from the TMD.
    :param executor: When given, groups of 64 clusters are verified concurrently.
    :param stop_on_first_error: Stop after the first mismatching cluster instead of collecting all of them.
    :return:
    """
    mismatches: list[ClusterMismatch] = []
    pending: set[concurrent.futures.Future] = set()
    cluster_count = 0
    stopped_early = False

    def collect(done: Iterable[concurrent.futures.Future]) -> None:
        for future in done:
            mismatches.extend(future.result())

    it = iter(clusters)
    while True:
        group = list(itertools.islice(it, CLUSTERS_PER_GROUP))
        if not group:
            break

        first_cluster = cluster_count
        cluster_count += len(group)

        if executor is None:
            mismatches.extend(_verify_group(title_key, first_cluster, group, h3_table, stop_on_first_error))
        else:
            pending.add(executor.submit(_verify_group, title_key, first_cluster, group, h3_table, stop_on_first_error))
            if len(pending) >= MAX_PENDING_GROUPS:
                done, pending = concurrent.futures.wait(pending, return_when=concurrent.futures.FIRST_COMPLETED)
                collect(done)

        if stop_on_first_error and mismatches:
            stopped_early = True
            break

    collect(concurrent.futures.as_completed(pending))

    mismatches.sort(key=lambda m: m.cluster)
    if stop_on_first_error and mismatches:
        del mismatches[1:]

    h4_matches = signed_h4 is not None and sha1(h3_table) == signed_h4
    if not h4_matches:
        logger.debug("H4 mismatch: SHA-1 of the H3 table is %s", sha1(h3_table).hex())

    return HashTreeResult(
        cluster_count=cluster_count,
        mismatches=tuple(mismatches),
        h4_matches=h4_matches,
        stopped_early=stopped_early,
    )
