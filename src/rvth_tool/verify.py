"""
Verifies one bank of an RVT-H device image: hash trees of every Wii partition and the boot chain.
"""

from __future__ import annotations

import dataclasses
import enum
import io
import logging
import typing
from concurrent.futures import ThreadPoolExecutor

from rvth_tool.apploader import DEFAULT_LIMITS, AppLoaderError, ApploaderLimits, validate_boot_chain
from rvth_tool.bank_reader import BankReader
from rvth_tool.disc import gcn, wii
from rvth_tool.disc.hash_tree import ClusterMismatch, verify_partition
from rvth_tool.disc.partition_crypto import CLUSTER_SIZE, PartitionReader
from rvth_tool.exceptions import CryptoError, DirectoryError, FormatError, RvthError
from rvth_tool.keys import KeyManager, KeySet
from rvth_tool.nhcd import BankEntry, BankTable, DiscType

if typing.TYPE_CHECKING:
    from collections.abc import Iterator
    from concurrent.futures import Executor

    import construct

logger = logging.getLogger(__name__)

_DISC_TYPE_FOR_CRYPTO = {
    wii.CryptoType.NONE: DiscType.WII_UNENCRYPTED,
    wii.CryptoType.RETAIL: DiscType.WII_RETAIL,
    wii.CryptoType.DEBUG: DiscType.WII_DEBUG,
}


@dataclasses.dataclass(frozen=True)
class VerifyOptions:
    # More than 1 verifies groups of clusters on a thread pool.
    max_workers: int = 1
    # Stop a partition at its first bad cluster instead of collecting all of them.
    stop_on_first_error: bool = False
    # None picks the address ceiling from the disc: debug-encrypted Wii discs, or a GameCube debug flag.
    debug_build: bool | None = None
    limits: ApploaderLimits = DEFAULT_LIMITS
    key_manager: KeyManager = dataclasses.field(default_factory=KeyManager)


class PartitionStatus(enum.Enum):
    CLEAN = "clean"
    HASH_MISMATCH = "hash mismatch"
    CRYPTO_ERROR = "decryption failure"
    FORMAT_ERROR = "structural parse failure"
    UNENCRYPTED = "unencrypted, no hashes to verify"


@dataclasses.dataclass(frozen=True)
class PartitionReport:
    group: int
    index: int
    kind: str
    offset: int
    status: PartitionStatus
    cluster_count: int = 0
    mismatches: tuple[ClusterMismatch, ...] = ()
    h4_matches: bool | None = None
    error: str | None = None
    apploader_error: AppLoaderError | None = None
    boot_chain_error: str | None = None

    @property
    def clean(self) -> bool:
        return self.status == PartitionStatus.CLEAN

    def __str__(self):
        return f"partition {self.group}.{self.index} ({self.kind}) @ 0x{self.offset:X}"


@dataclasses.dataclass(frozen=True)
class VerifyReport:
    bank_index: int
    bank: BankEntry | None = None
    disc_type: DiscType | None = None
    id6: bytes | None = None
    game_title: bytes | None = None
    # Set when the bank could not be verified at all; nothing else is filled in then.
    fatal_error: str | None = None
    # GameCube boot chain. Wii discs report it per partition.
    apploader_error: AppLoaderError | None = None
    boot_chain_error: str | None = None
    partitions: tuple[PartitionReport, ...] = ()

    @property
    def is_clean(self) -> bool:
        if self.fatal_error is not None:
            return False

        apploader_errors = [self.apploader_error] + [p.apploader_error for p in self.partitions]
        if any(e is not None and e != AppLoaderError.APLERR_OK for e in apploader_errors):
            return False

        return all(p.status in (PartitionStatus.CLEAN, PartitionStatus.UNENCRYPTED) for p in self.partitions)


def _iter_clusters(source: BankReader, base_offset: int, cluster_count: int) -> Iterator[bytes]:
    for cluster in range(cluster_count):
        data = source.read_at(base_offset + cluster * CLUSTER_SIZE, CLUSTER_SIZE)
        if len(data) != CLUSTER_SIZE:
            raise FormatError(f"Cluster {cluster} is truncated (0x{len(data):X} bytes)")
        yield data


class VerifyCommand:
    def __init__(self, options: VerifyOptions | None = None):
        if options is None:
            options = VerifyOptions()
        self.options = options

    def verify(self, image: bytes | typing.BinaryIO, bank_index: int) -> VerifyReport:
        """
        Verifies a bank. Never raises for problems with the image: they are all reported.
        :param image: The whole device image, as bytes or a seekable binary stream.
        :param bank_index: 0-based bank number.
        :return:
        """
        if isinstance(image, bytes | bytearray | memoryview):
            image = io.BytesIO(image)

        try:
            table = BankTable.read(image)
            bank = table.get(bank_index)
        except DirectoryError as e:
            logger.error("%s", e)
            return VerifyReport(bank_index, fatal_error=str(e))

        if not bank.usable:
            return VerifyReport(
                bank_index,
                bank=bank,
                disc_type=bank.disc_type,
                fatal_error=f"Bank {bank_index + 1} is not usable: {bank.problem}",
            )

        reader = BankReader(image, bank.offset, bank.size)
        try:
            header = gcn.parse_disc_header(reader.read_at(0, gcn.DISC_HEADER_SIZE))
            kind = gcn.disc_kind(header)
        except FormatError as e:
            logger.error("Bank %d: %s", bank_index + 1, e)
            return VerifyReport(bank_index, bank=bank, disc_type=bank.disc_type, fatal_error=str(e))

        logger.info("Verifying bank %d: %s (%s)", bank_index + 1, header.id6, kind.value)
        try:
            if kind == gcn.DiscKind.GAMECUBE:
                return self._verify_gamecube(reader, bank, header)
            return self._verify_wii(reader, bank, header)
        except (RvthError, OSError) as e:
            logger.error("Bank %d: %s", bank_index + 1, e)
            return VerifyReport(
                bank_index,
                bank=bank,
                disc_type=bank.disc_type,
                id6=header.id6,
                game_title=header.game_title,
                fatal_error=str(e),
            )

    def _is_debug(self, disc_type: DiscType, boot_info: construct.Container) -> bool:
        if self.options.debug_build is not None:
            return self.options.debug_build
        if disc_type == DiscType.GAMECUBE:
            return boot_info.debug_flag != 0
        return disc_type == DiscType.WII_DEBUG

    def _check_boot_chain(
        self, source: BankReader, is_wii: bool, disc_type: DiscType
    ) -> tuple[AppLoaderError, str | None]:
        """
        Parses the boot block, boot info and DOL header of a disc or partition and runs the apploader checks.
        :return: the apploader result, and the parse error message when the boot chain is unreadable.
        """
        try:
            data = source.read_at(0, gcn.BOOT_CHAIN_SIZE)
            boot_block = gcn.parse_boot_block(data, is_wii)
            boot_info = gcn.parse_boot_info(data)

            dol_offset = boot_block.boot_file_position
            dol_header = gcn.parse_dol_header(
                source.read_at(dol_offset, gcn.DolHeader.sizeof()),
                container_size=source.size - dol_offset,
            )
        except FormatError as e:
            logger.warning("Unable to read the boot chain: %s", e)
            return AppLoaderError.APLERR_UNKNOWN, str(e)

        result = validate_boot_chain(
            boot_block,
            boot_info,
            dol_header,
            debug=self._is_debug(disc_type, boot_info),
            limits=self.options.limits,
        )
        if result != AppLoaderError.APLERR_OK:
            logger.warning("Boot chain check failed: %s", result.description)
        return result, None

    def _verify_gamecube(self, reader: BankReader, bank: BankEntry, header: construct.Container) -> VerifyReport:
        apploader_error, boot_chain_error = self._check_boot_chain(reader, False, DiscType.GAMECUBE)
        return VerifyReport(
            bank.index,
            bank=bank,
            disc_type=DiscType.GAMECUBE,
            id6=header.id6,
            game_title=header.game_title,
            apploader_error=apploader_error,
            boot_chain_error=boot_chain_error,
        )

    def _verify_wii(self, reader: BankReader, bank: BankEntry, header: construct.Container) -> VerifyReport:
        # A broken partition table is fatal for the whole disc.
        part_infos = wii.read_partition_table(reader)

        entries: list[wii.PartitionEntry | FormatError] = []
        for group, index, part_info in part_infos:
            try:
                entries.append(wii.read_partition(reader, group, index, part_info))
            except FormatError as e:
                logger.warning("Partition %d.%d: %s", group, index, e)
                entries.append(e)

        crypto = wii.crypto_type(header, [e for e in entries if isinstance(e, wii.PartitionEntry)])
        disc_type = _DISC_TYPE_FOR_CRYPTO[crypto]
        key_set = KeySet.DEBUG if crypto == wii.CryptoType.DEBUG else KeySet.RETAIL

        executor = ThreadPoolExecutor(max_workers=self.options.max_workers) if self.options.max_workers > 1 else None
        try:
            partitions = []
            for (group, index, part_info), entry in zip(part_infos, entries):
                if isinstance(entry, FormatError):
                    partitions.append(
                        PartitionReport(
                            group=group,
                            index=index,
                            kind=wii.partition_kind_name(part_info.kind),
                            offset=part_info.data_offset,
                            status=PartitionStatus.FORMAT_ERROR,
                            error=str(entry),
                        )
                    )
                else:
                    partitions.append(self._verify_partition(reader, header, entry, disc_type, key_set, executor))
        finally:
            if executor is not None:
                executor.shutdown(cancel_futures=True)

        return VerifyReport(
            bank.index,
            bank=bank,
            disc_type=disc_type,
            id6=header.id6,
            game_title=header.game_title,
            partitions=tuple(partitions),
        )

    def _verify_partition(
        self,
        reader: BankReader,
        header: construct.Container,
        entry: wii.PartitionEntry,
        disc_type: DiscType,
        key_set: KeySet,
        executor: Executor | None,
    ) -> PartitionReport:
        report = PartitionReport(
            group=entry.group,
            index=entry.index,
            kind=entry.kind_name,
            offset=entry.offset,
            status=PartitionStatus.CLEAN,
            cluster_count=entry.cluster_count,
        )
        # Only unencrypted discs with hashing disabled store clusters without a hash region.
        has_hashes = not (header.disc_noCrypt and header.hash_verify)
        title_key = None

        if not header.disc_noCrypt:
            try:
                title_key = self.options.key_manager.resolve_title_key(entry, key_set)
            except CryptoError as e:
                logger.warning("%s: %s", entry, e)
                return dataclasses.replace(report, status=PartitionStatus.CRYPTO_ERROR, error=str(e))

        data_offset = entry.offset + entry.data_offset
        if has_hashes:
            logger.info("Verifying %s: %d clusters", entry, entry.cluster_count)
            try:
                h3_table = wii.read_h3_table(reader, entry)
                result = verify_partition(
                    title_key,
                    _iter_clusters(reader, data_offset, entry.cluster_count),
                    h3_table,
                    entry.signed_h4,
                    executor=executor,
                    stop_on_first_error=self.options.stop_on_first_error,
                )
            except FormatError as e:
                logger.warning("%s: %s", entry, e)
                return dataclasses.replace(report, status=PartitionStatus.FORMAT_ERROR, error=str(e))

            report = dataclasses.replace(
                report,
                status=PartitionStatus.CLEAN if result.clean else PartitionStatus.HASH_MISMATCH,
                mismatches=result.mismatches,
                h4_matches=result.h4_matches,
            )
            if not result.clean:
                logger.warning(
                    "%s: %d bad clusters, H4 %s", entry, len(result.mismatches), "ok" if result.h4_matches else "bad"
                )
        else:
            report = dataclasses.replace(report, status=PartitionStatus.UNENCRYPTED)

        partition_reader = PartitionReader(reader, data_offset, entry.cluster_count, title_key, has_hashes)
        apploader_error, boot_chain_error = self._check_boot_chain(partition_reader, True, disc_type)
        return dataclasses.replace(report, apploader_error=apploader_error, boot_chain_error=boot_chain_error)
