"""
Structural checks performed by the GameCube/Wii apploader before it loads the main DOL.
The checks run in a fixed order and the first failure is reported.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import typing

from rvth_tool.disc.gcn import dol_sections

if typing.TYPE_CHECKING:
    import construct

logger = logging.getLogger(__name__)


class AppLoaderError(enum.IntEnum):
    APLERR_UNKNOWN = 0
    APLERR_OK = 1
    APLERR_FSTLENGTH = 2
    APLERR_DEBUGMONSIZE_UNALIGNED = 3
    APLERR_SIMMEMSIZE_UNALIGNED = 4
    APLERR_PHYSMEMSIZE_MINUS_SIMMEMSIZE_NOT_GT_DEBUGMONSIZE = 5
    APLERR_SIMMEMSIZE_NOT_LE_PHYSMEMSIZE = 6
    APLERR_ILLEGAL_FST_ADDRESS = 7
    APLERR_DOL_EXCEEDS_SIZE_LIMIT = 8
    APLERR_DOL_ADDR_LIMIT_RETAIL_EXCEEDED = 9
    APLERR_DOL_ADDR_LIMIT_DEBUG_EXCEEDED = 10
    APLERR_DOL_TEXTSEG2BIG = 11
    APLERR_DOL_DATASEG2BIG = 12

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    AppLoaderError.APLERR_UNKNOWN: "Unknown error",
    AppLoaderError.APLERR_OK: "No errors",
    AppLoaderError.APLERR_FSTLENGTH: "FST length is greater than the maximum FST length",
    AppLoaderError.APLERR_DEBUGMONSIZE_UNALIGNED: "Debug monitor size is not a multiple of 32",
    AppLoaderError.APLERR_SIMMEMSIZE_UNALIGNED: "Simulated memory size is not a multiple of 32",
    AppLoaderError.APLERR_PHYSMEMSIZE_MINUS_SIMMEMSIZE_NOT_GT_DEBUGMONSIZE: (
        "Physical memory size minus simulated memory size is not greater than the debug monitor size"
    ),
    AppLoaderError.APLERR_SIMMEMSIZE_NOT_LE_PHYSMEMSIZE: (
        "Simulated memory size is greater than the physical memory size"
    ),
    AppLoaderError.APLERR_ILLEGAL_FST_ADDRESS: "Illegal FST address",
    AppLoaderError.APLERR_DOL_EXCEEDS_SIZE_LIMIT: "DOL exceeds the size limit",
    AppLoaderError.APLERR_DOL_ADDR_LIMIT_RETAIL_EXCEEDED: "DOL exceeds the retail address limit",
    AppLoaderError.APLERR_DOL_ADDR_LIMIT_DEBUG_EXCEEDED: "DOL exceeds the debug address limit",
    AppLoaderError.APLERR_DOL_TEXTSEG2BIG: "DOL text section is too big",
    AppLoaderError.APLERR_DOL_DATASEG2BIG: "DOL data section is too big",
}


@dataclasses.dataclass(frozen=True)
class ApploaderLimits:
    phys_mem_size: int = 0x01800000
    fst_address_limit: int = 0x81700000
    retail_address_limit: int = 0x80700000
    debug_address_limit: int = 0x81200000
    text_section_limit: int = 0x00700000
    data_section_limit: int = 0x00700000


DEFAULT_LIMITS = ApploaderLimits()


def validate_boot_chain(
    boot_block: construct.Container,
    boot_info: construct.Container,
    dol_header: construct.Container,
    debug: bool = False,
    limits: ApploaderLimits = DEFAULT_LIMITS,
) -> AppLoaderError:
    """
    Runs the apploader checks over the parsed boot block, boot info and DOL header.
    :param debug: Use the debug address ceiling instead of the retail one.
    :return: the first failing check, or APLERR_OK
    """
    # All sizes are unsigned.
    debug_mon_size = boot_info.debug_monitor_size
    sim_mem_size = boot_info.simulated_memory_size

    if boot_block.fst_length > boot_block.fst_max_length:
        return AppLoaderError.APLERR_FSTLENGTH

    if debug_mon_size % 32 != 0:
        return AppLoaderError.APLERR_DEBUGMONSIZE_UNALIGNED

    if sim_mem_size % 32 != 0:
        return AppLoaderError.APLERR_SIMMEMSIZE_UNALIGNED

    if (limits.phys_mem_size - sim_mem_size) & 0xFFFFFFFF <= debug_mon_size:
        return AppLoaderError.APLERR_PHYSMEMSIZE_MINUS_SIMMEMSIZE_NOT_GT_DEBUGMONSIZE

    if sim_mem_size > limits.phys_mem_size:
        return AppLoaderError.APLERR_SIMMEMSIZE_NOT_LE_PHYSMEMSIZE

    if boot_block.fst_address >= limits.fst_address_limit:
        return AppLoaderError.APLERR_ILLEGAL_FST_ADDRESS

    sections = list(dol_sections(dol_header))

    if boot_info.dol_limit != 0:
        total_size = sum(section.size for section in sections)
        if total_size > boot_info.dol_limit:
            return AppLoaderError.APLERR_DOL_EXCEEDS_SIZE_LIMIT

    if debug:
        address_limit = limits.debug_address_limit
        address_error = AppLoaderError.APLERR_DOL_ADDR_LIMIT_DEBUG_EXCEEDED
    else:
        address_limit = limits.retail_address_limit
        address_error = AppLoaderError.APLERR_DOL_ADDR_LIMIT_RETAIL_EXCEEDED

    # A section starting below the ceiling still fails when it runs past it.
    for section in sections:
        if section.end_address > address_limit:
            logger.debug("%r ends past 0x%08X", section, address_limit)
            return address_error

    for section in sections:
        if section.kind == "text" and section.size > limits.text_section_limit:
            return AppLoaderError.APLERR_DOL_TEXTSEG2BIG

    for section in sections:
        if section.kind == "data" and section.size > limits.data_section_limit:
            return AppLoaderError.APLERR_DOL_DATASEG2BIG

    return AppLoaderError.APLERR_OK
