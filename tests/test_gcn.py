from __future__ import annotations

import pytest

from rvth_tool.disc import gcn
from rvth_tool.exceptions import FormatError, UnrecognizedDisc
from tests import test_lib


def test_parse_disc_header():
    header = gcn.parse_disc_header(test_lib.disc_header(id6=b"RSBE01", title=b"Brawl"))

    assert header.id6 == b"RSBE01"
    assert header.game_title.rstrip(b"\x00") == b"Brawl"
    assert header.magic_wii == gcn.WII_MAGIC


@pytest.mark.parametrize(
    ("magic_wii", "magic_gcn", "expected"),
    [
        (gcn.WII_MAGIC, 0, gcn.DiscKind.WII),
        (0, gcn.GCN_MAGIC, gcn.DiscKind.GAMECUBE),
        (gcn.WII_MAGIC, gcn.GCN_MAGIC, gcn.DiscKind.WII),
    ],
)
def test_disc_kind(magic_wii, magic_gcn, expected):
    header = gcn.parse_disc_header(test_lib.disc_header())
    header.magic_wii = magic_wii
    header.magic_gcn = magic_gcn

    assert gcn.disc_kind(header) == expected


def test_unrecognized_disc():
    header = gcn.parse_disc_header(b"\xff" * gcn.DISC_HEADER_SIZE)

    with pytest.raises(UnrecognizedDisc) as e:
        gcn.disc_kind(header)

    assert e.value.magic_wii == 0xFFFFFFFF
    assert e.value.magic_gcn == 0xFFFFFFFF


def test_truncated_disc_header():
    with pytest.raises(FormatError, match="Disc header is truncated"):
        gcn.parse_disc_header(b"\x00" * 0x20)


@pytest.mark.parametrize("is_wii", [False, True])
def test_boot_block_positions(is_wii):
    data = test_lib.boot_chain(is_wii, 0x4000)
    boot_block = gcn.parse_boot_block(data, is_wii)

    assert boot_block.boot_file_position == test_lib.DOL_OFFSET
    assert boot_block.fst_position == 0x4000
    assert boot_block.fst_address == 0x81600000


def test_wii_boot_block_is_shifted():
    data = test_lib.boot_chain(True, 0x4000)

    # Stored value is the position divided by 4
    assert gcn.parse_boot_block(data, False).boot_file_position == test_lib.DOL_OFFSET >> 2


def test_boot_info():
    data = test_lib.boot_chain(False, 0x4000, boot_info=test_lib.boot_info_fields(region_code=9, dol_limit=0x1000))
    boot_info = gcn.parse_boot_info(data)

    assert boot_info.simulated_memory_size == 0x01000000
    assert boot_info.region_code == 9
    assert boot_info.dol_limit == 0x1000


def test_dol_sections():
    header = gcn.DolHeader.parse(
        gcn.DolHeader.build(
            test_lib.dol_header_fields(
                text=[(0x100, 0x80004000, 0x1000), (0x1100, 0x80005000, 0x200)],
                data=[(0x1300, 0x80100000, 0x40)],
            )
        )
    )

    sections = list(gcn.dol_sections(header))
    assert [(s.kind, s.index) for s in sections] == [("text", 0), ("text", 1), ("data", 0)]
    assert sections[1].end_address == 0x80005200


def test_dol_section_past_container():
    data = gcn.DolHeader.build(test_lib.dol_header_fields())

    assert gcn.parse_dol_header(data, container_size=0x1900) is not None
    with pytest.raises(FormatError, match="ends past the end of its container"):
        gcn.parse_dol_header(data, container_size=0x18FF)
