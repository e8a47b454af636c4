from __future__ import annotations

import io

import pytest

from rvth_tool.nhcd import BankType
from tests import test_lib


@pytest.fixture(scope="session")
def wii_disc() -> bytes:
    return test_lib.wii_disc([test_lib.wii_partition(), test_lib.wii_partition()])


@pytest.fixture(scope="session")
def gamecube_disc() -> bytes:
    return test_lib.gamecube_disc()


@pytest.fixture(scope="session")
def rvth_image(wii_disc, gamecube_disc) -> bytes:
    """
    Bank 1 holds a debug-encrypted Wii disc, bank 2 a GameCube disc, bank 3 is empty.
    """
    return test_lib.rvth_image(
        [
            test_lib.BankLayout(BankType.WII_SL, wii_disc),
            test_lib.BankLayout(BankType.GCN, gamecube_disc),
            test_lib.BankLayout(BankType.EMPTY),
        ]
    )


@pytest.fixture()
def rvth_file(tmp_path, rvth_image):
    path = tmp_path.joinpath("rvth.img")
    path.write_bytes(rvth_image)
    return path


@pytest.fixture()
def rvth_stream(rvth_image) -> io.BytesIO:
    return io.BytesIO(rvth_image)
