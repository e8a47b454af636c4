"""
Wii common keys and title key resolution.
"""

from __future__ import annotations

import enum
import logging
import types
import typing

from Crypto.Cipher import AES

from rvth_tool.exceptions import CryptoError, UnknownKeyIndex

if typing.TYPE_CHECKING:
    from collections.abc import Mapping

    from rvth_tool.disc.wii import PartitionEntry

logger = logging.getLogger(__name__)


class CommonKeyIndex(enum.IntEnum):
    RETAIL = 0
    KOREAN = 1
    VWII = 2


class KeySet(enum.Enum):
    RETAIL = "retail"
    DEBUG = "debug"


COMMON_KEYS: Mapping[KeySet, Mapping[int, bytes]] = types.MappingProxyType(
    {
        KeySet.RETAIL: types.MappingProxyType(
            {
                CommonKeyIndex.RETAIL: b"\xeb\xe4\x2a\x22\x5e\x85\x93\xe4\x48\xd9\xc5\x45\x73\x81\xaa\xf7",
                CommonKeyIndex.KOREAN: b"\x63\xb8\x2b\xb4\xf4\x61\x4e\x2e\x13\xf2\xfe\xfb\xba\x4c\x9b\x7e",
                CommonKeyIndex.VWII: b"\x30\xbf\xc7\x6e\x7c\x19\xaf\xbb\x23\x16\x33\x30\xce\xd7\xc2\x8d",
            }
        ),
        KeySet.DEBUG: types.MappingProxyType(
            {
                CommonKeyIndex.RETAIL: b"\xa1\x60\x4a\x6a\x71\x23\xb5\x29\xae\x8b\xec\x32\xc8\x16\xfc\xaa",
                CommonKeyIndex.KOREAN: b"\x67\x45\x8b\x6b\xc6\x23\x7b\x32\x69\x98\x3c\x64\x73\x48\x33\x66",
                CommonKeyIndex.VWII: b"\x2f\x5c\x1b\x29\x44\xe7\xfd\x6f\xc3\x97\x96\x4b\x05\x76\x91\xfa",
            }
        ),
    }
)


class KeyManager:
    """
    Read-only holder of the common keys. Safe to share between worker threads.
    """

    def __init__(self, keys: Mapping[KeySet, Mapping[int, bytes]] | None = None):
        if keys is None:
            keys = COMMON_KEYS

        for key_set, table in keys.items():
            for index, key in table.items():
                if len(key) != 16:
                    raise CryptoError(f"Common key {index} ({key_set.value}) is {len(key)} bytes, expected 16")

        self._keys = types.MappingProxyType(
            {key_set: types.MappingProxyType(dict(table)) for key_set, table in keys.items()}
        )

    def common_key(self, key_index: int, key_set: KeySet = KeySet.RETAIL) -> bytes:
        try:
            return self._keys[key_set][key_index]
        except KeyError:
            raise UnknownKeyIndex(key_index, key_set.value)

    def resolve_title_key(self, partition: PartitionEntry, key_set: KeySet = KeySet.RETAIL) -> bytes:
        """
        Decrypts the partition's title key with the common key selected by its ticket.
        :param partition:
        :param key_set: Retail or debug keys, chosen from the disc's encryption type.
        :return: the 16-byte title key
        """
        if len(partition.encrypted_title_key) != 16:
            raise CryptoError(f"{partition}: encrypted title key is {len(partition.encrypted_title_key)} bytes")
        if len(partition.title_id) != 8:
            raise CryptoError(f"{partition}: title id is {len(partition.title_id)} bytes")

        aes = AES.new(
            key=self.common_key(partition.common_key_index, key_set),
            mode=AES.MODE_CBC,
            iv=partition.title_id + b"\x00" * 8,
        )
        title_key = aes.decrypt(partition.encrypted_title_key)
        logger.debug(
            "%s: resolved title key with %s common key %d", partition, key_set.value, partition.common_key_index
        )
        return title_key
