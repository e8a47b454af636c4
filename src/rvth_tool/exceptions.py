from __future__ import annotations


class RvthError(Exception):
    pass


class FormatError(RvthError):
    """
    A structure is malformed or truncated. Fatal for the unit being parsed only.
    """


class UnrecognizedDisc(FormatError):
    def __init__(self, magic_wii: int, magic_gcn: int):
        super().__init__(f"Unrecognized disc: Wii magic 0x{magic_wii:08X}, GameCube magic 0x{magic_gcn:08X}")
        self.magic_wii = magic_wii
        self.magic_gcn = magic_gcn


class DirectoryError(RvthError):
    pass


class InvalidDirectory(DirectoryError):
    def __init__(self, reason: str):
        super().__init__(f"Invalid bank table: {reason}")
        self.reason = reason


class NoSuchBank(DirectoryError):
    def __init__(self, bank_index: int, bank_count: int):
        super().__init__(f"Bank {bank_index + 1} does not exist (the bank table has {bank_count} banks)")
        self.bank_index = bank_index
        self.bank_count = bank_count


class CryptoError(RvthError):
    pass


class UnknownKeyIndex(CryptoError):
    def __init__(self, key_index: int, key_set: str | None = None):
        msg = f"Unknown common key index {key_index}"
        if isinstance(key_set, str):
            msg += f" ({key_set})"
        super().__init__(msg)
        self.key_index = key_index
        self.key_set = key_set
