from __future__ import annotations

import enum
import typing

import construct

E = typing.TypeVar("E", bound=enum.IntEnum)


class EnumAdapter(construct.Adapter, typing.Generic[E]):
    """
    Decodes an integer field into an IntEnum member.

    With `allow_unknown`, values missing from the enum are passed through as plain ints
    instead of failing the whole parse. Callers decide what an unknown value means.
    """

    def __init__(self, enum_class: type[E], subcon=construct.Int32ub, allow_unknown: bool = False):
        super().__init__(construct.Enum(subcon, enum_class))
        self._enum_class = enum_class
        self._allow_unknown = allow_unknown

    def _decode(self, obj, context, path) -> E | int:
        if isinstance(obj, str):
            return self._enum_class[obj]
        if self._allow_unknown:
            return int(obj)
        raise construct.MappingError(f"0x{int(obj):X} is not a valid {self._enum_class.__name__}", path=path)

    def _encode(self, obj: E | int, context, path) -> str | int:
        if isinstance(obj, self._enum_class):
            return obj.name
        return int(obj)
