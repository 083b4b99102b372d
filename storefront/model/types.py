# storefront/model/types.py
from __future__ import annotations

import enum
from typing import NamedTuple


class ItemKind(str, enum.Enum):
    PRODUCT = "product"
    GAME = "game"


class ItemRef(NamedTuple):
    """Reference to a catalog entry: exactly one kind, exactly one id."""

    kind: ItemKind
    id: int

    @classmethod
    def product(cls, pid: int) -> "ItemRef":
        return cls(ItemKind.PRODUCT, int(pid))

    @classmethod
    def game(cls, gid: int) -> "ItemRef":
        return cls(ItemKind.GAME, int(gid))

    @classmethod
    def parse(cls, kind, ref_id) -> "ItemRef":
        return cls(ItemKind(kind), int(ref_id))

    def as_api(self):
        return {"kind": self.kind.value, "id": self.id}
