"""Keys used to tag fluid vehicle mass."""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple


class State(NamedTuple):
    """Composite key ``(commodity, path or link)``.

    For a path-full commodity ``path_or_link_id`` is the path id.  For a
    link-local commodity it is the id of the link the vehicles take when they
    leave the link they are on; on sink links it is the sink link itself.
    """

    commodity_id: int
    path_or_link_id: int
    is_path: bool = False


class Side(Enum):
    """Lane-change direction relative to the current lane group."""

    IN = "in"  # towards lower lane numbers
    MIDDLE = "middle"  # stay
    OUT = "out"  # towards higher lane numbers


__all__ = ["Side", "State"]
