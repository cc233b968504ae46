"""Seat identity, key encoding and the row layout derived from a show's capacity."""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict
import re

ROW_LABELS = "ABCDEFGH"

_SEAT_KEY_RE = re.compile(r"^([A-Z]+)([1-9][0-9]*)$")


class InvalidSeatError(ValueError):
    """Raised when a seat cannot be parsed into a (row, number) pair."""


@dataclass(frozen=True, order=True)
class Seat:
    row: str
    number: int

    def __post_init__(self):
        if not isinstance(self.row, str) or not self.row or not self.row.isalpha() or not self.row.isupper():
            raise InvalidSeatError(f"row must be uppercase letters, got {self.row!r}")
        if isinstance(self.number, bool) or not isinstance(self.number, int) or self.number < 1:
            raise InvalidSeatError(f"seat number must be a positive integer, got {self.number!r}")

    @property
    def key(self) -> str:
        # Rows never contain digits, so "A" + 10 cannot collide with "A1" + 0.
        return f"{self.row}{self.number}"

    def to_dict(self) -> Dict[str, Any]:
        return {"row": self.row, "number": self.number}

    def __str__(self) -> str:
        return self.key


def parse_seat(value: Any) -> Seat:
    """Accept either a seat key ("B10") or a {"row": "B", "number": 10} mapping."""
    if isinstance(value, Seat):
        return value
    if isinstance(value, str):
        match = _SEAT_KEY_RE.match(value.strip())
        if not match:
            raise InvalidSeatError(f"invalid seat key {value!r}")
        return Seat(match.group(1), int(match.group(2)))
    if isinstance(value, dict):
        if "row" not in value or "number" not in value:
            raise InvalidSeatError("seat objects need both 'row' and 'number'")
        return Seat(value["row"], value["number"])
    raise InvalidSeatError(f"unsupported seat value {value!r}")


def seat_layout(capacity: int) -> "OrderedDict[str, int]":
    """Split capacity across the eight rows, leading rows taking the remainder."""
    base, extra = divmod(max(capacity, 0), len(ROW_LABELS))
    return OrderedDict(
        (label, base + (1 if index < extra else 0))
        for index, label in enumerate(ROW_LABELS)
    )


def layout_contains(layout: Dict[str, int], seat: Seat) -> bool:
    return seat.number <= layout.get(seat.row, 0)
