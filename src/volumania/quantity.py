"""Human-readable storage capacity quantities ("10Gi", "500MB", ...)."""

import re
import functools
from decimal import Decimal, InvalidOperation, ROUND_DOWN, localcontext
from typing import Union

from .errors import MalformedQuantity

MULTIPLIERS = {
    "": 1,
    "B": 1,
    "K": 1024,
    "Ki": 1024,
    "KB": 1000,
    "M": 1024 ** 2,
    "Mi": 1024 ** 2,
    "MB": 1000 ** 2,
    "G": 1024 ** 3,
    "Gi": 1024 ** 3,
    "GB": 1000 ** 3,
    "T": 1024 ** 4,
    "Ti": 1024 ** 4,
    "TB": 1000 ** 4,
}

MAX_BYTES = 2 ** 63 - 1

_QUANTITY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


def multiplier_for(unit: str) -> int:
    """Byte multiplier of a unit; unknown units count as plain bytes."""
    return MULTIPLIERS.get(unit, 1)


@functools.total_ordering
class CapacityQuantity:
    """
    An exact byte count together with the unit it was written in.

    Equality and ordering compare byte values only, so ``1Gi == 1024Mi``.
    Formatting keeps the original unit.
    """

    __slots__ = ("_bytes", "_unit")

    def __init__(self, num_bytes: int, unit: str = ""):
        if num_bytes < 0 or num_bytes > MAX_BYTES:
            raise MalformedQuantity(num_bytes, "out of range")
        self._bytes = int(num_bytes)
        self._unit = unit

    @classmethod
    def parse(cls, text: Union[str, "CapacityQuantity"]) -> "CapacityQuantity":
        """
        Parse a capacity string.

        Fractional values are truncated toward zero at the byte level.

        Raises:
            MalformedQuantity: If the string is not ``<number><unit>``
        """
        if isinstance(text, CapacityQuantity):
            return text
        if not isinstance(text, str):
            raise MalformedQuantity(text, "expected a string")

        match = _QUANTITY_RE.match(text)
        if not match:
            raise MalformedQuantity(text)

        number, unit = match.groups()
        try:
            value = Decimal(number) * multiplier_for(unit)
        except InvalidOperation:
            raise MalformedQuantity(text)

        num_bytes = int(value.to_integral_value(rounding=ROUND_DOWN))
        if num_bytes > MAX_BYTES:
            raise MalformedQuantity(text, "exceeds 64-bit byte range")

        return cls(num_bytes, unit)

    @classmethod
    def from_bytes(cls, num_bytes: int, unit: str = "") -> "CapacityQuantity":
        return cls(num_bytes, unit)

    @property
    def bytes(self) -> int:
        return self._bytes

    @property
    def unit(self) -> str:
        return self._unit

    def format(self) -> str:
        """Render in the construction unit, exact enough to re-parse losslessly."""
        multiplier = multiplier_for(self._unit)
        whole, remainder = divmod(self._bytes, multiplier)
        if remainder == 0:
            return f"{whole}{self._unit}"

        # Multipliers are powers of 2 and 10, so the quotient terminates.
        with localcontext() as ctx:
            ctx.prec = 60
            value = Decimal(self._bytes) / Decimal(multiplier)
        return f"{value.normalize():f}{self._unit}"

    def add(self, step: "CapacityQuantity") -> "CapacityQuantity":
        """Return ``self + step`` expressed in this quantity's unit."""
        step = CapacityQuantity.parse(step)
        total = self._bytes + step.bytes
        if total > MAX_BYTES:
            raise OverflowError(f"{self} + {step} exceeds 64-bit byte range")
        return CapacityQuantity(total, self._unit)

    def __add__(self, other):
        if not isinstance(other, CapacityQuantity):
            return NotImplemented
        return self.add(other)

    def __eq__(self, other):
        if not isinstance(other, CapacityQuantity):
            return NotImplemented
        return self._bytes == other._bytes

    def __lt__(self, other):
        if not isinstance(other, CapacityQuantity):
            return NotImplemented
        return self._bytes < other._bytes

    def __hash__(self):
        return hash(self._bytes)

    def __str__(self):
        return self.format()

    def __repr__(self):
        return f"CapacityQuantity({self.format()!r}, bytes={self._bytes})"


def compare(a: CapacityQuantity, b: CapacityQuantity) -> int:
    """Three-way comparison by byte value: -1, 0 or 1."""
    a = CapacityQuantity.parse(a)
    b = CapacityQuantity.parse(b)
    return (a.bytes > b.bytes) - (a.bytes < b.bytes)
