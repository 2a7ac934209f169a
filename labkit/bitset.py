"""Fixed-size bit set used to record linearized operations."""

from __future__ import annotations

_WORD_BITS = 64


class Bitset:
    """A set of bit positions stored in 64-bit words."""

    __slots__ = ("_words",)

    def __init__(self, bits: int) -> None:
        if bits < 0:
            raise ValueError("bit count must not be negative")
        self._words = [0] * ((bits + _WORD_BITS - 1) // _WORD_BITS)

    def _locate(self, pos: int) -> tuple[int, int]:
        if pos < 0:
            raise IndexError(f"bit position {pos} is negative")
        major, minor = divmod(pos, _WORD_BITS)
        if major >= len(self._words):
            raise IndexError(f"bit position {pos} out of range")
        return major, minor

    def set(self, pos: int) -> None:
        """Set the bit at ``pos``."""
        major, minor = self._locate(pos)
        self._words[major] |= 1 << minor

    def clear(self, pos: int) -> None:
        """Clear the bit at ``pos``."""
        major, minor = self._locate(pos)
        self._words[major] &= ~(1 << minor)

    def popcount(self) -> int:
        """Number of set bits."""
        return sum(word.bit_count() for word in self._words)

    def copy(self) -> Bitset:
        """An independent copy of this bit set."""
        clone = Bitset(0)
        clone._words = list(self._words)
        return clone

    def __hash__(self) -> int:
        value = self.popcount()
        for word in self._words:
            value ^= word
        return value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bitset):
            return NotImplemented
        return self._words == other._words

    def __repr__(self) -> str:
        bits = [
            index * _WORD_BITS + offset
            for index, word in enumerate(self._words)
            for offset in range(_WORD_BITS)
            if word >> offset & 1
        ]
        return f"Bitset(set={bits})"