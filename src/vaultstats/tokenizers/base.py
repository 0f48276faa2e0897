from __future__ import annotations

from typing import Protocol, Sequence


class Tokenizer(Protocol):
    def tokenize(self, text: str) -> Sequence[str]:
        ...


class TokenizerRegistry:
    """Maps a region type tag to the tokenizer that counts words in it.

    Populated at startup; once frozen, the mapping is read-only.
    """

    def __init__(self) -> None:
        self._by_type: dict[str, Tokenizer] = {}
        self._frozen = False

    def register(self, region_type: str, tokenizer: Tokenizer) -> None:
        if self._frozen:
            raise RuntimeError(f"Tokenizer registry is frozen; cannot register {region_type!r}")
        self._by_type[region_type] = tokenizer

    def freeze(self) -> "TokenizerRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, region_type: str) -> Tokenizer | None:
        return self._by_type.get(region_type)

    def types(self) -> list[str]:
        return sorted(self._by_type)

    def __contains__(self, region_type: object) -> bool:
        return region_type in self._by_type
