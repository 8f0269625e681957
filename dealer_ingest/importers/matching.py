from __future__ import annotations

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

"""Dealer name resolution for reports that carry names instead of codes.

Names are normalized by lowercasing and dropping every non-alphanumeric
character. A lookup tries an exact normalized match first, then
containment in either direction. The first candidate found wins; there is
no tie-break when one dealer's name is contained in another's.
"""

__all__ = [
    "normalize_name",
    "DealerNameMatcher",
    "COMBINED",
]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")

# Alias value marking a dealer whose figures roll up into another dealer
COMBINED = "combined"


def normalize_name(value: Any) -> str:
    return _NON_ALNUM.sub("", str(value or "").lower())


class DealerNameMatcher:
    """Resolve report names to dealer documents.

    ``fields`` lists the dealer attributes to index, in priority order; a
    list-valued attribute (``dme_aliases``) contributes every element.
    Dealers whose ``exclude_combined`` attribute is "combined" are left out
    entirely; a "combined" value in any other field is just not indexed.
    """

    def __init__(
        self,
        dealers: Iterable[Mapping[str, Any]],
        fields: Sequence[str],
        *,
        exclude_combined: str | None = None,
    ) -> None:
        self._entries: list[tuple[str, Mapping[str, Any]]] = []
        self._exact: dict[str, Mapping[str, Any]] = {}
        for dealer in dealers:
            if exclude_combined and normalize_name(dealer.get(exclude_combined)) == COMBINED:
                continue
            for f in fields:
                values = dealer.get(f)
                if isinstance(values, (list, tuple)):
                    candidates = list(values)
                else:
                    candidates = [values]
                for candidate in candidates:
                    key = normalize_name(candidate)
                    if not key or key == COMBINED:
                        continue
                    self._entries.append((key, dealer))
                    self._exact.setdefault(key, dealer)

    def __len__(self) -> int:
        return len(self._entries)

    def match(self, name: str | None) -> Mapping[str, Any] | None:
        key = normalize_name(name)
        if not key:
            return None
        exact = self._exact.get(key)
        if exact is not None:
            return exact
        for candidate, dealer in self._entries:
            if key in candidate or candidate in key:
                return dealer
        return None
