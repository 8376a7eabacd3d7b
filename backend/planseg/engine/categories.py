"""Semantic pixel categories — every pixel resolves to exactly one code."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from planseg.errors import InvalidConfiguration

BACKGROUND = "background"
UNCLEAR = "unclear"


@dataclass(frozen=True)
class Category:
    code: int
    name: str
    color: tuple[int, int, int]

    @property
    def label(self) -> str:
        return self.name.replace("_", " ")


# Codes and display colors of the drawing categories.
DEFAULT_CATEGORIES: tuple[tuple[str, tuple[int, int, int]], ...] = (
    ("background", (255, 255, 255)),
    # Structural
    ("wall_load_bearing", (139, 69, 19)),
    ("wall_non_load_bearing", (210, 180, 140)),
    ("column", (105, 105, 105)),
    ("beam", (128, 128, 128)),
    ("slab", (192, 192, 192)),
    # Openings
    ("door", (255, 192, 203)),
    ("window", (135, 206, 235)),
    ("opening", (176, 224, 230)),
    # Materials
    ("concrete", (128, 128, 128)),
    ("masonry", (178, 34, 34)),
    ("insulation", (255, 165, 0)),
    ("drywall", (255, 228, 196)),
    # Annotations
    ("dimension_line", (0, 0, 255)),
    ("text_annotation", (0, 0, 0)),
    ("leader_line", (0, 0, 139)),
    # Special
    ("unclear", (255, 255, 0)),
    ("undefined", (255, 0, 255)),
    ("irrelevant", (240, 240, 240)),
)

PRIMARY_STRUCTURAL = "wall_load_bearing"


class CategoryTable:
    """Ordered, dense registry of categories addressed by code or name."""

    def __init__(self, categories: Iterable[Category]) -> None:
        self._categories: tuple[Category, ...] = tuple(categories)
        self._validate()
        self._by_name = {c.name: c for c in self._categories}

    def _validate(self) -> None:
        if not self._categories:
            raise InvalidConfiguration("Category table is empty")
        names: set[str] = set()
        for i, cat in enumerate(self._categories):
            if cat.code != i:
                raise InvalidConfiguration(
                    f"Category codes must be dense and ordered: position {i} has code {cat.code}"
                )
            if cat.name in names:
                raise InvalidConfiguration(f"Duplicate category name: {cat.name}")
            names.add(cat.name)
            if len(cat.color) != 3 or any(not 0 <= v <= 255 for v in cat.color):
                raise InvalidConfiguration(f"Invalid color for {cat.name}: {cat.color}")
        if self._categories[0].name != BACKGROUND:
            raise InvalidConfiguration("Code 0 must be the 'background' category")

    @classmethod
    def from_entries(cls, entries: Iterable[tuple[str, tuple[int, int, int]]]) -> CategoryTable:
        """Build a table from (name, color) pairs; codes follow list order."""
        return cls(
            Category(code=i, name=name, color=tuple(color))  # type: ignore[arg-type]
            for i, (name, color) in enumerate(entries)
        )

    @classmethod
    def default(cls) -> CategoryTable:
        return cls.from_entries(DEFAULT_CATEGORIES)

    def __len__(self) -> int:
        return len(self._categories)

    def __iter__(self) -> Iterator[Category]:
        return iter(self._categories)

    def __getitem__(self, code: int) -> Category:
        return self._categories[code]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def by_name(self, name: str) -> Category:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Unknown category: {name}") from None

    def code_of(self, name: str) -> int | None:
        cat = self._by_name.get(name)
        return cat.code if cat is not None else None

    @property
    def names(self) -> list[str]:
        return [c.name for c in self._categories]

    @property
    def background(self) -> Category:
        return self._categories[0]

    def palette(self) -> NDArray[np.uint8]:
        """(n, 3) uint8 color lookup table indexed by code."""
        return np.array([c.color for c in self._categories], dtype=np.uint8)
