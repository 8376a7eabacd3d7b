"""Tests for the category table."""

import numpy as np
import pytest

from planseg.engine.categories import BACKGROUND, UNCLEAR, Category, CategoryTable
from planseg.errors import InvalidConfiguration


def test_default_table_is_dense():
    table = CategoryTable.default()
    assert len(table) == 19
    assert [c.code for c in table] == list(range(19))
    assert table[0].name == BACKGROUND
    assert table.code_of("wall_load_bearing") == 1
    assert table.code_of(UNCLEAR) == 16
    assert table.code_of("nonexistent") is None


def test_label_replaces_underscores():
    table = CategoryTable.default()
    assert table.by_name("wall_load_bearing").label == "wall load bearing"


def test_palette_shape():
    table = CategoryTable.default()
    palette = table.palette()
    assert palette.shape == (19, 3)
    assert palette.dtype == np.uint8
    assert tuple(palette[table.code_of("dimension_line")]) == (0, 0, 255)


def test_contains_and_lookup():
    table = CategoryTable.from_entries([("background", (255, 255, 255)), ("door", (1, 2, 3))])
    assert "door" in table
    assert "window" not in table
    assert table.by_name("door").code == 1
    with pytest.raises(KeyError):
        table.by_name("window")


class TestValidation:
    def test_empty(self):
        with pytest.raises(InvalidConfiguration):
            CategoryTable([])

    def test_background_must_be_first(self):
        with pytest.raises(InvalidConfiguration):
            CategoryTable.from_entries([("door", (0, 0, 0)), ("background", (255, 255, 255))])

    def test_duplicate_names(self):
        with pytest.raises(InvalidConfiguration):
            CategoryTable.from_entries([("background", (255, 255, 255)), ("door", (0, 0, 0)), ("door", (1, 1, 1))])

    def test_sparse_codes(self):
        with pytest.raises(InvalidConfiguration):
            CategoryTable([Category(0, "background", (255, 255, 255)), Category(2, "door", (0, 0, 0))])

    def test_bad_color(self):
        with pytest.raises(InvalidConfiguration):
            CategoryTable.from_entries([("background", (256, 0, 0))])

    def test_is_a_value_error(self):
        with pytest.raises(ValueError):
            CategoryTable([])
