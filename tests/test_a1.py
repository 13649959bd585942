import pytest

from gsheets_mcp.a1 import (
    column_to_letter,
    count_value_cells,
    letter_to_column,
    parse_a1_range,
    quote_sheet_name,
)


def test_column_letters():
    assert column_to_letter(0) == "A"
    assert column_to_letter(25) == "Z"
    assert column_to_letter(26) == "AA"
    assert letter_to_column("a") == 0
    assert letter_to_column("AB") == 27
    with pytest.raises(ValueError):
        column_to_letter(-1)


def test_parse_bounded_range_with_sheet():
    parsed = parse_a1_range("Sheet1!B2:D11")
    assert parsed.sheet_name == "Sheet1"
    assert parsed.is_bounded
    assert parsed.cell_count() == 30
    assert parsed.row_count() == 10


def test_parse_quoted_sheet_name():
    parsed = parse_a1_range("'Q1 ''Plan'''!A1:A5")
    assert parsed.sheet_name == "Q1 'Plan'"
    assert parsed.cell_count() == 5
    assert quote_sheet_name("Q1 'Plan'") == "'Q1 ''Plan'''"


def test_parse_single_cell():
    parsed = parse_a1_range("C3")
    assert parsed.sheet_name is None
    assert parsed.cell_count() == 1


def test_bare_sheet_name_needs_grid():
    parsed = parse_a1_range("Sheet1")
    assert parsed.sheet_name == "Sheet1"
    assert not parsed.is_bounded
    assert parsed.cell_count() is None
    assert parsed.cell_count(grid_rows=1000, grid_columns=26) == 26000


def test_whole_columns_use_grid_rows():
    parsed = parse_a1_range("Data!A:C")
    assert parsed.cell_count(grid_rows=100, grid_columns=26) == 300
    assert parsed.row_count(grid_rows=100) == 100


def test_whole_rows_use_grid_columns():
    parsed = parse_a1_range("2:5")
    assert parsed.cell_count(grid_rows=100, grid_columns=10) == 40


def test_parse_rejects_empty_and_bad_rows():
    with pytest.raises(ValueError):
        parse_a1_range("  ")
    with pytest.raises(ValueError):
        parse_a1_range("Sheet1!A0:B2")


def test_count_value_cells_handles_ragged_rows():
    assert count_value_cells([["a", "b"], ["c"], []]) == 3
    assert count_value_cells(None) == 0


def test_reversed_range_is_normalized():
    parsed = parse_a1_range("Sheet1!Z1000:A1")
    assert (parsed.start_column, parsed.start_row) == (0, 0)
    assert (parsed.end_column, parsed.end_row) == (25, 999)
    assert parsed.cell_count() == 26000
    assert parsed.row_count() == 1000


def test_partially_reversed_range():
    assert parse_a1_range("C1:A3").cell_count() == 9
    assert parse_a1_range("A5:B2").row_count() == 4
