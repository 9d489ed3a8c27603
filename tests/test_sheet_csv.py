"""
Tests for the CSV row parser.

Covers plain rows, quoted cells with commas/quotes/newlines, CRLF exports,
malformed quoting and clean_cell.
"""
from sheet_csv import clean_cell, parse_csv


class TestParseCsv:
    def test__parse_csv__plain_rows(self) -> None:
        assert parse_csv("a,b,c\n1,2,3\n") == [["a", "b", "c"], ["1", "2", "3"]]

    def test__parse_csv__no_trailing_newline(self) -> None:
        assert parse_csv("a,b\n1,2") == [["a", "b"], ["1", "2"]]

    def test__parse_csv__empty_input(self) -> None:
        assert parse_csv("") == []

    def test__parse_csv__keeps_empty_cells(self) -> None:
        assert parse_csv("a,,c,\n") == [["a", "", "c", ""]]

    def test__parse_csv__quoted_comma_stays_in_cell(self) -> None:
        rows = parse_csv('1,"Intro course, part 1",x\n')
        assert rows == [["1", "Intro course, part 1", "x"]]

    def test__parse_csv__escaped_quotes(self) -> None:
        rows = parse_csv('"Heights ""Pro""",b\n')
        assert rows == [['Heights "Pro"', "b"]]

    def test__parse_csv__newline_inside_quotes_does_not_split_row(self) -> None:
        text = 'id,desc,img\n2,"Line one\nline two, with comma",https://img.test/2.png\n3,short,x\n'
        rows = parse_csv(text)
        assert len(rows) == 3
        assert rows[1] == ["2", "Line one\nline two, with comma", "https://img.test/2.png"]
        assert rows[2] == ["3", "short", "x"]

    def test__parse_csv__crlf_line_endings(self) -> None:
        rows = parse_csv('a,b\r\n"x\r\ny",z\r\n')
        assert rows == [["a", "b"], ["x\r\ny", "z"]]

    def test__parse_csv__cell_count_preserved_for_mixed_row(self) -> None:
        cells = ["5", "Safety, Level 1", 'say "hi"', "multi\nline", ""]
        line = ",".join('"' + c.replace('"', '""') + '"' for c in cells)
        assert parse_csv(line + "\n") == [cells]

    def test__parse_csv__unbalanced_quote_is_best_effort(self) -> None:
        rows = parse_csv('a,"unterminated,b\nc,d\n')
        # everything after the open quote lands in one cell, no exception
        assert rows == [["a", "unterminated,b\nc,d\n"]]


class TestCleanCell:
    def test__clean_cell__trims_and_strips_quotes(self) -> None:
        assert clean_cell('  "5" ') == "5"

    def test__clean_cell__none_and_empty(self) -> None:
        assert clean_cell(None) == ""
        assert clean_cell("") == ""
