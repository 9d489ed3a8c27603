"""Row parser for Google Sheets CSV exports.

Quoted cells may hold commas, escaped quotes ("") and line breaks, so rows
can only be split on newlines seen outside of quotes.
"""


def parse_csv(text: str) -> list[list[str]]:
    """Split raw CSV text into rows of cells.

    Malformed quoting is not an error: an unbalanced quote just keeps
    swallowing characters until the end of the input.
    """
    rows: list[list[str]] = []
    row: list[str] = []
    cell: list[str] = []
    in_quotes = False
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        if in_quotes:
            if ch == '"':
                if i + 1 < n and text[i + 1] == '"':
                    cell.append('"')
                    i += 1
                else:
                    in_quotes = False
            else:
                cell.append(ch)
        elif ch == '"':
            in_quotes = True
        elif ch == ",":
            row.append("".join(cell))
            cell = []
        elif ch == "\n" or ch == "\r":
            # \r\n counts as a single row break
            if ch == "\r" and i + 1 < n and text[i + 1] == "\n":
                i += 1
            row.append("".join(cell))
            rows.append(row)
            row, cell = [], []
        else:
            cell.append(ch)
        i += 1

    # last row without trailing newline
    if cell or row:
        row.append("".join(cell))
        rows.append(row)

    return rows


def clean_cell(value: str | None) -> str:
    """Trim a cell and drop any stray double quotes left by the export."""
    if not value:
        return ""
    return value.replace('"', "").strip()
