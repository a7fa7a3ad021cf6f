"""
Page selection parsing.

Accepted forms: ``all``, ``3``, ``1,3,5``, ``1-10`` and combinations such
as ``1-3,7``. Ranges expand ascending, pages keep the order they were
selected in, and repeats are dropped.
"""

import re

from docval.core.validation.errors import SelectionError

_TERM = re.compile(r"^(\d+)(?:\s*-\s*(\d+))?$")


def parse_selection(selection: str, total_pages: int) -> list[int]:
    """
    Resolve a selection string to 1-based page numbers.

    Raises:
        SelectionError: Malformed input, a reversed range, or a page
            number outside 1..total_pages
    """
    text = (selection or "").strip()
    if not text:
        raise SelectionError("Empty page selection")

    if text.lower() == "all":
        if total_pages == 0:
            raise SelectionError("No pages discovered")
        return list(range(1, total_pages + 1))

    numbers: list[int] = []
    seen: set[int] = set()

    for raw_term in text.split(","):
        term = raw_term.strip()
        match = _TERM.match(term)
        if not match:
            raise SelectionError(f"Malformed selection term: {raw_term!r}")

        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else start
        if end < start:
            raise SelectionError(f"Range {term!r} runs backwards")
        if start < 1 or end > total_pages:
            raise SelectionError(
                f"Page {start if start < 1 else end} out of range (1-{total_pages})"
            )

        for number in range(start, end + 1):
            if number not in seen:
                seen.add(number)
                numbers.append(number)

    return numbers
