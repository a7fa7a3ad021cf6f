"""
Page Selection Tests
====================
"""

import pytest

from docval.core.validation.errors import SelectionError
from docval.core.validation.selection import parse_selection


class TestParseSelection:
    """Selection strings resolve to page numbers in the order given."""

    @pytest.mark.parametrize(
        "selection,expected",
        [
            ("all", [1, 2, 3, 4, 5]),
            ("ALL", [1, 2, 3, 4, 5]),
            ("3", [3]),
            ("1,3,5", [1, 3, 5]),
            ("2-4", [2, 3, 4]),
            ("5,1-2", [5, 1, 2]),
            (" 1 - 2 , 4 ", [1, 2, 4]),
            ("2,2,1-3", [2, 1, 3]),
        ],
    )
    def test_valid(self, selection, expected):
        assert parse_selection(selection, total_pages=5) == expected

    @pytest.mark.parametrize(
        "selection",
        ["", "   ", "0", "6", "4-6", "3-1", "1,,2", "a", "1-", "-2", "1;2"],
    )
    def test_invalid(self, selection):
        with pytest.raises(SelectionError):
            parse_selection(selection, total_pages=5)

    def test_all_without_pages(self):
        """Nothing discovered means nothing to select."""
        with pytest.raises(SelectionError):
            parse_selection("all", total_pages=0)
