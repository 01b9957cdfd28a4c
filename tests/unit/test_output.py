"""Unit tests for console prompts."""

from unittest.mock import patch

import pytest

from dbrestore.core.output import Console


class TestChoose:
    """Tests for the selection menu."""

    def test_returns_selected_index(self):
        """Should map the selected choice back to its index."""
        console = Console()
        with patch("dbrestore.core.output.inquirer.select") as select:
            select.return_value.execute.return_value = 2
            index = console.choose("Select service", ["auth", "billing", "orders"], default=1)

        assert index == 2
        kwargs = select.call_args.kwargs
        assert kwargs["message"] == "Select service"
        assert kwargs["default"] == 1
        assert [c.name for c in kwargs["choices"]] == ["auth", "billing", "orders"]
        assert [c.value for c in kwargs["choices"]] == [0, 1, 2]

    def test_empty_options(self):
        """Should refuse an empty menu without prompting."""
        with patch("dbrestore.core.output.inquirer.select") as select:
            with pytest.raises(ValueError):
                Console().choose("Select service", [])
        select.assert_not_called()


class TestConfirm:
    """Tests for yes/no confirmation."""

    def test_skip_confirm(self):
        """Should confirm without reading input."""
        console = Console()
        with patch.object(console._console, "input") as read:
            assert console.confirm("Drop?", skip_confirm=True)
        read.assert_not_called()

    @pytest.mark.parametrize("answer,default,expected", [
        ("y", False, True),
        ("no", True, False),
        ("", True, True),
        ("", False, False),
    ])
    def test_answers(self, answer: str, default: bool, expected: bool):
        """Should read y/yes and fall back to the default."""
        console = Console()
        with patch.object(console._console, "input", return_value=answer):
            assert console.confirm("Proceed?", default=default) is expected

    def test_closed_input(self):
        """Should treat a closed stdin as no."""
        console = Console()
        with patch.object(console._console, "input", side_effect=EOFError):
            assert console.confirm("Proceed?", default=True) is False
