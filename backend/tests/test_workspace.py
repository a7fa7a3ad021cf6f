"""
Workspace Edit Tests
====================

Exact-span replacement used for applying, replaying and reverting fixes,
and parsing of the validator's JSON output.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from docval.core.schemas import ComputeRef, Page
from docval.core.validation.compute import ExecResult
from docval.core.validation.errors import ExecutionError
from docval.core.validation.workspace import PodWorkspaceExecutor, replace_span

PAGE = "# Title\nRun teh installer.\n\nThen run teh tests.\n"


class TestReplaceSpan:
    """Applying a recorded edit to page text."""

    def test_replaces_span(self):
        text, changed = replace_span("Run teh installer.", "teh", "the")
        assert changed
        assert text == "Run the installer."

    def test_reapplying_is_a_noop(self):
        """Replaying an edit the page already has changes nothing."""
        once, _ = replace_span("Start the the server.", "the the", "the")
        twice, changed = replace_span(once, "the the", "the")
        assert not changed
        assert twice == "Start the server."

    def test_line_hint_picks_nearest_occurrence(self):
        text, changed = replace_span(PAGE, "teh", "the", line_hint=4)
        assert changed
        assert text == "# Title\nRun teh installer.\n\nThen run the tests.\n"

    def test_first_occurrence_without_hint(self):
        text, _ = replace_span(PAGE, "teh", "the")
        assert text.startswith("# Title\nRun the installer.")
        assert "run teh tests" in text

    def test_revert_restores_original(self):
        fixed, _ = replace_span(PAGE, "teh", "the", line_hint=2)
        reverted, changed = replace_span(fixed, "the", "teh", line_hint=2)
        assert changed
        assert reverted == PAGE

    def test_insertion_at_hinted_line(self):
        text, changed = replace_span("a\nb\n", "", "inserted\n", line_hint=2)
        assert changed
        assert text == "a\ninserted\nb\n"

        again, changed = replace_span(text, "", "inserted\n", line_hint=2)
        assert not changed
        assert again == text

    def test_deletion_already_applied(self):
        text, changed = replace_span("clean text", "stray ", "")
        assert not changed
        assert text == "clean text"

    def test_missing_span_raises(self):
        with pytest.raises(ExecutionError):
            replace_span("nothing to see", "teh", "the")

    def test_identical_before_and_after(self):
        assert replace_span("same", "same", "same") == ("same", False)


def executor_returning(payload) -> PodWorkspaceExecutor:
    """An executor whose every command prints ``payload`` as JSON."""
    backend = MagicMock()
    backend.exec = AsyncMock(return_value=ExecResult(exit_code=0, stdout=json.dumps(payload), stderr=""))
    return PodWorkspaceExecutor(backend, ComputeRef(handle="dvl-abcd1234", namespace="docval-test"), workdir="/work")


class TestValidatorOutput:
    """Validator JSON that does not match the expected shape."""

    async def test_discover(self):
        executor = executor_returning({"pages": [{"path": "docs/a.md", "title": "A"}, {"path": "docs/b.md"}]})

        pages = await executor.discover_pages()

        assert [(p.number, p.path, p.title) for p in pages] == [(1, "docs/a.md", "A"), (2, "docs/b.md", "docs/b.md")]

    @pytest.mark.parametrize("payload", [
        {"pages": [{"title": "no path"}]},
        {"pages": ["docs/a.md"]},
        {"pages": 3},
    ])
    async def test_malformed_discover_raises(self, payload):
        with pytest.raises(ExecutionError):
            await executor_returning(payload).discover_pages()

    async def test_non_object_document_raises(self):
        with pytest.raises(ExecutionError):
            await executor_returning(["docs/a.md"]).discover_pages()

    async def test_malformed_findings_skipped(self):
        executor = executor_returning({"issues": [
            {"line": 2, "kind": "syntax", "description": "Typo", "excerpt": "teh"},
            {"line": 3},
            "not a finding",
        ]})

        issues = await executor.validate_page(Page(number=1, path="docs/a.md", title="A"))

        assert [(i.kind, i.location.line) for i in issues] == [("syntax", 2)]

    async def test_issues_not_a_list_raises(self):
        with pytest.raises(ExecutionError):
            await executor_returning({"issues": "none"}).validate_page(Page(number=1, path="docs/a.md", title="A"))

    @pytest.mark.parametrize("payload", [{"before": "teh"}, {"before": "teh", "after": None}])
    async def test_malformed_fix_raises(self, payload):
        executor = executor_returning(payload)
        issue = (await executor_returning({"issues": [{"line": 2, "kind": "syntax"}]}).validate_page(
            Page(number=1, path="docs/a.md", title="A")
        ))[0]

        with pytest.raises(ExecutionError):
            await executor.propose_fix(issue)
