"""
Workspace Executor - Repository work inside a sandbox
=====================================================

The pipeline never talks to git, the validator CLI or the Git host
directly; it drives a WorkspaceExecutor. PodWorkspaceExecutor runs
everything through ComputeBackend.exec in the session's Pod.

Validator CLI contract (JSON on stdout):
- ``<cmd> discover --format json <root>``
    {"pages": [{"path", "title", "requires_cluster"}]}
- ``<cmd> validate --format json --root <root> <page>``
    {"issues": [{"line", "end_line", "kind", "severity", "description", "excerpt"}]}
- ``<cmd> fix --format json --root <root> --issue -`` (issue JSON on stdin)
    {"before", "after", "rationale"} or {"skip": true, "reason"}
"""

import json
import logging
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from docval.core.config import settings
from docval.core.schemas import ComputeRef, Issue, IssueLocation, Page
from docval.core.validation.compute import ComputeBackend, ExecResult
from docval.core.validation.errors import ExecutionError

logger = logging.getLogger(__name__)


@dataclass
class FixProposal:
    """A proposed exact-span replacement for one issue."""
    before_text: str
    after_text: str
    rationale: str = ""


# ==========================================================================
# Span Replacement
# ==========================================================================

def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


def _occurrences(text: str, needle: str) -> list[int]:
    found = []
    start = text.find(needle)
    while start != -1:
        found.append(start)
        start = text.find(needle, start + 1)
    return found


def _line_offset(text: str, line: int) -> int:
    offset = 0
    for _ in range(max(line, 1) - 1):
        nxt = text.find("\n", offset)
        if nxt == -1:
            return len(text)
        offset = nxt + 1
    return offset


def replace_span(
    text: str,
    before: str,
    after: str,
    line_hint: Optional[int] = None,
) -> tuple[str, bool]:
    """
    Replace exactly one occurrence of ``before`` with ``after``.

    Idempotent: if the span already reads ``after`` the text is returned
    unchanged. When ``before`` occurs more than once, the occurrence
    nearest ``line_hint`` wins.

    Returns:
        (new_text, changed)

    Raises:
        ExecutionError: Neither ``before`` nor ``after`` is present
    """
    if before == after:
        return text, False

    after_spans = [(s, s + len(after)) for s in _occurrences(text, after)] if after else []

    if not before:
        # Pure insertion, anchored at the start of the hinted line
        if after_spans:
            return text, False
        offset = _line_offset(text, line_hint or 1)
        return text[:offset] + after + text[offset:], True

    targets = [
        s for s in _occurrences(text, before)
        if not any(a_start <= s and s + len(before) <= a_end for a_start, a_end in after_spans)
    ]
    if not targets:
        if after_spans or not after:
            return text, False
        raise ExecutionError(f"Flagged span not found: {before[:60]!r}")

    if line_hint is not None:
        target = min(targets, key=lambda s: abs(_line_of(text, s) - line_hint))
    else:
        target = targets[0]
    return text[:target] + after + text[target + len(before):], True


# ==========================================================================
# Workspace Executor Interface
# ==========================================================================

class WorkspaceExecutor(ABC):
    """Abstract interface for repository work inside a session's sandbox."""

    @abstractmethod
    async def prepare(self, repo: str, branch: str) -> None:
        """Clone the repo and check out ``branch``, creating it if missing."""
        pass

    @abstractmethod
    async def discover_pages(self) -> list[Page]:
        """Discover documentation pages, numbered from 1."""
        pass

    @abstractmethod
    async def validate_page(self, page: Page) -> list[Issue]:
        """Validate one page and return its findings."""
        pass

    @abstractmethod
    async def propose_fix(self, issue: Issue) -> Optional[FixProposal]:
        """Propose a fix for one issue, or None when no safe fix exists."""
        pass

    @abstractmethod
    async def apply_edit(
        self,
        path: str,
        before: str,
        after: str,
        line_hint: Optional[int] = None,
    ) -> bool:
        """Apply an exact-span edit. Returns False if it was already applied."""
        pass

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        """Write a file inside the sandbox."""
        pass

    @abstractmethod
    async def commit_and_push(self, message: str) -> bool:
        """Commit pending changes and push. Returns False if nothing changed."""
        pass

    @abstractmethod
    async def open_or_update_pr(
        self,
        title: str,
        body: str,
        existing_ref: Optional[str] = None,
    ) -> str:
        """Open a PR, or update ``existing_ref``. Returns the PR reference."""
        pass


# ==========================================================================
# Pod Workspace Executor
# ==========================================================================

class PodWorkspaceExecutor(WorkspaceExecutor):
    """WorkspaceExecutor that runs every step via exec in the session Pod."""

    def __init__(
        self,
        backend: ComputeBackend,
        compute_ref: ComputeRef,
        workdir: Optional[str] = None,
    ):
        self.backend = backend
        self.compute_ref = compute_ref
        self.workdir = workdir or settings.SANDBOX_WORKDIR
        self.validator = settings.VALIDATOR_COMMAND
        self.branch: Optional[str] = None

    # ------------------------------------------------------------------
    # Exec helpers
    # ------------------------------------------------------------------

    async def _sh(
        self,
        script: str,
        stdin: Optional[str] = None,
        check: bool = True,
    ) -> ExecResult:
        if stdin is not None:
            # The exec stream never closes stdin; read exactly what was sent.
            script = f"head -c {len(stdin.encode('utf-8'))} | {{ {script}; }}"

        result = await self.backend.exec(
            self.compute_ref.handle,
            ["sh", "-c", script],
            stdin=stdin,
        )
        if check and not result.ok:
            raise ExecutionError(
                f"Command failed with exit code {result.exit_code}: "
                f"{(result.stderr or result.stdout).strip()[:500]}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    async def _validator_json(self, args: str, stdin: Optional[str] = None) -> dict:
        result = await self._sh(
            f"cd {shlex.quote(self.workdir)} && {self.validator} {args}",
            stdin=stdin,
        )
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ExecutionError(f"Validator returned invalid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise ExecutionError("Validator returned a non-object JSON document")
        return payload

    def _path(self, path: str) -> str:
        return f"{self.workdir.rstrip('/')}/{path.lstrip('/')}"

    # ------------------------------------------------------------------
    # Repository
    # ------------------------------------------------------------------

    async def prepare(self, repo: str, branch: str) -> None:
        workdir = shlex.quote(self.workdir)
        quoted_branch = shlex.quote(branch)
        script = "\n".join([
            "set -e",
            "git config --global credential.helper "
            + shlex.quote('!f() { echo username=x-access-token; echo "password=$GIT_TOKEN"; }; f'),
            f"git config --global user.name {shlex.quote(settings.GIT_AUTHOR_NAME)}",
            f"git config --global user.email {shlex.quote(settings.GIT_AUTHOR_EMAIL)}",
            f"if [ ! -d {workdir}/.git ]; then git clone {shlex.quote(repo)} {workdir}; fi",
            f"cd {workdir}",
            "git fetch origin",
            f"if git ls-remote --exit-code --heads origin {quoted_branch} >/dev/null; then",
            f"  git checkout -B {quoted_branch} origin/{quoted_branch}",
            "else",
            f"  git checkout -B {quoted_branch}",
            "fi",
        ])
        await self._sh(script)
        self.branch = branch
        logger.info(f"Workspace prepared in {self.compute_ref.handle}: {repo}@{branch}")

    async def commit_and_push(self, message: str) -> bool:
        workdir = shlex.quote(self.workdir)
        result = await self._sh(
            f"cd {workdir} && git add -A && "
            f"if git diff --cached --quiet; then echo NOCHANGE; "
            f"else git commit -q -m {shlex.quote(message)} && git push -q -u origin HEAD; fi"
        )
        return "NOCHANGE" not in result.stdout

    async def open_or_update_pr(
        self,
        title: str,
        body: str,
        existing_ref: Optional[str] = None,
    ) -> str:
        workdir = shlex.quote(self.workdir)
        gh = f'cd {workdir} && GH_TOKEN="$GIT_TOKEN" gh pr'
        if existing_ref:
            await self._sh(
                f"{gh} edit {shlex.quote(existing_ref)} "
                f"--title {shlex.quote(title)} --body-file -",
                stdin=body,
            )
            return existing_ref

        result = await self._sh(
            f"{gh} create --title {shlex.quote(title)} --body-file -",
            stdin=body,
        )
        lines = [line for line in result.stdout.strip().splitlines() if line.strip()]
        if not lines:
            raise ExecutionError("gh pr create returned no PR reference")
        return lines[-1].strip()

    # ------------------------------------------------------------------
    # Validator
    # ------------------------------------------------------------------

    async def discover_pages(self) -> list[Page]:
        payload = await self._validator_json(
            f"discover --format json {shlex.quote(self.workdir)}"
        )
        try:
            return [
                Page(
                    number=number,
                    path=item["path"],
                    title=item.get("title") or item["path"],
                    requires_cluster=bool(item.get("requires_cluster", False)),
                )
                for number, item in enumerate(payload.get("pages", []), start=1)
            ]
        except (KeyError, TypeError, AttributeError, ValidationError) as e:
            raise ExecutionError(f"Validator discover output is malformed: {e!r}") from e

    async def validate_page(self, page: Page) -> list[Issue]:
        payload = await self._validator_json(
            f"validate --format json --root {shlex.quote(self.workdir)} {shlex.quote(page.path)}"
        )
        findings = payload.get("issues", [])
        if not isinstance(findings, list):
            raise ExecutionError("Validator issues output is not a list")
        issues = []
        for item in findings:
            try:
                issues.append(Issue(
                    page=page.path,
                    location=IssueLocation(line=item.get("line"), end_line=item.get("end_line")),
                    kind=item["kind"],
                    severity=item.get("severity", "medium"),
                    description=item.get("description", ""),
                    excerpt=item.get("excerpt"),
                ))
            except (KeyError, TypeError, AttributeError, ValidationError) as e:
                logger.warning(f"Skipping malformed finding on {page.path}: {e}")
        return issues

    async def propose_fix(self, issue: Issue) -> Optional[FixProposal]:
        payload = await self._validator_json(
            f"fix --format json --root {shlex.quote(self.workdir)} --issue -",
            stdin=issue.model_dump_json(),
        )
        if payload.get("skip"):
            logger.info(f"No fix proposed for {issue.id}: {payload.get('reason', '')}")
            return None
        try:
            before, after = payload["before"], payload["after"]
        except KeyError as e:
            raise ExecutionError(f"Validator fix output missing {e}") from e
        if not isinstance(before, str) or not isinstance(after, str):
            raise ExecutionError("Validator fix output must carry string before/after text")
        return FixProposal(
            before_text=before,
            after_text=after,
            rationale=str(payload.get("rationale") or ""),
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def read_file(self, path: str) -> str:
        result = await self._sh(f"cat {shlex.quote(self._path(path))}")
        return result.stdout

    async def write_file(self, path: str, content: str) -> None:
        target = shlex.quote(self._path(path))
        await self._sh(f'mkdir -p "$(dirname {target})" && cat > {target}', stdin=content)

    async def apply_edit(
        self,
        path: str,
        before: str,
        after: str,
        line_hint: Optional[int] = None,
    ) -> bool:
        text = await self.read_file(path)
        new_text, changed = replace_span(text, before, after, line_hint)
        if changed:
            await self.write_file(path, new_text)
        return changed
