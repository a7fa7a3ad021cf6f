"""
Markdown validation report, used as the PR body.
"""

from docval.core.models import FixStatus, PageStatus
from docval.core.schemas import Session

_STATUS_MARK = {
    PageStatus.VALIDATED: "validated",
    PageStatus.FAILED: "failed",
    PageStatus.PENDING: "pending",
}


def render_report(session: Session) -> str:
    selected = [p for p in session.pages if p.status != PageStatus.NOT_SELECTED]
    applied = session.applied_fixes()
    reverted = [f for f in session.fixes if f.status == FixStatus.REVERTED]
    failed = [f for f in session.fixes if f.status == FixStatus.FAILED]

    lines = [
        "## Documentation validation",
        "",
        f"Session `{session.session_id}` on `{session.branch}`.",
        "",
        f"- Pages checked: {len(selected)}",
        f"- Issues found: {len(session.issues)}",
        f"- Fixes applied: {len(applied)}",
    ]
    if reverted:
        lines.append(f"- Fixes reverted after review: {len(reverted)}")
    if failed:
        lines.append(f"- Fixes that could not be applied: {len(failed)}")

    for page in selected:
        issues = session.issues_for_page(page.path)
        lines += ["", f"### {page.title or page.path} ({_STATUS_MARK[page.status]})", ""]
        if page.error:
            lines.append(f"> {page.error}")
            lines.append("")
        if not issues:
            lines.append("No issues found.")
            continue
        for issue in issues:
            where = f"L{issue.location.line}" if issue.location.line else "page"
            fixes = [f for f in session.fixes_for_issue(issue.id) if not f.is_inverse]
            state = fixes[-1].status.value if fixes else "unfixed"
            lines.append(
                f"- `{issue.kind.value}` ({issue.severity.value}, {where}): "
                f"{issue.description} [{state}]"
            )

    if session.feedback:
        lines += ["", "### Review feedback", ""]
        for entry in session.feedback:
            actions = ", ".join(
                f"{a.action.value} {a.fix_id}" for a in entry.resulting_actions
            ) or "no change"
            lines.append(f"- {entry.raw_text.strip()} ({actions})")

    return "\n".join(lines) + "\n"
