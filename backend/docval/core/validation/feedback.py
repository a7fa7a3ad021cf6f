"""
Feedback Handler - Reviewer feedback replayed against a session
===============================================================

Free-text feedback ("the rewrite in step 3 changed the meaning, put it
back") is resolved to per-fix actions:

- REVERT: apply the inverse edit, mark the fix reverted, record the
  inverse entry
- AMEND: revert, then apply a new rewrite drafted with every earlier
  complaint and rejected rewrite of that issue as negative context
- NOOP: record the note, touch nothing

Only REVERT and AMEND need compute, which is recreated on demand when
the session's Pod has been reaped. Everything a piece of feedback
changes lands in the store in one mutation.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import structlog

from docval.core.models import FeedbackAction, FeedbackStatus, FixStatus, TargetStatus
from docval.core.schemas import (
    FeedbackEntry,
    FeedbackResult,
    Fix,
    Issue,
    ResultingAction,
    Session,
    TargetResult,
)
from docval.core.validation.ai_client import AIServiceClient
from docval.core.validation.errors import (
    AIServiceError,
    ExecutionError,
    SessionFinished,
)
from docval.core.validation.pod_manager import PodLifecycleManager
from docval.core.validation.session_store import SessionStore
from docval.core.validation.workspace import WorkspaceExecutor

logger = structlog.get_logger()


# ==========================================================================
# Resolution Types
# ==========================================================================

@dataclass
class ResolvedAction:
    """One fix the feedback is about, and what to do with it."""
    fix_id: str
    action: FeedbackAction
    note: str = ""


@dataclass
class FeedbackResolution:
    """What a resolver made of a piece of feedback."""
    actions: list[ResolvedAction] = field(default_factory=list)
    clarification: Optional[str] = None


@dataclass
class NegativeContext:
    """Everything reviewers already said no to for one issue."""
    feedback_texts: list[str] = field(default_factory=list)
    rejected_rewrites: list[str] = field(default_factory=list)


def negative_context_for(session: Session, issue_id: str, current_text: str) -> NegativeContext:
    """Collect complaints and rejected rewrites across an issue's whole fix lineage."""
    lineage = [f for f in session.fixes_for_issue(issue_id) if not f.is_inverse]
    lineage_ids = {f.id for f in lineage}

    texts = [entry.raw_text for entry in session.feedback_for_fixes(lineage_ids)]
    texts.append(current_text)

    rejected = []
    for fix in lineage:
        if fix.status in (FixStatus.REVERTED, FixStatus.APPLIED) and fix.after_text not in rejected:
            rejected.append(fix.after_text)
    return NegativeContext(feedback_texts=texts, rejected_rewrites=rejected)


def _normalise(text: str) -> str:
    return " ".join(text.split())


# ==========================================================================
# Resolvers
# ==========================================================================

class FeedbackResolver(ABC):
    """Maps reviewer text onto fixes and drafts amended rewrites."""

    @abstractmethod
    async def resolve(self, session: Session, text: str) -> FeedbackResolution:
        pass

    @abstractmethod
    async def propose_amendment(
        self,
        fix: Fix,
        issue: Issue,
        negative_context: NegativeContext,
    ) -> str:
        """Return replacement text for the span ``fix.before_text``."""
        pass


RESOLVE_SYSTEM_PROMPT = """You map documentation review feedback onto recorded fixes.
Reply with one JSON object only:
{"actions": [{"fix_id": "...", "action": "revert" | "amend" | "noop", "note": "..."}],
 "clarification": null | "question for the reviewer"}
Use "revert" when the reviewer wants the original text back, "amend" when they want a
different rewrite, "noop" when they comment without asking for a change.
Only use fix ids from the list. If you cannot tell which fix is meant, return no actions
and a clarification question."""

AMEND_SYSTEM_PROMPT = """You rewrite one span of documentation.
Preserve the meaning of the original exactly; change wording only.
Never repeat any rewrite the reviewers rejected.
Reply with one JSON object only: {"after": "replacement text for the original span"}"""


class AIFeedbackResolver(FeedbackResolver):
    """FeedbackResolver backed by the AI text service."""

    def __init__(self, client: Optional[AIServiceClient] = None):
        self.client = client or AIServiceClient()

    async def resolve(self, session: Session, text: str) -> FeedbackResolution:
        candidates = []
        for fix in session.fixes:
            if fix.is_inverse:
                continue
            issue = session.get_issue(fix.issue_id)
            candidates.append({
                "fix_id": fix.id,
                "status": fix.status.value,
                "page": issue.page if issue else None,
                "line": issue.location.line if issue else None,
                "kind": issue.kind.value if issue else None,
                "before": fix.before_text,
                "after": fix.after_text,
                "rationale": fix.rationale,
            })

        prompt = (
            f"Recorded fixes:\n{json.dumps(candidates, indent=2)}\n\n"
            f"Reviewer feedback:\n{text}"
        )
        try:
            reply = await self.client.complete_json(RESOLVE_SYSTEM_PROMPT, prompt)
        except AIServiceError as e:
            logger.warning("feedback_resolution_failed", session_id=session.session_id, error=str(e))
            return FeedbackResolution(clarification=f"Could not interpret the feedback: {e}")

        actions = []
        for item in reply.get("actions") or []:
            try:
                actions.append(ResolvedAction(
                    fix_id=str(item["fix_id"]),
                    action=FeedbackAction(item["action"]),
                    note=str(item.get("note") or ""),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning("feedback_action_ignored", item=item)
        return FeedbackResolution(actions=actions, clarification=reply.get("clarification"))

    async def propose_amendment(
        self,
        fix: Fix,
        issue: Issue,
        negative_context: NegativeContext,
    ) -> str:
        prompt = "\n".join([
            f"Issue ({issue.kind.value}): {issue.description}",
            f"Original span:\n{fix.before_text}",
            "Rejected rewrites:",
            *[f"- {r}" for r in negative_context.rejected_rewrites],
            "Reviewer feedback so far:",
            *[f"- {t}" for t in negative_context.feedback_texts],
        ])
        reply = await self.client.complete_json(AMEND_SYSTEM_PROMPT, prompt)
        after = reply.get("after")
        if not isinstance(after, str):
            raise AIServiceError("Amendment reply had no 'after' text")
        return after


# ==========================================================================
# Handler
# ==========================================================================

@dataclass
class _Plan:
    """Effects of one feedback entry, collected before the single write."""
    targets: list[TargetResult] = field(default_factory=list)
    actions: list[ResultingAction] = field(default_factory=list)
    new_fixes: list[Fix] = field(default_factory=list)
    reverted: dict[str, Optional[str]] = field(default_factory=dict)  # fix id -> superseded_by


class FeedbackHandler:
    """Applies reviewer feedback to a session."""

    def __init__(
        self,
        store: SessionStore,
        pods: PodLifecycleManager,
        resolver: FeedbackResolver,
    ):
        self.store = store
        self.pods = pods
        self.resolver = resolver
        self._locks: dict[str, asyncio.Lock] = {}

    async def apply_feedback(self, session_id: str, raw_text: str) -> FeedbackResult:
        """
        Resolve and apply one piece of feedback.

        Feedback on one session is applied one entry at a time, so a fix
        status read at the start still holds when the entry is recorded.

        Raises:
            SessionNotFound: Unknown session
            SessionFinished: Session is finished
            ProvisioningError: Compute was needed and could not be created
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            return await self._apply_feedback(session_id, raw_text)

    async def _apply_feedback(self, session_id: str, raw_text: str) -> FeedbackResult:
        log = logger.bind(session_id=session_id)
        session = await self.store.load(session_id)
        if session.is_finished:
            raise SessionFinished(session_id)

        try:
            resolution = await self.resolver.resolve(session, raw_text)
        except AIServiceError as e:
            resolution = FeedbackResolution(clarification=f"Could not interpret the feedback: {e}")
        actions = self._known_actions(session, resolution.actions)
        if not actions:
            log.info("feedback_needs_clarification")
            return FeedbackResult(
                session_id=session_id,
                status=FeedbackStatus.CLARIFICATION_NEEDED,
                message=resolution.clarification
                or "Could not tell which fix the feedback refers to",
            )

        plan = _Plan()
        code_actions = []
        for resolved in actions:
            fix = session.get_fix(resolved.fix_id)
            if resolved.action == FeedbackAction.NOOP:
                self._record(plan, resolved, TargetStatus.APPLIED)
            elif fix.status == FixStatus.REVERTED:
                plan.targets.append(TargetResult(
                    fix_id=fix.id,
                    action=resolved.action,
                    status=TargetStatus.ALREADY_REVERTED,
                    note=f"Fix {fix.id} is already reverted",
                ))
            elif fix.status == FixStatus.FAILED:
                plan.targets.append(TargetResult(
                    fix_id=fix.id,
                    action=resolved.action,
                    status=TargetStatus.REFUSED,
                    note=f"Fix {fix.id} was never applied",
                ))
            else:
                code_actions.append(resolved)

        if code_actions:
            ref = await self.pods.ensure_compute(session)
            executor = self.pods.executor_for(ref)
            session = await self.store.load(session_id)

            for resolved in code_actions:
                if resolved.action == FeedbackAction.REVERT:
                    await self._revert(session, executor, resolved, plan)
                else:
                    await self._amend(session, executor, resolved, raw_text, plan)

            if plan.new_fixes:
                try:
                    await executor.commit_and_push(f"docs: apply review feedback on {session_id}")
                except ExecutionError as e:
                    # Edits stay committed in the workspace; the next push carries them
                    log.warning("feedback_push_failed", error=str(e))

        if not plan.actions:
            log.info("feedback_rejected", targets=len(plan.targets))
            return FeedbackResult(
                session_id=session_id,
                status=FeedbackStatus.REJECTED,
                message="Nothing to change: " + "; ".join(t.note for t in plan.targets),
                targets=plan.targets,
            )

        entry = FeedbackEntry(
            raw_text=raw_text,
            target_fix_ids=[a.fix_id for a in actions],
            resulting_actions=plan.actions,
        )

        def record(s: Session) -> None:
            if s.is_finished:
                raise SessionFinished(s.session_id)
            for fix_id, superseded_by in plan.reverted.items():
                original = s.get_fix(fix_id)
                original.status = FixStatus.REVERTED
                if superseded_by:
                    original.superseded_by = superseded_by
            s.fixes.extend(plan.new_fixes)
            s.feedback.append(entry)

        await self.store.mutate(session_id, record)

        applied = all(t.status == TargetStatus.APPLIED for t in plan.targets)
        status = FeedbackStatus.APPLIED if applied else FeedbackStatus.PARTIAL
        log.info("feedback_applied", entry_id=entry.id, status=status.value, new_fixes=len(plan.new_fixes))
        return FeedbackResult(
            session_id=session_id,
            status=status,
            message=f"{len(plan.actions)} action(s) recorded",
            entry=entry,
            targets=plan.targets,
        )

    @staticmethod
    def _known_actions(session: Session, actions: list[ResolvedAction]) -> list[ResolvedAction]:
        """Drop actions on unknown or inverse fixes, and repeats."""
        known = []
        seen = set()
        for resolved in actions:
            fix = session.get_fix(resolved.fix_id)
            if fix is None or fix.is_inverse or fix.id in seen:
                continue
            seen.add(fix.id)
            known.append(resolved)
        return known

    @staticmethod
    def _record(
        plan: _Plan,
        resolved: ResolvedAction,
        status: TargetStatus,
        note: Optional[str] = None,
        action: Optional[FeedbackAction] = None,
        new_fix_ids: Optional[list[str]] = None,
    ) -> None:
        action = action or resolved.action
        note = resolved.note if note is None else note
        plan.targets.append(TargetResult(
            fix_id=resolved.fix_id,
            action=action,
            status=status,
            note=note,
            new_fix_ids=new_fix_ids or [],
        ))
        plan.actions.append(ResultingAction(
            fix_id=resolved.fix_id,
            action=action,
            note=note,
            new_fix_ids=new_fix_ids or [],
        ))

    @staticmethod
    def _inverse_of(fix: Fix, note: str) -> Fix:
        return Fix(
            issue_id=fix.issue_id,
            before_text=fix.after_text,
            after_text=fix.before_text,
            rationale=f"Revert {fix.id}" + (f": {note}" if note else ""),
            reverts_fix_id=fix.id,
        )

    async def _apply(self, executor: WorkspaceExecutor, issue: Issue, fix: Fix) -> None:
        await executor.apply_edit(issue.page, fix.before_text, fix.after_text, issue.location.line)

    async def _revert(
        self,
        session: Session,
        executor: WorkspaceExecutor,
        resolved: ResolvedAction,
        plan: _Plan,
    ) -> None:
        fix = session.get_fix(resolved.fix_id)
        issue = session.get_issue(fix.issue_id)
        inverse = self._inverse_of(fix, resolved.note)
        try:
            await self._apply(executor, issue, inverse)
        except ExecutionError as e:
            plan.targets.append(TargetResult(
                fix_id=fix.id, action=resolved.action, status=TargetStatus.FAILED, note=str(e),
            ))
            return

        plan.new_fixes.append(inverse)
        plan.reverted[fix.id] = None
        self._record(plan, resolved, TargetStatus.APPLIED, new_fix_ids=[inverse.id])

    async def _amend(
        self,
        session: Session,
        executor: WorkspaceExecutor,
        resolved: ResolvedAction,
        raw_text: str,
        plan: _Plan,
    ) -> None:
        fix = session.get_fix(resolved.fix_id)
        issue = session.get_issue(fix.issue_id)
        context = negative_context_for(session, issue.id, raw_text)

        try:
            proposal = await self.resolver.propose_amendment(fix, issue, context)
        except AIServiceError as e:
            plan.targets.append(TargetResult(
                fix_id=fix.id, action=resolved.action, status=TargetStatus.FAILED, note=str(e),
            ))
            return

        rejected = {_normalise(r) for r in context.rejected_rewrites}
        if _normalise(proposal) in rejected:
            self._record(
                plan,
                resolved,
                TargetStatus.REFUSED,
                note="Proposed amendment repeats a rejected rewrite; nothing changed",
                action=FeedbackAction.NOOP,
            )
            return

        inverse = self._inverse_of(fix, resolved.note)
        amended = Fix(
            issue_id=issue.id,
            before_text=fix.before_text,
            after_text=proposal,
            rationale=f"Amends {fix.id}" + (f": {resolved.note}" if resolved.note else ""),
        )
        try:
            await self._apply(executor, issue, inverse)
        except ExecutionError as e:
            plan.targets.append(TargetResult(
                fix_id=fix.id, action=resolved.action, status=TargetStatus.FAILED, note=str(e),
            ))
            return

        try:
            await self._apply(executor, issue, amended)
        except ExecutionError as e:
            # Put the original fix back so the workspace matches the store
            try:
                await self._apply(executor, issue, fix)
            except ExecutionError as restore_error:
                logger.error("amend_restore_failed", fix_id=fix.id, error=str(restore_error))
            plan.targets.append(TargetResult(
                fix_id=fix.id, action=resolved.action, status=TargetStatus.FAILED, note=str(e),
            ))
            return

        plan.new_fixes.extend([inverse, amended])
        plan.reverted[fix.id] = amended.id
        self._record(plan, resolved, TargetStatus.APPLIED, new_fix_ids=[inverse.id, amended.id])
