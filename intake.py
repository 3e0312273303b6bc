"""
Commit / assessment intake.

A commit is the user's free-text progress note for a day. `assess_commit`
sends it, together with the open checkpoints it concerns, to the assessment
service and feeds each suggestion through the progress ledger.

Batch policy (what happens when one suggestion of a run fails to persist):

  continue  each suggestion (assessment row + ledger write) commits on its
            own; a failing one is rolled back alone, counted as failed, and
            the rest of the run carries on.
  atomic    the whole run is one transaction; any failure rolls back every
            assessment row and ledger write of the run and is raised.

Nothing at all is written when the service is unavailable or its answer is
malformed, whichever the policy.
"""

import logging
from typing import List, Optional, Tuple

from assessment_models import AssessCommitResult, CheckpointBrief, CheckpointSuggestion
from assessor import ProgressAssessor
from checkpoint_store import CheckpointStore
from commit_store import CommitStore
from config import BATCH_POLICIES
from errors import (
    AssessmentUnavailableError, CommitNotFoundError, InvalidRangeError,
    MalformedAssessmentError, MilestoneNotFoundError, NotFoundError,
    QuestNotFoundError, StorageError,
)
from models import Assessment, Checkpoint, Commit, CommitCreate, CommitUpdate, ProgressChange, ProgressSource
from progress_ledger import ProgressLedger

logger = logging.getLogger(__name__)


REASON_PREFIX = "AI assessment: "


class CommitIntake:

    def __init__(
        self,
        checkpoints: CheckpointStore,
        commits: CommitStore,
        ledger: ProgressLedger,
        assessor: ProgressAssessor,
        batch_policy: str = "continue",
        reason_max_length: int = 200,
    ):
        if batch_policy not in BATCH_POLICIES:
            raise ValueError(f"batch_policy must be one of {BATCH_POLICIES}, got {batch_policy!r}")
        if commits.db is not ledger.db:
            raise ValueError("commit store and ledger must share one database")
        self.checkpoints = checkpoints
        self.commits = commits
        self.ledger = ledger
        self.assessor = assessor
        self.batch_policy = batch_policy
        self.reason_max_length = reason_max_length

    # ── commits ──────────────────────────────────────────────────────

    def submit_commit(self, commit: CommitCreate) -> Commit:
        if self.checkpoints.get_quest(commit.quest_id) is None:
            raise QuestNotFoundError(commit.quest_id)
        if commit.milestone_id is not None:
            milestone = self.checkpoints.get_milestone(commit.milestone_id)
            if milestone is None or milestone.quest_id != commit.quest_id:
                raise MilestoneNotFoundError(commit.milestone_id)
        return self.commits.create(commit)

    def update_commit(self, commit_id: int, updates: CommitUpdate) -> Commit:
        updated = self.commits.update(commit_id, updates)
        if updated is None:
            raise CommitNotFoundError(commit_id)
        return updated

    # ── assessment ───────────────────────────────────────────────────

    def assess_commit(self, commit_id: int) -> AssessCommitResult:
        commit = self.commits.get(commit_id)
        if commit is None:
            raise CommitNotFoundError(commit_id)

        result = AssessCommitResult(commit_id=commit_id, policy=self.batch_policy)

        open_checkpoints = self.checkpoints.open_checkpoints_for_commit(commit)
        if not open_checkpoints:
            result.message = "No active checkpoints to assess"
            logger.info(f"Commit {commit_id}: no open checkpoints, nothing to assess")
            return result

        briefs = [
            CheckpointBrief(id=cp.id, title=cp.title, description=cp.description, current_progress=cp.progress)
            for cp in open_checkpoints
        ]
        outcome = self.assessor.assess(commit.content, briefs)
        if outcome.status == "unavailable":
            raise AssessmentUnavailableError(
                f"Assessment service unavailable: {outcome.detail}", {"commit_id": commit_id}
            )
        if not outcome.ok:
            raise MalformedAssessmentError(
                f"Assessment service returned an invalid answer: {outcome.detail}", {"commit_id": commit_id}
            )

        sent = {cp.id: cp for cp in open_checkpoints}
        suggestions: List[CheckpointSuggestion] = []
        for suggestion in outcome.result.checkpoints:
            if suggestion.checkpoint_id not in sent:
                result.skipped += 1
                logger.warning(
                    f"Commit {commit_id}: ignoring suggestion for checkpoint "
                    f"{suggestion.checkpoint_id}, which was not part of the request"
                )
                continue
            suggestions.append(suggestion)

        if self.batch_policy == "atomic":
            self._run_atomic(commit, suggestions, sent, outcome.model_version, result)
        else:
            self._run_continue(commit, suggestions, sent, outcome.model_version, result)

        result.assessed = len(result.assessments)
        result.updated = len(result.progress_updates)
        result.unchanged = result.assessed - result.updated
        result.message = (
            f"Assessed {result.assessed} checkpoint(s), {result.updated} progress updated, "
            f"{result.unchanged} unchanged, {result.skipped} skipped, {result.failed} failed"
        )
        logger.info(f"Commit {commit_id}: {result.message}")
        return result

    def _run_atomic(self, commit, suggestions, sent, model_version, result) -> None:
        with self.ledger.db.transaction():
            for suggestion in suggestions:
                assessment, change = self._record(commit, suggestion, sent[suggestion.checkpoint_id], model_version)
                result.assessments.append(assessment)
                if change is not None:
                    result.progress_updates.append(change)

    def _run_continue(self, commit, suggestions, sent, model_version, result) -> None:
        for suggestion in suggestions:
            try:
                with self.ledger.db.transaction():
                    assessment, change = self._record(
                        commit, suggestion, sent[suggestion.checkpoint_id], model_version
                    )
            except (StorageError, NotFoundError, InvalidRangeError) as e:
                result.failed += 1
                logger.warning(
                    f"Commit {commit.id}: suggestion for checkpoint {suggestion.checkpoint_id} "
                    f"rolled back ({e.code}): {e}"
                )
                continue
            result.assessments.append(assessment)
            if change is not None:
                result.progress_updates.append(change)

    def _record(
        self,
        commit: Commit,
        suggestion: CheckpointSuggestion,
        checkpoint: Checkpoint,
        model_version: Optional[str],
    ) -> Tuple[Assessment, Optional[ProgressChange]]:
        """Store the raw suggestion, then push it through the ledger. Runs inside the caller's transaction."""
        assessment = self.commits.add_assessment(
            commit_id=commit.id,
            checkpoint_id=suggestion.checkpoint_id,
            assessed_progress=suggestion.new_progress,
            reasoning=suggestion.reasoning,
            confidence_score=suggestion.confidence,
            model_version=model_version,
        )
        change = self.ledger.apply(
            suggestion.checkpoint_id,
            suggestion.new_progress,
            ProgressSource(
                commit_id=commit.id,
                reason=REASON_PREFIX + suggestion.reasoning[: self.reason_max_length],
            ),
        )
        if change is not None and change.checkpoint_title is None:
            change.checkpoint_title = checkpoint.title
        return assessment, change
