"""Tests for commit intake and assessment runs under both batch policies."""

import pytest

from assessment_models import AssessmentOutcome
from conftest import ScriptedAssessor
from errors import (
    AssessmentUnavailableError, CommitNotFoundError, MalformedAssessmentError,
    MilestoneNotFoundError, QuestNotFoundError, StorageError,
)
from intake import REASON_PREFIX, CommitIntake
from models import CommitCreate, CommitUpdate


def _intake(checkpoints, commits, ledger, assessor, policy="continue", reason_max_length=200):
    return CommitIntake(checkpoints, commits, ledger, assessor, batch_policy=policy, reason_max_length=reason_max_length)


def _commit(intake, quest, content="Finished chapter 4 and half the exercises"):
    return intake.submit_commit(CommitCreate(quest_id=quest["quest"].id, commit_date="2025-03-01", content=content))


def _fail_history_for(db, checkpoint_id):
    db.conn.execute(
        f"""
        CREATE TRIGGER fail_one BEFORE INSERT ON checkpoint_progress_history
        WHEN NEW.checkpoint_id = {int(checkpoint_id)}
        BEGIN
            SELECT RAISE(ABORT, 'refused');
        END
        """
    )


def _count(db, table):
    return db.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class TestSubmitCommit:

    def test_unknown_quest(self, checkpoints, commits, ledger, assessor):
        intake = _intake(checkpoints, commits, ledger, assessor)
        with pytest.raises(QuestNotFoundError):
            intake.submit_commit(CommitCreate(quest_id=77, commit_date="2025-03-01", content="x"))

    def test_milestone_from_other_quest(self, checkpoints, commits, ledger, assessor, quest):
        other = checkpoints.create_quest("Other")
        foreign = checkpoints.create_milestone(other.id, "Elsewhere", status="current")
        intake = _intake(checkpoints, commits, ledger, assessor)

        with pytest.raises(MilestoneNotFoundError):
            intake.submit_commit(CommitCreate(
                quest_id=quest["quest"].id, milestone_id=foreign.id, commit_date="2025-03-01", content="x"
            ))

    def test_rejects_bad_date_and_empty_content(self):
        with pytest.raises(ValueError):
            CommitCreate(quest_id=1, commit_date="03/01/2025", content="x")
        with pytest.raises(ValueError):
            CommitCreate(quest_id=1, commit_date="2025-03-01", content="   ")

    def test_update_content_keeps_date(self, checkpoints, commits, ledger, assessor, quest):
        intake = _intake(checkpoints, commits, ledger, assessor)
        commit = _commit(intake, quest)

        updated = intake.update_commit(commit.id, CommitUpdate(content="Edited", attachments=["notes.md"]))

        assert updated.content == "Edited"
        assert updated.attachments == ["notes.md"]
        assert updated.commit_date == "2025-03-01"

    def test_update_missing_commit(self, checkpoints, commits, ledger, assessor):
        intake = _intake(checkpoints, commits, ledger, assessor)
        with pytest.raises(CommitNotFoundError):
            intake.update_commit(404, CommitUpdate(content="x"))


class TestAssessCommit:

    def test_sends_only_open_checkpoints_of_current_milestone(self, checkpoints, commits, ledger, quest):
        a, b, c = quest["checkpoints"]
        ledger.apply(c.id, 100)
        assessor = ScriptedAssessor()
        intake = _intake(checkpoints, commits, ledger, assessor)

        intake.assess_commit(_commit(intake, quest).id)

        sent = assessor.calls[0]
        assert [brief.id for brief in sent] == [a.id, b.id]
        assert all(brief.current_progress == 0 for brief in sent)

    def test_explicit_milestone_overrides_current(self, checkpoints, commits, ledger, quest):
        later = checkpoints.create_milestone(quest["quest"].id, "Lifetimes", status="future", order_index=3)
        x = checkpoints.add_checkpoint(later.id, "Annotate a parser", order_index=1)
        y = checkpoints.add_checkpoint(later.id, "Read the nomicon chapter", order_index=2)
        done = checkpoints.add_checkpoint(later.id, "Watch the talk", order_index=3)
        ledger.apply(done.id, 100)
        assessor = ScriptedAssessor()
        intake = _intake(checkpoints, commits, ledger, assessor)
        commit = intake.submit_commit(CommitCreate(
            quest_id=quest["quest"].id, milestone_id=later.id, commit_date="2025-03-02", content="Lifetimes day",
        ))

        intake.assess_commit(commit.id)

        assert [brief.id for brief in assessor.calls[0]] == [x.id, y.id]

    def test_no_open_checkpoints(self, checkpoints, commits, ledger, quest):
        for cp in quest["checkpoints"]:
            ledger.apply(cp.id, 100)
        assessor = ScriptedAssessor()
        intake = _intake(checkpoints, commits, ledger, assessor)

        result = intake.assess_commit(_commit(intake, quest).id)

        assert result.message == "No active checkpoints to assess"
        assert result.assessments == []
        assert assessor.calls == []

    def test_unknown_commit(self, checkpoints, commits, ledger, assessor):
        intake = _intake(checkpoints, commits, ledger, assessor)
        with pytest.raises(CommitNotFoundError):
            intake.assess_commit(31337)

    def test_applies_suggestions_and_records_raw_values(self, checkpoints, commits, ledger, quests_db, quest):
        a, b, c = quest["checkpoints"]
        ledger.apply(b.id, 60)
        assessor = ScriptedAssessor().suggest(
            (a.id, 50, "Read the whole chapter"),
            (b.id, 40, "Only a few exercises"),
            (c.id, 0, "Not started"),
        )
        intake = _intake(checkpoints, commits, ledger, assessor)
        commit = _commit(intake, quest)

        result = intake.assess_commit(commit.id)

        assert result.assessed == 3
        assert result.updated == 1
        assert result.unchanged == 2
        assert [u.checkpoint_id for u in result.progress_updates] == [a.id]
        assert checkpoints.get(a.id).progress == 50
        assert checkpoints.get(b.id).progress == 60

        stored = {x.checkpoint_id: x for x in commits.assessments_for_commit(commit.id)}
        assert stored[b.id].assessed_progress == 40
        assert stored[b.id].model_version == "scripted"
        assert _count(quests_db, "ai_assessments") == 3

    def test_change_reason_prefixed_and_truncated(self, checkpoints, commits, ledger, quest):
        a = quest["checkpoints"][0]
        long_reason = "x" * 500
        assessor = ScriptedAssessor().suggest((a.id, 30, long_reason))
        intake = _intake(checkpoints, commits, ledger, assessor, reason_max_length=200)
        commit = _commit(intake, quest)

        intake.assess_commit(commit.id)

        entry = ledger.history_for_commit(commit.id)[0]
        assert entry.change_reason == REASON_PREFIX + "x" * 200
        assert entry.commit_id == commit.id

    def test_unknown_checkpoint_ids_skipped(self, checkpoints, commits, ledger, quests_db, quest):
        a = quest["checkpoints"][0]
        assessor = ScriptedAssessor().suggest((a.id, 20, "Some reading"), (4242, 90, "Invented"))
        intake = _intake(checkpoints, commits, ledger, assessor)

        result = intake.assess_commit(_commit(intake, quest).id)

        assert result.skipped == 1
        assert result.assessed == 1
        assert _count(quests_db, "ai_assessments") == 1

    def test_unavailable_writes_nothing(self, checkpoints, commits, ledger, quests_db, quest):
        assessor = ScriptedAssessor(AssessmentOutcome.unavailable("timed out after 30s"))
        intake = _intake(checkpoints, commits, ledger, assessor)
        commit = _commit(intake, quest)

        with pytest.raises(AssessmentUnavailableError):
            intake.assess_commit(commit.id)

        assert _count(quests_db, "ai_assessments") == 0
        assert _count(quests_db, "checkpoint_progress_history") == 0
        assert commits.get(commit.id) is not None

    def test_malformed_writes_nothing(self, checkpoints, commits, ledger, quests_db, quest):
        assessor = ScriptedAssessor(AssessmentOutcome.malformed("not json"))
        intake = _intake(checkpoints, commits, ledger, assessor)

        with pytest.raises(MalformedAssessmentError):
            intake.assess_commit(_commit(intake, quest).id)

        assert _count(quests_db, "ai_assessments") == 0
        assert _count(quests_db, "checkpoint_progress_history") == 0


class TestBatchPolicies:

    def _run(self, policy, checkpoints, commits, ledger, quests_db, quest):
        a, b, c = quest["checkpoints"]
        assessor = ScriptedAssessor().suggest(
            (a.id, 30, "first"), (b.id, 40, "second"), (c.id, 50, "third"),
        )
        intake = _intake(checkpoints, commits, ledger, assessor, policy=policy)
        commit = _commit(intake, quest)
        _fail_history_for(quests_db, b.id)
        return intake, commit

    def test_continue_rolls_back_only_the_failing_suggestion(self, checkpoints, commits, ledger, quests_db, quest):
        a, b, c = quest["checkpoints"]
        intake, commit = self._run("continue", checkpoints, commits, ledger, quests_db, quest)

        result = intake.assess_commit(commit.id)

        assert result.failed == 1
        assert result.updated == 2
        assert checkpoints.get(a.id).progress == 30
        assert checkpoints.get(b.id).progress == 0
        assert checkpoints.get(c.id).progress == 50
        # the failed suggestion's assessment row went with it
        assert {x.checkpoint_id for x in commits.assessments_for_commit(commit.id)} == {a.id, c.id}

    def test_atomic_rolls_back_the_whole_run(self, checkpoints, commits, ledger, quests_db, quest):
        intake, commit = self._run("atomic", checkpoints, commits, ledger, quests_db, quest)

        with pytest.raises(StorageError):
            intake.assess_commit(commit.id)

        assert all(checkpoints.get(cp.id).progress == 0 for cp in quest["checkpoints"])
        assert _count(quests_db, "ai_assessments") == 0
        assert _count(quests_db, "checkpoint_progress_history") == 0

    def test_unknown_policy_rejected(self, checkpoints, commits, ledger, assessor):
        with pytest.raises(ValueError):
            _intake(checkpoints, commits, ledger, assessor, policy="yolo")
