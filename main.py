import os
from dotenv import load_dotenv
load_dotenv()  # Load .env before anything else

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from assessment_models import AssessCommitResult
from assessor import ProgressAssessor
from checkpoint_store import CheckpointStore
from commit_store import CommitStore
from config import Settings
from db import Database
from errors import (
    CheckpointNotFoundError, CommitNotFoundError, NotCompletedError,
    PlannerError, ScheduleBlockNotFoundError,
)
from intake import CommitIntake
from models import (
    BlockUpdateResult, CommitCreate, CommitUpdate, CompletionCommentUpdate,
    CompletionCreate, ManualProgressUpdate, ProgressSource, ScheduleBlockCreate,
    ScheduleBlockBatch, ScheduleBlockUpdate,
)
from progress_ledger import ProgressLedger
from schedule_store import ScheduleStore
from synchronizer import CompletionSynchronizer
from task_store import TaskStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived handle the endpoints need, built once per app."""
    quests_db: Database
    schedule_db: Database
    tasks_db: Database
    checkpoints: CheckpointStore
    commits: CommitStore
    ledger: ProgressLedger
    intake: CommitIntake
    schedule: ScheduleStore
    tasks: TaskStore
    synchronizer: CompletionSynchronizer

    @classmethod
    def open(cls, settings: Settings, assessor: Optional[ProgressAssessor] = None) -> "Services":
        quests_db = Database(settings.quests_db_path)
        schedule_db = Database(settings.schedule_db_path)
        tasks_db = Database(settings.tasks_db_path)

        checkpoints = CheckpointStore(quests_db)
        commits = CommitStore(quests_db)
        ledger = ProgressLedger(quests_db)
        schedule = ScheduleStore(schedule_db)
        tasks = TaskStore(tasks_db)

        assessor = assessor or ProgressAssessor(
            api_key=settings.gemini_api_key,
            model=settings.assessment_model,
            timeout_seconds=settings.assessment_timeout_seconds,
        )
        intake = CommitIntake(
            checkpoints, commits, ledger, assessor,
            batch_policy=settings.assessment_batch_policy,
            reason_max_length=settings.change_reason_max_length,
        )
        return cls(
            quests_db=quests_db,
            schedule_db=schedule_db,
            tasks_db=tasks_db,
            checkpoints=checkpoints,
            commits=commits,
            ledger=ledger,
            intake=intake,
            schedule=schedule,
            tasks=tasks,
            synchronizer=CompletionSynchronizer(schedule, tasks),
        )

    def close(self) -> None:
        for db in (self.quests_db, self.schedule_db, self.tasks_db):
            db.close()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def _assess_in_background(intake: CommitIntake, commit_id: int) -> None:
    try:
        result = intake.assess_commit(commit_id)
    except PlannerError as e:
        # nobody is waiting on this response; the commit stays and can be re-assessed
        logger.error(f"Background assessment of commit {commit_id} failed ({e.code}): {e}")
        return
    logger.info(f"Background assessment of commit {commit_id}: {result.message}")


def create_app(settings: Optional[Settings] = None, assessor: Optional[ProgressAssessor] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = Services.open(settings, assessor)
        app.state.services = services
        logger.info(f"Databases opened under {settings.data_dir} (batch policy: {settings.assessment_batch_policy})")
        try:
            yield
        finally:
            services.close()
            logger.info("Databases closed")

    app = FastAPI(title="Progress Ledger Engine", lifespan=lifespan)
    app.state.settings = settings

    @app.exception_handler(PlannerError)
    async def planner_error_handler(request: Request, exc: PlannerError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed ({exc.code}): {exc}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": "invalid_request", "detail": str(exc), "retry_safe": False},
        )

    # ── Commits ──────────────────────────────────────────────────────

    @app.post("/commits", status_code=201)
    async def submit_commit(
        body: CommitCreate,
        background_tasks: BackgroundTasks,
        auto_assess: bool = False,
        svc: Services = Depends(get_services),
    ):
        """
        Store a daily progress commit. With `auto_assess=true` the assessment
        runs after the response is sent; the commit is kept even if it fails.
        """
        commit = svc.intake.submit_commit(body)
        if auto_assess:
            background_tasks.add_task(_assess_in_background, svc.intake, commit.id)
        return {"success": True, "commit": commit, "assessment_scheduled": auto_assess}

    @app.get("/commits")
    async def list_commits(
        quest_id: int,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0),
        svc: Services = Depends(get_services),
    ):
        if start_date and end_date:
            commits = svc.commits.by_date_range(quest_id, start_date, end_date)
        else:
            commits = svc.commits.by_quest(quest_id, limit=limit, offset=offset)
        return {"success": True, "commits": commits}

    @app.get("/commits/{commit_id}")
    async def get_commit(commit_id: int, svc: Services = Depends(get_services)):
        commit = svc.commits.get(commit_id)
        if commit is None:
            raise CommitNotFoundError(commit_id)
        return {"success": True, "commit": commit}

    @app.put("/commits/{commit_id}")
    async def update_commit(commit_id: int, body: CommitUpdate, svc: Services = Depends(get_services)):
        """Only content and attachments can change."""
        return {"success": True, "commit": svc.intake.update_commit(commit_id, body)}

    @app.delete("/commits/{commit_id}")
    async def delete_commit(commit_id: int, svc: Services = Depends(get_services)):
        if not svc.commits.delete(commit_id):
            raise CommitNotFoundError(commit_id)
        return {"success": True}

    @app.post("/commits/{commit_id}/assess", response_model=AssessCommitResult)
    def assess_commit(commit_id: int, svc: Services = Depends(get_services)):
        """
        Assess a commit against its open checkpoints and apply the results
        through the progress ledger. Plain `def`: the model call blocks, so
        FastAPI runs this in its threadpool.
        """
        return svc.intake.assess_commit(commit_id)

    @app.get("/commits/{commit_id}/assessments")
    async def commit_assessments(commit_id: int, svc: Services = Depends(get_services)):
        if svc.commits.get(commit_id) is None:
            raise CommitNotFoundError(commit_id)
        return {
            "success": True,
            "assessments": svc.commits.assessments_for_commit(commit_id),
            "progress_changes": svc.ledger.history_for_commit(commit_id),
        }

    # ── Checkpoint progress ──────────────────────────────────────────

    @app.get("/checkpoints/{checkpoint_id}/progress")
    async def checkpoint_progress(checkpoint_id: int, svc: Services = Depends(get_services)):
        checkpoint = svc.checkpoints.get(checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return {
            "success": True,
            "checkpoint_id": checkpoint_id,
            "progress": checkpoint.progress,
            "is_completed": checkpoint.is_completed,
            "completed_at": checkpoint.completed_at,
        }

    @app.post("/checkpoints/{checkpoint_id}/progress")
    async def apply_progress(checkpoint_id: int, body: ManualProgressUpdate, svc: Services = Depends(get_services)):
        """Manual progress entry. Goes through the same clamp as assessments."""
        change = svc.ledger.apply(
            checkpoint_id,
            body.progress,
            source=ProgressSource(commit_id=body.commit_id, reason=body.reason or "manual update"),
        )
        return {
            "success": True,
            "changed": change is not None,
            "change": change,
            "progress": svc.ledger.get_progress(checkpoint_id),
        }

    @app.get("/checkpoints/{checkpoint_id}/history")
    async def checkpoint_history(checkpoint_id: int, svc: Services = Depends(get_services)):
        if svc.checkpoints.get(checkpoint_id) is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return {"success": True, "history": svc.ledger.history(checkpoint_id)}

    @app.get("/checkpoints/{checkpoint_id}/assessments")
    async def checkpoint_assessments(checkpoint_id: int, svc: Services = Depends(get_services)):
        """Every assessment ever made of this checkpoint, newest first."""
        if svc.checkpoints.get(checkpoint_id) is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return {"success": True, "assessments": svc.commits.assessments_for_checkpoint(checkpoint_id)}

    @app.get("/checkpoints/{checkpoint_id}/verify")
    async def verify_checkpoint(checkpoint_id: int, svc: Services = Depends(get_services)):
        problems = svc.ledger.verify(checkpoint_id)
        return {"success": True, "consistent": not problems, "problems": problems}

    @app.get("/quests/{quest_id}/progress")
    async def quest_progress(quest_id: int, svc: Services = Depends(get_services)):
        return {"success": True, "progress": svc.checkpoints.quest_progress(quest_id)}

    # ── Schedule blocks ──────────────────────────────────────────────

    @app.post("/schedule/blocks", status_code=201, response_model=BlockUpdateResult)
    async def create_block(body: ScheduleBlockCreate, svc: Services = Depends(get_services)):
        return svc.synchronizer.create_block(body)

    @app.post("/schedule/blocks/batch", status_code=201)
    async def create_blocks(body: ScheduleBlockBatch, svc: Services = Depends(get_services)):
        """All-or-nothing insert of many blocks, e.g. a recurring task's occurrences."""
        blocks = svc.schedule.batch_create(body.blocks)
        return {"success": True, "count": len(blocks), "blocks": blocks}

    @app.get("/schedule/blocks/{block_id}")
    async def get_block(block_id: int, svc: Services = Depends(get_services)):
        block = svc.schedule.get(block_id)
        if block is None:
            raise ScheduleBlockNotFoundError(block_id)
        return block

    @app.put("/schedule/blocks/{block_id}", response_model=BlockUpdateResult)
    async def update_block(block_id: int, body: ScheduleBlockUpdate, svc: Services = Depends(get_services)):
        """
        Edit a block. Moving a linked block into or out of `completed`
        creates or removes its task's completion record; if that fails the
        edit is undone, and if undoing fails too the answer is a
        `sync_inconsistent` error that must not be retried blindly.
        """
        return svc.synchronizer.update_block(block_id, body.changes())

    @app.delete("/schedule/blocks/{block_id}")
    async def delete_block(block_id: int, svc: Services = Depends(get_services)):
        if not svc.synchronizer.delete_block(block_id):
            raise ScheduleBlockNotFoundError(block_id)
        return {"success": True}

    @app.get("/schedule/day/{day}")
    async def day_schedule(day: str, svc: Services = Depends(get_services)):
        return {"date": day, "blocks": svc.schedule.by_date(day)}

    @app.get("/schedule/week/{week_start}")
    async def week_schedule(week_start: str, svc: Services = Depends(get_services)):
        return svc.schedule.week(week_start)

    @app.get("/schedule/past-incomplete")
    async def past_incomplete(
        before_date: str,
        since_date: Optional[str] = None,
        limit: int = Query(50, ge=1, le=500),
        svc: Services = Depends(get_services),
    ):
        return {"blocks": svc.schedule.past_incomplete(before_date, since_date=since_date, limit=limit)}

    @app.get("/schedule/conflicts")
    async def schedule_conflicts(
        date: str,
        start_time: str,
        end_time: str,
        exclude_id: Optional[int] = None,
        svc: Services = Depends(get_services),
    ):
        conflicts = svc.schedule.conflicts(date, start_time, end_time, exclude_id=exclude_id)
        return {"has_conflict": bool(conflicts), "conflicts": conflicts}

    # ── Completed tasks ──────────────────────────────────────────────

    @app.post("/completed-tasks", status_code=201)
    async def complete_task(body: CompletionCreate, svc: Services = Depends(get_services)):
        record = svc.tasks.complete(body.task_id, body.completion_comment)
        return {"success": True, "record": record}

    @app.delete("/completed-tasks/{task_id}")
    async def uncomplete_task(task_id: int, svc: Services = Depends(get_services)):
        if not svc.tasks.uncomplete(task_id):
            raise NotCompletedError(task_id)
        return {"success": True}

    @app.put("/completed-tasks/{task_id}")
    async def update_completion_comment(
        task_id: int, body: CompletionCommentUpdate, svc: Services = Depends(get_services)
    ):
        if not svc.tasks.update_comment(task_id, body.completion_comment):
            raise NotCompletedError(task_id)
        return {"success": True}

    @app.get("/completed-tasks/status")
    async def completion_status(task_ids: str, svc: Services = Depends(get_services)):
        ids: List[int] = []
        for part in task_ids.split(","):
            part = part.strip()
            if not part:
                continue
            if not part.lstrip("-").isdigit():
                raise ValueError(f"task id {part!r} is not a number")
            ids.append(int(part))
        if not ids:
            raise ValueError("at least one task id is required")
        return list(svc.tasks.completion_status(ids).values())

    @app.get("/completed-tasks")
    async def list_completed(
        limit: Optional[int] = Query(None, ge=1),
        offset: int = Query(0, ge=0),
        task_type: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        svc: Services = Depends(get_services),
    ):
        return svc.tasks.list_completed(
            limit=limit, offset=offset, task_type=task_type, start_date=start_date, end_date=end_date
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    _settings = app.state.settings
    uvicorn.run("main:app", host=_settings.host, port=_settings.port, reload=os.getenv("RELOAD", "false").lower() == "true")
