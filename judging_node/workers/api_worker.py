from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Annotated, Any, Callable, Generator

import uvicorn
from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from judging_node.config.runtime import RuntimeSettings, ScoringSettings
from judging_node.db import (
    DBContestantRepository,
    DBControlStateRepository,
    DBJudgeRepository,
    DBResultSnapshotRepository,
    DBScoreRepository,
    create_session,
)
from judging_node.db.pg_notify import CONTROL_CHANNEL, RESULTS_CHANNEL
from judging_node.entities.identity import ANONYMOUS, Identity
from judging_node.entities.roster import Contestant, Role
from judging_node.entities.score import ScoreRecord
from judging_node.errors import AuthorizationDenied, IncompleteInput, JudgingError, store_errors
from judging_node.middleware.auth import (
    check_key,
    configure_auth,
    identity_from_connection,
    require_role,
    resolve_identity,
)
from judging_node.schemas import (
    ContestantBody,
    JudgeBody,
    ScoreSubmissionBody,
    TransitionBody,
    VideoBody,
)
from judging_node.services.aggregation import AggregationService
from judging_node.services.control import ControlService
from judging_node.services.countdown import CountdownOrchestrator
from judging_node.services.live_view import ChangeFeed, LiveViewHub, LiveViewSession, PgNotifyFeed
from judging_node.services.roster import RosterService
from judging_node.services.scores import ScoreService

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        force=True,
    )


class LiveRuntime:
    """Long-lived objects of one api process.

    The control service and the countdown orchestrator share one session that
    is only used from the event loop; request handlers get their own sessions.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: RuntimeSettings,
        scoring: ScoringSettings,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.scoring = scoring
        self.hub = LiveViewHub()
        self.feed: ChangeFeed = self.hub
        self.relay: PgNotifyFeed | None = None
        if settings.live_notify:
            self.relay = PgNotifyFeed(self.hub, loaders={
                CONTROL_CHANNEL: self._load_control,
                RESULTS_CHANNEL: self._load_results,
            })
            self.feed = self.relay

        self.session = session_factory()
        self.control = ControlService(DBControlStateRepository(self.session), feed=self.feed)
        self.orchestrator = CountdownOrchestrator(
            control=self.control,
            contestant_repository=DBContestantRepository(self.session),
            countdown_seconds=settings.countdown_seconds,
            tick_interval_seconds=settings.tick_interval_seconds,
        )
        self._relay_task: asyncio.Task | None = None

    @classmethod
    def from_env(cls) -> "LiveRuntime":
        return cls(create_session, RuntimeSettings.from_env(), ScoringSettings.from_env())

    async def start(self) -> None:
        self.hub.publish(CONTROL_CHANNEL, self._load_control())
        results = self._load_results()
        if results is not None:
            self.hub.publish(RESULTS_CHANNEL, results)
        await self.orchestrator.resume()
        if self.relay is not None:
            self._relay_task = asyncio.get_running_loop().create_task(self.relay.run())
        logger.info(
            "live runtime started (countdown=%ds, tick=%.2fs, notify=%s)",
            self.settings.countdown_seconds,
            self.settings.tick_interval_seconds,
            self.relay is not None,
        )

    async def stop(self) -> None:
        await self.orchestrator.shutdown()
        if self.relay is not None:
            await self.relay.shutdown()
        if self._relay_task is not None:
            self._relay_task.cancel()
            await asyncio.gather(self._relay_task, return_exceptions=True)
        self.session.close()

    def _load_control(self) -> dict[str, Any]:
        with self.session_factory() as session:
            return DBControlStateRepository(session).get().to_document()

    def _load_results(self) -> dict[str, Any] | None:
        with self.session_factory() as session:
            snapshot = DBResultSnapshotRepository(session).get()
        return snapshot.to_document() if snapshot else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    factory = getattr(app.state, "runtime_factory", None) or LiveRuntime.from_env
    runtime = factory()
    app.state.runtime = runtime
    await runtime.start()
    try:
        yield
    finally:
        await runtime.stop()


app = FastAPI(title="Contest Judging Node", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

configure_auth(app)


@app.exception_handler(JudgingError)
async def judging_error_handler(_request: Request, exc: JudgingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def get_runtime(request: Request) -> LiveRuntime:
    return request.app.state.runtime


def get_db_session(
    runtime: Annotated[LiveRuntime, Depends(get_runtime)]
) -> Generator[Session, Any, None]:
    with runtime.session_factory() as session:
        yield session


def get_judge_repository(
    session_db: Annotated[Session, Depends(get_db_session)]
) -> DBJudgeRepository:
    return DBJudgeRepository(session_db)


def get_identity(
    request: Request,
    judge_repo: Annotated[DBJudgeRepository, Depends(get_judge_repository)],
) -> Identity:
    return identity_from_connection(request, judge_repo)


def require_admin(identity: Annotated[Identity, Depends(get_identity)]) -> Identity:
    return require_role(identity, Role.ADMIN)


def require_judge(identity: Annotated[Identity, Depends(get_identity)]) -> Identity:
    return require_role(identity, Role.JUDGE)


def get_score_service(
    session_db: Annotated[Session, Depends(get_db_session)],
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> ScoreService:
    return ScoreService(
        score_repository=DBScoreRepository(session_db),
        judge_repository=DBJudgeRepository(session_db),
        contestant_repository=DBContestantRepository(session_db),
        control_repository=DBControlStateRepository(session_db),
        scoring=runtime.scoring,
    )


def get_roster_service(
    session_db: Annotated[Session, Depends(get_db_session)],
    score_service: Annotated[ScoreService, Depends(get_score_service)],
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> RosterService:
    return RosterService(
        contestant_repository=DBContestantRepository(session_db),
        judge_repository=DBJudgeRepository(session_db),
        score_service=score_service,
        control=ControlService(DBControlStateRepository(session_db), feed=runtime.feed),
    )


def get_aggregation_service(
    session_db: Annotated[Session, Depends(get_db_session)],
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> AggregationService:
    return AggregationService(
        contestant_repository=DBContestantRepository(session_db),
        judge_repository=DBJudgeRepository(session_db),
        score_repository=DBScoreRepository(session_db),
        snapshot_repository=DBResultSnapshotRepository(session_db),
        categories=runtime.scoring.categories,
        feed=runtime.feed,
    )


def _contestant_to_dict(contestant: Contestant) -> dict[str, Any]:
    return {
        "id": contestant.id,
        "number": contestant.number,
        "name": contestant.name,
        "character": contestant.character,
        "imageUrl": contestant.image_url,
    }


def _score_to_dict(record: ScoreRecord) -> dict[str, Any]:
    return {
        "judgeId": record.judge_id,
        "judgeName": record.judge_name,
        "contestantId": record.contestant_id,
        "contestantName": record.contestant_name,
        **record.categories,
        "totalScore": record.total_score,
        "keepStatus": record.decision.value,
        "submittedAt": record.submitted_at,
    }


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/control")
async def get_control(
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> dict[str, Any]:
    return runtime.control.get().to_document()


@app.get("/results")
def get_results(
    identity: Annotated[Identity, Depends(get_identity)],
    aggregation: Annotated[AggregationService, Depends(get_aggregation_service)],
) -> dict[str, Any]:
    """Latest ranked snapshot; judges never see aggregated results."""
    if identity.is_judge:
        raise AuthorizationDenied("judges cannot view results")
    snapshot = aggregation.latest()
    if snapshot is None:
        return {"id": "summary", "entries": [], "meta": {}, "generatedAt": None}
    return snapshot.to_document()


@app.get("/contestants")
def list_contestants(
    roster: Annotated[RosterService, Depends(get_roster_service)],
) -> list[dict[str, Any]]:
    return [_contestant_to_dict(c) for c in roster.list_contestants()]


@app.get("/judges")
def list_judges(
    _admin: Annotated[Identity, Depends(require_admin)],
    roster: Annotated[RosterService, Depends(get_roster_service)],
) -> list[dict[str, Any]]:
    return [
        {"id": j.id, "name": j.name, "email": j.email, "role": j.role.value}
        for j in roster.list_judges()
    ]


@app.get("/judge/current")
def get_judge_view(
    judge: Annotated[Identity, Depends(require_judge)],
    session_db: Annotated[Session, Depends(get_db_session)],
    scores: Annotated[ScoreService, Depends(get_score_service)],
) -> dict[str, Any]:
    """Contestant on stage plus the calling judge's own score for them, if any."""
    control = DBControlStateRepository(session_db)
    contestants = DBContestantRepository(session_db)
    contestant = None
    own_score = None
    with store_errors(control, contestants, operation="judge view read"):
        state = control.get()
        if state.current_contestant_id:
            contestant = contestants.fetch(state.current_contestant_id)
    if state.current_contestant_id:
        own_score = scores.get_score(judge.id, state.current_contestant_id)
    return {
        "control": state.to_document(),
        "contestant": _contestant_to_dict(contestant) if contestant else None,
        "score": _score_to_dict(own_score) if own_score else None,
        "alreadySubmitted": own_score is not None,
        "categories": list(scores.scoring.categories),
        "minScore": scores.scoring.min_score,
        "maxScore": scores.scoring.max_score,
    }


@app.post("/scores", status_code=201)
def submit_score(
    body: ScoreSubmissionBody,
    judge: Annotated[Identity, Depends(require_judge)],
    scores: Annotated[ScoreService, Depends(get_score_service)],
) -> dict[str, Any]:
    record = scores.submit_score(judge.id, body.contestant_id, body.scores, body.decision)
    return _score_to_dict(record)


# ── Admin: live control ──


@app.post("/admin/transitions", status_code=202)
async def request_transition(
    body: TransitionBody,
    _admin: Annotated[Identity, Depends(require_admin)],
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> dict[str, Any]:
    orchestrator = runtime.orchestrator
    if body.action == "next":
        state = await orchestrator.next_contestant(body.seconds)
    elif body.action == "previous":
        state = await orchestrator.previous_contestant(body.seconds)
    elif body.action == "goto":
        if not body.contestant_id:
            raise IncompleteInput("contestant_id is required for goto")
        state = await orchestrator.go_to_contestant(body.contestant_id, body.seconds)
    elif body.action == "toggle_judging":
        state = await orchestrator.toggle_judging(body.seconds)
    else:
        state = await orchestrator.toggle_summary(body.seconds)
    return state.to_document()


@app.post("/admin/transitions/cancel")
async def cancel_transition(
    _admin: Annotated[Identity, Depends(require_admin)],
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> dict[str, Any]:
    return runtime.orchestrator.cancel().to_document()


@app.post("/admin/stage/clear")
async def clear_stage(
    _admin: Annotated[Identity, Depends(require_admin)],
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> dict[str, Any]:
    return runtime.control.set_no_contestant().to_document()


@app.put("/admin/video")
async def update_video(
    body: VideoBody,
    _admin: Annotated[Identity, Depends(require_admin)],
    runtime: Annotated[LiveRuntime, Depends(get_runtime)],
) -> dict[str, Any]:
    """Set the video url and/or playing flag; an empty body toggles playback."""
    return runtime.control.set_video(body.video_url, body.playing).to_document()


@app.post("/admin/aggregate")
def aggregate(
    _admin: Annotated[Identity, Depends(require_admin)],
    aggregation: Annotated[AggregationService, Depends(get_aggregation_service)],
) -> dict[str, Any]:
    return aggregation.run().to_document()


# ── Admin: roster ──


@app.post("/admin/contestants", status_code=201)
def add_contestant(
    body: ContestantBody,
    _admin: Annotated[Identity, Depends(require_admin)],
    roster: Annotated[RosterService, Depends(get_roster_service)],
) -> dict[str, Any]:
    contestant = roster.add_contestant(body.number, body.name, body.character, body.image_url)
    return _contestant_to_dict(contestant)


@app.delete("/admin/contestants/{contestant_id}")
def delete_contestant(
    contestant_id: str,
    _admin: Annotated[Identity, Depends(require_admin)],
    roster: Annotated[RosterService, Depends(get_roster_service)],
) -> dict[str, Any]:
    deleted = roster.delete_contestant(contestant_id)
    return {"id": contestant_id, "deleted_scores": deleted}


@app.post("/admin/judges", status_code=201)
def add_judge(
    body: JudgeBody,
    _admin: Annotated[Identity, Depends(require_admin)],
    roster: Annotated[RosterService, Depends(get_roster_service)],
) -> dict[str, Any]:
    judge = roster.add_judge(body.id, body.name, body.email, body.role)
    return {"id": judge.id, "name": judge.name, "email": judge.email, "role": judge.role.value}


@app.delete("/admin/judges/{judge_id}")
def delete_judge(
    judge_id: str,
    _admin: Annotated[Identity, Depends(require_admin)],
    roster: Annotated[RosterService, Depends(get_roster_service)],
) -> dict[str, Any]:
    deleted = roster.delete_judge(judge_id)
    return {"id": judge_id, "deleted_scores": deleted}


# ── Live views ──


@app.websocket("/ws/live")
async def live_view(websocket: WebSocket) -> None:
    """Push control documents (and results, except to judges) to one viewer.

    Messages are `{"channel": ..., "document": ...}`. The client may send
    `{"action": "identify", "identity_id": ...}` or `{"action": "logout"}`;
    subscriptions are rebuilt for the new identity.
    """
    runtime: LiveRuntime = websocket.app.state.runtime
    api_key = os.getenv("API_KEY", "").strip() or None

    if api_key and websocket.headers.get("x-identity-id") and not check_key(websocket, api_key):
        await websocket.close(code=4401)
        return
    try:
        with runtime.session_factory() as session:
            identity = identity_from_connection(websocket, DBJudgeRepository(session))
    except JudgingError as exc:
        logger.warning("live view rejected: %s", exc)
        await websocket.close(code=1011)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def deliver(channel: str, document: dict[str, Any]) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, {"channel": channel, "document": document})

    def report(exc: Exception) -> None:
        loop.call_soon_threadsafe(
            queue.put_nowait, {"channel": "error", "document": {"detail": str(exc)}}
        )

    async def pump() -> None:
        while True:
            await websocket.send_json(await queue.get())

    view = LiveViewSession(runtime.hub, deliver, on_error=report)
    view.attach(identity)
    sender = asyncio.create_task(pump())
    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except ValueError:
                continue
            if not isinstance(message, dict):
                continue
            action = message.get("action")
            if action == "logout":
                view.attach(ANONYMOUS)
            elif action == "identify":
                if api_key and message.get("api_key") != api_key:
                    queue.put_nowait({"channel": "error", "document": {"detail": "API key required"}})
                    continue
                try:
                    with runtime.session_factory() as session:
                        identity = resolve_identity(DBJudgeRepository(session), message.get("identity_id"))
                except JudgingError as exc:
                    queue.put_nowait({"channel": "error", "document": exc.to_dict()})
                    continue
                view.attach(identity)
    except WebSocketDisconnect:
        pass
    finally:
        view.detach()
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)


def main() -> None:
    configure_logging()
    logger.info("judging api worker bootstrap")
    settings = RuntimeSettings.from_env()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
