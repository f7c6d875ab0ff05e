from .control_state import DBControlStateRepository
from .pg_notify import notify, listen
from .repositories import (
    DBContestantRepository, DBJudgeRepository,
    DBResultSnapshotRepository, DBScoreRepository,
)
from .session import engine, create_session, database_url
