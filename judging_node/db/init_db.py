from __future__ import annotations

import logging

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

# registers every table on SQLModel.metadata
from judging_node.db import tables  # noqa: F401

logger = logging.getLogger(__name__)


def tables_to_reset() -> list[str]:
    return [
        "result_snapshots",
        "scores",
        "control_state",
        "judges",
        "contestants",
    ]


def init_db(bind: Engine | None = None) -> None:
    if bind is None:
        from judging_node.db.session import engine as bind
    SQLModel.metadata.create_all(bind)
    logger.info("database tables ready")


def reset_db(bind: Engine | None = None) -> None:
    if bind is None:
        from judging_node.db.session import engine as bind
    metadata = SQLModel.metadata
    to_drop = [metadata.tables[name] for name in tables_to_reset() if name in metadata.tables]
    metadata.drop_all(bind, tables=to_drop)
    logger.info("dropped %d tables", len(to_drop))
    metadata.create_all(bind)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
    )
    init_db()
