from judging_node.db.tables.control import ControlStateRow
from judging_node.db.tables.roster import ContestantRow, JudgeRow
from judging_node.db.tables.scores import ResultSnapshotRow, ScoreRow

__all__ = [
    "ContestantRow", "JudgeRow",
    "ScoreRow", "ResultSnapshotRow",
    "ControlStateRow",
]
