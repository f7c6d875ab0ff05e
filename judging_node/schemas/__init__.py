from judging_node.schemas.payloads import (
    ContestantBody,
    JudgeBody,
    ScoreSubmissionBody,
    TransitionBody,
    VideoBody,
)

__all__ = [
    "ScoreSubmissionBody",
    "TransitionBody",
    "VideoBody",
    "ContestantBody",
    "JudgeBody",
]
