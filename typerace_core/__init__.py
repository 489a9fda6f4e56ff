from .capture import TypingSession
from .config import CoreSettings, get_settings
from .coordinator import Outcome, RoundCoordinator, SubmissionOutcome, retry_transient
from .elimination import (
    EliminationEngine,
    EliminationPlan,
    EliminationReport,
    RankedResult,
    compare_results,
    plan_elimination,
    rank_results,
)
from .errors import (
    ConflictError,
    CoreError,
    DuplicateSubmission,
    ErrorDetail,
    InvalidTransition,
    NoResultsError,
    NotFoundError,
    PreconditionFailed,
    RecordError,
    TransientStoreError,
    ValidationError,
)
from .ledger import ResultLedger
from .registry import JoinOutcome, ParticipantRegistry
from .rooms import RoomDirectory
from .rounds import RoundStateMachine, parse_status, screen_for_status, status_for
from .scheduler import RoundTimer, start_round_with_timer
from .scoring import Metrics, score
from .store import CreateOp, DeleteOp, DocTarget, DocumentStore, InMemoryStore, QueryTarget, SetOp, Snapshot
from .subscriptions import PollingSubscription, StreamingSubscription, open_subscription
from .validation import InputSanitizer, Participant, Result, Room, RoundConfig, RoundOutcome, RoundSettings
from .views import LeaderboardRow, RoomStatistics

__all__ = [
    "TypingSession",
    "CoreSettings",
    "get_settings",
    "Outcome",
    "RoundCoordinator",
    "SubmissionOutcome",
    "retry_transient",
    "EliminationEngine",
    "EliminationPlan",
    "EliminationReport",
    "RankedResult",
    "compare_results",
    "plan_elimination",
    "rank_results",
    "ConflictError",
    "CoreError",
    "DuplicateSubmission",
    "ErrorDetail",
    "InvalidTransition",
    "NoResultsError",
    "NotFoundError",
    "PreconditionFailed",
    "RecordError",
    "TransientStoreError",
    "ValidationError",
    "ResultLedger",
    "JoinOutcome",
    "ParticipantRegistry",
    "RoomDirectory",
    "RoundStateMachine",
    "parse_status",
    "screen_for_status",
    "status_for",
    "RoundTimer",
    "start_round_with_timer",
    "Metrics",
    "score",
    "CreateOp",
    "DeleteOp",
    "DocTarget",
    "DocumentStore",
    "InMemoryStore",
    "QueryTarget",
    "SetOp",
    "Snapshot",
    "PollingSubscription",
    "StreamingSubscription",
    "open_subscription",
    "InputSanitizer",
    "Participant",
    "Result",
    "Room",
    "RoundConfig",
    "RoundOutcome",
    "RoundSettings",
    "LeaderboardRow",
    "RoomStatistics",
]
