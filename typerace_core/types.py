"""Type definitions for stored documents and contest statuses."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, TypedDict

# Raw document as exchanged with the store.
Document = Dict[str, Any]

ParticipantStatus = Literal["waiting", "active", "qualified", "eliminated"]
PARTICIPANT_STATUSES = ("waiting", "active", "qualified", "eliminated")

# Room lifecycle: waiting | round<r>_active | round<r>_result |
# round<r>_leaderboard | round<r>_waiting | completed
ROOM_STATUS_RE = re.compile(r"^(?:waiting|completed|round([1-9][0-9]*)_(active|result|leaderboard|waiting))$")
ROOM_CODE_RE = re.compile(r"^[A-Z0-9]{6}$")

# Collection names
ROOMS = "rooms"
ROOM_CODES = "roomCodes"
ROOM_CONFIG = "roomConfig"
PARTICIPANTS = "participants"
RESULTS = "results"
ROUND_OUTCOMES = "roundOutcomes"


class RoomDoc(TypedDict):
    """Room document in the ``rooms`` collection."""
    id: str
    roomCode: str
    roomName: str
    status: str
    currentRound: int  # 0 until the first round starts
    totalRounds: int
    createdBy: str
    createdAt: float
    roundStartedAt: Optional[float]
    roundEndedAt: Optional[float]
    updatedAt: Optional[float]


class RoundSettingsDoc(TypedDict):
    paragraph: str
    timeLimit: int  # seconds
    qualifyCount: int


class RoundConfigDoc(TypedDict):
    """Per-room round configuration keyed by ``"r<n>"``."""
    roomId: str
    rounds: Dict[str, RoundSettingsDoc]


class ParticipantDoc(TypedDict):
    id: str
    name: str
    roomId: str
    status: str
    currentRound: int
    eliminatedRound: Optional[int]
    finalRank: Optional[int]
    joinedAt: float
    updatedAt: Optional[float]


class ResultDoc(TypedDict):
    """Immutable per-round submission in the ``results`` collection."""
    id: str
    participantId: str
    roomId: str
    round: int
    userName: str
    policy: str
    accuracy: float
    wpm: float
    rawWpm: float
    netWpm: float
    accuracyPoints: int
    speedPoints: int
    finalScore: int
    correctChars: int
    incorrectChars: int
    totalCharsTyped: int
    totalCharsExpected: int
    elapsedSeconds: float
    submittedAt: float


class RankingEntryDoc(TypedDict):
    participantId: str
    rank: int
    accuracy: float
    wpm: float
    finalScore: int
    submittedAt: float
    qualified: bool


class RoundOutcomeDoc(TypedDict):
    """Per-round processed marker written once by the elimination batch."""
    id: str
    roomId: str
    round: int
    qualifyCount: int
    qualified: List[str]
    eliminated: List[str]
    forfeited: List[str]
    ranking: List[RankingEntryDoc]
    processedAt: float
