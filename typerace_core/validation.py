"""
Record schemas and input validation using Pydantic v2.
Stored documents are validated into these records at the store boundary;
unknown or missing fields fail instead of defaulting.
"""

import logging
import re
from typing import Any, Dict, List, Literal, Optional, Self, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import RecordError, ValidationError
from .types import ROOM_CODE_RE, ROOM_STATUS_RE

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=BaseModel)

MAX_NAME_LENGTH = 50
MAX_ROOM_NAME_LENGTH = 100
MAX_TIME_LIMIT = 3600


def round_key(round_number: int) -> str:
    return f"r{round_number}"


def result_key(room_id: str, round_number: int, participant_id: str) -> str:
    """Deterministic Result id; one key per (room, round, participant)."""
    return f"{room_id}:{round_key(round_number)}:{participant_id}"


def outcome_key(room_id: str, round_number: int) -> str:
    return f"{room_id}:{round_key(round_number)}"


# ==================== RECORDS ====================


class _Record(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=False)


class Room(_Record):
    id: str = Field(..., min_length=1)
    roomCode: str
    roomName: str = Field(..., min_length=1, max_length=MAX_ROOM_NAME_LENGTH)
    status: str
    currentRound: int = Field(..., ge=0)
    totalRounds: int = Field(..., ge=1)
    createdBy: str = Field(..., min_length=1)
    createdAt: float
    roundStartedAt: Optional[float]
    roundEndedAt: Optional[float]
    updatedAt: Optional[float]

    @field_validator("roomCode")
    @classmethod
    def validate_code(cls, v: str) -> str:
        if not ROOM_CODE_RE.match(v):
            raise ValueError("roomCode must be 6 characters A-Z/0-9")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if not ROOM_STATUS_RE.match(v):
            raise ValueError(f"unknown room status {v!r}")
        return v


class RoundSettings(_Record):
    paragraph: str = Field(..., min_length=1)
    timeLimit: int = Field(..., ge=1, le=MAX_TIME_LIMIT, description="Seconds (1-3600)")
    qualifyCount: int = Field(..., ge=1)

    @field_validator("paragraph")
    @classmethod
    def validate_paragraph(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("paragraph cannot be empty")
        return v


class RoundConfig(_Record):
    roomId: str = Field(..., min_length=1)
    rounds: Dict[str, RoundSettings]

    @field_validator("rounds")
    @classmethod
    def validate_round_keys(cls, v: Dict[str, RoundSettings]) -> Dict[str, RoundSettings]:
        if not v:
            raise ValueError("at least one round must be configured")
        expected = {round_key(i) for i in range(1, len(v) + 1)}
        if set(v) != expected:
            raise ValueError(f"round keys must be contiguous r1..r{len(v)}, got {sorted(v)}")
        return v

    @property
    def total_rounds(self) -> int:
        return len(self.rounds)

    def for_round(self, round_number: int) -> RoundSettings | None:
        return self.rounds.get(round_key(round_number))


class Participant(_Record):
    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1, max_length=MAX_NAME_LENGTH)
    roomId: str = Field(..., min_length=1)
    status: Literal["waiting", "active", "qualified", "eliminated"]
    currentRound: int = Field(..., ge=0)
    eliminatedRound: Optional[int]
    finalRank: Optional[int]
    joinedAt: float
    updatedAt: Optional[float]

    @model_validator(mode="after")
    def validate_elimination(self) -> Self:
        if self.status == "eliminated" and self.eliminatedRound is None:
            raise ValueError("eliminated participant requires eliminatedRound")
        if self.status != "eliminated" and self.eliminatedRound is not None:
            raise ValueError("eliminatedRound set on a non-eliminated participant")
        return self


class Result(_Record):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    participantId: str = Field(..., min_length=1)
    roomId: str = Field(..., min_length=1)
    round: int = Field(..., ge=1)
    userName: str
    policy: Literal["character", "word"]
    accuracy: float = Field(..., ge=0.0, le=100.0)
    wpm: float = Field(..., ge=0.0)
    rawWpm: float = Field(..., ge=0.0)
    netWpm: float = Field(..., ge=0.0)
    accuracyPoints: int = Field(..., ge=0)
    speedPoints: int = Field(..., ge=0)
    finalScore: int = Field(..., ge=0)
    correctChars: int = Field(..., ge=0)
    incorrectChars: int = Field(..., ge=0)
    totalCharsTyped: int = Field(..., ge=0)
    totalCharsExpected: int = Field(..., ge=0)
    elapsedSeconds: float
    submittedAt: float

    @model_validator(mode="after")
    def validate_key(self) -> Self:
        if self.id != result_key(self.roomId, self.round, self.participantId):
            raise ValueError("result id does not match (roomId, round, participantId)")
        return self


class RankingEntry(_Record):
    participantId: str
    rank: int = Field(..., ge=1)
    accuracy: float
    wpm: float
    finalScore: int
    submittedAt: float
    qualified: bool


class RoundOutcome(_Record):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    roomId: str
    round: int = Field(..., ge=1)
    qualifyCount: int = Field(..., ge=1)
    qualified: List[str]
    eliminated: List[str]
    forfeited: List[str]
    ranking: List[RankingEntry]
    processedAt: float


def parse_record(model: Type[R], doc: Dict[str, Any] | None, *, key: str | None = None) -> R:
    """Validate a stored document into its record type.

    Raises:
        RecordError: if the document is missing, has unknown fields, or is malformed.
    """
    if doc is None:
        raise RecordError(f"{model.__name__} {key!r}: document missing")
    try:
        return model.model_validate(doc)
    except PydanticValidationError as e:
        logger.warning(f"Rejected stored {model.__name__} {key!r}: {e}")
        raise RecordError(f"{model.__name__} {key!r} is malformed: {e}") from e


def to_doc(record: BaseModel) -> Dict[str, Any]:
    return record.model_dump()


# ==================== COMMANDS ====================


class CreateRoomCmd(BaseModel):
    """Admin request creating a Room plus its RoundConfig."""

    roomCode: str
    roomName: str = Field(..., min_length=1, max_length=MAX_ROOM_NAME_LENGTH)
    createdBy: str = Field(..., min_length=1, max_length=128)
    rounds: List[RoundSettings] = Field(..., min_length=1, max_length=50)

    @field_validator("roomCode", mode="before")
    @classmethod
    def validate_room_code(cls, v: Any) -> str:
        return InputSanitizer.normalize_room_code(v)

    @field_validator("roomName")
    @classmethod
    def validate_room_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("roomName cannot be empty")
        return v


class JoinRoomCmd(BaseModel):
    roomCode: str
    participantId: str = Field(..., min_length=1, max_length=128)
    name: str

    @field_validator("roomCode", mode="before")
    @classmethod
    def validate_room_code(cls, v: Any) -> str:
        return InputSanitizer.normalize_room_code(v)

    @field_validator("name", mode="before")
    @classmethod
    def validate_name(cls, v: Any) -> str:
        if not isinstance(v, str):
            raise ValueError("name must be a string")
        name = InputSanitizer.sanitize_name(v)
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValueError(f"name must be between 1 and {MAX_NAME_LENGTH} characters")
        return name


class SubmitResultCmd(BaseModel):
    participantId: str = Field(..., min_length=1, max_length=128)
    roomId: str = Field(..., min_length=1)
    round: int = Field(..., ge=1)
    referenceText: str
    submittedText: str
    # Left unconstrained: scoring treats invalid elapsed times as 1 second.
    elapsedSeconds: Any = None


class RoundRef(BaseModel):
    roomId: str = Field(..., min_length=1)
    round: int = Field(..., ge=1)


class InputSanitizer:
    """Utility class for input sanitization"""

    @staticmethod
    def sanitize_string(value: str, max_length: int = 255) -> str:
        if not isinstance(value, str):
            return str(value)[:max_length]
        value = value.strip()
        value = value[:max_length]
        return value.replace("\0", "")

    @staticmethod
    def sanitize_name(name: str) -> str:
        """Display name without control or markup characters; keeps Unicode letters."""
        name = InputSanitizer.sanitize_string(name, 255)
        dangerous_chars = r'[<>{}[\]\\|;()&$`"\*\x00-\x1f\x7f]'
        return re.sub(dangerous_chars, "", name).strip()

    @staticmethod
    def normalize_room_code(code: Any) -> str:
        if not isinstance(code, str):
            raise ValueError("roomCode must be a string")
        normalized = code.strip().upper()
        if not ROOM_CODE_RE.match(normalized):
            raise ValueError("roomCode must be 6 characters A-Z/0-9")
        if normalized != code:
            logger.debug(f"Normalized roomCode: {code!r} → {normalized}")
        return normalized

    @staticmethod
    def validate(model: Type[R], data: Dict[str, Any]) -> R:
        """
        Validate an input payload.

        Raises:
            ValidationError: If validation fails
        """
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"{model.__name__} validation failed: {e}")
            raise ValidationError(f"Invalid {model.__name__}: {e}") from e


# ==================== EXPORT ====================

__all__ = [
    "Room",
    "RoundSettings",
    "RoundConfig",
    "Participant",
    "Result",
    "RankingEntry",
    "RoundOutcome",
    "CreateRoomCmd",
    "JoinRoomCmd",
    "SubmitResultCmd",
    "RoundRef",
    "InputSanitizer",
    "parse_record",
    "to_doc",
    "round_key",
    "result_key",
    "outcome_key",
]
