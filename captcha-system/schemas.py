"""Pydantic models for challenge templates and the widget <-> server wire contract."""

from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field

from errors import ErrorKind

MAX_PAYLOAD_ITEMS = 1000


class ChallengeTemplate(BaseModel):
    """Stored, answer-bearing challenge definition (read-only to the core)."""

    id: str
    challenge_type: str
    content_data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True

    @property
    def difficulty(self) -> Optional[str]:
        return self.metadata.get("difficulty")


class Challenge(BaseModel):
    """Client-facing challenge; ``data`` never carries the answer key."""

    id: str
    type: str
    data: Dict[str, Any]


class GenerateRequest(BaseModel):
    type: str = "text"
    difficulty: str = "medium"


class GenerateResponse(BaseModel):
    success: bool
    challenge: Optional[Challenge] = None
    error: Optional[str] = None


class TimedPoint(BaseModel):
    x: float
    y: float
    t: float = Field(..., validation_alias=AliasChoices("t", "tOffsetMs"))


class BehaviorPayload(BaseModel):
    """Telemetry snapshot submitted for invisible verification.

    Accepts the legacy widget names (``mouseMoves``, ``scrollEvents``,
    ``startTime``) as well as the current ones.
    """

    mouseMoveCount: int = Field(0, ge=0, validation_alias=AliasChoices("mouseMoveCount", "mouseMoves"))
    mousePositions: List[TimedPoint] = Field(default_factory=list, max_length=MAX_PAYLOAD_ITEMS)
    clickPattern: List[TimedPoint] = Field(default_factory=list, max_length=MAX_PAYLOAD_ITEMS)
    keyPressTimings: List[float] = Field(default_factory=list, max_length=MAX_PAYLOAD_ITEMS)
    scrollEventCount: int = Field(0, ge=0, validation_alias=AliasChoices("scrollEventCount", "scrollEvents"))
    sessionStart: Optional[float] = Field(None, validation_alias=AliasChoices("sessionStart", "startTime"))
    # Client-side risk score, if the widget computed one
    riskScore: Optional[float] = Field(None, ge=0.0, le=1.0)


class VerifyRequest(BaseModel):
    challengeId: Optional[str] = None
    response: Optional[Union[str, int, List[int]]] = None
    behaviorData: Optional[BehaviorPayload] = None
    invisible: bool = False


class ErrorResponse(BaseModel):
    """Body of every failed response."""

    success: bool = False
    error: str
    errorKind: Optional[ErrorKind] = None


class VerifyResponse(BaseModel):
    success: bool
    token: Optional[str] = None
    error: Optional[str] = None
    errorKind: Optional[ErrorKind] = None


class RevealResponse(BaseModel):
    challengeId: str
    gridSize: int
    sequence: List[int]


class TokenCheckRequest(BaseModel):
    token: str


class TokenCheckResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    purpose: Optional[str] = None
    challengeId: Optional[str] = None
