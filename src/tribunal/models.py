"""Data models and schemas for Tribunal."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .config import (
    BACKOFF_BASE_MS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    FALLBACK_ENABLED,
    IDLE_TIMEOUT,
    MAX_RETRIES,
    TIMEOUT,
)
from .prompts import DEFAULT_PROMPTS


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class Role(str, Enum):
    """Selects the default system prompt of a request."""
    ASSISTANT = "assistant"
    CRITIC = "critic"
    ARBITER = "arbiter"
    CONSULTANT = "consultant"
    MODERATOR = "moderator"


class RetryPolicy(BaseModel):
    """Bounded retry policy for one logical request."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(MAX_RETRIES, ge=0)
    backoff_base_ms: int = Field(BACKOFF_BASE_MS, ge=0)

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before the given retry (1-based)."""
        return self.backoff_base_ms * (2 ** (retry_number - 1)) / 1000.0


class HistoryTurn(BaseModel):
    """A prior turn of the conversation."""
    model_config = ConfigDict(frozen=True)

    role: str
    content: str


class StreamRequest(BaseModel):
    """Provider-agnostic streaming request. Immutable once constructed."""
    model_config = ConfigDict(frozen=True)

    message: str = Field(min_length=1)
    model_id: str = Field(min_length=1)
    role: Role = Role.ASSISTANT
    system_prompt: Optional[str] = None
    temperature: float = Field(DEFAULT_TEMPERATURE, ge=0.0, le=1.0)
    max_tokens: int = Field(DEFAULT_MAX_TOKENS, gt=0)
    history: List[HistoryTurn] = Field(default_factory=list)
    timeout_sec: float = Field(TIMEOUT, gt=0)
    idle_timeout_sec: float = Field(IDLE_TIMEOUT, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    fallback_enabled: bool = FALLBACK_ENABLED
    prefer_alternate_provider: bool = False

    @property
    def fallback_explicitly_enabled(self) -> bool:
        """True only when the caller set ``fallback_enabled=True`` themselves."""
        return "fallback_enabled" in self.model_fields_set and self.fallback_enabled

    def effective_system_prompt(self) -> str:
        return self.system_prompt or DEFAULT_PROMPTS.get(
            self.role.value, DEFAULT_PROMPTS["assistant"]
        )

    def messages(self) -> List[Dict[str, str]]:
        """OpenAI-shaped message list: system, history, then the user turn."""
        messages = [{"role": "system", "content": self.effective_system_prompt()}]
        messages.extend({"role": t.role, "content": t.content} for t in self.history)
        messages.append({"role": "user", "content": self.message})
        return messages


class EventTag(str, Enum):
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


class FallbackInfo(BaseModel):
    """Attached to every event of a stream served by a fallback model."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_provider: str = Field(alias="from")
    from_model: str
    reason: str


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    status: int
    message: str


class StreamEvent(BaseModel):
    """
    Canonical unit emitted to the caller. Zero or more ``delta`` events are
    followed by exactly one ``done`` or ``error`` event.
    """
    model_config = ConfigDict(frozen=True)

    tag: EventTag
    text: str = ""
    provider_used: str = ""
    fallback_info: Optional[FallbackInfo] = None
    partial: bool = False
    error: Optional[ErrorInfo] = None

    @classmethod
    def delta(cls, text: str, provider: str, fallback_info: Optional[FallbackInfo] = None):
        return cls(tag=EventTag.DELTA, text=text, provider_used=provider, fallback_info=fallback_info)

    @classmethod
    def done(
        cls,
        provider: str,
        fallback_info: Optional[FallbackInfo] = None,
        partial: bool = False,
        error: Optional[ErrorInfo] = None,
    ):
        return cls(
            tag=EventTag.DONE,
            provider_used=provider,
            fallback_info=fallback_info,
            partial=partial,
            error=error,
        )

    @classmethod
    def failure(cls, error: ErrorInfo, provider: str = "", fallback_info: Optional[FallbackInfo] = None):
        return cls(tag=EventTag.ERROR, provider_used=provider, error=error, fallback_info=fallback_info)

    @property
    def terminal(self) -> bool:
        return self.tag is not EventTag.DELTA


class AuditRecord(BaseModel):
    """Structured record handed to the audit sink for every attempt."""
    user_id: str
    model_id: str
    request_type: str = "stream"
    status: str
    latency_ms: int
    error_message: Optional[str] = None
    fallback_provider: Optional[str] = None
    attempt: int = 1


# ---------------------------------------------------------------------------
# Contest / duel rows
# ---------------------------------------------------------------------------


class ContestMode(str, Enum):
    CONTEST = "contest"
    DUEL = "duel"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


class RoundStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


class ResultStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    JUDGED = "judged"
    FAILED = "failed"


SETTLED_STATUSES = {ResultStatus.READY, ResultStatus.JUDGED, ResultStatus.FAILED}


class RoundConfig(BaseModel):
    prompt: str
    criteria: List[str] = Field(default_factory=list)


class ArbitrationConfig(BaseModel):
    criteria: List[str] = Field(min_length=1)
    weights: Dict[str, float] = Field(default_factory=dict)
    judge_model: Optional[str] = None


class EliminationRule(BaseModel):
    mode: str = "threshold"
    threshold: float = 0.0


class ContestConfig(BaseModel):
    """What to run: contestants, planned rounds, judging and elimination."""
    models: Dict[str, str] = Field(min_length=1)
    rounds: List[RoundConfig] = Field(min_length=1)
    arbitration: Optional[ArbitrationConfig] = None
    elimination_rule: Optional[EliminationRule] = None
    mode: ContestMode = ContestMode.CONTEST
    system_prompt: Optional[str] = None
    temperature: float = Field(DEFAULT_TEMPERATURE, ge=0.0, le=1.0)
    max_tokens: int = Field(DEFAULT_MAX_TOKENS, gt=0)


class ContestSession(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    config: ContestConfig
    status: SessionStatus = SessionStatus.PENDING
    eliminated_models: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utcnow_iso)


class ContestRound(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    round_index: int = Field(ge=0)
    prompt: str
    criteria: List[str] = Field(default_factory=list)
    status: RoundStatus = RoundStatus.PENDING
    created_at: str = Field(default_factory=utcnow_iso)


class ContestResult(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    round_id: str
    round_index: int = Field(ge=0)
    model_id: str
    status: ResultStatus = ResultStatus.PENDING
    response_text: Optional[str] = None
    response_time_ms: Optional[int] = None
    token_count: Optional[int] = None
    arbiter_score: Optional[float] = None
    criteria_scores: Optional[Dict[str, float]] = None
    arbiter_comment: Optional[str] = None
    arbiter_model: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utcnow_iso)
