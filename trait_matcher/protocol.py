"""Messages exchanged between the coordinator and the background worker.

Every message is a plain dict tagged by "type" and carrying the integer
correlation "id" of the request it belongs to. Both sides validate what they
receive against these discriminated unions, so a malformed message fails at
the boundary with WorkerProtocolError instead of producing wrong results.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from trait_matcher.errors import WorkerProtocolError
from trait_matcher.models import SimilarityResult, TraitCorpusEntry


# ---------------------------------------------------------------------------
# Requests (coordinator -> worker)
# ---------------------------------------------------------------------------

class InitPayload(BaseModel):
    traits: list[TraitCorpusEntry] = Field(default_factory=list)
    # Raw little-endian float32 rows. Kept as-is (Any) so validation never copies it.
    embeddings: Any = None
    dims: int = Field(default=512, gt=0)

    @field_validator("embeddings")
    @classmethod
    def _bytes_like(cls, value: Any) -> Any:
        if value is not None and not isinstance(value, (bytes, bytearray, memoryview)):
            raise ValueError(f"embeddings must be bytes-like, got {type(value).__name__}")
        return value


class InitRequest(BaseModel):
    type: Literal["init"]
    id: int
    payload: InitPayload


class SearchPayload(BaseModel):
    query: str
    corpus: list[str]


class SearchRequest(BaseModel):
    type: Literal["search"]
    id: int
    payload: SearchPayload


class SearchBatchPayload(BaseModel):
    queries: list[str]
    corpus: list[str]


class SearchBatchRequest(BaseModel):
    type: Literal["searchBatch"]
    id: int
    payload: SearchBatchPayload


Request = Annotated[
    Union[InitRequest, SearchRequest, SearchBatchRequest],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Replies (worker -> coordinator)
# ---------------------------------------------------------------------------

class ProgressReply(BaseModel):
    type: Literal["progress"] = "progress"
    id: int
    progress: float = Field(ge=0, le=100)
    message: str


class InitCompleteReply(BaseModel):
    type: Literal["init_complete"] = "init_complete"
    id: int


class SearchReply(BaseModel):
    type: Literal["search_result"] = "search_result"
    id: int
    payload: list[SimilarityResult]


class SearchBatchReply(BaseModel):
    type: Literal["searchBatch_result"] = "searchBatch_result"
    id: int
    payload: list[list[SimilarityResult]]


class ErrorReply(BaseModel):
    type: Literal["error"] = "error"
    id: int | None
    error: str
    error_type: str = "WorkerProtocolError"


Reply = Annotated[
    Union[ProgressReply, InitCompleteReply, SearchReply, SearchBatchReply, ErrorReply],
    Field(discriminator="type"),
]

_REQUESTS: TypeAdapter[Request] = TypeAdapter(Request)
_REPLIES: TypeAdapter[Reply] = TypeAdapter(Reply)


def parse_request(raw: Any) -> InitRequest | SearchRequest | SearchBatchRequest:
    try:
        return _REQUESTS.validate_python(raw)
    except ValidationError as exc:
        raise WorkerProtocolError(f"Malformed request: {exc}") from exc


def parse_reply(raw: Any) -> ProgressReply | InitCompleteReply | SearchReply | SearchBatchReply | ErrorReply:
    try:
        return _REPLIES.validate_python(raw)
    except ValidationError as exc:
        raise WorkerProtocolError(f"Malformed reply: {exc}") from exc


def correlation_id(raw: Any) -> int | None:
    """Best-effort id of a message that may have failed validation."""
    if isinstance(raw, Mapping):
        value = raw.get("id")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None
