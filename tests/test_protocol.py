from __future__ import annotations

import pytest

from trait_matcher.errors import WorkerProtocolError
from trait_matcher.models import SimilarityResult
from trait_matcher.protocol import (
    ErrorReply,
    InitRequest,
    SearchBatchRequest,
    SearchReply,
    correlation_id,
    parse_reply,
    parse_request,
)


def test_requests_are_dispatched_on_type():
    init = parse_request({"type": "init", "id": 1, "payload": {"traits": [], "embeddings": b"", "dims": 8}})
    batch = parse_request({"type": "searchBatch", "id": 2, "payload": {"queries": ["a"], "corpus": ["b"]}})
    assert isinstance(init, InitRequest)
    assert isinstance(batch, SearchBatchRequest)


def test_init_accepts_aliased_trait_entries_and_keeps_buffer_identity():
    buffer = bytearray(b"\x00" * 8)
    request = parse_request(
        {
            "type": "init",
            "id": 0,
            "payload": {
                "traits": [{"familyId": "rosaceae", "trait": " 叶互生 "}],
                "embeddings": buffer,
                "dims": 2,
            },
        }
    )
    assert request.payload.traits[0].family_id == "rosaceae"
    assert request.payload.traits[0].trait == "叶互生"
    assert request.payload.embeddings is buffer


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "unknown", "id": 1},
        {"type": "search", "id": 1, "payload": {"query": "q"}},
        {"type": "init", "id": 1, "payload": {"embeddings": [1.0, 2.0]}},
        {"type": "init", "id": 1, "payload": {"dims": 0}},
        "search",
    ],
)
def test_malformed_requests_raise_protocol_error(raw):
    with pytest.raises(WorkerProtocolError):
        parse_request(raw)


def test_search_reply_round_trips_through_plain_dicts():
    reply = SearchReply(id=3, payload=[SimilarityResult(corpus_index=0, score=0.5, text="荚果")])
    parsed = parse_reply(reply.model_dump())
    assert parsed == reply
    assert parsed.payload[0] == SimilarityResult(0, 0.5, "荚果")


def test_error_reply_defaults():
    parsed = parse_reply({"type": "error", "id": None, "error": "bad"})
    assert isinstance(parsed, ErrorReply)
    assert parsed.error_type == "WorkerProtocolError"


def test_progress_is_bounded():
    with pytest.raises(WorkerProtocolError):
        parse_reply({"type": "progress", "id": 1, "progress": 120, "message": "x"})


@pytest.mark.parametrize(
    "raw, expected",
    [({"id": 4}, 4), ({"id": True}, None), ({"id": "4"}, None), ({}, None), ([1], None)],
)
def test_correlation_id(raw, expected):
    assert correlation_id(raw) == expected
