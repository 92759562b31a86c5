import json

import pytest

from pricing_agent.errors import ProtocolDecodeError
from pricing_agent.schemas import StreamEvent
from pricing_agent.streaming import (
    ACCUMULATING,
    FrameDecoder,
    decode_frame,
    encode_comment,
    encode_event,
    iter_frames,
    iter_frames_sync,
)


TRICKY_TEXT = 'Prices:\n\n| sku | price |\ndata: {"fake": 1}\n\n} braces { and "quotes" \\ done'


def _stream():
    events = [
        StreamEvent(type="session_token", data={"token": "resp_1"}),
        StreamEvent(type="step", data={"message": "Query 1/1 - d8s in eastus"}),
        StreamEvent(type="answer_chunk", data={"text": TRICKY_TEXT}),
        StreamEvent(type="answer_complete", data={"text": "€0.38 / hour", "records": [], "filter_used": "x", "count": 0}),
    ]
    body = encode_event(events[0]) + encode_comment() + "".join(encode_event(e) for e in events[1:])
    return events, body


def test_encode_event_frames_json_payload():
    frame = encode_event(StreamEvent(type="step", data={"message": "hi"}))
    assert frame.startswith("data: {")
    assert frame.endswith("}\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": "step", "data": {"message": "hi"}}


def test_decoder_handles_every_split_point():
    events, body = _stream()
    raw = body.encode("utf-8")
    expected = [e.model_dump() for e in events]
    for offset in range(len(raw) + 1):
        decoder = FrameDecoder()
        frames = decoder.feed(raw[:offset]) + decoder.feed(raw[offset:]) + decoder.finish()
        assert frames == expected, f"split at {offset}"


def test_decoder_handles_byte_by_byte_feed():
    events, body = _stream()
    decoder = FrameDecoder()
    frames = []
    for byte in body.encode("utf-8"):
        frames.extend(decoder.feed(bytes([byte])))
    frames.extend(decoder.finish())
    assert frames == [e.model_dump() for e in events]
    assert decoder.frames_decoded == len(events)
    assert decoder.frames_skipped == 0


def test_raw_newlines_inside_strings_are_kept():
    # A producer that writes control characters unescaped.
    payload = '{"type": "answer_chunk", "data": {"text": "line one\n\nline two"}}'
    decoder = FrameDecoder()
    frames = decoder.feed("data: " + payload[:30]) + decoder.feed(payload[30:] + "\n\n")
    assert frames == [{"type": "answer_chunk", "data": {"text": "line one\n\nline two"}}]


def test_multibyte_characters_split_across_chunks():
    raw = 'data: {"type": "direct_answer", "data": {"text": "Prix: 0,38 € / heure ✓"}}\n\n'.encode("utf-8")
    for offset in range(len(raw) + 1):
        decoder = FrameDecoder()
        frames = decoder.feed(raw[:offset]) + decoder.feed(raw[offset:])
        assert frames == [{"type": "direct_answer", "data": {"text": "Prix: 0,38 € / heure ✓"}}]


def test_decoder_waits_while_frame_is_incomplete():
    decoder = FrameDecoder()
    assert decoder.feed('data: {"type": "step", "data": {"message": "a"}}') == []
    assert decoder.state == ACCUMULATING
    assert decoder.feed("\n") == []
    assert decoder.feed("\n") == [{"type": "step", "data": {"message": "a"}}]
    assert decoder.state is None


def test_prefix_without_space_is_accepted():
    frames = list(iter_frames_sync(['data:{"type": "step", "data": {}}\n\n']))
    assert frames == [{"type": "step", "data": {}}]


def test_malformed_frames_are_skipped():
    good = encode_event(StreamEvent(type="step", data={"message": "ok"}))
    stream = (
        "data: not-json\n\n"
        + 'data: {"type": "step"} trailing\n\n'
        + 'data: {"type": 1, oops}\n\n'
        + "event: ignored\n"
        + good
    )
    decoder = FrameDecoder()
    frames = decoder.feed(stream) + decoder.finish()
    assert frames == [{"type": "step", "data": {"message": "ok"}}]
    assert decoder.frames_skipped == 3


def test_truncated_stream_counts_as_skipped():
    decoder = FrameDecoder()
    frames = decoder.feed('data: {"type": "step", "data": {"mess') + decoder.finish()
    assert frames == []
    assert decoder.frames_skipped == 1


def test_decode_frame_rejects_non_objects():
    with pytest.raises(ProtocolDecodeError):
        decode_frame("[1, 2]")
    with pytest.raises(ProtocolDecodeError):
        decode_frame("{broken")


@pytest.mark.asyncio
async def test_iter_frames_async():
    events, body = _stream()
    raw = body.encode("utf-8")

    async def chunks():
        for idx in range(0, len(raw), 7):
            yield raw[idx:idx + 7]

    frames = [frame async for frame in iter_frames(chunks())]
    assert [f["type"] for f in frames] == [e.type for e in events]
