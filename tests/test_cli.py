import json

import respx
from httpx import Response

from pricing_agent.streaming import iter_frames_sync
from pricing_cli import build_parser, format_event, main, resolve_base_url


def test_format_event_human_view():
    assert format_event({"type": "step", "data": {"message": "Query 1/1 - d8s in eastus"}}) == "- Query 1/1 - d8s in eastus"
    assert format_event({"type": "session_token", "data": {"token": "resp_1"}}) == "Session: resp_1"
    assert format_event({"type": "error", "data": {"message": "boom"}}) == "Error: boom"
    assert format_event({"type": "unknown", "data": {}}) is None


def test_format_price_data_lists_records():
    line = format_event(
        {
            "type": "price_data",
            "data": {
                "count": 1,
                "filter_used": "armRegionName eq 'eastus'",
                "original_filter": "armRegionName eq 'eastus' and contains(tolower(meterName), 'x')",
                "records": [
                    {"sku_name": "Standard_D8s_v4", "meter_name": "D8s v4", "region_code": "eastus", "unit_price": 0.384, "unit": "1 Hour"}
                ],
            },
        }
    )
    assert line.splitlines()[0].startswith("Prices: 1 records")
    assert "broadened from" in line
    assert "$0.3840 / 1 Hour" in line


def test_format_event_debug_view():
    line = format_event({"type": "step", "data": {"message": "hi"}}, view="debug")
    assert line == '[step] {"message": "hi"}'


def test_stream_chunks_decode_to_events():
    body = b'data: {"type": "step", "data": {"message": "a"}}\n\n: keepalive\n\ndata: {"type": "direct_answer", "data": {"text": "b"}}\n\n'
    events = list(iter_frames_sync([body[:10], body[10:40], body[40:]]))
    assert [e["type"] for e in events] == ["step", "direct_answer"]


def test_parser_and_base_url(monkeypatch):
    args = build_parser().parse_args(["ask", "price", "of", "d8s", "--token", "resp_1", "--view", "debug"])
    assert args.prompt == ["price", "of", "d8s"]
    assert args.token == "resp_1"
    assert args.view == "debug"
    monkeypatch.setenv("PORT", "9000")
    assert resolve_base_url(None) == "http://127.0.0.1:9000"
    assert resolve_base_url("http://host:1/") == "http://host:1"


def test_ask_streams_answer_and_prints_token(capsys):
    body = (
        b'data: {"type": "session_token", "data": {"token": "resp_1"}}\n\n'
        b": keepalive\n\n"
        b'data: {"type": "direct_answer", "data": {"text": "Hi there"}}\n\n'
    )
    with respx.mock(assert_all_called=True) as respx_mock:
        route = respx_mock.post("http://cli.test/api/prices").mock(return_value=Response(200, content=body))
        code = main(["ask", "hello", "--base-url", "http://cli.test", "--token", "resp_0"])
    assert code == 0
    assert json.loads(route.calls[0].request.content) == {"prompt": "hello", "continuation_token": "resp_0"}
    out = capsys.readouterr().out
    assert "Session: resp_1" in out
    assert "Hi there" in out
    assert "Continue with: --token resp_1" in out
