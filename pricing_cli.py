import argparse
import json
import os
import sys
import time
from typing import Any, Dict, List, Optional

import httpx

from pricing_agent.schemas import TERMINAL_EVENTS
from pricing_agent.streaming import iter_frames_sync


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def resolve_base_url(base_url: Optional[str]) -> str:
    if base_url:
        return base_url.rstrip("/")
    port = os.getenv("PORT", "").strip()
    if port.isdigit():
        return f"http://127.0.0.1:{port}"
    return DEFAULT_API_BASE


def condense_text(value: str, limit: int = 160) -> str:
    compact = " ".join(value.split())
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)] + "..."


def _format_records(records: List[Dict[str, Any]], limit: int = 5) -> List[str]:
    lines = []
    for record in records[:limit]:
        lines.append(
            "  - {sku} {meter} @ {region}: ${price:.4f} / {unit}".format(
                sku=record.get("sku_name") or "?",
                meter=record.get("meter_name") or "",
                region=record.get("region_code") or "?",
                price=float(record.get("unit_price") or 0.0),
                unit=record.get("unit") or "unit",
            )
        )
    if len(records) > limit:
        lines.append(f"  ... {len(records) - limit} more")
    return lines


def format_event(event: Dict[str, Any], view: str = "human") -> Optional[str]:
    """Render one decoded frame; None means nothing worth printing."""
    event_type = event.get("type") or ""
    data = event.get("data") or {}
    if view == "debug":
        return f"[{event_type}] {json.dumps(data, ensure_ascii=False)}"
    if event_type == "step":
        return f"- {condense_text(str(data.get('message', '')), 200)}"
    if event_type == "session_token":
        return f"Session: {data.get('token', '')}"
    if event_type == "price_data":
        header = f"Prices: {data.get('count', 0)} records for {data.get('filter_used', '')}"
        if data.get("original_filter") and data.get("original_filter") != data.get("filter_used"):
            header += f" (broadened from {data['original_filter']})"
        return "\n".join([header, *_format_records(data.get("records") or [])])
    if event_type == "answer_chunk":
        # Chunks are printed without a newline by the caller.
        return data.get("text", "")
    if event_type == "answer_complete":
        return f"\n({data.get('count', 0)} records, filter: {data.get('filter_used', '')})"
    if event_type == "direct_answer":
        return data.get("text", "")
    if event_type == "error":
        return f"Error: {data.get('message', '')}"
    return None


def safe_print(text: str, end: str = "\n") -> None:
    try:
        print(text, end=end, flush=True)
    except OSError:
        print(text.encode("ascii", "backslashreplace").decode("ascii"), end=end, flush=True)


def run_ask(args: argparse.Namespace) -> int:
    prompt_text = " ".join(args.prompt).strip()
    if not prompt_text:
        print("A prompt is required.", file=sys.stderr)
        return 1
    base_url = resolve_base_url(args.base_url)
    payload: Dict[str, Any] = {"prompt": prompt_text}
    if args.token:
        payload["continuation_token"] = args.token

    timeout = httpx.Timeout(10.0, read=None)
    start_ts = time.time()
    token = None
    terminal = None
    try:
        with httpx.Client(timeout=timeout) as client:
            with client.stream("POST", f"{base_url}/api/prices", json=payload) as response:
                if response.status_code >= 400:
                    response.read()
                    print(f"Request failed: HTTP {response.status_code} {response.text}", file=sys.stderr)
                    return 1
                for event in iter_frames_sync(response.iter_bytes()):
                    event_type = event.get("type")
                    if event_type == "session_token":
                        token = (event.get("data") or {}).get("token")
                    line = format_event(event, view=args.view)
                    if line is not None:
                        chunked = event_type == "answer_chunk" and args.view == "human"
                        safe_print(line, end="" if chunked else "\n")
                    if event_type in TERMINAL_EVENTS:
                        terminal = event_type
                        break
    except KeyboardInterrupt:
        print("Stopped.")
        return 130
    except httpx.HTTPError as exc:
        print(f"HTTP error: {exc}", file=sys.stderr)
        return 1

    if token:
        safe_print(f"Continue with: --token {token}")
    safe_print(f"Done in {time.time() - start_ts:.1f}s")
    if terminal is None:
        print("Stream ended without a final answer.", file=sys.stderr)
        return 1
    return 0 if terminal != "error" else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cloud pricing agent CLI")
    subparsers = parser.add_subparsers(dest="command")

    ask = subparsers.add_parser("ask", help="Ask a pricing question and stream the answer")
    ask.add_argument("prompt", nargs="*", help="Question text")
    ask.add_argument("--token", help="Continuation token from an earlier turn")
    ask.add_argument("--base-url", default=None, help="API base URL (default http://127.0.0.1:$PORT)")
    ask.add_argument(
        "--view",
        default="human",
        choices=["human", "debug"],
        help="Output view: human for readable updates, debug for raw event payloads.",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "ask":
        return run_ask(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
