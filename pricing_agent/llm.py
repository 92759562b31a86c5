import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from .errors import LLMError
from .schemas import CompletionResult, ToolInvocation


logger = logging.getLogger("uvicorn.error")

_THOUGHT_SPLIT_RE = re.compile(r"[.!?]\s+")
TEXT_PART_TYPES = {"output_text", "text"}
REASONING_PART_TYPES = {"reasoning", "reasoning_text", "summary_text", "thought"}


class ResponsesClient:
    """Thin client for a Responses-style completion endpoint (`POST {base_url}/responses`)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Azure expects api-key; OpenAI-compatible gateways expect a bearer token.
            headers["api-key"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _normalize_error_text(self, detail: str) -> str:
        text = detail or ""
        for _ in range(2):
            try:
                parsed = json.loads(text)
            except Exception:
                break
            if isinstance(parsed, dict):
                found = False
                for key in ("error", "detail", "message"):
                    val = parsed.get(key)
                    if isinstance(val, dict):
                        val = val.get("message")
                    if isinstance(val, str) and val.strip():
                        text = val
                        found = True
                        break
                if not found:
                    break
            elif isinstance(parsed, str):
                text = parsed
            else:
                break
        return text

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def create_response(
        self,
        model: str,
        input_items: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        previous_response_id: Optional[str] = None,
        reasoning: Optional[Dict[str, Any]] = None,
        max_output_tokens: Optional[int] = None,
    ) -> Dict[str, Any]:
        if not self.base_url:
            raise LLMError("LLM endpoint is not configured")
        if not input_items:
            raise ValueError("input_items must include at least one entry")
        payload: Dict[str, Any] = {"model": model, "input": input_items}
        if tools:
            payload["tools"] = tools
        if reasoning:
            payload["reasoning"] = reasoning
        final_max_tokens = max_output_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_output_tokens or self.max_output_tokens, self.max_output_tokens)
        if final_max_tokens:
            payload["max_output_tokens"] = final_max_tokens
        if previous_response_id:
            payload["previous_response_id"] = previous_response_id
        url = f"{self.base_url}/responses"
        try:
            resp = await self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise LLMError("LLM runtime timed out") from exc
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            status = exc.response.status_code
            raise LLMError(
                f"LLM runtime rejected the request (HTTP {status}): {self._normalize_error_text(detail)}",
                status_code=status,
                detail=detail,
            ) from exc
        except httpx.RequestError as exc:
            raise LLMError(f"LLM runtime unreachable: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise LLMError("LLM runtime returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise LLMError("LLM runtime returned an unexpected body")
        logger.debug("LLM response %s output types: %s", data.get("id"), _output_types(data))
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()


def _output_types(raw: Dict[str, Any]) -> List[str]:
    output = raw.get("output")
    if not isinstance(output, list):
        return []
    return [str(item.get("type")) for item in output if isinstance(item, dict)]


def _parts_text(content: Any, kinds: set) -> List[str]:
    if isinstance(content, str):
        return [content] if "text" in kinds else []
    if not isinstance(content, list):
        return []
    chunks: List[str] = []
    for part in content:
        if isinstance(part, dict) and part.get("type") in kinds and isinstance(part.get("text"), str):
            if part["text"]:
                chunks.append(part["text"])
    return chunks


def _tool_invocation(call_id: Any, name: Any, arguments: Any, tool_name: str) -> Optional[ToolInvocation]:
    if not isinstance(call_id, str) or not call_id:
        logger.warning("Dropping tool call without an id (name=%s)", name)
        return None
    name_text = name if isinstance(name, str) else ""
    if isinstance(arguments, (dict, list)):
        raw_arguments = json.dumps(arguments, ensure_ascii=False)
        parsed: Any = arguments
    else:
        raw_arguments = arguments if isinstance(arguments, str) else ""
        parsed = None
    error: Optional[str] = None
    filter_text: Optional[str] = None
    if tool_name and name_text and name_text != tool_name:
        error = f"Unknown tool '{name_text}'; only '{tool_name}' is available"
    else:
        if parsed is None:
            try:
                parsed = json.loads(raw_arguments) if raw_arguments.strip() else {}
            except ValueError:
                error = "Tool arguments are not valid JSON"
        if error is None:
            if not isinstance(parsed, dict):
                error = "Tool arguments must be a JSON object"
            else:
                value = parsed.get("filter")
                if value is None:
                    value = parsed.get("query")
                if isinstance(value, str) and value.strip():
                    filter_text = value
                else:
                    error = "Missing 'filter' argument"
    return ToolInvocation(
        call_id=call_id,
        name=name_text,
        filter_text=filter_text,
        raw_arguments=raw_arguments,
        argument_error=error,
    )


def _extract_reasoning(raw: Dict[str, Any]) -> str:
    content = raw.get("reasoning_content")
    if isinstance(content, str) and content.strip():
        return content
    if isinstance(content, list):
        text = "".join(_parts_text(content, {"text"}))
        if text:
            return text
    reasoning = raw.get("reasoning")
    if isinstance(reasoning, dict) and isinstance(reasoning.get("summary"), list):
        summary = [
            item if isinstance(item, str) else item.get("text", "")
            for item in reasoning["summary"]
            if isinstance(item, (str, dict))
        ]
        summary_text = ". ".join(s.strip() for s in summary if isinstance(s, str) and s.strip())
        if summary_text:
            return summary_text
    chunks: List[str] = []
    output = raw.get("output")
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "reasoning":
                chunks.extend(_parts_text(item.get("summary"), REASONING_PART_TYPES))
            chunks.extend(_parts_text(item.get("content"), REASONING_PART_TYPES))
    choices = raw.get("choices")
    if not chunks and isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        fallback = message.get("reasoning_content") or message.get("reasoning")
        if isinstance(fallback, str):
            chunks.append(fallback)
    return "".join(chunks)


def parse_completion(raw: Any, tool_name: str = "") -> CompletionResult:
    """Translate any known reply shape into a CompletionResult.

    Supported: Responses API output items (function_call, message, reasoning),
    the SDK-style output_text shortcut, and chat-completions choices with
    message.tool_calls. Unknown fields are ignored.
    """
    if not isinstance(raw, dict):
        return CompletionResult()
    tool_calls: List[ToolInvocation] = []
    text_chunks: List[str] = []
    output = raw.get("output")
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if kind in ("function_call", "tool_call"):
                call = _tool_invocation(item.get("call_id") or item.get("id"), item.get("name"), item.get("arguments"), tool_name)
                if call is not None:
                    tool_calls.append(call)
            elif kind == "message" or (kind not in ("reasoning",) and "content" in item):
                text_chunks.extend(_parts_text(item.get("content"), TEXT_PART_TYPES))
    choices = raw.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        text_chunks.extend(_parts_text(message.get("content"), TEXT_PART_TYPES))
        for entry in message.get("tool_calls") or []:
            if not isinstance(entry, dict):
                continue
            function = entry.get("function") or {}
            call = _tool_invocation(entry.get("id"), function.get("name"), function.get("arguments"), tool_name)
            if call is not None:
                tool_calls.append(call)
    output_text = raw.get("output_text")
    text = output_text if isinstance(output_text, str) and output_text else "".join(text_chunks)
    return CompletionResult(
        response_id=str(raw.get("id") or ""),
        tool_calls=tool_calls,
        text=text,
        reasoning=_extract_reasoning(raw),
    )


def reasoning_thoughts(reasoning: str, limit: int = 3) -> List[str]:
    lines = [line.strip() for line in _THOUGHT_SPLIT_RE.split(reasoning or "")]
    return [line for line in lines if len(line) > 10][:limit]
