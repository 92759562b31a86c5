import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from . import agents
from .broadening import DEFAULT_MAX_ATTEMPTS, EventSink, lookup_with_broadening
from .errors import CatalogError, FilterSyntaxError, LLMError, PricingError
from .filters import describe_filter
from .llm import parse_completion, reasoning_thoughts
from .schemas import CompletionResult, PriceResultSet, StreamEvent, ToolInvocation, TurnResult
from .streaming import encode_comment, encode_event


logger = logging.getLogger("uvicorn.error")

DEFAULT_MAX_TOOL_ROUNDS = 6
NO_RESPONSE_TEXT = "No response generated"
ROUND_LIMIT_NOTICE = (
    "I stopped after several rounds of price lookups without reaching a final answer. "
    "Please narrow the question (service, SKU and region) and try again."
)
EMPTY_RESULT_SUGGESTION = (
    "No prices matched, even after broadening. Try fewer or different keywords, "
    "common abbreviations (e.g. 'rt' for realtime, 'glbl' for global) or another region."
)
INVALID_ARGUMENTS_HINT = 'Call price_lookup with a JSON object such as {"filter": "armRegionName eq \'eastus\'"}.'


async def _discard(event_type: str, payload: Dict[str, Any]) -> None:
    return None


def price_data_payload(result: PriceResultSet) -> Dict[str, Any]:
    return {
        "records": result.records_payload(),
        "filter_used": result.filter_used,
        "count": result.count,
        "attempts": result.attempts,
        "original_filter": result.original_filter,
    }


def _result_message(index: int, total: int, result: PriceResultSet) -> str:
    if not result.records:
        return f"Query {index}/{total}: no results found"
    prices = [r.unit_price for r in result.records]
    low, high = min(prices), max(prices)
    span = f"${low:.4f}" if low == high else f"${low:.4f} - ${high:.4f}"
    return f"Query {index}/{total}: found {result.count} results ({span})"


class ConversationDriver:
    """Runs one turn: model round-trips, concurrent price lookups, final answer."""

    def __init__(
        self,
        llm_client: Any,
        catalog: Any,
        *,
        model: str,
        instructions: str = agents.DEFAULT_INSTRUCTIONS,
        reference_text: str = "",
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        max_broaden_attempts: int = DEFAULT_MAX_ATTEMPTS,
        tool_output_max_records: int = 200,
        reasoning_effort: Optional[str] = "medium",
        reasoning_summary: Optional[str] = "auto",
        max_output_tokens: Optional[int] = 4000,
        reasoning_steps: int = 3,
    ) -> None:
        self.llm_client = llm_client
        self.catalog = catalog
        self.model = model
        self.instructions = instructions
        self.reference_text = reference_text
        self.max_tool_rounds = max_tool_rounds
        self.max_broaden_attempts = max_broaden_attempts
        self.tool_output_max_records = tool_output_max_records
        self.reasoning_effort = reasoning_effort
        self.reasoning_summary = reasoning_summary
        self.max_output_tokens = max_output_tokens
        self.reasoning_steps = reasoning_steps

    def _reasoning(self) -> Optional[Dict[str, Any]]:
        if not self.reasoning_effort:
            return None
        reasoning: Dict[str, Any] = {"effort": self.reasoning_effort}
        if self.reasoning_summary:
            reasoning["summary"] = self.reasoning_summary
        return reasoning

    async def _complete(self, input_items: List[Dict[str, Any]], previous_response_id: Optional[str]) -> CompletionResult:
        raw = await self.llm_client.create_response(
            model=self.model,
            input_items=input_items,
            tools=[agents.price_tool_schema()],
            previous_response_id=previous_response_id,
            reasoning=self._reasoning(),
            max_output_tokens=self.max_output_tokens,
        )
        return parse_completion(raw, agents.PRICE_TOOL_NAME)

    async def _emit_reasoning(self, completion: CompletionResult, emit: EventSink) -> None:
        for thought in reasoning_thoughts(completion.reasoning, self.reasoning_steps):
            await emit("step", {"message": f"Thinking: {thought}"})

    @staticmethod
    def _pending_calls(completion: CompletionResult, processed: Set[str]) -> List[ToolInvocation]:
        pending: List[ToolInvocation] = []
        seen: Set[str] = set()
        for call in completion.tool_calls:
            if call.call_id in processed or call.call_id in seen:
                continue
            seen.add(call.call_id)
            pending.append(call)
        return pending

    def _tool_payload(self, result: PriceResultSet) -> Dict[str, Any]:
        limit = self.tool_output_max_records
        payload: Dict[str, Any] = {
            "items": result.records_payload(limit),
            "filter": result.filter_used,
            "count": result.count,
            "attempts": result.attempts,
        }
        if result.filter_used != result.original_filter:
            payload["original_filter"] = result.original_filter
        if result.count > limit:
            payload["truncated"] = True
        if not result.count:
            payload["suggestion"] = EMPTY_RESULT_SUGGESTION
        return payload

    async def _execute(
        self,
        call: ToolInvocation,
        index: int,
        total: int,
        emit: EventSink,
        processed: Set[str],
        completed: List[PriceResultSet],
    ) -> Tuple[str, Dict[str, Any]]:
        """Never raises for invocation-local faults; they become error payloads for the model."""
        try:
            if call.argument_error:
                logger.warning("Tool call %s has unusable arguments: %s", call.call_id, call.argument_error)
                return call.call_id, {
                    "error": "InvalidToolArguments",
                    "message": call.argument_error,
                    "hint": INVALID_ARGUMENTS_HINT,
                }
            filter_text = call.filter_text or ""
            await emit("step", {"message": f"Query {index}/{total} - {describe_filter(filter_text)}"})
            try:
                result = await lookup_with_broadening(self.catalog, filter_text, self.max_broaden_attempts, emit)
            except FilterSyntaxError as exc:
                logger.warning("Rejected filter %r: %s", filter_text, exc.message)
                await emit("step", {"message": f"Query {index}/{total}: filter rejected, asking for a corrected one"})
                return call.call_id, exc.to_dict()
            except CatalogError as exc:
                logger.warning("Lookup %s failed for %r: %s", call.call_id, filter_text, exc.message)
                await emit("step", {"message": f"Query {index}/{total} failed: {exc.message}"})
                return call.call_id, exc.to_dict()
            completed.append(result)
            await emit("step", {"message": _result_message(index, total, result)})
            await emit("price_data", price_data_payload(result))
            return call.call_id, self._tool_payload(result)
        finally:
            processed.add(call.call_id)

    async def run(
        self,
        prompt: str,
        continuation_token: Optional[str] = None,
        emit: Optional[EventSink] = None,
    ) -> TurnResult:
        emit = emit or _discard
        completion = await self._complete(
            agents.build_initial_input(self.instructions, self.reference_text, prompt),
            continuation_token,
        )
        session_token = continuation_token or completion.response_id
        if not session_token:
            raise LLMError("LLM runtime returned no response id")
        await emit("session_token", {"token": session_token})
        await self._emit_reasoning(completion, emit)

        # Turn-scoped; discarded when run() returns.
        processed: Set[str] = set()
        completed: List[PriceResultSet] = []
        rounds = 0
        limit_reached = False
        while True:
            pending = self._pending_calls(completion, processed)
            if not pending:
                break
            if rounds >= self.max_tool_rounds:
                limit_reached = True
                logger.warning("Turn hit the %s lookup-round limit; %s calls left unanswered", rounds, len(pending))
                await emit("step", {"message": f"Stopped after {rounds} lookup rounds"})
                break
            rounds += 1
            noun = "query" if len(pending) == 1 else "queries"
            await emit("step", {"message": f"Decision: run {len(pending)} pricing {noun}"})
            outcomes = await asyncio.gather(
                *(
                    self._execute(call, idx, len(pending), emit, processed, completed)
                    for idx, call in enumerate(pending, start=1)
                )
            )
            if not completion.response_id:
                raise LLMError("LLM runtime returned no response id to continue from")
            completion = await self._complete(agents.build_tool_outputs(outcomes), completion.response_id)
            # No reasoning steps for the final reply.
            if rounds < self.max_tool_rounds and self._pending_calls(completion, processed):
                await self._emit_reasoning(completion, emit)

        text = completion.text.strip()
        if limit_reached and not text:
            text = ROUND_LIMIT_NOTICE
        return TurnResult(
            answer_text=text or NO_RESPONSE_TEXT,
            result_set=completed[-1] if completed else None,
            continuation_token=session_token,
            tool_rounds=rounds,
            round_limit_reached=limit_reached,
        )


def chunk_text(text: str, size: int) -> List[str]:
    if size <= 0 or len(text) <= size:
        return [text]
    chunks: List[str] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + size, length)
        if end < length:
            cut = text.rfind("\n", start, end)
            if cut <= start:
                cut = text.rfind(" ", start, end)
            if cut > start:
                end = cut + 1
        chunks.append(text[start:end])
        start = end
    return chunks


def answer_events(result: TurnResult, chunk_chars: int = 0) -> List[StreamEvent]:
    if result.result_set is None:
        return [StreamEvent(type="direct_answer", data={"text": result.answer_text})]
    events = [StreamEvent(type="answer_chunk", data={"text": chunk}) for chunk in chunk_text(result.answer_text, chunk_chars)]
    dataset = result.result_set
    events.append(
        StreamEvent(
            type="answer_complete",
            data={
                "text": result.answer_text,
                "records": dataset.records_payload(),
                "filter_used": dataset.filter_used,
                "count": dataset.count,
            },
        )
    )
    return events


async def stream_turn(
    driver: ConversationDriver,
    prompt: str,
    continuation_token: Optional[str] = None,
    *,
    turn_timeout_s: float = 120.0,
    keepalive_interval_s: float = 15.0,
    answer_chunk_chars: int = 0,
) -> AsyncIterator[str]:
    """Run one turn and yield encoded frames; always ends with exactly one terminal frame."""
    queue: asyncio.Queue = asyncio.Queue()

    async def emit(event_type: str, payload: Dict[str, Any]) -> None:
        await queue.put(StreamEvent(type=event_type, data=payload))

    async def run_turn() -> None:
        try:
            result = await asyncio.wait_for(driver.run(prompt, continuation_token, emit=emit), timeout=turn_timeout_s)
            for event in answer_events(result, answer_chunk_chars):
                await queue.put(event)
        except asyncio.TimeoutError:
            logger.warning("Turn exceeded %ss and was terminated", turn_timeout_s)
            await queue.put(StreamEvent(type="error", data={"message": f"Request timed out after {turn_timeout_s:g}s"}))
        except PricingError as exc:
            logger.warning("Turn failed: %s", exc.message)
            await queue.put(StreamEvent(type="error", data={"message": exc.message}))
        except Exception:
            logger.exception("Unexpected failure while answering a pricing question")
            await queue.put(StreamEvent(type="error", data={"message": "Unexpected server error"}))
        finally:
            await queue.put(None)

    task = asyncio.create_task(run_turn())
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_interval_s)
            except asyncio.TimeoutError:
                yield encode_comment()
                continue
            if event is None:
                break
            yield encode_event(event)
    finally:
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
