"""Prompt material for the pricing advisor: instructions, tool schema and input builders."""

import json
from typing import Any, Dict, List, Mapping, Sequence, Tuple

PRICE_TOOL_NAME = "price_lookup"

DEFAULT_INSTRUCTIONS = """
You are a cloud pricing advisor. Answer pricing questions using the price_lookup tool.

WORKFLOW
1) Plan: normalise product, SKU and region names; list every lookup the question needs.
2) Execute: issue ALL lookups in parallel in ONE response.
3) Respond: compare results and give a clear recommendation with a pricing table.
Never mention tools or filters to the user. Answer greetings and non-pricing questions directly.

FILTER SYNTAX
- Region, exact: armRegionName eq 'eastus'
- Keywords: contains(tolower(meterName), 'd8s') and contains(tolower(meterName), 'v4')
- Product (only when the user names one): contains(tolower(productName), 'openai')
- One keyword per contains(); join clauses with 'and'; literals lowercase, single word.
- Quotes and parentheses must match; no trailing 'and'/'or'.
If a lookup returns an error with a hint, fix the filter and call the tool again.
""".strip()


def price_tool_schema() -> Dict[str, Any]:
    return {
        "type": "function",
        "name": PRICE_TOOL_NAME,
        "description": (
            "Look up retail cloud prices. Returns matching price records for an OData-style filter "
            "over armRegionName, meterName and productName."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "filter": {
                    "type": "string",
                    "description": (
                        "Filter expression, e.g. armRegionName eq 'eastus' and "
                        "contains(tolower(meterName), 'd8s') and contains(tolower(meterName), 'v4')"
                    ),
                }
            },
            "required": ["filter"],
            "additionalProperties": False,
        },
        "strict": True,
    }


def flatten_reference_tables(tables: Mapping[str, Mapping[str, str]]) -> str:
    """Render {"Region codes": {"eastus": "East US"}} as 'Region codes: eastus:East US|...'."""
    lines = []
    for title, table in tables.items():
        if not table:
            continue
        compact = "|".join(f"{key}:{value}" for key, value in table.items())
        lines.append(f"{title}: {compact}")
    return "\n".join(lines)


def _message(role: str, text: str) -> Dict[str, Any]:
    return {"role": role, "content": [{"type": "input_text", "text": text}]}


def build_initial_input(instructions: str, reference_text: str, prompt: str) -> List[Dict[str, Any]]:
    items = [_message("system", instructions)]
    if reference_text:
        items.append(_message("user", reference_text))
    items.append(_message("user", prompt))
    return items


def build_tool_outputs(outputs: Sequence[Tuple[str, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(payload, ensure_ascii=False),
        }
        for call_id, payload in outputs
    ]
