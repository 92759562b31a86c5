"""Deterministic relaxation of zero-result price filters.

The exact region clause and any clause that is not a meter/product keyword are
kept verbatim. Keywords are removed in a fixed order so the same filter always
broadens the same way:

1. more than one meter keyword: drop the last meter keyword
2. one meter keyword plus product keywords: drop every product keyword
3. no meter keyword, more than one product keyword: drop the last product keyword
4. otherwise the filter cannot be broadened
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .filters import ParsedFilter, describe_filter, parse_filter, render_filter
from .schemas import PriceResultSet


logger = logging.getLogger("uvicorn.error")

EventSink = Callable[[str, Dict[str, Any]], Awaitable[None]]

DEFAULT_MAX_ATTEMPTS = 3


def broaden(filter_text: str) -> Optional[str]:
    parsed = parse_filter(filter_text)
    if parsed.has_or:
        return None
    meter = parsed.meter_keywords
    product = parsed.product_keywords
    if len(meter) > 1:
        broader = ParsedFilter(
            region_clause=parsed.region_clause,
            meter_keywords=meter[:-1],
            product_keywords=product,
            other_clauses=parsed.other_clauses,
        )
    elif len(meter) == 1 and product:
        broader = ParsedFilter(
            region_clause=parsed.region_clause,
            meter_keywords=meter,
            other_clauses=parsed.other_clauses,
        )
    elif not meter and len(product) > 1:
        broader = ParsedFilter(
            region_clause=parsed.region_clause,
            product_keywords=product[:-1],
            other_clauses=parsed.other_clauses,
        )
    else:
        return None
    return render_filter(broader)


async def lookup_with_broadening(
    catalog: Any,
    filter_text: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    emit: Optional[EventSink] = None,
) -> PriceResultSet:
    """Fetch, broadening on empty results, for at most `max_attempts` catalog queries.

    Catalog errors propagate; the caller decides whether they are fatal.
    """
    current = filter_text.strip()
    tried: Set[str] = set()
    attempts = 0
    while True:
        attempts += 1
        tried.add(current)
        records = await catalog.fetch(current)
        if records or attempts >= max_attempts:
            break
        broader = broaden(current)
        if broader is None or broader in tried:
            break
        logger.info("No prices for %s; retrying with %s", current, broader)
        if emit is not None:
            await emit(
                "step",
                {"message": f"No results for {describe_filter(current)}; broadening to {describe_filter(broader)}"},
            )
        current = broader
    return PriceResultSet(
        records=records,
        filter_used=current,
        original_filter=filter_text.strip(),
        attempts=attempts,
    )
