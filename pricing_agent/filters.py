"""Price filter grammar.

Filters are OData-style expressions understood by the retail price catalog:

    armRegionName eq 'eastus' and contains(tolower(meterName), 'd8s')

Validation runs before any network call so a malformed filter never reaches
the catalog; the error carries a hint the model can act on.
"""

import re
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Tuple

from .errors import FilterSyntaxError


FUNCTIONS = {"contains", "tolower"}
OPERATORS = {"eq", "ne", "and", "or"}
FIELDS = {
    "armRegionName",
    "armSkuName",
    "currencyCode",
    "location",
    "meterId",
    "meterName",
    "priceType",
    "productId",
    "productName",
    "reservationTerm",
    "serviceFamily",
    "serviceId",
    "serviceName",
    "skuId",
    "skuName",
    "type",
    "unitOfMeasure",
}
METER_FIELD = "meterName"
PRODUCT_FIELD = "productName"
REGION_FIELD = "armRegionName"

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<string>'[^']*')|(?P<word>[A-Za-z_][A-Za-z0-9_]*)|(?P<lparen>\()|(?P<rparen>\))|(?P<comma>,))"
)
_REGION_EQ_RE = re.compile(r"^armRegionName\s+eq\s+'[^']*'$")
_KEYWORD_RE = re.compile(
    r"^contains\(\s*(?:tolower\(\s*(?P<lowered>meterName|productName)\s*\)|(?P<plain>meterName|productName))"
    r"\s*,\s*'(?P<keyword>[^']*)'\s*\)$"
)

EXAMPLE_FILTER = "armRegionName eq 'eastus' and contains(tolower(meterName), 'd8s')"


class Token(NamedTuple):
    kind: str
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class ParsedFilter:
    region_clause: Optional[str] = None
    meter_keywords: Tuple[str, ...] = ()
    product_keywords: Tuple[str, ...] = ()
    other_clauses: Tuple[str, ...] = ()
    has_or: bool = False
    clauses: List[str] = field(default_factory=list, compare=False)


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    length = len(text)
    while pos < length:
        if text[pos:].strip() == "":
            break
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise FilterSyntaxError(
                f"Unexpected character {text[pos:].lstrip()[:1]!r} at position {pos}",
                hint="Use only field names, contains()/tolower(), eq/and/or and quoted lowercase literals.",
                filter_text=text,
            )
        kind = match.lastgroup or ""
        tokens.append(Token(kind, match.group(kind), match.start(kind), match.end(kind)))
        pos = match.end()
    return tokens


def _check_parentheses(text: str) -> None:
    depth = 0
    in_string = False
    for idx, char in enumerate(text):
        if char == "'":
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise FilterSyntaxError(
                    f"Unexpected ')' at position {idx}",
                    hint="Every ')' must close an earlier '('. Remove the extra parenthesis.",
                    filter_text=text,
                )
    if depth:
        raise FilterSyntaxError(
            f"{depth} unclosed '(' in filter",
            hint="Close every contains( and tolower( call, e.g. contains(tolower(meterName), 'd8s').",
            filter_text=text,
        )


def validate_filter(text: Optional[str]) -> str:
    """Return the trimmed filter or raise FilterSyntaxError without touching the network."""
    cleaned = (text or "").strip()
    if not cleaned:
        raise FilterSyntaxError(
            "Filter is empty",
            hint=f"Provide a filter such as: {EXAMPLE_FILTER}",
            filter_text=text,
        )
    quotes = cleaned.count("'")
    if quotes % 2:
        raise FilterSyntaxError(
            f"Unbalanced quotes: found {quotes} single quotes",
            hint="Wrap every literal in a matching pair of single quotes, e.g. armRegionName eq 'eastus'.",
            filter_text=cleaned,
        )
    _check_parentheses(cleaned)
    tokens = tokenize(cleaned)
    for idx, token in enumerate(tokens):
        nxt = tokens[idx + 1] if idx + 1 < len(tokens) else None
        if token.kind == "word":
            if nxt is not None and nxt.kind == "lparen":
                if token.text not in FUNCTIONS:
                    raise FilterSyntaxError(
                        f"Function '{token.text}' is not supported",
                        hint="Only contains(...) and tolower(...) may be called.",
                        filter_text=cleaned,
                    )
            elif token.text not in OPERATORS and token.text not in FIELDS:
                raise FilterSyntaxError(
                    f"Unknown field or keyword '{token.text}'",
                    hint="Filter on armRegionName, meterName or productName and join clauses with 'and'.",
                    filter_text=cleaned,
                )
        elif token.kind == "string":
            literal = token.text[1:-1]
            if literal != literal.lower():
                raise FilterSyntaxError(
                    f"Literal {token.text} must be lowercase",
                    hint=f"Use {token.text.lower()} together with tolower(field).",
                    filter_text=cleaned,
                )
    for edge in (tokens[0], tokens[-1]):
        if edge.kind == "word" and edge.text in ("and", "or"):
            raise FilterSyntaxError(
                f"Dangling '{edge.text}' in filter",
                hint="Remove the leading or trailing 'and'/'or'.",
                filter_text=cleaned,
            )
    return cleaned


def split_clauses(text: str) -> Tuple[List[str], bool]:
    """Split on top-level 'and'; also report whether a top-level 'or' is present."""
    tokens = tokenize(text)
    clauses: List[str] = []
    depth = 0
    start = 0
    has_or = False
    for token in tokens:
        if token.kind == "lparen":
            depth += 1
        elif token.kind == "rparen":
            depth -= 1
        elif token.kind == "word" and depth == 0:
            if token.text == "and":
                clauses.append(text[start:token.start].strip())
                start = token.end
            elif token.text == "or":
                has_or = True
    clauses.append(text[start:].strip())
    return [c for c in clauses if c], has_or


def parse_filter(text: str) -> ParsedFilter:
    clauses, has_or = split_clauses(text)
    region: Optional[str] = None
    meter: List[str] = []
    product: List[str] = []
    other: List[str] = []
    for clause in clauses:
        if region is None and _REGION_EQ_RE.match(clause):
            region = clause
            continue
        match = _KEYWORD_RE.match(clause)
        if match:
            target = match.group("lowered") or match.group("plain")
            (meter if target == METER_FIELD else product).append(match.group("keyword"))
            continue
        other.append(clause)
    return ParsedFilter(
        region_clause=region,
        meter_keywords=tuple(meter),
        product_keywords=tuple(product),
        other_clauses=tuple(other),
        has_or=has_or,
        clauses=clauses,
    )


def keyword_clause(field_name: str, keyword: str) -> str:
    return f"contains(tolower({field_name}), '{keyword}')"


def render_filter(parsed: ParsedFilter) -> str:
    parts: List[str] = []
    if parsed.region_clause:
        parts.append(parsed.region_clause)
    parts.extend(parsed.other_clauses)
    parts.extend(keyword_clause(PRODUCT_FIELD, kw) for kw in parsed.product_keywords)
    parts.extend(keyword_clause(METER_FIELD, kw) for kw in parsed.meter_keywords)
    return " and ".join(parts)


def describe_filter(text: str) -> str:
    """Short human label for progress messages, e.g. 'd8s v4 in eastus'."""
    try:
        parsed = parse_filter(text)
    except FilterSyntaxError:
        return text
    label = " ".join([*parsed.product_keywords, *parsed.meter_keywords]).strip()
    if parsed.region_clause:
        region = parsed.region_clause.split("'")[1]
        label = f"{label} in {region}".strip()
    return label or text
