"""Tolerant JSON recovery for language-model replies.

Model output is untrusted text: it may be valid JSON, JSON wrapped in markdown
fences or prose, a loose JavaScript/Python dialect, a truncated document, or
plain text. ``parse_llm_json`` works through a ladder of strategies, each more
permissive than the last, and returns the first value it can produce. When
nothing works it returns the input string unchanged, so callers can treat a
``str`` result as a plain-text answer.

Every stage returns a ``(value, error)`` pair; ``error is None`` means success
(``value`` may legitimately be ``None`` for a JSON ``null``).
"""

from typing import Any, Dict, List, Optional, Tuple, Union
import itertools
import json
import logging
import re

from pydantic import ValidationError

from ..models.config import ParseOptions

logger = logging.getLogger(__name__)

Outcome = Tuple[Any, Optional[str]]

_ESCAPES = {"\\n": "\n", "\\r": "\r", "\\t": "\t"}
_ESCAPE_RE = re.compile(r"\\[nrt]")
_OPEN_FENCE_RE = re.compile(r"^```[\w+-]*[ \t]*\n?", re.MULTILINE)
_CLOSE_FENCE_RE = re.compile(r"\n?```[ \t]*$", re.MULTILINE)

_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$-]*)(\s*:)")
_PY_LITERAL_RE = re.compile(r"\b(True|False|None)\b")
_PY_LITERALS = {"True": "true", "False": "false", "None": "null"}

_GREEDY_SPAN_RE = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")

_CLOSERS = {"{": "}", "[": "]"}
_MAX_PARTIAL_CUTS = 64


# --- Preprocessing ---------------------------------------------------------

def normalize_escapes(text: str) -> str:
    """Turn literal ``\\n``, ``\\r`` and ``\\t`` pairs into real control characters."""
    if not text:
        return text
    return _ESCAPE_RE.sub(lambda m: _ESCAPES[m.group(0)], text)


def strip_code_fences(text: str) -> str:
    if not text:
        return text
    text = _OPEN_FENCE_RE.sub("", text)
    return _CLOSE_FENCE_RE.sub("", text)


def preprocess_llm_text(text: str) -> str:
    """Clean common model-output artifacts before any parser sees the text.

    Escape sequences are normalized first, then markdown fences are removed
    and the result is trimmed. A fence with no payload yields ``""``.
    """
    if not text:
        return ""
    text = normalize_escapes(text)
    text = strip_code_fences(text)
    return text.strip()


# --- Repairs ---------------------------------------------------------------

def _split_segments(text: str) -> List[Tuple[str, str]]:
    """Split text into ``code``, ``string`` and ``comment`` segments.

    Both quote styles open a string; a backslash escapes the next character.
    Unterminated strings and block comments run to the end of the text.
    """
    segments: List[Tuple[str, str]] = []
    buf: List[str] = []
    i = 0
    n = len(text)

    def flush():
        if buf:
            segments.append(("code", "".join(buf)))
            buf.clear()

    while i < n:
        ch = text[i]
        if ch in "\"'":
            flush()
            j = i + 1
            while j < n:
                if text[j] == "\\":
                    j += 2
                    continue
                if text[j] == ch:
                    break
                j += 1
            segments.append(("string", text[i:j + 1]))
            i = j + 1
            continue
        if ch == "/" and i + 1 < n and text[i + 1] in "/*":
            flush()
            if text[i + 1] == "/":
                end = text.find("\n", i)
                end = n if end == -1 else end
            else:
                end = text.find("*/", i + 2)
                end = n if end == -1 else end + 2
            segments.append(("comment", text[i:end]))
            i = end
            continue
        buf.append(ch)
        i += 1
    flush()
    return segments


def _map_code(text: str, fn) -> str:
    return "".join(
        fn(chunk) if kind == "code" else chunk
        for kind, chunk in _split_segments(text)
    )


def strip_bom(text: str) -> str:
    return text.lstrip("\ufeff")


def strip_comments(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments that sit outside string literals."""
    return "".join(
        chunk for kind, chunk in _split_segments(text) if kind != "comment"
    )


def remove_trailing_commas(text: str) -> str:
    return _map_code(text, lambda code: _TRAILING_COMMA_RE.sub(r"\1", code))


def quote_bare_keys(text: str) -> str:
    """Quote identifier keys that directly follow ``{`` or ``,``."""
    return _map_code(text, lambda code: _BARE_KEY_RE.sub(r'\1"\2"\3', code))


def _requote(literal: str) -> str:
    if len(literal) >= 2 and literal.endswith("'"):
        body = literal[1:-1]
    else:
        body = literal[1:]
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append("'" if nxt == "'" else ch + nxt)
            i += 2
            continue
        out.append('\\"' if ch == '"' else ch)
        i += 1
    return '"' + "".join(out) + '"'


def normalize_single_quotes(text: str) -> str:
    """Rewrite single-quoted string literals as double-quoted ones."""
    return "".join(
        _requote(chunk) if kind == "string" and chunk.startswith("'") else chunk
        for kind, chunk in _split_segments(text)
    )


def replace_python_literals(text: str) -> str:
    return _map_code(
        text, lambda code: _PY_LITERAL_RE.sub(lambda m: _PY_LITERALS[m.group(1)], code)
    )


_REPAIRS = (
    strip_bom,
    strip_comments,
    remove_trailing_commas,
    quote_bare_keys,
    normalize_single_quotes,
    replace_python_literals,
)


def apply_fixes(text: str) -> str:
    """Apply every syntax repair, in order, to ``text``."""
    for repair in _REPAIRS:
        text = repair(text)
    return text


# --- Parse stages ----------------------------------------------------------

def _reject_constant(name: str):
    raise ValueError(f"Non-standard numeric literal: {name}")


def _strict_parse(text: str) -> Outcome:
    if not text or not text.strip():
        return None, "empty input"
    try:
        # strict=False only admits raw control characters inside strings
        return json.loads(text, strict=False, parse_constant=_reject_constant), None
    except (ValueError, RecursionError) as e:
        return None, str(e)


def _fixed_parse(text: str) -> Outcome:
    return _strict_parse(apply_fixes(text))


def _parse_candidate(text: str) -> Outcome:
    value, err = _strict_parse(text)
    if err is None:
        return value, None
    value, fix_err = _fixed_parse(text)
    if fix_err is None:
        return value, None
    return None, f"{err} / after fixes: {fix_err}"


def _match_span(text: str, start: int) -> Tuple[Optional[int], bool]:
    """Find the end of the balanced span opening at ``start``.

    Returns ``(end, truncated)``. ``end`` is ``None`` when the delimiters
    mismatch or the text runs out first; ``truncated`` is set in the latter case.
    """
    stack: List[str] = []
    quote = None
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "{[":
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None, False
            if not stack:
                return i + 1, False
    return None, True


def _collect_spans(text: str, max_blocks: int) -> Tuple[List[str], Optional[str]]:
    spans: List[str] = []
    pos = 0
    n = len(text)
    tail = None
    while len(spans) < max_blocks and pos < n:
        start = next((i for i in range(pos, n) if text[i] in "{["), None)
        if start is None:
            break
        end, truncated = _match_span(text, start)
        if end is None:
            # The first unterminated span is kept for partial acceptance.
            if truncated and tail is None:
                tail = text[start:]
            pos = start + 1
            continue
        spans.append(text[start:end])
        pos = end
    return spans, tail


def find_json_candidates(text: str, max_blocks: int = 1) -> List[str]:
    """Return up to ``max_blocks`` top-level balanced ``{...}``/``[...]`` spans."""
    if not text:
        return []
    spans, _ = _collect_spans(text, ParseOptions(max_blocks=max_blocks).max_blocks)
    return spans


def extract_json_substring(text: str) -> Optional[str]:
    spans = find_json_candidates(text, 1)
    return spans[0] if spans else None


def _partial_completions(fragment: str):
    """Yield closed-off prefixes of a truncated fragment, longest first."""
    stack: List[str] = []
    quote = None
    escape = False
    cuts: List[Tuple[int, Tuple[str, ...]]] = []
    for i, ch in enumerate(fragment):
        if quote:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == quote:
                quote = None
                cuts.append((i + 1, tuple(stack)))
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "{[":
            stack.append(_CLOSERS[ch])
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                break
            stack.pop()
            cuts.append((i + 1, tuple(stack)))
        elif ch.isalnum() or ch == ".":
            cuts.append((i + 1, tuple(stack)))

    if quote and not escape and stack:
        yield fragment + quote + "".join(reversed(stack))
    for cut, open_stack in reversed(cuts):
        if open_stack:
            yield fragment[:cut].rstrip() + "".join(reversed(open_stack))


def close_partial_json(fragment: str) -> Outcome:
    """Parse the longest prefix of a truncated fragment that closes cleanly.

    Only the ``_MAX_PARTIAL_CUTS`` longest cut points are tried.
    """
    completions = _partial_completions(fragment)
    for candidate in itertools.islice(completions, _MAX_PARTIAL_CUTS):
        value, err = _parse_candidate(candidate)
        if err is None:
            return value, None
    return None, "no parseable prefix"


def _extract_parse(text: str, options: ParseOptions) -> Outcome:
    spans, _ = _collect_spans(text, options.max_blocks)
    if not spans:
        return None, "no balanced JSON span"
    parsed = []
    for span in spans:
        value, err = _parse_candidate(span)
        if err is not None:
            continue
        if options.prefer_first:
            return value, None
        parsed.append((len(span), value))
    if parsed:
        # max() keeps the earliest span on equal lengths
        return max(parsed, key=lambda item: item[0])[1], None
    return None, f"{len(spans)} candidate span(s) failed to parse"


def _partial_parse(text: str, options: ParseOptions) -> Outcome:
    _, tail = _collect_spans(text, options.max_blocks)
    if tail is None:
        return None, "no truncated span"
    return close_partial_json(tail)


def _coerce_options(options: Union[ParseOptions, Dict[str, Any], None]) -> ParseOptions:
    if options is None:
        return ParseOptions()
    if isinstance(options, ParseOptions):
        return options
    try:
        return ParseOptions.model_validate(options)
    except ValidationError as e:
        logger.warning(f"Invalid parse options {options!r}, using defaults: {e}")
        return ParseOptions()


def _run_ladder(cleaned: str, options: ParseOptions) -> Outcome:
    strategies = [("strict", lambda: _strict_parse(cleaned))]
    if options.attempt_fix:
        strategies.append(("fixed", lambda: _fixed_parse(cleaned)))
    strategies.append(("extraction", lambda: _extract_parse(cleaned, options)))
    if options.allow_partial:
        strategies.append(("partial", lambda: _partial_parse(cleaned, options)))

    errors = []
    for name, strategy in strategies:
        value, err = strategy()
        if err is None:
            logger.debug(f"LLM JSON recovered by {name} parse")
            return value, None
        errors.append(f"{name}: {err}")
    return None, " | ".join(errors)


def _recover(text: str, options: ParseOptions) -> Outcome:
    """Parse ``text`` as-is, then run the ladder on its cleaned forms.

    Valid JSON is never escape-normalized: a ``\\\\n`` inside a string value
    would otherwise turn into an invalid escape. When the normalized text
    fails, the ladder runs again with only fences stripped.
    """
    value, err = _strict_parse(text.strip())
    if err is None:
        return value, None

    cleaned = preprocess_llm_text(text)
    value, err = _run_ladder(cleaned, options)
    if err is None:
        return value, None

    verbatim = strip_code_fences(text).strip()
    if verbatim != cleaned:
        value, verbatim_err = _run_ladder(verbatim, options)
        if verbatim_err is None:
            return value, None
    return None, err


def parse_llm_json(
    text: Any,
    options: Union[ParseOptions, Dict[str, Any], None] = None,
) -> Any:
    """Recover a JSON value from model output.

    Args:
        text: Raw model output. Non-string values are assumed to be parsed
            already and are returned as they are.
        options: ``ParseOptions``, a mapping of option names (snake_case or
            camelCase), or ``None`` for defaults.

    Returns:
        The parsed value, or ``text`` itself when no strategy succeeds.
    """
    if not isinstance(text, str):
        return text
    value, err = _recover(text, _coerce_options(options))
    if err is not None:
        logger.debug(f"No JSON recovered, returning text as-is: {err}")
        return text
    return value


# --- Reply normalization ---------------------------------------------------

def _is_structured(value: Any) -> bool:
    return isinstance(value, (dict, list))


def recover_llm_response(raw: Any, max_blocks: int = 5) -> Any:
    """Normalize an agent reply into a mapping/sequence when one is in there.

    Used on inference-service replies: already-structured replies pass through,
    double-encoded JSON strings are decoded, and anything that does not yield a
    mapping or sequence comes back as the original string.
    """
    if not isinstance(raw, str):
        return raw

    cleaned = preprocess_llm_text(raw)

    for text in (raw.strip(), cleaned):
        value, err = _strict_parse(text)
        if err is None and isinstance(value, str):
            value, err = _strict_parse(value.strip())
        if err is None and _is_structured(value):
            logger.debug("Direct JSON parse succeeded")
            return value

    options = ParseOptions(attempt_fix=True, max_blocks=max_blocks, prefer_first=True)
    value, err = _recover(raw, options)
    if err is None and _is_structured(value):
        logger.debug("Recovery parse succeeded")
        return value

    match = _GREEDY_SPAN_RE.search(cleaned)
    if not match:
        logger.debug("No JSON found in response, keeping as-is")
        return raw

    span = match.group(0)
    value, err = _strict_parse(span)
    if err is None and _is_structured(value):
        logger.debug("JSON extraction succeeded")
        return value

    value, err = _run_ladder(span, ParseOptions(attempt_fix=True))
    if err is None and _is_structured(value):
        logger.debug("Last resort parsing succeeded")
        return value

    logger.info("All parsing strategies failed, keeping original response")
    return raw


def safe_load_json(raw_content: Optional[str]) -> Tuple[Optional[Any], Optional[str]]:
    """Load structured JSON from raw model content.

    Returns ``(data, error_message)``; ``data`` is a dict or list on success.
    """
    if raw_content is None:
        return None, "No content"
    value, err = _recover(raw_content, ParseOptions(attempt_fix=True))
    if err is None and _is_structured(value):
        return value, None
    if err is None:
        err = f"parsed a {type(value).__name__}, not an object or array"
    snippet = (raw_content[:200] + '...') if len(raw_content) > 200 else raw_content
    return None, f"JSON parse failed: {err} | content snippet: {snippet}"
