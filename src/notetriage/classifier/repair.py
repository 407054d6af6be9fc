"""Model output normalization and JSON repair.

Small local models frequently wrap JSON in code fences, prepend prose,
use single quotes, leave trailing commas or stop mid-object when they hit
the token limit. This module turns such free-form text into a validated
ClassificationOutput, or a typed OutputParseError after bounded retries.

Repair pipeline:
1. Strip code fences and any text before the first opening brace
2. Flatten newlines, normalize quotes, drop trailing commas
3. Close an unterminated string, trim the last incomplete fragment,
   then append missing closers in reverse nesting order
4. Decode; on failure re-apply the repair up to max_retries times

Raw model JSON never leaves this module: callers receive either a
ClassificationOutput (every field whitelisted or clamped) or an error.

Usage:
    from notetriage.classifier.repair import parse_output

    result = parse_output(response_text)
    if result.ok:
        inference = result.output.to_inference_result()
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, cast

import regex
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from notetriage.classifier.taxonomy import (
    DECAY_PROFILES,
    DEFAULT_DECAY_PROFILE,
    DEFAULT_INTENT,
    DEFAULT_NOTE_TYPE,
    INTENTS,
    NOTE_TYPES,
    ConfidenceDetail,
    DecayProfile,
    InferenceResult,
    Intent,
    NoteType,
)
from notetriage.core.errors import OutputParseError
from notetriage.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout in seconds (CRITICAL: all operations MUST use this)
REGEX_TIMEOUT = 1.0

DEFAULT_MAX_RETRIES = 2
DEFAULT_SCORE = 0.5
DEFAULT_REASONING = "No reasoning provided"

# Upper bound on fragment trims per repair pass
_MAX_TRIM_STEPS = 64

FENCE_OPEN_PATTERN = regex.compile(r"^```(?:json)?[ \t]*\n?", regex.IGNORECASE)
FENCE_CLOSE_PATTERN = regex.compile(r"\n?```\s*$")
TRAILING_COMMA_PATTERN = regex.compile(r",\s*([}\]])")
PARTIAL_TOKEN_PATTERN = regex.compile(r"[-+0-9.eE]+$|[A-Za-z]+$")

_CURLY_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})
_CLOSERS = {"{": "}", "[": "]"}
_DECODER = json.JSONDecoder(strict=False)


# =============================================================================
# Repair
# =============================================================================


@dataclass
class _ScanState:
    """Bracket/string state of a JSON prefix."""

    stack: list[str] = field(default_factory=list)
    in_string: bool = False
    escape: bool = False
    # Index of the opening quote of the last string seen (open or closed)
    last_string_start: int = -1
    # Last significant character before that string, outside strings
    char_before_last_string: str = ""


def _scan(text: str) -> _ScanState:
    state = _ScanState()
    last_significant = ""
    for i, ch in enumerate(text):
        if state.in_string:
            if state.escape:
                state.escape = False
            elif ch == "\\":
                state.escape = True
            elif ch == '"':
                state.in_string = False
            continue

        if ch == '"':
            state.in_string = True
            state.last_string_start = i
            state.char_before_last_string = last_significant
        elif ch in "{[":
            state.stack.append(ch)
        elif ch in "}]":
            if state.stack and _CLOSERS[state.stack[-1]] == ch:
                state.stack.pop()

        if not ch.isspace():
            last_significant = ch
    return state


def _is_key_position(state: _ScanState) -> bool:
    """Whether the last string sits where an object key belongs."""
    return (
        bool(state.stack)
        and state.stack[-1] == "{"
        and state.char_before_last_string in ("{", ",")
    )


def _trim_tail(text: str) -> str:
    """Drop trailing fragments that cannot be completed by adding closers."""
    for _ in range(_MAX_TRIM_STEPS):
        text = text.rstrip()
        state = _scan(text)

        if text.endswith(","):
            text = text[:-1]
            continue

        if text.endswith(":"):
            # Dangling key with no value: drop the key as well
            inner = _scan(text[:-1].rstrip())
            if inner.last_string_start >= 0:
                text = text[: inner.last_string_start]
            else:
                text = text[:-1]
            continue

        if text.endswith('"') and _is_key_position(state):
            text = text[: state.last_string_start]
            continue

        match = PARTIAL_TOKEN_PATTERN.search(text, timeout=REGEX_TIMEOUT)
        if match and state.stack:
            try:
                json.loads(match.group(0))
            except json.JSONDecodeError:
                text = text[: match.start()]
                continue

        break
    return text


def repair_brackets(text: str) -> str:
    """Balance a truncated JSON prefix.

    Closes an unterminated string value (an unterminated key is dropped),
    trims the last incomplete key/value fragment, then appends missing
    closing brackets and braces in reverse nesting order.
    """
    state = _scan(text)
    if state.in_string:
        if state.escape:
            text = text[:-1]
        if _is_key_position(state):
            text = text[: state.last_string_start]
        else:
            text = text + '"'
        state = _scan(text)

    if not state.stack:
        return text

    text = _trim_tail(text)
    state = _scan(text)
    closers = "".join(_CLOSERS[opener] for opener in reversed(state.stack))
    return text + closers


def auto_repair_json(text: str) -> str:
    """Apply one full repair pass to raw model output."""
    repaired = (text or "").strip()

    try:
        repaired = FENCE_OPEN_PATTERN.sub("", repaired, timeout=REGEX_TIMEOUT)
        repaired = FENCE_CLOSE_PATTERN.sub("", repaired, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("repair_fence_strip_timeout")

    start = repaired.find("{")
    if start > 0:
        repaired = repaired[start:]

    repaired = repaired.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")
    repaired = repaired.translate(_CURLY_QUOTES)
    if '"' not in repaired:
        repaired = repaired.replace("'", '"')

    try:
        repaired = TRAILING_COMMA_PATTERN.sub(r"\1", repaired, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("repair_trailing_comma_timeout")

    return repair_brackets(repaired)


def _decode(text: str) -> Any:
    """Decode the first JSON value, ignoring trailing prose."""
    value, _end = _DECODER.raw_decode(text.strip())
    return value


def parse_with_repair(text: str, max_retries: int = DEFAULT_MAX_RETRIES) -> dict[str, Any]:
    """Repair and decode model output into a JSON object.

    Args:
        text: Raw model output
        max_retries: Extra repair passes after the first failed decode

    Returns:
        Decoded JSON object

    Raises:
        OutputParseError: If no repair pass yields a JSON object
    """
    current = auto_repair_json(text)
    last_error = "empty output"
    attempts = 0

    for _ in range(max_retries + 1):
        attempts += 1
        try:
            value = _decode(current)
            if isinstance(value, dict):
                if attempts > 1:
                    logger.debug("repair_succeeded_after_retry", attempts=attempts)
                return value
            last_error = f"top-level JSON value is {type(value).__name__}, not an object"
        except json.JSONDecodeError as e:
            last_error = str(e)

        logger.debug("repair_attempt_failed", attempt=attempts, error=last_error)
        current = auto_repair_json(current)

    raise OutputParseError(
        f"Model output could not be parsed as JSON after {attempts} attempts: {last_error}",
        attempts=attempts,
        raw_output=text or "",
    )


# =============================================================================
# Output schema
# =============================================================================


def _clamp_score(value: Any, default: float = DEFAULT_SCORE) -> float:
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return max(0.0, min(1.0, number))


def _whitelisted(value: Any, allowed: tuple[str, ...], default: str) -> str:
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in allowed:
            return normalized
    return default


class ConfidenceDetailOutput(BaseModel):
    """LLM-path confidence sub-scores, each clamped to [0, 1]."""

    model_config = ConfigDict(extra="ignore")

    structural: float = DEFAULT_SCORE
    semantic: float = DEFAULT_SCORE
    reasoning: float = DEFAULT_SCORE

    @field_validator("structural", "semantic", "reasoning", mode="before")
    @classmethod
    def clamp(cls, v: Any) -> float:
        return _clamp_score(v)


class ClassificationOutput(BaseModel):
    """Validated classification parsed from model output.

    Unknown enum values fall back to safe defaults and numbers are clamped,
    so validation of a decoded JSON object does not fail on field content.
    """

    model_config = ConfigDict(extra="ignore")

    note_type: NoteType = Field(
        default=DEFAULT_NOTE_TYPE,
        validation_alias=AliasChoices("type", "note_type"),
    )
    intent: Intent = DEFAULT_INTENT
    confidence: float = DEFAULT_SCORE
    confidence_detail: ConfidenceDetailOutput = Field(
        default_factory=ConfidenceDetailOutput,
        validation_alias=AliasChoices("confidenceDetail", "confidence_detail"),
    )
    decay_profile: DecayProfile = Field(
        default=DEFAULT_DECAY_PROFILE,
        validation_alias=AliasChoices("decayProfile", "decay_profile"),
    )
    reasoning: str = DEFAULT_REASONING

    @field_validator("note_type", mode="before")
    @classmethod
    def validate_type(cls, v: Any) -> str:
        return _whitelisted(v, NOTE_TYPES, DEFAULT_NOTE_TYPE)

    @field_validator("intent", mode="before")
    @classmethod
    def validate_intent(cls, v: Any) -> str:
        return _whitelisted(v, INTENTS, DEFAULT_INTENT)

    @field_validator("decay_profile", mode="before")
    @classmethod
    def validate_decay(cls, v: Any) -> str:
        return _whitelisted(v, DECAY_PROFILES, DEFAULT_DECAY_PROFILE)

    @field_validator("confidence", mode="before")
    @classmethod
    def validate_confidence(cls, v: Any) -> float:
        return _clamp_score(v)

    @field_validator("confidence_detail", mode="before")
    @classmethod
    def validate_detail(cls, v: Any) -> Any:
        return v if isinstance(v, dict) else {}

    @field_validator("reasoning", mode="before")
    @classmethod
    def validate_reasoning(cls, v: Any) -> str:
        if isinstance(v, str) and v.strip():
            return v.strip()
        return DEFAULT_REASONING

    def to_inference_result(self) -> InferenceResult:
        detail = self.confidence_detail
        return InferenceResult(
            note_type=self.note_type,
            intent=self.intent,
            confidence=self.confidence,
            confidence_detail=ConfidenceDetail.from_llm(
                structural=detail.structural,
                semantic=detail.semantic,
                reasoning=detail.reasoning,
            ),
            decay_profile=self.decay_profile,
            reasoning=self.reasoning,
        )


@dataclass(frozen=True, slots=True)
class ParseResult:
    """Tagged parse outcome: exactly one of output / error is set."""

    output: ClassificationOutput | None = None
    error: OutputParseError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> ClassificationOutput:
        """Return the output or raise the captured parse error."""
        if self.error is not None:
            raise self.error
        return cast(ClassificationOutput, self.output)


def parse_output(text: str, max_retries: int = DEFAULT_MAX_RETRIES) -> ParseResult:
    """Repair, decode and validate model output.

    Args:
        text: Raw model output
        max_retries: Extra repair passes after the first failed decode

    Returns:
        ParseResult holding a ClassificationOutput or an OutputParseError
    """
    try:
        data = parse_with_repair(text, max_retries=max_retries)
    except OutputParseError as e:
        logger.warning("model_output_unparseable", attempts=e.attempts, error=str(e))
        return ParseResult(error=e)

    try:
        return ParseResult(output=ClassificationOutput.model_validate(data))
    except ValidationError as e:
        return ParseResult(
            error=OutputParseError(
                f"Model output failed schema validation: {e.error_count()} errors",
                attempts=1,
                raw_output=text or "",
            )
        )
