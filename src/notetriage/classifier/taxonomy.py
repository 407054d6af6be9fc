"""Note classification taxonomy and the baseline result type.

Every classification, whether produced by the rule classifier, the LLM
path or a human override, is expressed as an InferenceResult over the
value sets defined here.

Usage:
    from notetriage.classifier.taxonomy import InferenceResult, ConfidenceDetail

    result = InferenceResult(
        note_type="decision",
        intent="architecture",
        confidence=0.82,
        confidence_detail=ConfidenceDetail(structural=0.35),
        decay_profile="stable",
        reasoning="Detected: decision phrasing(2)",
    )
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

NoteType = Literal["decision", "learning", "scratch", "emotion", "log"]
Intent = Literal[
    "architecture", "design", "implementation", "review", "process", "people", "unknown"
]
DecayProfile = Literal["stable", "exploratory", "situational"]
Reliability = Literal["high", "mid", "low"]

# Tuple order of NOTE_TYPES is the rule classifier's tie-break order
NOTE_TYPES: tuple[NoteType, ...] = ("decision", "learning", "emotion", "log", "scratch")
INTENTS: tuple[Intent, ...] = (
    "architecture",
    "design",
    "implementation",
    "review",
    "process",
    "people",
    "unknown",
)
DECAY_PROFILES: tuple[DecayProfile, ...] = ("stable", "exploratory", "situational")

DEFAULT_NOTE_TYPE: NoteType = "scratch"
DEFAULT_INTENT: Intent = "unknown"
DEFAULT_DECAY_PROFILE: DecayProfile = "exploratory"


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass(frozen=True, slots=True)
class ConfidenceDetail:
    """Three confidence sub-scores, each in [0, 1].

    The rule path names the slots structural/experiential/temporal; the LLM
    path names them structural/semantic/reasoning. The slots map one to one
    (experiential <-> semantic, temporal <-> reasoning), so a single type
    carries both and serializes with the naming of the path that made it.
    """

    structural: float = 0.0
    experiential: float = 0.0
    temporal: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "structural", _clamp_unit(self.structural))
        object.__setattr__(self, "experiential", _clamp_unit(self.experiential))
        object.__setattr__(self, "temporal", _clamp_unit(self.temporal))

    @property
    def semantic(self) -> float:
        return self.experiential

    @property
    def reasoning(self) -> float:
        return self.temporal

    @classmethod
    def from_llm(cls, structural: float, semantic: float, reasoning: float) -> ConfidenceDetail:
        """Build from LLM-path slot names."""
        return cls(structural=structural, experiential=semantic, temporal=reasoning)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ConfidenceDetail:
        """Parse either slot naming; missing slots default to 0."""
        if not data:
            return cls()
        return cls(
            structural=data.get("structural", 0.0),
            experiential=data.get("experiential", data.get("semantic", 0.0)),
            temporal=data.get("temporal", data.get("reasoning", 0.0)),
        )

    def to_rule_dict(self) -> dict[str, float]:
        return {
            "structural": self.structural,
            "experiential": self.experiential,
            "temporal": self.temporal,
        }

    def to_llm_dict(self) -> dict[str, float]:
        return {
            "structural": self.structural,
            "semantic": self.experiential,
            "reasoning": self.temporal,
        }


@dataclass(frozen=True, slots=True)
class InferenceResult:
    """One classification of one note.

    Attributes:
        note_type: Note type (serialized as "type")
        intent: Context the note is about
        confidence: Overall confidence in [0, 1]
        confidence_detail: Sub-score decomposition of the confidence
        decay_profile: How long the classification should be trusted
        reasoning: Human-readable explanation
    """

    note_type: NoteType
    intent: Intent
    confidence: float
    confidence_detail: ConfidenceDetail = field(default_factory=ConfidenceDetail)
    decay_profile: DecayProfile = DEFAULT_DECAY_PROFILE
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-ready dict using rule-path slot names."""
        return {
            "type": self.note_type,
            "intent": self.intent,
            "confidence": self.confidence,
            "confidence_detail": self.confidence_detail.to_rule_dict(),
            "decay_profile": self.decay_profile,
            "reasoning": self.reasoning,
        }
