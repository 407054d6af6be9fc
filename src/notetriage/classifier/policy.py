"""Deterministic post-classification policy.

Turns a raw InferenceResult into the FinalClassification downstream
consumers use (primary type, secondary types, reliability band), plus the
ranking helpers derived from it.

Usage:
    from notetriage.classifier.policy import classify, needs_reinference

    final = classify(result)
    if needs_reinference(result):
        ...
"""

from __future__ import annotations

from dataclasses import dataclass

from notetriage.classifier.taxonomy import InferenceResult, NoteType, Reliability

TYPE_WEIGHTS: dict[NoteType, float] = {
    "decision": 1.0,
    "learning": 0.6,
    "scratch": 0.2,
    "emotion": 0.1,
    "log": 0.1,
}

TYPE_SCORES: dict[NoteType, int] = {
    "decision": 100,
    "learning": 60,
    "scratch": 20,
    "emotion": 10,
    "log": 10,
}

RELIABILITY_MULTIPLIERS: dict[Reliability, float] = {
    "high": 1.0,
    "mid": 0.7,
    "low": 0.4,
}

REINFERENCE_CONFIDENCE = 0.6


@dataclass(frozen=True, slots=True)
class FinalClassification:
    """Derived classification. Never persisted."""

    primary_type: NoteType
    secondary_types: tuple[NoteType, ...]
    reliability: Reliability

    def to_dict(self) -> dict[str, object]:
        return {
            "primary_type": self.primary_type,
            "secondary_types": list(self.secondary_types),
            "reliability": self.reliability,
        }


def classify(result: InferenceResult) -> FinalClassification:
    """Apply the policy table to a classification. First matching rule wins."""
    note_type = result.note_type
    confidence = result.confidence

    if note_type == "decision" and confidence >= 0.7:
        return FinalClassification("decision", (), "high")
    if note_type == "decision" and confidence >= 0.4:
        return FinalClassification("decision", ("scratch",), "mid")
    if note_type == "learning" and confidence >= 0.6:
        return FinalClassification("learning", (), "high")
    if note_type == "learning" and confidence >= 0.4:
        return FinalClassification("scratch", ("learning",), "mid")
    if note_type == "emotion" and confidence >= 0.4:
        return FinalClassification("emotion", (), "mid")
    if note_type == "log" and confidence >= 0.4:
        return FinalClassification("log", (), "mid")
    return FinalClassification("scratch", (), "low")


def type_weight(note_type: NoteType) -> float:
    """Importance weight of a type for downstream ranking."""
    return TYPE_WEIGHTS[note_type]


def search_priority(final: FinalClassification) -> float:
    """Search priority: type score scaled by the reliability multiplier."""
    return round(TYPE_SCORES[final.primary_type] * RELIABILITY_MULTIPLIERS[final.reliability], 2)


def needs_reinference(
    result: InferenceResult, final: FinalClassification | None = None
) -> bool:
    """Whether the note is worth another classification pass.

    True when confidence is below 0.6, or when the derived classification
    is a mid-reliability decision.
    """
    if result.confidence < REINFERENCE_CONFIDENCE:
        return True
    final = final or classify(result)
    return final.primary_type == "decision" and final.reliability == "mid"
