"""Note classification components.

This package provides the classification building blocks:
- Taxonomy value sets and the InferenceResult baseline type
- Rule classifier for deterministic pattern-based classification
- Classification policy deriving primary/secondary types and reliability
- JSON repair and strict validation of LLM output
- Prompt assembly and few-shot examples from approved results
- Ollama client for local LLM classification
"""

from notetriage.classifier.few_shot import FewShotCache, FewShotExample, FewShotSelector
from notetriage.classifier.llm_client import (
    INFERENCE_VERSION,
    LLMClassification,
    OllamaClient,
    OllamaHealth,
)
from notetriage.classifier.policy import (
    FinalClassification,
    classify,
    needs_reinference,
    search_priority,
    type_weight,
)
from notetriage.classifier.prompts import SYSTEM_PROMPT, build_inference_prompt
from notetriage.classifier.repair import (
    ClassificationOutput,
    ParseResult,
    auto_repair_json,
    parse_output,
    parse_with_repair,
)
from notetriage.classifier.rules import (
    RULE_MODEL_NAME,
    RuleClassifier,
    infer_note_type,
)
from notetriage.classifier.taxonomy import (
    DECAY_PROFILES,
    INTENTS,
    NOTE_TYPES,
    ConfidenceDetail,
    InferenceResult,
)

__all__ = [
    # Taxonomy
    "DECAY_PROFILES",
    "INTENTS",
    "NOTE_TYPES",
    "ConfidenceDetail",
    "InferenceResult",
    # Rules
    "RULE_MODEL_NAME",
    "RuleClassifier",
    "infer_note_type",
    # Policy
    "FinalClassification",
    "classify",
    "needs_reinference",
    "search_priority",
    "type_weight",
    # Repair
    "ClassificationOutput",
    "ParseResult",
    "auto_repair_json",
    "parse_output",
    "parse_with_repair",
    # Prompts
    "SYSTEM_PROMPT",
    "build_inference_prompt",
    # Few-shot
    "FewShotCache",
    "FewShotExample",
    "FewShotSelector",
    # LLM client
    "INFERENCE_VERSION",
    "LLMClassification",
    "OllamaClient",
    "OllamaHealth",
]
