"""Prompt assembly for LLM note classification.

The system prompt is static: it documents the taxonomy and the exact JSON
shape the model must return. The inference prompt is built per note and
inserts the optional few-shot section (see few_shot.py) between the
system prompt and the note itself.

Usage:
    from notetriage.classifier.prompts import build_inference_prompt

    prompt, truncated = build_inference_prompt(
        title="Storage choice",
        content="We decided to adopt SQLite because ...",
        few_shot_section=section,
        context_limit=4000,
    )
"""

from __future__ import annotations

DEFAULT_CONTEXT_LIMIT = 4000
TRUNCATION_MARKER = "\n\n[... truncated ...]"

# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are an expert at classifying personal notes. Analyze the user's note \
and output the classification as JSON in the format below.

## Classification rules

### type (kind of note)
- decision: a judgment or choice that was made ("we decided", "adopted", "going with")
- learning: knowledge or understanding (concept explanations, best practices, patterns)
- scratch: unresolved or in-progress thinking ("not sure", "TODO", "later")
- emotion: feelings or reflection (tired, anxious, happy)
- log: a record of events (timestamps, completion reports, meeting notes)

### intent (context of the note)
- architecture: system structure and architectural design
- design: UI/UX and specification design
- implementation: implementation and coding
- review: reviews and feedback
- process: process, habits and ways of working
- people: team and communication
- unknown: cannot be determined

### decayProfile (how long the note stays relevant)
- stable: long-lived (principles, policies, architectural decisions)
- exploratory: medium-lived (technology choices, design decisions)
- situational: short-lived (in-the-moment calls, temporary workarounds)

### confidence
A number from 0.0 to 1.0 expressing how certain the classification is.
- 0.9 or higher: several clear patterns
- 0.7 to 0.9: at least one clear pattern
- 0.5 to 0.7: ambiguous but with a tendency
- below 0.5: hard to judge

### confidenceDetail (breakdown of the confidence)
- structural: clarity of syntactic patterns (assertions, comparisons, reasons)
- semantic: clarity of meaning
- reasoning: logical soundness of the inference

## Output format
Output ONLY JSON in exactly this format. Do not add any explanation.

{
  "type": "decision",
  "intent": "architecture",
  "confidence": 0.85,
  "confidenceDetail": {
    "structural": 0.9,
    "semantic": 0.8,
    "reasoning": 0.85
  },
  "decayProfile": "stable",
  "reasoning": "Phrases such as 'we adopted' and 'as a policy' express a decision about architecture"
}"""


def is_content_truncated(content: str, context_limit: int = DEFAULT_CONTEXT_LIMIT) -> bool:
    """Whether content exceeds the prompt context limit."""
    return len(content) > context_limit


def build_inference_prompt(
    title: str,
    content: str,
    few_shot_section: str = "",
    context_limit: int = DEFAULT_CONTEXT_LIMIT,
) -> tuple[str, bool]:
    """Build the full prompt for one note.

    Args:
        title: Note title
        content: Note body; cut at context_limit characters with a marker
        few_shot_section: Preformatted examples, or "" for none
        context_limit: Maximum body length in characters

    Returns:
        Tuple of (prompt, context_truncated)
    """
    truncated = is_content_truncated(content, context_limit)
    body = content[:context_limit] + TRUNCATION_MARKER if truncated else content

    user_prompt = f"""## Note

### Title
{title}

### Body
{body}

## Instructions
Analyze the note above and output the classification as JSON."""

    parts = [SYSTEM_PROMPT]
    if few_shot_section:
        parts.append(few_shot_section.rstrip())
    parts.append(user_prompt)
    return "\n\n".join(parts), truncated
