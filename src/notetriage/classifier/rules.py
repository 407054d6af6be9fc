"""Rule-based note classifier.

Infers type, intent, confidence and decay profile from note text with
fixed pattern families. This is the deterministic baseline every note gets
on save; the LLM path only refines it.

Classification steps:
1. Count matches per type family (capped at 2 per family)
2. Pick the winning type (fixed tie-break order, scratch when nothing fires)
3. Compute the structural sub-score from assertion/comparison/reason patterns
4. Blend dominance, gap and structural into a confidence, apply boosts, cap
5. Detect intent, then derive the decay profile

CRITICAL SECURITY NOTE:
All regex operations use the `regex` library with a timeout so that
pathological note content cannot stall classification. A pattern that
times out is treated as not matching.

Usage:
    from notetriage.classifier.rules import RuleClassifier, infer_note_type

    classifier = RuleClassifier(confidence_ceiling=0.95)
    result = classifier.classify("We decided to adopt SQLite because it is simple.")

    # Or use convenience function
    result = infer_note_type(text)
"""

from __future__ import annotations

from dataclasses import dataclass

import regex

from notetriage.classifier.taxonomy import (
    DEFAULT_DECAY_PROFILE,
    ConfidenceDetail,
    DecayProfile,
    InferenceResult,
    Intent,
    NoteType,
)
from notetriage.core.errors import PatternTimeoutError
from notetriage.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout in seconds (CRITICAL: all operations MUST use this)
REGEX_TIMEOUT = 1.0

DEFAULT_CONFIDENCE_CEILING = 0.95
RULE_MODEL_NAME = "rule-v1"

# Per-family match cap (long notes would otherwise dominate)
MAX_FAMILY_MATCHES = 2

NO_MATCH_CONFIDENCE = 0.3
BOOST = 0.18
LOG_BOOST_FLOOR = 0.85

# Reasoning labels, shared with the promotion detector
DECISION_LABEL = "decision phrasing"
LEARNING_LABEL = "learning phrasing"
EMOTION_LABEL = "emotional language"
LOG_LABEL = "record markers"
SCRATCH_LABEL = "unresolved markers"
NO_PATTERN_REASONING = "No characteristic pattern detected; defaulting to scratch"


def _ja(*patterns: str, flags: int = 0) -> list[regex.Pattern]:
    return [regex.compile(p, flags) for p in patterns]


def _en(*patterns: str, flags: int = 0) -> list[regex.Pattern]:
    return [regex.compile(p, flags | regex.IGNORECASE) for p in patterns]


# =============================================================================
# Type families
# =============================================================================

DECISION_PATTERNS = _ja(
    r"した方が良",
    r"すべき",
    r"にする$",
    r"にした$",
    r"を選ぶ",
    r"を選んだ",
    r"を採用",
    r"に決め",
    r"と判断",
    r"ことにした",
    r"方針",
    r"結論",
    r"理由.*から",
    r"なぜなら",
    r"ため$",
) + _en(
    r"\bdecided\b",
    r"\bdecision\b",
    r"\badopt(?:ed|ing)?\b",
    r"\b(?:chose|chosen|choose)\b",
    r"\bwe(?:'ll| will) go with\b",
    r"\b(?:went|going) with\b",
    r"\bsettled on\b",
    r"\bconclu(?:ded|sion)\b",
    r"\bshould\b",
)

LEARNING_PATTERNS = _ja(
    r"とは$",
    r"である$",
    r"という概念",
    r"原則",
    r"パターン",
    r"ベストプラクティス",
    r"一般的に",
    r"基本的に",
    r"の場合は",
    r"使い分け",
    r"違い",
    r"特徴",
    r"メリット",
    r"デメリット",
) + _en(
    r"\bis defined as\b",
    r"\bprinciples?\b",
    r"\bpatterns?\b",
    r"\bbest practices?\b",
    r"\bin general\b",
    r"\bdifference between\b",
    r"\btrade-?offs?\b",
    r"\b(?:dis)?advantages?\b",
    r"\bTIL\b",
    r"\blearned\b",
)

EMOTION_PATTERNS = _ja(
    r"疲れ",
    r"しんどい",
    r"つらい",
    r"嬉しい",
    r"楽しい",
    r"不安",
    r"焦り",
    r"イライラ",
    r"モヤモヤ",
    r"気持ち",
    r"感情",
    r"ストレス",
    r"メンタル",
) + _en(
    r"\b(?:tired|exhausted)\b",
    r"\b(?:happy|glad|excited)\b",
    r"\banxi(?:ous|ety)\b",
    r"\bfrustrat\w*",
    r"\bstress(?:ed|ful)?\b",
    r"\bburn(?:ed|t) out\b",
    r"\bfeel(?:s|ing)?\b",
)

LOG_PATTERNS = _ja(
    r"^\d{1,2}:\d{2}",
    r"完了$",
    r"実施$",
    r"対応$",
    r"MTG",
    r"ミーティング",
    r"レビュー$",
    r"確認$",
    flags=regex.MULTILINE,
) + _en(
    r"\b(?:done|completed|finished)\.?$",
    r"\bmeeting\b",
    r"\bstand-?up\b",
    r"\b(?:deployed|shipped|released)\b",
    flags=regex.MULTILINE,
)

SCRATCH_PATTERNS = _ja(
    r"迷",
    r"わからない",
    r"どうしよう",
    r"かも$",
    r"かな$",
    r"？$",
    r"\?$",
    r"要検討",
    r"後で",
    r"TODO",
    r"メモ",
) + _en(
    r"\bmaybe\b",
    r"\bnot sure\b",
    r"\bwondering\b",
    r"\blater\b",
    r"\bidea\b",
)

# Order is the tie-break order
TYPE_FAMILIES: tuple[tuple[NoteType, list[regex.Pattern], str], ...] = (
    ("decision", DECISION_PATTERNS, DECISION_LABEL),
    ("learning", LEARNING_PATTERNS, LEARNING_LABEL),
    ("emotion", EMOTION_PATTERNS, EMOTION_LABEL),
    ("log", LOG_PATTERNS, LOG_LABEL),
    ("scratch", SCRATCH_PATTERNS, SCRATCH_LABEL),
)

# =============================================================================
# Intent keywords
# =============================================================================

INTENT_KEYWORDS: tuple[tuple[Intent, list[regex.Pattern]], ...] = (
    (
        "architecture",
        _ja(r"アーキテクチャ", r"構造", r"責務", r"境界", r"レイヤ", r"モジュール", r"依存",
            r"分離", r"ドメイン", r"インフラ", r"DTO", r"Entity")
        + _en(r"\barchitecture\b", r"\blayer(?:s|ing)?\b", r"\bmodules?\b",
              r"\bdependenc(?:y|ies)\b", r"\bboundar(?:y|ies)\b", r"\binfrastructure\b",
              r"\bmicroservices?\b"),
    ),
    (
        "design",
        _ja(r"設計", r"UI", r"UX", r"仕様", r"インターフェース", r"API", r"スキーマ", r"モデル")
        + _en(r"\bdesign\b", r"\binterfaces?\b", r"\bschema\b", r"\bspec(?:ification)?\b",
              r"\bwireframe\b"),
    ),
    (
        "implementation",
        _ja(r"実装", r"コード", r"関数", r"クラス", r"メソッド", r"バグ", r"エラー", r"修正",
            r"リファクタ")
        + _en(r"\bimplement\w*", r"\bcode\b", r"\bfunctions?\b", r"\bclass(?:es)?\b",
              r"\bbugs?\b", r"\berrors?\b", r"\bfix(?:ed)?\b", r"\brefactor\w*"),
    ),
    (
        "review",
        _ja(r"レビュー", r"PR", r"プルリク", r"フィードバック", r"改善")
        + _en(r"\breview\w*", r"\bpull request\b", r"\bfeedback\b"),
    ),
    (
        "process",
        _ja(r"プロセス", r"フロー", r"手順", r"習慣", r"ルーティン", r"進め方", r"やり方")
        + _en(r"\bprocess\b", r"\bworkflow\b", r"\bhabits?\b", r"\broutines?\b",
              r"\bprocedures?\b"),
    ),
    (
        "people",
        _ja(r"チーム", r"メンバー", r"コミュニケーション", r"関係", r"1on1", r"マネジメント")
        + _en(r"\bteam\b", r"\bmembers?\b", r"\bcommunication\b", r"\bone-on-one\b",
              r"\bmanag(?:er|ement)\b"),
    ),
)

# =============================================================================
# Structural families (uncapped counts)
# =============================================================================

ASSERTION_PATTERNS = _ja(
    r"にした$",
    r"にする$",
    r"を選んだ",
    r"を選ぶ",
    r"を採用",
    r"に決め",
    r"と判断",
    r"ことにした",
    r"方針.*は",
    r"結論.*は",
    flags=regex.MULTILINE,
) + _en(
    r"\bdecided\b",
    r"\badopt(?:ed)?\b",
    r"\b(?:chose|chosen)\b",
    r"\bsettled on\b",
    r"\bwe will use\b",
)

COMPARISON_PATTERNS = _ja(
    r"より.*が良",
    r"より.*を選",
    r"ではなく",
    r"の方が",
    r"と比べ",
    r"を比較",
) + _en(
    r"\brather than\b",
    r"\binstead of\b",
    r"\bbetter than\b",
    r"\bcompared (?:to|with)\b",
    r"\b(?:versus|vs\.?)\s",
)

REASONING_PATTERNS = _ja(
    r"なぜなら",
    r"理由.*は",
    r"だから$",
    r"ため$",
    r"から$",
    flags=regex.MULTILINE,
) + _en(
    r"\bbecause\b",
    r"\bthe reason\b",
    r"\bso that\b",
    r"\btherefore\b",
)

DEFINITION_PATTERNS = _ja(r"とは", r"である", r"という概念", r"要するに") + _en(
    r"\bis defined as\b",
    r"\brefers to\b",
    r"\bmeans that\b",
    r"\bin short\b",
)

# Bullets, numbered lists, headings
STRUCTURE_PATTERNS = _ja(r"^-\s", r"^\d+\.\s", r"^##\s", r"^\*\s", flags=regex.MULTILINE)

# =============================================================================
# Decay profile
# =============================================================================

SITUATIONAL_PATTERNS = _ja(
    r"当面は", r"今回は", r"一旦", r"暫定", r"とりあえず", r"今のところ", r"しばらく", r"試しに"
) + _en(
    r"\bfor now\b",
    r"\btentative(?:ly)?\b",
    r"\btemporar(?:y|ily)\b",
    r"\bfor the time being\b",
    r"\bthis time\b",
    r"\bas a trial\b",
)

STABLE_PATTERNS = _ja(
    r"原則", r"基本方針", r"常に", r"必ず", r"絶対に", r"ルールとして", r"標準として", r"デフォルトで"
) + _en(
    r"\balways\b",
    r"\bas a principle\b",
    r"\bin principle\b",
    r"\bas a rule\b",
    r"\bby default\b",
    r"\bnever\b",
)

STABLE_INTENTS: frozenset[Intent] = frozenset({"architecture", "process"})
EXPLORATORY_INTENTS: frozenset[Intent] = frozenset({"implementation", "design"})


def _matches(pattern: regex.Pattern, text: str) -> bool:
    """Search with timeout; a timeout counts as no match."""
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        error = PatternTimeoutError("Pattern search timed out", pattern=pattern.pattern)
        logger.warning("rule_pattern_timeout", pattern=error.pattern[:50])
        return False


def count_matches(text: str, patterns: list[regex.Pattern]) -> int:
    """Number of patterns in the family that match the text (uncapped)."""
    return sum(1 for p in patterns if _matches(p, text))


def _capped(text: str, patterns: list[regex.Pattern]) -> int:
    return min(MAX_FAMILY_MATCHES, count_matches(text, patterns))


@dataclass(frozen=True, slots=True)
class _StructuralSignals:
    assertions: int
    comparisons: int
    reasons: int
    has_definition: bool
    has_structure: bool

    @property
    def score(self) -> float:
        raw = self.assertions * 0.15 + self.comparisons * 0.2 + self.reasons * 0.1
        return min(1.0, round(raw, 2))


class RuleClassifier:
    """Deterministic pattern-based note classifier.

    The classifier is a pure function of its input text: it holds no state
    beyond the configured confidence ceiling.

    Attributes:
        confidence_ceiling: Maximum confidence reported (strictly below 1.0)
    """

    def __init__(self, confidence_ceiling: float = DEFAULT_CONFIDENCE_CEILING):
        if not 0.0 < confidence_ceiling < 1.0:
            raise ValueError(
                f"confidence_ceiling must be in (0, 1), got {confidence_ceiling}"
            )
        self.confidence_ceiling = confidence_ceiling

    def classify(self, text: str | None) -> InferenceResult:
        """Classify note text.

        Args:
            text: Raw note content (None is treated as empty)

        Returns:
            InferenceResult with confidence in [0, confidence_ceiling]
        """
        content = text or ""

        scores = [(note_type, _capped(content, patterns), label)
                  for note_type, patterns, label in TYPE_FAMILIES]
        # Stable sort keeps family order for ties
        ranked = sorted(scores, key=lambda s: s[1], reverse=True)
        top_type, top_score, _ = ranked[0]
        second_score = ranked[1][1]
        total = sum(score for _, score, _ in scores)

        note_type: NoteType = top_type if top_score > 0 else "scratch"

        signals = _StructuralSignals(
            assertions=count_matches(content, ASSERTION_PATTERNS),
            comparisons=count_matches(content, COMPARISON_PATTERNS),
            reasons=count_matches(content, REASONING_PATTERNS),
            has_definition=count_matches(content, DEFINITION_PATTERNS) > 0,
            has_structure=count_matches(content, STRUCTURE_PATTERNS) > 0,
        )
        structural = signals.score
        detail = ConfidenceDetail(structural=structural, experiential=0.0, temporal=0.0)

        confidence = self._confidence(note_type, scores, top_score, second_score, total, signals)

        intent = detect_intent(content)
        decay = infer_decay_profile(content, intent, structural)

        fired = [f"{label}({score})" for _, score, label in scores if score > 0]
        reasoning = f"Detected: {', '.join(fired)}" if fired else NO_PATTERN_REASONING

        return InferenceResult(
            note_type=note_type,
            intent=intent,
            confidence=confidence,
            confidence_detail=detail,
            decay_profile=decay,
            reasoning=reasoning,
        )

    def _confidence(
        self,
        note_type: NoteType,
        scores: list[tuple[NoteType, int, str]],
        top_score: int,
        second_score: int,
        total: int,
        signals: _StructuralSignals,
    ) -> float:
        dominance = 0.0
        gap = 0.0
        if total == 0:
            base = NO_MATCH_CONFIDENCE
        else:
            dominance = top_score / total
            gap = (top_score - second_score) / total
            base = 0.25 + dominance * 0.45 + gap * 0.25

        confidence = base + signals.score * 0.2

        log_score = next(score for t, score, _ in scores if t == "log")
        if note_type == "log" and log_score >= 2:
            confidence = max(confidence, LOG_BOOST_FLOOR)

        if (
            note_type == "decision"
            and dominance >= 0.65
            and gap >= 0.25
            and signals.assertions > 0
            and (signals.reasons > 0 or signals.comparisons > 0)
        ):
            confidence += BOOST

        if (
            note_type == "learning"
            and dominance >= 0.6
            and gap >= 0.2
            and signals.has_definition
            and (signals.has_structure or signals.comparisons > 0)
        ):
            confidence += BOOST

        confidence = max(0.0, min(self.confidence_ceiling, confidence))
        return round(confidence, 2)


def detect_intent(text: str) -> Intent:
    """Pick the intent whose keyword set matches most (first maximum wins)."""
    best: Intent = "unknown"
    best_score = 0
    for intent, patterns in INTENT_KEYWORDS:
        score = _capped(text, patterns)
        if score > best_score:
            best, best_score = intent, score
    return best


def infer_decay_profile(text: str, intent: Intent, structural: float) -> DecayProfile:
    """Decide how long a classification of this text should be trusted."""
    situational = any(_matches(p, text) for p in SITUATIONAL_PATTERNS)
    stable = any(_matches(p, text) for p in STABLE_PATTERNS)

    if situational and not stable:
        return "situational"
    if stable and not situational:
        return "stable"

    if intent in STABLE_INTENTS:
        return "stable"
    if intent in EXPLORATORY_INTENTS:
        return "exploratory"

    if structural >= 0.5:
        return "stable"
    return DEFAULT_DECAY_PROFILE


_default_classifier: RuleClassifier | None = None


def infer_note_type(text: str | None) -> InferenceResult:
    """Classify text with the default-ceiling classifier.

    Args:
        text: Raw note content

    Returns:
        InferenceResult
    """
    global _default_classifier
    if _default_classifier is None:
        _default_classifier = RuleClassifier()
    return _default_classifier.classify(text)
