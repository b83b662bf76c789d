# backend/ideascan/core/models/llm_models.py
"""
LLM request/response models for classification and idea extraction.

Responses are built from loosely-structured model output through the
from_payload() constructors, which normalize instead of rejecting:
unknown verdicts become "skip", confidences are clamped to [0, 1] and
ideas missing a title or problem statement are dropped.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProviderName(str, Enum):
    """Fixed set of provider implementations selectable by configuration."""
    ANTHROPIC_HAIKU = "anthropic-haiku"
    CLAUDE_SONNET = "claude-sonnet"
    OPENAI_GPT4_MINI = "openai-gpt4-mini"


VERDICT_KEEP = "keep"
VERDICT_SKIP = "skip"


def _as_str(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class ReplyExcerpt(BaseModel):
    """A reply as included in a prompt."""
    author: str = "[deleted]"
    body: str = ""
    upvotes: int = 0


def format_replies(replies: List[ReplyExcerpt]) -> str:
    if not replies:
        return "(No comments)"
    return "\n\n".join(f"[{r.upvotes} upvotes] {r.author}: {r.body}" for r in replies)


class ClassificationRequest(BaseModel):
    """Input for one classification call."""
    topic: str
    title: str
    body: Optional[str] = None
    upvotes: int = 0
    num_comments: int = 0
    replies: List[ReplyExcerpt] = Field(default_factory=list)
    item_id: Optional[str] = None

    def prompt(self) -> str:
        from ..llm.prompts import build_classification_prompt
        return build_classification_prompt(self)


class ClassificationResponse(BaseModel):
    """One model's verdict on one item."""
    verdict: str = VERDICT_SKIP
    confidence: float = 0.0
    category: str = "other"
    reasoning: str = ""
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], raw: Optional[Dict[str, Any]] = None) -> "ClassificationResponse":
        verdict = payload.get("verdict", VERDICT_SKIP)
        verdict = verdict.strip().lower() if isinstance(verdict, str) else VERDICT_SKIP
        if verdict not in (VERDICT_KEEP, VERDICT_SKIP):
            verdict = VERDICT_SKIP

        try:
            confidence = float(payload.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        if confidence != confidence:  # NaN
            confidence = 0.0
        confidence = min(1.0, max(0.0, confidence))

        return cls(
            verdict=verdict,
            confidence=confidence,
            category=_as_str(payload.get("category"), "other") or "other",
            reasoning=_as_str(payload.get("reasoning")),
            raw=raw or {},
        )

    @property
    def is_keep(self) -> bool:
        return self.verdict == VERDICT_KEEP


class ExtractionRequest(BaseModel):
    """Input for one extraction call."""
    topic: str
    title: str
    body: Optional[str] = None
    upvotes: int = 0
    num_comments: int = 0
    replies: List[ReplyExcerpt] = Field(default_factory=list)
    classification_status: str = "keep"
    item_id: Optional[str] = None

    def prompt(self) -> str:
        from ..llm.prompts import build_extraction_prompt
        return build_extraction_prompt(self)


class IdeaPayload(BaseModel):
    """A single extracted idea, normalized for persistence."""
    idea_title: str
    problem_statement: str
    proposed_solution: str = ""
    target_audience: str = ""
    why_small_team_viable: str = ""
    demand_evidence: str = ""
    monetization_model: str = ""
    branding_suggestions: Dict[str, Any] = Field(
        default_factory=lambda: {"name_ideas": [], "positioning": "", "tagline": ""}
    )
    marketing_channels: List[Any] = Field(default_factory=list)
    existing_competitors: List[Any] = Field(default_factory=list)
    scores: Dict[str, Any] = Field(default_factory=dict)
    source_quote: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["IdeaPayload"]:
        """Build an idea from model output; None if title or problem is missing."""
        if not isinstance(payload, dict):
            return None
        title = _as_str(payload.get("idea_title")).strip()
        problem = _as_str(payload.get("problem_statement")).strip()
        if not title or not problem:
            return None

        marketing = payload.get("marketing_channels")
        return cls(
            idea_title=title,
            problem_statement=problem,
            proposed_solution=_as_str(payload.get("proposed_solution")),
            target_audience=_as_str(payload.get("target_audience")),
            why_small_team_viable=_as_str(payload.get("why_small_team_viable")),
            demand_evidence=_as_str(payload.get("demand_evidence")),
            monetization_model=_as_str(payload.get("monetization_model")),
            branding_suggestions=cls._parse_branding(payload.get("branding_suggestions")),
            marketing_channels=marketing if isinstance(marketing, list) else [],
            existing_competitors=cls._parse_competitors(payload.get("existing_competitors")),
            scores=cls._parse_scores(payload.get("scores")),
            source_quote=_as_str(payload.get("source_quote")),
        )

    @staticmethod
    def _parse_branding(branding: Any) -> Dict[str, Any]:
        if not isinstance(branding, dict):
            return {"name_ideas": [], "positioning": "", "tagline": ""}
        name_ideas = branding.get("name_ideas")
        return {
            "name_ideas": name_ideas if isinstance(name_ideas, list) else [],
            "positioning": str(branding.get("positioning") or ""),
            "tagline": str(branding.get("tagline") or ""),
        }

    @staticmethod
    def _parse_competitors(competitors: Any) -> List[Any]:
        if isinstance(competitors, str):
            return [] if competitors == "None identified" else [competitors]
        return competitors if isinstance(competitors, list) else []

    @staticmethod
    def _parse_scores(scores: Any) -> Dict[str, Any]:
        if not isinstance(scores, dict):
            scores = {}
        red_flags = scores.get("red_flags")
        if not isinstance(red_flags, list):
            red_flags = []
        return {
            "monetization": _as_int(scores.get("monetization")),
            "monetization_reasoning": str(scores.get("monetization_reasoning") or ""),
            "market_saturation": _as_int(scores.get("market_saturation")),
            "saturation_reasoning": str(scores.get("saturation_reasoning") or ""),
            "complexity": _as_int(scores.get("complexity")),
            "complexity_reasoning": str(scores.get("complexity_reasoning") or ""),
            "demand_evidence": _as_int(scores.get("demand_evidence")),
            "demand_reasoning": str(scores.get("demand_reasoning") or ""),
            "overall": _as_int(scores.get("overall")),
            "overall_reasoning": str(scores.get("overall_reasoning") or ""),
            "red_flags": [str(flag) for flag in red_flags if isinstance(flag, (str, int, float, bool))],
        }

    def to_columns(self) -> Dict[str, Any]:
        """Column values for the Idea model (without item/classification fields)."""
        data = self.model_dump()
        data.update(
            score_monetization=self.scores.get("monetization", 0),
            score_saturation=self.scores.get("market_saturation", 0),
            score_complexity=self.scores.get("complexity", 0),
            score_demand=self.scores.get("demand_evidence", 0),
            score_overall=self.scores.get("overall", 0),
        )
        return data


class ExtractionResponse(BaseModel):
    """
    Ideas extracted from one item.

    network_error marks a connection-level failure reported as a value
    rather than raised; the retry policy treats it as transient.
    """
    ideas: List[IdeaPayload] = Field(default_factory=list)
    network_error: bool = False
    error: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any, raw: Optional[Dict[str, Any]] = None) -> "ExtractionResponse":
        if isinstance(payload, dict):
            # Some models wrap the array: {"ideas": [...]}
            payload = payload.get("ideas", [payload] if "idea_title" in payload else [])
        if not isinstance(payload, list):
            payload = []
        ideas = [idea for idea in (IdeaPayload.from_payload(p) for p in payload) if idea is not None]
        return cls(ideas=ideas, raw=raw or {})

    @classmethod
    def network_failure(cls, message: str) -> "ExtractionResponse":
        return cls(network_error=True, error=message, raw={"error": "network-error", "message": message})

    @property
    def has_ideas(self) -> bool:
        return bool(self.ideas)
