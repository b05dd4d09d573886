"""Pydantic models for type safety."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    SPEAKING = "speaking"


class Message(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class ConversationState(BaseModel):
    """Live state of one spoken conversation."""
    status: ConversationStatus = ConversationStatus.IDLE
    transcript: str = ""  # What the student is saying right now (interim)
    history: List[Message] = []
    error: Optional[str] = None


class TranscriptSegment(BaseModel):
    """One speech-to-text result."""
    transcript: str
    is_final: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class KnowledgeState(BaseModel):
    """What we believe about one subconcept, and how sure we are."""
    model_config = ConfigDict(populate_by_name=True)

    understanding_level: float = Field(ge=0.0, le=1.0, alias="understandingLevel")
    confidence_in_assessment: float = Field(ge=0.0, le=1.0, alias="confidenceInAssessment")
    reasoning: str = ""
    last_updated: datetime = Field(default_factory=utcnow, alias="lastUpdated")
    # Set when the student stated their (lack of) understanding outright.
    explicit_evidence: bool = Field(default=False, alias="explicitEvidence")


class Subconcept(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    knowledge_state: KnowledgeState = Field(alias="knowledgeState")


class ConceptMap(BaseModel):
    """category -> subconcept name -> Subconcept."""
    categories: Dict[str, Dict[str, Subconcept]] = {}

    @model_validator(mode="after")
    def _names_match_keys(self) -> "ConceptMap":
        for subconcepts in self.categories.values():
            for key, sub in subconcepts.items():
                if sub.name != key:
                    sub.name = key
        return self

    def iter_subconcepts(self) -> Iterator[Tuple[str, Subconcept]]:
        for category, subconcepts in self.categories.items():
            for sub in subconcepts.values():
                yield category, sub

    def with_categories(self, updates: Dict[str, Dict[str, Subconcept]]) -> "ConceptMap":
        """Return a copy where only the given categories are replaced."""
        categories = dict(self.categories)
        for category, subconcepts in updates.items():
            if category in categories:
                categories[category] = subconcepts
        return ConceptMap(categories=categories)


class PivotEntry(BaseModel):
    """A ranked candidate for the next probing question."""
    concept: str
    category: str
    confidence: float = Field(ge=0.0, le=1.0)


class TaskContext(BaseModel):
    """What the student is working on when they speak."""
    task: str = ""
    code: str = ""
    error_message: str = ""
    terminal_output: str = ""
    highlighted_text: str = ""


class SessionRecord(BaseModel):
    """Everything persisted for one tutoring session."""
    session_id: str
    concept_map: ConceptMap
    history: List[Message] = []
    pivot_queue: List[PivotEntry] = []
    confidence_reached: bool = False
    updated_at: datetime = Field(default_factory=utcnow)
