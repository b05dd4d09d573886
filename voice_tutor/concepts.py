"""Default concept map for the two-sum style array/hash-map exercises."""

from typing import Dict, List

from voice_tutor.models import ConceptMap, KnowledgeState, Subconcept

DEFAULT_CATEGORIES: Dict[str, List[str]] = {
    "Array Manipulation": [
        "Two-pointer Technique",
        "Linear Search",
        "Indexing",
        "Element Comparison",
    ],
    "Data Structures": [
        "Hash Map",
        "Array",
        "Key-Value Pair",
        "Lookup Table",
    ],
    "Algorithm Design": [
        "Time Complexity",
        "Space Complexity",
        "Edge Cases",
        "Brute Force vs Optimal",
    ],
}

PENDING_REASONING = "Initial assessment pending student interaction"


def build_concept_map(
    categories: Dict[str, List[str]],
    understanding: float = 0.0,
    confidence: float = 0.5,
) -> ConceptMap:
    """Create a concept map with every subconcept at the same starting state."""
    return ConceptMap(
        categories={
            category: {
                name: Subconcept(
                    name=name,
                    knowledge_state=KnowledgeState(
                        understanding_level=understanding,
                        confidence_in_assessment=confidence,
                        reasoning=PENDING_REASONING,
                    ),
                )
                for name in names
            }
            for category, names in categories.items()
        }
    )


def default_concept_map() -> ConceptMap:
    return build_concept_map(DEFAULT_CATEGORIES)
