"""Deterministic synthetic challenges used when no stored template is available.

Both the server's degradation chain and the widget's offline fallback build
their challenges here, so a synthetic challenge can always be re-derived
from its id at verification time.
"""

import copy
import uuid
from typing import Optional, Tuple

from config.constants import (CHALLENGE_TYPES, DEFAULT_DIFFICULTY,
                              DEFAULT_IMAGE_CATEGORY,
                              DEFAULT_IMAGE_CORRECT_INDICES,
                              DEFAULT_IMAGE_QUESTION, DEFAULT_IMAGES,
                              DEFAULT_PATTERN_GRID_BY_DIFFICULTY,
                              DEFAULT_PATTERN_SEQUENCE,
                              DEFAULT_SEMANTIC_CORRECT_INDEX,
                              DEFAULT_SEMANTIC_OPTIONS,
                              DEFAULT_SEMANTIC_QUESTION,
                              DEFAULT_TEXT_BY_DIFFICULTY, DIFFICULTIES,
                              SYNTHETIC_ID_PREFIX, TYPE_ALIASES)
from errors import InvalidChallengeType
from schemas import ChallengeTemplate


def normalize_challenge_type(challenge_type: Optional[str]) -> str:
    """Map legacy names (``image``) onto canonical types.

    Raises:
        InvalidChallengeType: if the type is not one the service can issue.
    """
    name = (challenge_type or "").strip().lower()
    name = TYPE_ALIASES.get(name, name)
    if name not in CHALLENGE_TYPES:
        raise InvalidChallengeType(f"Unsupported challenge type: {challenge_type!r}")
    return name


def normalize_difficulty(difficulty: Optional[str]) -> str:
    name = (difficulty or "").strip().lower()
    return name if name in DIFFICULTIES else DEFAULT_DIFFICULTY


def make_synthetic_id(challenge_type: str, difficulty: str) -> str:
    return f"{SYNTHETIC_ID_PREFIX}-{challenge_type}-{difficulty}-{uuid.uuid4().hex}"


def parse_synthetic_id(challenge_id: str) -> Optional[Tuple[str, str]]:
    """Return ``(type, difficulty)`` encoded in a synthetic id, else None."""
    parts = (challenge_id or "").split("-")
    if len(parts) != 4 or parts[0] != SYNTHETIC_ID_PREFIX:
        return None
    _, challenge_type, difficulty, _ = parts
    if challenge_type not in CHALLENGE_TYPES or difficulty not in DIFFICULTIES:
        return None
    return challenge_type, difficulty


def create_default_template(challenge_type: str, difficulty: str = DEFAULT_DIFFICULTY,
                            template_id: Optional[str] = None) -> ChallengeTemplate:
    """Build the hard-coded template for a type, lightly shaped by difficulty.

    Args:
        challenge_type: Requested type; legacy aliases are accepted.
        difficulty: easy, medium or hard (unknown values fall back to medium).
        template_id: Reuse an existing synthetic id instead of minting one.

    Returns:
        A full template, answer key included.
    """
    challenge_type = normalize_challenge_type(challenge_type)
    difficulty = normalize_difficulty(difficulty)
    template_id = template_id or make_synthetic_id(challenge_type, difficulty)

    if challenge_type == "image_selection":
        content = {
            "question": DEFAULT_IMAGE_QUESTION,
            "category": DEFAULT_IMAGE_CATEGORY,
            "images": list(DEFAULT_IMAGES),
            "correctIndices": list(DEFAULT_IMAGE_CORRECT_INDICES),
        }
    elif challenge_type == "pattern":
        content = {
            "gridSize": DEFAULT_PATTERN_GRID_BY_DIFFICULTY[difficulty],
            "pattern": list(DEFAULT_PATTERN_SEQUENCE),
        }
    elif challenge_type == "semantic":
        content = {
            "question": DEFAULT_SEMANTIC_QUESTION,
            "options": list(DEFAULT_SEMANTIC_OPTIONS),
            "correctIndex": DEFAULT_SEMANTIC_CORRECT_INDEX,
        }
    else:
        content = {
            "text": DEFAULT_TEXT_BY_DIFFICULTY[difficulty],
            "distortionLevel": difficulty,
        }

    return ChallengeTemplate(
        id=template_id,
        challenge_type=challenge_type,
        content_data=copy.deepcopy(content),
        metadata={"difficulty": difficulty, "synthetic": True},
        is_active=True,
    )
