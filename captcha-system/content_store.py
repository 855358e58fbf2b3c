"""Query-and-fetch interface to the challenge content store.

The real store (a table of templates keyed by type, difficulty and an active
flag) belongs to the admin side of the product; the core only needs a random
pick by type/difficulty and a point lookup by id.
"""

import logging
import random
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence

import yaml

from schemas import ChallengeTemplate

logger = logging.getLogger("captcha_system.content_store")


class ContentStore(ABC):
    """Read-only view of challenge templates."""

    @abstractmethod
    def find_random(self, challenge_types: Sequence[str], difficulty: Optional[str] = None,
                    only_active: bool = True) -> Optional[ChallengeTemplate]:
        """Return one randomly-ordered template matching the filters, or None."""

    @abstractmethod
    def get(self, template_id: str) -> Optional[ChallengeTemplate]:
        """Return the full template (answer key included) for an id, or None."""

    def count(self) -> int:
        return 0


class InMemoryContentStore(ContentStore):
    """Process-local store, seeded from code or a YAML file."""

    def __init__(self, templates: Optional[Iterable[ChallengeTemplate]] = None,
                 rng: Optional[random.Random] = None):
        self._templates: Dict[str, ChallengeTemplate] = {}
        self._lock = threading.Lock()
        self._rng = rng or random.Random()
        for template in templates or []:
            self.add(template)

    def add(self, template: ChallengeTemplate) -> None:
        with self._lock:
            self._templates[template.id] = template

    def find_random(self, challenge_types, difficulty=None, only_active=True):
        wanted = set(challenge_types)
        with self._lock:
            candidates = [
                t for t in self._templates.values()
                if t.challenge_type in wanted
                and (difficulty is None or t.difficulty == difficulty)
                and (t.is_active or not only_active)
            ]
        if not candidates:
            return None
        # Hand out a copy so callers can repair content without touching the store
        return self._rng.choice(candidates).model_copy(deep=True)

    def get(self, template_id):
        with self._lock:
            template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    def count(self) -> int:
        with self._lock:
            return len(self._templates)


def load_templates_from_yaml(path: str) -> List[ChallengeTemplate]:
    """Parse a YAML list of templates.

    Each entry needs ``challenge_type`` and ``content_data``; ``id`` is minted
    when absent, ``metadata`` defaults to empty and ``is_active`` to true.
    """
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or []

    templates = []
    for entry in data:
        entry = dict(entry)
        entry.setdefault("id", str(uuid.uuid4()))
        templates.append(ChallengeTemplate(**entry))
    logger.info("Loaded %d challenge templates from %s", len(templates), path)
    return templates
