#!/usr/bin/env python3
"""Challenge generation with graceful degradation.

A request for ``(type, difficulty)`` walks an ordered fallback chain:

1. a random active template of that type and difficulty,
2. the same query without the difficulty filter,
3. a deterministic synthetic default (also used when the store errors or
   times out).

Whatever is selected is repaired if its content is incomplete and then
stripped of its answer key before it leaves the server.
"""

import argparse
import copy
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from challenge_defaults import (create_default_template,
                                normalize_challenge_type, normalize_difficulty,
                                parse_synthetic_id)
from config.constants import (DEFAULT_DIFFICULTY,
                              IMAGE_FALLBACK_CORRECT_INDICES,
                              STORE_QUERY_TIMEOUT_S, TYPE_ALIASES)
from config.logging_config import get_trace_logger
from content_store import ContentStore, InMemoryContentStore, load_templates_from_yaml
from errors import ContentStoreUnavailable, ErrorKind
from schemas import Challenge, ChallengeTemplate

logger = logging.getLogger("captcha_system.generate")

# Fields that hold the answer, per canonical type. Text challenges have
# none: the displayed text is the answer.
ANSWER_FIELDS = {
    "text": (),
    "image_selection": ("correctIndices", "correctIndex"),
    "pattern": ("pattern",),
    "semantic": ("correctIndex", "correctIndices"),
}
GENERIC_ANSWER_FIELDS = ("answer", "solution")


def store_type_names(challenge_type: str) -> tuple:
    """Names a canonical type may be stored under (legacy aliases included)."""
    return (challenge_type,) + tuple(alias for alias, target in TYPE_ALIASES.items() if target == challenge_type)


def repair_template(template: ChallengeTemplate) -> ChallengeTemplate:
    """Patch legacy/incomplete content so verification has an answer to compare.

    Args:
        template: Template as read from the store (already a private copy).

    Returns:
        The same template with a canonical type and, for image selection
        content without ``correctIndices``, the default ``[0]`` injected.
    """
    tlog = get_trace_logger(template.id, logger.name)
    template.challenge_type = normalize_challenge_type(template.challenge_type)

    if template.challenge_type == "image_selection" and "correctIndices" not in template.content_data:
        tlog.warning("Data quality: image selection template %s missing correctIndices, defaulting to %s",
                     template.id, IMAGE_FALLBACK_CORRECT_INDICES)
        template.content_data["correctIndices"] = list(IMAGE_FALLBACK_CORRECT_INDICES)
    return template


def strip_answer(template: ChallengeTemplate) -> Dict[str, Any]:
    """Return the render-only payload for a template (answer key removed)."""
    data = copy.deepcopy(template.content_data)
    for field in ANSWER_FIELDS.get(template.challenge_type, ()) + GENERIC_ANSWER_FIELDS:
        data.pop(field, None)

    if template.challenge_type == "pattern":
        # The sequence itself is only served through the one-shot reveal
        data["patternLength"] = len(template.content_data.get("pattern") or [])
    return data


def degraded_template(challenge_type: str, difficulty: str, reason: ErrorKind) -> ChallengeTemplate:
    template = create_default_template(challenge_type, difficulty)
    template.metadata["degradedBy"] = reason.value
    return template


def to_client_challenge(template: ChallengeTemplate) -> Challenge:
    return Challenge(id=template.id, type=template.challenge_type, data=strip_answer(template))


class ChallengeGenerator:
    """Selects templates from a content store and turns them into challenges.

    Store calls run on a small worker pool with a bounded wait, so a slow
    store degrades to the synthetic default instead of hanging the request.
    """

    def __init__(self, store: Optional[ContentStore] = None,
                 store_timeout: float = STORE_QUERY_TIMEOUT_S,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.store = store
        self.store_timeout = store_timeout
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="content-store")

    def _call_store(self, fn: Callable, *args, **kwargs):
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.store_timeout)
        except FutureTimeout:
            future.cancel()
            raise ContentStoreUnavailable(f"Content store did not answer within {self.store_timeout}s")
        except Exception as e:
            raise ContentStoreUnavailable(f"Content store error: {e}") from e

    def select_template(self, challenge_type: str, difficulty: str = DEFAULT_DIFFICULTY,
                        only_active: bool = True) -> ChallengeTemplate:
        """Walk the degradation chain and return a full (answer-bearing) template.

        A synthetic default records why it was used under
        ``metadata["degradedBy"]`` (``NoTemplateForType`` or
        ``ContentStoreUnavailable``).

        Raises:
            InvalidChallengeType: for unknown types; every other failure is
            absorbed into the synthetic default.
        """
        challenge_type = normalize_challenge_type(challenge_type)
        difficulty = normalize_difficulty(difficulty)
        names = store_type_names(challenge_type)

        if self.store is None:
            logger.warning("No content store configured, using default %s challenge", challenge_type)
            return degraded_template(challenge_type, difficulty, ErrorKind.NO_TEMPLATE_FOR_TYPE)

        try:
            template = self._call_store(self.store.find_random, names, difficulty, only_active)
            if template is None:
                logger.info("No %s challenge found with difficulty %s, trying without difficulty filter",
                            challenge_type, difficulty)
                template = self._call_store(self.store.find_random, names, None, only_active)
        except ContentStoreUnavailable as e:
            logger.error("Content store unavailable while generating %s challenge: %s", challenge_type, e)
            return degraded_template(challenge_type, difficulty, ErrorKind.CONTENT_STORE_UNAVAILABLE)

        if template is None:
            logger.warning("No %s challenge found in content store, using default", challenge_type)
            return degraded_template(challenge_type, difficulty, ErrorKind.NO_TEMPLATE_FOR_TYPE)

        if not template.content_data:
            logger.warning("Challenge %s has empty content_data, using default", template.id)
            return degraded_template(challenge_type, difficulty, ErrorKind.NO_TEMPLATE_FOR_TYPE)

        return repair_template(template)

    def generate(self, challenge_type: str, difficulty: str = DEFAULT_DIFFICULTY,
                 only_active: bool = True) -> Challenge:
        """Return a client-safe challenge for the request."""
        template = self.select_template(challenge_type, difficulty, only_active)
        challenge = to_client_challenge(template)
        tlog = get_trace_logger(challenge.id, logger.name)
        tlog.info("Generated %s challenge (requested difficulty=%s, degraded_by=%s)",
                  challenge.type, difficulty, template.metadata.get("degradedBy"))
        return challenge

    def lookup_template(self, challenge_id: str) -> Optional[ChallengeTemplate]:
        """Resolve the answer-bearing template for an issued challenge id.

        Synthetic ids are regenerated deterministically; anything else is a
        point lookup in the store.

        Raises:
            ContentStoreUnavailable: the store errored or timed out.
        """
        synthetic = parse_synthetic_id(challenge_id)
        if synthetic is not None:
            challenge_type, difficulty = synthetic
            return create_default_template(challenge_type, difficulty, template_id=challenge_id)

        if self.store is None:
            return None
        template = self._call_store(self.store.get, challenge_id)
        return repair_template(template) if template is not None else None

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


def generate_challenges():
    """Command-line interface: print client-safe challenges as JSON."""
    parser = argparse.ArgumentParser(description="Generate client-safe CAPTCHA challenges")
    parser.add_argument("--type", type=str, default="text",
                        help="text, image_selection (or image), pattern, semantic")
    parser.add_argument("--difficulty", type=str, default=DEFAULT_DIFFICULTY)
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--seed-file", type=str, default=None,
                        help="YAML file of challenge templates (defaults only when omitted)")
    parser.add_argument("--include-inactive", action="store_true")

    args = parser.parse_args()
    store = InMemoryContentStore(load_templates_from_yaml(args.seed_file)) if args.seed_file else None
    generator = ChallengeGenerator(store)

    try:
        for _ in range(args.count):
            challenge = generator.generate(args.type, args.difficulty, only_active=not args.include_inactive)
            print(json.dumps(challenge.model_dump(), indent=2))
    finally:
        generator.shutdown()


if __name__ == "__main__":
    generate_challenges()
