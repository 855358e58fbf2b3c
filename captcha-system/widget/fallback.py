"""Offline challenges for when the challenge service cannot be reached.

They are the same deterministic defaults the server falls back to, with a
synthetic id, so the server can still verify an answer once it is back.
The answer-bearing template stays on the client only to replay a pattern.
"""

import logging
from typing import Tuple

from challenge_defaults import create_default_template
from generate import to_client_challenge
from schemas import Challenge, ChallengeTemplate

logger = logging.getLogger("captcha_widget.fallback")


def local_fallback_challenge(challenge_type: str, difficulty: str) -> Tuple[Challenge, ChallengeTemplate]:
    template = create_default_template(challenge_type, difficulty)
    logger.warning("Using locally generated %s challenge %s", template.challenge_type, template.id)
    return to_client_challenge(template), template
