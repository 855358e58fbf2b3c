"""Challenge verification and token minting.

Two mutually exclusive modes per call:

* explicit - compare a submitted answer with the stored answer key,
* invisible - score a behavior payload conservatively (no data is itself
  suspicious here) and accept it only below a fixed threshold.

The verifier is the only place tokens are minted.
"""

import logging
from typing import Any, Dict, List, Optional

from behavior_analysis.risk import blend_components
from behavior_analysis.telemetry import BehaviorSample
from config.constants import (ACTIVITY_CREDIT, CLICK_PATTERN_CAPACITY,
                              EMPTY_BEHAVIOR_RISK, INVISIBLE_ACCEPT_THRESHOLD,
                              KEY_TIMINGS_CAPACITY, MOUSE_POSITIONS_CAPACITY,
                              SERVER_RISK_PRIOR, TAMPERED_BEHAVIOR_RISK)
from config.logging_config import get_trace_logger
from errors import ChallengeNotFound, ErrorKind
from generate import ChallengeGenerator
from schemas import BehaviorPayload, ChallengeTemplate, VerifyRequest, VerifyResponse
from tokens import TokenIssuer

logger = logging.getLogger("captcha_system.verify")

INCORRECT_ANSWER_MESSAGE = "Incorrect answer"
BEHAVIOR_INCONCLUSIVE_MESSAGE = "Behavior verification inconclusive"


def _is_index(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def check_answer(template: ChallengeTemplate, response: Any) -> bool:
    """Compare a submitted response with the template's answer key.

    text: trimmed, case-insensitive equality. image_selection: the set of
    submitted indices equals ``correctIndices`` (order does not matter,
    repeated indices are rejected).
    pattern: the submitted sequence equals ``pattern`` in order. semantic:
    the submitted index equals ``correctIndex``.
    """
    content = template.content_data
    kind = template.challenge_type

    if kind == "text":
        expected = content.get("text")
        if not isinstance(expected, str) or not isinstance(response, (str, int)) or isinstance(response, bool):
            return False
        return str(response).strip().casefold() == expected.strip().casefold()

    if kind == "image_selection":
        expected = content.get("correctIndices")
        if not isinstance(response, list) or not all(_is_index(i) for i in response) or expected is None:
            return False
        if len(set(response)) != len(response):
            return False
        return set(response) == set(expected)

    if kind == "pattern":
        expected = content.get("pattern")
        if not isinstance(response, list) or not all(_is_index(i) for i in response) or expected is None:
            return False
        return list(response) == list(expected)

    if kind == "semantic":
        expected = content.get("correctIndex")
        return _is_index(response) and _is_index(expected) and response == expected

    return False


def _is_non_decreasing(values: List[float]) -> bool:
    return all(b >= a for a, b in zip(values, values[1:])) and all(v >= 0 for v in values)


def analyze_behavior_data(payload: Optional[BehaviorPayload]) -> Dict[str, Any]:
    """Score a submitted behavior payload for invisible verification.

    Args:
        payload: Telemetry snapshot sent by the widget (may be missing).

    Returns:
        Dictionary with the final ``risk`` (0=human, 1=bot), the blended
        component scores, and the bot/human indicators that moved it.
    """
    bot_indicators = []
    human_indicators = []

    if payload is None or (payload.mouseMoveCount == 0 and not payload.mousePositions
                           and not payload.clickPattern and not payload.keyPressTimings
                           and payload.scrollEventCount == 0):
        bot_indicators.append("No behavioral data submitted")
        return {"risk": EMPTY_BEHAVIOR_RISK, "components": None,
                "bot_indicators": bot_indicators, "human_indicators": human_indicators}

    # Payloads no honest widget can produce
    if len(payload.mousePositions) > MOUSE_POSITIONS_CAPACITY:
        bot_indicators.append("Mouse position buffer over capacity")
    if len(payload.clickPattern) > CLICK_PATTERN_CAPACITY:
        bot_indicators.append("Click buffer over capacity")
    if len(payload.keyPressTimings) > KEY_TIMINGS_CAPACITY:
        bot_indicators.append("Key timing buffer over capacity")
    if len(payload.mousePositions) > payload.mouseMoveCount:
        bot_indicators.append("More sampled positions than mouse moves")
    if not (_is_non_decreasing([p.t for p in payload.mousePositions])
            and _is_non_decreasing([c.t for c in payload.clickPattern])
            and _is_non_decreasing(list(payload.keyPressTimings))):
        bot_indicators.append("Non-monotonic event offsets")
    if bot_indicators:
        logger.warning("[Behavioral Analysis] Tampered payload: %s", bot_indicators)
        return {"risk": TAMPERED_BEHAVIOR_RISK, "components": None,
                "bot_indicators": bot_indicators, "human_indicators": human_indicators}

    sample = BehaviorSample.from_payload(payload)
    risk, components = blend_components(sample, prior=SERVER_RISK_PRIOR)

    # Breadth of activity
    if payload.mouseMoveCount > 10:
        human_indicators.append("Sustained mouse activity")
        risk -= ACTIVITY_CREDIT
    if len(payload.mousePositions) > 5:
        human_indicators.append("Sampled pointer path")
        risk -= ACTIVITY_CREDIT
    if payload.keyPressTimings:
        human_indicators.append("Keyboard activity")
        risk -= ACTIVITY_CREDIT
    if payload.scrollEventCount > 0:
        human_indicators.append("Scrolling")
        risk -= ACTIVITY_CREDIT

    if payload.riskScore is not None and payload.riskScore > risk:
        bot_indicators.append(f"Client reported higher risk {payload.riskScore:.2f}")
        risk = payload.riskScore

    risk = max(0.0, min(1.0, risk))
    logger.debug("[Behavioral Analysis] risk=%.3f bot=%s human=%s", risk, bot_indicators, human_indicators)
    return {"risk": risk, "components": components.model_dump(),
            "bot_indicators": bot_indicators, "human_indicators": human_indicators}


class ChallengeVerifier:
    """Decides pass/fail for a verify request and mints tokens on success."""

    def __init__(self, generator: ChallengeGenerator, token_issuer: TokenIssuer,
                 accept_threshold: float = INVISIBLE_ACCEPT_THRESHOLD):
        self.generator = generator
        self.token_issuer = token_issuer
        self.accept_threshold = accept_threshold

    def verify(self, request: VerifyRequest) -> VerifyResponse:
        """Dispatch on ``invisible``.

        Raises:
            ValueError: explicit mode without ``challengeId`` or ``response``.
            ChallengeNotFound: the id matches no stored or synthetic challenge.
            ContentStoreUnavailable: the answer key could not be fetched.
        """
        if request.invisible:
            return self.verify_invisible(request.behaviorData)
        if not request.challengeId or request.response is None:
            raise ValueError("Missing required fields: challengeId and response")
        return self.verify_explicit(request.challengeId, request.response)

    def verify_explicit(self, challenge_id: str, response: Any) -> VerifyResponse:
        tlog = get_trace_logger(challenge_id, logger.name)
        template = self.generator.lookup_template(challenge_id)
        if template is None:
            tlog.info("Verification for unknown challenge")
            raise ChallengeNotFound(f"Challenge not found: {challenge_id}")

        if not check_answer(template, response):
            tlog.info("Incorrect answer for %s challenge", template.challenge_type)
            return VerifyResponse(success=False, error=INCORRECT_ANSWER_MESSAGE,
                                  errorKind=ErrorKind.INCORRECT_ANSWER)

        tlog.info("Challenge solved (%s)", template.challenge_type)
        return VerifyResponse(success=True, token=self.token_issuer.issue("challenge", challenge_id))

    def verify_invisible(self, behavior: Optional[BehaviorPayload]) -> VerifyResponse:
        analysis = analyze_behavior_data(behavior)
        risk = analysis["risk"]
        if risk < self.accept_threshold:
            logger.info("Invisible verification passed (risk=%.3f)", risk)
            return VerifyResponse(success=True, token=self.token_issuer.issue("invisible"))

        logger.info("Invisible verification inconclusive (risk=%.3f, indicators=%s)",
                    risk, analysis["bot_indicators"])
        return VerifyResponse(success=False, error=BEHAVIOR_INCONCLUSIVE_MESSAGE,
                              errorKind=ErrorKind.BEHAVIOR_INCONCLUSIVE)
