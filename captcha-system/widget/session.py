"""Client orchestrator: one widget instance on one embedding page.

States::

    Idle -> Scoring -> {InvisibleVerifying | ChallengeLoading}
         -> ChallengeAwaitingInput -> Verifying
         -> {Verified | Failed(retryable) | Failed(terminal)}

The session is driven from a single asyncio event loop. Network calls run
as tracked tasks; ``reset()`` bumps a generation counter and cancels them,
so a late result from a previous generation is dropped instead of landing
on a container that has moved on.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set

from behavior_analysis.risk import RiskScore, compute_risk_score, describe
from behavior_analysis.telemetry import BehaviorSample, TelemetryCollector
from challenge_defaults import normalize_challenge_type, normalize_difficulty
from config.constants import (AUTO_DISMISS_DELAY_S, DEFAULT_CHALLENGE_TYPE,
                              DEFAULT_DIFFICULTY, INVISIBLE_SCORE_THRESHOLD,
                              PATTERN_REVEAL_HOLD_S, PATTERN_REVEAL_STEP_S)
from errors import ErrorKind, NetworkFailure
from schemas import Challenge, ChallengeTemplate, VerifyResponse
from widget.fallback import local_fallback_challenge
from widget.renderer import Renderer, TerminalRenderer
from widget.retry import RetryPolicy
from widget.transport import HttpTransport, Transport

logger = logging.getLogger("captcha_widget.session")

MODAL_CLOSED_MESSAGE = "User closed CAPTCHA challenge"


class WidgetState(str, Enum):
    IDLE = "Idle"
    SCORING = "Scoring"
    INVISIBLE_VERIFYING = "InvisibleVerifying"
    CHALLENGE_LOADING = "ChallengeLoading"
    CHALLENGE_AWAITING_INPUT = "ChallengeAwaitingInput"
    VERIFYING = "Verifying"
    VERIFIED = "Verified"
    FAILED_RETRYABLE = "Failed(retryable)"
    FAILED_TERMINAL = "Failed(terminal)"


class _Superseded(Exception):
    """A result arrived for a generation that reset() has since replaced."""


class WidgetSession:
    """State machine tying telemetry, risk scoring, the service and the UI together.

    Args:
        transport: Service client; built from ``base_url`` on ``init()`` when omitted.
        base_url: Challenge service root URL for the default HTTP transport.
        collector: Telemetry collector the embedder feeds raw events into.
        scorer: Risk scoring function over a BehaviorSample snapshot.
        retry_policy: Backoff used for generate, verify and reveal calls.
        modal_factory: Builds a renderer when ``verify()`` gets no container.
        invisible_threshold: Scores strictly below this try invisible verification.
    """

    def __init__(self, transport: Optional[Transport] = None, base_url: str = "http://localhost:8000",
                 collector: Optional[TelemetryCollector] = None,
                 scorer: Callable[[BehaviorSample], RiskScore] = compute_risk_score,
                 retry_policy: Optional[RetryPolicy] = None,
                 modal_factory: Callable[[], Renderer] = TerminalRenderer,
                 invisible_threshold: float = INVISIBLE_SCORE_THRESHOLD,
                 auto_dismiss_delay: float = AUTO_DISMISS_DELAY_S,
                 reveal_step: float = PATTERN_REVEAL_STEP_S,
                 reveal_hold: float = PATTERN_REVEAL_HOLD_S):
        self.transport = transport
        self.base_url = base_url
        self.collector = collector or TelemetryCollector()
        self.scorer = scorer
        self.retry_policy = retry_policy or RetryPolicy()
        self.modal_factory = modal_factory
        self.invisible_threshold = invisible_threshold
        self.auto_dismiss_delay = auto_dismiss_delay
        self.reveal_step = reveal_step
        self.reveal_hold = reveal_hold

        self.challenge_type = DEFAULT_CHALLENGE_TYPE
        self.difficulty = DEFAULT_DIFFICULTY
        self.state = WidgetState.IDLE
        self.container: Optional[Renderer] = None
        self.challenge: Optional[Challenge] = None
        self.last_score: Optional[RiskScore] = None
        self.token: Optional[str] = None

        self._on_success: Optional[Callable[[str], Any]] = None
        self._on_failure: Optional[Callable[[str], Any]] = None
        self._modal: Optional[Renderer] = None
        self._local_template: Optional[ChallengeTemplate] = None
        self._generation = 0
        self._tasks: Set[asyncio.Future] = set()
        self._timers: List[asyncio.TimerHandle] = []
        self._loading: Optional[asyncio.Task] = None
        self._submission: Optional[asyncio.Future] = None
        self._flow: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def init(self, api_key: str, challenge_type: Optional[str] = None, difficulty: Optional[str] = None) -> None:
        if self.transport is None:
            self.transport = HttpTransport(self.base_url, api_key)
        else:
            self.transport.api_key = api_key
        if challenge_type:
            self.challenge_type = normalize_challenge_type(challenge_type)
        if difficulty:
            self.difficulty = normalize_difficulty(difficulty)

    async def render(self, container: Renderer, challenge_type: Optional[str] = None,
                     difficulty: Optional[str] = None) -> Optional[Challenge]:
        """Load a challenge into ``container``; returns it, or None if reset meanwhile.

        Concurrent calls share one load.
        """
        self._configure(challenge_type, difficulty)
        self.container = container
        return await self._await_load(self._start_load())

    async def verify(self, container: Optional[Renderer] = None, challenge_type: Optional[str] = None,
                     difficulty: Optional[str] = None, on_success: Optional[Callable[[str], Any]] = None,
                     on_failure: Optional[Callable[[str], Any]] = None) -> WidgetState:
        """Run Idle -> Verified (invisibly) or up to ChallengeAwaitingInput.

        Without a container a modal renderer is opened. The final outcome is
        reported through ``on_success(token)`` / ``on_failure(error)``. A call
        made while another verification or a reload is running waits for it
        instead of starting a second one.
        """
        self._configure(challenge_type, difficulty)
        running = self._flow
        if running is not None and not running.done():
            await asyncio.shield(running)
            return self.state
        if self._loading is not None and not self._loading.done():
            await self._await_load(self._loading)
            return self.state

        self._on_success = on_success
        self._on_failure = on_failure
        if container is None:
            self._modal = self.modal_factory()
            container = self._modal
        self.container = container

        flow = self._flow = asyncio.get_running_loop().create_future()
        try:
            self._set_state(WidgetState.SCORING)
            score = self.scorer(self.collector.snapshot())
            self.last_score = score
            logger.debug("Risk score %s", describe(score))
            if score.reason is not None:
                logger.debug("Scored without pointer telemetry (%s)", score.reason.value)

            if score.value < self.invisible_threshold and await self._verify_invisibly(score):
                return self.state
            await self._await_load(self._start_load())
        except _Superseded:
            pass
        finally:
            flow.set_result(None)
        return self.state

    async def submit(self, response: Any) -> Optional[str]:
        """Verify the user's answer to the current challenge; returns the token on success.

        A second call while an answer is being verified joins that request
        and gets its result.
        """
        pending = self._submission
        if pending is not None and not pending.done():
            return await asyncio.shield(pending)
        if self.state != WidgetState.CHALLENGE_AWAITING_INPUT or self.challenge is None:
            raise RuntimeError(f"No challenge is awaiting input (state={self.state.value})")

        self._set_state(WidgetState.VERIFYING)
        pending = self._submission = asyncio.get_running_loop().create_future()
        token = None
        try:
            token = await self._send_answer(self.challenge, response)
        finally:
            pending.set_result(token)
        return token

    async def show_pattern(self) -> List[int]:
        """Play the current pattern challenge back on the container.

        Cells are highlighted one per ``reveal_step`` and cleared
        ``reveal_hold`` after the last one. The service only reveals a
        pattern once; a refused reveal leaves an inline error.
        """
        challenge = self.challenge
        if challenge is None or challenge.type != "pattern":
            raise RuntimeError("Current challenge is not a pattern challenge")

        if self._local_template is not None:
            sequence = list(self._local_template.content_data.get("pattern", []))
        else:
            try:
                reveal = await self._track(self.retry_policy.run(
                    lambda: self.transport.reveal(challenge.id), label="reveal"))
            except _Superseded:
                return []
            except NetworkFailure as e:
                logger.warning("Pattern reveal failed for %s: %s", challenge.id, e)
                self.container.show_challenge(challenge, error="Pattern could not be shown")
                return []
            sequence = list(reveal.sequence)

        self._cancel_timers()
        for step, cell in enumerate(sequence):
            self._schedule(step * self.reveal_step, self.container.highlight_cell, cell)
        if sequence:
            self._schedule((len(sequence) - 1) * self.reveal_step + self.reveal_hold, self.container.clear_highlights)
        return sequence

    def get_risk_score(self) -> float:
        return self.scorer(self.collector.snapshot()).value

    def reset(self) -> Optional[asyncio.Task]:
        """Drop in-flight work and telemetry; re-render the container if there is one.

        Returns the reload task when a container is being re-rendered. With a
        container attached this must be called from the running event loop.
        """
        loop = asyncio.get_running_loop() if self.container is not None else None
        self._cancel_pending()
        self.collector.reset()
        self.challenge = None
        self.token = None
        self._local_template = None
        self.last_score = None

        if loop is None:
            self._set_state(WidgetState.IDLE)
            return None

        self._set_state(WidgetState.CHALLENGE_LOADING)
        return self._start_load(loop)

    def close_modal(self) -> None:
        if self._modal is None:
            return
        self._cancel_pending()
        self._modal.dismiss()
        if self.container is self._modal:
            self.container = None
        self._modal = None
        self._set_state(WidgetState.FAILED_TERMINAL)
        self._notify_failure(MODAL_CLOSED_MESSAGE)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _configure(self, challenge_type: Optional[str], difficulty: Optional[str]) -> None:
        if self.transport is None:
            raise RuntimeError("init() must be called before rendering")
        if challenge_type:
            self.challenge_type = normalize_challenge_type(challenge_type)
        if difficulty:
            self.difficulty = normalize_difficulty(difficulty)

    def _cancel_pending(self) -> None:
        self._generation += 1
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._loading = None
        self._submission = None
        self._flow = None
        self._cancel_timers()

    def _set_state(self, state: WidgetState) -> None:
        if state != self.state:
            logger.debug("Widget state %s -> %s", self.state.value, state.value)
        self.state = state

    async def _track(self, coro: Awaitable):
        generation = self._generation
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                raise _Superseded()
            raise
        finally:
            self._tasks.discard(task)
        if generation != self._generation:
            raise _Superseded()
        return result

    def _start_load(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.Task:
        if self._loading is None or self._loading.done():
            loop = loop or asyncio.get_running_loop()
            task = loop.create_task(self._load())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            self._loading = task
        return self._loading

    async def _await_load(self, task: asyncio.Task) -> Optional[Challenge]:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # cancelled by reset() before it got to run
            if task.cancelled():
                return None
            raise

    async def _load(self) -> Optional[Challenge]:
        try:
            return await self._load_challenge()
        except _Superseded:
            return None

    async def _verify_invisibly(self, score: RiskScore) -> bool:
        self._set_state(WidgetState.INVISIBLE_VERIFYING)
        self.container.show_message("Verifying...")
        payload = {"behaviorData": self.collector.snapshot().to_payload(risk_score=score.value), "invisible": True}
        try:
            result = await self._track(self.retry_policy.run(
                lambda: self.transport.verify(payload), label="invisible verify"))
        except NetworkFailure as e:
            logger.warning("Invisible verification unavailable, falling back to a challenge: %s", e)
            return False

        if result.success and result.token:
            self._complete(result.token)
            return True
        logger.info("Invisible verification declined (%s), showing a challenge", result.errorKind)
        return False

    async def _load_challenge(self) -> Challenge:
        self._set_state(WidgetState.CHALLENGE_LOADING)
        self.container.show_loading()
        challenge_type, difficulty = self.challenge_type, self.difficulty
        try:
            challenge = await self._track(self.retry_policy.run(
                lambda: self.transport.generate(challenge_type, difficulty), label="generate"))
            self._local_template = None
        except NetworkFailure as e:
            logger.warning("Challenge fetch failed, rendering local fallback: %s", e)
            challenge, self._local_template = local_fallback_challenge(challenge_type, difficulty)

        self.challenge = challenge
        self._set_state(WidgetState.CHALLENGE_AWAITING_INPUT)
        self.container.show_challenge(challenge)
        return challenge

    async def _send_answer(self, challenge: Challenge, response: Any) -> Optional[str]:
        payload = {"challengeId": challenge.id, "response": response}

        async def attempt() -> VerifyResponse:
            self._set_state(WidgetState.VERIFYING)
            return await self.transport.verify(payload)

        self.container.show_message("Verifying...")
        try:
            result = await self._track(self.retry_policy.run(
                attempt, label="verify", on_retry=lambda n, e: self._set_state(WidgetState.FAILED_RETRYABLE)))
        except _Superseded:
            return None
        except NetworkFailure as e:
            self._fail(f"Verification failed: {e}")
            return None

        if result.success and result.token:
            self._complete(result.token)
            return result.token

        if result.errorKind == ErrorKind.INCORRECT_ANSWER:
            self._set_state(WidgetState.CHALLENGE_AWAITING_INPUT)
            self.container.show_challenge(challenge, error=result.error or "Incorrect answer")
            return None

        self._fail(result.error or "Verification failed")
        return None

    def _complete(self, token: str) -> None:
        self.token = token
        self._set_state(WidgetState.VERIFIED)
        self.container.show_success()
        self._schedule(self.auto_dismiss_delay, self._dismiss)
        if self._on_success is not None:
            self._on_success(token)

    def _fail(self, message: str) -> None:
        logger.warning("Verification failed terminally: %s", message)
        self._set_state(WidgetState.FAILED_TERMINAL)
        self.container.show_error(message)
        self._notify_failure(message)

    def _notify_failure(self, message: str) -> None:
        if self._on_failure is not None:
            self._on_failure(message)

    def _dismiss(self) -> None:
        if self.container is not None:
            self.container.dismiss()
        if self._modal is not None and self.container is self._modal:
            self.container = None
            self._modal = None

    def _schedule(self, delay: float, callback: Callable, *args) -> None:
        loop = asyncio.get_running_loop()
        self._timers.append(loop.call_later(delay, callback, *args))

    def _cancel_timers(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers = []
