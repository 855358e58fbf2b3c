"""Widget state machine driven by a scripted transport."""

import asyncio

import pytest
from conftest import FakeTransport, RecordingRenderer, incorrect_answer, make_template

from behavior_analysis.risk import RiskScore
from errors import ErrorKind, NetworkFailure
from generate import to_client_challenge
from schemas import VerifyResponse
from widget.retry import RetryPolicy
from widget.session import MODAL_CLOSED_MESSAGE, WidgetSession, WidgetState
from widget.transport import HttpTransport


def fixed_score(value):
    return lambda sample: RiskScore(value=value, confidence=1.0)


def make_session(transport, score=0.5, **kwargs):
    session = WidgetSession(transport=transport, scorer=fixed_score(score),
                            retry_policy=RetryPolicy(max_retries=3, base_delay=0),
                            auto_dismiss_delay=0.001, reveal_step=0.001, reveal_hold=0.002, **kwargs)
    session.init("test-key")
    return session


def down():
    return NetworkFailure("connection refused")


class Callbacks:
    def __init__(self):
        self.tokens = []
        self.errors = []

    def success(self, token):
        self.tokens.append(token)

    def failure(self, error):
        self.errors.append(error)


class TestChallengeLoading:
    def test_recovers_after_three_failures(self):
        transport = FakeTransport(generate=[down(), down(), down()])
        session = make_session(transport)
        renderer = RecordingRenderer()

        state = asyncio.run(session.verify(renderer))

        assert state == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("generate") == 4
        assert session.challenge.id == "server-text"
        assert renderer.events[-1] == ("challenge", "server-text", None)

    def test_falls_back_locally_when_retries_exhausted(self):
        transport = FakeTransport(generate=[down() for _ in range(4)])
        session = make_session(transport)
        renderer = RecordingRenderer()

        state = asyncio.run(session.verify(renderer, challenge_type="semantic", difficulty="easy"))

        assert state == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("generate") == 4
        assert session.challenge.id.startswith("synthetic-semantic-easy-")
        assert "correctIndex" not in session.challenge.data
        assert renderer.kinds()[-1] == "challenge"

    def test_non_retryable_failure_falls_back_immediately(self):
        transport = FakeTransport(generate=[NetworkFailure("rejected", retryable=False, status_code=401)])
        session = make_session(transport)

        asyncio.run(session.render(RecordingRenderer()))

        assert transport.count("generate") == 1
        assert session.challenge.id.startswith("synthetic-text-")

    def test_render_shows_loading_first(self):
        renderer = RecordingRenderer()
        session = make_session(FakeTransport())
        challenge = asyncio.run(session.render(renderer, challenge_type="image"))

        assert challenge.type == "image_selection"
        assert renderer.kinds() == ["loading", "challenge"]

    def test_concurrent_renders_share_one_load(self):
        transport = FakeTransport()
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            return await asyncio.gather(session.render(renderer), session.render(renderer))

        first, second = asyncio.run(scenario())
        assert first is second
        assert transport.count("generate") == 1
        assert renderer.kinds() == ["loading", "challenge"]

    def test_render_requires_init(self):
        session = WidgetSession(transport=None)
        with pytest.raises(RuntimeError):
            asyncio.run(session.render(RecordingRenderer()))

    def test_init_builds_http_transport(self):
        session = WidgetSession(base_url="http://captcha.local/")
        session.init("key-1", challenge_type="pattern", difficulty="hard")

        assert isinstance(session.transport, HttpTransport)
        assert session.transport.api_key == "key-1"
        assert session.transport.base_url == "http://captcha.local"
        assert (session.challenge_type, session.difficulty) == ("pattern", "hard")


class TestInvisibleRouting:
    def test_score_below_threshold_tries_invisible(self):
        transport = FakeTransport()
        session = make_session(transport, score=0.29)
        callbacks = Callbacks()

        async def scenario():
            state = await session.verify(RecordingRenderer(), on_success=callbacks.success)
            await asyncio.sleep(0.01)
            return state

        assert asyncio.run(scenario()) == WidgetState.VERIFIED
        assert transport.count("generate") == 0
        payload = transport.calls[0][1]
        assert payload["invisible"] is True
        assert payload["behaviorData"]["riskScore"] == 0.29
        assert callbacks.tokens == ["token-123"]

    def test_threshold_is_inclusive_on_challenge_side(self):
        transport = FakeTransport()
        session = make_session(transport, score=0.30)

        assert asyncio.run(session.verify(RecordingRenderer())) == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("verify") == 0
        assert transport.count("generate") == 1

    def test_inconclusive_falls_through_to_challenge(self):
        inconclusive = VerifyResponse(success=False, error="Behavior verification inconclusive",
                                      errorKind=ErrorKind.BEHAVIOR_INCONCLUSIVE)
        transport = FakeTransport(verify=[inconclusive])
        session = make_session(transport, score=0.1)

        assert asyncio.run(session.verify(RecordingRenderer())) == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("verify") == 1

    def test_unreachable_invisible_falls_through_to_challenge(self):
        transport = FakeTransport(verify=[down() for _ in range(4)])
        session = make_session(transport, score=0.1)

        assert asyncio.run(session.verify(RecordingRenderer())) == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("verify") == 4


class TestSubmit:
    def test_correct_answer_verifies_and_dismisses(self):
        transport = FakeTransport()
        session = make_session(transport)
        renderer = RecordingRenderer()
        callbacks = Callbacks()

        async def scenario():
            await session.verify(renderer, on_success=callbacks.success, on_failure=callbacks.failure)
            token = await session.submit("RH9X7A")
            await asyncio.sleep(0.01)
            return token

        assert asyncio.run(scenario()) == "token-123"
        assert session.state == WidgetState.VERIFIED
        assert callbacks.tokens == ["token-123"]
        assert callbacks.errors == []
        assert renderer.kinds()[-2:] == ["success", "dismiss"]
        assert transport.calls[-1] == ("verify", {"challengeId": "server-text", "response": "RH9X7A"})

    def test_incorrect_answer_not_retried(self):
        transport = FakeTransport(verify=[incorrect_answer()])
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            await session.verify(renderer)
            return await session.submit("WRONG")

        assert asyncio.run(scenario()) is None
        assert session.state == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("verify") == 1
        assert renderer.events[-1] == ("challenge", "server-text", "Incorrect answer")

    def test_user_can_retry_after_incorrect_answer(self):
        transport = FakeTransport(verify=[incorrect_answer()])
        session = make_session(transport)

        async def scenario():
            await session.verify(RecordingRenderer())
            await session.submit("WRONG")
            return await session.submit("RH9X7A")

        assert asyncio.run(scenario()) == "token-123"

    def test_transient_verify_failures_retried(self):
        transport = FakeTransport(verify=[down(), down()])
        session = make_session(transport)

        async def scenario():
            await session.verify(RecordingRenderer())
            return await session.submit("RH9X7A")

        assert asyncio.run(scenario()) == "token-123"
        assert transport.count("verify") == 3

    def test_exhausted_verify_is_terminal_and_mints_nothing(self):
        transport = FakeTransport(verify=[down() for _ in range(4)])
        session = make_session(transport)
        renderer = RecordingRenderer()
        callbacks = Callbacks()

        async def scenario():
            await session.verify(renderer, on_success=callbacks.success, on_failure=callbacks.failure)
            return await session.submit("RH9X7A")

        assert asyncio.run(scenario()) is None
        assert session.state == WidgetState.FAILED_TERMINAL
        assert session.token is None
        assert callbacks.tokens == []
        assert len(callbacks.errors) == 1
        assert renderer.kinds()[-1] == "error"
        assert transport.count("verify") == 4

    def test_unknown_challenge_is_terminal(self):
        not_found = VerifyResponse(success=False, error="Challenge not found", errorKind=ErrorKind.CHALLENGE_NOT_FOUND)
        transport = FakeTransport(verify=[not_found])
        session = make_session(transport)
        callbacks = Callbacks()

        async def scenario():
            await session.verify(RecordingRenderer(), on_failure=callbacks.failure)
            await session.submit("RH9X7A")

        asyncio.run(scenario())
        assert session.state == WidgetState.FAILED_TERMINAL
        assert callbacks.errors == ["Challenge not found"]

    def test_success_without_token_is_not_success(self):
        transport = FakeTransport(verify=[VerifyResponse(success=True, token=None)])
        session = make_session(transport)

        async def scenario():
            await session.verify(RecordingRenderer())
            return await session.submit("RH9X7A")

        assert asyncio.run(scenario()) is None
        assert session.state == WidgetState.FAILED_TERMINAL

    def test_double_submit_sends_one_request(self):
        transport = FakeTransport()
        session = make_session(transport)
        callbacks = Callbacks()

        async def scenario():
            await session.verify(RecordingRenderer(), on_success=callbacks.success)
            return await asyncio.gather(session.submit("RH9X7A"), session.submit("RH9X7A"))

        assert asyncio.run(scenario()) == ["token-123", "token-123"]
        assert transport.count("verify") == 1
        assert callbacks.tokens == ["token-123"]

    def test_submit_without_challenge(self):
        session = make_session(FakeTransport())
        with pytest.raises(RuntimeError):
            asyncio.run(session.submit("x"))


class TestReset:
    def test_reset_cancels_pending_retry(self):
        transport = FakeTransport(generate=[down()])
        session = WidgetSession(transport=transport, scorer=fixed_score(0.5),
                                retry_policy=RetryPolicy(max_retries=3, base_delay=10))
        session.init("test-key")
        renderer = RecordingRenderer()

        async def scenario():
            verify_task = asyncio.ensure_future(session.verify(renderer))
            for _ in range(5):
                await asyncio.sleep(0)
            assert transport.count("generate") == 1

            reload = session.reset()
            await asyncio.wait_for(reload, 1)
            await asyncio.wait_for(verify_task, 1)

        asyncio.run(scenario())
        assert session.state == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("generate") == 2
        assert session.challenge.id == "server-text"

    def test_reset_without_container_returns_to_idle(self):
        session = make_session(FakeTransport())
        session.collector.on_click(1, 1)

        assert session.reset() is None
        assert session.state == WidgetState.IDLE
        assert len(session.collector.sample.click_pattern) == 0

    def test_reset_rerenders_container(self):
        transport = FakeTransport()
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            await session.render(renderer)
            await session.reset()

        asyncio.run(scenario())
        assert transport.count("generate") == 2
        assert renderer.kinds() == ["loading", "challenge", "loading", "challenge"]

    def test_verify_during_reload_joins_it(self):
        transport = FakeTransport()
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            await session.render(renderer)
            reload = session.reset()
            state = await session.verify(renderer)
            await reload
            return state

        assert asyncio.run(scenario()) == WidgetState.CHALLENGE_AWAITING_INPUT
        assert transport.count("generate") == 2
        assert renderer.kinds() == ["loading", "challenge", "loading", "challenge"]

    def test_reset_before_load_starts(self):
        transport = FakeTransport()
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            render = asyncio.ensure_future(session.render(renderer))
            await asyncio.sleep(0)
            reload = session.reset()
            return await render, await reload

        rendered, reloaded = asyncio.run(scenario())
        assert rendered is None
        assert reloaded.id == "server-text"
        assert transport.count("generate") == 1
        assert renderer.kinds() == ["loading", "challenge"]

    def test_reset_with_container_needs_running_loop(self):
        session = make_session(FakeTransport())
        asyncio.run(session.render(RecordingRenderer()))

        with pytest.raises(RuntimeError):
            session.reset()
        assert session.state == WidgetState.CHALLENGE_AWAITING_INPUT
        assert session.challenge.id == "server-text"

    def test_reset_cancels_pattern_playback(self):
        transport = FakeTransport(generate=[to_client_challenge(make_template("p-1", "pattern"))])
        session = WidgetSession(
            transport=transport, scorer=fixed_score(0.5), retry_policy=RetryPolicy(base_delay=0),
            reveal_step=0.05, reveal_hold=0.05)
        session.init("test-key")
        renderer = RecordingRenderer()

        async def scenario():
            await session.render(renderer)
            await session.show_pattern()
            await asyncio.sleep(0.01)
            session.reset()
            await asyncio.sleep(0.4)

        asyncio.run(scenario())
        assert [e for e in renderer.events if e[0] == "highlight"] == [("highlight", 1)]
        assert ("clear",) not in renderer.events


class TestPattern:
    def test_server_pattern_played_back(self):
        transport = FakeTransport(generate=[to_client_challenge(make_template("p-1", "pattern"))])
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            await session.render(renderer)
            sequence = await session.show_pattern()
            await asyncio.sleep(0.05)
            return sequence

        assert asyncio.run(scenario()) == [1, 6, 11, 14, 9]
        assert transport.calls[-1] == ("reveal", "p-1")
        highlights = [e[1] for e in renderer.events if e[0] == "highlight"]
        assert highlights == [1, 6, 11, 14, 9]
        assert renderer.events[-1] == ("clear",)

    def test_local_fallback_pattern_played_without_server(self):
        transport = FakeTransport(generate=[down() for _ in range(4)])
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            await session.render(renderer, challenge_type="pattern")
            sequence = await session.show_pattern()
            await asyncio.sleep(0.05)
            return sequence

        assert asyncio.run(scenario()) == [0, 4, 8, 5, 2]
        assert transport.count("reveal") == 0
        assert [e[1] for e in renderer.events if e[0] == "highlight"] == [0, 4, 8, 5, 2]

    def test_refused_reveal_shows_inline_error(self):
        transport = FakeTransport(generate=[to_client_challenge(make_template("p-1", "pattern"))],
                                  reveal=[NetworkFailure("already revealed", retryable=False, status_code=403)])
        session = make_session(transport)
        renderer = RecordingRenderer()

        async def scenario():
            await session.render(renderer)
            return await session.show_pattern()

        assert asyncio.run(scenario()) == []
        assert renderer.events[-1] == ("challenge", "p-1", "Pattern could not be shown")
        assert session.state == WidgetState.CHALLENGE_AWAITING_INPUT

    def test_show_pattern_needs_pattern_challenge(self):
        session = make_session(FakeTransport())

        async def scenario():
            await session.render(RecordingRenderer())
            await session.show_pattern()

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())


class TestModal:
    def test_verify_without_container_opens_modal(self):
        opened = []

        def factory():
            renderer = RecordingRenderer()
            opened.append(renderer)
            return renderer

        session = make_session(FakeTransport(), modal_factory=factory)
        callbacks = Callbacks()
        asyncio.run(session.verify(on_failure=callbacks.failure))

        assert len(opened) == 1
        assert opened[0].kinds()[-1] == "challenge"

        session.close_modal()
        assert opened[0].kinds()[-1] == "dismiss"
        assert callbacks.errors == [MODAL_CLOSED_MESSAGE]
        assert session.state == WidgetState.FAILED_TERMINAL

    def test_close_modal_without_modal_is_noop(self):
        callbacks = Callbacks()
        session = make_session(FakeTransport())
        asyncio.run(session.verify(RecordingRenderer(), on_failure=callbacks.failure))
        session.close_modal()
        assert callbacks.errors == []


class TestRiskScoreAccess:
    def test_get_risk_score_uses_live_telemetry(self):
        session = WidgetSession(transport=FakeTransport())
        assert session.get_risk_score() == 0.5
