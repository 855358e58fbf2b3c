"""Shared fixtures: content stores, a scriptable transport and a recording renderer."""

from collections import deque

import pytest

from challenge_defaults import create_default_template
from content_store import InMemoryContentStore
from errors import ErrorKind
from generate import to_client_challenge
from schemas import ChallengeTemplate, RevealResponse, VerifyResponse
from widget.renderer import Renderer
from widget.transport import Transport


class FakeClock:
    """Settable clock (seconds)."""

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingRenderer(Renderer):
    def __init__(self):
        self.events = []

    def show_loading(self, message="Loading challenge..."):
        self.events.append(("loading", message))

    def show_challenge(self, challenge, error=None):
        self.events.append(("challenge", challenge.id, error))

    def show_message(self, message):
        self.events.append(("message", message))

    def show_error(self, message):
        self.events.append(("error", message))

    def show_success(self, message="Verification successful"):
        self.events.append(("success", message))

    def highlight_cell(self, index):
        self.events.append(("highlight", index))

    def clear_highlights(self):
        self.events.append(("clear",))

    def dismiss(self):
        self.events.append(("dismiss",))

    def kinds(self):
        return [event[0] for event in self.events]


class FakeTransport(Transport):
    """Replays scripted results; an Exception in a script is raised instead."""

    def __init__(self, generate=None, verify=None, reveal=None):
        self.generate_script = deque(generate or [])
        self.verify_script = deque(verify or [])
        self.reveal_script = deque(reveal or [])
        self.calls = []

    @staticmethod
    def _next(script, default):
        item = script.popleft() if script else default
        if isinstance(item, Exception):
            raise item
        return item

    async def generate(self, challenge_type, difficulty):
        self.calls.append(("generate", challenge_type, difficulty))
        default = to_client_challenge(make_template("server-" + challenge_type, challenge_type))
        return self._next(self.generate_script, default)

    async def verify(self, payload):
        self.calls.append(("verify", payload))
        return self._next(self.verify_script, VerifyResponse(success=True, token="token-123"))

    async def reveal(self, challenge_id):
        self.calls.append(("reveal", challenge_id))
        return self._next(self.reveal_script, RevealResponse(challengeId=challenge_id, gridSize=4,
                                                             sequence=[1, 6, 11, 14, 9]))

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


def make_template(template_id, challenge_type="text", difficulty="medium", **content):
    """Stored template with default content for its type, overridable per field."""
    template = create_default_template(challenge_type, difficulty, template_id=template_id)
    template.metadata.pop("synthetic", None)
    template.content_data.update(content)
    return template


def incorrect_answer():
    return VerifyResponse(success=False, error="Incorrect answer", errorKind=ErrorKind.INCORRECT_ANSWER)


@pytest.fixture
def templates():
    return [
        make_template("text-1", "text", "medium", text="K4PZ7Q"),
        make_template("img-1", "image_selection", "easy", correctIndices=[0, 2]),
        make_template("pattern-1", "pattern", "medium", gridSize=4, pattern=[1, 6, 11, 14, 9]),
        make_template("semantic-1", "semantic", "easy"),
        ChallengeTemplate(id="legacy-1", challenge_type="image",
                          content_data={"question": "Pick the beach", "images": ["a", "b"]},
                          metadata={"difficulty": "medium"}),
    ]


@pytest.fixture
def store(templates):
    return InMemoryContentStore(templates)


@pytest.fixture
def clock():
    return FakeClock()
