"""Challenge generator: degradation chain, repair and answer stripping."""

import logging
import threading
from pathlib import Path

import pytest
from conftest import make_template

from content_store import InMemoryContentStore, load_templates_from_yaml
from errors import ContentStoreUnavailable, ErrorKind, InvalidChallengeType
from generate import ChallengeGenerator
from schemas import ChallengeTemplate

SEED_FILE = Path(__file__).resolve().parents[1] / "captcha-system" / "seed_challenges.yaml"


class FailingStore(InMemoryContentStore):
    def find_random(self, challenge_types, difficulty=None, only_active=True):
        raise RuntimeError("connection refused")

    def get(self, template_id):
        raise RuntimeError("connection refused")


class SlowStore(InMemoryContentStore):
    def __init__(self, release, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = release

    def find_random(self, challenge_types, difficulty=None, only_active=True):
        self.release.wait(2)
        return super().find_random(challenge_types, difficulty, only_active)


@pytest.fixture
def generator(store):
    gen = ChallengeGenerator(store)
    yield gen
    gen.shutdown()


class TestSyntheticFallback:
    def test_empty_store_yields_stripped_default(self):
        gen = ChallengeGenerator(InMemoryContentStore())
        challenge = gen.generate("text", "hard")

        assert challenge is not None
        assert challenge.type == "text"
        assert challenge.id.startswith("synthetic-text-hard-")
        assert challenge.data["text"] == "J7K2#P9"
        gen.shutdown()

    @pytest.mark.parametrize("challenge_type, answer_field", [
        ("image_selection", "correctIndices"),
        ("pattern", "pattern"),
        ("semantic", "correctIndex"),
    ])
    def test_default_payloads_carry_no_answer(self, challenge_type, answer_field):
        gen = ChallengeGenerator(None)
        challenge = gen.generate(challenge_type, "easy")
        assert answer_field not in challenge.data
        assert "answer" not in challenge.data
        gen.shutdown()

    def test_pattern_payload_has_length_only(self):
        challenge = ChallengeGenerator(None).generate("pattern", "hard")
        assert challenge.data == {"gridSize": 5, "patternLength": 5}

    def test_store_error_degrades_to_default(self, templates, caplog):
        gen = ChallengeGenerator(FailingStore(templates))
        with caplog.at_level(logging.ERROR, logger="captcha_system"):
            challenge = gen.generate("semantic", "easy")
        assert challenge.id.startswith("synthetic-semantic-easy-")
        assert "Content store unavailable" in caplog.text
        gen.shutdown()

    def test_store_timeout_degrades_to_default(self, templates):
        release = threading.Event()
        gen = ChallengeGenerator(SlowStore(release, templates), store_timeout=0.05)
        try:
            challenge = gen.generate("text", "medium")
        finally:
            release.set()
            gen.shutdown()
        assert challenge.id.startswith("synthetic-text-medium-")

    def test_degradation_reason_recorded(self, templates):
        empty = ChallengeGenerator(InMemoryContentStore())
        failing = ChallengeGenerator(FailingStore(templates))
        try:
            missing = empty.select_template("semantic", "easy")
            unavailable = failing.select_template("semantic", "easy")
        finally:
            empty.shutdown()
            failing.shutdown()
        assert missing.metadata["degradedBy"] == ErrorKind.NO_TEMPLATE_FOR_TYPE
        assert unavailable.metadata["degradedBy"] == ErrorKind.CONTENT_STORE_UNAVAILABLE

    def test_unknown_type_rejected(self, generator):
        with pytest.raises(InvalidChallengeType):
            generator.generate("crossword", "easy")

    def test_unknown_difficulty_treated_as_medium(self):
        challenge = ChallengeGenerator(None).generate("pattern", "impossible")
        assert challenge.id.startswith("synthetic-pattern-medium-")


class TestStoreSelection:
    def test_exact_match(self, generator):
        challenge = generator.generate("text", "medium")
        assert challenge.id == "text-1"
        assert challenge.data["text"] == "K4PZ7Q"

    def test_difficulty_relaxed_before_default(self, generator):
        challenge = generator.generate("pattern", "hard")
        assert challenge.id == "pattern-1"
        assert challenge.data["patternLength"] == 5
        assert "pattern" not in challenge.data

    def test_inactive_templates_skipped(self):
        inactive = make_template("sem-off", "semantic", "easy")
        inactive.is_active = False
        gen = ChallengeGenerator(InMemoryContentStore([inactive]))

        assert gen.generate("semantic", "easy").id.startswith("synthetic-")
        assert gen.generate("semantic", "easy", only_active=False).id == "sem-off"
        gen.shutdown()

    def test_image_alias_resolves_to_image_selection(self, generator):
        challenge = generator.generate("image", "easy")
        assert challenge.type == "image_selection"
        assert challenge.id == "img-1"
        assert "correctIndices" not in challenge.data

    def test_legacy_template_served_as_image_selection(self, generator):
        challenge = generator.generate("image_selection", "medium")
        assert challenge.id == "legacy-1"
        assert challenge.type == "image_selection"
        assert "correctIndices" not in challenge.data

    def test_empty_content_falls_back(self):
        broken = ChallengeTemplate(id="broken", challenge_type="text", content_data={},
                                   metadata={"difficulty": "easy"})
        challenge = ChallengeGenerator(InMemoryContentStore([broken])).generate("text", "easy")
        assert challenge.id.startswith("synthetic-text-easy-")

    def test_store_templates_not_modified_by_stripping(self, store, generator):
        generator.generate("image_selection", "easy")
        assert store.get("img-1").content_data["correctIndices"] == [0, 2]


class TestLookup:
    def test_missing_correct_indices_repaired_with_warning(self, generator, caplog):
        with caplog.at_level(logging.WARNING, logger="captcha_system"):
            template = generator.lookup_template("legacy-1")
        assert template.challenge_type == "image_selection"
        assert template.content_data["correctIndices"] == [0]
        assert "missing correctIndices" in caplog.text

    def test_synthetic_id_regenerated(self, generator):
        template = generator.lookup_template("synthetic-semantic-hard-0123abcd")
        assert template.id == "synthetic-semantic-hard-0123abcd"
        assert template.content_data["correctIndex"] == 1

    def test_unknown_id(self, generator):
        assert generator.lookup_template("nope") is None

    def test_malformed_synthetic_id_is_a_store_lookup(self, generator):
        assert generator.lookup_template("synthetic-crossword-easy-00") is None

    def test_store_error_propagates(self, templates):
        gen = ChallengeGenerator(FailingStore(templates))
        with pytest.raises(ContentStoreUnavailable):
            gen.lookup_template("text-1")
        gen.shutdown()


class TestSeedFile:
    def test_bundled_seed_file_loads(self):
        templates = load_templates_from_yaml(str(SEED_FILE))
        assert len(templates) == 7
        assert {t.challenge_type for t in templates} == {"text", "image_selection", "image", "pattern", "semantic"}
        assert sum(1 for t in templates if not t.is_active) == 1

    def test_ids_minted_when_missing(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text("- challenge_type: text\n  content_data: {text: ABC}\n"
                        "- id: fixed\n  challenge_type: semantic\n  content_data: {question: q}\n")
        templates = load_templates_from_yaml(str(path))
        assert templates[0].id
        assert templates[1].id == "fixed"
