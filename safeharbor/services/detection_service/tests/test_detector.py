"""Tests for CrisisDetector - safety-critical scoring must be exact."""
import pytest

from safeharbor.shared.models import CrisisType
from safeharbor.shared.utils import configure_pii_salt
from safeharbor.services.detection_service.config import (
    CRISIS_TAXONOMY,
    SUGGESTED_ACTIONS,
    KeywordTier,
    crisis_type_from_string,
)
from safeharbor.services.detection_service.detector import (
    CrisisDetector,
    DetectionResult,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    """Configure PII salt before each test."""
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def detector():
    return CrisisDetector()


class TestNoCrisis:
    """Texts without taxonomy keywords."""

    def test_neutral_text_not_detected(self, detector):
        result = detector.detect("I had a good day at school today")

        assert result.detected is False
        assert result.confidence == 0
        assert result.crisis_type is None
        assert result.matched_keywords == ()
        assert result.show_resources is False

    @pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
    def test_blank_input_short_circuits(self, detector, text):
        result = detector.detect(text)

        assert result.detected is False
        assert result.confidence == 0

    def test_word_boundary_prevents_partial_match(self, detector):
        """HIGH keyword "meltdown" must not match inside "meltdowns"."""
        result = detector.detect("The meltdowns were discussed")

        assert result.detected is False


class TestScoring:
    """Tier weights, confidence and resource flags."""

    def test_single_high_keyword(self, detector):
        result = detector.detect("I want to kill myself")

        assert result.detected is True
        assert result.crisis_type == CrisisType.SUICIDE_RISK
        assert result.matched_keywords == ("kill myself",)
        assert result.confidence == pytest.approx(0.3)
        assert result.priority == KeywordTier.HIGH
        assert result.show_resources is True
        assert result.suggested_action == (
            "Immediate professional help required. Connect to crisis helpline."
        )

    def test_confidence_clamped_at_one(self, detector):
        """Four HIGH keywords score 12, confidence stays 1.0."""
        result = detector.detect(
            "suicide, I want to kill myself, end my life, I want to die"
        )

        assert result.crisis_type == CrisisType.SUICIDE_RISK
        assert len(result.matched_keywords) == 4
        assert result.confidence == 1.0

    def test_medium_only_below_threshold_hides_resources(self, detector):
        result = detector.detect("I'm freaking out and dizzy")

        assert result.crisis_type == CrisisType.PANIC_ATTACK
        assert result.confidence == pytest.approx(0.4)
        assert result.priority == KeywordTier.MEDIUM
        assert result.show_resources is False
        assert result.suggested_action == "Breathing exercises and support available."

    def test_medium_only_above_threshold_shows_resources(self, detector):
        result = detector.detect("freaking out, shaking, dizzy and sweating")

        assert result.priority == KeywordTier.MEDIUM
        assert result.confidence == pytest.approx(0.8)
        assert result.show_resources is True

    def test_contextual_matches_substring(self, detector):
        """"hopeless" is found inside "hopelessness"."""
        result = detector.detect("So much hopelessness lately")

        assert result.crisis_type == CrisisType.SUICIDE_RISK
        assert result.matched_keywords == ("hopeless",)
        assert result.confidence == pytest.approx(0.1)
        assert result.priority == KeywordTier.CONTEXTUAL
        assert result.show_resources is False
        assert result.suggested_action == SUGGESTED_ACTIONS[
            CrisisType.SUICIDE_RISK
        ][KeywordTier.CONTEXTUAL]

    def test_keywords_listed_high_then_medium(self, detector):
        result = detector.detect("I am drained and exhausted")

        assert result.crisis_type == CrisisType.BURNOUT
        assert result.matched_keywords == ("exhausted", "drained")
        assert result.confidence == pytest.approx(0.5)

    def test_case_insensitive(self, detector):
        result = detector.detect("PANIC ATTACK right now")

        assert result.crisis_type == CrisisType.PANIC_ATTACK
        assert result.priority == KeywordTier.HIGH


class TestCategorySelection:
    """Highest score wins; declaration order breaks ties."""

    def test_single_category_returned_regardless_of_tier(self, detector):
        result = detector.detect("my parents are yelling")

        assert result.crisis_type == CrisisType.FAMILY_CONFLICT
        assert result.priority == KeywordTier.CONTEXTUAL

    def test_tie_goes_to_first_declared_category(self, detector):
        """"scared" is contextual for both PANIC_ATTACK and FAMILY_CONFLICT."""
        result = detector.detect("I am scared")

        assert result.crisis_type == CrisisType.PANIC_ATTACK
        assert result.confidence == pytest.approx(0.1)

    def test_higher_score_beats_declaration_order(self, detector):
        """Later BURNOUT (5) outranks earlier PANIC_ATTACK (1)."""
        result = detector.detect("I am scared, exhausted and drained")

        assert result.crisis_type == CrisisType.BURNOUT

    def test_tie_respects_custom_taxonomy_order(self):
        reversed_detector = CrisisDetector(taxonomy=tuple(reversed(CRISIS_TAXONOMY)))

        result = reversed_detector.detect("I am scared")

        assert result.crisis_type == CrisisType.FAMILY_CONFLICT


class TestDetectionLogging:

    def test_detection_logs_warning_without_raw_text(self, detector, caplog):
        with caplog.at_level("WARNING"):
            detector.detect("I want to kill myself")

        records = [r for r in caplog.records if r.getMessage() == "CRISIS_DETECTED"]
        assert len(records) == 1
        assert records[0].levelname == "WARNING"
        assert records[0].crisis_type == "SUICIDE_RISK"
        assert "I want to kill myself" not in str(records[0].__dict__)

    def test_no_log_when_not_detected(self, detector, caplog):
        with caplog.at_level("WARNING"):
            detector.detect("lovely weather")

        assert not [r for r in caplog.records if r.getMessage() == "CRISIS_DETECTED"]


class TestDetectReferences:

    def test_emergency_number(self, detector):
        result = detector.detect_references("please call 1098 now")

        assert result.has_emergency_numbers is True
        assert result.has_helpline_references is False

    def test_helpline_keyword_case_insensitive(self, detector):
        result = detector.detect_references("Is there a Crisis Line I can use?")

        assert result.has_emergency_numbers is False
        assert result.has_helpline_references is True

    def test_nothing_referenced(self, detector):
        result = detector.detect_references("nothing to see")

        assert result.to_dict() == {
            "has_emergency_numbers": False,
            "has_helpline_references": False,
        }


class TestDetectionResult:

    def test_invalid_confidence_raises(self):
        with pytest.raises(ValueError):
            DetectionResult(detected=True, confidence=1.5)

    def test_to_dict(self, detector):
        data = detector.detect("panic attack").to_dict()

        assert data["detected"] is True
        assert data["crisis_type"] == "PANIC_ATTACK"
        assert data["matched_keywords"] == ["panic attack"]


class TestTaxonomy:

    def test_taxonomy_order(self):
        assert [c.crisis_type for c in CRISIS_TAXONOMY] == [
            CrisisType.SUICIDE_RISK,
            CrisisType.SELF_HARM,
            CrisisType.PANIC_ATTACK,
            CrisisType.MELTDOWN,
            CrisisType.MEDICAL_EMERGENCY,
            CrisisType.FAMILY_CONFLICT,
            CrisisType.BURNOUT,
        ]

    def test_suggested_actions_read_only(self):
        with pytest.raises(TypeError):
            SUGGESTED_ACTIONS[CrisisType.BURNOUT] = {}

    @pytest.mark.parametrize("value,expected", [
        ("suicide", CrisisType.SUICIDE_RISK),
        ("Self_Harm", CrisisType.SELF_HARM),
        ("panic", CrisisType.PANIC_ATTACK),
        ("medical", CrisisType.MEDICAL_EMERGENCY),
        ("MELTDOWN", CrisisType.MELTDOWN),
        ("family_conflict", CrisisType.FAMILY_CONFLICT),
        ("unknown", None),
        ("", None),
    ])
    def test_crisis_type_from_string(self, value, expected):
        assert crisis_type_from_string(value) is expected
