from __future__ import annotations

import math

import pytest

from command_registry import CommandRegistry, TranscriptMatcher, normalize_transcript, score_phrase
from errors import DuplicatePhraseError
from models import CommandDescriptor


def _noop(transcript: str, confidence: float) -> None:
    return None


def _command(phrase: str, *alternates: str, priority: int = 3, critical: bool = False) -> CommandDescriptor:
    return CommandDescriptor(
        canonical_phrase=phrase,
        alternate_phrases=frozenset(alternates),
        priority=priority,
        is_critical=critical,
        action=_noop,
    )


def test_descriptor_normalizes_phrases() -> None:
    descriptor = _command("  Vigilia   SOS ", "Help Me", "vigilia sos")
    assert descriptor.canonical_phrase == "vigilia sos"
    assert descriptor.alternate_phrases == frozenset({"help me"})


def test_normalize_transcript_strips_punctuation_and_spaces() -> None:
    assert normalize_transcript("  Vigila, SOS...   please! ") == "vigila sos please"
    assert normalize_transcript("") == ""


def test_register_rejects_duplicate_canonical() -> None:
    registry = CommandRegistry()
    registry.register(_command("vigilia sos"))
    with pytest.raises(DuplicatePhraseError):
        registry.register(_command("vigilia sos"))


def test_register_rejects_canonical_colliding_with_alternate() -> None:
    registry = CommandRegistry()
    registry.register(_command("vigilia sos", "emergency"))
    with pytest.raises(DuplicatePhraseError):
        registry.register(_command("emergency"))
    with pytest.raises(DuplicatePhraseError):
        registry.register(_command("call for help", "vigilia sos"))
    assert len(registry) == 1


def test_unregister_frees_all_phrases() -> None:
    registry = CommandRegistry()
    registry.register(_command("vigilia sos", "emergency"))
    removed = registry.unregister("Vigilia SOS")

    assert removed is not None
    assert "vigilia sos" not in registry
    registry.register(_command("emergency"))
    assert registry.unregister("missing") is None


def test_all_searchable_phrases_maps_back_to_owner() -> None:
    registry = CommandRegistry()
    sos = _command("vigilia sos", "sos", "mayday")
    photo = _command("capture photo", "take photo")
    registry.register(sos)
    registry.register(photo)

    phrases = registry.all_searchable_phrases()
    assert [p for p, _ in phrases] == ["vigilia sos", "mayday", "sos", "capture photo", "take photo"]
    assert dict(phrases)["mayday"] is sos
    assert dict(phrases)["take photo"] is photo


# ---------------------------------------------------------------
# Matching
# ---------------------------------------------------------------

def _matcher(*commands: CommandDescriptor, threshold: float = 0.4, min_confidence: float = 0.5) -> TranscriptMatcher:
    registry = CommandRegistry()
    for command in commands:
        registry.register(command)
    return TranscriptMatcher(registry, fuzzy_threshold=threshold, min_confidence=min_confidence)


def test_misheard_sos_matches() -> None:
    sos = _command("vigilia sos", priority=1, critical=True)
    matcher = _matcher(sos, _command("capture photo"))

    result = matcher.match("Vigila SOS, please", 0.8)

    assert result.accepted is True
    assert result.descriptor is sos
    assert result.score < 0.4


def test_alternate_phrase_matches_owner() -> None:
    sos = _command("vigilia sos", "mayday")
    matcher = _matcher(sos, _command("capture photo"))

    result = matcher.match("Mayday!", 0.9)
    assert result.descriptor is sos
    assert result.phrase == "mayday"
    assert result.score == 0.0


@pytest.mark.parametrize("confidence", [0.0, 0.25, 0.49])
def test_low_confidence_is_rejected(confidence: float) -> None:
    matcher = _matcher(_command("vigilia sos"))
    result = matcher.match("vigilia sos", confidence)
    assert result.accepted is False
    assert result.descriptor is None


def test_unrelated_transcript_is_rejected() -> None:
    matcher = _matcher(_command("vigilia sos"), _command("capture photo"))
    result = matcher.match("what a lovely afternoon for a walk", 0.95)
    assert result.accepted is False
    assert result.score > 0.4


def test_threshold_boundary_is_inclusive() -> None:
    score = score_phrase("abcd", "abce")
    assert score == 0.25

    accepted = _matcher(_command("abce"), threshold=score).match("abcd", 0.9)
    rejected = _matcher(_command("abce"), threshold=math.nextafter(score, 0.0)).match("abcd", 0.9)

    assert accepted.accepted is True
    assert rejected.accepted is False


def test_equal_scores_prefer_lower_priority_number() -> None:
    low = _command("photo a", priority=3)
    high = _command("photo b", priority=1)
    matcher = _matcher(low, high)
    assert score_phrase("photo c", "photo a") == score_phrase("photo c", "photo b")

    for _ in range(20):
        assert matcher.match("photo c", 0.9).descriptor is high


def test_equal_scores_and_priority_prefer_first_registered() -> None:
    first = _command("photo a", priority=2)
    second = _command("photo b", priority=2)
    matcher = _matcher(first, second)

    for _ in range(20):
        assert matcher.match("photo c", 0.9).descriptor is first


def test_empty_registry_never_matches() -> None:
    result = _matcher().match("vigilia sos", 0.9)
    assert result.accepted is False
    assert result.descriptor is None


def test_punctuated_phrases_share_transcript_normal_form() -> None:
    descriptor = _command("What's up?", "S.O.S")
    assert descriptor.canonical_phrase == "whats up"
    assert descriptor.alternate_phrases == frozenset({"sos"})

    registry = CommandRegistry()
    registry.register(descriptor)
    assert registry.get("What's up") is descriptor

    result = TranscriptMatcher(registry, fuzzy_threshold=0.4, min_confidence=0.5).match("what's up!", 0.9)
    assert result.descriptor is descriptor
    assert result.score == 0.0
