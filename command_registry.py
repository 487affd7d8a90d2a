"""Command registry and fuzzy transcript matching."""

from __future__ import annotations

from typing import Callable, Iterator, Optional

from loguru import logger
from rapidfuzz.distance import Indel

from errors import DuplicatePhraseError
from models import CommandDescriptor, MatchResult, normalize_phrase

Scorer = Callable[[str, str], float]


def normalize_transcript(text: str) -> str:
    """Transcripts and command phrases share one normal form."""
    return normalize_phrase(text)


def score_phrase(transcript: str, phrase: str) -> float:
    """Normalized Indel distance: 0.0 is identical, 1.0 shares nothing."""
    return Indel.normalized_distance(transcript, phrase)


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: dict[str, CommandDescriptor] = {}
        self._phrases: dict[str, CommandDescriptor] = {}

    def ensure_available(self, descriptor: CommandDescriptor) -> None:
        """Raise DuplicatePhraseError if any phrase of ``descriptor`` is taken."""
        for phrase in descriptor.phrases:
            owner = self._phrases.get(phrase)
            if owner is not None:
                raise DuplicatePhraseError(
                    f"phrase '{phrase}' already registered for '{owner.canonical_phrase}'"
                )

    def register(self, descriptor: CommandDescriptor) -> None:
        self.ensure_available(descriptor)
        self._commands[descriptor.canonical_phrase] = descriptor
        for phrase in descriptor.phrases:
            self._phrases[phrase] = descriptor

    def unregister(self, canonical_phrase: str) -> Optional[CommandDescriptor]:
        descriptor = self._commands.pop(normalize_phrase(canonical_phrase), None)
        if descriptor is None:
            return None
        for phrase in descriptor.phrases:
            self._phrases.pop(phrase, None)
        return descriptor

    def get(self, canonical_phrase: str) -> Optional[CommandDescriptor]:
        return self._commands.get(normalize_phrase(canonical_phrase))

    def all_searchable_phrases(self) -> list[tuple[str, CommandDescriptor]]:
        """Every canonical and alternate phrase, in registration order."""
        return [(phrase, d) for d in self._commands.values() for phrase in d.phrases]

    def clear(self) -> None:
        self._commands.clear()
        self._phrases.clear()

    def __contains__(self, canonical_phrase: object) -> bool:
        return isinstance(canonical_phrase, str) and normalize_phrase(canonical_phrase) in self._commands

    def __iter__(self) -> Iterator[CommandDescriptor]:
        return iter(list(self._commands.values()))

    def __len__(self) -> int:
        return len(self._commands)


class TranscriptMatcher:
    def __init__(
        self,
        registry: CommandRegistry,
        fuzzy_threshold: float = 0.4,
        min_confidence: float = 0.5,
        scorer: Scorer = score_phrase,
    ) -> None:
        self._registry = registry
        self.fuzzy_threshold = fuzzy_threshold
        self.min_confidence = min_confidence
        self._scorer = scorer

    def best_candidate(self, normalized: str) -> Optional[tuple[float, str, CommandDescriptor]]:
        """Lowest score wins; ties go to lower priority, then registration order."""
        best: Optional[tuple[float, int, int, str, CommandDescriptor]] = None
        order: dict[str, int] = {}
        for phrase, descriptor in self._registry.all_searchable_phrases():
            index = order.setdefault(descriptor.canonical_phrase, len(order))
            key = (self._scorer(normalized, phrase), descriptor.priority, index, phrase, descriptor)
            if best is None or key[:3] < best[:3]:
                best = key
        if best is None:
            return None
        return best[0], best[3], best[4]

    def match(self, transcript: str, confidence: float) -> MatchResult:
        normalized = normalize_transcript(transcript)
        if not normalized:
            return MatchResult(descriptor=None, reason="empty transcript")
        if confidence < self.min_confidence:
            return MatchResult(descriptor=None, reason=f"confidence {confidence:.2f} below {self.min_confidence:.2f}")

        candidate = self.best_candidate(normalized)
        if candidate is None:
            return MatchResult(descriptor=None, reason="no commands registered")
        score, phrase, descriptor = candidate
        if score <= self.fuzzy_threshold:
            logger.debug(f"Matched '{normalized}' -> '{phrase}' (score={score:.3f})")
            return MatchResult(descriptor=descriptor, phrase=phrase, score=score, accepted=True, reason="matched")
        return MatchResult(
            descriptor=None,
            phrase=phrase,
            score=score,
            reason=f"best match '{phrase}' scored {score:.3f} above {self.fuzzy_threshold:.3f}",
        )
