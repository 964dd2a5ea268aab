"""Inverted index from visual words to keyframes, used for place recognition."""

from __future__ import annotations

import threading
from typing import Any

_NEIGHBOURS = 10
_COMMON_WORDS_RATIO = 0.8
_RETAIN_RATIO = 0.75


class KeyFrameDatabase:
    """Finds keyframes that look like a query by their bag-of-words vectors.

    ``vocabulary.score(bow1, bow2)`` must return the similarity of two
    bag-of-words vectors. Keyframes provide ``id``, ``bow_vec`` (a mapping
    keyed by word id), the loop and relocalisation bookkeeping attributes,
    ``connected_keyframes()`` and ``best_covisibility_keyframes(n)``.
    """

    def __init__(self, vocabulary: Any) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted: dict[Any, list[Any]] = {}

    def add(self, keyframe: Any) -> None:
        """Index ``keyframe`` under every word it contains."""
        with self._lock:
            for word in keyframe.bow_vec:
                self._inverted.setdefault(word, []).append(keyframe)

    def erase(self, keyframe: Any) -> None:
        """Remove one entry of ``keyframe`` from every word it contains."""
        with self._lock:
            for word in keyframe.bow_vec:
                entries = self._inverted.get(word)
                if entries is None:
                    continue
                try:
                    entries.remove(keyframe)
                except ValueError:
                    pass

    def clear(self) -> None:
        with self._lock:
            self._inverted.clear()

    def _entries(self, bow_vec) -> list[Any]:
        found = []
        for word in bow_vec:
            found.extend(self._inverted.get(word, ()))
        return found

    @staticmethod
    def _retain(acc_scores: list[tuple[float, Any]], best_acc: float) -> list[Any]:
        min_to_retain = _RETAIN_RATIO * best_acc
        result: list[Any] = []
        seen: set[int] = set()
        for score, keyframe in acc_scores:
            if score > min_to_retain and id(keyframe) not in seen:
                result.append(keyframe)
                seen.add(id(keyframe))
        return result

    def detect_loop_candidates(self, keyframe: Any, min_score: float) -> list[Any]:
        """Keyframes not connected to ``keyframe`` that may close a loop with it."""
        connected = keyframe.connected_keyframes()
        sharing: list[Any] = []

        with self._lock:
            for other in self._entries(keyframe.bow_vec):
                if other.loop_query != keyframe.id:
                    other.loop_words = 0
                    if other not in connected:
                        other.loop_query = keyframe.id
                        sharing.append(other)
                other.loop_words += 1

        if not sharing:
            return []

        max_common = max(other.loop_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.loop_words > min_common:
                score = float(self._vocabulary.score(keyframe.bow_vec, other.bow_vec))
                other.loop_score = score
                if score >= min_score:
                    scored.append((score, other))

        if not scored:
            return []

        acc_scores: list[tuple[float, Any]] = []
        best_acc = min_score
        for score, other in scored:
            best_score = score
            acc = score
            best_kf = other
            for neighbour in other.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                    acc += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf = neighbour
                        best_score = neighbour.loop_score
            acc_scores.append((acc, best_kf))
            best_acc = max(best_acc, acc)

        return self._retain(acc_scores, best_acc)

    def detect_relocalization_candidates(self, frame: Any) -> list[Any]:
        """Keyframes similar to ``frame``, which needs ``id`` and ``bow_vec``."""
        sharing: list[Any] = []

        with self._lock:
            for other in self._entries(frame.bow_vec):
                if other.reloc_query != frame.id:
                    other.reloc_words = 0
                    other.reloc_query = frame.id
                    sharing.append(other)
                other.reloc_words += 1

        if not sharing:
            return []

        max_common = max(other.reloc_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.reloc_words > min_common:
                score = float(self._vocabulary.score(frame.bow_vec, other.bow_vec))
                other.reloc_score = score
                scored.append((score, other))

        if not scored:
            return []

        acc_scores: list[tuple[float, Any]] = []
        best_acc = 0.0
        for score, other in scored:
            best_score = score
            acc = score
            best_kf = other
            for neighbour in other.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.reloc_query != frame.id:
                    continue
                acc += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour.reloc_score
            acc_scores.append((acc, best_kf))
            best_acc = max(best_acc, acc)

        return self._retain(acc_scores, best_acc)