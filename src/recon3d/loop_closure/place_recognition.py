"""Place recognition database for loop closure detection.

Stores keyframe BoW vectors and answers similarity queries with a single
matrix product.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .vocabulary import VisualVocabulary


@dataclass
class PlaceEntry:
    """An entry in the place recognition database."""

    keyframe_id: int
    bow_vector: np.ndarray  # (n_words,) float32
    words: np.ndarray  # distinct word indices present
    descriptors: np.ndarray  # (N, 32) uint8, kept for IDF refreshes


@dataclass
class QueryResult:
    """Result from a place recognition query."""

    keyframe_id: int
    similarity: float


class PlaceDatabase:
    """Database of visited places for loop closure queries."""

    def __init__(self, vocabulary: VisualVocabulary) -> None:
        """Initialize place database.

        Args:
            vocabulary: Visual vocabulary for BoW conversion
        """
        self._vocabulary = vocabulary
        self._entries: dict[int, PlaceEntry] = {}
        self._document_frequencies = np.zeros(vocabulary.n_words, dtype=np.int64)

    @property
    def vocabulary(self) -> VisualVocabulary:
        """Vocabulary used for BoW vectors."""
        return self._vocabulary

    def add(self, keyframe_id: int, descriptors: np.ndarray) -> PlaceEntry:
        """Add (or replace) a keyframe in the database."""
        if keyframe_id in self._entries:
            self.remove(keyframe_id)
        bow_vector = self._vocabulary.describe(descriptors)
        words = np.empty(0, dtype=np.int64)
        if len(descriptors) > 0:
            words = np.unique(self._vocabulary.assign(descriptors))
        entry = PlaceEntry(
            keyframe_id=keyframe_id,
            bow_vector=bow_vector,
            words=words,
            descriptors=np.array(descriptors, dtype=np.uint8, copy=True),
        )
        self._entries[keyframe_id] = entry
        self._document_frequencies[words] += 1
        return entry

    def remove(self, keyframe_id: int) -> None:
        """Forget a keyframe (e.g. after it was culled from the map)."""
        entry = self._entries.pop(keyframe_id, None)
        if entry is not None:
            self._document_frequencies[entry.words] -= 1

    def query(
        self,
        descriptors: np.ndarray,
        n_candidates: int = 5,
        min_score: float = 0.0,
        exclude_ids: set[int] | None = None,
        max_keyframe_id: int | None = None,
    ) -> list[QueryResult]:
        """Query database for similar places.

        Args:
            descriptors: Query ORB descriptors, shape (N, 32)
            n_candidates: Maximum number of candidates to return
            min_score: Minimum similarity score threshold
            exclude_ids: Keyframes never returned (e.g. covisible neighbours)
            max_keyframe_id: Only keyframes with id <= this are returned

        Returns:
            QueryResults sorted by similarity (highest first, then lowest id)
        """
        exclude_ids = exclude_ids or set()
        ids = [
            k
            for k in sorted(self._entries)
            if k not in exclude_ids and (max_keyframe_id is None or k <= max_keyframe_id)
        ]
        if not ids:
            return []

        query_bow = self._vocabulary.describe(descriptors)
        bow_matrix = np.stack([self._entries[k].bow_vector for k in ids])
        similarities = bow_matrix @ query_bow

        order = np.lexsort((np.array(ids), -similarities))
        results = []
        for i in order:
            if similarities[i] < min_score:
                break
            results.append(QueryResult(keyframe_id=ids[i], similarity=float(similarities[i])))
            if len(results) >= n_candidates:
                break
        return results

    def get_entry(self, keyframe_id: int) -> PlaceEntry | None:
        """Get a place entry by keyframe ID."""
        return self._entries.get(keyframe_id)

    def update_idf(self) -> None:
        """Recompute IDF weights from the current entries and refresh BoW vectors."""
        n_documents = len(self._entries)
        if n_documents == 0:
            return
        self._vocabulary.update_idf(self._document_frequencies, n_documents)
        for entry in self._entries.values():
            entry.bow_vector = self._vocabulary.describe(entry.descriptors)

    @property
    def keyframe_ids(self) -> list[int]:
        """Ids of keyframes in the database."""
        return sorted(self._entries)

    @property
    def size(self) -> int:
        """Return number of entries in database."""
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
