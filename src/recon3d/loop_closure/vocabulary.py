"""Visual vocabulary for Bag of Visual Words place recognition.

A visual vocabulary enables fast image similarity comparison by:
1. Clustering descriptors into "visual words" (k-means centers)
2. Representing images as histograms of visual word occurrences
3. Comparing images via histogram similarity (cosine distance)

ORB descriptors are unpacked to 256 bits before clustering, so squared
Euclidean distance to a word equals the Hamming distance for binary words.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from sklearn.cluster import MiniBatchKMeans

logger = logging.getLogger(__name__)


def unpack_descriptors(descriptors: np.ndarray) -> np.ndarray:
    """Unpack (N, 32) uint8 descriptors to (N, 256) float32 bits."""
    return np.unpackbits(np.asarray(descriptors, dtype=np.uint8), axis=1).astype(np.float32)


@dataclass
class VisualVocabulary:
    """Bag of Visual Words vocabulary for ORB descriptors.

    Attributes:
        words: Cluster centers (visual words), shape (n_words, 256)
        n_words: Number of visual words in vocabulary
        idf: Inverse document frequency weights, shape (n_words,)
    """

    words: np.ndarray  # (n_words, 256) float32 cluster centers in bit space
    n_words: int
    idf: np.ndarray  # (n_words,) IDF weights

    @classmethod
    def train(
        cls,
        descriptors: np.ndarray,
        n_words: int,
        batch_size: int = 10000,
        max_iter: int = 100,
        seed: int = 0,
    ) -> VisualVocabulary:
        """Train a vocabulary with mini-batch k-means.

        Args:
            descriptors: Stacked ORB descriptors, shape (N, 32)
            n_words: Number of visual words (reduced to N if larger)
            batch_size: Mini-batch size for k-means
            max_iter: Maximum iterations
            seed: Random seed

        Returns:
            Vocabulary with uniform IDF weights

        Raises:
            ValueError: If there are no descriptors
        """
        if descriptors is None or len(descriptors) == 0:
            raise ValueError("Cannot train a vocabulary without descriptors")

        data = unpack_descriptors(descriptors)
        n_words = max(1, min(n_words, len(data)))
        kmeans = MiniBatchKMeans(
            n_clusters=n_words,
            batch_size=min(batch_size, len(data)),
            max_iter=max_iter,
            random_state=seed,
            n_init=3,
        )
        kmeans.fit(data)
        logger.info(
            "[Vocabulary] Trained %d words on %d descriptors", n_words, len(data)
        )
        return cls.from_words(kmeans.cluster_centers_)

    def assign(self, descriptors: np.ndarray, chunk: int = 2048) -> np.ndarray:
        """Return the nearest word index for each descriptor."""
        data = unpack_descriptors(descriptors)
        word_sq = np.sum(self.words**2, axis=1)
        out = np.empty(len(data), dtype=np.int64)
        # ||a - w||^2 = ||a||^2 - 2 a.w + ||w||^2; ||a||^2 is constant per row
        for start in range(0, len(data), chunk):
            block = data[start : start + chunk]
            dist = word_sq[None, :] - 2.0 * block @ self.words.T
            out[start : start + chunk] = np.argmin(dist, axis=1)
        return out

    def describe(self, descriptors: np.ndarray) -> np.ndarray:
        """Convert image descriptors to Bag of Words vector.

        Args:
            descriptors: ORB descriptors, shape (N, 32) uint8

        Returns:
            BoW vector, shape (n_words,), L2 normalized with TF-IDF weighting
        """
        if descriptors is None or len(descriptors) == 0:
            return np.zeros(self.n_words, dtype=np.float32)

        histogram = np.bincount(self.assign(descriptors), minlength=self.n_words)
        tfidf = histogram.astype(np.float32) * self.idf

        norm = np.linalg.norm(tfidf)
        if norm > 0:
            tfidf = tfidf / norm
        return tfidf

    def similarity(self, bow1: np.ndarray, bow2: np.ndarray) -> float:
        """Cosine similarity between two normalized BoW vectors, in [0, 1]."""
        return float(np.dot(bow1, bow2))

    def save(self, path: str | Path) -> None:
        """Save vocabulary to .npz file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez(path, words=self.words, n_words=self.n_words, idf=self.idf)

    @classmethod
    def load(cls, path: str | Path) -> VisualVocabulary:
        """Load vocabulary from .npz file."""
        data = np.load(path)
        return cls(
            words=data["words"].astype(np.float32),
            n_words=int(data["n_words"]),
            idf=data["idf"].astype(np.float32),
        )

    @classmethod
    def from_words(cls, words: np.ndarray) -> VisualVocabulary:
        """Create vocabulary from cluster centers with uniform IDF."""
        n_words = len(words)
        return cls(
            words=np.asarray(words, dtype=np.float32),
            n_words=n_words,
            idf=np.ones(n_words, dtype=np.float32),
        )

    def update_idf(self, document_frequencies: np.ndarray, n_documents: int) -> None:
        """Update IDF weights: IDF(word) = log(N / df(word)).

        Args:
            document_frequencies: Documents containing each word, shape (n_words,)
            n_documents: Total number of documents
        """
        df_smoothed = np.maximum(document_frequencies, 1)
        self.idf = np.log(n_documents / df_smoothed).astype(np.float32)
