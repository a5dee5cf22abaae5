# core/hash_index.py

import faiss
import logging
import numpy as np
from collections import Counter
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


class CandidateIndex:
    """
    Supplies candidate neighbours for near-duplicate grouping.

    Implementations may return a superset of the true neighbours; the
    grouper verifies every candidate with an exact Hamming distance, so
    swapping implementations never changes the resulting groups.
    """

    def build(self, hashes: List[str], threshold: int):
        raise NotImplementedError

    def candidates(self, position: int) -> Iterable[int]:
        """Positions that may lie within the threshold of hashes[position]"""
        raise NotImplementedError


class BruteForceIndex(CandidateIndex):
    """Every later item is a candidate: O(n^2) comparisons"""

    def __init__(self):
        self.size = 0

    def build(self, hashes: List[str], threshold: int):
        self.size = len(hashes)

    def candidates(self, position: int) -> Iterable[int]:
        return range(position + 1, self.size)


class FaissHammingIndex(CandidateIndex):
    """
    Binary FAISS index answering Hamming radius queries.

    Only hashes of the dominant length are indexed; others have no
    candidates since hashes of different lengths never match.
    """

    def __init__(self):
        self.index = None
        self.radius = 0
        self.positions: List[int] = []
        self.codes: Optional[np.ndarray] = None
        self._row_of = {}

    def create_index(self, n_bits: int):
        """Create a flat binary index for n_bits-long codes"""
        if n_bits % 8 != 0:
            raise ValueError(f"Binary index needs a multiple of 8 bits, got {n_bits}")
        self.index = faiss.IndexBinaryFlat(n_bits)

    def build(self, hashes: List[str], threshold: int):
        self.positions = []
        self._row_of = {}
        if not hashes:
            self.index = None
            return

        hex_length = Counter(len(h) for h in hashes).most_common(1)[0][0]
        self.create_index(hex_length * 4)

        rows = []
        for position, h in enumerate(hashes):
            if len(h) != hex_length:
                continue
            self._row_of[position] = len(rows)
            self.positions.append(position)
            rows.append(np.frombuffer(bytes.fromhex(h), dtype=np.uint8))

        self.codes = np.vstack(rows)
        self.index.add(self.codes)
        # Range search keeps distances strictly below the radius
        self.radius = threshold + 1
        logger.debug("Indexed %d binary codes (%d bits)", len(rows), hex_length * 4)

    def candidates(self, position: int) -> Iterable[int]:
        row = self._row_of.get(position)
        if self.index is None or row is None:
            return []

        query = self.codes[row:row + 1]
        lims, _, labels = self.index.range_search(query, self.radius)
        found = labels[lims[0]:lims[1]]
        return sorted(self.positions[int(label)] for label in found
                      if self.positions[int(label)] > position)


def create_candidate_index(index_type: str = "brute") -> CandidateIndex:
    """Build the candidate index named in configuration"""
    if index_type == "brute":
        return BruteForceIndex()
    if index_type == "faiss":
        return FaissHammingIndex()
    raise ValueError(f"Unknown index type: {index_type}")
