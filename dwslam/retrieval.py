""" Place recognition for relocalization: a flat vocabulary of binary words and an inverted index
from words to the keyframes that contain them. """
import logging
import threading
from collections import Counter
from typing import Dict, List

import attr
import numpy as np

from utils.custom_types import Array, BinaryFeatures
from utils.serialization import msgpack_dumps, msgpack_loads
from dwslam.features import pairwise_hamming_distance
from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame

log = logging.getLogger(__name__)

BowVector = Dict[int, float]    # word id -> L1 normalized weight


def _bitwise_majority(descriptors: BinaryFeatures) -> Array['32', np.uint8]:
    bits = np.unpackbits(descriptors, axis=1)
    majority = (bits.sum(axis=0) * 2 >= len(descriptors)).astype(np.uint8)
    return np.packbits(majority)


def bow_score(a: BowVector, b: BowVector) -> float:
    """ L1 score of two normalized vectors, 1 for identical, 0 for disjoint """
    common = set(a) & set(b)
    return float(sum(abs(a[w]) + abs(b[w]) - abs(a[w] - b[w]) for w in common)) / 2.


@attr.define
class Vocabulary:
    words: BinaryFeatures = attr.ib(repr=False)

    @property
    def n_words(self) -> int:
        return len(self.words)

    @classmethod
    def train(
        cls,
        descriptors: BinaryFeatures,
        n_words: int = 1000,
        n_iterations: int = 10,
        seed: int = 0,
    ) -> 'Vocabulary':
        """ k-majority clustering, the binary analogue of k-means """
        descriptors = np.asarray(descriptors, dtype=np.uint8)
        n_words = min(n_words, len(descriptors))
        rng = np.random.default_rng(seed)
        words = descriptors[rng.choice(len(descriptors), size=n_words, replace=False)].copy()

        for iteration in range(n_iterations):
            assignment = pairwise_hamming_distance(descriptors, words).argmin(axis=1)
            new_words = words.copy()
            for word_id in range(n_words):
                members = descriptors[assignment == word_id]
                if len(members) > 0:
                    new_words[word_id] = _bitwise_majority(members)
            if np.array_equal(new_words, words):
                log.debug(f"Vocabulary converged after {iteration + 1} iterations")
                break
            words = new_words

        return cls(words=words)

    def transform(self, descriptors: BinaryFeatures) -> BowVector:
        if len(descriptors) == 0 or self.n_words == 0:
            return {}
        assignment = pairwise_hamming_distance(np.asarray(descriptors, dtype=np.uint8), self.words).argmin(axis=1)
        counts = Counter(int(word_id) for word_id in assignment)
        total = float(sum(counts.values()))
        return {word_id: count / total for word_id, count in counts.items()}

    def dumps(self) -> bytes:
        return msgpack_dumps({'words': self.words})

    @classmethod
    def loads(cls, data: bytes) -> 'Vocabulary':
        return cls(words=np.asarray(msgpack_loads(data)['words'], dtype=np.uint8))


@attr.define
class KeyFrameDatabase:
    vocabulary: Vocabulary = attr.ib(repr=False)
    min_common_words_ratio: float = 0.8
    min_score_ratio: float = 0.75
    n_covisible_for_score: int = 10

    inverted_index: Dict[int, List[KeyFrame]] = attr.Factory(dict)
    _lock: threading.Lock = attr.ib(factory=threading.Lock, init=False, repr=False)

    def add(self, keyframe: KeyFrame):
        keyframe.compute_bow(self.vocabulary)
        with self._lock:
            for word_id in keyframe.bow:
                self.inverted_index.setdefault(word_id, []).append(keyframe)

    def erase(self, keyframe: KeyFrame):
        if keyframe.bow is None:
            return
        with self._lock:
            for word_id in keyframe.bow:
                entries = self.inverted_index.get(word_id, [])
                self.inverted_index[word_id] = [k for k in entries if k is not keyframe]

    def clear(self):
        with self._lock:
            self.inverted_index = {}

    def n_keyframes(self) -> int:
        with self._lock:
            return len({id(k) for entries in self.inverted_index.values() for k in entries})

    def detect_relocalization_candidates(self, frame: Frame) -> List[KeyFrame]:
        """ Keyframes sharing enough words with the frame, ranked by the score accumulated over their
        covisibility neighbourhood. Only the best keyframe of each good neighbourhood is returned. """
        frame.compute_bow(self.vocabulary)

        common_words: Dict[KeyFrame, int] = {}
        with self._lock:
            for word_id in frame.bow:
                for keyframe in self.inverted_index.get(word_id, []):
                    common_words[keyframe] = common_words.get(keyframe, 0) + 1

        common_words = {k: n for k, n in common_words.items() if not k.is_bad}
        if not common_words:
            return []

        min_common = self.min_common_words_ratio * max(common_words.values())
        scores: Dict[KeyFrame, float] = {
            keyframe: bow_score(frame.bow, keyframe.bow)
            for keyframe, n in common_words.items()
            if n > min_common
        }
        if not scores:
            return []

        accumulated: Dict[KeyFrame, float] = {}
        best_in_group: Dict[KeyFrame, KeyFrame] = {}
        for keyframe, score in scores.items():
            best_keyframe, best_score, acc_score = keyframe, score, score
            for neighbour in keyframe.get_best_covisibility_keyframes(self.n_covisible_for_score):
                if neighbour not in scores:
                    continue
                acc_score += scores[neighbour]
                if scores[neighbour] > best_score:
                    best_keyframe, best_score = neighbour, scores[neighbour]
            accumulated[keyframe] = acc_score
            best_in_group[keyframe] = best_keyframe

        min_score = self.min_score_ratio * max(accumulated.values())
        candidates: List[KeyFrame] = []
        seen = set()
        for keyframe in sorted(accumulated, key=lambda k: -accumulated[k]):
            if accumulated[keyframe] < min_score:
                continue
            best = best_in_group[keyframe]
            if id(best) not in seen:
                seen.add(id(best))
                candidates.append(best)

        log.debug(f"Relocalization candidates for frame {frame.id}: {[k.keyframe_id for k in candidates]}")
        return candidates
