import logging
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import attr
import numpy as np
import tqdm

from posegraph.features import FeatureMatcher
from posegraph.frames import Frame
from utils.custom_types import IndexPair

logger = logging.getLogger(__name__)


@attr.define
class Match:
    """ Keypoint correspondences between frame_from (owner of the match list) and frame_to. """
    frame_from: int
    frame_to: int
    index_pairs: List[IndexPair]

    def __attrs_post_init__(self):
        if self.frame_from >= self.frame_to:
            raise ValueError(f"Matches are stored for frame_from < frame_to, got {self.frame_from=} {self.frame_to=}")

    def __len__(self) -> int:
        return len(self.index_pairs)

    def local_indices(self) -> Tuple[np.ndarray, np.ndarray]:
        pairs = np.asarray(self.index_pairs, dtype=np.int64).reshape(-1, 2)
        return pairs[:, 0], pairs[:, 1]


@attr.define
class KeypointMatchStore:
    """ Per source frame, the raw correspondences to every later frame. """
    number_of_frames: int
    matches: Dict[int, List[Match]] = attr.Factory(dict)

    @classmethod
    def from_feature_matcher(cls, frames: Sequence[Frame], matcher: FeatureMatcher) -> 'KeypointMatchStore':
        """ All pairs i < j, degree is bounded afterwards """
        store = cls(number_of_frames=len(frames))
        for i, frame_from in tqdm.tqdm(enumerate(frames), total=len(frames), desc="matching"):
            matches_to = []
            for j in range(i + 1, len(frames)):
                index_pairs = matcher.match(frame_from, frames[j])
                if len(index_pairs) > 0:
                    matches_to.append((j, index_pairs))
            store.add_matches(i, matches_to)
        logger.info(f"Matched {len(frames)} frames into {len(store)} non empty match lists")
        return store

    def add_matches(self, frame_from: int, matches_to: Iterable[Tuple[int, Sequence[IndexPair]]]) -> None:
        self._check_frame(frame_from)
        for frame_to, index_pairs in matches_to:
            self._check_frame(frame_to)
            match = Match(frame_from=frame_from, frame_to=frame_to, index_pairs=[tuple(p) for p in index_pairs])
            self.matches.setdefault(frame_from, []).append(match)

    def _check_frame(self, frame: int) -> None:
        if not 0 <= frame < self.number_of_frames:
            raise ValueError(f"Frame index {frame} out of range [0, {self.number_of_frames})")

    def bound_degree(self, max_degree: int) -> None:
        """ Keep, for every frame, only the max_degree match lists with the most correspondences.
        sorted() is stable so equally sized lists keep their insertion order. """
        if max_degree < 0:
            raise ValueError(f"{max_degree=} must be non-negative")

        dropped = 0
        for frame_from, frame_matches in self.matches.items():
            kept = sorted(frame_matches, key=lambda m: len(m), reverse=True)[:max_degree]
            dropped += len(frame_matches) - len(kept)
            self.matches[frame_from] = kept

        logger.info(f"Degree bounded to {max_degree}, dropped {dropped} match lists")

    def matches_from(self, frame_from: int) -> List[Match]:
        return self.matches.get(frame_from, [])

    def get_match(self, frame_from: int, position: int) -> Match:
        return self.matches[frame_from][position]

    def get_match_to(self, frame_from: int, frame_to: int) -> Optional[Match]:
        for pair_match in self.matches_from(frame_from):
            if pair_match.frame_to == frame_to:
                return pair_match
        return None

    def out_degree(self, frame_from: int) -> int:
        return len(self.matches_from(frame_from))

    def iter_pairs(self) -> Iterator[Tuple[int, int]]:
        """ (frame_from, position) of every match list, ordered like iter_matches """
        for frame_from in sorted(self.matches):
            for position in range(len(self.matches[frame_from])):
                yield frame_from, position

    def iter_matches(self) -> Iterator[Match]:
        """ ordered by source frame, then by position in its list """
        for frame_from in sorted(self.matches):
            yield from self.matches[frame_from]

    def total_correspondences(self) -> int:
        return sum(len(m) for m in self.iter_matches())

    def __len__(self) -> int:
        return sum(len(ms) for ms in self.matches.values())
