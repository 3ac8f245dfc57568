""" Recovering the pose of a frame against the map when frame to frame tracking has no prior to work with """
import logging
from typing import List, Optional, Set

import attr

from dwslam.frame import Frame
from dwslam.keyframe import KeyFrame
from dwslam.landmark import Landmark
from dwslam.matcher import OrbMatcher
from dwslam.optimizer import FrameOnlyPoseOptimizer
from dwslam.pnp import PnPSolver
from dwslam.retrieval import KeyFrameDatabase
from dwslam.windows import DualWindow

log = logging.getLogger(__name__)


@attr.define
class _Candidate:
    keyframe: KeyFrame
    matches: List[Optional[Landmark]]
    solver: PnPSolver
    discarded: bool = False


@attr.define
class Relocalizer:
    database: Optional[KeyFrameDatabase]
    bow_matcher: OrbMatcher = attr.Factory(lambda: OrbMatcher.build(nn_ratio=0.75))
    projection_matcher: OrbMatcher = attr.Factory(lambda: OrbMatcher.build(nn_ratio=0.9))
    pose_optimizer: FrameOnlyPoseOptimizer = attr.Factory(FrameOnlyPoseOptimizer)

    min_bow_matches: int = 15
    min_optimized: int = 10
    good_enough: int = 50
    min_accepted: int = 30
    iterations_per_batch: int = 5

    def select_candidates(
        self,
        frame: Frame,
        forced: bool,
        last_keyframe: Optional[KeyFrame],
        window: DualWindow,
    ) -> List[KeyFrame]:
        """ Keyframes to try. A plain relocalization gives up on the temporal window and asks the retrieval index,
        a forced one (the map was just corrected) looks around the last keyframe. """
        if self.database is not None:
            frame.compute_bow(self.database.vocabulary)

        if not forced:
            window.release_all()
            if self.database is None:
                return []
            return self.database.detect_relocalization_candidates(frame)

        if last_keyframe is None:
            return []
        return last_keyframe.get_best_covisibility_keyframes(9) + [last_keyframe]

    def _prepare(self, frame: Frame, candidates: List[KeyFrame]) -> List[_Candidate]:
        prepared = []
        for keyframe in candidates:
            if keyframe.is_bad:
                continue
            n_matches, matches = self.bow_matcher.search_by_bow(keyframe, frame)
            if n_matches < self.min_bow_matches:
                continue
            solver = PnPSolver.from_matches(frame, matches)
            solver.set_ransac_parameters(0.99, 10, 300, 4, 0.5, 5.991)
            prepared.append(_Candidate(keyframe=keyframe, matches=matches, solver=solver))
        return prepared

    def _refine(self, frame: Frame, candidate: _Candidate, inliers) -> int:
        """ Inlier count after optimization and projection based expansion of the hypothesis in frame.pose """
        found: Set[Landmark] = set()
        for slot in range(frame.n_features):
            if inliers[slot]:
                frame.bind_landmark(slot, candidate.matches[slot])
                found.add(candidate.matches[slot])
            else:
                frame.unbind_landmark(slot)

        n_good = self.pose_optimizer.optimize(frame)
        if n_good < self.min_optimized:
            return n_good
        frame.discard_outliers()

        if n_good < self.good_enough:
            n_additional = self.projection_matcher.search_by_projection_keyframe(frame, candidate.keyframe, found, 10, 100)
            if n_additional + n_good >= self.good_enough:
                n_good = self.pose_optimizer.optimize(frame)

                if self.min_accepted < n_good < self.good_enough:
                    found = {landmark for landmark in frame.landmarks if landmark is not None}
                    n_additional = self.projection_matcher.search_by_projection_keyframe(frame, candidate.keyframe, found, 3, 64)
                    if n_good + n_additional >= self.good_enough:
                        n_good = self.pose_optimizer.optimize(frame)
                        frame.discard_outliers()

        return n_good

    def relocalize(self, frame: Frame, candidates: List[KeyFrame]) -> bool:
        """ Interleaved RANSAC over all candidates, the first pose with enough support wins.
        On success the frame holds the pose and the landmark bindings. """
        prepared = self._prepare(frame, candidates)
        n_live = len(prepared)

        while n_live > 0:
            for candidate in prepared:
                if candidate.discarded:
                    continue

                result = candidate.solver.iterate(self.iterations_per_batch)
                if result.no_more:
                    candidate.discarded = True
                    n_live -= 1

                if result.pose is None:
                    continue

                frame.set_pose(result.pose)
                n_good = self._refine(frame, candidate, result.inliers)
                if n_good >= self.min_accepted:
                    log.debug(f"Frame {frame.id} relocalized against keyframe {candidate.keyframe.keyframe_id} "
                              f"with {n_good} inliers")
                    return True

        for slot in range(frame.n_features):
            frame.unbind_landmark(slot)
        log.debug(f"Relocalization of frame {frame.id} failed, {len(candidates)} candidates")
        return False
