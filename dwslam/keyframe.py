import logging
import threading
from typing import Dict, List, Optional, Set, TYPE_CHECKING

import attr
import numpy as np

from utils.enum_utils import StrEnum
from dwslam.feature_grid import FeatureGrid
from dwslam.frame import Frame
from dwslam.landmark import Landmark
from dwslam.transforms import world_to_cam

if TYPE_CHECKING:
    from dwslam.map import Map
    from dwslam.retrieval import KeyFrameDatabase

log = logging.getLogger(__name__)

COVISIBILITY_MIN_WEIGHT = 15


class EraseHold(StrEnum):
    """ Reasons a keyframe must not be deleted by a back end """
    DOUBLE_WINDOW = 'double_window'
    LOOP_CLOSING = 'loop_closing'


@attr.define(eq=False)
class KeyFrame(Frame):
    """ A Frame promoted to long-lived reference, owned by the Map.
    `id` stays the id of the frame it was promoted from, `keyframe_id` is its own id space. """
    keyframe_id: int = -1
    map: Optional['Map'] = attr.ib(default=None, repr=False)
    database: Optional['KeyFrameDatabase'] = attr.ib(default=None, repr=False)

    # covisibility graph, keyframe id -> number of shared landmarks
    connected_weights: Dict[int, int] = attr.ib(factory=dict, repr=False)
    ordered_connections: List[int] = attr.ib(factory=list, repr=False)   # keyframe ids, heaviest first

    reference_epoch: int = -1    # id of the frame whose window selection last visited us
    feature_grid: Optional[FeatureGrid] = attr.ib(default=None, repr=False)

    _erase_holds: Set[EraseHold] = attr.ib(factory=set, init=False, repr=False)
    _to_be_erased: bool = attr.ib(default=False, init=False)
    _bad: bool = attr.ib(default=False, init=False)
    _lock: threading.RLock = attr.ib(factory=threading.RLock, init=False, repr=False)

    @classmethod
    def from_frame(
        cls,
        frame: Frame,
        map: 'Map',
        database: Optional['KeyFrameDatabase'] = None,
    ) -> 'KeyFrame':
        """ Copy of the frame that keeps its landmark bindings. The source frame stays usable. """
        return cls(
            id=frame.id,
            timestamp=frame.timestamp,
            detections=frame.detections,
            cam=frame.cam,
            pyramid=frame.pyramid,
            stereo=frame.stereo,
            pose=None if frame.pose is None else frame.pose.copy(),
            landmarks=list(frame.landmarks),
            outliers=frame.outliers.copy(),
            speed_bias=frame.speed_bias.copy(),
            gravity=frame.gravity.copy(),
            imu_measurements=list(frame.imu_measurements),
            prev_frame=frame.prev_frame,
            first_estimate_pose=frame.first_estimate_pose,
            first_estimate_speed_bias=frame.first_estimate_speed_bias,
            bow=frame.bow,
            image=frame.image,
            point_statistics=frame.point_statistics,
            keyframe_id=map.ids.keyframes(),
            map=map,
            database=database,
        )

    @property
    def is_keyframe(self) -> bool:
        return True

    @property
    def is_bad(self) -> bool:
        return self._bad

    # landmark bindings

    def add_landmark(self, landmark: Landmark, slot: int):
        with self._lock:
            self.landmarks[slot] = landmark
            self.outliers[slot] = False

    def erase_landmark_match(self, slot: int):
        with self._lock:
            self.landmarks[slot] = None

    def get_landmark_matches(self) -> List[Optional[Landmark]]:
        with self._lock:
            return list(self.landmarks)

    def register_observations(self) -> int:
        """ Make every good landmark bound in us know it is observed here """
        n = 0
        for slot, landmark in enumerate(self.get_landmark_matches()):
            if landmark is not None and not landmark.is_bad:
                landmark.add_observation(self, slot)
                n += 1
        return n

    def tracked_landmarks_count(self, min_observations: int = 0) -> int:
        """ Good landmarks bound in us, optionally only those seen by at least min_observations keyframes """
        n = 0
        for landmark in self.get_landmark_matches():
            if landmark is None or landmark.is_bad:
                continue
            if min_observations > 0 and landmark.n_observations() < min_observations:
                continue
            n += 1
        return n

    def compute_scene_median_depth(self, q: int = 2) -> float:
        """ The q-quantile of depths of our landmarks, -1 if there are none """
        positions = [landmark.get_world_pos() for landmark in self.get_landmark_matches() if landmark is not None]
        if len(positions) == 0:
            return -1.0
        depths = np.sort(world_to_cam(np.array(positions), self.pose)[:, 2])
        return float(depths[(len(depths) - 1) // q])

    def make_feature_grid(self, cell_size: int = 30) -> FeatureGrid:
        grid = FeatureGrid.from_bounds(*self.get_bounds(), cell_size=cell_size)
        existing = [slot for slot, landmark in enumerate(self.get_landmark_matches()) if landmark is not None]
        grid.set_existing_features(self.keypoints, existing)
        self.feature_grid = grid
        return grid

    # covisibility graph

    def add_connection(self, keyframe: 'KeyFrame', weight: int):
        with self._lock:
            self.connected_weights[keyframe.keyframe_id] = weight
            self._update_best_covisibles()

    def erase_connection(self, keyframe: 'KeyFrame'):
        with self._lock:
            if self.connected_weights.pop(keyframe.keyframe_id, None) is not None:
                self._update_best_covisibles()

    def _update_best_covisibles(self):
        self.ordered_connections = sorted(self.connected_weights, key=lambda k: -self.connected_weights[k])

    def update_connections(self):
        """ Rebuild our covisibility edges from shared landmark observations.
        Keeps edges of at least COVISIBILITY_MIN_WEIGHT, or only the heaviest one if none qualifies. """
        counter: Dict[int, int] = {}
        for landmark in self.get_landmark_matches():
            if landmark is None or landmark.is_bad:
                continue
            for keyframe in landmark.get_observations():
                if keyframe.keyframe_id == self.keyframe_id:
                    continue
                counter[keyframe.keyframe_id] = counter.get(keyframe.keyframe_id, 0) + 1

        if not counter:
            return

        strong = {k: w for k, w in counter.items() if w >= COVISIBILITY_MIN_WEIGHT}
        if not strong:
            best = max(counter, key=counter.get)
            strong = {best: counter[best]}

        for keyframe_id, weight in strong.items():
            other = self.map.get_keyframe(keyframe_id)
            if other is not None:
                other.add_connection(self, weight)

        with self._lock:
            self.connected_weights = strong
            self._update_best_covisibles()

    def get_connected_keyframes(self) -> List['KeyFrame']:
        with self._lock:
            ids = list(self.connected_weights)
        return self._resolve(ids)

    def get_best_covisibility_keyframes(self, n: int) -> List['KeyFrame']:
        with self._lock:
            ids = self.ordered_connections[:n]
        return self._resolve(ids)

    def get_weight(self, keyframe: 'KeyFrame') -> int:
        with self._lock:
            return self.connected_weights.get(keyframe.keyframe_id, 0)

    def _resolve(self, ids: List[int]) -> List['KeyFrame']:
        out = []
        for keyframe_id in ids:
            keyframe = self.map.get_keyframe(keyframe_id)
            if keyframe is not None and not keyframe.is_bad:
                out.append(keyframe)
        return out

    # erase eligibility

    def set_not_erase(self, reason: EraseHold = EraseHold.DOUBLE_WINDOW):
        with self._lock:
            self._erase_holds.add(reason)

    def set_erase(self, reason: EraseHold = EraseHold.DOUBLE_WINDOW):
        """ Drop one hold, a culling requested while we were held happens now """
        with self._lock:
            self._erase_holds.discard(reason)
            deferred = self._to_be_erased and not self._erase_holds

        if deferred:
            self.set_bad_flag()

    def is_erasable(self) -> bool:
        with self._lock:
            return not self._erase_holds

    def is_held(self, reason: EraseHold) -> bool:
        with self._lock:
            return reason in self._erase_holds

    def set_bad_flag(self):
        """ Culling entry point for back ends, deferred while any hold is on """
        with self._lock:
            if self._bad:
                return
            if self._erase_holds:
                self._to_be_erased = True
                return
            self._bad = True
            landmarks = list(self.landmarks)
            connected = list(self.connected_weights)
            self.connected_weights = {}
            self.ordered_connections = []

        for keyframe in self._resolve(connected):
            keyframe.erase_connection(self)

        for landmark in landmarks:
            if landmark is not None:
                landmark.erase_observation(self)

        if self.database is not None:
            self.database.erase(self)
        self.map.erase_keyframe(self)
        log.debug(f"Keyframe {self.keyframe_id} (frame {self.id}) culled")

    def release(self):
        """ Keyframes outlive the windows, their bindings are only dropped by culling or reset """
        self.partial_release()
