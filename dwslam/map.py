import threading
from typing import Dict, List, Optional

import attr
import numpy as np

from dwslam.ids import MapIdGenerators
from dwslam.keyframe import KeyFrame
from dwslam.landmark import Landmark
from dwslam.types import Vector3d


@attr.define
class Map:
    """ Global store of keyframes and landmarks, shared between tracking and the back ends.
    Also the owner of the id generators of frames, keyframes and landmarks. """
    ids: MapIdGenerators = attr.Factory(MapIdGenerators)
    keyframes: Dict[int, KeyFrame] = attr.Factory(dict)     # by keyframe id
    landmarks: Dict[int, Landmark] = attr.Factory(dict)     # by landmark id
    reference_landmarks: List[Landmark] = attr.Factory(list)
    max_keyframe_id: int = 0
    _lock: threading.RLock = attr.ib(factory=threading.RLock, init=False, repr=False)

    def add_keyframe(self, keyframe: KeyFrame):
        """ Idempotent """
        with self._lock:
            self.keyframes[keyframe.keyframe_id] = keyframe
            self.max_keyframe_id = max(self.max_keyframe_id, keyframe.keyframe_id)

    def erase_keyframe(self, keyframe: KeyFrame):
        with self._lock:
            self.keyframes.pop(keyframe.keyframe_id, None)

    def get_keyframe(self, keyframe_id: int) -> Optional[KeyFrame]:
        with self._lock:
            return self.keyframes.get(keyframe_id)

    def create_landmark(self, position: Vector3d, keyframe: KeyFrame, slot: int) -> Landmark:
        """ New landmark observed by keyframe at slot, bound on both sides and stored in the map """
        landmark = Landmark(
            id=self.ids.landmarks(),
            position=np.asarray(position, dtype=np.float64).reshape(3).copy(),
            map=self,
            reference_keyframe_id=keyframe.keyframe_id,
            first_frame_id=keyframe.id,
        )
        landmark.add_observation(keyframe, slot)
        keyframe.add_landmark(landmark, slot)
        self.add_landmark(landmark)
        return landmark

    def add_landmark(self, landmark: Landmark):
        with self._lock:
            self.landmarks[landmark.id] = landmark

    def erase_landmark(self, landmark: Landmark):
        with self._lock:
            self.landmarks.pop(landmark.id, None)

    def set_reference_landmarks(self, landmarks: List[Landmark]):
        with self._lock:
            self.reference_landmarks = list(landmarks)

    def get_all_keyframes(self) -> List[KeyFrame]:
        with self._lock:
            return [self.keyframes[k] for k in sorted(self.keyframes)]

    def get_all_landmarks(self) -> List[Landmark]:
        with self._lock:
            return [self.landmarks[k] for k in sorted(self.landmarks)]

    def keyframes_in_map(self) -> int:
        with self._lock:
            return len(self.keyframes)

    def landmarks_in_map(self) -> int:
        with self._lock:
            return len(self.landmarks)

    def clear(self):
        """ Drops every keyframe and landmark. Id generators are rewound separately, by the reset of the tracker. """
        with self._lock:
            self.keyframes = {}
            self.landmarks = {}
            self.reference_landmarks = []
            self.max_keyframe_id = 0
