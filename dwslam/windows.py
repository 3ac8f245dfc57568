""" The double window: a temporal window of the most recent frames (keyframes or not) and a spatial window
of covisible keyframes picked by voting. Together they decide which landmarks are searched for in
the current frame and which poses the windowed optimizer may move. """
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set

import attr

from dwslam.frame import Frame
from dwslam.keyframe import EraseHold, KeyFrame
from dwslam.landmark import Landmark

log = logging.getLogger(__name__)


@attr.define
class DualWindow:
    temporal_size: int = 5
    spatial_size: int = 10

    temporal: Deque[Frame] = attr.Factory(deque)    # oldest first
    spatial: List[KeyFrame] = attr.Factory(list)
    reference_keyframe: Optional[KeyFrame] = None
    reference_landmarks: List[Landmark] = attr.Factory(list)

    def __len__(self) -> int:
        return len(self.temporal)

    def temporal_frames(self) -> List[Frame]:
        return list(self.temporal)

    def temporal_keyframes(self) -> List[KeyFrame]:
        return [frame for frame in self.temporal if isinstance(frame, KeyFrame)]

    def is_in_temporal_window(self, frame: Frame) -> bool:
        if not self.temporal:
            return False
        return self.temporal[0].id <= frame.id <= self.temporal[-1].id

    def reset_to(self, frames: List[Frame]):
        """ Seed after initialization, the frames are linked one to the next """
        self.temporal = deque()
        self.spatial = []
        self.reference_landmarks = []
        previous = None
        for frame in frames:
            frame.set_prev_frame(previous)
            self.temporal.append(frame)
            previous = frame

    def push(self, frame: Frame):
        """ Append the newest frame and slide so that at most temporal_size frames stay.
        Frames leaving the window get their first estimate fixed: keyframes are released to the back ends,
        transient frames are freed. The new oldest frame gets its first estimate fixed too. """
        if isinstance(frame, KeyFrame):
            frame.set_not_erase(EraseHold.DOUBLE_WINDOW)
        frame.set_prev_frame(self.temporal[-1] if self.temporal else None)
        self.temporal.append(frame)

        if self.temporal_size > 0:
            if len(self.temporal) > self.temporal_size:
                self._evict(self.temporal.popleft())
                self.temporal[0].set_first_estimate()
        else:
            while len(self.temporal) > self.temporal_size:
                evicted = self.temporal.popleft()
                if isinstance(evicted, KeyFrame):
                    evicted.set_first_estimate()
                self._evict(evicted)

    def _evict(self, frame: Frame):
        if isinstance(frame, KeyFrame):
            for landmark in frame.get_landmark_matches():
                if landmark is not None and not landmark.is_bad:
                    landmark.set_first_estimate()
            frame.set_erase(EraseHold.DOUBLE_WINDOW)
        else:
            frame.release()

        if self.temporal and self.temporal[0].prev_frame is frame:
            self.temporal[0].prev_frame = None

    def release_all(self):
        """ Drops the temporal window. Keyframes become erasable again, transient frames are freed. """
        for frame in self.temporal:
            if isinstance(frame, KeyFrame):
                frame.set_erase(EraseHold.DOUBLE_WINDOW)
            else:
                frame.release()
        self.temporal = deque()

    def clear(self):
        self.release_all()
        for keyframe in self.spatial:
            keyframe.set_erase(EraseHold.DOUBLE_WINDOW)
        self.spatial = []
        self.reference_keyframe = None
        self.reference_landmarks = []

    def _vote(self, current_frame: Frame) -> Dict[KeyFrame, int]:
        votes: Dict[KeyFrame, int] = {}
        for slot, landmark in enumerate(current_frame.landmarks):
            if landmark is None:
                continue
            if landmark.is_bad:
                current_frame.unbind_landmark(slot)
                continue
            for keyframe in landmark.get_observations():
                votes[keyframe] = votes.get(keyframe, 0) + 1
        return votes

    def update_reference(self, current_frame: Frame) -> List[Landmark]:
        """ Rebuild the spatial window and the reference landmarks for the current frame.

        Every keyframe observing a landmark of the current frame gets a vote per landmark. The most voted one
        becomes the reference keyframe, the top voted ones not already in the temporal window form the spatial
        window, topped up with covisible neighbours when there are not enough. Landmarks of both windows are
        collected once, repeated encounters only bump n_observations_in_double_window. Landmarks of keyframes
        that dropped out of the spatial window, and are not referenced anymore, get their first estimate fixed.
        """
        epoch = current_frame.id
        votes = self._vote(current_frame)
        ranked = sorted(votes.items(), key=lambda kv: (-kv[1], kv[0].keyframe_id))
        if ranked:
            self.reference_keyframe = ranked[0][0]

        old_spatial = self.spatial
        for keyframe in old_spatial:
            keyframe.set_erase(EraseHold.DOUBLE_WINDOW)
        self.spatial = []

        for keyframe in self.temporal_keyframes():
            keyframe.reference_epoch = epoch

        already_held = set()
        for keyframe, _ in ranked:
            if len(self.spatial) >= self.spatial_size:
                break
            if keyframe.reference_epoch == epoch or keyframe.is_bad:
                continue
            self._take(keyframe, epoch, already_held)

        if len(self.spatial) < self.spatial_size:
            for keyframe in list(self.spatial):
                for neighbour in keyframe.get_best_covisibility_keyframes(4):
                    if not neighbour.is_bad and neighbour.reference_epoch != epoch:
                        self._take(neighbour, epoch, already_held)
                        break
                if len(self.spatial) >= self.spatial_size:
                    break

        reference: List[Landmark] = []
        for keyframe in self.temporal_keyframes() + self.spatial:
            for landmark in keyframe.get_landmark_matches():
                if landmark is None:
                    continue
                if landmark.reference_epoch == epoch:
                    landmark.n_observations_in_double_window += 1
                    continue
                if not landmark.is_bad:
                    reference.append(landmark)
                    landmark.reference_epoch = epoch
                    landmark.n_observations_in_double_window = 1

        still_spatial = set(id(keyframe) for keyframe in self.spatial)
        for keyframe in old_spatial:
            if id(keyframe) in still_spatial:
                continue
            for landmark in keyframe.get_landmark_matches():
                if landmark is None or landmark.reference_epoch == epoch:
                    continue
                if not landmark.is_bad:
                    landmark.set_first_estimate()

        if len(self.temporal) == 1:
            # right after stereo initialization only one of the two keyframes sits in the temporal window,
            # the other one is still held for its hand-off to the temporal window
            for keyframe in self.spatial:
                if id(keyframe) not in already_held:
                    keyframe.set_erase(EraseHold.DOUBLE_WINDOW)
            self.spatial = []

        self.reference_landmarks = reference
        log.debug(f"Double window for frame {epoch}: {len(self.temporal)} temporal, {len(self.spatial)} spatial, "
                  f"{len(reference)} reference landmarks")
        return reference

    def _take(self, keyframe: KeyFrame, epoch: int, already_held: Set[int]):
        if keyframe.is_held(EraseHold.DOUBLE_WINDOW):
            already_held.add(id(keyframe))
        self.spatial.append(keyframe)
        keyframe.set_not_erase(EraseHold.DOUBLE_WINDOW)
        keyframe.reference_epoch = epoch
