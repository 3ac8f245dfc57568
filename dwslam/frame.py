""" Frames are what the tracker works on. A plain Frame is transient: it lives while it is the current frame,
the last frame or a member of the temporal window, then it is released. KeyFrames (keyframe.py) are owned by the Map.
"""
from typing import Iterator, List, Optional, Tuple, TYPE_CHECKING

import attr
import numpy as np

from utils.custom_types import ImageArray
from dwslam.cam import CameraIntrinsics, StereoRig, project_cam_coords
from dwslam.feature_grid import PointStatistics
from dwslam.features import FeatureDetections, ScalePyramid
from dwslam.landmark import Landmark
from dwslam.transforms import camera_center, world_to_cam
from dwslam.types import CameraPoseSE3, ImuMeasurement, RotationSO3, SpeedBias, Vector3d

if TYPE_CHECKING:
    from dwslam.retrieval import BowVector, Vocabulary


def _zero_speed_bias() -> SpeedBias:
    return np.zeros(9, dtype=np.float64)


@attr.define(eq=False)
class Frame:
    id: int
    timestamp: float
    detections: FeatureDetections = attr.ib(repr=False)
    cam: CameraIntrinsics = attr.ib(repr=False)
    pyramid: ScalePyramid = attr.ib(repr=False)
    stereo: Optional[StereoRig] = attr.ib(default=None, repr=False)

    pose: Optional[CameraPoseSE3] = attr.ib(default=None, repr=False)   # Tcw
    landmarks: List[Optional[Landmark]] = attr.ib(default=None, repr=False)
    outliers: np.ndarray = attr.ib(default=None, repr=False)

    # inertial state, see SpeedBias
    speed_bias: SpeedBias = attr.ib(factory=_zero_speed_bias, repr=False)
    gravity: Vector3d = attr.ib(factory=lambda: np.zeros(3, dtype=np.float64), repr=False)   # in this camera
    imu_measurements: List[ImuMeasurement] = attr.ib(factory=list, repr=False)

    prev_frame: Optional['Frame'] = attr.ib(default=None, repr=False)
    next_frame: Optional['Frame'] = attr.ib(default=None, repr=False)

    # fixed linearization point once the frame falls out of the temporal window
    first_estimate_pose: Optional[CameraPoseSE3] = attr.ib(default=None, repr=False)
    first_estimate_speed_bias: Optional[SpeedBias] = attr.ib(default=None, repr=False)

    bow: Optional['BowVector'] = attr.ib(default=None, repr=False)
    image: Optional[ImageArray] = attr.ib(default=None, repr=False)
    point_statistics: PointStatistics = attr.ib(factory=PointStatistics, repr=False)
    released: bool = attr.ib(default=False, repr=False)

    def __attrs_post_init__(self):
        n = len(self.detections)
        if self.landmarks is None:
            self.landmarks = [None] * n
        if self.outliers is None:
            self.outliers = np.zeros(n, dtype=bool)

    @property
    def is_keyframe(self) -> bool:
        return False

    @property
    def n_features(self) -> int:
        return len(self.detections)

    @property
    def keypoints(self):
        return self.detections.keypoints

    @property
    def octaves(self):
        return self.detections.octaves

    @property
    def descriptors(self):
        return self.detections.descriptors

    @property
    def right_u(self):
        return self.detections.right_u

    def set_pose(self, pose_cw: CameraPoseSE3):
        self.pose = np.array(pose_cw, dtype=np.float64, copy=True)

    def get_pose(self) -> CameraPoseSE3:
        return self.pose.copy()

    def get_rotation(self) -> RotationSO3:
        return self.pose[:3, :3].copy()

    def get_translation(self) -> Vector3d:
        return self.pose[:3, 3].copy()

    def get_camera_center(self) -> Vector3d:
        return camera_center(self.pose)

    def get_right_pose(self) -> Optional[CameraPoseSE3]:
        if self.stereo is None:
            return None
        return self.stereo.right_pose(self.pose)

    def set_prev_frame(self, prev_frame: Optional['Frame']):
        self.prev_frame = prev_frame
        if prev_frame is not None:
            prev_frame.next_frame = self

    def set_first_estimate(self):
        if self.first_estimate_pose is None:
            self.first_estimate_pose = self.get_pose()
            self.first_estimate_speed_bias = self.speed_bias.copy()

    def sigma2(self, slot: int) -> float:
        return self.pyramid.sigma2(self.octaves[slot])

    def get_bounds(self) -> Tuple[float, float, float, float]:
        return self.cam.get_bounds()

    def tracked_landmarks(self) -> Iterator[Tuple[int, Landmark]]:
        """ (slot, landmark) of inlier bindings to good landmarks """
        for slot, landmark in enumerate(self.landmarks):
            if landmark is not None and not landmark.is_bad and not self.outliers[slot]:
                yield slot, landmark

    def n_tracked_landmarks(self) -> int:
        return sum(1 for _ in self.tracked_landmarks())

    def bind_landmark(self, slot: int, landmark: Optional[Landmark]):
        self.landmarks[slot] = landmark
        self.outliers[slot] = False

    def unbind_landmark(self, slot: int):
        self.landmarks[slot] = None
        self.outliers[slot] = False

    def discard_outliers(self) -> int:
        """ Drop bindings the optimizer flagged, returns how many were dropped """
        n_dropped = 0
        for slot in np.flatnonzero(self.outliers):
            if self.landmarks[slot] is not None:
                n_dropped += 1
            self.unbind_landmark(slot)
        return n_dropped

    def update_point_statistics(self):
        slots = [slot for slot, _ in self.tracked_landmarks()]
        self.point_statistics = PointStatistics.from_keypoints(self.keypoints[slots], *self.get_bounds())

    def get_features_in_area(
        self,
        x: float,
        y: float,
        radius: float,
        min_level: int = -1,
        max_level: int = -1,
    ) -> np.ndarray:
        """ Slots of keypoints within the (square) window, optionally restricted to a range of octaves """
        if self.n_features == 0:
            return np.zeros(0, dtype=np.int64)

        kps = self.keypoints
        mask = (np.abs(kps[:, 0] - x) < radius) & (np.abs(kps[:, 1] - y) < radius)
        if min_level >= 0:
            mask &= self.octaves >= min_level
        if max_level >= 0:
            mask &= self.octaves <= max_level
        return np.flatnonzero(mask)

    def is_in_frustum(self, landmark: Landmark, view_cos_limit: float = 0.5, use_stereo: bool = False) -> bool:
        """ Visibility test that also fills the landmark's projection cache for the matcher """
        landmark.track_in_view = False

        position = landmark.get_world_pos()
        pc = world_to_cam(position, self.pose)[0]
        if pc[2] <= 0.:
            return False

        u, v = project_cam_coords(pc, self.cam)[0]
        if not self.cam.is_in_image(u, v):
            return False

        track_proj_xr = float('nan')
        if use_stereo and self.stereo is not None:
            pc_right = world_to_cam(position, self.get_right_pose())[0]
            if pc_right[2] <= 0.:
                return False
            u_right, v_right = project_cam_coords(pc_right, self.stereo.right)[0]
            if not self.stereo.right.is_in_image(u_right, v_right):
                return False
            track_proj_xr = float(u_right)

        ray = position - self.get_camera_center()
        distance = float(np.linalg.norm(ray))
        if distance < landmark.get_min_distance_invariance() or distance > landmark.get_max_distance_invariance():
            return False

        view_cos = float(ray @ landmark.normal) / distance
        if view_cos < view_cos_limit:
            return False

        landmark.track_in_view = True
        landmark.track_proj_x = float(u)
        landmark.track_proj_y = float(v)
        landmark.track_proj_xr = track_proj_xr
        landmark.track_scale_level = landmark.predict_scale(distance, self.pyramid)
        landmark.track_view_cos = view_cos
        return True

    def copy(self) -> 'Frame':
        """ What the temporal window keeps of a transient frame: same features, own bindings and state.
        Window links and the image are not carried over. """
        return Frame(
            id=self.id,
            timestamp=self.timestamp,
            detections=self.detections,
            cam=self.cam,
            pyramid=self.pyramid,
            stereo=self.stereo,
            pose=None if self.pose is None else self.pose.copy(),
            landmarks=list(self.landmarks),
            outliers=self.outliers.copy(),
            speed_bias=self.speed_bias.copy(),
            gravity=self.gravity.copy(),
            imu_measurements=list(self.imu_measurements),
            first_estimate_pose=self.first_estimate_pose,
            first_estimate_speed_bias=self.first_estimate_speed_bias,
            bow=self.bow,
            point_statistics=self.point_statistics,
        )

    def compute_bow(self, vocabulary: 'Vocabulary'):
        if self.bow is None:
            self.bow = vocabulary.transform(self.descriptors)

    def partial_release(self):
        """ Images are only needed until the frame is published """
        self.image = None

    def release(self):
        """ Drop everything that keeps other objects alive, the frame must not be used afterwards """
        self.landmarks = [None] * self.n_features
        self.outliers = np.zeros(self.n_features, dtype=bool)
        self.imu_measurements = []
        if self.prev_frame is not None and self.prev_frame.next_frame is self:
            self.prev_frame.next_frame = None
        if self.next_frame is not None and self.next_frame.prev_frame is self:
            self.next_frame.prev_frame = None
        self.prev_frame = None
        self.next_frame = None
        self.image = None
        self.released = True
