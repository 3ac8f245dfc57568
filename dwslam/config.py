""" Every tunable of the tracker in one place.

Configs are attrs classes, so they can be built in code, structured from plain dicts (cattrs) or read from
an OpenCV FileStorage settings yaml with the usual `Camera.fx`, `ORBextractor.nFeatures`, ... keys.
"""
import logging
import os
from typing import Any, Dict, Optional

import attr
import cv2
import numpy as np

from utils.enum_utils import StrEnum
from utils.serialization import from_native_types, unstructure
from dwslam.cam import CameraIntrinsics, StereoRig
from dwslam.motion_model import PosePrediction
from dwslam.poses import identity_pose, pose_from_Rt
from dwslam.triangulation import TriangulationGates

log = logging.getLogger(__name__)


class Sensor(StrEnum):
    MONO = 'mono'
    STEREO = 'stereo'


@attr.define
class CameraConfig:
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int
    k1: float = 0.
    k2: float = 0.
    p1: float = 0.
    p2: float = 0.
    fps: float = 30.
    rgb: bool = False

    def to_intrinsics(self) -> CameraIntrinsics:
        return CameraIntrinsics(
            fx=self.fx,
            fy=self.fy,
            cx=self.cx,
            cy=self.cy,
            screen_h=self.height,
            screen_w=self.width,
            dist_coeffs=np.array([self.k1, self.k2, self.p1, self.p2], dtype=np.float64),
        )


@attr.define
class StereoConfig:
    left_to_right: np.ndarray = attr.Factory(identity_pose)     # Tr<-l
    right: Optional[CameraConfig] = None                      # same as the left camera if missing


@attr.define
class ExtractorConfig:
    n_features: int = 1000
    scale_factor: float = 1.2
    n_levels: int = 8
    fast_threshold: int = 20

    def for_initialization(self) -> 'ExtractorConfig':
        """ Monocular initialization wants twice the features on the default pyramid """
        return ExtractorConfig(n_features=2 * self.n_features, scale_factor=1.2, n_levels=8,
                               fast_threshold=self.fast_threshold)


@attr.define
class ImuConfig:
    gravity_in_world: np.ndarray = attr.Factory(lambda: np.array([0., 9.81, 0.]))
    acc_noise: float = 0.
    gyro_noise: float = 0.
    acc_bias_noise: float = 0.
    gyro_bias_noise: float = 0.
    T_imu_from_cam: np.ndarray = attr.Factory(identity_pose)
    initial_velocity: np.ndarray = attr.Factory(lambda: np.zeros(3))

    def initial_speed_bias(self) -> np.ndarray:
        return np.concatenate([np.asarray(self.initial_velocity, dtype=np.float64), np.zeros(6)])


@attr.define
class TrackingConfig:
    camera: CameraConfig
    sensor: Sensor = Sensor.MONO
    pose_prediction: PosePrediction = PosePrediction.CONSTANT_VELOCITY
    stereo: Optional[StereoConfig] = None
    imu: Optional[ImuConfig] = None
    extractor: ExtractorConfig = attr.Factory(ExtractorConfig)
    triangulation: TriangulationGates = attr.Factory(TriangulationGates)

    temporal_window_size: int = 5
    spatial_window_size: int = 10

    # keyframe decision
    min_frames: int = 0
    max_frames: int = 2     # below 2 the second keyframe could be inserted twice
    tracked_feature_ratio: float = 0.6
    min_tracked_features: int = 200

    # initialization
    init_min_keypoints: int = 100
    init_min_matches: int = 100
    init_min_quad_matches: int = 20
    init_min_tracked: int = 60
    known_initial_baseline: Optional[float] = None     # scale of the monocular map when something measured it

    reset_max_keyframes: int = 5
    velocity_decay: float = 0.9
    vocabulary_path: Optional[str] = None

    def __attrs_post_init__(self):
        self.validate()

    def validate(self):
        if self.sensor == Sensor.STEREO and self.stereo is None:
            raise ValueError("Stereo sensor needs stereo calibration")
        if self.pose_prediction == PosePrediction.INERTIAL and self.imu is None:
            raise ValueError("Inertial pose prediction needs an imu config")
        if self.temporal_window_size < 0 or self.spatial_window_size < 0:
            raise ValueError(f"Window sizes must be non negative, "
                             f"got {self.temporal_window_size=} {self.spatial_window_size=}")
        if self.max_frames < self.min_frames:
            raise ValueError(f"{self.max_frames=} is smaller than {self.min_frames=}")
        if not 0. < self.tracked_feature_ratio <= 1.:
            raise ValueError(f"{self.tracked_feature_ratio=} must be in (0, 1]")

    def intrinsics(self) -> CameraIntrinsics:
        return self.camera.to_intrinsics()

    def stereo_rig(self) -> Optional[StereoRig]:
        if self.stereo is None:
            return None
        right = self.stereo.right if self.stereo.right is not None else self.camera
        return StereoRig(
            left=self.intrinsics(),
            right=right.to_intrinsics(),
            left_to_right=np.asarray(self.stereo.left_to_right, dtype=np.float64),
        )

    @classmethod
    def from_native_types(cls, data: Dict[str, Any]) -> 'TrackingConfig':
        return from_native_types(data, cls)

    def to_native_types(self) -> Dict[str, Any]:
        return unstructure(self)

    @classmethod
    def from_settings_file(cls, path: str) -> 'TrackingConfig':
        if not os.path.isfile(path):
            raise ValueError(f"Settings file {path} does not exist")
        fs = cv2.FileStorage(path, cv2.FILE_STORAGE_READ)
        if not fs.isOpened():
            raise ValueError(f"Can not open settings file {path}")
        try:
            return _config_from_file_storage(fs)
        finally:
            fs.release()


def _real(fs: cv2.FileStorage, key: str, default: Optional[float] = None) -> Optional[float]:
    node = fs.getNode(key)
    if node.empty() or node.isNone():
        return default
    return float(node.real())


def _int(fs: cv2.FileStorage, key: str, default: Optional[int] = None) -> Optional[int]:
    value = _real(fs, key)
    return default if value is None else int(value)


def _string(fs: cv2.FileStorage, key: str, default: Optional[str] = None) -> Optional[str]:
    node = fs.getNode(key)
    if node.empty() or not node.isString():
        return default
    return node.string()


def _mat(fs: cv2.FileStorage, key: str) -> Optional[np.ndarray]:
    node = fs.getNode(key)
    if node.empty() or node.isNone():
        return None
    mat = node.mat()
    return None if mat is None else np.asarray(mat, dtype=np.float64)


def _camera_from_file_storage(fs: cv2.FileStorage) -> CameraConfig:
    for key in ('Camera.fx', 'Camera.fy', 'Camera.cx', 'Camera.cy', 'Camera.width', 'Camera.height'):
        if _real(fs, key) is None:
            raise ValueError(f"Settings are missing {key}")

    fps = _real(fs, 'Camera.fps', 30.)
    return CameraConfig(
        fx=_real(fs, 'Camera.fx'),
        fy=_real(fs, 'Camera.fy'),
        cx=_real(fs, 'Camera.cx'),
        cy=_real(fs, 'Camera.cy'),
        width=_int(fs, 'Camera.width'),
        height=_int(fs, 'Camera.height'),
        k1=_real(fs, 'Camera.k1', 0.),
        k2=_real(fs, 'Camera.k2', 0.),
        p1=_real(fs, 'Camera.p1', 0.),
        p2=_real(fs, 'Camera.p2', 0.),
        fps=fps if fps > 0 else 30.,
        rgb=bool(_int(fs, 'Camera.RGB', 0)),
    )


def _stereo_from_file_storage(fs: cv2.FileStorage, camera: CameraConfig) -> Optional[StereoConfig]:
    left_to_right = _mat(fs, 'Stereo.se3Left2Right')
    if left_to_right is None:
        return None
    if left_to_right.shape == (3, 4):
        left_to_right = np.vstack([left_to_right, [0., 0., 0., 1.]])
    if left_to_right.shape != (4, 4):
        raise ValueError(f"Stereo.se3Left2Right must be 3x4 or 4x4, got {left_to_right.shape}")

    right = None
    right_K = _mat(fs, 'Stereo.matRightK')
    if right_K is not None:
        right_dist = _mat(fs, 'Stereo.matRightDistCoef')
        right_dist = np.zeros(4) if right_dist is None else right_dist.reshape(-1)
        right = attr.evolve(
            camera,
            fx=float(right_K[0, 0]), fy=float(right_K[1, 1]), cx=float(right_K[0, 2]), cy=float(right_K[1, 2]),
            k1=float(right_dist[0]), k2=float(right_dist[1]), p1=float(right_dist[2]), p2=float(right_dist[3]),
        )
    return StereoConfig(left_to_right=left_to_right, right=right)


def _imu_from_file_storage(fs: cv2.FileStorage) -> Optional[ImuConfig]:
    use_imu = _string(fs, 'use_imu_data', 'false')
    if use_imu.strip().lower() != 'true':
        return None

    def norm_or_zero(key: str) -> float:
        mat = _mat(fs, key)
        return 0. if mat is None else float(np.abs(mat).max())

    R_sensor_to_cam = _mat(fs, 'Rs2c')
    t_sensor_in_cam = _mat(fs, 'tsinc')
    T_imu_from_cam = identity_pose()
    if R_sensor_to_cam is not None and t_sensor_in_cam is not None:
        # settings give the sensor in the camera frame
        T_cam_from_imu = pose_from_Rt(R_sensor_to_cam, t_sensor_in_cam.reshape(3))
        T_imu_from_cam = np.linalg.inv(T_cam_from_imu)

    gravity = _mat(fs, 'gw')
    initial_velocity = _mat(fs, 'vs0inw')
    return ImuConfig(
        gravity_in_world=np.zeros(3) if gravity is None else gravity.reshape(3),
        acc_noise=norm_or_zero('na'),
        gyro_noise=norm_or_zero('nw'),
        acc_bias_noise=norm_or_zero('acc_bias_var'),
        gyro_bias_noise=norm_or_zero('gyro_bias_var'),
        T_imu_from_cam=T_imu_from_cam,
        initial_velocity=np.zeros(3) if initial_velocity is None else initial_velocity.reshape(3),
    )


def _config_from_file_storage(fs: cv2.FileStorage) -> TrackingConfig:
    camera = _camera_from_file_storage(fs)
    stereo = _stereo_from_file_storage(fs, camera)
    imu = _imu_from_file_storage(fs)

    default_sensor = Sensor.STEREO if stereo is not None else Sensor.MONO
    default_prediction = PosePrediction.INERTIAL if imu is not None else PosePrediction.CONSTANT_VELOCITY

    defaults = TrackingConfig(camera=camera, sensor=Sensor.MONO)
    return TrackingConfig(
        camera=camera,
        sensor=Sensor.parse(_string(fs, 'Tracking.sensor', default_sensor.value)),
        pose_prediction=PosePrediction.parse(_string(fs, 'Tracking.pose_prediction', default_prediction.value)),
        stereo=stereo,
        imu=imu,
        extractor=ExtractorConfig(
            n_features=_int(fs, 'ORBextractor.nFeatures', 1000),
            scale_factor=_real(fs, 'ORBextractor.scaleFactor', 1.2),
            n_levels=_int(fs, 'ORBextractor.nLevels', 8),
            fast_threshold=_int(fs, 'ORBextractor.fastTh', 20),
        ),
        temporal_window_size=_int(fs, 'Tracking.temporal_window_size', defaults.temporal_window_size),
        spatial_window_size=_int(fs, 'Tracking.spatial_window_size', defaults.spatial_window_size),
        tracked_feature_ratio=_real(fs, 'Tracking.tracked_feature_ratio', defaults.tracked_feature_ratio),
        min_tracked_features=_int(fs, 'Tracking.min_tracked_features', defaults.min_tracked_features),
        known_initial_baseline=_real(fs, 'Tracking.initial_baseline'),
        vocabulary_path=_string(fs, 'Tracking.vocabulary_path'),
    )
