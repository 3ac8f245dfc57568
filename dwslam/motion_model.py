""" Pose predictors. Each one hands the tracker a seed for the relative motion of the camera,
Tcp (current camera from previous camera), plus the predicted inertial state. """
import logging
from typing import List, Optional, Protocol, Tuple

import attr
import numpy as np
from scipy.spatial.transform import Rotation as R

from utils.enum_utils import StrEnum
from dwslam.poses import identity_pose, pose_from_Rt
from dwslam.transforms import SE3_inverse, relative_transform
from dwslam.types import CameraPoseSE3, ImuMeasurement, SpeedBias, TransformSE3, Vector3d

log = logging.getLogger(__name__)


class PosePrediction(StrEnum):
    NONE = 'none'
    CONSTANT_VELOCITY = 'constant_velocity'
    INERTIAL = 'inertial'
    EXTERNAL = 'external'


@attr.define
class Prediction:
    delta: Optional[TransformSE3]    # Tcp, None if there is nothing to predict from
    speed_bias: SpeedBias = attr.Factory(lambda: np.zeros(9, dtype=np.float64))
    imu_measurements: List[ImuMeasurement] = attr.Factory(list)

    def delta_or_identity(self) -> TransformSE3:
        return identity_pose() if self.delta is None else self.delta


class IPosePredictor(Protocol):
    def predict(self, timestamp: float, external_delta: Optional[TransformSE3] = None) -> Prediction:
        ...

    def update(self, last_pose_cw: CameraPoseSE3, last_speed_bias: SpeedBias, timestamp: float):
        """ Called with the last frame after every frame the tracker ended up Working on """
        ...

    def reset(self):
        ...


@attr.define
class NoPredictor:
    """ Identity seed, tracking relies on search alone """

    def predict(self, timestamp: float, external_delta: Optional[TransformSE3] = None) -> Prediction:
        return Prediction(delta=None)

    def update(self, last_pose_cw: CameraPoseSE3, last_speed_bias: SpeedBias, timestamp: float):
        pass

    def reset(self):
        pass


@attr.define
class ExternalPredictor:
    """ Whatever the caller (e.g. a visual odometry front) hands us is the prediction """

    def predict(self, timestamp: float, external_delta: Optional[TransformSE3] = None) -> Prediction:
        return Prediction(delta=None if external_delta is None else np.array(external_delta, dtype=np.float64))

    def update(self, last_pose_cw: CameraPoseSE3, last_speed_bias: SpeedBias, timestamp: float):
        pass

    def reset(self):
        pass


@attr.define
class ConstantVelocityPredictor:
    """ Extrapolates the last estimated relative motion, shrunk by `decay` every time we predict
    so a stale velocity fades out instead of throwing the seed away. """
    decay: float = 0.9
    last_pose_cw: Optional[CameraPoseSE3] = None
    velocity_rotvec: Vector3d = attr.Factory(lambda: np.zeros(3, dtype=np.float64))
    velocity_translation: Vector3d = attr.Factory(lambda: np.zeros(3, dtype=np.float64))

    def predict(self, timestamp: float, external_delta: Optional[TransformSE3] = None) -> Prediction:
        if self.last_pose_cw is None:
            return Prediction(delta=None)

        rotation = R.from_rotvec(self.velocity_rotvec).as_matrix()
        delta = pose_from_Rt(rotation, self.velocity_translation)

        self.velocity_rotvec = self.velocity_rotvec * self.decay
        self.velocity_translation = self.velocity_translation * self.decay
        return Prediction(delta=delta)

    def update(self, last_pose_cw: CameraPoseSE3, last_speed_bias: SpeedBias, timestamp: float):
        if self.last_pose_cw is not None:
            delta = relative_transform(last_pose_cw, self.last_pose_cw)
            self.velocity_rotvec = R.from_matrix(np.copy(delta[:3, :3])).as_rotvec()
            self.velocity_translation = delta[:3, 3].copy()
        self.last_pose_cw = np.array(last_pose_cw, dtype=np.float64, copy=True)

    def reset(self):
        self.last_pose_cw = None
        self.velocity_rotvec = np.zeros(3, dtype=np.float64)
        self.velocity_translation = np.zeros(3, dtype=np.float64)


@attr.define
class ImuIntegrator:
    """ Strapdown integration of (timestamp, acc xyz, gyro xyz) samples between camera frames.
    State is the sensor pose in world, T_w<-s, and the speed-bias vector. """
    gravity_in_world: Vector3d
    T_imu_from_cam: TransformSE3
    T_world_from_imu: TransformSE3 = attr.Factory(identity_pose)
    speed_bias: SpeedBias = attr.Factory(lambda: np.zeros(9, dtype=np.float64))
    timestamp: Optional[float] = None
    pending: List[ImuMeasurement] = attr.Factory(list)

    @property
    def initialized(self) -> bool:
        return self.timestamp is not None

    def add_measurements(self, measurements: List[ImuMeasurement]):
        self.pending.extend(np.asarray(m, dtype=np.float64) for m in measurements)

    def init_states(self, T_world_from_imu: TransformSE3, speed_bias: SpeedBias, timestamp: float):
        self.T_world_from_imu = np.array(T_world_from_imu, dtype=np.float64, copy=True)
        self.speed_bias = np.array(speed_bias, dtype=np.float64, copy=True)
        self.timestamp = timestamp
        self.pending = [m for m in self.pending if m[0] > timestamp]

    def reset_states(self, T_world_from_imu: TransformSE3, speed_bias: SpeedBias):
        self.T_world_from_imu = np.array(T_world_from_imu, dtype=np.float64, copy=True)
        self.speed_bias = np.array(speed_bias, dtype=np.float64, copy=True)

    def camera_pose(self, T_world_from_imu: TransformSE3) -> CameraPoseSE3:
        """ Tcw of the camera rigidly attached to the sensor """
        return SE3_inverse(self.T_imu_from_cam) @ SE3_inverse(T_world_from_imu)

    def propagate(self, timestamp: float) -> Tuple[TransformSE3, List[ImuMeasurement]]:
        """ Integrate up to timestamp. Returns predicted Tcp and the consumed samples. """
        used = [m for m in self.pending if m[0] <= timestamp]
        self.pending = [m for m in self.pending if m[0] > timestamp]

        rotation = self.T_world_from_imu[:3, :3].copy()
        position = self.T_world_from_imu[:3, 3].copy()
        velocity = self.speed_bias[:3].copy()
        acc_bias = self.speed_bias[3:6]
        gyro_bias = self.speed_bias[6:9]

        t = self.timestamp
        for measurement in used:
            dt = measurement[0] - t
            if dt <= 0.:
                continue
            acc = measurement[1:4] - acc_bias
            gyro = measurement[4:7] - gyro_bias
            acc_world = rotation @ acc + self.gravity_in_world
            position = position + velocity * dt + 0.5 * acc_world * dt * dt
            velocity = velocity + acc_world * dt
            rotation = rotation @ R.from_rotvec(gyro * dt).as_matrix()
            t = measurement[0]

        previous_camera_pose = self.camera_pose(self.T_world_from_imu)
        self.T_world_from_imu = pose_from_Rt(rotation, position)
        self.speed_bias = np.concatenate([velocity, acc_bias, gyro_bias])
        self.timestamp = timestamp

        delta = relative_transform(self.camera_pose(self.T_world_from_imu), previous_camera_pose)
        return delta, used


@attr.define
class InertialPredictor:
    integrator: ImuIntegrator
    initial_speed_bias: SpeedBias = attr.Factory(lambda: np.zeros(9, dtype=np.float64))

    def add_measurements(self, measurements: List[ImuMeasurement]):
        self.integrator.add_measurements(measurements)

    def predict(self, timestamp: float, external_delta: Optional[TransformSE3] = None) -> Prediction:
        if not self.integrator.initialized:
            # the first camera frame defines the world, the sensor sits where the extrinsics put it
            self.integrator.init_states(SE3_inverse(self.integrator.T_imu_from_cam), self.initial_speed_bias, timestamp)
            return Prediction(delta=None, speed_bias=self.initial_speed_bias.copy())

        delta, used = self.integrator.propagate(timestamp)
        return Prediction(delta=delta, speed_bias=self.integrator.speed_bias.copy(), imu_measurements=used)

    def update(self, last_pose_cw: CameraPoseSE3, last_speed_bias: SpeedBias, timestamp: float):
        T_world_from_imu = SE3_inverse(self.integrator.T_imu_from_cam @ last_pose_cw)
        self.integrator.reset_states(T_world_from_imu, last_speed_bias)

    def reset(self):
        self.integrator.timestamp = None
        self.integrator.pending = []


def gravity_in_camera(
    gravity_in_world: Vector3d,
    last_pose_cw: Optional[CameraPoseSE3],
    delta: Optional[TransformSE3],
) -> Vector3d:
    """ Gravity rotated into the new camera: R_cp @ R_pw @ g_w """
    gravity_in_world = np.asarray(gravity_in_world, dtype=np.float64)
    if last_pose_cw is None or np.linalg.norm(gravity_in_world) <= 1e-6:
        return gravity_in_world.copy()
    delta = identity_pose() if delta is None else delta
    return delta[:3, :3] @ last_pose_cw[:3, :3] @ gravity_in_world
