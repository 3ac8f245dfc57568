import numpy as np
import pytest

from dwslam.config import CameraConfig, ImuConfig, Sensor, StereoConfig, TrackingConfig
from dwslam.motion_model import PosePrediction
from dwslam.poses import get_SE3_pose

MONO_SETTINGS = """%YAML:1.0
Camera.fx: 458.0
Camera.fy: 457.0
Camera.cx: 367.0
Camera.cy: 248.0
Camera.width: 752
Camera.height: 480
Camera.fps: 20.0
ORBextractor.nFeatures: 800
ORBextractor.scaleFactor: 1.2
ORBextractor.nLevels: 8
ORBextractor.fastTh: 20
"""

STEREO_SETTINGS = MONO_SETTINGS + """Stereo.se3Left2Right: !!opencv-matrix
   rows: 4
   cols: 4
   dt: d
   data: [ 1.0, 0.0, 0.0, -0.5, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0 ]
"""


def _camera() -> CameraConfig:
    return CameraConfig(fx=500., fy=500., cx=320., cy=240., width=640, height=480)


def _write_settings(tmp_path, text: str) -> str:
    path = tmp_path / 'settings.yaml'
    path.write_text(text)
    return str(path)


def test_stereo_needs_calibration():
    with pytest.raises(ValueError):
        TrackingConfig(camera=_camera(), sensor=Sensor.STEREO)


def test_inertial_prediction_needs_imu():
    with pytest.raises(ValueError):
        TrackingConfig(camera=_camera(), pose_prediction=PosePrediction.INERTIAL)
    config = TrackingConfig(camera=_camera(), pose_prediction=PosePrediction.INERTIAL, imu=ImuConfig())
    assert np.allclose(config.imu.initial_speed_bias(), 0.)


def test_window_and_keyframe_bounds_are_validated():
    with pytest.raises(ValueError):
        TrackingConfig(camera=_camera(), temporal_window_size=-1)
    with pytest.raises(ValueError):
        TrackingConfig(camera=_camera(), min_frames=5, max_frames=2)
    with pytest.raises(ValueError):
        TrackingConfig(camera=_camera(), tracked_feature_ratio=0.)
    with pytest.raises(ValueError):
        TrackingConfig(camera=_camera(), tracked_feature_ratio=1.5)


def test_parse_tags():
    assert PosePrediction.parse('inertial') == PosePrediction.INERTIAL
    assert Sensor.parse('stereo') == Sensor.STEREO
    with pytest.raises(ValueError):
        Sensor.parse('bogus')


def test_native_types_round_trip():
    config = TrackingConfig(
        camera=_camera(),
        sensor=Sensor.STEREO,
        stereo=StereoConfig(left_to_right=get_SE3_pose(x=-0.12)),
        temporal_window_size=3,
    )

    native = config.to_native_types()
    assert native['sensor'] == 'stereo'
    restored = TrackingConfig.from_native_types(native)

    assert restored.sensor == Sensor.STEREO
    assert restored.camera == config.camera
    assert restored.temporal_window_size == 3
    assert restored.stereo.right is None
    assert np.allclose(restored.stereo.left_to_right, config.stereo.left_to_right)
    assert restored.stereo_rig().baseline == pytest.approx(0.12)


def test_mono_settings_file(tmp_path):
    config = TrackingConfig.from_settings_file(_write_settings(tmp_path, MONO_SETTINGS))

    assert config.sensor == Sensor.MONO
    assert config.pose_prediction == PosePrediction.CONSTANT_VELOCITY
    assert config.stereo is None
    assert config.imu is None
    assert config.camera.fx == 458.
    assert config.camera.width == 752
    assert config.camera.fps == 20.
    assert config.extractor.n_features == 800

    intrinsics = config.intrinsics()
    assert intrinsics.screen_w == 752
    assert intrinsics.screen_h == 480


def test_stereo_settings_file(tmp_path):
    config = TrackingConfig.from_settings_file(_write_settings(tmp_path, STEREO_SETTINGS))

    assert config.sensor == Sensor.STEREO
    rig = config.stereo_rig()
    assert rig.baseline == pytest.approx(0.5)
    assert rig.right.fx == 458.


def test_settings_file_missing_camera_key(tmp_path):
    text = MONO_SETTINGS.replace('Camera.fy: 457.0\n', '')
    with pytest.raises(ValueError):
        TrackingConfig.from_settings_file(_write_settings(tmp_path, text))


def test_settings_file_that_does_not_exist(tmp_path):
    with pytest.raises(ValueError):
        TrackingConfig.from_settings_file(str(tmp_path / 'nope.yaml'))
