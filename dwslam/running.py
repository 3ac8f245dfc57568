import logging
import sys
import time
from typing import List, Optional

import attr
import numpy as np
import pandas as pd
import tqdm

from utils.date_utils import seconds_as_clock_string
from utils.file_utils import ensure_path, run_output_paths
from utils.serialization import msgpack_dumps
from dwslam.backend import ILocalMapper
from dwslam.config import TrackingConfig
from dwslam.datasets import DataProvider, make_data_provider
from dwslam.map import Map
from dwslam.poses import camera_orientation_quaternion_xyzw
from dwslam.tracking import Tracker, TrackingState
from dwslam.transforms import camera_center

log = logging.getLogger(__name__)

_POSE_COLUMNS = ['timestamp', 'tx', 'ty', 'tz', 'qx', 'qy', 'qz', 'qw']
_SPEED_BIAS_COLUMNS = ['vx', 'vy', 'vz', 'bax', 'bay', 'baz', 'bgx', 'bgy', 'bgz']
_LANDMARK_COLUMNS = ['id', 'x', 'y', 'z', 'found_ratio']    # matched in local map tracking / predicted visible


def _pose_row(timestamp: float, pose_cw: np.ndarray) -> List[float]:
    return [timestamp, *camera_center(pose_cw), *camera_orientation_quaternion_xyzw(pose_cw)]


def _write_table(df: pd.DataFrame, path: str, header: str):
    with open(ensure_path(path), 'w') as f:
        f.write(f"# {header}\n")
        df.to_csv(f, sep=' ', header=False, index=False, float_format='%.9f')


@attr.define
class ResultRecorder:
    """ Pose of every frame the tracker was Working on: camera centre in world, Rwc as xyzw quaternion,
    and the inertial speed/bias estimate. """
    rows: List[List[float]] = attr.Factory(list)

    def record(self, tracker: Tracker):
        if tracker.state != TrackingState.WORKING or tracker.last_frame is None:
            return
        frame = tracker.last_frame
        self.rows.append(_pose_row(frame.timestamp, frame.get_pose()) + list(frame.speed_bias))

    def __len__(self) -> int:
        return len(self.rows)

    def tracked_span(self) -> float:
        if not self.rows:
            return 0.0
        return self.rows[-1][0] - self.rows[0][0]

    def to_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.rows, columns=_POSE_COLUMNS + _SPEED_BIAS_COLUMNS)

    def save(self, path: str):
        _write_table(self.to_df(), path, ' '.join(_POSE_COLUMNS + _SPEED_BIAS_COLUMNS))


def keyframe_trajectory_df(map: Map) -> pd.DataFrame:
    rows = [
        _pose_row(keyframe.timestamp, keyframe.get_pose()) + list(keyframe.speed_bias)
        for keyframe in map.get_all_keyframes()
        if not keyframe.is_bad
    ]
    df = pd.DataFrame(rows, columns=_POSE_COLUMNS + _SPEED_BIAS_COLUMNS)
    return df.sort_values('timestamp', kind='stable').reset_index(drop=True)


def landmarks_df(map: Map) -> pd.DataFrame:
    rows = [
        [landmark.id, *landmark.get_world_pos(), landmark.get_found_ratio()]
        for landmark in map.get_all_landmarks() if not landmark.is_bad
    ]
    return pd.DataFrame(rows, columns=_LANDMARK_COLUMNS).astype({'id': np.int64})


def save_keyframe_trajectory(map: Map, path: str):
    df = keyframe_trajectory_df(map)
    _write_table(df, path, ' '.join(_POSE_COLUMNS + _SPEED_BIAS_COLUMNS))
    log.info(f"Saved trajectory of {len(df)} keyframes to {path}")


def save_landmarks(map: Map, path: str):
    df = landmarks_df(map)
    _write_table(df, path, ' '.join(_LANDMARK_COLUMNS))
    log.info(f"Saved {len(df)} landmarks to {path}")


def dump_map_msgpack(map: Map, path: str):
    data = {
        'keyframes': keyframe_trajectory_df(map).to_numpy(),
        'landmark_ids': landmarks_df(map)['id'].to_numpy(),
        'landmark_positions': landmarks_df(map)[['x', 'y', 'z']].to_numpy(),
    }
    with open(ensure_path(path), 'wb') as f:
        f.write(msgpack_dumps(data))


def wait_for_mapper(mapper: ILocalMapper, poll_interval: float = 0.005):
    """ Outputs are only consistent once the local mapper is running freely again """
    while mapper.is_stopped() or mapper.stop_requested():
        time.sleep(poll_interval)


def run_slam_system(
    data_provider: DataProvider,
    tracker: Tracker,
    result_recorder: ResultRecorder,
    output_dir: Optional[str] = None,
) -> ResultRecorder:
    for frame_input in tqdm.tqdm(data_provider.stream()):
        tracker.process_frame(
            frame_input.image,
            frame_input.timestamp,
            right_image=frame_input.right_image,
            imu_measurements=frame_input.imu_measurements,
            predicted_delta=frame_input.predicted_delta,
        )
        result_recorder.record(tracker)

    wait_for_mapper(tracker.mapper)
    span = result_recorder.tracked_span()
    log.info(f"Tracked {len(result_recorder)} frames over {seconds_as_clock_string(span)} of sequence time, "
             f"{tracker.map.keyframes_in_map()} keyframes, {tracker.map.landmarks_in_map()} landmarks, "
             f"{tracker.n_resets} resets")
    tracker.timings.log_summary()

    if output_dir is not None:
        paths = run_output_paths(
            ['frame_trajectory.txt', 'keyframe_trajectory.txt', 'landmarks.txt', 'map.msgpack'], output_dir)
        result_recorder.save(paths['frame_trajectory.txt'])
        save_keyframe_trajectory(tracker.map, paths['keyframe_trajectory.txt'])
        save_landmarks(tracker.map, paths['landmarks.txt'])
        dump_map_msgpack(tracker.map, paths['map.msgpack'])
    return result_recorder


def run_from_settings(
    settings_path: str,
    source_kind: str,
    source_path: str,
    right_source_path: Optional[str] = None,
    output_dir: str = 'results',
) -> ResultRecorder:
    config = TrackingConfig.from_settings_file(settings_path)
    data_provider = make_data_provider(
        source_kind,
        source_path,
        right_path=right_source_path,
        fps=config.camera.fps,
        expected_size=(config.camera.width, config.camera.height),
    )
    return run_slam_system(
        data_provider=data_provider,
        tracker=Tracker.from_params(config),
        result_recorder=ResultRecorder(),
        output_dir=output_dir,
    )


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    # settings.yaml images|video path/to/left [path/to/right]
    run_from_settings(*sys.argv[1:5])
