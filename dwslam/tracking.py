""" Tracking means that we estimate the pose of every incoming frame against the map.

It is a state machine: frames first initialize a map (two view geometry for a single camera, one stereo pair
against the next for a stereo rig), then every frame is tracked from the previous one and refined against
the double window of recent frames and covisible keyframes. Some frames are promoted to keyframes, which
grow the map with new landmarks. When tracking fails we relocalize, or start over if the map is still young.
"""
import logging
from pathlib import Path
from typing import Callable, List, Optional

import attr
import numpy as np

from utils.enum_utils import StrEnum
from utils.profiling import StageTimer
from dwslam.backend import ILocalMapper, ILoopCloser, InlineLocalMapper, NullLoopCloser
from dwslam.cam import CameraIntrinsics, StereoRig
from dwslam.config import Sensor, TrackingConfig
from dwslam.correspondence import CorrespondenceSource, IExternalOdometry, OdometryEstimate, StereoOdometry, \
    transfer_landmarks
from dwslam.feature_grid import FeatureGrid
from dwslam.features import IFeatureExtractor, OrbFeatureExtractor
from dwslam.frame import Frame
from dwslam.handshake import Correction, PauseHandshake, RelocalizationMailbox, RelocalizationRequest
from dwslam.initializer import TwoViewInitializer
from dwslam.keyframe import EraseHold, KeyFrame
from dwslam.landmark import Landmark
from dwslam.map import Map
from dwslam.matcher import OrbMatcher
from dwslam.motion_model import ConstantVelocityPredictor, ExternalPredictor, ImuIntegrator, InertialPredictor, \
    IPosePredictor, NoPredictor, PosePrediction, Prediction, gravity_in_camera
from dwslam.optimizer import CurrentFrameWindowedOptimizer, FrameOnlyPoseOptimizer, IWindowedOptimizer
from dwslam.poses import identity_pose
from dwslam.relocalization import Relocalizer
from dwslam.retrieval import KeyFrameDatabase, Vocabulary
from dwslam.transforms import Sim3
from dwslam.triangulation import TriangulationStats, triangulate_quad_matches, triangulate_with_keyframe
from dwslam.types import CameraPoseSE3, ImuMeasurement, QuadMatches, TransformSE3, Vector3d
from dwslam.windows import DualWindow
from utils.custom_types import ImageArray

log = logging.getLogger(__name__)


class TrackingState(StrEnum):
    NO_IMAGES = 'no_images'
    UNINITIALIZED = 'uninitialized'
    INITIALIZING = 'initializing'
    WORKING = 'working'
    LOST = 'lost'


def _default_initializer(frame: Frame) -> TwoViewInitializer:
    return TwoViewInitializer.from_reference_frame(frame, sigma=1.0, max_iterations=200)


def _as_sim3(correction: Correction) -> Sim3:
    if isinstance(correction, Sim3):
        return correction
    return Sim3.from_SE3(np.asarray(correction, dtype=np.float64))


def _build_predictor(config: TrackingConfig) -> IPosePredictor:
    match config.pose_prediction:
        case PosePrediction.NONE:
            return NoPredictor()
        case PosePrediction.CONSTANT_VELOCITY:
            return ConstantVelocityPredictor(decay=config.velocity_decay)
        case PosePrediction.EXTERNAL:
            return ExternalPredictor()
        case PosePrediction.INERTIAL:
            integrator = ImuIntegrator(
                gravity_in_world=np.asarray(config.imu.gravity_in_world, dtype=np.float64),
                T_imu_from_cam=np.asarray(config.imu.T_imu_from_cam, dtype=np.float64),
            )
            return InertialPredictor(integrator=integrator, initial_speed_bias=config.imu.initial_speed_bias())
        case _:
            raise ValueError("Unhandled PosePrediction", config.pose_prediction)


@attr.define
class Tracker:
    config: TrackingConfig
    map: Map
    cam: CameraIntrinsics = attr.ib(repr=False)
    stereo: Optional[StereoRig] = attr.ib(repr=False)
    extractor: IFeatureExtractor = attr.ib(repr=False)
    init_extractor: IFeatureExtractor = attr.ib(repr=False)
    predictor: IPosePredictor = attr.ib(repr=False)
    mapper: ILocalMapper = attr.ib(repr=False)
    loop_closer: ILoopCloser = attr.ib(repr=False)
    relocalizer: Relocalizer = attr.ib(repr=False)
    window: DualWindow = attr.ib(repr=False)
    correspondence_source: CorrespondenceSource = CorrespondenceSource.INTERNAL
    odometry: Optional[IExternalOdometry] = attr.ib(default=None, repr=False)
    vocabulary: Optional[Vocabulary] = attr.ib(default=None, repr=False)
    database: Optional[KeyFrameDatabase] = attr.ib(default=None, repr=False)

    initializer_factory: Callable[[Frame], TwoViewInitializer] = attr.ib(default=_default_initializer, repr=False)
    initialization_matcher: OrbMatcher = attr.ib(factory=lambda: OrbMatcher.build(nn_ratio=0.9), repr=False)
    tracking_matcher: OrbMatcher = attr.ib(factory=lambda: OrbMatcher.build(nn_ratio=0.9), repr=False)
    local_map_matcher: OrbMatcher = attr.ib(factory=lambda: OrbMatcher.build(nn_ratio=0.8), repr=False)
    triangulation_matcher: OrbMatcher = attr.ib(factory=lambda: OrbMatcher.build(nn_ratio=0.6), repr=False)
    pose_optimizer: FrameOnlyPoseOptimizer = attr.ib(factory=FrameOnlyPoseOptimizer, repr=False)
    windowed_optimizer: IWindowedOptimizer = attr.ib(factory=CurrentFrameWindowedOptimizer, repr=False)

    pause: PauseHandshake = attr.ib(factory=PauseHandshake, repr=False)
    relocalization_mailbox: RelocalizationMailbox = attr.ib(factory=RelocalizationMailbox, repr=False)

    state: TrackingState = TrackingState.NO_IMAGES
    current_frame: Optional[Frame] = attr.ib(default=None, repr=False)
    last_frame: Optional[Frame] = attr.ib(default=None, repr=False)
    initial_frame: Optional[Frame] = attr.ib(default=None, repr=False)
    last_keyframe: Optional[KeyFrame] = attr.ib(default=None, repr=False)
    last_keyframe_id: int = -1       # frame id of the frame the last keyframe was promoted from
    last_reloc_frame_id: int = 0

    initializer: Optional[TwoViewInitializer] = attr.ib(default=None, repr=False)
    initial_matches: Optional[np.ndarray] = attr.ib(default=None, repr=False)
    prev_matched: Optional[np.ndarray] = attr.ib(default=None, repr=False)

    n_inliers: int = 0
    n_resets: int = 0
    last_triangulation: Optional[TriangulationStats] = attr.ib(default=None, repr=False)
    timings: StageTimer = attr.ib(factory=StageTimer, repr=False)

    @classmethod
    def from_params(
        cls,
        config: TrackingConfig,
        vocabulary: Optional[Vocabulary] = None,
        odometry: Optional[IExternalOdometry] = None,
        mapper: Optional[ILocalMapper] = None,
        loop_closer: Optional[ILoopCloser] = None,
        extractor: Optional[IFeatureExtractor] = None,
        init_extractor: Optional[IFeatureExtractor] = None,
        map: Optional[Map] = None,
    ):
        if vocabulary is None and config.vocabulary_path is not None:
            vocabulary = Vocabulary.loads(Path(config.vocabulary_path).read_bytes())
            log.info(f"Loaded vocabulary of {vocabulary.n_words} words from {config.vocabulary_path}")
        database = KeyFrameDatabase(vocabulary) if vocabulary is not None else None

        map = Map() if map is None else map
        loop_closer = NullLoopCloser() if loop_closer is None else loop_closer
        if mapper is None:
            mapper = InlineLocalMapper(map=map, database=database, loop_closer=loop_closer)

        cam = config.intrinsics()
        stereo = config.stereo_rig() if config.sensor == Sensor.STEREO else None
        right_cam = stereo.right if stereo is not None else None

        if extractor is None:
            extractor = OrbFeatureExtractor.build(
                max_features=config.extractor.n_features,
                scale_factor=config.extractor.scale_factor,
                n_levels=config.extractor.n_levels,
                fast_threshold=config.extractor.fast_threshold,
                cam_intrinsics=cam,
                right_cam_intrinsics=right_cam,
                is_rgb=config.camera.rgb,
            )
        if init_extractor is None:
            init_config = config.extractor.for_initialization()
            init_extractor = OrbFeatureExtractor.build(
                max_features=init_config.n_features,
                scale_factor=init_config.scale_factor,
                n_levels=init_config.n_levels,
                fast_threshold=init_config.fast_threshold,
                cam_intrinsics=cam,
                right_cam_intrinsics=right_cam,
                is_rgb=config.camera.rgb,
            )

        match config.sensor:
            case Sensor.MONO:
                correspondence_source = CorrespondenceSource.INTERNAL
            case Sensor.STEREO:
                correspondence_source = CorrespondenceSource.EXTERNAL_ODOMETRY
                odometry = StereoOdometry() if odometry is None else odometry
            case _:
                raise ValueError("Unhandled Sensor", config.sensor)

        return cls(
            config=config,
            map=map,
            cam=cam,
            stereo=stereo,
            extractor=extractor,
            init_extractor=init_extractor,
            predictor=_build_predictor(config),
            mapper=mapper,
            loop_closer=loop_closer,
            relocalizer=Relocalizer(database=database),
            window=DualWindow(temporal_size=config.temporal_window_size, spatial_size=config.spatial_window_size),
            correspondence_source=correspondence_source,
            odometry=odometry,
            vocabulary=vocabulary,
            database=database,
        )

    # public surface

    def process_frame(
        self,
        image: ImageArray,
        timestamp: float,
        right_image: Optional[ImageArray] = None,
        imu_measurements: Optional[List[ImuMeasurement]] = None,
        predicted_delta: Optional[TransformSE3] = None,
    ) -> TrackingState:
        """ Track one image (pair). predicted_delta is Tcp, current camera from previous camera, and is only
        used with external pose prediction. Returns the state after the frame. """
        if imu_measurements is not None and isinstance(self.predictor, InertialPredictor):
            self.predictor.add_measurements(imu_measurements)

        with self.timings.stage('create_frame'):
            prediction = self.predictor.predict(timestamp, predicted_delta)
            frame = self._create_frame(image, timestamp, right_image, prediction)

        if self.state == TrackingState.NO_IMAGES:
            self.state = TrackingState.UNINITIALIZED

        match self.correspondence_source:
            case CorrespondenceSource.INTERNAL:
                self._process_frame_mono(frame, prediction)
            case CorrespondenceSource.EXTERNAL_ODOMETRY:
                self._process_frame_stereo(frame, prediction)
            case _:
                raise ValueError("Unhandled CorrespondenceSource", self.correspondence_source)

        if self.state == TrackingState.WORKING and self.last_frame is not None:
            self.predictor.update(self.last_frame.get_pose(), self.last_frame.speed_bias, self.last_frame.timestamp)
        return self.state

    def request_relocalization(self, correction: Correction):
        """ Called from loop closing after it corrected the map. correction maps new world to old world. """
        frame_id = self.current_frame.id if self.current_frame is not None else 0
        self.relocalization_mailbox.post(correction, frame_id)

    def _take_relocalization_request(self) -> Optional[RelocalizationRequest]:
        """ Once per frame, on the tracking thread. The frame a request was posted at counts as a relocalization. """
        request = self.relocalization_mailbox.take()
        if request is not None:
            self.last_reloc_frame_id = request.frame_id
        return request

    def current_pose(self) -> Optional[CameraPoseSE3]:
        if self.current_frame is None or self.current_frame.pose is None:
            return None
        return self.current_frame.get_pose()

    def is_in_temporal_window(self, frame: Frame) -> bool:
        return self.window.is_in_temporal_window(frame)

    # frame construction

    def _pick_extractor(self) -> IFeatureExtractor:
        if self.correspondence_source == CorrespondenceSource.INTERNAL and \
                self.state not in (TrackingState.WORKING, TrackingState.LOST):
            return self.init_extractor
        return self.extractor

    def _create_frame(
        self,
        image: ImageArray,
        timestamp: float,
        right_image: Optional[ImageArray],
        prediction: Prediction,
    ) -> Frame:
        extractor = self._pick_extractor()
        detections = extractor.extract(image, right_image)

        last_pose = self.last_frame.pose if self.last_frame is not None else None
        gravity = self._gravity_in_world()
        return Frame(
            id=self.map.ids.frames(),
            timestamp=timestamp,
            detections=detections,
            cam=self.cam,
            pyramid=extractor.pyramid,
            stereo=self.stereo,
            speed_bias=prediction.speed_bias.copy(),
            gravity=gravity_in_camera(gravity, last_pose, prediction.delta),
            imu_measurements=list(prediction.imu_measurements),
            image=image,
        )

    def _gravity_in_world(self) -> Vector3d:
        if self.config.imu is None:
            return np.zeros(3, dtype=np.float64)
        return np.asarray(self.config.imu.gravity_in_world, dtype=np.float64)

    # monocular pipeline

    def _process_frame_mono(self, frame: Frame, prediction: Prediction):
        match self.state:
            case TrackingState.UNINITIALIZED:
                self.first_initialization(frame)
            case TrackingState.INITIALIZING:
                self.initialize(frame)
            case TrackingState.WORKING | TrackingState.LOST:
                self._track_mono(frame, prediction)
            case _:
                raise ValueError("Unhandled TrackingState", self.state)

    def first_initialization(self, frame: Frame):
        """ The first frame with enough keypoints becomes the reference of initialization """
        self._supersede_last_frame(frame)
        if frame.n_features <= self.config.init_min_keypoints:
            self.current_frame = frame
            return

        frame.set_pose(identity_pose())
        self.current_frame = self.last_frame = self.initial_frame = frame
        self.prev_matched = frame.keypoints.copy()
        self.initial_matches = np.full(frame.n_features, -1, dtype=np.int64)
        if self.correspondence_source == CorrespondenceSource.INTERNAL:
            self.initializer = self.initializer_factory(frame)
        self.state = TrackingState.INITIALIZING
        log.debug(f"Frame {frame.id} is the initialization reference with {frame.n_features} keypoints")

    def _revert_initialization(self, frame: Frame, reason: str):
        if self.initial_matches is not None:
            self.initial_matches[:] = -1
        self.current_frame = frame
        self.state = TrackingState.UNINITIALIZED
        log.info(f"Initialization failed at frame {frame.id}: {reason}")

    def initialize(self, frame: Frame):
        """ Two view initialization of a single camera against the reference frame """
        if frame.n_features <= self.config.init_min_keypoints:
            self._revert_initialization(frame, f"only {frame.n_features} keypoints")
            return

        n_matches, self.initial_matches = self.initialization_matcher.search_for_initialization(
            self.initial_frame, frame, self.prev_matched, 100.)
        if n_matches < self.config.init_min_matches:
            self._revert_initialization(frame, f"only {n_matches} matches")
            return

        result = self.initializer.initialize(frame, self.initial_matches)
        if result is None:
            # geometry was not conclusive, keep the reference and try with the next frame
            self.current_frame = frame
            return

        self.initial_matches[~result.triangulated] = -1
        self.create_initial_map(frame, result.pose_cw, result.points_3d)

    def create_initial_map(self, frame: Frame, pose_cw: CameraPoseSE3, points_3d: np.ndarray):
        frame.set_pose(pose_cw)
        self.current_frame = frame

        initial_keyframe = KeyFrame.from_frame(self.initial_frame, self.map, self.database)
        current_keyframe = KeyFrame.from_frame(frame, self.map, self.database)
        for keyframe in (initial_keyframe, current_keyframe):
            self._compute_bow(keyframe)
            self.map.add_keyframe(keyframe)

        grid = FeatureGrid.from_bounds(*current_keyframe.get_bounds(), cell_size=self.config.triangulation.cell_size)
        for i in np.flatnonzero(self.initial_matches >= 0):
            j = int(self.initial_matches[i])
            u, v = current_keyframe.keypoints[j]
            eligible, col, row = grid.is_point_eligible(u, v)
            if not eligible:
                continue

            landmark = self.map.create_landmark(points_3d[i], current_keyframe, j)
            initial_keyframe.add_landmark(landmark, int(i))
            landmark.add_observation(initial_keyframe, int(i))
            landmark.compute_distinctive_descriptor()
            landmark.update_normal_and_depth()
            frame.bind_landmark(j, landmark)
            grid.add_landmark(col, row, j)
        current_keyframe.feature_grid = grid

        initial_keyframe.update_connections()
        current_keyframe.update_connections()

        median_depth = initial_keyframe.compute_scene_median_depth(2)
        n_tracked = current_keyframe.tracked_landmarks_count()
        if median_depth < 0 or n_tracked < self.config.init_min_tracked:
            log.info(f"Wrong initialization, {median_depth=:.3f} {n_tracked=}, resetting")
            self.reset()
            return

        if self.config.known_initial_baseline is not None:
            inverse_median_depth = self.config.known_initial_baseline / np.linalg.norm(current_keyframe.get_translation())
        else:
            inverse_median_depth = 1. / median_depth

        pose = current_keyframe.get_pose()
        pose[:3, 3] *= inverse_median_depth
        current_keyframe.set_pose(pose)
        frame.set_pose(pose)
        for landmark in initial_keyframe.get_landmark_matches():
            if landmark is not None:
                landmark.set_world_pos(landmark.get_world_pos() * inverse_median_depth)
        for landmark in initial_keyframe.get_landmark_matches():
            if landmark is not None:
                landmark.update_normal_and_depth()

        self.mapper.insert_keyframe(initial_keyframe)
        self.mapper.insert_keyframe(current_keyframe)

        self._start_working(initial_keyframe, current_keyframe, temporal=[initial_keyframe, current_keyframe])
        log.info(f"New map created with {self.map.landmarks_in_map()} landmarks, frames "
                 f"{initial_keyframe.id} and {current_keyframe.id}")

    def _start_working(self, previous_keyframe: KeyFrame, current_keyframe: KeyFrame, temporal: List[Frame]):
        self._supersede_last_frame(current_keyframe)
        self.last_frame = self.current_frame = current_keyframe
        self.initial_frame = None
        self.last_keyframe_id = current_keyframe.id
        self.last_keyframe = current_keyframe
        self.last_reloc_frame_id = current_keyframe.id

        for keyframe in (previous_keyframe, current_keyframe):
            keyframe.set_not_erase(EraseHold.DOUBLE_WINDOW)
        self.window.reset_to(temporal)
        self.window.reference_keyframe = current_keyframe
        self.window.reference_landmarks = self.map.get_all_landmarks()
        self.map.set_reference_landmarks(self.window.reference_landmarks)
        self.state = TrackingState.WORKING

    def _use_motion_model(self, frame: Frame, prediction: Prediction) -> bool:
        if self.config.pose_prediction == PosePrediction.NONE or prediction.delta is None:
            return False
        if self.map.keyframes_in_map() < 4:
            return False
        return frame.id >= self.last_reloc_frame_id + 2

    def _track_mono(self, frame: Frame, prediction: Prediction):
        self.current_frame = frame
        request = self._take_relocalization_request()

        if self.state == TrackingState.WORKING and request is None:
            if self._use_motion_model(frame, prediction):
                ok = self.track_with_motion_model(frame, prediction.delta)
                if not ok:
                    ok = self.track_previous_frame(frame)
            else:
                ok = self.track_previous_frame(frame)
        else:
            ok = self.relocalize(frame, forced=request is not None)
            if request is not None:
                self._apply_correction(_as_sim3(request.correction), frame, prediction.delta, ok)

        if ok:
            with self.timings.stage('local_optimize'):
                ok = self.track_local_map(frame)

        if ok:
            frame.update_point_statistics()
            if self.need_new_keyframe(frame):
                self._insert_keyframe_mono(frame)
                self.window.push(self.last_keyframe)
            else:
                self.window.push(frame.copy())
            self.state = TrackingState.WORKING
        else:
            self.state = TrackingState.LOST
            log.debug(f"Frame {frame.id} lost")
            if self.map.keyframes_in_map() <= self.config.reset_max_keyframes:
                log.info(f"Track lost soon after initialization with {self.map.keyframes_in_map()} keyframes, "
                         f"resetting")
                self.reset()
                return

        if frame.id == self.last_keyframe_id:
            self._supersede_last_frame(self.last_keyframe)
            self.current_frame = self.last_frame = self.last_keyframe
        else:
            self._supersede_last_frame(frame)
            self.last_frame = frame

    def track_previous_frame(self, frame: Frame) -> bool:
        """ Frame to frame tracking without a motion prior: windowed descriptor search around the old
        pixel positions, coarse octaves first once the map is big enough, then projection search. """
        with self.timings.stage('track_previous_frame'):
            last = self.last_frame
            matcher = self.tracking_matcher

            min_octave = 0
            if self.map.keyframes_in_map() > 5:
                min_octave = (frame.pyramid.n_levels - 1) // 2 + 1

            n_matches, matches = matcher.window_search(last, frame, 200., min_octave)
            if n_matches < 10:
                n_matches, matches = matcher.window_search(last, frame, 100., 0)
                if n_matches < 10:
                    n_matches, matches = 0, [None] * frame.n_features

            frame.set_pose(last.get_pose())
            for slot, landmark in enumerate(matches):
                frame.bind_landmark(slot, landmark)

            if n_matches >= 10:
                self.pose_optimizer.optimize(frame)
                n_matches -= frame.discard_outliers()
                n_matches += matcher.search_by_projection_from_frame(last, frame, 15., frame.landmarks)
            else:
                n_matches = matcher.search_by_projection_from_frame(last, frame, 50., frame.landmarks)

            if n_matches < 10:
                return False

            n_good = self.pose_optimizer.optimize(frame)
            frame.discard_outliers()
            return n_good >= 10

    def track_with_motion_model(self, frame: Frame, velocity: TransformSE3) -> bool:
        with self.timings.stage('track_with_motion_model'):
            last = self.last_frame
            frame.set_pose(velocity @ last.get_pose())
            for slot in range(frame.n_features):
                frame.unbind_landmark(slot)

            n_matches = self.tracking_matcher.search_by_projection_from_frame(last, frame, 15., frame.landmarks)
            if n_matches < 20:
                return False

            n_good = self.pose_optimizer.optimize(frame)
            frame.discard_outliers()
            return n_good >= 10

    def _insert_keyframe_mono(self, frame: Frame):
        if self.last_frame is not None:
            self.last_frame.partial_release()

        keyframe = KeyFrame.from_frame(frame, self.map, self.database)
        keyframe.set_not_erase(EraseHold.DOUBLE_WINDOW)
        self._compute_bow(keyframe)
        self.map.add_keyframe(keyframe)

        penultimate_keyframe = self.last_keyframe
        self.last_keyframe_id = frame.id
        self.last_keyframe = keyframe
        keyframe.register_observations()

        if penultimate_keyframe is not None and not penultimate_keyframe.is_bad:
            with self.timings.stage('triangulate_new_landmarks'):
                self.last_triangulation = triangulate_with_keyframe(
                    self.map, keyframe, penultimate_keyframe, self.triangulation_matcher, self.config.triangulation)
        self.mapper.insert_keyframe(keyframe)
        log.debug(f"Frame {frame.id} promoted to keyframe {keyframe.keyframe_id}")

    # stereo pipeline

    def _process_frame_stereo(self, frame: Frame, prediction: Prediction):
        with self.timings.stage('track_previous_frame'):
            estimate = self.odometry.estimate(self.last_frame, frame)
        if not estimate.valid:
            if self.current_frame is not None and self.state in (TrackingState.WORKING, TrackingState.LOST):
                self.state = TrackingState.LOST
            log.debug(f"Stereo odometry failed at frame {frame.id} with {estimate.n_quad_matches} quad matches")

        match self.state:
            case TrackingState.UNINITIALIZED:
                self.first_initialization(frame)
            case TrackingState.INITIALIZING:
                if not estimate.valid or estimate.n_quad_matches <= self.config.init_min_quad_matches:
                    self._revert_initialization(frame, f"only {estimate.n_quad_matches} quad matches")
                    return
                self.create_initial_map_stereo(frame, estimate.delta @ self.last_frame.get_pose(),
                                               estimate.quad_matches)
            case TrackingState.WORKING | TrackingState.LOST:
                self._track_stereo(frame, estimate, prediction)
            case _:
                raise ValueError("Unhandled TrackingState", self.state)

    def create_initial_map_stereo(self, frame: Frame, pose_cw: CameraPoseSE3, quad_matches: QuadMatches):
        frame.set_pose(pose_cw)
        self.current_frame = frame

        previous_keyframe = KeyFrame.from_frame(self.last_frame, self.map, self.database)
        current_keyframe = KeyFrame.from_frame(frame, self.map, self.database)
        for keyframe in (previous_keyframe, current_keyframe):
            self._compute_bow(keyframe)
            self.map.add_keyframe(keyframe)

        with self.timings.stage('triangulate_new_landmarks'):
            self.last_triangulation = triangulate_quad_matches(
                self.map, current_keyframe, previous_keyframe, quad_matches, self.config.triangulation,
                anchor_is_previous=False)

        median_depth = current_keyframe.compute_scene_median_depth(2)
        n_tracked = current_keyframe.tracked_landmarks_count()
        if median_depth < 0 or n_tracked < self.config.init_min_tracked:
            log.info(f"Wrong stereo initialization, {median_depth=:.3f} {n_tracked=}, resetting")
            self.reset()
            return

        previous_keyframe.update_connections()
        current_keyframe.update_connections()
        self.mapper.insert_keyframe(previous_keyframe)

        # the current keyframe joins the temporal window, and the back end, with the next frame
        self._start_working(previous_keyframe, current_keyframe, temporal=[previous_keyframe])
        log.info(f"New stereo map created with {self.map.landmarks_in_map()} landmarks, frames "
                 f"{previous_keyframe.id} and {current_keyframe.id}")

    def _track_stereo(self, frame: Frame, estimate: OdometryEstimate, prediction: Prediction):
        self.current_frame = frame
        request = self._take_relocalization_request()

        if self.state == TrackingState.WORKING and request is None:
            ok = transfer_landmarks(self.last_frame, frame, estimate.quad_matches) >= 10
            frame.set_pose(estimate.delta @ self.last_frame.get_pose())
        else:
            ok = self.relocalize(frame, forced=request is not None)
            if request is not None:
                self._apply_correction(_as_sim3(request.correction), frame, estimate.delta, ok)

        if ok:
            with self.timings.stage('local_optimize'):
                ok = self.track_local_map(frame)

        if ok:
            frame.update_point_statistics()
            if self.need_new_keyframe(frame) and not isinstance(self.last_frame, KeyFrame):
                self._insert_keyframe_stereo(frame, estimate.quad_matches)
                self.window.push(self.last_keyframe)
            elif isinstance(self.last_frame, KeyFrame):
                # second keyframe of the initialization
                self.mapper.insert_keyframe(self.last_frame)
                self.window.push(self.last_frame)
            else:
                self.window.push(self.last_frame.copy())
            self.state = TrackingState.WORKING
        else:
            self.state = TrackingState.LOST
            log.debug(f"Frame {frame.id} lost")
            if self.map.keyframes_in_map() <= self.config.reset_max_keyframes:
                log.info(f"Track lost soon after initialization with {self.map.keyframes_in_map()} keyframes, "
                         f"resetting")
                self.reset()
                return

        self._supersede_last_frame(frame)
        self.last_frame = frame

    def _insert_keyframe_stereo(self, frame: Frame, quad_matches: QuadMatches):
        """ The previous frame becomes the keyframe, new landmarks come from quad matches with the current one """
        last = self.last_frame
        last.partial_release()
        keyframe = KeyFrame.from_frame(last, self.map, self.database)
        keyframe.set_not_erase(EraseHold.DOUBLE_WINDOW)
        self._compute_bow(keyframe)
        self.map.add_keyframe(keyframe)
        self.last_keyframe_id = last.id
        self.last_keyframe = keyframe
        keyframe.register_observations()

        with self.timings.stage('triangulate_new_landmarks'):
            self.last_triangulation = triangulate_quad_matches(
                self.map, keyframe, frame, quad_matches, self.config.triangulation, anchor_is_previous=True)
        self.mapper.insert_keyframe(keyframe)
        log.debug(f"Frame {last.id} promoted to keyframe {keyframe.keyframe_id}")

    # shared stages

    def relocalize(self, frame: Frame, forced: bool = False) -> bool:
        with self.timings.stage('relocalize'):
            candidates = self.relocalizer.select_candidates(frame, forced, self.last_keyframe, self.window)
            ok = self.relocalizer.relocalize(frame, candidates)
        if ok:
            self.last_reloc_frame_id = frame.id
        log.debug(f"Relocalization of frame {frame.id} {'(forced) ' if forced else ''}"
                  f"{'succeeded' if ok else 'failed'} with {len(candidates)} candidates")
        return ok

    def _apply_correction(self, correction: Sim3, frame: Frame, delta: Optional[TransformSE3], relocalized: bool):
        """ Keyframes were corrected by loop closing, the transient frames we still hold are corrected here """
        last = self.last_frame
        if last is not None and not isinstance(last, KeyFrame):
            last.set_pose(correction.correct_pose(last.get_pose()))
        for other in self.window.temporal_frames():
            if not isinstance(other, KeyFrame):
                other.set_pose(correction.correct_pose(other.get_pose()))

        if self.config.imu is not None:
            rotation_inverse = correction.rotation.T
            frames = [frame] + self.window.temporal_frames() + ([last] if last is not None else [])
            for other in {id(f): f for f in frames}.values():
                other.speed_bias[:3] = rotation_inverse @ other.speed_bias[:3]

        if not relocalized and last is not None:
            delta = identity_pose() if delta is None else delta.copy()
            delta[:3, 3] /= correction.scale
            frame.set_pose(delta @ last.get_pose())

    def search_reference_landmarks_in_frustum(self, frame: Frame, reference_landmarks: List[Landmark]) -> int:
        """ Count what the frame already tracks and try to find the visible reference landmarks """
        n_observed = 0
        for slot, landmark in enumerate(frame.landmarks):
            if landmark is None:
                continue
            if landmark.is_bad:
                frame.unbind_landmark(slot)
                continue
            landmark.increase_visible()
            landmark.last_frame_seen = frame.id
            landmark.track_in_view = False
            n_observed += 1

        use_stereo = frame.stereo is not None and frame.right_u is not None
        n_to_match = 0
        for landmark in reference_landmarks:
            if landmark.last_frame_seen == frame.id or landmark.is_bad:
                continue
            if frame.is_in_frustum(landmark, 0.5, use_stereo):
                landmark.increase_visible()
                n_to_match += 1

        if n_to_match > 0:
            th = 5. if frame.id < self.last_reloc_frame_id + 2 else 1.
            n_observed += self.local_map_matcher.search_by_projection_local(frame, reference_landmarks, th)
        return n_observed

    def track_local_map(self, frame: Frame) -> bool:
        """ Double window stage: extend the correspondences with the reference landmarks, refine, count inliers """
        reference_landmarks = self.window.update_reference(frame)
        self.map.set_reference_landmarks(reference_landmarks)

        n_observed = self.search_reference_landmarks_in_frustum(frame, reference_landmarks)

        if frame.id == self.last_reloc_frame_id or self.mapper.is_stopped() or self.mapper.stop_requested():
            n_inliers = n_observed
        else:
            n_bad = self.windowed_optimizer.optimize(
                self.map,
                self.window.spatial,
                reference_landmarks,
                self.window.temporal_frames(),
                frame,
                self.last_frame,
                imu=self.config.imu,
            )
            n_inliers = n_observed - n_bad

        for slot, landmark in enumerate(frame.landmarks):
            if landmark is not None and not frame.outliers[slot]:
                landmark.increase_found()
        frame.discard_outliers()
        self.n_inliers = n_inliers

        if frame.id < self.last_reloc_frame_id + self.config.max_frames and n_inliers < 50:
            return False
        return n_inliers >= 12

    def need_new_keyframe(self, frame: Frame) -> bool:
        if self.mapper.is_stopped() or self.mapper.stop_requested():
            return False
        if frame.id < self.last_reloc_frame_id + self.config.max_frames:
            return False

        reference_keyframe = self.window.reference_keyframe
        n_reference = reference_keyframe.tracked_landmarks_count() if reference_keyframe is not None else 0
        mapper_idle = self.mapper.accept_keyframes()

        long_since_keyframe = frame.id >= self.last_keyframe_id + self.config.max_frames
        idle_since_keyframe = frame.id >= self.last_keyframe_id + self.config.min_frames and mapper_idle
        weak_tracking = n_reference * self.config.tracked_feature_ratio > self.n_inliers > 15 and \
            self.n_inliers < self.config.min_tracked_features
        featureless = frame.point_statistics.n_featureless_corners(4) > 3

        if (long_since_keyframe or idle_since_keyframe) and (weak_tracking or featureless):
            if mapper_idle:
                return True
            self.mapper.interrupt_ba()
        return False

    def _compute_bow(self, frame: Frame):
        if self.vocabulary is not None:
            frame.compute_bow(self.vocabulary)

    def _supersede_last_frame(self, new_last: Frame):
        """ The last frame is freed once something else takes its place, unless the map owns it """
        old = self.last_frame
        if old is None or old is new_last or isinstance(old, KeyFrame):
            return
        if old is self.initial_frame:
            return
        old.release()

    # teardown

    def reset(self):
        log.info("Resetting tracking")
        self.pause.request_pause()
        self.pause.wait_acknowledged()

        self.window.clear()
        for frame in (self.current_frame, self.last_frame, self.initial_frame):
            if frame is not None and not isinstance(frame, KeyFrame):
                frame.release()
        self.current_frame = self.last_frame = self.initial_frame = None
        self.last_keyframe = None
        self.last_keyframe_id = -1
        self.last_reloc_frame_id = 0
        self.initializer = None
        self.initial_matches = None
        self.prev_matched = None

        self.mapper.request_reset()
        self.loop_closer.request_reset()
        if self.database is not None:
            self.database.clear()
        self.map.clear()
        self.map.ids.reset()
        self.relocalization_mailbox.clear()
        self.predictor.reset()
        if self.odometry is not None:
            self.odometry.reset()

        self.n_resets += 1
        self.state = TrackingState.UNINITIALIZED
        self.pause.finish()
