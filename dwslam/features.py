from typing import List, Optional, Protocol, Tuple

import attr
import cv2
import numpy as np

from utils.custom_types import Array, BinaryFeatures, ImageArray
from dwslam.cam import CameraIntrinsics, undistort_keypoints
from dwslam.types import Octaves, PxCoords2d

# popcount of every possible byte, hamming distance between ORB descriptors is a sum over 32 of those
_POPCOUNT_TABLE = np.array([bin(i).count('1') for i in range(256)], dtype=np.uint8)

TH_HIGH = 100
TH_LOW = 50


def hamming_distance(a: BinaryFeatures, b: BinaryFeatures) -> Array['...', np.int32]:
    """ Broadcasting hamming distance, e.g. (N,1,32) vs (1,M,32) -> (N,M) """
    return _POPCOUNT_TABLE[np.bitwise_xor(a, b)].sum(axis=-1, dtype=np.int32)


def pairwise_hamming_distance(a: BinaryFeatures, b: BinaryFeatures) -> Array['N,M', np.int32]:
    if len(a) == 0 or len(b) == 0:
        return np.zeros((len(a), len(b)), dtype=np.int32)
    return hamming_distance(a[:, None, :], b[None, :, :])


@attr.define
class ScalePyramid:
    """ Per-octave scale bookkeeping of an ORB image pyramid. """
    scale_factor: float = 1.2
    n_levels: int = 8

    @property
    def log_scale_factor(self) -> float:
        return float(np.log(self.scale_factor))

    @property
    def scale_factors(self) -> Array['L', np.float64]:
        return self.scale_factor ** np.arange(self.n_levels, dtype=np.float64)

    @property
    def level_sigma2(self) -> Array['L', np.float64]:
        return self.scale_factors ** 2

    @property
    def inv_level_sigma2(self) -> Array['L', np.float64]:
        return 1.0 / self.level_sigma2

    def sigma2(self, octave: int) -> float:
        return float(self.scale_factor ** (2 * int(octave)))

    def scale(self, octave: int) -> float:
        return float(self.scale_factor ** int(octave))


@attr.define
class FeatureDetections:
    """ Undistorted keypoints of one (left) image plus the stereo partner u coordinate of each slot.
    Slot i of every array refers to the same feature. """
    keypoints: PxCoords2d
    octaves: Octaves
    descriptors: BinaryFeatures
    right_u: Optional[Array['N', np.float64]] = None   # nan where no stereo match

    def __len__(self) -> int:
        return len(self.keypoints)

    @classmethod
    def empty(cls) -> 'FeatureDetections':
        return cls(
            keypoints=np.zeros((0, 2), dtype=np.float64),
            octaves=np.zeros(0, dtype=np.int32),
            descriptors=np.zeros((0, 32), dtype=np.uint8),
        )

    @classmethod
    def from_cv2(
        cls,
        keypoints: List[cv2.KeyPoint],
        descriptors: Optional[np.ndarray],
        cam_intrinsics: Optional[CameraIntrinsics] = None,
    ) -> 'FeatureDetections':
        if descriptors is None or len(keypoints) == 0:
            return cls.empty()

        pts = np.array([kp.pt for kp in keypoints], dtype=np.float64)
        if cam_intrinsics is not None:
            pts = undistort_keypoints(pts, cam_intrinsics)

        return cls(
            keypoints=pts,
            octaves=np.array([kp.octave for kp in keypoints], dtype=np.int32),
            descriptors=np.asarray(descriptors, dtype=np.uint8),
        )

    def has_stereo(self) -> bool:
        return self.right_u is not None


class IFeatureExtractor(Protocol):
    pyramid: ScalePyramid

    def extract(self, img: ImageArray, right_img: Optional[ImageArray] = None) -> FeatureDetections:
        ...


def _to_gray(img: ImageArray, is_rgb: bool = False) -> ImageArray:
    if img.ndim == 2:
        return img
    return cv2.cvtColor(img, cv2.COLOR_RGB2GRAY if is_rgb else cv2.COLOR_BGR2GRAY)


def match_stereo_rows(
    left: FeatureDetections,
    right: FeatureDetections,
    max_row_offset: float = 2.0,
    min_disparity: float = 0.0,
    max_disparity: float = 200.0,
    max_hamming_distance: int = TH_LOW,
) -> Array['N', np.float64]:
    """ Rectified stereo: search the partner of each left feature along (almost) the same row.
    Returns right u per left slot, nan if not found. Poor man's version of SAD refined stereo matching. """
    right_u = np.full(len(left), np.nan, dtype=np.float64)
    if len(left) == 0 or len(right) == 0:
        return right_u

    dists = pairwise_hamming_distance(left.descriptors, right.descriptors)
    row_ok = np.abs(left.keypoints[:, None, 1] - right.keypoints[None, :, 1]) <= max_row_offset
    disparity = left.keypoints[:, None, 0] - right.keypoints[None, :, 0]
    disp_ok = (disparity >= min_disparity) & (disparity <= max_disparity)
    octave_ok = np.abs(left.octaves[:, None] - right.octaves[None, :]) <= 1

    masked = np.where(row_ok & disp_ok & octave_ok, dists, np.iinfo(np.int32).max)
    best = masked.argmin(axis=1)
    best_dist = masked[np.arange(len(left)), best]
    found = best_dist <= max_hamming_distance
    right_u[found] = right.keypoints[best[found], 0]
    return right_u


@attr.define
class OrbFeatureExtractor:
    orb_feature_detector: cv2.ORB
    pyramid: ScalePyramid
    cam_intrinsics: Optional[CameraIntrinsics] = None
    right_cam_intrinsics: Optional[CameraIntrinsics] = None
    is_rgb: bool = False

    @classmethod
    def build(
        cls,
        max_features: int = 1000,
        scale_factor: float = 1.2,
        n_levels: int = 8,
        fast_threshold: int = 20,
        cam_intrinsics: Optional[CameraIntrinsics] = None,
        right_cam_intrinsics: Optional[CameraIntrinsics] = None,
        is_rgb: bool = False,
    ):
        orb_feature_detector = cv2.ORB_create(
            nfeatures=max_features,
            scaleFactor=scale_factor,
            nlevels=n_levels,
            fastThreshold=fast_threshold,
        )
        return cls(
            orb_feature_detector=orb_feature_detector,
            pyramid=ScalePyramid(scale_factor=scale_factor, n_levels=n_levels),
            cam_intrinsics=cam_intrinsics,
            right_cam_intrinsics=right_cam_intrinsics,
            is_rgb=is_rgb,
        )

    def detect(self, img: ImageArray, cam_intrinsics: Optional[CameraIntrinsics] = None) -> FeatureDetections:
        keypoints, descriptors = self.orb_feature_detector.detectAndCompute(_to_gray(img, self.is_rgb), None)
        return FeatureDetections.from_cv2(keypoints, descriptors, cam_intrinsics)

    def extract(self, img: ImageArray, right_img: Optional[ImageArray] = None) -> FeatureDetections:
        left = self.detect(img, self.cam_intrinsics)
        if right_img is None:
            return left

        right = self.detect(right_img, self.right_cam_intrinsics or self.cam_intrinsics)
        left.right_u = match_stereo_rows(left, right)
        return left


def best_and_second_best(dists: Array['N', np.int32]) -> Tuple[int, int, int]:
    """ index of best, best distance, second best distance """
    if len(dists) == 0:
        return -1, np.iinfo(np.int32).max, np.iinfo(np.int32).max
    if len(dists) == 1:
        return 0, int(dists[0]), np.iinfo(np.int32).max
    order = np.argpartition(dists, 1)[:2]
    if dists[order[0]] > dists[order[1]]:
        order = order[::-1]
    return int(order[0]), int(dists[order[0]]), int(dists[order[1]])
