""" Where the images come from: a directory (or two, for a stereo rig) of image files, or a video file.
Errors here are fatal to the run, not to the tracker. """
import glob
import logging
import os
from typing import Iterable, List, Optional, Protocol, Tuple, runtime_checkable

import attr
import cv2
import numpy as np

from utils.custom_types import DirPath, FilePath, ImageArray
from utils.enum_utils import StrEnum
from dwslam.types import ImuMeasurement, TransformSE3

log = logging.getLogger(__name__)

_IMAGE_EXTENSIONS = ('png', 'jpg', 'jpeg', 'pgm', 'ppm', 'bmp')


class DatasetError(RuntimeError):
    ...


class DatasetKind(StrEnum):
    IMAGES = 'images'
    VIDEO = 'video'


@attr.define
class FrameInput:
    timestamp: float
    image: ImageArray = attr.ib(repr=False)
    right_image: Optional[ImageArray] = attr.ib(default=None, repr=False)
    imu_measurements: Optional[List[ImuMeasurement]] = attr.ib(default=None, repr=False)
    predicted_delta: Optional[TransformSE3] = attr.ib(default=None, repr=False)


@runtime_checkable
class DataProvider(Protocol):
    def stream(self) -> Iterable[FrameInput]:
        ...


def _prepare_image(
    image: Optional[ImageArray],
    source: str,
    expected_size: Optional[Tuple[int, int]],
    resize: bool,
    to_gray: bool,
) -> ImageArray:
    if image is None:
        raise DatasetError(f"Can not read image {source}")

    if expected_size is not None:
        width, height = expected_size
        if image.shape[1] != width or image.shape[0] != height:
            if not resize:
                raise DatasetError(f"Image {source} is {image.shape[1]}x{image.shape[0]}, "
                                   f"calibration expects {width}x{height}")
            image = cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)

    if to_gray and image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def _list_images(directory: DirPath) -> List[FilePath]:
    if not os.path.isdir(directory):
        raise DatasetError(f"Image directory {directory} does not exist")
    paths = sorted(
        path for ext in _IMAGE_EXTENSIONS for path in glob.glob(os.path.join(directory, f"*.{ext}"))
    )
    if not paths:
        raise DatasetError(f"No images in {directory}")
    return paths


def read_timestamps(path: FilePath) -> np.ndarray:
    """ One timestamp (seconds) per line, the first column wins, '#' lines are comments """
    if not os.path.isfile(path):
        raise DatasetError(f"Timestamps file {path} does not exist")
    timestamps = []
    with open(path, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            timestamps.append(float(line.replace(',', ' ').split()[0]))
    return np.array(timestamps, dtype=np.float64)


@attr.define
class ImageSequence(DataProvider):
    left_paths: List[FilePath]
    timestamps: np.ndarray = attr.ib(repr=False)
    right_paths: Optional[List[FilePath]] = None
    expected_size: Optional[Tuple[int, int]] = None    # width, height
    resize: bool = False
    to_gray: bool = True
    max_frames: Optional[int] = None

    @classmethod
    def from_directory(
        cls,
        left_dir: DirPath,
        right_dir: Optional[DirPath] = None,
        times_path: Optional[FilePath] = None,
        fps: float = 30.,
        **kwargs,
    ):
        left_paths = _list_images(left_dir)
        right_paths = _list_images(right_dir) if right_dir is not None else None
        if right_paths is not None and len(right_paths) != len(left_paths):
            raise DatasetError(f"{len(left_paths)} left and {len(right_paths)} right images")

        if times_path is not None:
            timestamps = read_timestamps(times_path)
            if len(timestamps) < len(left_paths):
                raise DatasetError(f"{len(timestamps)} timestamps for {len(left_paths)} images")
        else:
            timestamps = np.arange(len(left_paths), dtype=np.float64) / fps

        return cls(left_paths=left_paths, timestamps=timestamps, right_paths=right_paths, **kwargs)

    def __len__(self) -> int:
        n = len(self.left_paths)
        return n if self.max_frames is None else min(n, self.max_frames)

    def stream(self) -> Iterable[FrameInput]:
        for i in range(len(self)):
            left_path = self.left_paths[i]
            image = _prepare_image(cv2.imread(left_path, cv2.IMREAD_UNCHANGED), left_path,
                                   self.expected_size, self.resize, self.to_gray)
            right_image = None
            if self.right_paths is not None:
                right_path = self.right_paths[i]
                right_image = _prepare_image(cv2.imread(right_path, cv2.IMREAD_UNCHANGED), right_path,
                                             self.expected_size, self.resize, self.to_gray)
            yield FrameInput(timestamp=float(self.timestamps[i]), image=image, right_image=right_image)


@attr.define
class VideoSource(DataProvider):
    """ Monocular video, timestamps from the container or from the frame rate when it has none """
    path: FilePath
    fps: float = 30.
    expected_size: Optional[Tuple[int, int]] = None
    resize: bool = False
    to_gray: bool = True
    max_frames: Optional[int] = None

    def stream(self) -> Iterable[FrameInput]:
        if not os.path.isfile(self.path):
            raise DatasetError(f"Video {self.path} does not exist")
        capture = cv2.VideoCapture(self.path)
        if not capture.isOpened():
            raise DatasetError(f"Can not open video {self.path}")

        try:
            i = 0
            while self.max_frames is None or i < self.max_frames:
                ok, image = capture.read()
                if not ok:
                    break
                msec = capture.get(cv2.CAP_PROP_POS_MSEC)
                timestamp = msec / 1000. if msec > 0 else i / self.fps
                image = _prepare_image(image, f"{self.path}#{i}", self.expected_size, self.resize, self.to_gray)
                yield FrameInput(timestamp=timestamp, image=image)
                i += 1
        finally:
            capture.release()


def make_data_provider(
    kind: str,
    path: str,
    right_path: Optional[str] = None,
    times_path: Optional[str] = None,
    fps: float = 30.,
    expected_size: Optional[Tuple[int, int]] = None,
    resize: bool = False,
    max_frames: Optional[int] = None,
) -> DataProvider:
    match DatasetKind.parse(kind):
        case DatasetKind.IMAGES:
            return ImageSequence.from_directory(
                path, right_path, times_path, fps,
                expected_size=expected_size, resize=resize, max_frames=max_frames,
            )
        case DatasetKind.VIDEO:
            if right_path is not None:
                raise ValueError("Video sources are monocular")
            return VideoSource(path=path, fps=fps, expected_size=expected_size, resize=resize, max_frames=max_frames)
        case other:
            raise ValueError("Unhandled DatasetKind", other)
