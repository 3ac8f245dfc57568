import cv2
import numpy as np
import pytest

from dwslam.datasets import DataProvider, DatasetError, ImageSequence, make_data_provider, read_timestamps


def _write_images(directory, n: int = 3, width: int = 64, height: int = 48):
    directory.mkdir(exist_ok=True)
    rng = np.random.default_rng(0)
    for i in range(n):
        image = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
        cv2.imwrite(str(directory / f"{i:06d}.png"), image)
    return directory


def test_missing_directory(tmp_path):
    with pytest.raises(DatasetError):
        make_data_provider('images', str(tmp_path / 'nope'))


def test_empty_directory(tmp_path):
    with pytest.raises(DatasetError):
        make_data_provider('images', str(tmp_path))


def test_unknown_kind(tmp_path):
    with pytest.raises(ValueError):
        make_data_provider('lidar', str(tmp_path))


def test_video_is_monocular(tmp_path):
    with pytest.raises(ValueError):
        make_data_provider('video', str(tmp_path / 'a.mp4'), right_path=str(tmp_path / 'b.mp4'))


def test_missing_video(tmp_path):
    provider = make_data_provider('video', str(tmp_path / 'a.mp4'))
    with pytest.raises(DatasetError):
        list(provider.stream())


def test_image_sequence_timestamps_from_frame_rate(tmp_path):
    directory = _write_images(tmp_path / 'left')

    provider = make_data_provider('images', str(directory), fps=10.)
    inputs = list(provider.stream())

    assert isinstance(provider, DataProvider)
    assert np.allclose([i.timestamp for i in inputs], [0., 0.1, 0.2])
    assert all(i.image.shape == (48, 64) for i in inputs)
    assert all(i.right_image is None for i in inputs)


def test_max_frames(tmp_path):
    directory = _write_images(tmp_path / 'left')
    provider = make_data_provider('images', str(directory), max_frames=2)
    assert len(provider) == 2
    assert len(list(provider.stream())) == 2


def test_stereo_sequence(tmp_path):
    left = _write_images(tmp_path / 'left')
    right = _write_images(tmp_path / 'right')

    inputs = list(make_data_provider('images', str(left), right_path=str(right)).stream())

    assert all(i.right_image is not None and i.right_image.shape == (48, 64) for i in inputs)


def test_stereo_sequence_needs_pairs(tmp_path):
    left = _write_images(tmp_path / 'left', n=3)
    right = _write_images(tmp_path / 'right', n=2)
    with pytest.raises(DatasetError):
        make_data_provider('images', str(left), right_path=str(right))


def test_image_size_mismatch(tmp_path):
    directory = _write_images(tmp_path / 'left')

    provider = make_data_provider('images', str(directory), expected_size=(32, 24))
    with pytest.raises(DatasetError):
        list(provider.stream())

    provider = make_data_provider('images', str(directory), expected_size=(32, 24), resize=True)
    assert all(i.image.shape == (24, 32) for i in provider.stream())


def test_read_timestamps(tmp_path):
    path = tmp_path / 'times.txt'
    path.write_text("# timestamp [s]\n0.5,frame_0\n\n1.25 frame_1\n")

    assert np.allclose(read_timestamps(str(path)), [0.5, 1.25])

    with pytest.raises(DatasetError):
        read_timestamps(str(tmp_path / 'nope.txt'))


def test_timestamps_file_too_short(tmp_path):
    directory = _write_images(tmp_path / 'left', n=3)
    path = tmp_path / 'times.txt'
    path.write_text("0.0\n0.1\n")

    with pytest.raises(DatasetError):
        ImageSequence.from_directory(str(directory), times_path=str(path))

    path.write_text("0.0\n0.1\n0.3\n")
    provider = ImageSequence.from_directory(str(directory), times_path=str(path))
    assert np.allclose([i.timestamp for i in provider.stream()], [0., 0.1, 0.3])
