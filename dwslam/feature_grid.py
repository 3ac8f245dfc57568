""" Two coarse spatial structures over the image of a frame:
FeatureGrid bounds the density of new landmarks when triangulating into a keyframe,
PointStatistics tells the keyframe decision which parts of the image lost their tracked features.
"""
from typing import Iterable, Tuple

import attr
import numpy as np

from utils.custom_types import Array
from dwslam.types import PxCoords2d


@attr.define
class FeatureGrid:
    cell_size: int
    min_x: float
    max_x: float
    min_y: float
    max_y: float
    occupied: Array['H,W', bool] = attr.ib(repr=False)
    slots: Array['H,W', np.int64] = attr.ib(repr=False)   # slot of the landmark that took the cell, -1 if free

    @classmethod
    def from_bounds(cls, min_x: float, max_x: float, min_y: float, max_y: float, cell_size: int = 30):
        n_cols = max(1, int(np.ceil((max_x - min_x) / cell_size)))
        n_rows = max(1, int(np.ceil((max_y - min_y) / cell_size)))
        return cls(
            cell_size=cell_size,
            min_x=min_x,
            max_x=max_x,
            min_y=min_y,
            max_y=max_y,
            occupied=np.zeros((n_rows, n_cols), dtype=bool),
            slots=np.full((n_rows, n_cols), -1, dtype=np.int64),
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.occupied.shape

    def cell_of(self, u: float, v: float) -> Tuple[int, int]:
        """ (col, row), may be outside of the grid """
        return int(np.floor((u - self.min_x) / self.cell_size)), int(np.floor((v - self.min_y) / self.cell_size))

    def is_point_eligible(self, u: float, v: float) -> Tuple[bool, int, int]:
        col, row = self.cell_of(u, v)
        n_rows, n_cols = self.shape
        if not (0 <= col < n_cols and 0 <= row < n_rows):
            return False, col, row
        return not self.occupied[row, col], col, row

    def add_landmark(self, col: int, row: int, slot: int):
        self.occupied[row, col] = True
        self.slots[row, col] = slot

    def set_existing_features(self, keypoints: PxCoords2d, slots: Iterable[int]):
        """ Occupy the cells of features that are already bound to a landmark """
        for slot in slots:
            u, v = keypoints[slot]
            eligible, col, row = self.is_point_eligible(u, v)
            if eligible:
                self.add_landmark(col, row, slot)

    def n_occupied(self) -> int:
        return int(self.occupied.sum())


@attr.define
class PointStatistics:
    """ Tracked feature counts in a 3x3 split of the image """
    counts: Array['3,3', np.int64] = attr.Factory(lambda: np.zeros((3, 3), dtype=np.int64))

    @classmethod
    def from_keypoints(
        cls,
        keypoints: PxCoords2d,
        min_x: float,
        max_x: float,
        min_y: float,
        max_y: float,
    ) -> 'PointStatistics':
        counts = np.zeros((3, 3), dtype=np.int64)
        if len(keypoints) == 0:
            return cls(counts=counts)

        cell_w = (max_x - min_x) / 3.
        cell_h = (max_y - min_y) / 3.
        cols = np.clip(((keypoints[:, 0] - min_x) / cell_w).astype(np.int64), 0, 2)
        rows = np.clip(((keypoints[:, 1] - min_y) / cell_h).astype(np.int64), 0, 2)
        np.add.at(counts, (rows, cols), 1)
        return cls(counts=counts)

    def n_featureless_corners(self, max_features: int = 4) -> int:
        """ How many of the four corner cells hold no more than max_features tracked features """
        corners = self.counts[[0, 0, 2, 2], [0, 2, 0, 2]]
        return int((corners <= max_features).sum())
