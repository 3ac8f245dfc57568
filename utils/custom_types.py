from typing import TypeAlias, Union, Tuple

import numpy as np

DirPath = str
FilePath = str

Array: TypeAlias = np.ndarray

BinaryFeature = Array['32', np.uint8]
BinaryFeatures = Array['N,32', np.uint8]

# images
BGRImageArray = Array['H,W,3', np.uint8]
GrayImageArray = Array['H,W', np.uint8]

ImageArray = Union[BGRImageArray, GrayImageArray]

HeightPx = int
WidthPx = int

OpenCVPixel = Tuple[float, float]   # right, down; this is what cv2.KeyPoint.pt gives you
