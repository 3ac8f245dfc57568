import numpy as np

from utils.custom_types import Array

Vector3d = Array['3', np.float64]
Point2d = Array['2', np.float64]
TransformSE3 = Array['4,4', np.float64]
RotationSO3 = Array['3,3', np.float64]
CameraPoseSE3 = Array['4,4', np.float64]     # always camera-from-world (Tcw) unless the name says otherwise
SpeedBias = Array['9', np.float64]           # sensor velocity in world, accelerometer bias, gyro bias
ImuMeasurement = Array['7', np.float64]      # timestamp, acc xyz, gyro xyz
FundamentalMatrix = Array['3,3', np.float64]

WorldCoords3D = Array['N,3', np.float64]     # x y z in the world frame
CamCoords3d = Array['N,3', np.float64]       # x right, y down, z out of the camera, origin is optical center
CamCoords3dHomog = Array['N,3', np.float64]  # X/Z Y/Z 1
PxCoords2d = Array['N,2', np.float64]        # u (right) v (down), sub-pixel, same order as cv2.KeyPoint.pt

Octaves = Array['N', np.int32]
SlotIndices = Array['N', np.int64]
QuadMatches = Array['N,2', np.int64]         # slot in the previous frame, slot in the current frame, both stereo

"""
WorldCoords3D
    -[Tcw * point]->
        CamCoords3d
            -[/Z]->
                CamCoords3dHomog
                    -[* focal, + center (intrinsics)]->
                        PxCoords2d

Note: unlike ye olde simulator convention there is no axis flip anywhere, camera and world
share the same handedness and the first camera defines the world frame.
"""
