import numpy as np
from utils.custom_types import Array


Vector3d = Array['3', np.float64]
QuaternionXYZW = Array['4', np.float64]   # scalar last, the way the interchange files store it
RotationVector = Array['3', np.float64]   # axis * angle
TransformSE3 = Array['4,4', np.float64]
CameraPoseSE3 = TransformSE3              # camera in world, maps camera-local points into world
CameraRotationSO3 = Array['3,3', np.float64]

WorldCoords3D = Array['N,3', np.float64]
CamCoords3d = Array['N,3', np.float64]    # x goes right, y down, z out, origin is optical center
PxCoords2d = Array['N,2', np.float64]     # x goes right, y goes down, sub-pixel keypoint positions
Depths = Array['N', np.float64]           # metric depth along optical axis, > 0

RelativeTranslation = Vector3d

"""
PxCoords2d + Depths
    -[subtract cx, cy; divide by fx, fy; multiply by depth]->
        CamCoords3d
            -[CameraPoseSE3 @ point]->
                WorldCoords3D
                    -[inv(CameraPoseSE3) @ point]->
                        CamCoords3d
                            -[/Z, * fx, fy, + cx, cy]->
                                PxCoords2d
"""
