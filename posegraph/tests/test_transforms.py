import numpy as np

from posegraph.cam import CameraIntrinsics
from posegraph.poses import (
    get_SE3_pose, project_to_SO3, rotation_to_quaternion, quaternion_to_rotation, rotation_angle_between,
    rotation_exp, rotation_log
)
from posegraph.transforms import SE3_inverse, apply_SE3, relative_SE3
from posegraph.types import PxCoords2d


def _get_test_setup() -> tuple[CameraIntrinsics, PxCoords2d]:
    cam_intrinsics = CameraIntrinsics(fx=320.0, fy=320.0, cx=320.0, cy=240.0, screen_h=480, screen_w=640)
    # x goes right, y goes down
    xs_in_px = np.array([
        [178, 89],
        [0, 0],
        [0, 479],
        [639, 0],
        [639, 479],
        [320, 240],
    ], dtype=np.float64)
    return cam_intrinsics, xs_in_px


def test_back_project():
    cam_intrinsics, xs_in_px = _get_test_setup()
    points_in_cam = cam_intrinsics.back_project(xs_in_px, np.full(len(xs_in_px), 2.0))

    expected = np.array([
        [-0.8875, -0.94375, 2.],
        [-2., -1.5, 2.],
        [-2., 1.49375, 2.],
        [1.99375, -1.5, 2.],
        [1.99375, 1.49375, 2.],
        [0., 0., 2.],
    ], dtype=np.float64)

    assert np.allclose(points_in_cam, expected)


def test_project_back_project():
    """ project(back_project(px, d)) == px """
    cam_intrinsics, xs_in_px = _get_test_setup()
    depths = np.linspace(0.5, 5.0, len(xs_in_px))

    xs_in_px_again = cam_intrinsics.project(cam_intrinsics.back_project(xs_in_px, depths))

    assert np.allclose(xs_in_px, xs_in_px_again)
    assert cam_intrinsics.is_inside(xs_in_px).all()


def test_SE3_inverse_and_relative():
    pose_a = get_SE3_pose(x=1.0, y=-2.0, z=0.5, yaw=0.3, pitch=-0.1, roll=0.05)
    pose_b = get_SE3_pose(x=-0.5, y=0.2, z=1.5, yaw=-0.2, pitch=0.4)

    assert np.allclose(pose_a @ SE3_inverse(pose_a), np.eye(4))
    assert np.allclose(pose_a @ relative_SE3(pose_a, pose_b), pose_b)

    # a point of frame b reaches world either directly or through frame a
    points_in_b = np.array([[0.1, 0.2, 3.0], [-1.0, 0.5, 2.0]])
    via_a = apply_SE3(pose_a, apply_SE3(relative_SE3(pose_a, pose_b), points_in_b))
    assert np.allclose(via_a, apply_SE3(pose_b, points_in_b))


def test_quaternion_round_trip_and_projection():
    rotation = get_SE3_pose(yaw=0.7, pitch=-0.3, roll=1.1)[:3, :3]

    q = rotation_to_quaternion(rotation)
    assert np.isclose(np.linalg.norm(q), 1.0)
    assert np.allclose(quaternion_to_rotation(q), rotation)

    noisy = rotation + 1e-3 * np.array([[0.3, -0.2, 0.1], [0.5, 0.1, -0.4], [-0.2, 0.3, 0.2]])
    projected = project_to_SO3(noisy)
    assert np.allclose(projected.T @ projected, np.eye(3))
    assert np.isclose(np.linalg.det(projected), 1.0)
    assert rotation_angle_between(projected, rotation) < 1e-2


def test_rotation_log_exp():
    phi = np.array([0.1, -0.25, 0.4])
    rotation = rotation_exp(phi)

    assert np.allclose(rotation_log(rotation), phi)
    assert np.isclose(rotation_angle_between(np.eye(3), rotation), np.linalg.norm(phi))
