import numpy as np
import pytest
import torch
from PIL import Image

from conftest import make_camera
from scene.cameras import Camera, InfiniteCameraIterator
from scene.dataset_readers import split_validation_camera
from utils.errors import ConfigurationError


def test_each_epoch_visits_every_camera_once():
    cameras = [make_camera(uid=i) for i in range(7)]
    iterator = InfiniteCameraIterator(cameras, seed=3)
    for epoch in range(1, 4):
        visited = [next(iterator).uid for _ in range(7)]
        assert sorted(visited) == list(range(7))
        assert iterator.epoch == epoch


def test_order_is_reproducible_from_seed():
    cameras = [make_camera(uid=i) for i in range(5)]
    a = InfiniteCameraIterator(cameras, seed=11)
    b = InfiniteCameraIterator(cameras, seed=11)
    order_a = [next(a).uid for _ in range(15)]
    order_b = [next(b).uid for _ in range(15)]
    assert order_a == order_b


def test_single_camera_repeats():
    iterator = InfiniteCameraIterator([make_camera(uid=4)])
    assert [next(iterator).uid for _ in range(3)] == [4, 4, 4]


def test_no_cameras_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        InfiniteCameraIterator([])


def test_image_pyramid_is_cached():
    image = torch.full((3, 12, 16), 0.5)
    camera = make_camera(image=image)
    assert camera.get_image(1) is camera.original_image

    half = camera.get_image(2)
    assert half.shape == (3, 6, 8)
    assert torch.allclose(half, torch.full_like(half, 128 / 255.0), atol=1e-6)
    assert camera.get_image(2) is half


def test_intrinsics_follow_downscale():
    camera = make_camera(width=16, height=12)
    assert camera.intrinsics(1) == (20.0, 20.0, 8.0, 6.0, 16, 12)
    assert camera.intrinsics(4) == (5.0, 5.0, 2.0, 1.5, 4, 3)


def test_view_matrix_looks_down_the_axis():
    camera = make_camera(distance=3.0)
    origin = torch.tensor([0.0, 0.0, 0.0, 1.0])
    in_camera = camera.world_view_transform @ origin
    assert torch.allclose(in_camera[:3], torch.tensor([0.0, 0.0, 3.0]))
    assert torch.allclose(camera.camera_center, torch.tensor([0.0, 0.0, 3.0]))


def test_load_image_downscales_and_scales_intrinsics(tmp_path):
    path = tmp_path / "frame.png"
    Image.fromarray(np.full((40, 60, 3), 200, dtype=np.uint8)).save(path)
    camera = Camera(uid=0, image_name="frame.png", width=60, height=40, fx=50.0, fy=50.0, cx=30.0, cy=20.0,
                    c2w=torch.eye(4), image_path=str(path), data_device="cpu")
    camera.load_image(2.0)

    assert camera.original_image.shape == (3, 20, 30)
    assert (camera.width, camera.height) == (30, 20)
    assert camera.fx == pytest.approx(25.0)
    assert camera.cx == pytest.approx(15.0)
    assert torch.allclose(camera.original_image, torch.full((3, 20, 30), 200 / 255.0), atol=1e-6)

    with pytest.raises(RuntimeError):
        camera.load_image(2.0)


def test_validation_camera_by_name():
    cameras = [make_camera(uid=i) for i in range(4)]
    train, val = split_validation_camera(cameras, val=True, val_image="frame_002.png")
    assert val.uid == 2
    assert [c.uid for c in train] == [0, 1, 3]


def test_random_validation_camera_is_reproducible():
    cameras = [make_camera(uid=i) for i in range(6)]
    _, first = split_validation_camera(cameras, val=True)
    train, second = split_validation_camera(cameras, val=True)
    assert first is second
    assert len(train) == 5 and second not in train


def test_unknown_validation_camera():
    cameras = [make_camera(uid=i) for i in range(3)]
    with pytest.raises(ConfigurationError, match="missing.png"):
        split_validation_camera(cameras, val=True, val_image="missing.png")


def test_no_validation_requested():
    cameras = [make_camera(uid=i) for i in range(3)]
    train, val = split_validation_camera(cameras)
    assert val is None and train == cameras
