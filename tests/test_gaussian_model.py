import numpy as np
import pytest
import torch
from plyfile import PlyData, PlyElement

from conftest import default_opt, make_gaussians
from scene.gaussian_model import GaussianModel, PARAMETER_NAMES
from utils.errors import InputDataError, NumericalDegradationError
from utils.graphics_utils import BasicPointCloud


def test_create_from_pcd_shapes_and_activations():
    gaussians = make_gaussians(num_points=10, sh_degree=3)
    assert gaussians.num_points == 10
    assert gaussians._features_dc.shape == (10, 1, 3)
    assert gaussians._features_rest.shape == (10, 15, 3)
    assert gaussians._scaling.shape == (10, 3)
    assert gaussians._rotation.shape == (10, 4)
    assert gaussians._opacity.shape == (10, 1)
    assert torch.allclose(gaussians.get_opacity, torch.full((10, 1), 0.1), atol=1e-6)
    assert torch.allclose(gaussians.get_rotation.norm(dim=1), torch.ones(10), atol=1e-5)
    assert torch.all(gaussians._features_rest == 0)
    assert gaussians.get_features.shape == (10, 16, 3)


def test_initial_scale_is_nearest_neighbour_spacing():
    points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0], [3.0, 0.0, 0.0]], dtype=np.float32)
    gaussians = GaussianModel(0, device="cpu")
    gaussians.create_from_pcd(BasicPointCloud(points=points, colors=np.full_like(points, 0.5)))
    # Point 0 has neighbours at 1, 2, 3
    assert gaussians.get_scaling[0, 0].item() == pytest.approx(2.0, rel=1e-5)
    assert gaussians.get_scaling[1, 0].item() == pytest.approx(4.0 / 3.0, rel=1e-5)


def test_single_point_cloud_is_accepted():
    gaussians = GaussianModel(0, device="cpu")
    gaussians.create_from_pcd(BasicPointCloud(points=np.zeros((1, 3), np.float32), colors=np.zeros((1, 3), np.float32)))
    assert gaussians.num_points == 1
    assert torch.isfinite(gaussians._scaling).all()


def test_empty_point_cloud_is_rejected():
    gaussians = GaussianModel(0, device="cpu")
    with pytest.raises(InputDataError):
        gaussians.create_from_pcd(BasicPointCloud(points=np.zeros((0, 3), np.float32), colors=np.zeros((0, 3), np.float32)))


def test_grow_appends_and_preserves_existing_rows():
    gaussians = make_gaussians(num_points=4)
    before = {name: t.detach().clone() for name, t in gaussians.parameters_dict().items()}
    new_xyz = torch.full((2, 3), 7.0)
    mapping = gaussians.grow(torch.tensor([1, 3]), {"xyz": new_xyz})

    assert gaussians.num_points == 6
    assert mapping.sources.tolist() == [0, 1, 2, 3, 1, 3]
    for name in PARAMETER_NAMES:
        assert torch.equal(gaussians.parameters_dict()[name][:4].detach(), before[name])
    assert torch.equal(gaussians._xyz[4:].detach(), new_xyz)
    # Arrays without explicit values copy the parent
    assert torch.equal(gaussians._opacity[4].detach(), before["opacity"][1])


def test_shrink_keeps_order():
    gaussians = make_gaussians(num_points=5)
    xyz = gaussians._xyz.detach().clone()
    gaussians.shrink(torch.tensor([False, True, False, True, True]))
    assert gaussians.num_points == 3
    assert torch.equal(gaussians._xyz.detach(), xyz[[1, 3, 4]])
    assert all(t.shape[0] == 3 for t in gaussians.parameters_dict().values())


def test_restructure_rejects_bad_values_shape():
    gaussians = make_gaussians(num_points=3)
    with pytest.raises(RuntimeError):
        gaussians.grow(torch.tensor([0, 1]), {"scaling": torch.zeros(3, 3)})
    assert gaussians.num_points == 3


def test_reset_opacity_sets_value_and_clears_moments():
    gaussians = make_gaussians(num_points=6)
    gaussians.training_setup(default_opt())
    gaussians.optimizer.zero_grad()
    (gaussians.get_opacity.sum() + gaussians.get_xyz.sum()).backward()
    gaussians.optimizer.step()

    gaussians.reset_opacity(0.2)
    assert torch.allclose(gaussians.get_opacity, torch.full((6, 1), 0.2), atol=1e-6)
    exp_avg, exp_avg_sq = gaussians.optimizer.moment_buffers("opacity")
    assert torch.all(exp_avg == 0) and torch.all(exp_avg_sq == 0)
    assert gaussians.optimizer.param("opacity") is gaussians._opacity
    # Other arrays keep their moments
    assert gaussians.optimizer.moment_buffers("xyz")[0].abs().sum() > 0


def test_check_finite_names_bad_arrays():
    gaussians = make_gaussians(num_points=3)
    gaussians.check_finite()
    with torch.no_grad():
        gaussians._scaling[1, 0] = float("inf")
    with pytest.raises(NumericalDegradationError, match="scaling"):
        gaussians.check_finite(iteration=12)


def test_ply_round_trip(tmp_path):
    gaussians = make_gaussians(num_points=7, sh_degree=2)
    with torch.no_grad():
        gaussians._features_rest.normal_()
    path = str(tmp_path / "point_cloud" / "point_cloud.ply")
    gaussians.save_ply(path)

    names = [p.name for p in PlyData.read(path).elements[0].properties]
    assert names[:6] == ['x', 'y', 'z', 'nx', 'ny', 'nz']
    assert names[-8:] == ['opacity', 'scale_0', 'scale_1', 'scale_2', 'rot_0', 'rot_1', 'rot_2', 'rot_3']

    loaded = GaussianModel(2, device="cpu")
    loaded.load_ply(path)
    for name in PARAMETER_NAMES:
        assert torch.allclose(loaded.parameters_dict()[name], gaussians.parameters_dict()[name], atol=1e-6)


def _write_gaussian_ply(path, fields, count=3):
    elements = np.zeros(count, dtype=[(f, 'f4') for f in fields])
    for f in fields:
        elements[f] = np.arange(count, dtype=np.float32) + 1.0
    PlyData([PlyElement.describe(elements, 'vertex')]).write(path)


def test_mesh_initialisation_freezes_geometry(tmp_path):
    fields = ["x", "y", "z", "f_dc_0", "f_dc_1", "f_dc_2", "opacity",
              "scale_0", "scale_1", "scale_2", "rot_0", "rot_1", "rot_2", "rot_3"]
    path = str(tmp_path / "mesh.ply")
    _write_gaussian_ply(path, fields)

    gaussians = GaussianModel(1, device="cpu")
    gaussians.create_from_gaussians_ply(path, translation=np.array([1.0, 1.0, 1.0]), scale=0.5)
    assert gaussians.geometry_frozen
    assert gaussians.num_points == 3
    assert torch.allclose(gaussians._xyz[1], torch.zeros(3) + 0.5)
    assert gaussians._scaling[0, 0].item() == pytest.approx(1.0 + np.log(0.5), rel=1e-5)

    opt = default_opt()
    gaussians.training_setup(opt)
    assert gaussians.optimizer.get_learning_rate("xyz") == opt.frozen_position_lr
    assert gaussians.optimizer.get_learning_rate("scaling") == opt.frozen_scaling_lr
    assert gaussians.optimizer.get_learning_rate("rotation") == opt.frozen_rotation_lr
    assert gaussians.optimizer.get_learning_rate("f_dc") == opt.feature_dc_lr
    assert gaussians.optimizer.get_learning_rate("opacity") == opt.opacity_lr
    # The position schedule does not unfreeze the geometry
    gaussians.update_learning_rate(1e-3)
    assert gaussians.optimizer.get_learning_rate("xyz") == opt.frozen_position_lr


def test_mesh_file_missing_fields(tmp_path):
    path = str(tmp_path / "broken.ply")
    _write_gaussian_ply(path, ["x", "y", "z", "opacity"])
    gaussians = GaussianModel(1, device="cpu")
    with pytest.raises(InputDataError, match="f_dc_0"):
        gaussians.create_from_gaussians_ply(path)


def test_capture_restore_keeps_optimizer_state():
    opt = default_opt()
    gaussians = make_gaussians(num_points=5)
    gaussians.training_setup(opt)
    gaussians.optimizer.zero_grad()
    gaussians.get_xyz.sum().backward()
    gaussians.optimizer.step()

    restored = GaussianModel(1, device="cpu")
    restored.restore(gaussians.capture(), opt)
    assert torch.equal(restored._xyz, gaussians._xyz)
    assert torch.equal(restored.optimizer.moment_buffers("xyz")[0], gaussians.optimizer.moment_buffers("xyz")[0])
