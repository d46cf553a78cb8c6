#
# Copyright (C) 2023, Inria
# GRAPHDECO research group, https://team.inria.fr/graphdeco
# All rights reserved.
#
# This software is free for non-commercial, research and evaluation use
# under the terms of the LICENSE.md file.
#
# For inquiries contact  george.drettakis@inria.fr
#

import os
import json
import random
from typing import NamedTuple, Optional
import numpy as np
from plyfile import PlyData
from scene.cameras import Camera
from utils.graphics_utils import BasicPointCloud, auto_scale_and_center_poses, get_scene_extent
from utils.errors import InputDataError, ConfigurationError

DEFAULT_BACKGROUND = [0.6130, 0.0101, 0.3984]
FRAME_INTRINSICS = ["w", "h", "fl_x", "fl_y", "cx", "cy", "k1", "k2", "p1", "p2", "k3"]

class SceneInfo(NamedTuple):
    point_cloud: Optional[BasicPointCloud]
    train_cameras: list
    val_camera: Optional[Camera]
    nerf_normalization: dict
    ply_path: str
    background: list
    translation: np.ndarray
    scale: float

def fetchPly(path):
    if not os.path.exists(path):
        raise InputDataError("Point cloud not found: {}".format(path))
    plydata = PlyData.read(path)
    if len(plydata.elements) == 0:
        raise InputDataError("{} does not contain a vertex element".format(path))
    vertices = plydata['vertex']
    names = [p.name for p in vertices.properties]
    missing = [f for f in ("x", "y", "z", "red", "green", "blue") if f not in names]
    if missing:
        raise InputDataError("{} is missing point fields: {}".format(path, ", ".join(missing)))
    if vertices.count == 0:
        raise InputDataError("{} contains no points".format(path))
    positions = np.vstack([vertices['x'], vertices['y'], vertices['z']]).T.astype(np.float32)
    colors = np.vstack([vertices['red'], vertices['green'], vertices['blue']]).T / 255.0
    return BasicPointCloud(points=positions, colors=colors.astype(np.float32))

def readNerfstudioTransforms(path):
    """
    Parse transforms.json. Intrinsics stored at the top level apply to every frame
    that does not carry its own, and frames are returned sorted by file path.
    """
    try:
        with open(path) as json_file:
            contents = json.load(json_file)
    except json.JSONDecodeError as e:
        raise InputDataError("Cannot parse {}: {}".format(path, e))

    if "frames" not in contents or len(contents["frames"]) == 0:
        raise InputDataError("{} does not list any frame".format(path))

    frames = []
    for idx, frame in enumerate(contents["frames"]):
        if "file_path" not in frame or "transform_matrix" not in frame:
            raise InputDataError("Frame {} in {} needs file_path and transform_matrix".format(idx, path))
        merged = dict(frame)
        for key in FRAME_INTRINSICS:
            if key not in merged and key in contents:
                merged[key] = contents[key]
        for key in ("w", "h", "fl_x", "fl_y", "cx", "cy"):
            if key not in merged:
                raise InputDataError("Frame {} ({}) has no '{}' and no global default".format(idx, frame["file_path"], key))
        transform = np.asarray(merged["transform_matrix"], dtype=np.float64)
        if transform.shape != (4, 4):
            raise InputDataError("transform_matrix of {} must be 4x4".format(frame["file_path"]))
        merged["transform_matrix"] = transform
        frames.append(merged)

    frames.sort(key=lambda f: f["file_path"])
    return {
        "camera_model": contents.get("camera_model", "OPENCV"),
        "frames": frames,
        "ply_file_path": contents.get("ply_file_path", ""),
        "background_color": contents.get("background_color", DEFAULT_BACKGROUND),
    }

def split_validation_camera(cameras, val=False, val_image="random", seed=42):
    if not val:
        return cameras, None
    if val_image == "random":
        val_idx = random.Random(seed).randrange(len(cameras))
    else:
        matches = [i for i, cam in enumerate(cameras) if os.path.basename(cam.image_name) == val_image]
        if not matches:
            raise ConfigurationError("{} not in the list of cameras".format(val_image))
        val_idx = matches[0]
    train_cameras = [cam for i, cam in enumerate(cameras) if i != val_idx]
    return train_cameras, cameras[val_idx]

def readNerfstudioSceneInfo(path, mesh_file="", val=False, val_image="random", data_device="cuda"):
    transforms_path = os.path.join(path, "transforms.json")
    if not os.path.exists(transforms_path):
        raise InputDataError("{} does not exist".format(transforms_path))

    transforms = readNerfstudioTransforms(transforms_path)
    has_mesh = len(mesh_file) > 0
    if not transforms["ply_file_path"] and not has_mesh:
        raise InputDataError("ply_file_path is empty (and no mesh file)")

    frames = transforms["frames"]
    poses, translation, scale = auto_scale_and_center_poses(np.stack([f["transform_matrix"] for f in frames]))

    cam_infos = []
    for uid, (frame, pose) in enumerate(zip(frames, poses)):
        cam_infos.append(Camera(uid=uid,
                                image_name=os.path.basename(frame["file_path"]),
                                width=frame["w"], height=frame["h"],
                                fx=frame["fl_x"], fy=frame["fl_y"], cx=frame["cx"], cy=frame["cy"],
                                c2w=pose,
                                image_path=os.path.join(path, frame["file_path"]),
                                k1=frame.get("k1", 0.0), k2=frame.get("k2", 0.0), k3=frame.get("k3", 0.0),
                                p1=frame.get("p1", 0.0), p2=frame.get("p2", 0.0),
                                data_device=data_device))

    train_cameras, val_camera = split_validation_camera(cam_infos, val, val_image)
    nerf_normalization = {"radius": get_scene_extent(poses[:, :3, 3]), "translation": -translation}

    pcd = None
    ply_path = mesh_file
    if not has_mesh:
        ply_path = os.path.join(path, transforms["ply_file_path"])
        pcd = fetchPly(ply_path)
        pcd = BasicPointCloud(points=((pcd.points - translation) * scale).astype(np.float32), colors=pcd.colors)

    return SceneInfo(point_cloud=pcd,
                     train_cameras=train_cameras,
                     val_camera=val_camera,
                     nerf_normalization=nerf_normalization,
                     ply_path=ply_path,
                     background=list(transforms["background_color"]),
                     translation=translation,
                     scale=scale)

sceneLoadTypeCallbacks = {
    "Nerfstudio": readNerfstudioSceneInfo,
}
