from dataclasses import dataclass
import numpy as np

from ..geom.camera import Camera
from ..modules.photometric import LevelReference

@dataclass(frozen=True)
class FrameData:
    idx: int
    ts: float              # color timestamp
    img_gray: np.ndarray   # (H,W) uint8
    depth_ts: float
    depth: np.ndarray      # (H,W) uint16, 0 = no depth

@dataclass(frozen=True)
class ReferenceFrame:
    """Everything precomputed on the frame the next one is aligned to."""
    ts: float
    depth_ts: float
    multires_img: tuple[np.ndarray, ...]
    multires_camera: tuple[Camera, ...]
    # Level k of candidates and inverse depths has the resolution of multires_img[k + 1]
    multires_candidates: tuple[np.ndarray, ...]
    multires_idepth: tuple[np.ndarray, ...]  # restricted to candidates
    levels: tuple[LevelReference, ...]

@dataclass(frozen=True)
class TrackerState:
    frame_idx: int
    ts: float
    T_w_c: np.ndarray                        # 4x4, current camera -> world
    reference: ReferenceFrame
    last_T_cur_prev: np.ndarray | None = None  # motion prior
