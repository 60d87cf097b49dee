# src/dvo/system/tracker.py
from __future__ import annotations

import numpy as np

from .config import TrackerConfig
from .proposal import Proposal
from .state import ReferenceFrame, TrackerState
from .telemetry import Telemetry
from ..geom import se3
from ..geom.camera import Camera, Extrinsics
from ..geom.se3 import inv_T
from ..modules import candidates, inverse_depth, multires, photometric
from ..modules.const_vel import propose_const_vel


def build_reference(
    config: TrackerConfig,
    strategy: inverse_depth.FusionStrategy,
    depth_ts: float,
    depth_map: np.ndarray,
    ts: float,
    multires_img: list[np.ndarray],
    T_w_c: np.ndarray,
) -> ReferenceFrame:
    """
    Precompute the reference data of a frame:
    candidates, candidate-restricted inverse depth pyramid and alignment levels.
    """
    if depth_map.shape != multires_img[0].shape:
        raise ValueError(f"Depth map shape {depth_map.shape} != image shape {multires_img[0].shape}")
    # The snapshot owns its images.
    multires_img = [np.array(multires_img[0], copy=True), *multires_img[1:]]
    nb_levels = len(multires_img)
    multires_camera = Camera(config.intrinsics, Extrinsics.from_matrix(T_w_c)).multi_res(nb_levels)

    # Gradients level k is aligned with image level k + 1.
    multires_gradients_xy = multires.gradients_xy(multires_img)
    multires_candidates = candidates.select(
        multires.gradients_squared_norm(multires_img), config.candidates_threshold
    )

    # Half resolution depth of the candidates, fused up to the coarsest level.
    multires_idepth = []
    if multires_candidates:
        half_res_depth = multires.mean_pyramid_u16(2, depth_map)[1]
        idepth_candidates = inverse_depth.from_depth_candidates(
            half_res_depth, multires_candidates[0], config.depth_scale, config.idepth_variance
        )
        multires_fused = inverse_depth.pyramid(idepth_candidates, len(multires_candidates), strategy)
        multires_idepth = [
            inverse_depth.restrict(fused, mask) for fused, mask in zip(multires_fused, multires_candidates)
        ]
    for mat in (*multires_img, *multires_idepth):
        mat.setflags(write=False)

    levels = []
    for k in range(nb_levels - 1):
        lvl = k + 1
        gx, gy = multires_gradients_xy[k]
        levels.append(photometric.precompute_level(
            lvl,
            multires_camera[lvl].intrinsics,
            multires_img[lvl],
            gx,
            gy,
            multires_idepth[k],
        ))

    return ReferenceFrame(
        ts=ts,
        depth_ts=depth_ts,
        multires_img=tuple(multires_img),
        multires_camera=tuple(multires_camera),
        multires_candidates=tuple(multires_candidates),
        multires_idepth=tuple(multires_idepth),
        levels=tuple(levels),
    )


class Tracker:
    """
    Direct RGB-D tracker, frame to frame.

    Uninitialized until init() is called with the first frame,
    then each track() aligns a new frame on the previous one,
    which is replaced as reference by the new frame.

    Conventions (T_a_b maps points from b to a):
      - state.T_w_c: current camera pose in the world
      - proposals give T_cur_prev
    """

    def __init__(self, config: TrackerConfig, telemetry: Telemetry | None = None):
        config.validate()
        self.config = config
        self.telemetry = telemetry
        self.strategy = inverse_depth.make_strategy(config.fusion, **config.fusion_params)
        self._state: TrackerState | None = None

    @property
    def initialized(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> TrackerState:
        if self._state is None:
            raise ValueError("Tracker is not initialized, call init() with the first frame.")
        return self._state

    def _pyramid(self, img: np.ndarray) -> list[np.ndarray]:
        img = np.asarray(img)
        if img.ndim != 2:
            raise ValueError(f"Tracker expects a grayscale image (H,W), got shape {img.shape}")
        return multires.mean_pyramid(self.config.nb_levels, img)

    def init(
        self,
        depth_ts: float,
        depth_map: np.ndarray,
        ts: float,
        img: np.ndarray,
        prior: Extrinsics | None = None,
    ) -> None:
        T_w_c = np.eye(4) if prior is None else prior.matrix()
        reference = build_reference(
            self.config, self.strategy, depth_ts, np.asarray(depth_map), ts, self._pyramid(img), T_w_c
        )
        self._state = TrackerState(frame_idx=0, ts=ts, T_w_c=T_w_c, reference=reference)

        if self.telemetry is not None:
            self.telemetry.log_frame(0, {
                "ts": float(ts),
                "depth_ts": float(depth_ts),
                "chosen": {"name": "init", "reason": "INIT"},
                "candidates": candidates.count(reference.multires_candidates),
                "points": [len(lvl_ref) for lvl_ref in reference.levels],
            })

    def track(
        self,
        use_first_estimate: bool,
        depth_ts: float,
        depth_map: np.ndarray,
        ts: float,
        img: np.ndarray,
    ) -> Proposal:
        """
        Estimate the pose of a new frame.

        Args:
            use_first_estimate: start from the previous relative motion instead of identity.

        Returns:
            The photometric proposal (T_cur_prev and optimization evidence).
            It is committed even when not converged.
        """
        state = self.state
        multires_img = self._pyramid(img)
        if multires_img[0].shape != state.reference.multires_img[0].shape:
            raise ValueError(
                f"Image shape {multires_img[0].shape} != reference shape {state.reference.multires_img[0].shape}"
            )

        prior = propose_const_vel(state.last_T_cur_prev if use_first_estimate else None)
        chosen = photometric.align(
            state.reference.levels,
            multires_img,
            prior.T_cur_prev,
            self.config.align,
            verbose=self.config.verbose,
        )

        # T_w_cur = T_w_prev @ T_prev_cur
        T_w_cur = state.T_w_c @ inv_T(chosen.T_cur_prev)
        reference = build_reference(
            self.config, self.strategy, depth_ts, np.asarray(depth_map), ts, multires_img, T_w_cur
        )
        self._state = TrackerState(
            frame_idx=state.frame_idx + 1,
            ts=ts,
            T_w_c=T_w_cur,
            reference=reference,
            last_T_cur_prev=chosen.T_cur_prev.copy(),
        )

        if self.telemetry is not None:
            ev = chosen.evidence
            motion = se3.log(chosen.T_cur_prev)
            self.telemetry.log_frame(self._state.frame_idx, {
                "ts": float(ts),
                "depth_ts": float(depth_ts),
                "prior": {"name": prior.name, "reason": prior.reason},
                "chosen": {"name": chosen.name, "valid": bool(chosen.valid), "reason": chosen.reason},
                "num_residuals": int(ev.num_residuals),
                "visible_ratio": float(ev.visible_ratio),
                "energy": None if ev.energy is None else float(ev.energy),
                "mean_abs_residual": None if ev.mean_abs_residual is None else float(ev.mean_abs_residual),
                "levels": ev.levels,
                "motion": {
                    "translation": float(np.linalg.norm(motion[:3])),
                    "rotation_rad": float(np.linalg.norm(motion[3:])),
                },
            })
        return chosen

    def current_frame(self) -> tuple[float, Extrinsics]:
        state = self.state
        return state.ts, Extrinsics.from_matrix(state.T_w_c)
