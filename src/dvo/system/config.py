# src/dvo/system/config.py
from __future__ import annotations

from dataclasses import dataclass, field, asdict

from ..geom.camera import Intrinsics
from ..modules.photometric import AlignParams


@dataclass
class TrackerConfig:
    """
    Tracking configuration, usually loaded from a YAML file with from_dict.

    candidates_threshold: minimum gradient norm (intensity per pixel) of a candidate.
    depth_scale: raw depth value corresponding to 1 meter.
    idepth_variance: variance of inverse depths coming from the depth sensor.
    """
    intrinsics: Intrinsics
    nb_levels: int = 6
    candidates_threshold: float = 7.0
    depth_scale: float = 5000.0
    idepth_variance: float = 1e-4
    fusion: str = "dso_mean"
    fusion_params: dict = field(default_factory=dict)
    align: AlignParams = field(default_factory=AlignParams)
    verbose: bool = False

    def validate(self) -> None:
        if self.nb_levels < 1:
            raise ValueError(f"nb_levels must be >= 1, got {self.nb_levels}")
        if self.depth_scale <= 0:
            raise ValueError(f"depth_scale must be > 0, got {self.depth_scale}")
        if self.idepth_variance <= 0:
            raise ValueError(f"idepth_variance must be > 0, got {self.idepth_variance}")
        if self.candidates_threshold < 0:
            raise ValueError(f"candidates_threshold must be >= 0, got {self.candidates_threshold}")
        if self.align.max_iterations < 1:
            raise ValueError(f"optimizer.max_iterations must be >= 1, got {self.align.max_iterations}")

    @staticmethod
    def from_dict(cfg: dict, intrinsics: Intrinsics | None = None) -> "TrackerConfig":
        """
        Build from a config dict with sections "camera", "tracker", "fusion", "optimizer".
        An explicit intrinsics argument takes precedence over cfg["camera"].
        """
        if intrinsics is None:
            cam = cfg.get("camera")
            if cam is None:
                raise ValueError("Missing camera intrinsics: no 'camera' section in config.")
            intrinsics = Intrinsics(
                principal_point=(float(cam["cx"]), float(cam["cy"])),
                focal_length=float(cam.get("focal_length", 1.0)),
                scaling=(float(cam["fx"]), float(cam["fy"])),
                skew=float(cam.get("skew", 0.0)),
            )

        trk = cfg.get("tracker", {}) or {}
        fus = cfg.get("fusion", {}) or {}
        opt = cfg.get("optimizer", {}) or {}
        huber = opt.get("huber_delta", 10.0)

        config = TrackerConfig(
            intrinsics=intrinsics,
            nb_levels=int(trk.get("nb_levels", 6)),
            candidates_threshold=float(trk.get("candidates_threshold", 7.0)),
            depth_scale=float(trk.get("depth_scale", 5000.0)),
            idepth_variance=float(trk.get("idepth_variance", 1e-4)),
            fusion=str(fus.get("strategy", "dso_mean")),
            fusion_params=dict(fus.get("params", {}) or {}),
            align=AlignParams(
                max_iterations=int(opt.get("max_iterations", 50)),
                convergence_tol=float(opt.get("convergence_tol", 1e-4)),
                min_step=float(opt.get("min_step", 1e-8)),
                huber_delta=None if huber is None else float(huber),
                damping=float(opt.get("damping", 1e-3)),
                min_residuals=int(opt.get("min_residuals", 12)),
            ),
            verbose=bool(trk.get("verbose", False)),
        )
        config.validate()
        return config

    def to_dict(self) -> dict:
        intr = self.intrinsics
        return {
            "camera": {
                "fx": intr.scaling[0],
                "fy": intr.scaling[1],
                "cx": intr.principal_point[0],
                "cy": intr.principal_point[1],
                "focal_length": intr.focal_length,
                "skew": intr.skew,
            },
            "tracker": {
                "nb_levels": self.nb_levels,
                "candidates_threshold": self.candidates_threshold,
                "depth_scale": self.depth_scale,
                "idepth_variance": self.idepth_variance,
                "verbose": self.verbose,
            },
            "fusion": {"strategy": self.fusion, "params": dict(self.fusion_params)},
            "optimizer": asdict(self.align),
        }
