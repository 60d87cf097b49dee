from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np
import matplotlib.pyplot as plt

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex

from dvo.dataset.tum import Frame, RgbdSequence, camera_intrinsics, write_trajectory
from dvo.system.config import TrackerConfig
from dvo.system.telemetry import Telemetry
from dvo.system.tracker import Tracker


class TrajectoryVisualizer:
    """Live plot of the camera positions: 3D view and top-down (X-Z) view."""

    def __init__(self):
        plt.ion()
        self.fig = plt.figure(figsize=(12, 5))
        self.ax3d = self.fig.add_subplot(121, projection='3d')
        self.ax_top = self.fig.add_subplot(122)

    def update(self, positions: list[np.ndarray], energy: float | None = None):
        if len(positions) < 2:
            return
        p = np.asarray(positions)
        x, y, z = p[:, 0], p[:, 1], p[:, 2]

        self.ax3d.clear()
        self.ax3d.set_xlabel('X (m)')
        self.ax3d.set_ylabel('Y (m)')
        self.ax3d.set_zlabel('Z (m)')
        self.ax3d.set_title(f'Direct RGB-D odometry ({len(p)} frames)')
        self.ax3d.plot(x, y, z, 'b-', linewidth=1.5, alpha=0.7)
        self.ax3d.scatter(x[0], y[0], z[0], c='g', s=60, marker='o', label='Start')
        self.ax3d.scatter(x[-1], y[-1], z[-1], c='r', s=60, marker='o', label='Current')
        self.ax3d.legend()

        self.ax_top.clear()
        self.ax_top.set_xlabel('X (m)')
        self.ax_top.set_ylabel('Z (m)')
        title = f'Top-down, path length {np.sum(np.linalg.norm(np.diff(p, axis=0), axis=1)):.2f}m'
        if energy is not None:
            title += f', last energy {energy:.2f}'
        self.ax_top.set_title(title)
        self.ax_top.plot(x, z, 'b-', linewidth=1.5, alpha=0.7)
        self.ax_top.scatter(x[-1], z[-1], c='r', s=60, marker='o')
        self.ax_top.grid(True)
        self.ax_top.axis('equal')

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def load_config(path: str | None) -> dict:
    if path is None:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def main() -> None:
    ap = argparse.ArgumentParser(description="Track a TUM RGB-D sequence (directory or .tar archive).")
    ap.add_argument("--sequence", type=str, required=True, help="Sequence dir or .tar archive with associations.txt")
    ap.add_argument("--camera", type=str, default=None, choices=["fr1", "fr2", "fr3", "icl"],
                    help="Intrinsics preset, overrides the camera section of the config")
    ap.add_argument("--config", type=str, default=None, help="YAML config, e.g. configs/default.yaml")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--start", type=int, default=0)
    ap.add_argument("--step", type=int, default=1)
    ap.add_argument("--max_frames", type=int, default=None)
    ap.add_argument("--const_vel", action="store_true", help="Initialize each frame with the previous motion")
    ap.add_argument("--print_poses", action="store_true", help="Print each frame pose to stdout (TUM format)")
    ap.add_argument("--visualize", action="store_true", help="Enable real-time trajectory visualization")
    ap.add_argument("--viz_update_every", type=int, default=10, help="Update visualization every N frames")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    args = ap.parse_args()

    cfg = load_config(args.config)
    if args.config is not None:
        print(f"[INFO] Loaded config: {args.config}")
    intrinsics = camera_intrinsics(args.camera) if args.camera is not None else None
    config = TrackerConfig.from_dict(cfg, intrinsics=intrinsics)

    out_dir = Path(args.out_dir) / Path(args.sequence).stem
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    print(f"[INFO] Loading sequence: {args.sequence}")
    seq = RgbdSequence(args.sequence)
    print(f"[INFO] Sequence frames: {len(seq)}")

    telemetry = Telemetry()
    tracker = Tracker(config, telemetry=telemetry)
    visualizer = TrajectoryVisualizer() if args.visualize else None

    frames: list[Frame] = []
    positions: list[np.ndarray] = []
    try:
        for fd in seq.iter_frames(start=args.start, step=args.step, max_frames=args.max_frames):
            if not tracker.initialized:
                tracker.init(fd.depth_ts, fd.depth, fd.ts, fd.img_gray)
            else:
                chosen = tracker.track(args.const_vel, fd.depth_ts, fd.depth, fd.ts, fd.img_gray)
                if not chosen.valid:
                    print(f"[WARN] Frame {fd.idx}: {chosen.reason}")

            ts, pose = tracker.current_frame()
            frame = Frame(timestamp=ts, pose=pose)
            frames.append(frame)
            positions.append(pose.translation)
            if args.print_poses:
                print(frame.to_line())

            if args.log_every > 0 and len(frames) % args.log_every == 0:
                print(f"[INFO] Frame {len(frames)} / {args.max_frames if args.max_frames else len(seq)}")

            if visualizer is not None and len(frames) % args.viz_update_every == 0:
                last = telemetry.last() or {}
                visualizer.update(positions, last.get("energy"))
    finally:
        seq.close()

    traj_path = str(out_dir / "traj.txt")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    write_trajectory(frames, traj_path)
    telemetry.dump(metrics_path)
    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config.to_dict(), f, sort_keys=False)

    print(f"[OK] wrote: {traj_path}")
    print(f"[OK] wrote: {metrics_path}")

    if visualizer is not None:
        print("[INFO] Showing final trajectory. Close the window to exit.")
        visualizer.update(positions)
        visualizer.close()


if __name__ == "__main__":
    main()
