from __future__ import annotations

import os
import tarfile
from dataclasses import dataclass
from typing import Iterator, List, Optional

import cv2
import numpy as np

from ..geom.camera import Extrinsics, Intrinsics
from ..system.state import FrameData

# uint16 depth values are scaled for better precision:
# 5000 in the 16 bits png corresponds to 1 meter.
DEPTH_SCALE = 5000.0

INTRINSICS_FR1 = Intrinsics(principal_point=(318.643040, 255.313989), focal_length=1.0, scaling=(517.306408, 516.469215))
INTRINSICS_FR2 = Intrinsics(principal_point=(325.141442, 249.701764), focal_length=1.0, scaling=(520.908620, 521.007327))
INTRINSICS_FR3 = Intrinsics(principal_point=(320.106653, 247.632132), focal_length=1.0, scaling=(535.433105, 539.212524))
INTRINSICS_ICL_NUIM = Intrinsics(principal_point=(319.5, 239.5), focal_length=1.0, scaling=(481.20, -480.00))

CAMERAS = {
    "fr1": INTRINSICS_FR1,
    "fr2": INTRINSICS_FR2,
    "fr3": INTRINSICS_FR3,
    "icl": INTRINSICS_ICL_NUIM,
}


def camera_intrinsics(camera_id: str) -> Intrinsics:
    if camera_id not in CAMERAS:
        raise ValueError(f"Unknown camera id: {camera_id} (expected one of {sorted(CAMERAS)})")
    return CAMERAS[camera_id]


@dataclass
class Association:
    depth_timestamp: float
    depth_file_path: str
    color_timestamp: float
    color_file_path: str


@dataclass
class Frame:
    timestamp: float
    pose: Extrinsics

    def to_line(self) -> str:
        # "timestamp tx ty tz qx qy qz qw"
        t = self.pose.translation
        q = self.pose.rotation
        return f"{self.timestamp:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} {q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}"


def _data_lines(content: str) -> Iterator[tuple[int, list[str]]]:
    for line_no, line in enumerate(content.splitlines(), start=1):
        line = line.strip()
        if (not line) or line.startswith("#"):
            continue
        yield line_no, line.split()


def parse_associations(content: str) -> List[Association]:
    """Lines "depth_ts depth_path color_ts color_path", '#' comments."""
    entries: List[Association] = []
    for line_no, parts in _data_lines(content):
        if len(parts) != 4:
            raise ValueError(f"Association line {line_no}: expected 4 fields, got {len(parts)}")
        try:
            entries.append(Association(
                depth_timestamp=float(parts[0]),
                depth_file_path=parts[1],
                color_timestamp=float(parts[2]),
                color_file_path=parts[3],
            ))
        except ValueError as ex:
            raise ValueError(f"Association line {line_no}: {ex}") from ex
    return entries


def parse_groundtruth(content: str) -> List[Frame]:
    """Lines "timestamp tx ty tz qx qy qz qw", '#' comments."""
    frames: List[Frame] = []
    for line_no, parts in _data_lines(content):
        if len(parts) != 8:
            raise ValueError(f"Groundtruth line {line_no}: expected 8 fields, got {len(parts)}")
        try:
            values = [float(p) for p in parts]
        except ValueError as ex:
            raise ValueError(f"Groundtruth line {line_no}: {ex}") from ex
        q = np.array(values[4:8], dtype=np.float64)
        norm = np.linalg.norm(q)
        if norm == 0.0:
            raise ValueError(f"Groundtruth line {line_no}: null quaternion")
        frames.append(Frame(
            timestamp=values[0],
            pose=Extrinsics(translation=np.array(values[1:4], dtype=np.float64), rotation=q / norm),
        ))
    return frames


def _read_text(path: str) -> str:
    if not os.path.isfile(path):
        raise FileNotFoundError(f"Missing file: {path}")
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def read_associations(path: str) -> List[Association]:
    return parse_associations(_read_text(path))


def read_groundtruth(path: str) -> List[Frame]:
    return parse_groundtruth(_read_text(path))


def write_trajectory(frames: List[Frame], out_path: str) -> None:
    with open(out_path, "w", encoding="utf-8") as f:
        for frame in frames:
            f.write(frame.to_line() + "\n")


# Images ###############################################################

def decode_gray(buffer: bytes, name: str = "<buffer>") -> np.ndarray:
    img = cv2.imdecode(np.frombuffer(buffer, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
    if img is None:
        raise ValueError(f"Failed to decode image: {name}")
    return img


def decode_depth(buffer: bytes, name: str = "<buffer>") -> np.ndarray:
    depth = cv2.imdecode(np.frombuffer(buffer, dtype=np.uint8), cv2.IMREAD_ANYDEPTH)
    if depth is None:
        raise ValueError(f"Failed to decode depth image: {name}")
    if depth.dtype != np.uint16:
        raise ValueError(f"Depth image must be 16 bits: {name} ({depth.dtype})")
    return depth


class TarArchive:
    """Read entries of a tar archive by name, without extracting it."""

    def __init__(self, path: str):
        if not os.path.isfile(path):
            raise FileNotFoundError(f"The archive does not exist or is not reachable: {path}")
        self.path = path
        self._tar = tarfile.open(path, "r")
        self._members = {os.path.normpath(m.name): m for m in self._tar.getmembers() if m.isfile()}

    def __contains__(self, name: str) -> bool:
        return os.path.normpath(name) in self._members

    def read(self, name: str) -> bytes:
        member = self._members.get(os.path.normpath(name))
        if member is None:
            raise FileNotFoundError(f"Entry is not in archive {self.path}: {name}")
        f = self._tar.extractfile(member)
        if f is None:
            raise FileNotFoundError(f"Entry is not a regular file in archive {self.path}: {name}")
        with f:
            return f.read()

    def close(self) -> None:
        self._tar.close()

    def __enter__(self) -> "TarArchive":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RgbdSequence:
    """
    Associated depth and color images of a TUM RGB-D like sequence,
    either a directory or a .tar archive containing "associations.txt".
    """

    def __init__(self, seq_path: str, associations_name: str = "associations.txt"):
        self.seq_path = seq_path
        self._archive: Optional[TarArchive] = None
        if os.path.isdir(seq_path):
            self.entries = read_associations(os.path.join(seq_path, associations_name))
        else:
            self._archive = TarArchive(seq_path)
            self.entries = parse_associations(self._read(associations_name).decode("utf-8"))

    def __len__(self) -> int:
        return len(self.entries)

    def _read(self, name: str) -> bytes:
        if self._archive is not None:
            return self._archive.read(name)
        path = os.path.join(self.seq_path, name)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Failed to read image: {path}")
        with open(path, "rb") as f:
            return f.read()

    def read_images(self, assoc: Association) -> tuple[np.ndarray, np.ndarray]:
        """Returns (depth uint16, gray uint8)."""
        depth = decode_depth(self._read(assoc.depth_file_path), assoc.depth_file_path)
        img = decode_gray(self._read(assoc.color_file_path), assoc.color_file_path)
        if depth.shape != img.shape:
            raise ValueError(
                f"Depth {assoc.depth_file_path} {depth.shape} and color {assoc.color_file_path} {img.shape} differ"
            )
        return depth, img

    def iter_frames(
        self,
        *,
        start: int = 0,
        step: int = 1,
        max_frames: int | None = None,
    ) -> Iterator[FrameData]:
        end = len(self.entries) if max_frames is None else min(len(self.entries), start + max_frames * step)
        idx = 0
        for i in range(start, end, step):
            assoc = self.entries[i]
            depth, img = self.read_images(assoc)
            yield FrameData(idx=idx, ts=assoc.color_timestamp, img_gray=img, depth_ts=assoc.depth_timestamp, depth=depth)
            idx += 1

    def close(self) -> None:
        if self._archive is not None:
            self._archive.close()
