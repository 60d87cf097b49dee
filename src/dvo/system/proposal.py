from dataclasses import dataclass, field
import numpy as np

@dataclass
class Evidence:
    num_residuals: int = 0
    visible_ratio: float = 0.0
    energy: float | None = None             # final weighted photometric cost
    mean_abs_residual: float | None = None  # intensity levels
    levels: list[dict] = field(default_factory=list)

@dataclass
class Proposal:
    name: str
    T_cur_prev: np.ndarray  # 4x4, maps reference (prev) camera points to current camera
    evidence: Evidence
    valid: bool = True
    reason: str = ""
