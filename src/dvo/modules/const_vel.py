import numpy as np
from ..system.proposal import Proposal, Evidence

def propose_const_vel(last_T_cur_prev: np.ndarray | None) -> Proposal:
    if last_T_cur_prev is None:
        return Proposal("identity", np.eye(4), Evidence(), valid=True, reason="NO_MOTION_PRIOR")
    return Proposal("const_vel", last_T_cur_prev.copy(), Evidence(), valid=True, reason="CONST_VEL")
