import json


class Telemetry:
    def __init__(self):
        self.frames = []

    def log_frame(self, idx: int, rec: dict):
        rec["frame_idx"] = idx
        self.frames.append(rec)

    def last(self) -> dict | None:
        return self.frames[-1] if self.frames else None

    def dump(self, path: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.frames, f, indent=2)
