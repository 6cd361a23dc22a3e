"""Append-only CSV log of engine progress."""

import csv
import os
from datetime import datetime
from pathlib import Path
from typing import Union

FIELDNAMES = ["time", "average_grade", "action_done", "best_grade_found", "iterations_without_improvement"]


def timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class AuditTrail:
    """One CSV row per engine tick; the header is written when the file is new or empty."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def append(self, average_grade: float, action_done: str, best_grade_found: float,
               iterations_without_improvement: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not self.path.exists() or os.path.getsize(self.path) == 0
        with open(self.path, "a", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDNAMES)
            if is_new:
                writer.writeheader()
            writer.writerow({
                "time": timestamp(),
                "average_grade": average_grade,
                "action_done": action_done,
                "best_grade_found": best_grade_found,
                "iterations_without_improvement": iterations_without_improvement,
            })
