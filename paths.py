from __future__ import annotations
import os
import sys
from pathlib import Path
from config import get_config


APP_NAME = "StudyPlanScheduler"


def get_data_dir() -> Path:
    """
    Resolve the directory used for storing profile data.
    STUDY_PLANNER_DATA_DIR wins when set, otherwise a per-OS user data location.
    """
    override = get_config().data_dir
    if override:
        base = Path(override).expanduser()
    else:
        home = Path.home()
        platform = sys.platform
        if platform == "darwin":
            base = home / "Library" / "Application Support" / APP_NAME
        elif platform.startswith("win"):
            roaming = os.environ.get("APPDATA")
            base = Path(roaming) / APP_NAME if roaming else home / "AppData" / "Roaming" / APP_NAME
        else:
            base = home / ".local" / "share" / "study-plan-scheduler"

    base.mkdir(parents=True, exist_ok=True)
    return base
