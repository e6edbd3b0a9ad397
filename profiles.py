from __future__ import annotations
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Type
from pydantic import BaseModel, ValidationError
from models import FixedCommitment, ScheduleState, Settings, StudyPlan, Task
from storage import data_path, load_json, save_json


logger = logging.getLogger(__name__)

PROFILES_FILE = "profiles.json"
# persisted key -> (ScheduleState field, record model)
RECORD_KEYS: Dict[str, tuple] = {
    "tasks": ("tasks", Task),
    "studyPlans": ("plans", StudyPlan),
    "fixedCommitments": ("commitments", FixedCommitment),
}
SETTINGS_KEY = "settings"


def _sanitize_profile_name(name: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_-]+", "_", name.strip())
    safe = safe.strip("_") or "default"
    return safe[:80]


def _profile_path(profile_name: str) -> Path:
    safe = _sanitize_profile_name(profile_name)
    return data_path(f"state__{safe}.json")


def _save_profiles_list(profiles: List[str]) -> None:
    save_json(data_path(PROFILES_FILE), {"profiles": profiles})


def _load_records(raw: Dict[str, Any], key: str, model: Type[BaseModel], path: Path) -> list:
    items = raw.get(key)
    if items is None:
        return []
    if not isinstance(items, list):
        logger.warning("Ignoring %r in %s: expected a list", key, path)
        return []

    records = []
    for i, item in enumerate(items):
        try:
            records.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping malformed %s[%d] in %s (%d errors)", key, i, path, exc.error_count())
    return records


def _load_settings(raw: Dict[str, Any], path: Path) -> Settings:
    value = raw.get(SETTINGS_KEY)
    if value is None:
        return Settings()
    try:
        return Settings.model_validate(value)
    except ValidationError as exc:
        logger.warning("Malformed settings in %s (%d errors), using defaults", path, exc.error_count())
        return Settings()


def state_from_mapping(raw: Any, profile_name: str, source: Path | None = None) -> ScheduleState:
    """
    Build a ScheduleState from the persisted key -> JSON mapping. Anything
    missing or malformed becomes "no data" instead of an error.
    """
    source = source or Path(f"<{profile_name}>")
    if not isinstance(raw, dict):
        logger.warning("Profile data in %s is not a mapping, starting empty", source)
        raw = {}

    fields: Dict[str, Any] = {
        field: _load_records(raw, key, model, source)
        for key, (field, model) in RECORD_KEYS.items()
    }
    fields["settings"] = _load_settings(raw, source)
    fields["profile"] = profile_name
    return ScheduleState(**fields)


def state_to_mapping(state: ScheduleState) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        key: [record.model_dump(mode="json") for record in getattr(state, field)]
        for key, (field, _) in RECORD_KEYS.items()
    }
    payload[SETTINGS_KEY] = state.settings.model_dump(mode="json")
    return payload


def list_profiles() -> List[str]:
    data = load_json(data_path(PROFILES_FILE), {"profiles": []})
    names = data.get("profiles", []) if isinstance(data, dict) else []
    profiles: List[str] = [p for p in names if isinstance(p, str)]

    # Discover any files on disk not in the list
    discovered = []
    for path in data_path("").glob("state__*.json"):
        suffix = path.stem.replace("state__", "", 1)
        discovered.append(suffix.replace("_", " ").strip() or "default")

    combined = []
    for name in profiles + discovered:
        if name and name not in combined:
            combined.append(name)

    if not combined:
        combined = ["default"]
        _save_profiles_list(combined)

    return combined


def load_profile(profile_name: str) -> ScheduleState:
    path = _profile_path(profile_name)
    state = state_from_mapping(load_json(path, {}), profile_name, path)

    profiles = list_profiles()
    if profile_name not in profiles:
        profiles.append(profile_name)
        _save_profiles_list(profiles)

    return state


def save_profile(profile_name: str, state: ScheduleState) -> None:
    save_json(_profile_path(profile_name), state_to_mapping(state))
    profiles = list_profiles()
    if profile_name not in profiles:
        profiles.append(profile_name)
        _save_profiles_list(profiles)


def create_profile(profile_name: str) -> ScheduleState:
    name = profile_name.strip()
    if not name:
        raise ValueError("Profile name cannot be empty.")

    profiles = list_profiles()
    if any(p.lower() == name.lower() for p in profiles):
        raise ValueError("Profile already exists.")

    if _profile_path(name).exists():
        raise ValueError("A profile with that name already exists on disk.")

    state = ScheduleState(profile=name)
    save_profile(name, state)
    return state


def delete_profile(profile_name: str) -> None:
    try:
        _profile_path(profile_name).unlink()
    except FileNotFoundError:
        pass

    profiles = [p for p in list_profiles() if p != profile_name]
    if not profiles:
        profiles = ["default"]
        save_profile("default", ScheduleState(profile="default"))
    _save_profiles_list(profiles)
