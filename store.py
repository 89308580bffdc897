# store.py
import copy
import json
import logging
import os
import threading
import uuid
from typing import Dict, List, Optional

import pendulum

import settings
from overlap import MutualWindow, find_mutual_windows
from timeutil import parse_instant

logger = logging.getLogger("event_store")
if not logger.handlers:
    ch = logging.StreamHandler()
    ch.setLevel(settings.LOG_LEVEL)
    logger.addHandler(ch)
logger.setLevel(settings.LOG_LEVEL)

_LOCK = threading.Lock()


class StoreError(Exception):
    pass


class EventNotFound(StoreError):
    def __init__(self, code: str):
        self.code = code
        super().__init__(f"no event with code {code!r}")


class StoreValidationError(StoreError):
    pass


# ---------- raw file access ----------
def _path(path: Optional[str] = None) -> str:
    return path or settings.EVENT_STORE


def _read(path: Optional[str] = None) -> Dict:
    p = _path(path)
    if not os.path.exists(p):
        return {"events": {}, "user_events": []}
    with open(p, "r") as f:
        try:
            data = json.loads(f.read() or "{}")
        except json.JSONDecodeError:
            logger.exception("event store %s is not valid JSON", p)
            raise StoreError(f"event store {p} is corrupt")
    if not isinstance(data, dict):
        logger.error("event store %s holds %s, expected an object", p, type(data).__name__)
        raise StoreError(f"event store {p} is corrupt")
    data.setdefault("events", {})
    data.setdefault("user_events", [])
    return data


def _write(data: Dict, path: Optional[str] = None):
    p = _path(path)
    tmp = p + ".tmp"
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, p)


# ---------- events ----------
def load_events(path: Optional[str] = None) -> Dict[str, Dict]:
    with _LOCK:
        return _read(path)["events"]


def get_event(code: str, path: Optional[str] = None) -> Optional[Dict]:
    return load_events(path).get((code or "").strip())


def join_event(code: str, path: Optional[str] = None) -> Dict:
    """Look an event up by the code a user typed in; raises EventNotFound if there is none."""
    code = (code or "").strip()
    if not code:
        raise StoreValidationError("Please enter an event code.")
    event = get_event(code, path)
    if event is None:
        raise EventNotFound(code)
    return event


def _coerce_dates(selected_dates) -> List[str]:
    if selected_dates is None:
        raise StoreValidationError("Please select at least one date for your event.")
    if isinstance(selected_dates, str):
        try:
            selected_dates = json.loads(selected_dates)
        except json.JSONDecodeError:
            raise StoreValidationError("Invalid date format.")
    if not isinstance(selected_dates, (list, tuple)):
        raise StoreValidationError("Invalid date format.")
    if not selected_dates:
        raise StoreValidationError("Please select at least one date for your event.")
    return list(selected_dates)


def _new_code(events: Dict) -> str:
    code = uuid.uuid4().hex[:7]
    while code in events:
        code = uuid.uuid4().hex[:7]
    return code


def create_event(selected_dates, code: Optional[str] = None, path: Optional[str] = None) -> Dict:
    """
    Create an event for the given dates (a list or its JSON text).

    A short random code is generated when `code` is not given.
    """
    dates = _coerce_dates(selected_dates)
    code = (code or "").strip()
    with _LOCK:
        data = _read(path)
        if not code:
            code = _new_code(data["events"])
        elif code in data["events"]:
            raise StoreValidationError(f"Event {code!r} already exists.")
        event = {"code": code, "selectedDates": dates, "participants": {}}
        data["events"][code] = event
        _write(data, path)
    logger.info("created event %s", code)
    return copy.deepcopy(event)


def update_event(event: Dict, path: Optional[str] = None):
    code = event.get("code")
    if not code:
        raise StoreValidationError("event has no code")
    with _LOCK:
        data = _read(path)
        data["events"][code] = copy.deepcopy(event)
        _write(data, path)


def _coerce_selections(selections) -> List[Dict]:
    if selections is None:
        raise StoreValidationError("No selection data received.")
    if isinstance(selections, str):
        try:
            selections = json.loads(selections)
        except json.JSONDecodeError:
            raise StoreValidationError("Invalid selection format.")
    if not isinstance(selections, list):
        raise StoreValidationError("Invalid selection format.")

    out = []
    for slot in selections:
        if not isinstance(slot, dict) or "start" not in slot or "end" not in slot:
            raise StoreValidationError("Each selection needs a start and an end.")
        for key in ("start", "end"):
            try:
                parse_instant(slot[key])
            except (ValueError, TypeError):
                raise StoreValidationError(f"Unreadable {key} time: {slot[key]!r}")
        out.append({"start": slot["start"], "end": slot["end"]})
    return out


def set_participant_availability(code: str, participant: str, selections,
                                 username: Optional[str] = None,
                                 path: Optional[str] = None) -> Dict:
    """
    Replace one participant's interval list on an event.

    `selections` is a list of {"start", "end"} dicts or the JSON text of one.
    When `username` is given (the account doing the saving) it is recorded
    as a member of the event in the same write.
    Returns a copy of the updated event.
    """
    name = (participant or "").strip()
    if not name:
        raise StoreValidationError("A username is required to save availability.")
    slots = _coerce_selections(selections)
    code = (code or "").strip()

    with _LOCK:
        data = _read(path)
        event = data["events"].get(code)
        if event is None:
            raise EventNotFound(code)
        event.setdefault("participants", {})[name] = slots
        if username:
            _upsert_member(data, username, code)
        _write(data, path)
    logger.info("saved %d slot(s) for %s on event %s", len(slots), name, code)
    return copy.deepcopy(event)


def snapshot_availability(code: str, path: Optional[str] = None) -> Dict[str, List[Dict]]:
    """Deep copy of an event's participants so later writes can't change a running computation."""
    event = get_event(code, path)
    if event is None:
        raise EventNotFound(code)
    return copy.deepcopy(event.get("participants", {}))


# ---------- user <-> event membership ----------
def _upsert_member(data: Dict, username: str, code: str):
    joined_at = pendulum.now("UTC").to_iso8601_string()
    for row in data["user_events"]:
        if row["username"] == username and row["eventCode"] == code:
            row["joinedAt"] = joined_at
            return
    data["user_events"].append({"username": username, "eventCode": code, "joinedAt": joined_at})


def add_user_to_event(username: str, code: str, path: Optional[str] = None):
    with _LOCK:
        data = _read(path)
        _upsert_member(data, username, code)
        _write(data, path)


def remove_user_from_event(username: str, code: str, path: Optional[str] = None):
    with _LOCK:
        data = _read(path)
        data["user_events"] = [r for r in data["user_events"]
                               if not (r["username"] == username and r["eventCode"] == code)]
        _write(data, path)


def get_user_events(username: str, path: Optional[str] = None) -> List[Dict]:
    with _LOCK:
        rows = _read(path)["user_events"]
    return [dict(r) for r in rows if r["username"] == username]


def get_event_participants(code: str, path: Optional[str] = None) -> List[Dict]:
    with _LOCK:
        rows = _read(path)["user_events"]
    return [dict(r) for r in rows if r["eventCode"] == code]


# ---------- engine glue ----------
def event_mutual_windows(code: str, absent_policy: Optional[str] = None,
                         path: Optional[str] = None) -> List[MutualWindow]:
    availability = snapshot_availability(code, path)
    roster = [r["username"] for r in get_event_participants(code, path)]
    return find_mutual_windows(availability, roster=roster, absent_policy=absent_policy)
