# overlap.py
"""
Mutual availability engine.

Given {participant: [{"start": ..., "end": ...}, ...]} find the windows where
the largest number of participants are free at the same time.

Pipeline:
    normalize_availability -> collect_boundaries -> sweep -> select_maximal -> merge_runs
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import pendulum

import settings
from timeutil import parse_instant, to_epoch_ms, to_iso

INVALID_POLICIES = ("reject", "drop")
ABSENT_POLICIES = ("exclude", "unavailable")

logger = logging.getLogger("mutual_overlap")
if not logger.handlers:
    # avoid duplicate handlers on reload
    ch = logging.StreamHandler()
    ch.setLevel(settings.LOG_LEVEL)
    logger.addHandler(ch)
logger.setLevel(settings.LOG_LEVEL)


# ---------- errors ----------
class AvailabilityError(ValueError):
    """Base class for availability input the engine refuses to work with."""


class InvalidInterval(AvailabilityError):
    def __init__(self, participant: str, start, end):
        self.participant = participant
        self.start = start
        self.end = end
        super().__init__(f"interval for {participant!r} must have start < end (got {start} -> {end})")


class MalformedTimestamp(AvailabilityError):
    def __init__(self, participant: str, value: Any, reason: str = ""):
        self.participant = participant
        self.value = value
        msg = f"unreadable timestamp {value!r} for {participant!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidParticipant(AvailabilityError):
    pass


# ---------- types ----------
@dataclass(frozen=True)
class TimeInterval:
    """Half-open [start, end) span of UTC instants."""
    start: pendulum.DateTime
    end: pendulum.DateTime

    def __post_init__(self):
        if self.start >= self.end:
            raise InvalidInterval("", self.start, self.end)

    def contains(self, start: pendulum.DateTime, end: pendulum.DateTime) -> bool:
        return self.start <= start and self.end >= end


class AvailabilitySet(frozenset):
    """Participants free for a whole elementary slot. Compared as a set, never by order."""

    def ordered(self) -> List[str]:
        return sorted(self)


@dataclass(frozen=True)
class ElementarySlot:
    start: pendulum.DateTime
    end: pendulum.DateTime
    members: AvailabilitySet


@dataclass(frozen=True)
class MutualWindow:
    start: pendulum.DateTime
    end: pendulum.DateTime
    participants: Tuple[str, ...]
    unavailable: Tuple[str, ...] = ()

    @property
    def count(self) -> int:
        return len(self.participants)

    def as_dict(self, epoch_ms: bool = False) -> Dict:
        fmt = to_epoch_ms if epoch_ms else to_iso
        return {
            "start": fmt(self.start),
            "end": fmt(self.end),
            "participants": list(self.participants),
            "count": self.count,
            "unavailable": list(self.unavailable),
        }


# ---------- normalizer ----------
def _check_policy(value: Optional[str], default: str, allowed: Tuple[str, ...], name: str) -> str:
    policy = value or default
    if not isinstance(policy, str):
        raise ValueError(f"{name} must be one of {allowed}, got {policy!r}")
    policy = policy.strip().lower()
    if policy not in allowed:
        raise ValueError(f"{name} must be one of {allowed}, got {policy!r}")
    return policy


def _interval_parts(participant: str, raw: Any) -> Tuple[Any, Any]:
    if isinstance(raw, TimeInterval):
        return raw.start, raw.end
    if isinstance(raw, Mapping):
        for key in ("start", "end"):
            if key not in raw:
                raise MalformedTimestamp(participant, raw, f"missing '{key}'")
        return raw["start"], raw["end"]
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        return raw[0], raw[1]
    raise MalformedTimestamp(participant, raw, "expected {start, end} or a (start, end) pair")


def _parse(participant: str, value: Any) -> pendulum.DateTime:
    try:
        return parse_instant(value)
    except (ValueError, TypeError) as e:
        raise MalformedTimestamp(participant, value, str(e)) from e


def _union(intervals: List[TimeInterval]) -> List[TimeInterval]:
    """Merge one participant's overlapping or touching intervals so nobody is counted twice."""
    ivs = sorted(intervals, key=lambda iv: (iv.start, iv.end))
    out = []
    for iv in ivs:
        if not out or iv.start > out[-1][1]:
            out.append([iv.start, iv.end])
        else:
            out[-1][1] = max(out[-1][1], iv.end)
    return [TimeInterval(s, e) for s, e in out]


def normalize_availability(availability: Mapping[str, Any],
                           invalid_policy: Optional[str] = None) -> Dict[str, List[TimeInterval]]:
    """
    Parse and validate raw availability.

    Returns {participant: sorted, unioned [TimeInterval]} keyed in participant order.
    Bad timestamps always raise MalformedTimestamp. Intervals with start >= end
    raise InvalidInterval under the "reject" policy and are skipped under "drop".
    """
    policy = _check_policy(invalid_policy, settings.INVALID_INTERVAL_POLICY,
                           INVALID_POLICIES, "invalid_policy")
    if not isinstance(availability, Mapping):
        raise InvalidParticipant(f"availability must be a mapping, got {type(availability).__name__}")

    out: Dict[str, List[TimeInterval]] = {}
    dropped = 0
    for participant, raw_list in availability.items():
        if not isinstance(participant, str) or not participant.strip():
            raise InvalidParticipant(f"participant id must be a non-empty string, got {participant!r}")
        if raw_list is None:
            raw_list = []
        if not isinstance(raw_list, (list, tuple)):
            raise InvalidParticipant(f"intervals for {participant!r} must be a list, got {type(raw_list).__name__}")

        intervals = []
        for raw in raw_list:
            s_raw, e_raw = _interval_parts(participant, raw)
            s = _parse(participant, s_raw)
            e = _parse(participant, e_raw)
            if s >= e:
                if policy == "reject":
                    raise InvalidInterval(participant, s, e)
                logger.warning("dropping interval for %s with start >= end: %s -> %s",
                               participant, to_iso(s), to_iso(e))
                dropped += 1
                continue
            intervals.append(TimeInterval(s, e))
        out[participant] = _union(intervals)

    if dropped:
        logger.info("normalize_availability: dropped %d invalid interval(s)", dropped)
    return {p: out[p] for p in sorted(out)}


def collect_boundaries(normalized: Mapping[str, List[TimeInterval]]) -> List[pendulum.DateTime]:
    points = set()
    for intervals in normalized.values():
        for iv in intervals:
            points.add(iv.start)
            points.add(iv.end)
    return sorted(points)


# ---------- sweep ----------
def sweep(boundaries: List[pendulum.DateTime],
          normalized: Mapping[str, List[TimeInterval]]) -> List[ElementarySlot]:
    """
    One slot per consecutive boundary pair, including slots nobody is free in.

    Each participant keeps a cursor into their sorted intervals; intervals that
    ended at or before the current boundary are never looked at again.
    """
    cursors = {p: 0 for p in normalized}
    slots = []
    for start, end in zip(boundaries, boundaries[1:]):
        members = []
        for participant, intervals in normalized.items():
            i = cursors[participant]
            while i < len(intervals) and intervals[i].end <= start:
                i += 1
            cursors[participant] = i
            if i < len(intervals) and intervals[i].contains(start, end):
                members.append(participant)
        slots.append(ElementarySlot(start, end, AvailabilitySet(members)))
    return slots


# ---------- selector ----------
def select_maximal(slots: Iterable[ElementarySlot]) -> Tuple[int, List[ElementarySlot]]:
    slots = list(slots)
    max_count = max((len(s.members) for s in slots), default=0)
    if max_count == 0:
        return 0, []
    return max_count, [s for s in slots if len(s.members) == max_count]


# ---------- merger ----------
def _close_run(run: list, considered: Iterable[str]) -> MutualWindow:
    start, end, members = run
    missing = sorted(p for p in set(considered) if p not in members)
    return MutualWindow(start, end, tuple(members.ordered()), tuple(missing))


def merge_runs(slots: Iterable[ElementarySlot], considered: Iterable[str] = ()) -> List[MutualWindow]:
    """
    Coalesce chronologically ordered slots into windows.

    A slot extends the open run only if it starts exactly where the run ends
    and has the same members; a hand-off between two equally sized groups
    starts a new window.
    """
    considered = tuple(considered)
    windows = []
    run = None  # [start, end, members]
    for slot in slots:
        if run is not None and run[1] == slot.start and run[2] == slot.members:
            run[1] = slot.end
            continue
        if run is not None:
            windows.append(_close_run(run, considered))
        run = [slot.start, slot.end, slot.members]
    if run is not None:
        windows.append(_close_run(run, considered))
    return windows


# ---------- entry point ----------
def considered_participants(normalized: Mapping[str, List[TimeInterval]],
                            roster: Optional[Iterable[str]] = None,
                            absent_policy: Optional[str] = None) -> List[str]:
    """
    Who the result is measured against.

    Everyone in the availability mapping counts, including people with zero
    intervals. Roster members who never submitted anything count only under
    the "unavailable" policy.
    """
    policy = _check_policy(absent_policy, settings.ABSENT_PARTICIPANT_POLICY,
                           ABSENT_POLICIES, "absent_policy")
    people = set(normalized)
    if roster and policy == "unavailable":
        for p in roster:
            if not isinstance(p, str) or not p.strip():
                raise InvalidParticipant(f"roster entry must be a non-empty string, got {p!r}")
            people.add(p)
    return sorted(people)


def find_mutual_windows(availability: Mapping[str, Any],
                        roster: Optional[Iterable[str]] = None,
                        invalid_policy: Optional[str] = None,
                        absent_policy: Optional[str] = None) -> List[MutualWindow]:
    """
    Windows where the maximum number of participants are free together.

    Returns [] when no one submitted any interval; that is a normal outcome.
    The input mapping is never modified.
    """
    normalized = normalize_availability(availability, invalid_policy)
    considered = considered_participants(normalized, roster, absent_policy)

    boundaries = collect_boundaries(normalized)
    if not boundaries:
        logger.info("find_mutual_windows: no intervals across %d participant(s)", len(normalized))
        return []

    slots = sweep(boundaries, normalized)
    max_count, best = select_maximal(slots)
    if not max_count:
        return []

    windows = merge_runs(best, considered)
    logger.info("find_mutual_windows: participants=%d boundaries=%d slots=%d max_count=%d windows=%d",
                len(considered), len(boundaries), len(slots), max_count, len(windows))
    return windows
