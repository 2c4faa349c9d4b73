"""
Capacity model: teaching hours, per-supervisor capacity, load counters and
load-balancing (equilibrage) diagnostics.
"""

from typing import List, Dict, Optional, Iterable, Iterator, Mapping, Tuple
from dataclasses import dataclass, field
from collections import Counter, defaultdict
from contextlib import contextmanager
import logging
import math
import unicodedata

from groupit_matching.models import (
    CapacityConfig,
    MatchTarget,
    Student,
    Supervisor,
    class_level,
)

logger = logging.getLogger(__name__)

LEVELS: Tuple[str, ...] = ("6e", "5e", "4e", "3e")
DEFAULT_SUBJECT_HOURS = 1.0

# Weekly hours per subject and level (collège timetable)
SUBJECT_HOURS: Dict[str, Dict[str, float]] = {
    "6e": {
        "Français": 4.5,
        "Mathématiques": 4.5,
        "Histoire-Géographie": 3.0,
        "EMC": 0.5,
        "Anglais": 4.0,
        "EPS": 4.0,
        "SVT": 1.5,
        "Physique-Chimie": 1.0,
        "Technologie": 1.5,
        "Arts Plastiques": 1.0,
        "Éducation Musicale": 1.0,
    },
    "5e": {
        "Français": 4.5,
        "Mathématiques": 3.5,
        "Histoire-Géographie": 3.0,
        "EMC": 0.5,
        "Anglais": 3.0,
        "LV2": 2.5,
        "Espagnol": 2.5,
        "Allemand": 2.5,
        "Italien": 2.5,
        "EPS": 3.0,
        "SVT": 1.5,
        "Physique-Chimie": 1.5,
        "Technologie": 1.5,
        "Arts Plastiques": 1.0,
        "Éducation Musicale": 1.0,
        "Latin": 1.0,
    },
    "4e": {
        "Français": 4.5,
        "Mathématiques": 3.5,
        "Histoire-Géographie": 3.0,
        "EMC": 0.5,
        "Anglais": 3.0,
        "LV2": 2.5,
        "Espagnol": 2.5,
        "Allemand": 2.5,
        "Italien": 2.5,
        "EPS": 3.0,
        "SVT": 1.5,
        "Physique-Chimie": 1.5,
        "Technologie": 1.5,
        "Arts Plastiques": 1.0,
        "Éducation Musicale": 1.0,
        "Latin": 2.0,
        "Grec": 2.0,
    },
    "3e": {
        "Français": 4.25,
        "Mathématiques": 4.0,
        "Histoire-Géographie": 3.25,
        "EMC": 0.5,
        "Anglais": 3.0,
        "LV2": 2.5,
        "Espagnol": 2.5,
        "Allemand": 2.5,
        "Italien": 2.5,
        "EPS": 3.0,
        "SVT": 1.5,
        "Physique-Chimie": 1.5,
        "Technologie": 1.5,
        "Arts Plastiques": 1.0,
        "Éducation Musicale": 1.0,
        "Latin": 2.5,
        "Grec": 2.5,
    },
}

SUBJECT_ALIASES: Dict[str, str] = {
    "maths": "mathematiques",
    "math": "mathematiques",
    "histoire": "histoire-geographie",
    "geographie": "histoire-geographie",
    "hg": "histoire-geographie",
    "physique": "physique-chimie",
    "pc": "physique-chimie",
    "musique": "education musicale",
    "arts": "arts plastiques",
    "techno": "technologie",
}


def normalize_subject(subject: Optional[str]) -> str:
    """Case- and accent-insensitive subject key, with common short names resolved."""
    if not subject:
        return ""
    key = unicodedata.normalize("NFD", subject.strip().lower())
    key = "".join(ch for ch in key if not unicodedata.combining(ch))
    return SUBJECT_ALIASES.get(key, key)


def subject_hours(subject: Optional[str], level: str) -> float:
    """Weekly hours of a subject at a level; unknown subjects count as one hour."""
    key = normalize_subject(subject)
    if not key:
        return 0.0
    table = SUBJECT_HOURS.get(level, SUBJECT_HOURS["3e"])
    for name, hours in table.items():
        ref = normalize_subject(name)
        if key == ref or ref in key:
            return hours
    return DEFAULT_SUBJECT_HOURS


def normalized_subject_weight(subject: Optional[str], level: str = "3e") -> float:
    """Subject hours relative to the heaviest subject of the level, in [0, 1]."""
    table = SUBJECT_HOURS.get(level, SUBJECT_HOURS["3e"])
    heaviest = max(table.values())
    return min(1.0, subject_hours(subject, level) / heaviest)


def teaching_hours(supervisor: Supervisor, level: str) -> float:
    """Weekly hours a supervisor teaches at a level, summed over the classes in charge."""
    if level in supervisor.teaching_hours_override:
        return supervisor.teaching_hours_override[level]
    per_class = subject_hours(supervisor.subject, level)
    return sum(per_class for c in supervisor.classes if class_level(c) == level)


def main_level(supervisor: Supervisor) -> Optional[str]:
    """Level with the most classes in charge; ties go to the most senior level."""
    counts = Counter(class_level(c) for c in supervisor.classes)
    counts.pop(None, None)
    if not counts:
        return None
    return max(counts, key=lambda lvl: (counts[lvl], LEVELS.index(lvl)))


def average_teaching_hours(hours: Iterable[float]) -> float:
    positive = [h for h in hours if h > 0]
    return sum(positive) / len(positive) if positive else 0.0


def scale_by_hours(capacity: int, hours: float, average_hours: float) -> int:
    """Scale a capacity inversely to teaching hours: heavier timetables get fewer charges."""
    if capacity <= 0 or hours <= 0 or average_hours <= 0:
        return capacity
    return max(1, int(round(capacity * average_hours / hours)))


def calculate_capacity(
    supervisor: Supervisor,
    config: CapacityConfig,
    weight_by_hours: bool = False,
    average_hours: float = 0.0,
) -> int:
    """Capacity of one supervisor under a scenario's capacity configuration."""
    if supervisor.capacity_override is not None:
        return supervisor.capacity_override

    capacity = config.base_for_level(main_level(supervisor))
    for level, coefficient in config.level_coefficients.items():
        capacity += int(round(teaching_hours(supervisor, level) * coefficient))

    if weight_by_hours:
        capacity = scale_by_hours(
            capacity, teaching_hours(supervisor, config.target_level), average_hours
        )
    return max(0, capacity)


def has_available_capacity(target: MatchTarget, current_load: int) -> bool:
    return current_load < target.capacity


def charge_score(current_load: int, capacity: int) -> float:
    """Remaining room as a score: 100 when empty, 0 when full or overflowing."""
    if capacity <= 0 or current_load >= capacity:
        return 0.0
    return round(100.0 * (1.0 - current_load / capacity), 2)


def load_ratio(load: int, capacity: int) -> float:
    if capacity <= 0:
        return 1.0 if load == 0 else float(load)
    return load / capacity


def calculate_equilibrage_score(
    target: MatchTarget, current_load: int, all_loads: Mapping[str, float]
) -> float:
    """Score pairings that keep load ratios flat.

    ``all_loads`` maps every target id to its current load ratio. The score
    drops linearly with the gap between this target's ratio and the
    least-loaded target's ratio.
    """
    ratio = load_ratio(current_load, target.balance_capacity)
    least = min(all_loads.values(), default=ratio)
    return round(max(0.0, min(100.0, 100.0 * (1.0 - (ratio - least)))), 2)


@dataclass
class ChargeStats:
    total_capacity: int
    total_load: int
    occupancy: float
    mean_ratio: float
    stddev_ratio: float
    min_ratio: float
    max_ratio: float
    overloaded: List[str] = field(default_factory=list)
    underloaded: List[str] = field(default_factory=list)
    ratios: Dict[str, float] = field(default_factory=dict)


def calculate_charge_stats(targets: List[MatchTarget], loads: Mapping[str, int]) -> ChargeStats:
    """Aggregate load ratios across targets for equilibrage diagnostics."""
    ratios = {
        t.target_id: round(load_ratio(loads.get(t.target_id, 0), t.capacity), 4) for t in targets
    }
    values = list(ratios.values())
    total_capacity = sum(t.capacity for t in targets)
    total_load = sum(loads.get(t.target_id, 0) for t in targets)
    mean = sum(values) / len(values) if values else 0.0
    variance = sum((v - mean) ** 2 for v in values) / len(values) if values else 0.0
    return ChargeStats(
        total_capacity=total_capacity,
        total_load=total_load,
        occupancy=round(total_load / total_capacity, 4) if total_capacity else 0.0,
        mean_ratio=round(mean, 4),
        stddev_ratio=round(math.sqrt(variance), 4),
        min_ratio=min(values, default=0.0),
        max_ratio=max(values, default=0.0),
        overloaded=[tid for tid, r in ratios.items() if r > 1.0],
        underloaded=[tid for tid, r in ratios.items() if r < 0.5],
        ratios=ratios,
    )


class LoadCounter:
    """Per-target load for one solve. Never shared between solves."""

    def __init__(self, target_ids: Iterable[str]):
        self._loads: Dict[str, int] = {tid: 0 for tid in target_ids}
        self._genders: Dict[str, Counter] = defaultdict(Counter)
        # (targets mapping, ratios) valid until the next add or remove
        self._ratio_cache: Optional[Tuple[Mapping[str, MatchTarget], Dict[str, float]]] = None

    def load(self, target_id: str) -> int:
        return self._loads.get(target_id, 0)

    def gender_count(self, target_id: str, gender: Optional[str]) -> int:
        if not gender:
            return 0
        return self._genders[target_id][gender]

    def add(self, target_id: str, student: Student) -> None:
        self._ratio_cache = None
        self._loads[target_id] = self._loads.get(target_id, 0) + 1
        if student.gender:
            self._genders[target_id][student.gender] += 1

    def remove(self, target_id: str, student: Student) -> None:
        if self._loads.get(target_id, 0) <= 0:
            raise ValueError(f"Removing {student.student_id} from empty target {target_id}")
        self._ratio_cache = None
        self._loads[target_id] -= 1
        if student.gender:
            self._genders[target_id][student.gender] -= 1

    @contextmanager
    def released(self, *placements: Tuple[str, Student]) -> Iterator["LoadCounter"]:
        """Temporarily remove the given (target, student) placements, restoring them on exit."""
        done: List[Tuple[str, Student]] = []
        try:
            for target_id, student in placements:
                self.remove(target_id, student)
                done.append((target_id, student))
            yield self
        finally:
            for target_id, student in reversed(done):
                self.add(target_id, student)

    def ratios(self, targets: Mapping[str, MatchTarget]) -> Dict[str, float]:
        """Load ratio of every target in ``targets`` (target id -> target), cached until the loads change."""
        if self._ratio_cache is not None and self._ratio_cache[0] is targets:
            return self._ratio_cache[1]
        ratios = {
            tid: load_ratio(self.load(tid), t.balance_capacity) for tid, t in targets.items()
        }
        self._ratio_cache = (targets, ratios)
        return ratios

    def as_dict(self) -> Dict[str, int]:
        return dict(self._loads)
