"""
Domain model for the student matching engine.

Students are assigned to a target: an individual supervisor (standard and
internship scenarios) or a jury of supervisors (oral-exam scenario). Inputs
are treated as read-only snapshots for the duration of a solve.
"""

from typing import List, Dict, Optional, Tuple, FrozenSet, Iterable
from dataclasses import dataclass, field
from enum import Enum
import re

from groupit_matching.geometry import GeoPoint


class InvalidInputError(ValueError):
    """Raised when the input shape itself is broken (missing ids, negative capacities, ...)."""


class PriorityLevel(Enum):
    OFF = "off"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


PRIORITY_WEIGHTS: Dict[PriorityLevel, int] = {
    PriorityLevel.OFF: 0,
    PriorityLevel.LOW: 1,
    PriorityLevel.NORMAL: 2,
    PriorityLevel.HIGH: 4,
}


class CriterionKind(Enum):
    DISTANCE = "distance"
    CAPACITY = "capacity"
    EQUILIBRAGE = "equilibrage"
    SUBJECT_MATCH = "subject_match"
    RELATIONAL = "relational"
    MIXITY = "mixity"
    CLASS_ADVISOR = "class_advisor"
    STUDENTS_IN_CLASS = "students_in_class"
    TEACHING_WEIGHT = "teaching_weight"
    CUSTOM_FIELD = "custom_field"
    MANUAL_OVERRIDE = "manual_override"


class ScenarioKind(Enum):
    STANDARD = "standard"
    ORAL_EXAM = "oral_exam"
    INTERNSHIP = "internship"


class TargetKind(Enum):
    SUPERVISOR = "supervisor"
    JURY = "jury"


class GeocodingStatus(Enum):
    PENDING = "pending"
    OK = "ok"
    MANUAL = "manual"
    ERROR = "error"


class Provenance(Enum):
    ALGORITHM = "algorithm"
    MANUAL = "manual"


class ProblemType(Enum):
    NO_SOURCE_DATA = "no_source_data"
    NOT_GEOCODED = "not_geocoded"
    TOO_FAR = "too_far"
    CAPACITY = "capacity"
    UNKNOWN = "unknown"


# Lower rank wins when several causes apply to the same student
PROBLEM_PRIORITY: Dict[ProblemType, int] = {
    ProblemType.NO_SOURCE_DATA: 0,
    ProblemType.NOT_GEOCODED: 1,
    ProblemType.TOO_FAR: 2,
    ProblemType.CAPACITY: 3,
    ProblemType.UNKNOWN: 4,
}


class ConfigurationProblemType(Enum):
    NO_STUDENTS = "no_students"
    NO_TARGETS = "no_targets"
    NO_JURIES = "no_juries"
    EMPTY_JURY = "empty_jury"
    ZERO_CAPACITY = "zero_capacity"


class ConstraintKind(Enum):
    MUST_BE_WITH = "must_be_with"
    MUST_NOT_BE_WITH = "must_not_be_with"


class ExclusionKind(Enum):
    STUDENT = "student"
    CLASS = "class"
    ZONE = "zone"


_LEVEL_PATTERN = re.compile(r"^\s*([3-6])")


def class_level(class_name: Optional[str]) -> Optional[str]:
    """Return the school level of a class name ("3A" -> "3e"), or None if it has none."""
    if not class_name:
        return None
    match = _LEVEL_PATTERN.match(class_name)
    return f"{match.group(1)}e" if match else None


@dataclass(frozen=True)
class PairingConstraint:
    kind: ConstraintKind
    supervisor_id: str


@dataclass(frozen=True)
class Exclusion:
    kind: ExclusionKind
    value: str


@dataclass
class Student:
    student_id: str
    class_name: str = ""
    subjects: List[str] = field(default_factory=list)
    internship_id: Optional[str] = None
    constraints: List[PairingConstraint] = field(default_factory=list)
    gender: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    custom_fields: Dict[str, str] = field(default_factory=dict)
    full_name: Optional[str] = None

    def __repr__(self):
        return f"Student({self.student_id}, class={self.class_name}, subjects={self.subjects})"

    def display_name(self) -> str:
        """Return name if available, otherwise ID."""
        return self.full_name if self.full_name else self.student_id

    @property
    def level(self) -> Optional[str]:
        return class_level(self.class_name)

    def supervisors_with(self, kind: ConstraintKind) -> List[str]:
        return [c.supervisor_id for c in self.constraints if c.kind == kind]


@dataclass
class Supervisor:
    supervisor_id: str
    subject: str = ""
    secondary_subjects: List[str] = field(default_factory=list)
    classes: List[str] = field(default_factory=list)
    home: Optional[GeoPoint] = None
    commune: Optional[str] = None
    capacity_override: Optional[int] = None
    teaching_hours_override: Dict[str, float] = field(default_factory=dict)
    is_class_advisor: bool = False
    advised_class: Optional[str] = None
    exclusions: List[Exclusion] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    custom_fields: Dict[str, str] = field(default_factory=dict)
    full_name: Optional[str] = None

    def __repr__(self):
        return f"Supervisor({self.supervisor_id}, subject={self.subject})"

    def __hash__(self):
        return hash(self.supervisor_id)

    def __eq__(self, other):
        return isinstance(other, Supervisor) and self.supervisor_id == other.supervisor_id

    def display_name(self) -> str:
        """Return name if available, otherwise ID."""
        return self.full_name if self.full_name else self.supervisor_id

    def subjects(self) -> List[str]:
        return [s for s in [self.subject, *self.secondary_subjects] if s]


@dataclass
class Jury:
    jury_id: str
    member_ids: List[str] = field(default_factory=list)
    max_capacity: int = 8
    name: Optional[str] = None

    def __repr__(self):
        return f"Jury({self.jury_id}, members={self.member_ids}, capacity={self.max_capacity})"

    def display_name(self) -> str:
        return self.name if self.name else self.jury_id


@dataclass
class Internship:
    internship_id: str
    student_id: str
    location: Optional[GeoPoint] = None
    company: Optional[str] = None
    address: Optional[str] = None
    commune: Optional[str] = None
    status: GeocodingStatus = GeocodingStatus.PENDING

    @property
    def is_geocoded(self) -> bool:
        return self.location is not None and self.status in (
            GeocodingStatus.OK,
            GeocodingStatus.MANUAL,
        )


@dataclass
class CriterionConfig:
    """One configured criterion: its priority, hard-constraint flag and options."""

    kind: CriterionKind
    priority: PriorityLevel = PriorityLevel.NORMAL
    hard: bool = False
    weight_by_hours: bool = False
    field_name: Optional[str] = None  # only used by CUSTOM_FIELD

    @property
    def is_active(self) -> bool:
        return self.priority != PriorityLevel.OFF


@dataclass
class CapacityConfig:
    """Capacity defaults: a global default, per-level defaults and per-level coefficients.

    A coefficient adds ``round(hours * coefficient)`` extra charges for the
    teaching hours a supervisor has at that level.
    """

    default_capacity: int = 5
    level_defaults: Dict[str, int] = field(default_factory=dict)
    level_coefficients: Dict[str, float] = field(default_factory=dict)
    target_level: str = "3e"

    def base_for_level(self, level: Optional[str]) -> int:
        if level is not None and level in self.level_defaults:
            return self.level_defaults[level]
        return self.default_capacity


@dataclass
class StudentFilter:
    classes: List[str] = field(default_factory=list)
    levels: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    student_ids: List[str] = field(default_factory=list)


@dataclass
class SupervisorFilter:
    subjects: List[str] = field(default_factory=list)
    classes: List[str] = field(default_factory=list)
    levels: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    supervisor_ids: List[str] = field(default_factory=list)
    advisors_only: bool = False


@dataclass
class ScenarioConfig:
    scenario_id: str
    kind: ScenarioKind = ScenarioKind.STANDARD
    criteria: List[CriterionConfig] = field(default_factory=list)
    capacity: CapacityConfig = field(default_factory=CapacityConfig)
    max_distance_km: float = 25.0
    max_duration_min: Optional[float] = None
    average_speed_kmh: float = 40.0
    student_filter: StudentFilter = field(default_factory=StudentFilter)
    supervisor_filter: SupervisorFilter = field(default_factory=SupervisorFilter)
    name: Optional[str] = None

    def criterion(self, kind: CriterionKind) -> Optional[CriterionConfig]:
        for c in self.criteria:
            if c.kind == kind:
                return c
        return None


@dataclass
class MatchTarget:
    """A supervisor or a jury, normalized to the shape the scoring engine works on."""

    target_id: str
    kind: TargetKind
    capacity: int
    balance_capacity: int
    subjects: FrozenSet[str] = frozenset()
    classes: FrozenSet[str] = frozenset()
    member_ids: Tuple[str, ...] = ()
    advised_classes: FrozenSet[str] = frozenset()
    home: Optional[GeoPoint] = None
    commune: Optional[str] = None
    exclusions: Tuple[Exclusion, ...] = ()
    teaching_hours: float = 0.0
    custom_fields: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    name: Optional[str] = None

    def __repr__(self):
        return f"MatchTarget({self.target_id}, kind={self.kind.value}, capacity={self.capacity})"

    def display_name(self) -> str:
        return self.name if self.name else self.target_id

    def involves(self, supervisor_id: str) -> bool:
        return supervisor_id == self.target_id or supervisor_id in self.member_ids


@dataclass(frozen=True)
class CandidatePair:
    """A pre-computed (student, supervisor) pair within the distance cutoff."""

    student_id: str
    supervisor_id: str
    distance_km: float
    duration_min: int


@dataclass
class Explanation:
    dominant_reason: str
    criteria_used: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    subject_match: Optional[bool] = None


@dataclass
class Assignment:
    student_id: str
    scenario_id: str
    score: float
    breakdown: Dict[str, float]
    explanation: Explanation
    provenance: Provenance = Provenance.ALGORITHM
    supervisor_id: Optional[str] = None
    jury_id: Optional[str] = None
    distance_km: Optional[float] = None
    duration_min: Optional[int] = None

    def __repr__(self):
        return f"Assignment({self.student_id} -> {self.target_id}, score={self.score})"

    @property
    def target_id(self) -> str:
        return self.jury_id if self.jury_id is not None else self.supervisor_id


@dataclass
class UnassignedStudent:
    student_id: str
    reasons: List[str]
    problem_type: ProblemType


@dataclass
class ConfigurationProblem:
    problem_type: ConfigurationProblemType
    details: str
    target_id: Optional[str] = None
    blocking: bool = True


@dataclass
class SolverConfig:
    """Configuration for the greedy + local search pipeline."""

    MAX_ITERATIONS: int = 200
    USE_LOCAL_SEARCH: bool = True
    MIN_IMPROVEMENT: float = 0.01
    LOCK_EXISTING: bool = True
    TIME_LIMIT_SECONDS: Optional[float] = None  # wall-clock cap on local search, None for none


def ensure_unique_ids(ids: Iterable[Optional[str]], label: str) -> None:
    """Raise InvalidInputError on a missing or duplicated identifier."""
    seen = set()
    for identifier in ids:
        if not identifier:
            raise InvalidInputError(f"{label} without identifier")
        if identifier in seen:
            raise InvalidInputError(f"Duplicate {label} identifier: {identifier}")
        seen.add(identifier)


def validate_students(students: List[Student]) -> None:
    ensure_unique_ids((s.student_id for s in students), "student")


def validate_supervisors(supervisors: List[Supervisor]) -> None:
    ensure_unique_ids((s.supervisor_id for s in supervisors), "supervisor")
    for supervisor in supervisors:
        if supervisor.capacity_override is not None and supervisor.capacity_override < 0:
            raise InvalidInputError(
                f"Negative capacity override for supervisor {supervisor.supervisor_id}"
            )


def validate_capacity_config(config: CapacityConfig) -> None:
    values = [config.default_capacity, *config.level_defaults.values()]
    if any(v < 0 for v in values):
        raise InvalidInputError("Capacity defaults must not be negative")
