"""
Criterion catalogue.

Each CriterionKind maps to a behaviour: a scoring function returning a
sub-score in [0, 100] with a short reason, and optionally a hard check used
when the scenario flags the criterion as a hard constraint. A scenario's
criteria are resolved once per solve into an ordered list.
"""

from typing import List, Dict, Optional, Tuple, Callable, Mapping, Iterable
from dataclasses import dataclass, field, replace
import logging

from groupit_matching.capacity import (
    LoadCounter,
    calculate_equilibrage_score,
    charge_score,
    load_ratio,
    normalize_subject,
    normalized_subject_weight,
)
from groupit_matching.geometry import (
    commune_proximity_score,
    distance_to_score,
    estimate_duration_min,
    haversine_km,
)
from groupit_matching.models import (
    PRIORITY_WEIGHTS,
    CandidatePair,
    ConstraintKind,
    CriterionConfig,
    CriterionKind,
    Internship,
    MatchTarget,
    PriorityLevel,
    ProblemType,
    ScenarioConfig,
    ScenarioKind,
    Student,
)

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 50.0
SUBJECT_MISMATCH_SCORE = 30.0
OUTSIDE_CLASS_SCORE = 30.0


@dataclass
class HardConstraintResult:
    passed: bool
    criterion: Optional[CriterionKind] = None
    problem_type: Optional[ProblemType] = None
    details: str = ""

    def __bool__(self):
        return self.passed

    @classmethod
    def ok(cls) -> "HardConstraintResult":
        return cls(passed=True)

    @classmethod
    def failed(
        cls, criterion: CriterionKind, problem_type: ProblemType, details: str
    ) -> "HardConstraintResult":
        return cls(passed=False, criterion=criterion, problem_type=problem_type, details=details)


Scorer = Callable[
    [Student, MatchTarget, "ScoringContext", LoadCounter, CriterionConfig], Tuple[float, str]
]
HardCheck = Callable[
    [Student, MatchTarget, "ScoringContext", CriterionConfig], Optional[HardConstraintResult]
]


@dataclass(frozen=True)
class CriterionBehaviour:
    scorer: Scorer
    hard_check: Optional[HardCheck] = None
    hard_rank: int = 10  # cheaper checks run first


@dataclass
class ResolvedCriterion:
    config: CriterionConfig
    weight: int
    behaviour: CriterionBehaviour

    @property
    def kind(self) -> CriterionKind:
        return self.config.kind

    @property
    def key(self) -> str:
        if self.kind == CriterionKind.CUSTOM_FIELD and self.config.field_name:
            return f"{self.kind.value}:{self.config.field_name}"
        return self.kind.value

    @property
    def hard(self) -> bool:
        return self.config.hard

    def score(
        self, student: Student, target: MatchTarget, ctx: "ScoringContext", loads: LoadCounter
    ) -> Tuple[float, str]:
        return self.behaviour.scorer(student, target, ctx, loads, self.config)


@dataclass
class ScoringContext:
    """Read-only inputs shared by every pairing evaluated in one solve."""

    scenario: ScenarioConfig
    criteria: List[ResolvedCriterion]
    targets: Dict[str, MatchTarget]
    internships_by_student: Dict[str, Internship] = field(default_factory=dict)
    candidate_pairs: Optional[Dict[Tuple[str, str], CandidatePair]] = None
    baseline: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        scenario: ScenarioConfig,
        targets: Iterable[MatchTarget],
        internships: Iterable[Internship] = (),
        candidate_pairs: Optional[Iterable[CandidatePair]] = None,
        baseline: Optional[Mapping[str, str]] = None,
    ) -> "ScoringContext":
        pairs = None
        if candidate_pairs is not None:
            pairs = {(p.student_id, p.supervisor_id): p for p in candidate_pairs}
        return cls(
            scenario=scenario,
            criteria=resolve_criteria(effective_criteria(scenario)),
            targets={t.target_id: t for t in targets},
            internships_by_student={i.student_id: i for i in internships},
            candidate_pairs=pairs,
            baseline=dict(baseline or {}),
        )

    def criterion(self, kind: CriterionKind) -> Optional[ResolvedCriterion]:
        for rc in self.criteria:
            if rc.kind == kind:
                return rc
        return None

    @property
    def capacity_is_hard(self) -> bool:
        """Capacity is enforced unless an active capacity criterion is explicitly soft."""
        rc = self.criterion(CriterionKind.CAPACITY)
        return rc is None or rc.hard

    def internship_for(self, student: Student) -> Optional[Internship]:
        return self.internships_by_student.get(student.student_id)

    def distance_info(self, student: Student, target: MatchTarget) -> Optional[Tuple[float, int]]:
        """(distance km, duration min) between a student's internship and a target, if known."""
        if self.candidate_pairs is not None:
            pair = self.candidate_pairs.get((student.student_id, target.target_id))
            if pair is not None:
                return pair.distance_km, pair.duration_min
        internship = self.internship_for(student)
        if internship is None or not internship.is_geocoded or target.home is None:
            return None
        distance = round(haversine_km(internship.location, target.home), 3)
        return distance, estimate_duration_min(distance, self.scenario.average_speed_kmh)


def _matched_subject(student: Student, target: MatchTarget) -> Optional[str]:
    for subject in student.subjects:
        if normalize_subject(subject) in target.subjects:
            return subject
    return None


def subject_matches(student: Student, target: MatchTarget) -> Optional[bool]:
    """True/False for a declared subject, None when the student declared none."""
    if not student.subjects:
        return None
    return _matched_subject(student, target) is not None


def _score_distance(student, target, ctx, loads, config):
    info = ctx.distance_info(student, target)
    if info is not None:
        distance, duration = info
        score = distance_to_score(distance, ctx.scenario.max_distance_km)
        return score, f"Distance {distance:.1f} km (~{duration} min)"
    internship = ctx.internship_for(student)
    place = (internship.commune or internship.address) if internship else None
    if target.commune and place:
        score = commune_proximity_score(target.commune, place)
        return score, f"Commune proximity {score:.0f}"
    return NEUTRAL_SCORE, "No location available"


def _score_capacity(student, target, ctx, loads, config):
    load = loads.load(target.target_id)
    return charge_score(load, target.capacity), f"Load {load}/{target.capacity}"


def _score_equilibrage(student, target, ctx, loads, config):
    load = loads.load(target.target_id)
    score = calculate_equilibrage_score(target, load, loads.ratios(ctx.targets))
    ratio = load_ratio(load, target.balance_capacity)
    suffix = " (hours-weighted)" if config.weight_by_hours else ""
    if ratio < 0.5:
        return score, f"Lightly loaded{suffix}"
    if ratio < 0.8:
        return score, f"Balanced load{suffix}"
    return score, f"Heavily loaded{suffix}"


def _score_subject_match(student, target, ctx, loads, config):
    if not student.subjects:
        return NEUTRAL_SCORE, "No oral subject declared"
    matched = _matched_subject(student, target)
    if matched is not None:
        return 100.0, f"Subject match: {matched}"
    return SUBJECT_MISMATCH_SCORE, f"No subject match ({'/'.join(student.subjects)})"


def _score_relational(student, target, ctx, loads, config):
    wanted = student.supervisors_with(ConstraintKind.MUST_BE_WITH)
    if any(target.involves(sid) for sid in wanted):
        return 100.0, "Requested pairing"
    return NEUTRAL_SCORE, "No pairing request"


def _score_mixity(student, target, ctx, loads, config):
    if not student.gender:
        return NEUTRAL_SCORE, "Gender not set"
    total = loads.load(target.target_id)
    if total == 0:
        return 100.0, "Empty group"
    same = loads.gender_count(target.target_id, student.gender)
    return round(100.0 * (1.0 - same / total), 2), f"{same}/{total} with same gender"


def _score_class_advisor(student, target, ctx, loads, config):
    if not student.class_name:
        return NEUTRAL_SCORE, "Class not set"
    if student.class_name in target.advised_classes:
        return 100.0, f"Class advisor of {student.class_name}"
    return 0.0, "Not the class advisor"


def _score_students_in_class(student, target, ctx, loads, config):
    if not student.class_name:
        return NEUTRAL_SCORE, "Class not set"
    if student.class_name in target.classes:
        return 100.0, f"Teaches class {student.class_name}"
    return OUTSIDE_CLASS_SCORE, "Does not teach the student's class"


def _score_teaching_weight(student, target, ctx, loads, config):
    if not student.subjects:
        return NEUTRAL_SCORE, "No oral subject declared"
    if _matched_subject(student, target) is not None:
        return 100.0, "Subject covered"
    level = student.level or ctx.scenario.capacity.target_level
    weight = normalized_subject_weight(student.subjects[0], level)
    return round(100.0 * (1.0 - weight), 2), f"Uncovered subject weight {weight:.2f}"


def _custom_values(student, target, config):
    name = config.field_name
    if not name:
        return None, frozenset()
    value = student.custom_fields.get(name)
    return (value.strip().lower() if value else None), target.custom_fields.get(name, frozenset())


def _score_custom_field(student, target, ctx, loads, config):
    value, target_values = _custom_values(student, target, config)
    if not value or not target_values:
        return NEUTRAL_SCORE, f"Field {config.field_name} not set"
    if value in target_values:
        return 100.0, f"Same {config.field_name}"
    return 0.0, f"Different {config.field_name}"


def _score_manual_override(student, target, ctx, loads, config):
    previous = ctx.baseline.get(student.student_id)
    if previous is None:
        return NEUTRAL_SCORE, "No previous assignment"
    if previous == target.target_id:
        return 100.0, "Kept from previous assignment"
    return 0.0, "Moved from previous assignment"


def _check_relational(student, target, ctx, config):
    wanted = student.supervisors_with(ConstraintKind.MUST_BE_WITH)
    if wanted and not any(target.involves(sid) for sid in wanted):
        return HardConstraintResult.failed(
            CriterionKind.RELATIONAL,
            ProblemType.UNKNOWN,
            f"Must be with {', '.join(wanted)}",
        )
    return None


def _check_custom_field(student, target, ctx, config):
    value, target_values = _custom_values(student, target, config)
    if value and target_values and value not in target_values:
        return HardConstraintResult.failed(
            CriterionKind.CUSTOM_FIELD,
            ProblemType.UNKNOWN,
            f"Field {config.field_name} differs",
        )
    return None


def _check_subject_match(student, target, ctx, config):
    if subject_matches(student, target) is False:
        return HardConstraintResult.failed(
            CriterionKind.SUBJECT_MATCH,
            ProblemType.UNKNOWN,
            f"Subject {'/'.join(student.subjects)} not covered by {target.target_id}",
        )
    return None


def check_distance_limits(
    student: Student, target: MatchTarget, ctx: ScoringContext
) -> Optional[HardConstraintResult]:
    """Distance and duration limits; also classifies missing data."""
    internship = ctx.internship_for(student)
    if ctx.candidate_pairs is not None:
        if (student.student_id, target.target_id) in ctx.candidate_pairs:
            info = ctx.distance_info(student, target)
        else:
            info = None
    else:
        info = ctx.distance_info(student, target)

    if info is None:
        if internship is None:
            return HardConstraintResult.failed(
                CriterionKind.DISTANCE, ProblemType.NO_SOURCE_DATA, "No internship record"
            )
        if not internship.is_geocoded:
            return HardConstraintResult.failed(
                CriterionKind.DISTANCE,
                ProblemType.NOT_GEOCODED,
                f"Internship {internship.internship_id} not geocoded ({internship.status.value})",
            )
        if target.home is None and ctx.candidate_pairs is None:
            return HardConstraintResult.failed(
                CriterionKind.DISTANCE,
                ProblemType.UNKNOWN,
                f"Supervisor {target.target_id} has no geocoded home",
            )
        return HardConstraintResult.failed(
            CriterionKind.DISTANCE,
            ProblemType.TOO_FAR,
            f"No supervisor within {ctx.scenario.max_distance_km:g} km",
        )

    distance, duration = info
    if distance > ctx.scenario.max_distance_km:
        return HardConstraintResult.failed(
            CriterionKind.DISTANCE,
            ProblemType.TOO_FAR,
            f"{distance:.1f} km exceeds {ctx.scenario.max_distance_km:g} km",
        )
    max_duration = ctx.scenario.max_duration_min
    if max_duration is not None and duration > max_duration:
        return HardConstraintResult.failed(
            CriterionKind.DISTANCE,
            ProblemType.TOO_FAR,
            f"~{duration} min exceeds {max_duration:g} min",
        )
    return None


def _check_distance(student, target, ctx, config):
    return check_distance_limits(student, target, ctx)


CATALOGUE: Dict[CriterionKind, CriterionBehaviour] = {
    CriterionKind.DISTANCE: CriterionBehaviour(_score_distance, _check_distance, hard_rank=3),
    CriterionKind.CAPACITY: CriterionBehaviour(_score_capacity),
    CriterionKind.EQUILIBRAGE: CriterionBehaviour(_score_equilibrage),
    CriterionKind.SUBJECT_MATCH: CriterionBehaviour(
        _score_subject_match, _check_subject_match, hard_rank=2
    ),
    CriterionKind.RELATIONAL: CriterionBehaviour(_score_relational, _check_relational, hard_rank=0),
    CriterionKind.MIXITY: CriterionBehaviour(_score_mixity),
    CriterionKind.CLASS_ADVISOR: CriterionBehaviour(_score_class_advisor),
    CriterionKind.STUDENTS_IN_CLASS: CriterionBehaviour(_score_students_in_class),
    CriterionKind.TEACHING_WEIGHT: CriterionBehaviour(_score_teaching_weight),
    CriterionKind.CUSTOM_FIELD: CriterionBehaviour(
        _score_custom_field, _check_custom_field, hard_rank=1
    ),
    CriterionKind.MANUAL_OVERRIDE: CriterionBehaviour(_score_manual_override),
}

# Kinds that can never be switched off for a scenario kind
FORCED_CRITERIA: Dict[ScenarioKind, CriterionConfig] = {
    ScenarioKind.ORAL_EXAM: CriterionConfig(CriterionKind.SUBJECT_MATCH, PriorityLevel.HIGH),
    ScenarioKind.INTERNSHIP: CriterionConfig(CriterionKind.DISTANCE, PriorityLevel.HIGH, hard=True),
}


def default_criteria(kind: ScenarioKind) -> List[CriterionConfig]:
    """Default criterion set for a new scenario of the given kind."""
    common = [
        CriterionConfig(CriterionKind.CAPACITY, PriorityLevel.NORMAL, hard=True),
        CriterionConfig(CriterionKind.EQUILIBRAGE, PriorityLevel.NORMAL),
        CriterionConfig(CriterionKind.RELATIONAL, PriorityLevel.NORMAL, hard=True),
        CriterionConfig(CriterionKind.MIXITY, PriorityLevel.OFF),
    ]
    if kind == ScenarioKind.ORAL_EXAM:
        return [
            CriterionConfig(CriterionKind.SUBJECT_MATCH, PriorityLevel.HIGH),
            *common,
            CriterionConfig(CriterionKind.STUDENTS_IN_CLASS, PriorityLevel.NORMAL),
            CriterionConfig(CriterionKind.TEACHING_WEIGHT, PriorityLevel.OFF),
        ]
    if kind == ScenarioKind.INTERNSHIP:
        return [
            CriterionConfig(CriterionKind.DISTANCE, PriorityLevel.HIGH, hard=True),
            *common,
            CriterionConfig(CriterionKind.CLASS_ADVISOR, PriorityLevel.LOW),
            CriterionConfig(CriterionKind.STUDENTS_IN_CLASS, PriorityLevel.NORMAL),
        ]
    return [
        CriterionConfig(CriterionKind.DISTANCE, PriorityLevel.NORMAL),
        *common,
        CriterionConfig(CriterionKind.STUDENTS_IN_CLASS, PriorityLevel.LOW),
    ]


def effective_criteria(scenario: ScenarioConfig) -> List[CriterionConfig]:
    """Scenario criteria with the forced criterion of the scenario kind switched on."""
    criteria = list(scenario.criteria)
    forced = FORCED_CRITERIA.get(scenario.kind)
    if forced is None:
        return criteria
    for i, c in enumerate(criteria):
        if c.kind == forced.kind:
            if not c.is_active:
                logger.info("Criterion %s is forced on for %s scenarios", c.kind.value, scenario.kind.value)
                criteria[i] = replace(c, priority=forced.priority)
            return criteria
    return [replace(forced), *criteria]


def resolve_criteria(criteria: List[CriterionConfig]) -> List[ResolvedCriterion]:
    """Active criteria in catalogue order, each bound to its behaviour and weight."""
    order = list(CriterionKind)
    active = [c for c in criteria if c.is_active]
    active.sort(key=lambda c: order.index(c.kind))
    resolved: List[ResolvedCriterion] = []
    seen = set()
    for config in active:
        rc = ResolvedCriterion(config, PRIORITY_WEIGHTS[config.priority], CATALOGUE[config.kind])
        if rc.key in seen:
            logger.warning("Duplicate criterion %s ignored", rc.key)
            continue
        seen.add(rc.key)
        resolved.append(rc)
    return resolved
