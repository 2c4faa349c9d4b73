"""
Scoring engine: hard-constraint gate, weighted multi-criteria score of one
(student, target) pairing, and the candidate matrix consumed by the solver.
"""

from typing import List, Dict, Optional, Tuple, Iterable
from dataclasses import dataclass, field
import logging

from groupit_matching.capacity import (
    LoadCounter,
    average_teaching_hours,
    calculate_capacity,
    has_available_capacity,
    normalize_subject,
    scale_by_hours,
    teaching_hours,
)
from groupit_matching.criteria import (
    HardConstraintResult,
    ScoringContext,
    check_distance_limits,
    subject_matches,
)
from groupit_matching.models import (
    ConstraintKind,
    CriterionKind,
    Exclusion,
    ExclusionKind,
    Explanation,
    MatchTarget,
    ProblemType,
    ScenarioConfig,
    Student,
    Supervisor,
    TargetKind,
)

logger = logging.getLogger(__name__)


@dataclass
class PairScore:
    score: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    reasons: Dict[str, str] = field(default_factory=dict)
    contributions: Dict[str, float] = field(default_factory=dict)


@dataclass
class Candidate:
    target_id: str
    score: float
    breakdown: Dict[str, float]


@dataclass
class CandidateMatrix:
    """Valid targets per student (in target order) and the rejected ones with their cause."""

    candidates: Dict[str, List[Candidate]] = field(default_factory=dict)
    rejections: Dict[str, List[Tuple[str, HardConstraintResult]]] = field(default_factory=dict)

    def valid_target_ids(self, student_id: str) -> List[str]:
        return [c.target_id for c in self.candidates.get(student_id, [])]

    def is_valid(self, student_id: str, target_id: str) -> bool:
        return any(c.target_id == target_id for c in self.candidates.get(student_id, []))


def _excluded_by(exclusion: Exclusion, student: Student, ctx: ScoringContext) -> bool:
    if exclusion.kind == ExclusionKind.STUDENT:
        return exclusion.value == student.student_id
    if exclusion.kind == ExclusionKind.CLASS:
        return exclusion.value == student.class_name
    internship = ctx.internship_for(student)
    if internship is None:
        return False
    places = " ".join(p for p in (internship.address, internship.commune) if p).lower()
    zone = exclusion.value.strip().lower()
    return bool(zone) and zone in places


def _check_pairing_constraints(
    student: Student, target: MatchTarget, ctx: ScoringContext
) -> Optional[HardConstraintResult]:
    for supervisor_id in student.supervisors_with(ConstraintKind.MUST_NOT_BE_WITH):
        if target.involves(supervisor_id):
            return HardConstraintResult.failed(
                CriterionKind.RELATIONAL,
                ProblemType.UNKNOWN,
                f"Must not be with {supervisor_id}",
            )
    for exclusion in target.exclusions:
        if _excluded_by(exclusion, student, ctx):
            return HardConstraintResult.failed(
                CriterionKind.RELATIONAL,
                ProblemType.UNKNOWN,
                f"Excluded by {target.target_id} ({exclusion.kind.value} {exclusion.value})",
            )
    return None


def validate_hard_constraints(
    student: Student,
    target: MatchTarget,
    ctx: ScoringContext,
    loads: Optional[LoadCounter] = None,
) -> HardConstraintResult:
    """Check every hard constraint for one pairing, cheapest first, stopping at the first failure.

    Capacity depends on the current loads and is only checked when ``loads``
    is given.
    """
    failure = _check_pairing_constraints(student, target, ctx)
    if failure is not None:
        return failure

    relational = ctx.criterion(CriterionKind.RELATIONAL)
    if relational is not None and relational.hard:
        failure = relational.behaviour.hard_check(student, target, ctx, relational.config)
        if failure is not None:
            return failure

    if loads is not None and ctx.capacity_is_hard:
        load = loads.load(target.target_id)
        if not has_available_capacity(target, load):
            return HardConstraintResult.failed(
                CriterionKind.CAPACITY,
                ProblemType.CAPACITY,
                f"{target.target_id} full ({load}/{target.capacity})",
            )

    hard = [
        rc
        for rc in ctx.criteria
        if rc.hard and rc.behaviour.hard_check is not None and rc.kind != CriterionKind.RELATIONAL
    ]
    hard.sort(key=lambda rc: rc.behaviour.hard_rank)
    distance_checked = False
    for rc in hard:
        failure = rc.behaviour.hard_check(student, target, ctx, rc.config)
        distance_checked = distance_checked or rc.kind == CriterionKind.DISTANCE
        if failure is not None:
            return failure

    # Pre-filtered pairs: an absent pair fails even when distance is only scored
    if (
        not distance_checked
        and ctx.candidate_pairs is not None
        and (student.student_id, target.target_id) not in ctx.candidate_pairs
    ):
        failure = check_distance_limits(student, target, ctx)
        if failure is not None:
            return failure

    return HardConstraintResult.ok()


def score_pair(
    student: Student, target: MatchTarget, ctx: ScoringContext, loads: LoadCounter
) -> PairScore:
    """Weighted mean of every active criterion's sub-score, in [0, 100]."""
    breakdown: Dict[str, float] = {}
    reasons: Dict[str, str] = {}
    contributions: Dict[str, float] = {}
    weighted_sum = 0.0
    total_weight = 0
    for rc in ctx.criteria:
        sub_score, reason = rc.score(student, target, ctx, loads)
        sub_score = max(0.0, min(100.0, sub_score))
        breakdown[rc.key] = sub_score
        reasons[rc.key] = reason
        contributions[rc.key] = sub_score * rc.weight
        weighted_sum += sub_score * rc.weight
        total_weight += rc.weight
    score = round(weighted_sum / total_weight, 2) if total_weight else 0.0
    return PairScore(score, breakdown, reasons, contributions)


def build_explanation(
    student: Student, target: MatchTarget, pair: PairScore, ctx: ScoringContext
) -> Explanation:
    if pair.contributions:
        dominant_key = max(pair.contributions, key=pair.contributions.get)
        dominant = pair.reasons[dominant_key]
    else:
        dominant = "No active criteria"
    subject_match = None
    if ctx.criterion(CriterionKind.SUBJECT_MATCH) is not None:
        subject_match = subject_matches(student, target)
    return Explanation(
        dominant_reason=dominant,
        criteria_used=list(pair.breakdown),
        reasons=[f"{key}: {reason}" for key, reason in pair.reasons.items()],
        subject_match=subject_match,
    )


def evaluate_all_pairs(
    students: Iterable[Student],
    targets: Iterable[MatchTarget],
    ctx: ScoringContext,
    loads: Optional[LoadCounter] = None,
) -> CandidateMatrix:
    """Score every pairing that passes the static hard constraints.

    Scores are computed against ``loads`` (empty loads when omitted).
    Capacity is left to the solver since it changes while assigning.
    """
    targets = list(targets)
    if loads is None:
        loads = LoadCounter(t.target_id for t in targets)
    matrix = CandidateMatrix()
    for student in students:
        valid: List[Candidate] = []
        rejected: List[Tuple[str, HardConstraintResult]] = []
        for target in targets:
            result = validate_hard_constraints(student, target, ctx)
            if not result:
                rejected.append((target.target_id, result))
                continue
            pair = score_pair(student, target, ctx, loads)
            valid.append(Candidate(target.target_id, pair.score, pair.breakdown))
        matrix.candidates[student.student_id] = valid
        matrix.rejections[student.student_id] = rejected
    logger.debug(
        "Candidate matrix: %d valid pairs, %d rejected",
        sum(len(v) for v in matrix.candidates.values()),
        sum(len(v) for v in matrix.rejections.values()),
    )
    return matrix


def find_best_matches_for_student(student_id: str, matrix: CandidateMatrix) -> List[Candidate]:
    """Valid targets for one student, best score first (ties keep target order)."""
    return sorted(matrix.candidates.get(student_id, []), key=lambda c: -c.score)


def build_supervisor_targets(
    supervisors: List[Supervisor], scenario: ScenarioConfig
) -> List[MatchTarget]:
    """Normalize supervisors into targets with capacities computed for the scenario."""
    capacity_criterion = scenario.criterion(CriterionKind.CAPACITY)
    equilibrage_criterion = scenario.criterion(CriterionKind.EQUILIBRAGE)
    weight_capacity = bool(capacity_criterion and capacity_criterion.weight_by_hours)
    weight_balance = bool(equilibrage_criterion and equilibrage_criterion.weight_by_hours)

    level = scenario.capacity.target_level
    hours = {s.supervisor_id: teaching_hours(s, level) for s in supervisors}
    average = average_teaching_hours(hours.values())

    targets: List[MatchTarget] = []
    for supervisor in supervisors:
        capacity = calculate_capacity(supervisor, scenario.capacity, weight_capacity, average)
        balance_capacity = capacity
        if weight_balance and not weight_capacity:
            balance_capacity = scale_by_hours(capacity, hours[supervisor.supervisor_id], average)
        advised = (
            frozenset([supervisor.advised_class])
            if supervisor.is_class_advisor and supervisor.advised_class
            else frozenset()
        )
        targets.append(
            MatchTarget(
                target_id=supervisor.supervisor_id,
                kind=TargetKind.SUPERVISOR,
                capacity=capacity,
                balance_capacity=balance_capacity,
                subjects=frozenset(normalize_subject(s) for s in supervisor.subjects()),
                classes=frozenset(supervisor.classes),
                advised_classes=advised,
                home=supervisor.home,
                commune=supervisor.commune,
                exclusions=tuple(supervisor.exclusions),
                teaching_hours=hours[supervisor.supervisor_id],
                custom_fields={
                    k: frozenset([v.strip().lower()]) for k, v in supervisor.custom_fields.items() if v
                },
                name=supervisor.display_name(),
            )
        )
    return targets
