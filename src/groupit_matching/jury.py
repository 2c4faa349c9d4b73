"""
Oral-exam variant: students are assigned to juries.

A jury covers the union of its members' subjects. Subject match dominates
the choice of jury: the greedy pass always prefers a jury covering the
student's subject when one has room, and local search never trades a
subject match away. Everything else (capacity, equilibrage, ...) is scored
on the jury's aggregate load exactly as for individual supervisors.
"""

from typing import List, Dict, Optional, Tuple, Any, Mapping, Collection
from dataclasses import replace
from collections import Counter, defaultdict
import logging

from groupit_matching.capacity import (
    average_teaching_hours,
    normalize_subject,
    scale_by_hours,
    teaching_hours,
)
from groupit_matching.criteria import ScoringContext, subject_matches
from groupit_matching.filters import filter_students
from groupit_matching.models import (
    Assignment,
    ConfigurationProblem,
    ConfigurationProblemType,
    CriterionKind,
    InvalidInputError,
    Jury,
    MatchTarget,
    ScenarioConfig,
    ScenarioKind,
    SolverConfig,
    Student,
    Supervisor,
    TargetKind,
    ensure_unique_ids,
    validate_capacity_config,
    validate_students,
    validate_supervisors,
)
from groupit_matching.scoring import PairScore
from groupit_matching.solver import MatchingProfile, MatchingSolver, SolveResult

logger = logging.getLogger(__name__)

_UNCOVERED_RANK = 10**6


def validate_jury_configuration(
    juries: List[Jury], supervisors: List[Supervisor]
) -> List[ConfigurationProblem]:
    """Check jury definitions before solving.

    Broken input (duplicate ids, unknown members, negative capacity) raises
    InvalidInputError. Missing juries or juries without members are returned
    as configuration problems.
    """
    ensure_unique_ids((j.jury_id for j in juries), "jury")
    known = {s.supervisor_id for s in supervisors}
    problems: List[ConfigurationProblem] = []
    if not juries:
        problems.append(
            ConfigurationProblem(ConfigurationProblemType.NO_JURIES, "No jury configured")
        )
    for jury in juries:
        if jury.max_capacity < 0:
            raise InvalidInputError(f"Negative capacity for jury {jury.jury_id}")
        unknown = [m for m in jury.member_ids if m not in known]
        if unknown:
            raise InvalidInputError(f"Jury {jury.jury_id} references unknown supervisors {unknown}")
        if not jury.member_ids:
            problems.append(
                ConfigurationProblem(
                    ConfigurationProblemType.EMPTY_JURY,
                    f"Jury {jury.display_name()} has no member",
                    target_id=jury.jury_id,
                )
            )
        elif jury.max_capacity == 0:
            problems.append(
                ConfigurationProblem(
                    ConfigurationProblemType.ZERO_CAPACITY,
                    f"Jury {jury.display_name()} has zero capacity",
                    target_id=jury.jury_id,
                    blocking=False,
                )
            )
    return problems


def build_jury_targets(
    juries: List[Jury], supervisors: List[Supervisor], scenario: ScenarioConfig
) -> List[MatchTarget]:
    by_id = {s.supervisor_id: s for s in supervisors}
    level = scenario.capacity.target_level
    capacity_criterion = scenario.criterion(CriterionKind.CAPACITY)
    equilibrage_criterion = scenario.criterion(CriterionKind.EQUILIBRAGE)
    weight_capacity = bool(capacity_criterion and capacity_criterion.weight_by_hours)
    weight_balance = bool(equilibrage_criterion and equilibrage_criterion.weight_by_hours)

    hours = {
        j.jury_id: sum(teaching_hours(by_id[m], level) for m in j.member_ids) for j in juries
    }
    average = average_teaching_hours(hours.values())

    targets: List[MatchTarget] = []
    for jury in juries:
        members = [by_id[m] for m in jury.member_ids]
        capacity = jury.max_capacity
        if weight_capacity:
            capacity = scale_by_hours(capacity, hours[jury.jury_id], average)
        balance_capacity = capacity
        if weight_balance and not weight_capacity:
            balance_capacity = scale_by_hours(capacity, hours[jury.jury_id], average)

        custom_fields: Dict[str, set] = defaultdict(set)
        for member in members:
            for key, value in member.custom_fields.items():
                if value:
                    custom_fields[key].add(value.strip().lower())

        targets.append(
            MatchTarget(
                target_id=jury.jury_id,
                kind=TargetKind.JURY,
                capacity=capacity,
                balance_capacity=balance_capacity,
                subjects=frozenset(normalize_subject(s) for m in members for s in m.subjects()),
                classes=frozenset(c for m in members for c in m.classes),
                member_ids=tuple(jury.member_ids),
                advised_classes=frozenset(
                    m.advised_class for m in members if m.is_class_advisor and m.advised_class
                ),
                exclusions=tuple(e for m in members for e in m.exclusions),
                teaching_hours=hours[jury.jury_id],
                custom_fields={k: frozenset(v) for k, v in custom_fields.items()},
                name=jury.display_name(),
            )
        )
    return targets


class JuryProfile(MatchingProfile):
    """Subject match first: in greedy preference, in swaps, and in student ordering."""

    def __init__(self, targets: List[MatchTarget]):
        self.coverage = Counter(subject for t in targets for subject in t.subjects)

    def _rarity(self, student: Student) -> int:
        counts = [self.coverage.get(normalize_subject(s), 0) for s in student.subjects]
        covered = [c for c in counts if c > 0]
        return min(covered) if covered else _UNCOVERED_RANK

    def student_order_key(self, student: Student, valid_count: int, index: int) -> Tuple:
        return (valid_count, self._rarity(student), index)

    def preference_key(self, student: Student, target: MatchTarget, pair: PairScore) -> Tuple:
        return (self.primary_value(student, target), pair.score)

    def primary_value(self, student: Student, target: MatchTarget) -> int:
        return 1 if subject_matches(student, target) else 0

    def extra_stats(self, solver: MatchingSolver, assignments: List[Assignment]) -> Dict[str, Any]:
        students = {s.student_id: s for s in solver.students}
        with_subject = [a for a in assignments if students[a.student_id].subjects]
        matched = [a for a in with_subject if a.explanation.subject_match]
        per_jury: Dict[str, Dict[str, Any]] = {}
        for target in solver.targets:
            members = [a for a in assignments if a.jury_id == target.target_id]
            subjects = Counter(
                s for a in members for s in students[a.student_id].subjects[:1]
            )
            per_jury[target.target_id] = {
                "assigned": len(members),
                "capacity": target.capacity,
                "fill_rate": round(len(members) / target.capacity, 4) if target.capacity else 0.0,
                "subject_matches": sum(1 for a in members if a.explanation.subject_match),
                "subjects": dict(sorted(subjects.items())),
            }
        return {
            "subject_matches": len(matched),
            "students_without_subject": len(assignments) - len(with_subject),
            "subject_match_rate": (
                round(100.0 * len(matched) / len(with_subject), 1) if with_subject else 0.0
            ),
            "juries": per_jury,
        }


def prepare_oral_exam(
    students: List[Student],
    supervisors: List[Supervisor],
    juries: List[Jury],
    scenario: ScenarioConfig,
    baseline: Optional[Mapping[str, str]] = None,
    manual_ids: Collection[str] = (),
    config: Optional[SolverConfig] = None,
) -> MatchingSolver:
    validate_students(students)
    validate_supervisors(supervisors)
    validate_capacity_config(scenario.capacity)
    problems = validate_jury_configuration(juries, supervisors)

    if scenario.kind != ScenarioKind.ORAL_EXAM:
        scenario = replace(scenario, kind=ScenarioKind.ORAL_EXAM)
    students = filter_students(students, scenario.student_filter)
    # Empty juries are reported and left out of the targets
    usable = [j for j in juries if j.member_ids]
    targets = build_jury_targets(usable, supervisors, scenario)
    ctx = ScoringContext.create(scenario, targets, baseline=baseline)
    return MatchingSolver(
        students,
        targets,
        ctx,
        config=config,
        profile=JuryProfile(targets),
        baseline=baseline,
        manual_ids=manual_ids,
        problems=problems,
    )


def solve_oral_exam(
    students: List[Student],
    supervisors: List[Supervisor],
    juries: List[Jury],
    scenario: ScenarioConfig,
    baseline: Optional[Mapping[str, str]] = None,
    manual_ids: Collection[str] = (),
    config: Optional[SolverConfig] = None,
) -> SolveResult:
    """Assign students to juries; configuration problems leave everyone unassigned."""
    return prepare_oral_exam(
        students, supervisors, juries, scenario, baseline, manual_ids, config
    ).solve()
