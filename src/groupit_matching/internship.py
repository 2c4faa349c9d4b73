"""
Internship supervision variant: distance-first matching of students to
supervisors living near the internship location.

Candidate pairs are restricted up front to supervisors within the maximum
distance of each geocoded internship. A missing pair is treated like a
failed hard constraint. Travel duration is only displayed, never scored.
"""

from typing import List, Dict, Optional, Any, Iterable, Mapping, Collection
from dataclasses import replace
import logging

from groupit_matching.criteria import ScoringContext
from groupit_matching.filters import filter_students, filter_supervisors
from groupit_matching.geometry import estimate_duration_min, haversine_km
from groupit_matching.models import (
    PROBLEM_PRIORITY,
    Assignment,
    CandidatePair,
    Internship,
    ProblemType,
    ScenarioConfig,
    ScenarioKind,
    SolverConfig,
    Student,
    Supervisor,
    UnassignedStudent,
    ensure_unique_ids,
    validate_capacity_config,
    validate_students,
    validate_supervisors,
)
from groupit_matching.scoring import build_supervisor_targets
from groupit_matching.solver import MatchingProfile, MatchingSolver, SolveResult

logger = logging.getLogger(__name__)


def build_candidate_pairs(
    internships: Iterable[Internship],
    supervisors: Iterable[Supervisor],
    max_distance_km: float = 25.0,
    average_speed_kmh: float = 40.0,
    max_duration_min: Optional[float] = None,
) -> List[CandidatePair]:
    """All (student, supervisor) pairs within the distance (and duration) cutoff."""
    supervisors = [s for s in supervisors if s.home is not None]
    pairs: List[CandidatePair] = []
    for internship in internships:
        if not internship.is_geocoded:
            continue
        for supervisor in supervisors:
            distance = haversine_km(internship.location, supervisor.home)
            if distance > max_distance_km:
                continue
            duration = estimate_duration_min(distance, average_speed_kmh)
            if max_duration_min is not None and duration > max_duration_min:
                continue
            pairs.append(
                CandidatePair(
                    student_id=internship.student_id,
                    supervisor_id=supervisor.supervisor_id,
                    distance_km=round(distance, 3),
                    duration_min=duration,
                )
            )
    logger.info("Built %d candidate pairs within %.1f km", len(pairs), max_distance_km)
    return pairs


def classify_unassigned_internship(
    student: Student,
    internship: Optional[Internship],
    reachable: List[str],
    valid: List[str],
    rejection_details: List[str],
    max_distance_km: float,
) -> UnassignedStudent:
    """Cause of a missing assignment, in priority order.

    No internship record, then no geocoded location, then no supervisor
    within distance, then capacity exhausted at every reachable supervisor,
    then unknown (every reachable supervisor ruled out by another constraint).
    """
    if internship is None:
        return UnassignedStudent(
            student.student_id, ["No internship record"], ProblemType.NO_SOURCE_DATA
        )
    if not internship.is_geocoded:
        reasons = [f"Internship location not geocoded ({internship.status.value})"]
        if internship.address:
            reasons.append(f"Address: {internship.address}")
        return UnassignedStudent(student.student_id, reasons, ProblemType.NOT_GEOCODED)
    if not reachable:
        return UnassignedStudent(
            student.student_id,
            [f"No supervisor within {max_distance_km:g} km of {internship.company or 'the internship'}"],
            ProblemType.TOO_FAR,
        )
    if valid:
        return UnassignedStudent(
            student.student_id,
            [f"Capacity exhausted at every reachable supervisor ({', '.join(valid)})"],
            ProblemType.CAPACITY,
        )
    return UnassignedStudent(
        student.student_id,
        rejection_details or ["No reachable supervisor satisfies the constraints"],
        ProblemType.UNKNOWN,
    )


class InternshipProfile(MatchingProfile):
    def classify_unassigned(
        self, solver: MatchingSolver, student: Student
    ) -> Optional[UnassignedStudent]:
        ctx = solver.ctx
        pairs = ctx.candidate_pairs or {}
        reachable = [
            t.target_id for t in solver.targets if (student.student_id, t.target_id) in pairs
        ]
        rejections = sorted(
            solver.matrix.rejections.get(student.student_id, []),
            key=lambda r: PROBLEM_PRIORITY[r[1].problem_type or ProblemType.UNKNOWN],
        )
        details = [f"{tid}: {r.details}" for tid, r in rejections if tid in reachable]
        return classify_unassigned_internship(
            student,
            ctx.internship_for(student),
            reachable,
            solver.matrix.valid_target_ids(student.student_id),
            details,
            ctx.scenario.max_distance_km,
        )

    def extra_stats(self, solver: MatchingSolver, assignments: List[Assignment]) -> Dict[str, Any]:
        ctx = solver.ctx
        internships = [ctx.internship_for(s) for s in solver.students]
        return {
            "candidate_pairs": len(ctx.candidate_pairs or {}),
            "students_without_internship": sum(1 for i in internships if i is None),
            "internships_not_geocoded": sum(
                1 for i in internships if i is not None and not i.is_geocoded
            ),
        }


def _internships_by_student(
    internships: List[Internship], students: List[Student]
) -> List[Internship]:
    ensure_unique_ids((i.internship_id for i in internships), "internship")
    known = {s.student_id for s in students}
    kept: Dict[str, Internship] = {}
    for internship in internships:
        if internship.student_id not in known:
            logger.warning(
                "Ignoring internship %s of unknown student %s",
                internship.internship_id,
                internship.student_id,
            )
            continue
        if internship.student_id in kept:
            logger.warning(
                "Student %s has several internships, keeping %s",
                internship.student_id,
                kept[internship.student_id].internship_id,
            )
            continue
        kept[internship.student_id] = internship
    return list(kept.values())


def prepare_internship_matching(
    students: List[Student],
    supervisors: List[Supervisor],
    internships: List[Internship],
    scenario: ScenarioConfig,
    candidate_pairs: Optional[Iterable[CandidatePair]] = None,
    baseline: Optional[Mapping[str, str]] = None,
    manual_ids: Collection[str] = (),
    config: Optional[SolverConfig] = None,
) -> MatchingSolver:
    validate_students(students)
    validate_supervisors(supervisors)
    validate_capacity_config(scenario.capacity)
    if scenario.kind != ScenarioKind.INTERNSHIP:
        scenario = replace(scenario, kind=ScenarioKind.INTERNSHIP)

    students = filter_students(students, scenario.student_filter)
    supervisors = filter_supervisors(supervisors, scenario.supervisor_filter)
    internships = _internships_by_student(internships, students)
    if candidate_pairs is None:
        candidate_pairs = build_candidate_pairs(
            internships,
            supervisors,
            scenario.max_distance_km,
            scenario.average_speed_kmh,
            scenario.max_duration_min,
        )

    targets = build_supervisor_targets(supervisors, scenario)
    ctx = ScoringContext.create(
        scenario,
        targets,
        internships=internships,
        candidate_pairs=candidate_pairs,
        baseline=baseline,
    )
    return MatchingSolver(
        students,
        targets,
        ctx,
        config=config,
        profile=InternshipProfile(),
        baseline=baseline,
        manual_ids=manual_ids,
    )


def solve_internship_matching(
    students: List[Student],
    supervisors: List[Supervisor],
    internships: List[Internship],
    scenario: ScenarioConfig,
    candidate_pairs: Optional[Iterable[CandidatePair]] = None,
    baseline: Optional[Mapping[str, str]] = None,
    manual_ids: Collection[str] = (),
    config: Optional[SolverConfig] = None,
) -> SolveResult:
    """Assign internship supervisors; pairs are computed from coordinates when not supplied."""
    return prepare_internship_matching(
        students, supervisors, internships, scenario, candidate_pairs, baseline, manual_ids, config
    ).solve()
