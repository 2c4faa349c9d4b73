"""Tests for the internship geographic variant."""

from groupit_matching.capacity import LoadCounter
from groupit_matching.criteria import ScoringContext, default_criteria
from groupit_matching.geometry import GeoPoint, estimate_duration_min
from groupit_matching.internship import build_candidate_pairs, solve_internship_matching
from groupit_matching.models import (
    CandidatePair,
    Exclusion,
    ExclusionKind,
    GeocodingStatus,
    Internship,
    ProblemType,
    ScenarioConfig,
    ScenarioKind,
    Student,
    Supervisor,
)
from groupit_matching.scoring import build_supervisor_targets, score_pair

NEAR = GeoPoint(48.86, 2.36)
FAR = GeoPoint(49.50, 2.40)
INTERNSHIP_POINT = GeoPoint(48.85, 2.35)


def internship_scenario() -> ScenarioConfig:
    return ScenarioConfig(
        "stage",
        kind=ScenarioKind.INTERNSHIP,
        criteria=default_criteria(ScenarioKind.INTERNSHIP),
    )


def geocoded(student_id: str, point: GeoPoint = INTERNSHIP_POINT, **kwargs) -> Internship:
    return Internship(f"I-{student_id}", student_id, location=point, status=GeocodingStatus.OK, **kwargs)


def test_nearby_supervisor_scores_higher():
    student = Student("S1")
    supervisors = [Supervisor("NEAR", home=NEAR), Supervisor("FAR", home=FAR)]
    scenario = internship_scenario()
    near, far = build_supervisor_targets(supervisors, scenario)
    ctx = ScoringContext.create(scenario, [near, far], internships=[geocoded("S1")])
    loads = LoadCounter(["NEAR", "FAR"])

    assert score_pair(student, near, ctx, loads).score > score_pair(student, far, ctx, loads).score

    result = solve_internship_matching([student], supervisors, [geocoded("S1")], scenario)
    assignment = result.assignment_for("S1")
    assert assignment.supervisor_id == "NEAR"
    assert assignment.distance_km < 2.0
    assert assignment.duration_min == estimate_duration_min(assignment.distance_km)


def test_unassigned_students_are_classified_by_cause():
    students = [Student(s) for s in ("S-none", "S-pending", "S-far", "S-a", "S-b")]
    internships = [
        Internship("I-pending", "S-pending", address="1 rue Inconnue"),
        geocoded("S-far", GeoPoint(43.30, 5.37)),
        geocoded("S-a"),
        geocoded("S-b"),
    ]
    supervisors = [Supervisor("T1", home=NEAR, capacity_override=1)]
    result = solve_internship_matching(students, supervisors, internships, internship_scenario())

    assert result.as_baseline() == {"S-a": "T1"}
    problems = {u.student_id: u.problem_type for u in result.unassigned}
    assert problems == {
        "S-none": ProblemType.NO_SOURCE_DATA,
        "S-pending": ProblemType.NOT_GEOCODED,
        "S-far": ProblemType.TOO_FAR,
        "S-b": ProblemType.CAPACITY,
    }
    assert result.stats["unassigned_by_problem"] == {
        "no_source_data": 1,
        "not_geocoded": 1,
        "too_far": 1,
        "capacity": 1,
    }
    assert result.stats["students_without_internship"] == 1
    assert result.stats["internships_not_geocoded"] == 1
    assert result.stats["candidate_pairs"] == 2


def test_supplied_candidate_pairs_restrict_targets():
    supervisors = [Supervisor("T1", home=NEAR), Supervisor("T2", home=FAR)]
    pairs = [CandidatePair("S1", "T2", 3.0, 5)]
    result = solve_internship_matching(
        [Student("S1")], supervisors, [geocoded("S1")], internship_scenario(), candidate_pairs=pairs
    )
    assignment = result.assignment_for("S1")
    assert assignment.supervisor_id == "T2"
    assert (assignment.distance_km, assignment.duration_min) == (3.0, 5)


def test_zone_exclusion_leaves_reachable_student_unknown():
    supervisors = [
        Supervisor("T1", home=NEAR, exclusions=[Exclusion(ExclusionKind.ZONE, "Versailles")])
    ]
    internships = [geocoded("S1", commune="78000 Versailles")]
    result = solve_internship_matching([Student("S1")], supervisors, internships, internship_scenario())

    (unassigned,) = result.unassigned
    assert unassigned.problem_type == ProblemType.UNKNOWN
    assert unassigned.reasons[0].startswith("T1: Excluded by T1")


def test_build_candidate_pairs():
    internships = [geocoded("S1"), Internship("I-2", "S2")]
    supervisors = [Supervisor("T1", home=NEAR), Supervisor("T2", home=FAR), Supervisor("T3")]
    (pair,) = build_candidate_pairs(internships, supervisors, max_distance_km=25)

    assert (pair.student_id, pair.supervisor_id) == ("S1", "T1")
    assert pair.distance_km < 2.0
    assert pair.duration_min == estimate_duration_min(pair.distance_km)

    assert build_candidate_pairs(internships, supervisors, max_distance_km=25, max_duration_min=1) == []
    assert len(build_candidate_pairs(internships, supervisors, max_distance_km=100)) == 2
