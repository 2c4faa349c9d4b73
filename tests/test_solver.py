"""Tests for the greedy pass, the local search and the standard scenario."""

import pytest

from groupit_matching.geometry import GeoPoint
from groupit_matching.models import (
    ConstraintKind,
    CriterionConfig,
    CriterionKind,
    GeocodingStatus,
    Internship,
    InvalidInputError,
    PairingConstraint,
    PriorityLevel,
    ProblemType,
    Provenance,
    ScenarioConfig,
    SolverConfig,
    Student,
    StudentFilter,
    Supervisor,
)
from groupit_matching.capacity import LoadCounter
from groupit_matching.scoring import score_pair
from groupit_matching.solver import MoveKind, SolveState, prepare_standard, solve_standard


def distance_scenario() -> ScenarioConfig:
    return ScenarioConfig(
        "standard",
        criteria=[
            CriterionConfig(CriterionKind.DISTANCE, PriorityLevel.HIGH, hard=True),
            CriterionConfig(CriterionKind.CAPACITY, PriorityLevel.NORMAL, hard=True),
            CriterionConfig(CriterionKind.EQUILIBRAGE, PriorityLevel.NORMAL),
        ],
        max_distance_km=20.0,
    )


def ten_students_three_supervisors():
    """Supervisors about 15 km apart; each student lives between two of them."""
    supervisors = [
        Supervisor(f"T{i + 1}", home=GeoPoint(48.0, lon), capacity_override=4)
        for i, lon in enumerate([2.0, 2.2, 2.4])
    ]
    students = [Student(f"S{i}", class_name="3A") for i in range(10)]
    internships = [
        Internship(
            f"I{i}",
            f"S{i}",
            location=GeoPoint(48.0, 2.1 if i < 5 else 2.3),
            status=GeocodingStatus.OK,
        )
        for i in range(10)
    ]
    return students, supervisors, internships


def displacement_case():
    """Greedy fills T1 and T2 first and leaves S3 out; moving S1 to T3 makes room."""
    supervisors = [Supervisor(f"T{i}", capacity_override=1) for i in (1, 2, 3)]

    def avoiding(student_id, supervisor_id):
        return Student(
            student_id,
            constraints=[PairingConstraint(ConstraintKind.MUST_NOT_BE_WITH, supervisor_id)],
        )

    students = [avoiding("S1", "T2"), avoiding("S2", "T1"), avoiding("S3", "T3")]
    scenario = ScenarioConfig(
        "displacement", criteria=[CriterionConfig(CriterionKind.CAPACITY, hard=True)]
    )
    return students, supervisors, scenario


def test_ten_students_three_supervisors_all_assigned():
    students, supervisors, internships = ten_students_three_supervisors()
    result = solve_standard(students, supervisors, distance_scenario(), internships)

    assert result.stats["assigned"] == 10
    assert result.unassigned == []
    assert result.is_trustworthy
    assert all(load <= 4 for load in result.stats["loads"].values())
    assert all(a.distance_km <= 20.0 for a in result.assignments)
    assert result.stats["max_distance_km"] <= 20.0


def test_capacity_overload_reports_capacity_problem():
    students = [Student(f"S{i}") for i in range(5)]
    supervisors = [Supervisor("T1", capacity_override=3)]
    result = solve_standard(students, supervisors, ScenarioConfig("overload"))

    assert len(result.assignments) == 3
    assert len(result.unassigned) == 2
    assert all(u.problem_type == ProblemType.CAPACITY for u in result.unassigned)
    assert result.stats["unassigned_by_problem"] == {"capacity": 2}


def test_soft_capacity_allows_overflow():
    students = [Student(f"S{i}") for i in range(5)]
    supervisors = [Supervisor("T1", capacity_override=3)]
    scenario = ScenarioConfig(
        "soft", criteria=[CriterionConfig(CriterionKind.CAPACITY, PriorityLevel.NORMAL, hard=False)]
    )
    result = solve_standard(students, supervisors, scenario)

    assert len(result.assignments) == 5
    assert result.stats["loads"] == {"T1": 5}
    assert result.stats["charge"]["overloaded"] == ["T1"]

    by_student = {a.student_id: a for a in result.assignments}
    within = [by_student[f"S{i}"] for i in range(3)]
    overflow = [by_student["S3"], by_student["S4"]]
    assert [a.breakdown["capacity"] for a in within] == [100.0, 66.67, 33.33]
    assert all(a.breakdown["capacity"] == 0.0 for a in overflow)
    assert max(a.score for a in overflow) < min(a.score for a in within)


def test_solve_is_deterministic():
    students, supervisors, internships = ten_students_three_supervisors()
    first = solve_standard(students, supervisors, distance_scenario(), internships)
    second = solve_standard(students, supervisors, distance_scenario(), internships)

    assert [(a.student_id, a.target_id, a.score) for a in first.assignments] == [
        (a.student_id, a.target_id, a.score) for a in second.assignments
    ]
    assert first.objective_history == second.objective_history


def test_resolve_with_previous_result_keeps_assignments():
    students, supervisors, internships = ten_students_three_supervisors()
    first = solve_standard(students, supervisors, distance_scenario(), internships)
    second = solve_standard(
        students, supervisors, distance_scenario(), internships, baseline=first.as_baseline()
    )
    assert second.as_baseline() == first.as_baseline()


def test_invalid_previous_assignment_is_dropped():
    students = [
        Student("S1", constraints=[PairingConstraint(ConstraintKind.MUST_NOT_BE_WITH, "T1")])
    ]
    supervisors = [Supervisor("T1"), Supervisor("T2")]
    result = solve_standard(
        students, supervisors, ScenarioConfig("s"), baseline={"S1": "T1", "S9": "T2"}
    )
    assert result.as_baseline() == {"S1": "T2"}


def test_manual_assignments_keep_their_provenance():
    students = [Student("S1"), Student("S2")]
    supervisors = [Supervisor("T1"), Supervisor("T2")]
    result = solve_standard(
        students,
        supervisors,
        ScenarioConfig("s"),
        baseline={"S1": "T2"},
        manual_ids=["S1"],
    )
    assert result.assignment_for("S1").target_id == "T2"
    assert result.assignment_for("S1").provenance == Provenance.MANUAL
    assert result.assignment_for("S2").provenance == Provenance.ALGORITHM
    assert result.stats["manual_assignments"] == 1


def test_previous_assignment_as_soft_preference():
    students = [Student("S1")]
    supervisors = [Supervisor("T1"), Supervisor("T2")]
    scenario = ScenarioConfig(
        "s", criteria=[CriterionConfig(CriterionKind.MANUAL_OVERRIDE, PriorityLevel.HIGH)]
    )

    plain = solve_standard(students, supervisors, scenario)
    assert plain.as_baseline() == {"S1": "T1"}

    preferred = solve_standard(
        students,
        supervisors,
        scenario,
        baseline={"S1": "T2"},
        config=SolverConfig(LOCK_EXISTING=False),
    )
    assert preferred.as_baseline() == {"S1": "T2"}
    assert preferred.assignment_for("S1").provenance == Provenance.ALGORITHM


def test_greedy_alone_leaves_student_out():
    students, supervisors, scenario = displacement_case()
    result = solve_standard(
        students, supervisors, scenario, config=SolverConfig(USE_LOCAL_SEARCH=False)
    )
    assert result.as_baseline() == {"S1": "T1", "S2": "T2"}
    assert result.unassigned[0].student_id == "S3"
    assert result.unassigned[0].problem_type == ProblemType.CAPACITY
    assert "local_search" not in result.stats


def test_local_search_displacement_places_everyone():
    students, supervisors, scenario = displacement_case()
    result = solve_standard(students, supervisors, scenario)

    assert result.as_baseline() == {"S1": "T3", "S2": "T2", "S3": "T1"}
    local_search = result.stats["local_search"]
    assert local_search["initial_unassigned"] == 1
    assert local_search["accepted_moves"] == 1
    assert local_search["converged"]
    assert result.objective_history == sorted(result.objective_history)


def test_local_search_can_be_stopped_between_steps():
    students, supervisors, scenario = displacement_case()
    solver = prepare_standard(students, supervisors, scenario)
    state = solver.solve_greedy()
    optimizer = solver.optimizer(state)

    first = next(optimizer.steps())
    assert first.kind == MoveKind.DISPLACEMENT
    assert first.accepted
    assert first.student_ids == ("S1", "S3")

    result = solver.finalize(state, optimizer)
    assert result.stats["assigned"] == 3
    assert not result.stats["local_search"]["converged"]


def test_zero_iteration_budget():
    students, supervisors, scenario = displacement_case()
    result = solve_standard(
        students, supervisors, scenario, config=SolverConfig(MAX_ITERATIONS=0)
    )
    assert result.stats["local_search"]["iterations"] == 0
    assert result.stats["assigned"] == 2


def test_hard_constraints_hold_after_local_search():
    students, supervisors, scenario = displacement_case()
    result = solve_standard(students, supervisors, scenario)
    forbidden = {("S1", "T2"), ("S2", "T1"), ("S3", "T3")}
    assert not {(a.student_id, a.target_id) for a in result.assignments} & forbidden
    assert all(load <= 1 for load in result.stats["loads"].values())


def test_no_supervisor_is_a_blocking_problem():
    result = solve_standard([Student("S1")], [], ScenarioConfig("empty"))
    assert not result.is_trustworthy
    assert [p.problem_type.value for p in result.problems] == ["no_targets"]
    assert result.unassigned[0].problem_type == ProblemType.UNKNOWN


def test_no_students_is_reported_not_raised():
    result = solve_standard([], [Supervisor("T1")], ScenarioConfig("nobody"))
    assert result.assignments == []
    assert result.stats["mean_score"] == 0.0
    assert [p.problem_type.value for p in result.problems] == ["no_students"]
    assert not result.problems[0].blocking


def test_student_filter_is_applied():
    students = [Student("S1", class_name="3A"), Student("S2", class_name="4B")]
    scenario = ScenarioConfig("filtered", student_filter=StudentFilter(levels=["3e"]))
    result = solve_standard(students, [Supervisor("T1")], scenario)
    assert result.as_baseline() == {"S1": "T1"}
    assert result.stats["total_students"] == 1


def test_invalid_input_raises():
    with pytest.raises(InvalidInputError):
        solve_standard([Student("S1"), Student("S1")], [Supervisor("T1")], ScenarioConfig("s"))
    with pytest.raises(InvalidInputError):
        solve_standard([Student("S1")], [Supervisor("T1", capacity_override=-1)], ScenarioConfig("s"))
    with pytest.raises(InvalidInputError):
        solve_standard(
            [Student("S1")], [Supervisor("T1")], ScenarioConfig("s"), config=SolverConfig(MAX_ITERATIONS=-1)
        )


def two_supervisors_case(capacity: int, internship_lons):
    """Supervisors A and B about 40 km apart on the same parallel, one internship per longitude."""
    supervisors = [
        Supervisor("A", home=GeoPoint(48.85, 2.35), capacity_override=capacity),
        Supervisor("B", home=GeoPoint(48.85, 2.90), capacity_override=capacity),
    ]
    students = [Student(f"S{i}") for i in range(len(internship_lons))]
    internships = [
        Internship(f"I{i}", f"S{i}", location=GeoPoint(48.85, lon), status=GeocodingStatus.OK)
        for i, lon in enumerate(internship_lons)
    ]
    scenario = ScenarioConfig(
        "two",
        criteria=[CriterionConfig(CriterionKind.DISTANCE, PriorityLevel.NORMAL)],
        max_distance_km=25.0,
    )
    return students, supervisors, internships, scenario


def test_local_search_swap_repairs_greedy_choice():
    # S0 sits between A and B but slightly closer to A; S1 lives next to A
    students, supervisors, internships, scenario = two_supervisors_case(1, [2.60, 2.35])
    solver = prepare_standard(students, supervisors, scenario, internships)
    state = solver.solve_greedy()
    assert {sid: p.target_id for sid, p in state.placements.items()} == {"S0": "A", "S1": "B"}
    greedy_total = state.total_score(students)

    optimizer = solver.optimizer(state)
    first = next(optimizer.steps())
    assert first.kind == MoveKind.SWAP
    assert first.accepted
    assert first.student_ids == ("S0", "S1")
    assert first.target_ids == ("B", "A")
    assert first.score_delta > 0

    result = solver.finalize(optimizer.run(), optimizer)
    assert result.as_baseline() == {"S0": "B", "S1": "A"}
    assert result.stats["local_search"]["accepted_moves"] == 1
    assert result.stats["local_search"]["converged"]
    assert result.objective_history[0] == greedy_total
    assert result.objective_history[-1] > greedy_total


def test_local_search_relocates_to_a_target_with_room():
    students, supervisors, internships, scenario = two_supervisors_case(2, [2.36])
    supervisors[1] = Supervisor("B", home=GeoPoint(48.85, 2.45), capacity_override=2)
    solver = prepare_standard(students, supervisors, scenario, internships)
    solver.solve_greedy()

    state = SolveState(LoadCounter(["A", "B"]))
    student = students[0]
    state.place(student, "B", score_pair(student, solver.ctx.targets["B"], solver.ctx, state.loads))

    optimizer = solver.optimizer(state)
    first = next(optimizer.steps())
    assert first.kind == MoveKind.RELOCATION
    assert first.accepted
    assert first.student_ids == ("S0",)
    assert first.target_ids == ("A",)

    optimizer.run()
    assert state.placements["S0"].target_id == "A"
    assert state.loads.as_dict() == {"A": 1, "B": 0}
    assert optimizer.accepted_moves == 1
    assert optimizer.converged


def test_locked_student_is_not_relocated():
    students, supervisors, internships, scenario = two_supervisors_case(2, [2.36])
    result = solve_standard(students, supervisors, scenario, internships, baseline={"S0": "B"})
    assert result.as_baseline() == {"S0": "B"}
    assert result.stats["local_search"]["accepted_moves"] == 0


def test_equal_targets_are_chosen_by_identifier():
    supervisors = [Supervisor("T2"), Supervisor("T1")]
    result = solve_standard([Student("S1")], supervisors, ScenarioConfig("tie"))
    assert result.as_baseline() == {"S1": "T1"}


def test_zero_time_limit_skips_local_search():
    students, supervisors, scenario = displacement_case()
    result = solve_standard(
        students, supervisors, scenario, config=SolverConfig(TIME_LIMIT_SECONDS=0)
    )
    local_search = result.stats["local_search"]
    assert local_search["iterations"] == 0
    assert local_search["timed_out"]
    assert not local_search["converged"]
    assert result.stats["assigned"] == 2


def test_negative_time_limit_is_invalid():
    with pytest.raises(InvalidInputError):
        solve_standard(
            [Student("S1")],
            [Supervisor("T1")],
            ScenarioConfig("s"),
            config=SolverConfig(TIME_LIMIT_SECONDS=-1),
        )
