"""Tests for the oral-exam jury variant."""

import pytest

from groupit_matching.capacity import LoadCounter
from groupit_matching.criteria import default_criteria
from groupit_matching.jury import (
    build_jury_targets,
    prepare_oral_exam,
    solve_oral_exam,
    validate_jury_configuration,
)
from groupit_matching.models import (
    ConfigurationProblemType,
    ConstraintKind,
    CriterionConfig,
    CriterionKind,
    InvalidInputError,
    Jury,
    PairingConstraint,
    PriorityLevel,
    ProblemType,
    ScenarioConfig,
    ScenarioKind,
    Student,
    Supervisor,
)
from groupit_matching.scoring import score_pair
from groupit_matching.solver import MoveKind, SolveState

SUPERVISORS = [
    Supervisor("M1", subject="Maths"),
    Supervisor("H1", subject="Histoire"),
]


def oral_scenario(criteria=None) -> ScenarioConfig:
    return ScenarioConfig(
        "oral",
        kind=ScenarioKind.ORAL_EXAM,
        criteria=criteria if criteria is not None else default_criteria(ScenarioKind.ORAL_EXAM),
    )


def make_students():
    return [Student(f"S{i}", subjects=["Maths"]) for i in range(1, 4)] + [
        Student(f"S{i}", subjects=["Histoire"]) for i in range(4, 7)
    ]


def test_students_go_to_the_jury_covering_their_subject():
    juries = [Jury("A", ["M1"]), Jury("B", ["H1"])]
    result = solve_oral_exam(make_students(), SUPERVISORS, juries, oral_scenario())

    assert result.stats["subject_match_rate"] == 100.0
    assert result.stats["juries"]["A"]["assigned"] == 3
    assert result.stats["juries"]["B"]["assigned"] == 3
    assert {a.student_id for a in result.assignments if a.jury_id == "A"} == {"S1", "S2", "S3"}
    assert all(a.supervisor_id is None for a in result.assignments)
    assert all(a.explanation.subject_match for a in result.assignments)


def test_uncovered_subject_is_scored_not_rejected():
    students = make_students() + [Student("S7", subjects=["Anglais"])]
    juries = [Jury("A", ["M1"]), Jury("B", ["H1"])]
    result = solve_oral_exam(students, SUPERVISORS, juries, oral_scenario())

    assert result.stats["assigned"] == 7
    assert result.assignment_for("S7").explanation.subject_match is False
    assert result.stats["subject_matches"] == 6
    assert result.stats["subject_match_rate"] == 85.7


def test_subject_match_as_hard_constraint():
    students = [Student("S1", subjects=["Anglais"])]
    scenario = oral_scenario(
        [CriterionConfig(CriterionKind.SUBJECT_MATCH, PriorityLevel.HIGH, hard=True)]
    )
    result = solve_oral_exam(students, SUPERVISORS, [Jury("A", ["M1"])], scenario)

    assert result.assignments == []
    assert result.unassigned[0].problem_type == ProblemType.UNKNOWN
    assert "not covered" in result.unassigned[0].reasons[0]


def test_full_jury_overflows_to_another_jury():
    juries = [Jury("A", ["M1"], max_capacity=2), Jury("B", ["H1"])]
    result = solve_oral_exam(make_students(), SUPERVISORS, juries, oral_scenario())

    assert result.stats["assigned"] == 6
    assert result.stats["loads"] == {"A": 2, "B": 4}
    assert result.stats["subject_matches"] == 5


def test_must_not_be_with_a_jury_member():
    students = [
        Student("S1", subjects=["Maths"], constraints=[PairingConstraint(ConstraintKind.MUST_NOT_BE_WITH, "M1")])
    ]
    juries = [Jury("A", ["M1"]), Jury("B", ["H1"])]
    result = solve_oral_exam(students, SUPERVISORS, juries, oral_scenario())
    assert result.as_baseline() == {"S1": "B"}


def test_no_jury_leaves_everyone_unassigned():
    result = solve_oral_exam(make_students(), SUPERVISORS, [], oral_scenario())

    assert not result.is_trustworthy
    assert [p.problem_type for p in result.problems] == [ConfigurationProblemType.NO_JURIES]
    assert len(result.unassigned) == 6
    assert all(u.problem_type == ProblemType.UNKNOWN for u in result.unassigned)
    assert result.unassigned[0].reasons == ["No jury configured"]


def test_empty_jury_is_a_blocking_problem():
    juries = [Jury("A", ["M1"]), Jury("C", [], name="Jury C")]
    result = solve_oral_exam(make_students(), SUPERVISORS, juries, oral_scenario())

    assert result.assignments == []
    assert result.problems[0].problem_type == ConfigurationProblemType.EMPTY_JURY
    assert result.problems[0].target_id == "C"


def test_zero_capacity_jury_is_reported_but_not_blocking():
    juries = [Jury("A", ["M1"], max_capacity=0), Jury("B", ["H1"])]
    result = solve_oral_exam(make_students(), SUPERVISORS, juries, oral_scenario())

    assert [p.problem_type for p in result.problems] == [ConfigurationProblemType.ZERO_CAPACITY]
    assert result.stats["loads"] == {"A": 0, "B": 6}


def test_broken_jury_definitions_raise():
    with pytest.raises(InvalidInputError):
        validate_jury_configuration([Jury("A", ["X9"])], SUPERVISORS)
    with pytest.raises(InvalidInputError):
        validate_jury_configuration([Jury("A", ["M1"]), Jury("A", ["H1"])], SUPERVISORS)
    with pytest.raises(InvalidInputError):
        validate_jury_configuration([Jury("A", ["M1"], max_capacity=-1)], SUPERVISORS)


def test_jury_coverage_is_union_of_members():
    (target,) = build_jury_targets([Jury("A", ["M1", "H1"], max_capacity=6)], SUPERVISORS, oral_scenario())
    assert target.subjects == frozenset({"mathematiques", "histoire-geographie"})
    assert target.member_ids == ("M1", "H1")
    assert target.capacity == 6
    assert target.involves("H1")


def test_local_search_swaps_students_onto_their_subject_jury():
    juries = [Jury("A", ["M1"], max_capacity=1), Jury("B", ["H1"], max_capacity=1)]
    students = [Student("S0", subjects=["Maths"]), Student("S1", subjects=["Histoire"])]
    solver = prepare_oral_exam(students, SUPERVISORS, juries, oral_scenario())
    solver.solve_greedy()

    # Start from the crossed assignment: both students on the wrong jury
    state = SolveState(LoadCounter(["A", "B"]))
    for student, jury_id in zip(students, ["B", "A"]):
        pair = score_pair(student, solver.ctx.targets[jury_id], solver.ctx, state.loads)
        state.place(student, jury_id, pair)

    optimizer = solver.optimizer(state)
    first = next(optimizer.steps())
    assert first.kind == MoveKind.SWAP
    assert first.accepted

    result = solver.finalize(optimizer.run(), optimizer)
    assert result.as_baseline() == {"S0": "A", "S1": "B"}
    assert result.stats["subject_matches"] == 2
    assert all(a.explanation.subject_match for a in result.assignments)
