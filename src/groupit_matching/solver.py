"""
Student matching solver.

A deterministic greedy pass builds a baseline assignment (most-constrained
students first, best-scoring target with room, ties broken by lower load and
then by target identifier). A hill-climbing local search then applies single
moves that never regress the baseline:

- insertion of an unassigned student into a target with room
- displacement of an assigned student to free room for an unassigned one
- relocation of an assigned student to a better target with room
- swap of the targets of two students assigned to different targets

The optimizer is exposed step by step so a caller can stop it at any time;
it also stops at an iteration budget and an optional wall-clock limit.
"""

from typing import List, Dict, Optional, Tuple, Any, Iterator, Iterable, Mapping, Collection
from dataclasses import dataclass, field, asdict
from collections import Counter
from enum import Enum
from bisect import bisect_left, bisect_right
import logging
import time

from groupit_matching.capacity import (
    LoadCounter,
    calculate_charge_stats,
    has_available_capacity,
)
from groupit_matching.criteria import ScoringContext
from groupit_matching.filters import filter_students, filter_supervisors
from groupit_matching.models import (
    PROBLEM_PRIORITY,
    Assignment,
    ConfigurationProblem,
    ConfigurationProblemType,
    Internship,
    InvalidInputError,
    MatchTarget,
    ProblemType,
    Provenance,
    ScenarioConfig,
    SolverConfig,
    Student,
    Supervisor,
    TargetKind,
    UnassignedStudent,
    validate_capacity_config,
    validate_students,
    validate_supervisors,
)
from groupit_matching.scoring import (
    CandidateMatrix,
    PairScore,
    build_explanation,
    build_supervisor_targets,
    evaluate_all_pairs,
    score_pair,
    validate_hard_constraints,
)

logger = logging.getLogger(__name__)

_EPSILON = 1e-9


class MoveKind(Enum):
    INSERTION = "insertion"
    DISPLACEMENT = "displacement"
    RELOCATION = "relocation"
    SWAP = "swap"


@dataclass
class Placement:
    target_id: str
    pair: PairScore
    locked: bool = False
    provenance: Provenance = Provenance.ALGORITHM


@dataclass
class SolveState:
    """Mutable state owned by one solve: loads and current placements."""

    loads: LoadCounter
    placements: Dict[str, Placement] = field(default_factory=dict)

    def place(self, student: Student, target_id: str, pair: PairScore, **kwargs) -> None:
        self.loads.add(target_id, student)
        self.placements[student.student_id] = Placement(target_id, pair, **kwargs)

    def total_score(self, students: Iterable[Student]) -> float:
        return round(
            sum(
                self.placements[s.student_id].pair.score
                for s in students
                if s.student_id in self.placements
            ),
            2,
        )


@dataclass
class MoveEvaluation:
    kind: MoveKind
    student_ids: Tuple[str, ...]
    target_ids: Tuple[str, ...]
    score_delta: float
    accepted: bool


@dataclass
class _Move:
    kind: MoveKind
    students: Tuple[Student, ...]
    # (from, to) per student; from is None for an unassigned student
    moves: Tuple[Tuple[Optional[str], str], ...]


@dataclass
class SolveResult:
    scenario_id: str
    assignments: List[Assignment]
    unassigned: List[UnassignedStudent]
    stats: Dict[str, Any]
    problems: List[ConfigurationProblem] = field(default_factory=list)
    objective_history: List[float] = field(default_factory=list)

    @property
    def is_trustworthy(self) -> bool:
        return not self.problems

    def as_baseline(self) -> Dict[str, str]:
        """Student -> target map, usable as the pre-existing assignments of a re-solve."""
        return {a.student_id: a.target_id for a in self.assignments}

    def assignment_for(self, student_id: str) -> Optional[Assignment]:
        for assignment in self.assignments:
            if assignment.student_id == student_id:
                return assignment
        return None


class MatchingProfile:
    """Hooks a scenario variant can override. The base profile is plain score maximization."""

    def student_order_key(self, student: Student, valid_count: int, index: int) -> Tuple:
        return (valid_count, index)

    def preference_key(self, student: Student, target: MatchTarget, pair: PairScore) -> Tuple:
        return (pair.score,)

    def primary_value(self, student: Student, target: MatchTarget) -> int:
        return 0

    def classify_unassigned(
        self, solver: "MatchingSolver", student: Student
    ) -> Optional[UnassignedStudent]:
        """Variant-specific classification; None falls back to the generic one."""
        return None

    def extra_stats(
        self, solver: "MatchingSolver", assignments: List[Assignment]
    ) -> Dict[str, Any]:
        return {}


class MatchingSolver:
    """
    Greedy + local search matching of students to targets for one scenario.

    Everything mutable lives in the SolveState created by ``solve_greedy``;
    the solver itself only holds read-only inputs, so one instance per
    scenario can run independently of any other.
    """

    def __init__(
        self,
        students: List[Student],
        targets: List[MatchTarget],
        ctx: ScoringContext,
        config: Optional[SolverConfig] = None,
        profile: Optional[MatchingProfile] = None,
        baseline: Optional[Mapping[str, str]] = None,
        manual_ids: Collection[str] = (),
        problems: Optional[List[ConfigurationProblem]] = None,
    ):
        self.students = list(students)
        self.targets = list(targets)
        self.ctx = ctx
        self.config = config or SolverConfig()
        if self.config.MAX_ITERATIONS < 0:
            raise InvalidInputError("MAX_ITERATIONS must not be negative")
        if self.config.TIME_LIMIT_SECONDS is not None and self.config.TIME_LIMIT_SECONDS < 0:
            raise InvalidInputError("TIME_LIMIT_SECONDS must not be negative")
        self.profile = profile or MatchingProfile()
        self.baseline = dict(baseline or {})
        self.manual_ids = set(manual_ids)

        self._student_index = {s.student_id: i for i, s in enumerate(self.students)}
        self.matrix: CandidateMatrix = CandidateMatrix()

        self.problems = list(problems or [])
        self.problems += self._detect_problems()
        for problem in self.problems:
            logger.warning("Configuration problem (%s): %s", problem.problem_type.value, problem.details)

    @property
    def blocked(self) -> bool:
        return any(p.blocking for p in self.problems)

    def _detect_problems(self) -> List[ConfigurationProblem]:
        problems: List[ConfigurationProblem] = []
        if not self.students:
            problems.append(
                ConfigurationProblem(
                    ConfigurationProblemType.NO_STUDENTS, "No students to assign", blocking=False
                )
            )
        if not self.targets and not self.blocked:
            problems.append(
                ConfigurationProblem(ConfigurationProblemType.NO_TARGETS, "No supervisor available")
            )
        elif self.targets and self.ctx.capacity_is_hard and all(t.capacity == 0 for t in self.targets):
            problems.append(
                ConfigurationProblem(
                    ConfigurationProblemType.ZERO_CAPACITY,
                    "Every target has zero capacity",
                    blocking=False,
                )
            )
        return problems

    def _seed_baseline(self, state: SolveState) -> None:
        """Lock pre-existing assignments that are still valid and count their load."""
        for student in self.students:
            target_id = self.baseline.get(student.student_id)
            if target_id is None:
                continue
            target = self.ctx.targets.get(target_id)
            if target is None:
                logger.warning(
                    "Dropping previous assignment %s -> %s: unknown target",
                    student.student_id,
                    target_id,
                )
                continue
            result = validate_hard_constraints(student, target, self.ctx, state.loads)
            if not result:
                logger.warning(
                    "Dropping previous assignment %s -> %s: %s",
                    student.student_id,
                    target_id,
                    result.details,
                )
                continue
            provenance = (
                Provenance.MANUAL if student.student_id in self.manual_ids else Provenance.ALGORITHM
            )
            pair = score_pair(student, target, self.ctx, state.loads)
            state.place(student, target_id, pair, locked=True, provenance=provenance)
        if state.placements:
            logger.info("Kept %d previous assignments", len(state.placements))

    def _best_target(
        self, student: Student, state: SolveState
    ) -> Optional[Tuple[MatchTarget, PairScore]]:
        best = None
        best_key = None
        # Identifier order, so the first of equally good targets wins
        for target_id in sorted(self.matrix.valid_target_ids(student.student_id)):
            target = self.ctx.targets[target_id]
            load = state.loads.load(target_id)
            if self.ctx.capacity_is_hard and not has_available_capacity(target, load):
                continue
            pair = score_pair(student, target, self.ctx, state.loads)
            key = (self.profile.preference_key(student, target, pair), -load)
            if best_key is None or key > best_key:
                best, best_key = (target, pair), key
        return best

    def solve_greedy(self) -> SolveState:
        """Single deterministic pass building the baseline assignment."""
        state = SolveState(LoadCounter(t.target_id for t in self.targets))
        if self.blocked:
            logger.warning("Configuration problems prevent solving; every student stays unassigned")
            return state

        logger.info(
            "Evaluating %d students against %d targets...", len(self.students), len(self.targets)
        )
        self.matrix = evaluate_all_pairs(self.students, self.targets, self.ctx)

        if self.config.LOCK_EXISTING and self.baseline:
            self._seed_baseline(state)

        pending = [s for s in self.students if s.student_id not in state.placements]
        pending.sort(
            key=lambda s: self.profile.student_order_key(
                s,
                len(self.matrix.valid_target_ids(s.student_id)),
                self._student_index[s.student_id],
            )
        )
        for student in pending:
            choice = self._best_target(student, state)
            if choice is None:
                logger.debug("No target with room for %s", student.student_id)
                continue
            target, pair = choice
            state.place(student, target.target_id, pair)

        logger.info(
            "Greedy pass: %d/%d assigned, total score %.2f",
            len(state.placements),
            len(self.students),
            state.total_score(self.students),
        )
        return state

    def optimizer(self, state: SolveState) -> "LocalSearchOptimizer":
        return LocalSearchOptimizer(self, state)

    def solve(self) -> SolveResult:
        """Run the greedy pass, then the local search when enabled."""
        state = self.solve_greedy()
        optimizer = None
        if self.config.USE_LOCAL_SEARCH and not self.blocked:
            logger.info("Improving assignments with local search...")
            optimizer = self.optimizer(state)
            optimizer.run()
        return self.finalize(state, optimizer)

    def classify_unassigned(self, student: Student, state: SolveState) -> UnassignedStudent:
        """Explain why a student ended without assignment, most specific cause first."""
        if self.blocked:
            return UnassignedStudent(
                student.student_id,
                [p.details for p in self.problems if p.blocking],
                ProblemType.UNKNOWN,
            )

        specific = self.profile.classify_unassigned(self, student)
        if specific is not None:
            return specific

        valid = self.matrix.valid_target_ids(student.student_id)
        rejections = sorted(
            self.matrix.rejections.get(student.student_id, []),
            key=lambda r: PROBLEM_PRIORITY[r[1].problem_type or ProblemType.UNKNOWN],
        )
        reasons: List[str] = []
        if valid:
            problem_type = ProblemType.CAPACITY
            reasons.append(f"Capacity exhausted at every reachable target ({', '.join(valid)})")
        elif rejections:
            problem_type = rejections[0][1].problem_type or ProblemType.UNKNOWN
        else:
            return UnassignedStudent(student.student_id, ["No target available"], ProblemType.UNKNOWN)

        for target_id, result in rejections:
            reason = f"{target_id}: {result.details}"
            if reason not in reasons:
                reasons.append(reason)
        return UnassignedStudent(student.student_id, reasons, problem_type)

    def _to_assignment(self, student: Student, placement: Placement) -> Assignment:
        target = self.ctx.targets[placement.target_id]
        info = self.ctx.distance_info(student, target)
        is_jury = target.kind == TargetKind.JURY
        return Assignment(
            student_id=student.student_id,
            scenario_id=self.ctx.scenario.scenario_id,
            score=placement.pair.score,
            breakdown=dict(placement.pair.breakdown),
            explanation=build_explanation(student, target, placement.pair, self.ctx),
            provenance=placement.provenance,
            supervisor_id=None if is_jury else target.target_id,
            jury_id=target.target_id if is_jury else None,
            distance_km=info[0] if info else None,
            duration_min=info[1] if info else None,
        )

    def finalize(
        self, state: SolveState, optimizer: Optional["LocalSearchOptimizer"] = None
    ) -> SolveResult:
        assignments: List[Assignment] = []
        unassigned: List[UnassignedStudent] = []
        for student in self.students:
            placement = state.placements.get(student.student_id)
            if placement is None:
                unassigned.append(self.classify_unassigned(student, state))
            else:
                assignments.append(self._to_assignment(student, placement))

        stats = self._compute_stats(state, assignments, unassigned, optimizer)
        history = list(optimizer.score_history) if optimizer else [stats["total_score"]]
        logger.info(
            "Solved scenario %s: %d assigned, %d unassigned, mean score %.2f",
            self.ctx.scenario.scenario_id,
            stats["assigned"],
            stats["unassigned"],
            stats["mean_score"],
        )
        return SolveResult(
            scenario_id=self.ctx.scenario.scenario_id,
            assignments=assignments,
            unassigned=unassigned,
            stats=stats,
            problems=list(self.problems),
            objective_history=history,
        )

    def _compute_stats(
        self,
        state: SolveState,
        assignments: List[Assignment],
        unassigned: List[UnassignedStudent],
        optimizer: Optional["LocalSearchOptimizer"],
    ) -> Dict[str, Any]:
        scores = [a.score for a in assignments]
        by_problem = Counter(u.problem_type for u in unassigned)
        loads = state.loads.as_dict()
        stats: Dict[str, Any] = {
            "scenario_id": self.ctx.scenario.scenario_id,
            "scenario_kind": self.ctx.scenario.kind.value,
            "total_students": len(self.students),
            "total_targets": len(self.targets),
            "assigned": len(assignments),
            "unassigned": len(unassigned),
            "total_score": round(sum(scores), 2),
            "mean_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
            "manual_assignments": sum(1 for a in assignments if a.provenance == Provenance.MANUAL),
            "unassigned_by_problem": {
                p.value: by_problem[p]
                for p in sorted(by_problem, key=lambda p: PROBLEM_PRIORITY[p])
            },
            "loads": {t.target_id: loads.get(t.target_id, 0) for t in self.targets},
            "capacities": {t.target_id: t.capacity for t in self.targets},
            "charge": asdict(calculate_charge_stats(self.targets, loads)),
        }

        distances = [a.distance_km for a in assignments if a.distance_km is not None]
        if distances:
            durations = [a.duration_min for a in assignments if a.duration_min is not None]
            stats["mean_distance_km"] = round(sum(distances) / len(distances), 2)
            stats["max_distance_km"] = round(max(distances), 2)
            stats["mean_duration_min"] = round(sum(durations) / len(durations), 1)

        if optimizer is not None:
            stats["local_search"] = {
                "iterations": optimizer.iterations,
                "evaluations": optimizer.evaluations,
                "accepted_moves": optimizer.accepted_moves,
                "converged": optimizer.converged,
                "timed_out": optimizer.timed_out,
                "initial_total_score": optimizer.initial_total,
                "initial_unassigned": optimizer.initial_unassigned,
            }

        stats.update(self.profile.extra_stats(self, assignments))
        return stats


class LocalSearchOptimizer:
    """
    First-improvement hill climbing over insertions, displacements,
    relocations and swaps.

    Each iteration first tries the moves of unassigned students (input
    order), then takes every assigned student in turn as the anchor: its
    relocations to other targets with room, then its swaps with the assigned
    students after it. The first move that improves the objective is applied
    (fewer unassigned students first, then a higher total score, never
    lowering either) and the next iteration resumes at that anchor. A full
    pass without an accepted move means convergence. ``steps`` yields one
    evaluated move at a time.
    """

    def __init__(self, solver: MatchingSolver, state: SolveState):
        self.solver = solver
        self.state = state
        self.max_iterations = solver.config.MAX_ITERATIONS
        self.min_improvement = solver.config.MIN_IMPROVEMENT
        self.time_limit = solver.config.TIME_LIMIT_SECONDS
        self.iterations = 0
        self.evaluations = 0
        self.accepted_moves = 0
        self.converged = False
        self.timed_out = False
        self.initial_total = state.total_score(solver.students)
        self.initial_unassigned = self.unassigned_count
        self.score_history: List[float] = [self.initial_total]
        # Student index the scan of assigned students starts from
        self._cursor = 0
        self._started = time.monotonic()

    @property
    def unassigned_count(self) -> int:
        return sum(1 for s in self.solver.students if s.student_id not in self.state.placements)

    @property
    def total_score(self) -> float:
        return self.state.total_score(self.solver.students)

    def _out_of_time(self) -> bool:
        if self.time_limit is not None and time.monotonic() - self._started >= self.time_limit:
            self.timed_out = True
        return self.timed_out

    def steps(self) -> Iterator[MoveEvaluation]:
        self._started = time.monotonic()
        while not self.converged and self.iterations < self.max_iterations:
            if self._out_of_time():
                return
            self.iterations += 1
            improved = False
            for anchor, move in self._candidate_moves():
                if self._out_of_time():
                    return
                evaluation, new_pairs = self._evaluate(move)
                self.evaluations += 1
                if evaluation.accepted:
                    self._apply(move, new_pairs)
                    if anchor is not None:
                        self._cursor = anchor
                    improved = True
                yield evaluation
                if improved:
                    break
            if not improved:
                self.converged = True
                logger.info(
                    "Local search converged after %d iterations (%d moves accepted)",
                    self.iterations,
                    self.accepted_moves,
                )

    def run(self) -> SolveState:
        for _ in self.steps():
            pass
        if self.timed_out:
            logger.info(
                "Local search stopped at the time limit (%.1f s, %d iterations)",
                self.time_limit,
                self.iterations,
            )
        elif not self.converged:
            logger.info("Local search stopped at the iteration budget (%d)", self.max_iterations)
        return self.state

    def _has_room(self, target_id: str) -> bool:
        ctx = self.solver.ctx
        return not ctx.capacity_is_hard or has_available_capacity(
            ctx.targets[target_id], self.state.loads.load(target_id)
        )

    def _candidate_moves(self) -> Iterator[Tuple[Optional[int], _Move]]:
        """Moves in scan order, each with the index of its anchor student (None for unassigned)."""
        solver = self.solver
        matrix = solver.matrix
        students = solver.students
        placements = self.state.placements

        placed = [i for i, s in enumerate(students) if s.student_id in placements]
        unassigned = [s for s in students if s.student_id not in placements]

        for student in unassigned:
            for target_id in matrix.valid_target_ids(student.student_id):
                if self._has_room(target_id):
                    yield None, _Move(MoveKind.INSERTION, (student,), ((None, target_id),))
                    continue
                for i in placed:
                    other = students[i]
                    placement = placements[other.student_id]
                    if placement.target_id != target_id or placement.locked:
                        continue
                    for alternative in matrix.valid_target_ids(other.student_id):
                        if alternative != target_id and self._has_room(alternative):
                            yield None, _Move(
                                MoveKind.DISPLACEMENT,
                                (other, student),
                                ((target_id, alternative), (None, target_id)),
                            )

        start = bisect_left(placed, self._cursor)
        for k in range(len(placed)):
            i = placed[(start + k) % len(placed)]
            first = students[i]
            p1 = placements[first.student_id]
            if p1.locked:
                continue
            for target_id in matrix.valid_target_ids(first.student_id):
                if target_id != p1.target_id and self._has_room(target_id):
                    yield i, _Move(MoveKind.RELOCATION, (first,), ((p1.target_id, target_id),))
            for j in placed[bisect_right(placed, i) :]:
                second = students[j]
                p2 = placements[second.student_id]
                if p2.locked or p1.target_id == p2.target_id:
                    continue
                if matrix.is_valid(first.student_id, p2.target_id) and matrix.is_valid(
                    second.student_id, p1.target_id
                ):
                    yield i, _Move(
                        MoveKind.SWAP,
                        (first, second),
                        ((p1.target_id, p2.target_id), (p2.target_id, p1.target_id)),
                    )

    def _evaluate(self, move: _Move) -> Tuple[MoveEvaluation, List[PairScore]]:
        ctx = self.solver.ctx
        profile = self.solver.profile
        placements = self.state.placements
        moved = list(zip(move.students, move.moves))

        # Score against the loads without the moving students, restored afterwards
        sources = [(src, s) for s, (src, _) in moved if src is not None]
        with self.state.loads.released(*sources) as loads:
            new_pairs = [score_pair(s, ctx.targets[dst], ctx, loads) for s, (_, dst) in moved]
        old_score = sum(placements[s.student_id].pair.score for s, (src, _) in moved if src)
        new_score = sum(p.score for p in new_pairs)
        delta = round(new_score - old_score, 4)

        if move.kind in (MoveKind.SWAP, MoveKind.RELOCATION):
            old_primary = sum(profile.primary_value(s, ctx.targets[src]) for s, (src, _) in moved)
            new_primary = sum(profile.primary_value(s, ctx.targets[dst]) for s, (_, dst) in moved)
            accepted = (
                new_primary >= old_primary
                and delta >= -_EPSILON
                and (new_primary > old_primary or delta > self.min_improvement)
            )
        else:
            # One more student placed; only refuse if it would lower the total score
            accepted = delta >= -_EPSILON

        evaluation = MoveEvaluation(
            kind=move.kind,
            student_ids=tuple(s.student_id for s in move.students),
            target_ids=tuple(dst for _, dst in move.moves),
            score_delta=delta,
            accepted=accepted,
        )
        return evaluation, new_pairs

    def _apply(self, move: _Move, new_pairs: List[PairScore]) -> None:
        loads = self.state.loads
        for student, (src, _) in zip(move.students, move.moves):
            if src is not None:
                loads.remove(src, student)
        for student, (_, dst), pair in zip(move.students, move.moves, new_pairs):
            loads.add(dst, student)
            self.state.placements[student.student_id] = Placement(dst, pair)
        self.accepted_moves += 1
        self.score_history.append(self.total_score)
        logger.debug(
            "Applied %s: %s",
            move.kind.value,
            ", ".join(f"{s.student_id}->{dst}" for s, (_, dst) in zip(move.students, move.moves)),
        )


def prepare_standard(
    students: List[Student],
    supervisors: List[Supervisor],
    scenario: ScenarioConfig,
    internships: Iterable[Internship] = (),
    baseline: Optional[Mapping[str, str]] = None,
    manual_ids: Collection[str] = (),
    config: Optional[SolverConfig] = None,
) -> MatchingSolver:
    """Validate inputs, apply filters and build a solver for individual supervisors."""
    validate_students(students)
    validate_supervisors(supervisors)
    validate_capacity_config(scenario.capacity)

    students = filter_students(students, scenario.student_filter)
    supervisors = filter_supervisors(supervisors, scenario.supervisor_filter)
    targets = build_supervisor_targets(supervisors, scenario)
    ctx = ScoringContext.create(scenario, targets, internships=internships, baseline=baseline)
    return MatchingSolver(
        students, targets, ctx, config=config, baseline=baseline, manual_ids=manual_ids
    )


def solve_standard(
    students: List[Student],
    supervisors: List[Supervisor],
    scenario: ScenarioConfig,
    internships: Iterable[Internship] = (),
    baseline: Optional[Mapping[str, str]] = None,
    manual_ids: Collection[str] = (),
    config: Optional[SolverConfig] = None,
) -> SolveResult:
    return prepare_standard(
        students, supervisors, scenario, internships, baseline, manual_ids, config
    ).solve()
