"""Matching of students to supervisors, oral-exam juries and internship tutors."""

from groupit_matching.internship import build_candidate_pairs, solve_internship_matching
from groupit_matching.jury import solve_oral_exam
from groupit_matching.models import InvalidInputError, SolverConfig
from groupit_matching.solver import SolveResult, solve_standard

__version__ = "0.1.0"

__all__ = [
    "InvalidInputError",
    "SolveResult",
    "SolverConfig",
    "build_candidate_pairs",
    "solve_internship_matching",
    "solve_oral_exam",
    "solve_standard",
]
