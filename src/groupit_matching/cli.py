"""
Command line entry point.

Reads a JSON input document, runs the scenario's matching (greedy pass and
local search under a progress bar) and writes the results to
`data/outputs/` (or `--output-dir`): JSON results, a Markdown summary, an
unassigned-students report and the local-search objective plot.
"""

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

import tqdm
from dotenv import load_dotenv
from pydantic import ValidationError

from groupit_matching.internship import prepare_internship_matching
from groupit_matching.jury import prepare_oral_exam
from groupit_matching.models import InvalidInputError, ScenarioKind, SolverConfig
from groupit_matching.reporting import (
    project_root,
    resolve_path,
    save_objective_plot,
    save_results_json,
    save_results_markdown,
    save_unassigned_markdown,
)
from groupit_matching.schemas import MatchingInput, load_matching_input
from groupit_matching.solver import MatchingSolver, SolveResult, prepare_standard

# Load environment variables from .env file
load_dotenv()


def prepare_solver(document: MatchingInput, config: SolverConfig) -> MatchingSolver:
    """Build the solver matching the scenario kind of the document."""
    scenario = document.scenario.to_domain()
    students = document.students_domain()
    supervisors = document.supervisors_domain()
    baseline = document.baseline
    manual_ids = document.manual_ids

    if scenario.kind == ScenarioKind.ORAL_EXAM:
        return prepare_oral_exam(
            students, supervisors, document.juries_domain(), scenario, baseline, manual_ids, config
        )
    if scenario.kind == ScenarioKind.INTERNSHIP:
        return prepare_internship_matching(
            students,
            supervisors,
            document.internships_domain(),
            scenario,
            document.candidate_pairs_domain(),
            baseline,
            manual_ids,
            config,
        )
    return prepare_standard(
        students,
        supervisors,
        scenario,
        document.internships_domain(),
        baseline,
        manual_ids,
        config,
    )


def run_with_progress(solver: MatchingSolver) -> SolveResult:
    """Same as ``solver.solve()``, driving the local search step by step under a progress bar."""
    state = solver.solve_greedy()
    optimizer = None
    if solver.config.USE_LOCAL_SEARCH and not solver.blocked:
        optimizer = solver.optimizer(state)
        bar = tqdm.tqdm(total=optimizer.max_iterations, desc="Local search")
        bar.set_postfix(score=f"{optimizer.total_score:.2f}", unassigned=optimizer.unassigned_count)
        seen_iterations = 0
        for evaluation in optimizer.steps():
            if optimizer.iterations > seen_iterations:
                bar.update(optimizer.iterations - seen_iterations)
                seen_iterations = optimizer.iterations
            if evaluation.accepted:
                bar.set_postfix(
                    score=f"{optimizer.total_score:.2f}", unassigned=optimizer.unassigned_count
                )
        bar.close()
    return solver.finalize(state, optimizer)


def _load_solver_config(path: Optional[str]) -> SolverConfig:
    if not path:
        return SolverConfig()
    with open(resolve_path(path), "r") as f:
        config = SolverConfig(**json.load(f))
    logging.info(f"Loaded solver configuration from {path}")
    return config


def main(argv: Optional[List[str]] = None):
    """Main function with CLI support."""
    parser = argparse.ArgumentParser(
        description="Student matching - assigns students to supervisors, juries or internship tutors"
    )
    parser.add_argument("--input", type=str, required=True, help="Path to the input JSON document")
    parser.add_argument("--config", type=str, help="Path to JSON file with solver configuration")
    parser.add_argument(
        "--max-iterations", type=int, help="Local search iteration budget (overrides --config)"
    )
    parser.add_argument(
        "--time-limit",
        type=float,
        help="Wall-clock limit for the local search in seconds (overrides --config)",
    )
    parser.add_argument(
        "--no-optimization", action="store_true", help="Disable the local search pass"
    )
    parser.add_argument(
        "--no-lock",
        action="store_true",
        help="Use previous assignments as a soft preference instead of keeping them",
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=os.environ.get("GROUPIT_OUTPUT_DIR"),
        help="Directory to write outputs (default: data/outputs under project root)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("GROUPIT_LOG_LEVEL", "INFO").upper(),
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging level",
    )
    args = parser.parse_args(argv)

    # Configure logging
    numeric_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )

    try:
        config = _load_solver_config(args.config)
    except (OSError, TypeError, ValueError) as e:
        logging.error(f"Error loading configuration file: {e}", exc_info=True)
        sys.exit(1)
    if args.max_iterations is not None:
        config.MAX_ITERATIONS = args.max_iterations
    if args.time_limit is not None:
        config.TIME_LIMIT_SECONDS = args.time_limit
    if args.no_optimization:
        config.USE_LOCAL_SEARCH = False
    if args.no_lock:
        config.LOCK_EXISTING = False

    try:
        document = load_matching_input(resolve_path(args.input))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logging.error(f"Error loading input document: {e}")
        sys.exit(1)

    try:
        solver = prepare_solver(document, config)
    except InvalidInputError as e:
        logging.error(f"Invalid input: {e}")
        sys.exit(1)
    result = run_with_progress(solver)

    # Save results
    output_dir = (
        resolve_path(args.output_dir)
        if args.output_dir
        else os.path.join(project_root(), "data/outputs")
    )
    os.makedirs(output_dir, exist_ok=True)
    results_path = os.path.join(output_dir, "assignment_results.json")
    save_results_json(result, results_path)
    logging.info(f"Saved results to {results_path}")

    md_path = os.path.join(output_dir, "assignment_results.md")
    save_results_markdown(result, solver.targets, solver.students, md_path)
    logging.info(f"Saved Markdown summary to {md_path}")

    unassigned_path = os.path.join(output_dir, "unassigned_report.md")
    save_unassigned_markdown(result, unassigned_path)
    logging.info(f"Saved unassigned report to {unassigned_path}")

    try:
        plot_path = os.path.join(output_dir, "local_search_objective.png")
        save_objective_plot(result.objective_history, plot_path)
        logging.info(f"Saved local search plot to {plot_path}")
    except Exception as e:
        logging.warning(f"Failed to save local search plot: {e}")

    stats = result.stats
    logging.info("=== Matching Solution ===")
    logging.info(f"- Scenario: {result.scenario_id} ({stats['scenario_kind']})")
    logging.info(f"- Assigned: {stats['assigned']}/{stats['total_students']}")
    logging.info(f"- Mean score: {stats['mean_score']:.2f}")
    if "subject_match_rate" in stats:
        logging.info(f"- Subject match rate: {stats['subject_match_rate']}%")
    if stats["unassigned_by_problem"]:
        logging.info(f"- Unassigned by problem: {stats['unassigned_by_problem']}")
    for problem in result.problems:
        logging.warning(f"- Configuration problem: {problem.details}")
    return result


if __name__ == "__main__":
    main()
