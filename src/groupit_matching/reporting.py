"""
Result export: JSON-compatible conversion, Markdown reports and the
local-search objective plot. Used by the command line only; the solver
never writes files itself.
"""

import json
import os
from typing import Any, Dict, List
from dataclasses import is_dataclass, fields
from enum import Enum

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402

from groupit_matching.models import MatchTarget, Student  # noqa: E402
from groupit_matching.solver import SolveResult  # noqa: E402


def project_root() -> str:
    """Return absolute path to the project root (two levels up from the package directory)."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))


def resolve_path(path: str) -> str:
    """Resolve relative paths to the project root if they don't exist as given."""
    if not path or os.path.isabs(path) or os.path.exists(path):
        return path
    return os.path.join(project_root(), path)


def to_json_compatible(obj: Any) -> Any:
    """Recursively convert dataclasses, Enums, sets and containers to JSON primitives."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_json_compatible(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        # Sorted for stable output
        return sorted(to_json_compatible(v) for v in obj)
    if isinstance(obj, (list, tuple)):
        return [to_json_compatible(v) for v in obj]
    if isinstance(obj, dict):
        return {
            (k.value if isinstance(k, Enum) else k): to_json_compatible(v) for k, v in obj.items()
        }
    if isinstance(obj, float):
        return round(obj, 4)
    return obj


def result_to_dict(result: SolveResult) -> Dict[str, Any]:
    return {
        "scenario_id": result.scenario_id,
        "trustworthy": result.is_trustworthy,
        "problems": to_json_compatible(result.problems),
        "assignments": to_json_compatible(result.assignments),
        "unassigned": to_json_compatible(result.unassigned),
        "stats": to_json_compatible(result.stats),
        "objective_history": to_json_compatible(result.objective_history),
    }


def save_results_json(result: SolveResult, output_path: str) -> None:
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(result_to_dict(result), f, indent=2, ensure_ascii=False)


def save_results_markdown(
    result: SolveResult,
    targets: List[MatchTarget],
    students: List[Student],
    output_path: str,
) -> None:
    """Save a human-readable Markdown summary of assignments per target."""
    by_id = {s.student_id: s for s in students}
    stats = result.stats
    lines: List[str] = [f"# Scenario {result.scenario_id}", ""]
    lines.append("Summary:")
    lines.append(f"- Assigned: {stats.get('assigned', 0)}/{stats.get('total_students', 0)}")
    lines.append(f"- Mean score: {stats.get('mean_score', 0.0)}")
    if "subject_match_rate" in stats:
        lines.append(f"- Subject match rate: {stats['subject_match_rate']}%")
    if "mean_distance_km" in stats:
        lines.append(
            f"- Mean distance: {stats['mean_distance_km']} km (~{stats['mean_duration_min']} min)"
        )
    for problem in result.problems:
        lines.append(f"- Configuration problem: {problem.details}")
    lines.append("")

    for target in targets:
        members = [a for a in result.assignments if a.target_id == target.target_id]
        lines.append(f"## {target.display_name()} ({len(members)}/{target.capacity})")
        if not members:
            lines.append("- No students.")
            lines.append("")
            continue
        for assignment in members:
            student = by_id.get(assignment.student_id)
            name = student.display_name() if student else assignment.student_id
            line = f"- {name}: score {assignment.score:.1f}, {assignment.explanation.dominant_reason}"
            if assignment.distance_km is not None:
                line += f" ({assignment.distance_km:.1f} km)"
            lines.append(line)
        lines.append("")

    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines).strip() + "\n")


def save_unassigned_markdown(result: SolveResult, output_path: str) -> None:
    """Save the unassigned students grouped by problem type, with their reasons."""
    lines: List[str] = ["Unassigned students:"]
    if not result.unassigned:
        lines.append("- None.")
    by_type: Dict[str, List] = {}
    for record in result.unassigned:
        by_type.setdefault(record.problem_type.value, []).append(record)
    for problem_type, records in by_type.items():
        lines.append("")
        lines.append(f"{problem_type} ({len(records)}):")
        for record in records:
            lines.append(f"- {record.student_id}")
            for reason in record.reasons:
                lines.append(f"  - {reason}")

    with open(output_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines).strip() + "\n")


def save_objective_plot(history: List[float], output_path: str) -> None:
    """Plot the total score after each accepted local-search move."""
    fig, ax = plt.subplots(figsize=(8, 4.5))
    ax.plot(range(len(history)), history, color="#1f77b4", linewidth=2, marker="o", markersize=3)
    ax.set_title("Local search - total assignment score")
    ax.set_xlabel("Accepted move")
    ax.set_ylabel("Total score")
    ax.grid(True, linestyle=":", alpha=0.5)
    fig.tight_layout()
    fig.savefig(output_path, dpi=150)
    plt.close(fig)
