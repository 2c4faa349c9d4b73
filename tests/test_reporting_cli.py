"""Tests for result export and the command line."""

import json
from enum import Enum

import pytest

from groupit_matching.cli import main
from groupit_matching.models import Student, Supervisor, ScenarioConfig
from groupit_matching.reporting import (
    result_to_dict,
    save_results_markdown,
    save_unassigned_markdown,
    to_json_compatible,
)
from groupit_matching.solver import prepare_standard


class Color(Enum):
    RED = "red"


def overload_document():
    return {
        "scenario": {"scenario_id": "cli", "criteria": [{"kind": "capacity", "hard": True}]},
        "students": [{"student_id": f"S{i}"} for i in range(5)],
        "supervisors": [{"supervisor_id": "T1", "full_name": "M. Martin", "capacity": 3}],
    }


def write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


def test_to_json_compatible():
    data = {Color.RED: frozenset({"b", "a"}), "score": 1 / 3, "items": (Color.RED, 2)}
    assert to_json_compatible(data) == {"red": ["a", "b"], "score": 0.3333, "items": ["red", 2]}


def test_result_export():
    students = [Student(f"S{i}") for i in range(5)]
    solver = prepare_standard(students, [Supervisor("T1", capacity_override=3)], ScenarioConfig("export"))
    result = solver.solve()

    data = result_to_dict(result)
    json.dumps(data)
    assert data["trustworthy"]
    assert len(data["assignments"]) == 3
    assert data["unassigned"][0]["problem_type"] == "capacity"
    assert data["assignments"][0]["provenance"] == "algorithm"


def test_markdown_reports(tmp_path):
    students = [Student(f"S{i}", full_name=f"Eleve {i}") for i in range(5)]
    solver = prepare_standard(students, [Supervisor("T1", capacity_override=3)], ScenarioConfig("md"))
    result = solver.solve()

    results_md = tmp_path / "results.md"
    save_results_markdown(result, solver.targets, solver.students, str(results_md))
    content = results_md.read_text(encoding="utf-8")
    assert "# Scenario md" in content
    assert "## T1 (3/3)" in content
    assert "- Eleve 0:" in content

    unassigned_md = tmp_path / "unassigned.md"
    save_unassigned_markdown(result, str(unassigned_md))
    content = unassigned_md.read_text(encoding="utf-8")
    assert "capacity (2):" in content
    assert "- S4" in content


def test_cli_writes_outputs(tmp_path):
    input_path = write_json(tmp_path / "input.json", overload_document())
    output_dir = tmp_path / "out"
    result = main(["--input", input_path, "--output-dir", str(output_dir), "--log-level", "WARNING"])

    assert result.stats["assigned"] == 3
    saved = json.loads((output_dir / "assignment_results.json").read_text(encoding="utf-8"))
    assert saved["stats"]["unassigned_by_problem"] == {"capacity": 2}
    assert "## M. Martin (3/3)" in (output_dir / "assignment_results.md").read_text(encoding="utf-8")
    assert (output_dir / "unassigned_report.md").exists()
    assert (output_dir / "local_search_objective.png").exists()


def test_cli_solver_options(tmp_path):
    input_path = write_json(tmp_path / "input.json", overload_document())
    config_path = write_json(tmp_path / "config.json", {"MAX_ITERATIONS": 0})
    output_dir = str(tmp_path / "out")

    result = main(["--input", input_path, "--config", config_path, "--output-dir", output_dir])
    assert result.stats["local_search"]["iterations"] == 0

    result = main(["--input", input_path, "--no-optimization", "--output-dir", output_dir])
    assert "local_search" not in result.stats

    result = main(["--input", input_path, "--time-limit", "0", "--output-dir", output_dir])
    assert result.stats["local_search"]["timed_out"]
    assert result.stats["local_search"]["iterations"] == 0


def test_cli_exits_on_bad_input(tmp_path):
    output_dir = str(tmp_path / "out")
    with pytest.raises(SystemExit) as excinfo:
        main(["--input", str(tmp_path / "missing.json"), "--output-dir", output_dir])
    assert excinfo.value.code == 1

    bad_config = write_json(tmp_path / "config.json", {"UNKNOWN_OPTION": 1})
    input_path = write_json(tmp_path / "input.json", overload_document())
    with pytest.raises(SystemExit) as excinfo:
        main(["--input", input_path, "--config", bad_config, "--output-dir", output_dir])
    assert excinfo.value.code == 1

    duplicated = overload_document()
    duplicated["students"].append({"student_id": "S0"})
    input_path = write_json(tmp_path / "duplicated.json", duplicated)
    with pytest.raises(SystemExit) as excinfo:
        main(["--input", input_path, "--output-dir", output_dir])
    assert excinfo.value.code == 1
