"""Student and supervisor filters applied before a solve."""

from typing import List

from groupit_matching.capacity import normalize_subject
from groupit_matching.models import (
    Student,
    StudentFilter,
    Supervisor,
    SupervisorFilter,
    class_level,
)


def filter_students(students: List[Student], criteria: StudentFilter) -> List[Student]:
    """Keep students matching every non-empty filter field, preserving input order."""
    kept = []
    for student in students:
        if criteria.student_ids and student.student_id not in criteria.student_ids:
            continue
        if criteria.classes and student.class_name not in criteria.classes:
            continue
        if criteria.levels and student.level not in criteria.levels:
            continue
        if criteria.tags and not set(criteria.tags) & set(student.tags):
            continue
        kept.append(student)
    return kept


def filter_supervisors(supervisors: List[Supervisor], criteria: SupervisorFilter) -> List[Supervisor]:
    wanted_subjects = {normalize_subject(s) for s in criteria.subjects}
    kept = []
    for supervisor in supervisors:
        if criteria.supervisor_ids and supervisor.supervisor_id not in criteria.supervisor_ids:
            continue
        if wanted_subjects and not wanted_subjects & {
            normalize_subject(s) for s in supervisor.subjects()
        }:
            continue
        if criteria.classes and not set(criteria.classes) & set(supervisor.classes):
            continue
        if criteria.levels and not set(criteria.levels) & {
            class_level(c) for c in supervisor.classes
        }:
            continue
        if criteria.tags and not set(criteria.tags) & set(supervisor.tags):
            continue
        if criteria.advisors_only and not supervisor.is_class_advisor:
            continue
        kept.append(supervisor)
    return kept
