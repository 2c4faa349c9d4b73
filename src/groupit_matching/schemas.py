"""
Input document schema.

Pydantic models describe the JSON document read by the command line: the
scenario (criteria, capacity rules, filters), the students, supervisors,
juries and internships, optional pre-computed candidate pairs and an
optional previous assignment map. Priority levels and hard-constraint flags
are validated here, then converted to the domain dataclasses.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from groupit_matching.criteria import default_criteria
from groupit_matching.geometry import GeoPoint
from groupit_matching.models import (
    CandidatePair,
    CapacityConfig,
    ConstraintKind,
    CriterionConfig,
    CriterionKind,
    Exclusion,
    ExclusionKind,
    GeocodingStatus,
    Internship,
    Jury,
    PairingConstraint,
    PriorityLevel,
    ScenarioConfig,
    ScenarioKind,
    Student,
    StudentFilter,
    Supervisor,
    SupervisorFilter,
)

logger = logging.getLogger(__name__)


class GeoPointInfo(BaseModel):
    lat: float = Field(ge=-90, le=90, description="Latitude in degrees")
    lon: float = Field(ge=-180, le=180, description="Longitude in degrees")

    def to_domain(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lon)


class ConstraintInfo(BaseModel):
    kind: ConstraintKind = Field(description="must_be_with or must_not_be_with")
    supervisor_id: str = Field(description="Supervisor the constraint refers to")


class ExclusionInfo(BaseModel):
    kind: ExclusionKind = Field(description="student, class or zone")
    value: str = Field(description="Excluded student id, class name or postcode/commune")


class StudentInfo(BaseModel):
    """Information about a single student."""

    student_id: str = Field(min_length=1, description="The unique ID for the student")
    full_name: Optional[str] = Field(default=None, description="Optional display name")
    class_name: str = Field(default="", description="Class of the student, e.g. 3A")
    subjects: List[str] = Field(default_factory=list, description="Oral-exam subjects, may be empty")
    internship_id: Optional[str] = Field(default=None, description="Linked internship, if any")
    constraints: List[ConstraintInfo] = Field(default_factory=list)
    gender: Optional[str] = Field(default=None, description="Used by the mixity criterion")
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, str] = Field(default_factory=dict)

    def to_domain(self) -> Student:
        return Student(
            student_id=self.student_id,
            class_name=self.class_name,
            subjects=list(self.subjects),
            internship_id=self.internship_id,
            constraints=[PairingConstraint(c.kind, c.supervisor_id) for c in self.constraints],
            gender=self.gender,
            tags=list(self.tags),
            custom_fields=dict(self.custom_fields),
            full_name=self.full_name,
        )


class SupervisorInfo(BaseModel):
    """Information about a single supervisor."""

    supervisor_id: str = Field(min_length=1, description="The unique ID for the supervisor")
    full_name: Optional[str] = Field(default=None, description="Optional display name")
    subject: str = Field(default="", description="Main subject taught")
    secondary_subjects: List[str] = Field(default_factory=list)
    classes: List[str] = Field(default_factory=list, description="Classes in charge")
    home: Optional[GeoPointInfo] = Field(default=None, description="Geocoded home point")
    commune: Optional[str] = Field(default=None, description="Home commune, with postcode if known")
    capacity: Optional[int] = Field(default=None, ge=0, description="Manual capacity override")
    teaching_hours: Dict[str, float] = Field(
        default_factory=dict, description="Manual weekly hours per level, e.g. {'3e': 12}"
    )
    is_class_advisor: bool = Field(default=False)
    advised_class: Optional[str] = Field(default=None)
    exclusions: List[ExclusionInfo] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    custom_fields: Dict[str, str] = Field(default_factory=dict)

    def to_domain(self) -> Supervisor:
        return Supervisor(
            supervisor_id=self.supervisor_id,
            subject=self.subject,
            secondary_subjects=list(self.secondary_subjects),
            classes=list(self.classes),
            home=self.home.to_domain() if self.home else None,
            commune=self.commune,
            capacity_override=self.capacity,
            teaching_hours_override=dict(self.teaching_hours),
            is_class_advisor=self.is_class_advisor,
            advised_class=self.advised_class,
            exclusions=[Exclusion(e.kind, e.value) for e in self.exclusions],
            tags=list(self.tags),
            custom_fields=dict(self.custom_fields),
            full_name=self.full_name,
        )


class JuryInfo(BaseModel):
    jury_id: str = Field(min_length=1, description="The unique ID for the jury")
    name: Optional[str] = Field(default=None)
    member_ids: List[str] = Field(default_factory=list, description="Supervisor ids of the members")
    max_capacity: int = Field(default=8, ge=0, description="Maximum number of students")

    def to_domain(self) -> Jury:
        return Jury(self.jury_id, list(self.member_ids), self.max_capacity, self.name)


class InternshipInfo(BaseModel):
    internship_id: str = Field(min_length=1)
    student_id: str = Field(min_length=1, description="Student doing the internship")
    location: Optional[GeoPointInfo] = Field(default=None, description="Geocoded location")
    company: Optional[str] = Field(default=None)
    address: Optional[str] = Field(default=None)
    commune: Optional[str] = Field(default=None)
    status: GeocodingStatus = Field(default=GeocodingStatus.PENDING)

    def to_domain(self) -> Internship:
        return Internship(
            internship_id=self.internship_id,
            student_id=self.student_id,
            location=self.location.to_domain() if self.location else None,
            company=self.company,
            address=self.address,
            commune=self.commune,
            status=self.status,
        )


class CriterionInfo(BaseModel):
    kind: CriterionKind
    priority: PriorityLevel = Field(default=PriorityLevel.NORMAL)
    hard: bool = Field(default=False, description="Failure makes the pairing invalid")
    weight_by_hours: bool = Field(default=False)
    field_name: Optional[str] = Field(default=None, description="Field compared by custom_field")

    def to_domain(self) -> CriterionConfig:
        return CriterionConfig(
            self.kind, self.priority, self.hard, self.weight_by_hours, self.field_name
        )


class CapacityInfo(BaseModel):
    default_capacity: int = Field(default=5, ge=0)
    level_defaults: Dict[str, int] = Field(default_factory=dict)
    level_coefficients: Dict[str, float] = Field(default_factory=dict)
    target_level: str = Field(default="3e")

    def to_domain(self) -> CapacityConfig:
        return CapacityConfig(
            self.default_capacity,
            dict(self.level_defaults),
            dict(self.level_coefficients),
            self.target_level,
        )


class StudentFilterInfo(BaseModel):
    classes: List[str] = Field(default_factory=list)
    levels: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    student_ids: List[str] = Field(default_factory=list)


class SupervisorFilterInfo(BaseModel):
    subjects: List[str] = Field(default_factory=list)
    classes: List[str] = Field(default_factory=list)
    levels: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    supervisor_ids: List[str] = Field(default_factory=list)
    advisors_only: bool = Field(default=False)


class ScenarioInfo(BaseModel):
    scenario_id: str = Field(min_length=1)
    name: Optional[str] = Field(default=None)
    kind: ScenarioKind = Field(default=ScenarioKind.STANDARD)
    criteria: Optional[List[CriterionInfo]] = Field(
        default=None, description="Criterion set; defaults for the scenario kind when omitted"
    )
    capacity: CapacityInfo = Field(default_factory=CapacityInfo)
    max_distance_km: float = Field(default=25.0, gt=0)
    max_duration_min: Optional[float] = Field(default=None, gt=0)
    average_speed_kmh: float = Field(default=40.0, gt=0)
    student_filter: StudentFilterInfo = Field(default_factory=StudentFilterInfo)
    supervisor_filter: SupervisorFilterInfo = Field(default_factory=SupervisorFilterInfo)

    def to_domain(self) -> ScenarioConfig:
        criteria = (
            [c.to_domain() for c in self.criteria]
            if self.criteria is not None
            else default_criteria(self.kind)
        )
        return ScenarioConfig(
            scenario_id=self.scenario_id,
            kind=self.kind,
            criteria=criteria,
            capacity=self.capacity.to_domain(),
            max_distance_km=self.max_distance_km,
            max_duration_min=self.max_duration_min,
            average_speed_kmh=self.average_speed_kmh,
            student_filter=StudentFilter(**self.student_filter.model_dump()),
            supervisor_filter=SupervisorFilter(**self.supervisor_filter.model_dump()),
            name=self.name,
        )


class CandidatePairInfo(BaseModel):
    student_id: str
    supervisor_id: str
    distance_km: float = Field(ge=0)
    duration_min: int = Field(ge=0)

    def to_domain(self) -> CandidatePair:
        return CandidatePair(self.student_id, self.supervisor_id, self.distance_km, self.duration_min)


class MatchingInput(BaseModel):
    """Complete input of one scenario solve."""

    scenario: ScenarioInfo
    students: List[StudentInfo] = Field(default_factory=list)
    supervisors: List[SupervisorInfo] = Field(default_factory=list)
    juries: List[JuryInfo] = Field(default_factory=list)
    internships: List[InternshipInfo] = Field(default_factory=list)
    candidate_pairs: Optional[List[CandidatePairInfo]] = Field(
        default=None, description="Pre-computed pairs; built from coordinates when omitted"
    )
    baseline: Dict[str, str] = Field(
        default_factory=dict, description="Previous assignments: student id -> target id"
    )
    manual_ids: List[str] = Field(
        default_factory=list, description="Students whose previous assignment was made by hand"
    )

    def students_domain(self) -> List[Student]:
        return [s.to_domain() for s in self.students]

    def supervisors_domain(self) -> List[Supervisor]:
        return [s.to_domain() for s in self.supervisors]

    def juries_domain(self) -> List[Jury]:
        return [j.to_domain() for j in self.juries]

    def internships_domain(self) -> List[Internship]:
        return [i.to_domain() for i in self.internships]

    def candidate_pairs_domain(self) -> Optional[List[CandidatePair]]:
        if self.candidate_pairs is None:
            return None
        return [p.to_domain() for p in self.candidate_pairs]


def load_matching_input(filename: str) -> MatchingInput:
    """Load and validate an input document from a JSON file."""
    with open(filename, "r", encoding="utf-8") as f:
        data = json.load(f)
    document = MatchingInput(**data)
    logger.info(
        "Loaded scenario %s: %d students, %d supervisors, %d juries, %d internships",
        document.scenario.scenario_id,
        len(document.students),
        len(document.supervisors),
        len(document.juries),
        len(document.internships),
    )
    return document
