from app.models.audit_log import AuditLog
from app.models.rotation import (
    RotationFrequency,
    RotationLog,
    RotationLogStatus,
    RotationMethod,
    RotationSchedule,
    ScheduleStatus,
)
from app.models.secret import EnvironmentType, RotationPolicy, Secret, SecretHistoryEntry
from app.models.team import MembershipStatus, Team, TeamProject, TeamRole, TeamUser
from app.models.workspace import Project, Workspace

__all__ = [
    "AuditLog",
    "EnvironmentType",
    "MembershipStatus",
    "Project",
    "RotationFrequency",
    "RotationLog",
    "RotationLogStatus",
    "RotationMethod",
    "RotationPolicy",
    "RotationSchedule",
    "ScheduleStatus",
    "Secret",
    "SecretHistoryEntry",
    "Team",
    "TeamProject",
    "TeamRole",
    "TeamUser",
    "Workspace",
]
