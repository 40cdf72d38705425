"""Import all models so SQLAlchemy metadata is fully populated."""

from app.models.audit_log import AuditLog  # noqa: F401
from app.models.rotation import RotationLog, RotationSchedule  # noqa: F401
from app.models.secret import Secret, SecretHistoryEntry  # noqa: F401
from app.models.team import Team, TeamProject, TeamUser  # noqa: F401
from app.models.workspace import Project, Workspace  # noqa: F401
