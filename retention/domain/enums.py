"""
retention.domain.enums - All enumerations used across the pipeline.

Keep this module import-clean (stdlib only).
"""

from enum import Enum


# ---------------------------------------------------------------------------
# Task kinds (wire names are shared with producers in other processes)
# ---------------------------------------------------------------------------

class TaskKind(str, Enum):
    PROCESS_SURVEY    = "survey:process"
    CALCULATE_CHURN   = "churn:calculate"
    SEND_NOTIFICATION = "notification:send"
    SURVEY_INVITATION = "survey:invitation"


# ---------------------------------------------------------------------------
# Priority classes
# ---------------------------------------------------------------------------

class Priority(str, Enum):
    """
    Queue a task is placed on.  The worker pool samples queues by weight,
    so a higher class is preferred but never starves the lower ones.
    """
    CRITICAL = "critical"
    DEFAULT  = "default"
    LOW      = "low"


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class UserRole(str, Enum):
    HR_ADMIN = "hr_admin"
    EMPLOYEE = "employee"


class NotificationType(str, Enum):
    HIGH_CHURN_RISK = "high_churn_risk"
