"""
Status enums, one closed set per entity kind.

Values are the strings persisted in the ``status`` column and mirrored to the
shared backend, so ``WashingStatus.CERTIFIED == "CERTIFIED"`` holds.
"""

from enum import Enum


class ContainerStatus(str, Enum):
    STACKING = "STACKING"
    PENDING_WASH = "PENDING_WASH"
    WASHING = "WASHING"
    DM = "DM"              # damaged
    AR = "AR"              # awaiting repair
    REPAIR = "REPAIR"
    AV = "AV"              # available
    RELEASED = "RELEASED"


class WashingStatus(str, Enum):
    PENDING_APPROVAL = "PENDING_APPROVAL"
    PENDING_SCHEDULE = "PENDING_SCHEDULE"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_QC = "PENDING_QC"
    REWORK = "REWORK"
    CERTIFIED = "CERTIFIED"
    REJECTED = "REJECTED"


class SurveyStatus(str, Enum):
    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class EORStatus(str, Enum):
    DRAFT = "DRAFT"
    SENT = "SENT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RepairOrderStatus(str, Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class ShuntingStatus(str, Enum):
    PENDING = "PENDING"
    DISPATCHED = "DISPATCHED"
    COMPLETED = "COMPLETED"


class PreInspectionStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    PASS = "PASS"
    FAIL = "FAIL"


class StackingStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class ChatStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


STATUS_ENUMS: dict[str, type[Enum]] = {
    "container": ContainerStatus,
    "washing_order": WashingStatus,
    "survey": SurveyStatus,
    "eor": EORStatus,
    "repair_order": RepairOrderStatus,
    "shunting_request": ShuntingStatus,
    "pre_inspection": PreInspectionStatus,
    "stacking_request": StackingStatus,
    "chat": ChatStatus,
}

# Status every entity of a kind is created in
INITIAL_STATUS: dict[str, Enum] = {
    "container": ContainerStatus.STACKING,
    "washing_order": WashingStatus.PENDING_APPROVAL,
    "survey": SurveyStatus.DRAFT,
    "eor": EORStatus.DRAFT,
    "repair_order": RepairOrderStatus.NEW,
    "shunting_request": ShuntingStatus.PENDING,
    "pre_inspection": PreInspectionStatus.SCHEDULED,
    "stacking_request": StackingStatus.PENDING,
    "chat": ChatStatus.ACTIVE,
}


def is_valid_status(kind: str, value) -> bool:
    """True if *value* belongs to the closed status set of *kind*."""
    enum_cls = STATUS_ENUMS.get(kind)
    if enum_cls is None:
        return False
    try:
        enum_cls(value)
    except ValueError:
        return False
    return True
