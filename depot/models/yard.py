"""
Depot M&R Platform
Yard domain models — containers and the workflow entities that hang off them.

Models:
    - Container:        root entity, natural key ``container_number``
    - WashingOrder:     wash → QC → certificate (with rework loop)
    - Survey:           damage survey of one container
    - EstimateOfRepair: costed damage list pending liner approval
    - RepairOrder:      repair work for an approved estimate
    - ShuntingRequest:  yard move between blocks
    - PreInspection:    QC of a finished repair
    - StackingRequest:  put-away of a released container

References between entities (container_id, survey_id, eor_id,
repair_order_id) are plain indexed columns; they are resolved by the store
at write time so that the local store can also cache remote entities.
"""

from depot.models import db
from depot.models.base import EntityModel


class Container(EntityModel):
    __tablename__ = "containers"
    COLUMN_FIELDS = ("container_number", "liner", "size", "type", "yard_location", "sequence")

    container_number = db.Column(db.String(20), nullable=False, unique=True, index=True)
    liner = db.Column(db.String(20), nullable=True, index=True)
    size = db.Column(db.String(10), nullable=True)
    type = db.Column(db.String(10), nullable=True)
    yard_location = db.Column(db.JSON, nullable=True, comment="{block, row, tier}")
    sequence = db.Column(db.Integer, nullable=True)


class WashingOrder(EntityModel):
    __tablename__ = "washing_orders"
    COLUMN_FIELDS = ("container_id", "program", "bay", "team")

    container_id = db.Column(db.String(64), nullable=False, index=True)
    program = db.Column(db.String(40), nullable=True, comment="cleaning program code")
    bay = db.Column(db.String(20), nullable=True, index=True)
    team = db.Column(db.String(40), nullable=True)


class Survey(EntityModel):
    __tablename__ = "surveys"
    COLUMN_FIELDS = ("container_id", "survey_type")

    container_id = db.Column(db.String(64), nullable=False, index=True)
    survey_type = db.Column(db.String(20), nullable=True, comment="INBOUND | OUTBOUND | PERIODIC | OTHER")


class EstimateOfRepair(EntityModel):
    __tablename__ = "eors"
    COLUMN_FIELDS = ("container_id", "survey_id", "total_cost")

    container_id = db.Column(db.String(64), nullable=False, index=True)
    survey_id = db.Column(db.String(64), nullable=False, index=True)
    total_cost = db.Column(db.Float, nullable=True)


class RepairOrder(EntityModel):
    __tablename__ = "repair_orders"
    COLUMN_FIELDS = ("container_id", "eor_id", "team")

    container_id = db.Column(db.String(64), nullable=False, index=True)
    eor_id = db.Column(db.String(64), nullable=False, index=True)
    team = db.Column(db.String(40), nullable=True)


class ShuntingRequest(EntityModel):
    __tablename__ = "shunting_requests"
    COLUMN_FIELDS = ("container_id", "from_block", "to_block", "priority")

    container_id = db.Column(db.String(64), nullable=False, index=True)
    from_block = db.Column(db.String(20), nullable=True)
    to_block = db.Column(db.String(20), nullable=True)
    priority = db.Column(db.String(10), nullable=True, comment="NORMAL | URGENT")


class PreInspection(EntityModel):
    __tablename__ = "pre_inspections"
    COLUMN_FIELDS = ("container_id", "repair_order_id", "result")

    container_id = db.Column(db.String(64), nullable=False, index=True)
    repair_order_id = db.Column(db.String(64), nullable=False, index=True)
    result = db.Column(db.String(10), nullable=True)


class StackingRequest(EntityModel):
    __tablename__ = "stacking_requests"
    COLUMN_FIELDS = ("container_id",)

    container_id = db.Column(db.String(64), nullable=False, index=True)
