from __future__ import annotations

from enum import Enum


class TriggerType(str, Enum):
    KEYWORD = "KEYWORD"
    NEW_MESSAGE = "NEW_MESSAGE"
    CONVERSATION_OPENED = "CONVERSATION_OPENED"
    BUTTON_CLICK = "BUTTON_CLICK"


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    CONDITION = "condition"
    DELAY = "delay"
    ACTION = "action"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
