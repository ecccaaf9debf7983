from typing import Any, List, Union
from enum import Enum

from pydantic import Field

from models.common import EngineModel


class EvaluationMode(str, Enum):
    AND = "AND"
    OR = "OR"


class ConditionOperator(str, Enum):
    # equality
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IS = "is"
    IS_NOT = "is_not"
    # containment
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"
    IS_ONE_OF = "is_one_of"
    IS_NOT_ONE_OF = "is_not_one_of"
    CONTAINS_ANY = "contains_any"
    CONTAINS_ALL = "contains_all"
    # numeric
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    BETWEEN = "between"
    # dates
    IS_BEFORE = "is_before"
    IS_AFTER = "is_after"
    IS_BETWEEN = "is_between"
    IS_WITHIN_LAST = "is_within_last"
    IS_OLDER_THAN = "is_older_than"
    DATE_REACHED = "date_reached"
    # presence
    IS_KNOWN = "is_known"
    IS_UNKNOWN = "is_unknown"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    # tags
    TAG_PRESENT = "tag_present"
    TAG_ABSENT = "tag_absent"


class Condition(EngineModel):
    field: str
    operator: ConditionOperator
    value: Any = None


class ConditionGroup(EngineModel):
    """An AND/OR node; children are leaf conditions or nested groups."""
    operator: EvaluationMode = EvaluationMode.AND
    conditions: List[Union[Condition, "ConditionGroup"]] = Field(default_factory=list)


ConditionGroup.model_rebuild()
