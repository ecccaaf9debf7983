from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from enum import Enum
from datetime import timedelta


class EngineModel(BaseModel):
    """Base for records authored by the product: accepts snake_case or camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DurationUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


class Duration(EngineModel):
    value: int = 1
    unit: DurationUnit = DurationUnit.DAYS

    def to_timedelta(self) -> timedelta:
        return timedelta(**{self.unit.value: self.value})
