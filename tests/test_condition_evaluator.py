import pytest
from datetime import datetime, timedelta, timezone

from executor.condition_evaluator import ConditionEvaluator
from models.conditions import Condition, ConditionGroup, EvaluationMode

NOW = datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc)

LEAD = {
    "status": "Converted",
    "lead_score": 72,
    "tags": ["webinar", "Hot"],
    "email": "ada@example.com",
    "phone": "",
    "program_interest": "Data Science",
    "created_at": (NOW - timedelta(days=3)).isoformat(),
    "custom_fields": {"gpa": 3.7, "country_of_origin": "NG"},
    "assigned_to": None,
}


def check(field, operator, value=None, attributes=LEAD):
    return ConditionEvaluator().evaluate_condition(
        Condition(field=field, operator=operator, value=value), attributes, NOW
    )


@pytest.mark.parametrize("field,operator,value,expected", [
    ("status", "equals", "converted", True),
    ("status", "not_equals", "new", True),
    ("status", "is", ["converted"], True),
    ("status", "is_not", ["converted"], False),
    ("email", "contains", "@example", True),
    ("email", "starts_with", "ADA", True),
    ("email", "ends_with", ".org", False),
    ("status", "in", ["new", "converted"], True),
    ("status", "is_not_one_of", "new, lost", True),
    ("tags", "contains", "hot", True),
    ("tags", "contains_any", ["cold", "webinar"], True),
    ("tags", "contains_all", ["hot", "webinar"], True),
    ("tags", "contains_all", ["hot", "vip"], False),
    ("lead_score", "greater_than", 70, True),
    ("lead_score", "less_than", "50", False),
    ("lead_score", "between", [70, 80], True),
    ("custom_fields.gpa", "greater_than", 3.5, True),
    ("custom_fields.country_of_origin", "equals", "ng", True),
    ("tags", "tag_present", "webinar", True),
    ("tags", "tag_absent", "vip", True),
    ("created_at", "is_within_last", [7, "days"], True),
    ("created_at", "is_older_than", {"value": 1, "unit": "days"}, True),
    ("created_at", "is_before", NOW.isoformat(), True),
    ("created_at", "is_after", NOW.isoformat(), False),
    ("created_at", "date_reached", None, True),
    ("phone", "is_empty", None, True),
    ("email", "is_not_empty", None, True),
    ("email", "is_known", None, True),
])
def test_operators(field, operator, value, expected):
    assert check(field, operator, value) is expected


@pytest.mark.parametrize("operator,expected", [
    ("equals", False),
    ("not_equals", False),
    ("greater_than", False),
    ("contains", False),
    ("is_known", False),
    ("is_not_empty", False),
    ("is_unknown", True),
    ("is_empty", True),
    ("tag_absent", True),
])
def test_missing_field(operator, expected):
    assert check("assigned_to", operator, "x") is expected
    assert check("no_such_field", operator, "x") is expected


def test_uncoercible_values_do_not_match():
    assert check("status", "greater_than", 10) is False
    assert check("email", "is_before", "2024-01-01") is False
    assert check("lead_score", "between", [1]) is False


def test_nested_groups():
    evaluator = ConditionEvaluator()
    group = ConditionGroup(operator=EvaluationMode.AND, conditions=[
        Condition(field="status", operator="equals", value="converted"),
        ConditionGroup(operator=EvaluationMode.OR, conditions=[
            Condition(field="lead_score", operator="greater_than", value=90),
            Condition(field="tags", operator="tag_present", value="hot"),
        ]),
    ])
    assert evaluator.evaluate_group(group, LEAD, NOW) is True


def test_top_level_mode():
    evaluator = ConditionEvaluator()
    yes = ConditionGroup(conditions=[Condition(field="status", operator="equals", value="converted")])
    no = ConditionGroup(conditions=[Condition(field="status", operator="equals", value="lost")])

    assert evaluator.evaluate_groups([yes, no], EvaluationMode.OR, LEAD, NOW) is True
    assert evaluator.evaluate_groups([yes, no], EvaluationMode.AND, LEAD, NOW) is False
    assert evaluator.evaluate_groups([], EvaluationMode.AND, LEAD, NOW) is True


def test_bad_attributes_degrade_to_no_match():
    evaluator = ConditionEvaluator()
    group = ConditionGroup(conditions=[Condition(field="status", operator="equals", value="x")])
    assert evaluator.safe_evaluate_groups([group], EvaluationMode.AND, "not a mapping", NOW) is False
