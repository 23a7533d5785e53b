"""
Rule Compiler - Validates pricing rule rows from the seed CSV.

Each row names its pricing model, carries JSON-encoded ``conditions`` and
``actions`` lists and optional effective dates. Conditions and actions are
parsed through the closed operator/action enums so a typo fails here,
not at pricing time.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..engine.models import RuleAction, RuleCondition
from ..errors import ValidationError


@dataclass
class CompiledRule:
    """A validated rule row, ready to be created against its model."""
    model_name: str
    name: str
    rule_type: str
    priority: int
    active: bool
    conditions: list[RuleCondition] = field(default_factory=list)
    actions: list[RuleAction] = field(default_factory=list)
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    description: Optional[str] = None


def parse_bool(value) -> bool:
    """Parse a boolean from CSV string."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


def parse_optional_str(value) -> Optional[str]:
    """Parse optional string (empty = None)."""
    if value is None or str(value).strip() == '':
        return None
    return str(value).strip()


def parse_optional_datetime(value) -> Optional[datetime]:
    text = parse_optional_str(value)
    if text is None:
        return None
    return datetime.fromisoformat(text)


def parse_json_list(value, label: str) -> list:
    text = parse_optional_str(value)
    if text is None:
        return []
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError(f"{label} must be a JSON list")
    return data


def validate_rule(row: dict, line_num: int) -> tuple[Optional[CompiledRule], list[str]]:
    """
    Validate and parse a rule from a CSV row.

    Returns (rule, errors) - rule is None if validation failed.
    """
    errors = []

    model_name = parse_optional_str(row.get('model_name'))
    if not model_name:
        errors.append(f"Line {line_num}: model_name is required")
        return None, errors

    name = parse_optional_str(row.get('name'))
    if not name:
        errors.append(f"Line {line_num}: name is required")
        return None, errors

    try:
        priority = int(parse_optional_str(row.get('priority')) or 0)
    except ValueError:
        errors.append(f"Line {line_num}: priority must be an integer")
        return None, errors

    try:
        conditions = [RuleCondition.from_dict(c) for c in parse_json_list(row.get('conditions'), 'conditions')]
        actions = [RuleAction.from_dict(a) for a in parse_json_list(row.get('actions'), 'actions')]
    except ValidationError as e:
        errors.append(f"Line {line_num}: {e.message}")
        return None, errors
    except (ValueError, AttributeError) as e:
        errors.append(f"Line {line_num}: {e}")
        return None, errors

    if not actions:
        errors.append(f"Line {line_num}: at least one action is required")

    dates = {}
    for date_field in ('effective_from', 'effective_to'):
        try:
            dates[date_field] = parse_optional_datetime(row.get(date_field))
        except ValueError:
            errors.append(f"Line {line_num}: {date_field} must be ISO format (YYYY-MM-DD)")

    if errors:
        return None, errors

    if dates['effective_from'] and dates['effective_to'] and dates['effective_to'] < dates['effective_from']:
        return None, [f"Line {line_num}: effective_to is before effective_from"]

    return CompiledRule(
        model_name=model_name,
        name=name,
        rule_type=parse_optional_str(row.get('rule_type')) or 'adjustment',
        priority=priority,
        active=parse_bool(row.get('active', 'true') or 'true'),
        conditions=conditions,
        actions=actions,
        effective_from=dates['effective_from'],
        effective_to=dates['effective_to'],
        description=parse_optional_str(row.get('description')),
    ), []


def compile_rules(rows: list[dict]) -> tuple[bool, list[CompiledRule], list[str]]:
    """
    Validate every rule row.

    Returns (success, rules, errors). Rules come back highest priority first.
    """
    all_errors = []
    rules = []

    for line_num, row in enumerate(rows, start=2):  # +2 for 1-indexed header row
        rule, errors = validate_rule(row, line_num)
        if errors:
            all_errors.extend(errors)
        elif rule:
            rules.append(rule)

    rules.sort(key=lambda r: -r.priority)
    return not all_errors, rules, all_errors
