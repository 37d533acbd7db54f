"""
Test plan loader — reads and checks the JSON plans in the test-plans directory.
"""

import json
import re
from pathlib import Path
from typing import Any, Optional, Union

from popcorn.errors import (
    InvalidPlanJsonError,
    MissingFieldError,
    NotAnObjectError,
    PlanLoadError,
    PlanNotFoundError,
)


def load_test_plan(plan_name: str, test_plans_dir: Union[str, Path]) -> dict[str, Any]:
    """Load a plan by name, with or without the .json suffix.

    Raises PlanNotFoundError, InvalidPlanJsonError, NotAnObjectError or
    MissingFieldError (naming the field).
    """
    file_name = plan_name if plan_name.endswith(".json") else f"{plan_name}.json"
    path = Path(test_plans_dir).resolve() / file_name

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise PlanNotFoundError(f"Test plan not found: {path}")
    except OSError as e:
        raise PlanLoadError(f"Failed to read test plan '{plan_name}': {e}")

    try:
        parsed = json.loads(raw)
    except ValueError:
        raise InvalidPlanJsonError(f"Invalid JSON in test plan '{plan_name}': {path}")

    return validate_test_plan(parsed, plan_name)


def list_test_plans(test_plans_dir: Union[str, Path]) -> list[str]:
    """Plan names (without .json) in the directory; empty if it does not exist."""
    try:
        entries = list(Path(test_plans_dir).iterdir())
    except FileNotFoundError:
        return []
    except OSError as e:
        raise PlanLoadError(f"Failed to list test plans: {e}")
    return sorted(entry.stem for entry in entries if entry.suffix == ".json" and entry.is_file())


def validate_test_plan(data: Any, source_name: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise NotAnObjectError(f"Test plan '{source_name}' must be a JSON object")

    plan_name = data.get("planName")
    if not isinstance(plan_name, str) or not plan_name:
        raise MissingFieldError(
            f"Test plan '{source_name}' is missing required field 'planName' (non-empty string)",
            "planName",
        )
    if not isinstance(data.get("steps"), list):
        raise MissingFieldError(
            f"Test plan '{source_name}' is missing required field 'steps' (array)",
            "steps",
        )
    if not isinstance(data.get("baseUrl"), str):
        raise MissingFieldError(
            f"Test plan '{source_name}' is missing required field 'baseUrl' (string)",
            "baseUrl",
        )
    return data


def to_kebab_case(name: str) -> str:
    """LoginForm -> login-form, HTMLParser -> html-parser."""
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", name)
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1-\2", name)
    return name.lower()


def find_matching_plan(base_name: str, available: list[str]) -> Optional[str]:
    """Pick the plan for an edited file: exact base name, then kebab-case, then substring."""
    if not available:
        return None
    if base_name in available:
        return base_name
    kebab = to_kebab_case(base_name)
    if kebab in available:
        return kebab
    lower = base_name.lower()
    for name in available:
        candidate = name.lower()
        if lower in candidate or candidate.removeprefix("example-") in lower:
            return name
    return None
