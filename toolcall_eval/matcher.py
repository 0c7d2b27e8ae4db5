"""Scoring of an actual tool-call trace against a test case's expected variants.

A variant matches only when the trace has the same length, the same tool at
every position, and every expected argument present with an equal value
(case-insensitive, compared as strings). Extra arguments on the actual side
are ignored. The first matching variant in declaration order wins.
"""

import json
import math
from typing import Any

from .models import ExpectedToolCall, ExpectedToolPath, TestCase, ToolCall, ToolCallResult

NO_TOOLS_EXPECTED = "no_tools_expected"

RAW_ARGUMENTS_KEY = "_raw_arguments"
PARSE_ERROR_KEY = "_parse_error"


def parse_arguments(arguments: str) -> dict[str, Any]:
    """Parse a raw argument string, keeping unparseable payloads as a sentinel mapping."""
    if not arguments.strip():
        return {}
    try:
        args = json.loads(arguments)
    except json.JSONDecodeError as e:
        return {RAW_ARGUMENTS_KEY: arguments, PARSE_ERROR_KEY: str(e)}
    if args is None:
        return {}
    if not isinstance(args, dict):
        return {RAW_ARGUMENTS_KEY: arguments, PARSE_ERROR_KEY: "arguments are not a JSON object"}
    return args


def actual_tool_calls(results: list[ToolCallResult]) -> list[ToolCall]:
    return [ToolCall(tool_name=r.tool_name, arguments=parse_arguments(r.arguments)) for r in results]


def format_value(value: Any) -> str:
    """Stringify a JSON value for loose comparison, so 1, 1.0 and "1" compare equal.

    Integral floats always print as plain integers (1e6 becomes "1000000"),
    which also lets a numeric string match a float of any size.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def is_tool_call_correct(expected: ExpectedToolCall, actual: ToolCall) -> bool:
    if expected.name != actual.tool_name:
        return False

    for key, expected_value in expected.arguments.items():
        if key not in actual.arguments:
            return False
        if format_value(expected_value).lower() != format_value(actual.arguments[key]).lower():
            return False

    return True


def is_path_successful(expected: list[ExpectedToolCall], actual: list[ToolCall]) -> bool:
    if len(actual) != len(expected):
        return False
    return all(is_tool_call_correct(e, a) for e, a in zip(expected, actual))


def match_tool_path(actual: list[ToolCall], variants: list[ExpectedToolPath]) -> str:
    """Name of the first variant the trace matches, or "" if none."""
    for variant in variants:
        if is_path_successful(variant.tools, actual):
            return variant.name
    return ""


def evaluate(test_case: TestCase, actual: list[ToolCall]) -> tuple[bool, str]:
    """Return (success, matched variant name)."""
    if not test_case.expected_tools_variants:
        # No variants: the correct behaviour is not calling any tool
        if actual:
            return False, ""
        return True, NO_TOOLS_EXPECTED

    matched = match_tool_path(actual, test_case.expected_tools_variants)
    return bool(matched), matched
