"""Structural diff over decoded JSON values."""

from __future__ import annotations

from typing import Any

from .models import Mismatch, Strictness


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def values_equal(expected: Any, actual: Any) -> bool:
    """Scalar equality where numbers compare by value (``1`` equals ``1.0``)."""

    if is_number(expected) and is_number(actual):
        return expected == actual
    if isinstance(expected, bool) or isinstance(actual, bool):
        return type(expected) is type(actual) and expected == actual
    return expected == actual


def _kind(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def diff_json(
    expected: Any,
    actual: Any,
    strictness: Strictness = Strictness.LENIENT,
    path: str = "$",
) -> list[Mismatch]:
    """Compare ``expected`` against ``actual``.

    Object members are matched by name, so member order never matters.
    Members present only in ``actual`` are reported in strict mode. Arrays
    are compared position by position and must have the same length.
    """

    if isinstance(expected, dict) and isinstance(actual, dict):
        mismatches: list[Mismatch] = []
        for key, value in expected.items():
            child = f"{path}.{key}"
            if key not in actual:
                mismatches.append(Mismatch(path=child, expected=value, actual=None, message="missing field"))
                continue
            mismatches.extend(diff_json(value, actual[key], strictness, child))
        if strictness is Strictness.STRICT:
            for key in actual:
                if key not in expected:
                    mismatches.append(
                        Mismatch(path=f"{path}.{key}", expected=None, actual=actual[key], message="unexpected field")
                    )
        return mismatches

    if isinstance(expected, list) and isinstance(actual, list):
        if len(expected) != len(actual):
            return [
                Mismatch(
                    path=path,
                    expected=len(expected),
                    actual=len(actual),
                    message="array length differs",
                )
            ]
        mismatches = []
        for index, (left, right) in enumerate(zip(expected, actual)):
            mismatches.extend(diff_json(left, right, strictness, f"{path}[{index}]"))
        return mismatches

    if _kind(expected) != _kind(actual):
        return [
            Mismatch(
                path=path,
                expected=expected,
                actual=actual,
                message=f"expected {_kind(expected)}, got {_kind(actual)}",
            )
        ]
    if not values_equal(expected, actual):
        return [Mismatch(path=path, expected=expected, actual=actual, message="value differs")]
    return []
