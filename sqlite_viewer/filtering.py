from __future__ import annotations
import math
import operator
import re

from sqlite_viewer.consts import NUMERIC_TEXT_REGEX, INTEGER_TEXT_REGEX
from sqlite_viewer.errors import UnsupportedQuery

NUMERIC_TEXT_PATTERN = re.compile(NUMERIC_TEXT_REGEX)
INTEGER_TEXT_PATTERN = re.compile(INTEGER_TEXT_REGEX)

NUMERIC_AFFINITIES = ("INTEGER", "REAL", "NUMERIC")


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def real_to_text(value: float) -> str:
    """
    Renders a REAL the way sqlite does when storing it in a TEXT column
    (printf "%!.15g"): 15 significant digits, and a mantissa always carrying a
    decimal point, 1e20 becomes 1.0e+20.
    """
    if math.isinf(value):
        return "Inf" if value > 0 else "-Inf"

    mantissa, _, exponent = f"{value:.15g}".partition("e")
    if "." not in mantissa:
        mantissa += ".0"
    if exponent:
        return f"{mantissa}e{exponent}"
    return mantissa


def apply_affinity(value: any, affinity: str) -> any:
    """
    Converts a literal the way sqlite does before comparing it with a column
    of the given affinity.
    https://www.sqlite.org/datatype3.html#type_conversions_prior_to_comparison
    """
    if value is None:
        return None

    if affinity in NUMERIC_AFFINITIES and isinstance(value, str):
        if INTEGER_TEXT_PATTERN.match(value):
            return int(value)
        if NUMERIC_TEXT_PATTERN.match(value):
            return float(value)
        return value

    if affinity == "TEXT" and _is_number(value):
        return real_to_text(value) if isinstance(value, float) else str(value)

    return value


class ValueFilter:
    """
    A single ``column = literal`` condition.

    NULL never compares equal to anything. Text is compared byte for byte,
    which is sqlite's BINARY collation.
    """

    column: str
    operator: any  # some operation exported by the operator module
    value: any  # the literal as written in the query
    affinity: str
    operand: any  # the literal converted to the column affinity

    def __init__(self, column: str, operator: str, value: any, affinity: str = "BLOB"):
        self.column = column
        self.operator_str = operator
        self.operator = ValueFilter._string_to_operator(operator)
        self.value = value
        self.affinity = affinity
        self.operand = apply_affinity(value, affinity)

    def with_affinity(self, affinity: str) -> ValueFilter:
        return ValueFilter(self.column, self.operator_str, self.value, affinity)

    def __call__(self, value) -> bool:
        operand = self.operand
        if value is None or operand is None:
            return False

        if _is_number(value) and _is_number(operand):
            return self.operator(value, operand)
        if type(value) is type(operand):
            return self.operator(value, operand)

        # Values of different storage classes are never equal
        return False

    def __eq__(self, other):
        if not isinstance(other, ValueFilter):
            return NotImplemented
        return (
            self.column == other.column
            and self.operator == other.operator
            and self.value == other.value
            and type(self.value) is type(other.value)
        )

    def __repr__(self):
        return f"<ValueFilter: {self.column} {self.operator_str} {self.value!r}>"

    @staticmethod
    def _string_to_operator(operator_str: str):
        match operator_str:
            case "=" | "==":
                return operator.eq
            case _:
                raise UnsupportedQuery(f"Operator '{operator_str}' is not supported")
