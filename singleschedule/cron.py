"""Six-field cron expressions evaluated at one-second granularity.

Fields, in order::

    second  minute  hour  day-of-month  month  day-of-week
    0-59    0-59    0-23  1-31          1-12   0-6 (0 = Sunday)

Each field accepts ``*``, a literal, a range ``a-b``, a step (``*/n``,
``a-b/n`` or ``a/n``) and comma separated lists of those. Month and
day-of-week also accept three-letter names (``JAN``, ``MON``), case
insensitive, anywhere a literal is allowed.

An instant matches when every field contains the corresponding component
of that instant. Day-of-month and day-of-week are combined with AND.

Example:
    >>> expr = parse("0 0 9-17 * * MON-FRI")
    >>> expr.matches(datetime(2024, 1, 8, 9, 0, 0))
    True
"""

import re
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Dict, FrozenSet, Tuple, Union

from singleschedule.errors import CronRangeError, CronSyntaxError

_NUMBER_RE = re.compile(r"^[0-9]+$")

_MONTH_NAMES = {
    name: i
    for i, name in enumerate(
        ["JAN", "FEB", "MAR", "APR", "MAY", "JUN",
         "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"],
        start=1,
    )
}
_DAY_NAMES = {
    name: i
    for i, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])
}


@dataclass(frozen=True)
class _FieldSpec:
    low: int
    high: int
    names: Dict[str, int]


_FIELDS: Tuple[_FieldSpec, ...] = (
    _FieldSpec(0, 59, {}),  # second
    _FieldSpec(0, 59, {}),  # minute
    _FieldSpec(0, 23, {}),  # hour
    _FieldSpec(1, 31, {}),  # day-of-month
    _FieldSpec(1, 12, _MONTH_NAMES),  # month
    _FieldSpec(0, 6, _DAY_NAMES),  # day-of-week
)


@dataclass(frozen=True)
class CronExpression:
    """A compiled expression: one frozen set of allowed values per field."""

    source: str
    seconds: FrozenSet[int]
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]

    def matches(self, instant: datetime) -> bool:
        # isoweekday: Monday=1 .. Sunday=7, cron wants Sunday=0
        return (
            instant.second in self.seconds
            and instant.minute in self.minutes
            and instant.hour in self.hours
            and instant.day in self.days_of_month
            and instant.month in self.months
            and instant.isoweekday() % 7 in self.days_of_week
        )

    def __str__(self) -> str:
        return self.source


def _parse_value(token: str, spec: _FieldSpec, index: int) -> int:
    if _NUMBER_RE.match(token):
        value = int(token)
    else:
        value = spec.names.get(token.upper())
        if value is None:
            raise CronSyntaxError(f"unrecognized value '{token}'", index)
    if not spec.low <= value <= spec.high:
        raise CronRangeError(
            f"value {value} out of range {spec.low}-{spec.high}", index
        )
    return value


def _parse_item(item: str, spec: _FieldSpec, index: int) -> FrozenSet[int]:
    if not item:
        raise CronSyntaxError("empty list element", index)

    step = 1
    has_step = "/" in item
    if has_step:
        base, _, step_token = item.partition("/")
        if not _NUMBER_RE.match(step_token):
            raise CronSyntaxError(f"invalid step '{step_token}'", index)
        step = int(step_token)
        if step == 0:
            raise CronSyntaxError("step must be greater than 0", index)
    else:
        base = item

    if base == "*":
        start, end = spec.low, spec.high
    elif "-" in base:
        left, _, right = base.partition("-")
        if not left or not right:
            raise CronSyntaxError(f"malformed range '{base}'", index)
        start = _parse_value(left, spec, index)
        end = _parse_value(right, spec, index)
        if start > end:
            raise CronSyntaxError(f"range '{base}' is reversed", index)
    else:
        start = _parse_value(base, spec, index)
        # "a/n" runs from a to the top of the field
        end = spec.high if has_step else start

    return frozenset(range(start, end + 1, step))


def _parse_field(text: str, spec: _FieldSpec, index: int) -> FrozenSet[int]:
    values: FrozenSet[int] = frozenset()
    for item in text.split(","):
        values |= _parse_item(item, spec, index)
    return values


@lru_cache(maxsize=256)
def _compile(expression: str) -> CronExpression:
    parts = expression.split()
    if len(parts) != len(_FIELDS):
        raise CronSyntaxError(
            f"expected {len(_FIELDS)} fields, got {len(parts)}"
        )
    compiled = [
        _parse_field(part, spec, index)
        for index, (part, spec) in enumerate(zip(parts, _FIELDS), start=1)
    ]
    return CronExpression(" ".join(parts), *compiled)


def parse(expression: str) -> CronExpression:
    """Compile a cron expression.

    Raises:
        CronSyntaxError: malformed syntax or wrong field count.
        CronRangeError: a literal outside its field's range.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise CronSyntaxError("expression is empty")
    return _compile(expression.strip())


def validate(expression: str) -> str:
    """Return the normalized expression, raising CronParseError if invalid."""
    return parse(expression).source


def matches(expression: Union[CronExpression, str], instant: datetime) -> bool:
    """True if ``instant`` (to the second) satisfies ``expression``."""
    if isinstance(expression, str):
        expression = parse(expression)
    return expression.matches(instant)
