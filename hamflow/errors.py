"""Exception taxonomy for the recurrence engine.

All of these are input/programming errors: they propagate to the caller
immediately and are never retried. Each also subclasses ValueError so code
that already guards with ``except ValueError`` keeps working.
"""


class HamflowError(Exception):
    """Base class for engine errors."""


class InvalidDateFormat(HamflowError, ValueError):
    def __init__(self, value):
        self.value = value
        super().__init__(f"invalid date key {value!r}: expected YYYY-MM-DD")


class InvalidWindow(HamflowError, ValueError):
    def __init__(self, start: str, end: str):
        self.start = start
        self.end = end
        super().__init__(f"invalid window: end {end} must be after start {start}")


class WindowTooLarge(HamflowError, ValueError):
    def __init__(self, days: int, limit: int):
        self.days = days
        self.limit = limit
        super().__init__(f"window spans {days} days; the limit is {limit}")


class InvalidRecurrencePattern(HamflowError, ValueError):
    def __init__(self, pattern, reason: str = 'unrecognised pattern'):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"invalid recurrence pattern {pattern!r}: {reason}")
