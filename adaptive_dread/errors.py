# adaptive_dread/errors.py

"""
Exception taxonomy for the narrative control loop.

Only the Intent Scheduler ever lets one of these reach a caller (through the
future returned by ``submit``). The state store and the metric engine catch
their own failures and fall back to safe values.
"""

from typing import List, Optional


class NarrativeCoreError(Exception):
    """Base class for every error raised by adaptive_dread."""


class GenerationFailure(NarrativeCoreError):
    """A generation call failed; the intent that issued it fails with it."""

    def __init__(self, message: str, *, intent_type: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.intent_type = intent_type
        self.stage = stage


class GenerationTimeout(GenerationFailure):
    """The generation service did not answer within the caller's deadline."""


class GenerationServiceError(GenerationFailure):
    """The generation service answered with an error."""


class ParseFailure(NarrativeCoreError):
    """Generated text could not be turned into the structured data we expected."""

    def __init__(self, message: str, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class InvalidRuleCondition(NarrativeCoreError):
    """A rule condition clause is malformed."""

    def __init__(self, clause: str, reason: str):
        super().__init__(f"Invalid rule clause {clause!r}: {reason}")
        self.clause = clause
        self.reason = reason


class StateCorruption(NarrativeCoreError):
    """A persisted field could not be read back."""

    def __init__(self, field_name: str, reason: str):
        super().__init__(f"Corrupt persisted field {field_name!r}: {reason}")
        self.field_name = field_name
        self.reason = reason


class EventTimeout(NarrativeCoreError, TimeoutError):
    """A wait on the notification bridge exceeded its deadline."""

    def __init__(self, event_name: str, timeout: float):
        super().__init__(f"Event {event_name} timed out after {timeout} seconds")
        self.event_name = event_name
        self.timeout = timeout


class IntentRejected(NarrativeCoreError):
    """The scheduler refused or shed a queued intent."""

    def __init__(self, intent_type: str, priority: float, reason: str):
        super().__init__(f"Intent {intent_type} (priority {priority:.2f}) rejected: {reason}")
        self.intent_type = intent_type
        self.priority = priority
        self.reason = reason


__all__: List[str] = [
    "NarrativeCoreError",
    "GenerationFailure",
    "GenerationTimeout",
    "GenerationServiceError",
    "ParseFailure",
    "InvalidRuleCondition",
    "StateCorruption",
    "EventTimeout",
    "IntentRejected",
]
