"""
errors.py — Failure taxonomy for detection, transformation and learning.

Only RequiredFieldUnresolved aborts a detection. Everything else degrades:
detector outages and ambiguous columns become warning lines, row problems
become ValidationIssues, and persistence failures are reported on the
feedback outcome.
"""

# Warning-line prefixes used in DetectionResult.warnings
DETECTOR_UNAVAILABLE = 'DetectorUnavailable'
AMBIGUOUS_MAPPING = 'AmbiguousMapping'
LEARNING_PERSISTENCE_FAILURE = 'LearningPersistenceFailure'


class MappingEngineError(Exception):
    """Base class for engine errors."""


class RequiredFieldUnresolved(MappingEngineError):
    """account and/or product could not be mapped to any column."""

    def __init__(self, missing_fields: list, detected_columns: list):
        self.missing_fields = list(missing_fields)
        self.detected_columns = list(detected_columns)
        super().__init__(
            f"Required field(s) unresolved: {', '.join(self.missing_fields)}. "
            f"Detected columns: {', '.join(self.detected_columns) or '[none]'}"
        )


class LearningPersistenceFailure(MappingEngineError):
    """A write to the history/synonym store failed."""


class DetectorUnavailable(MappingEngineError):
    """Raised inside the AI adapter when the classification service cannot answer."""


def warning_line(code: str, message: str) -> str:
    return f"{code}: {message}"
