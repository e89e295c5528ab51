"""Output-line classification and the records handed to the UI sink."""

from collections.abc import Callable
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .config import ClassifierRules


class Severity(str, Enum):
    """Severity of a record, in classifier priority order."""

    ERROR = "error"
    WARNING = "warning"
    SUCCESS = "success"
    INFO = "info"
    DEFAULT = "default"


class LogRecord(BaseModel):
    """One line for the external log/UI sink."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    severity: Severity = Severity.DEFAULT
    text: str

    def format(self) -> str:
        """Render the record the way the panel's log view shows it."""
        return f"[{self.timestamp:%Y-%m-%d %H:%M:%S}] {self.text}"


LogSink = Callable[[LogRecord], None]


class LineClassifier:
    """Assigns a severity to a tunnel output line.

    Keyword groups are tested case-insensitively in a fixed order
    (error, warning, success, info) and the first hit wins, so a line such
    as ``"login success but error"`` is an error.
    """

    def __init__(self, rules: ClassifierRules | None = None):
        self.rules = rules or ClassifierRules()
        self._ordered: list[tuple[Severity, tuple[str, ...]]] = [
            (Severity.ERROR, self.rules.error),
            (Severity.WARNING, self.rules.warning),
            (Severity.SUCCESS, self.rules.success),
            (Severity.INFO, self.rules.info),
        ]

    def classify(self, line: str) -> Severity:
        lowered = line.lower()
        for severity, keywords in self._ordered:
            if any(keyword in lowered for keyword in keywords):
                return severity
        return Severity.DEFAULT


def classify_line(line: str, rules: ClassifierRules | None = None) -> Severity:
    """Classify a single line with the given (or default) rules."""
    return LineClassifier(rules).classify(line)
