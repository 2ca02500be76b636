"""
Recognized status and result values.

The enclosing test orchestration owns the vocabulary; the defaults below are
the values the harness uses out of the box and can be replaced through the
harness configuration.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from harness_errors import ValidationError


TEST_STATUS_STARTED = "started"
TEST_STATUS_DONE = "done"


@dataclass(frozen=True)
class StatusVocabulary:
    """Valid statuses and results for test cases and individual tests."""
    test_case_statuses: List[str] = field(
        default_factory=lambda: ["queued", "prepared", "started", "done"]
    )
    test_case_results: List[str] = field(
        default_factory=lambda: ["passed", "failed", "fatal"]
    )
    test_statuses: List[str] = field(
        default_factory=lambda: [TEST_STATUS_STARTED, TEST_STATUS_DONE]
    )
    test_results: List[str] = field(
        default_factory=lambda: ["passed", "failed", "broken", "skipped", "incomplete"]
    )

    def __post_init__(self):
        # Automatic timestamping depends on these two being recognized
        for required in (TEST_STATUS_STARTED, TEST_STATUS_DONE):
            if required not in self.test_statuses:
                raise ValidationError(
                    f'Test statuses must include "{required}", got "{", ".join(self.test_statuses)}"'
                )

    def validate_test_case(self, status: str, result: Optional[str] = None) -> None:
        """
        Check a test case status and optional result.

        Raises:
            ValidationError: If either value is not recognized
        """
        _check("Test case status", status, self.test_case_statuses)
        if result is not None:
            _check("Test case result", result, self.test_case_results, nullable=True)

    def validate_test(self, status: str, result: Optional[str] = None) -> None:
        """
        Check a test status and optional result.

        Raises:
            ValidationError: If either value is not recognized
        """
        _check("Test status", status, self.test_statuses)
        if result is not None:
            _check("Test result", result, self.test_results, nullable=True)


def _check(label: str, value: str, allowed: List[str], nullable: bool = False) -> None:
    if value not in allowed:
        prefix = "null or one of" if nullable else "one of"
        raise ValidationError(
            f'{label} must be {prefix} "{", ".join(allowed)}", but "{value}" given'
        )


DEFAULT_VOCABULARY = StatusVocabulary()
