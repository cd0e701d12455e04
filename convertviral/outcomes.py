from dataclasses import dataclass, field
from typing import List


@dataclass
class WriteOutcome:
    """Result of a write that has one primary target and best-effort secondaries.

    ``primary_committed`` is False only when the write that callers depend on
    did not happen. ``failed`` lists the names of secondary steps that were
    attempted and failed.
    """

    primary_committed: bool = True
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.primary_committed and not self.failed

    @property
    def partial(self) -> bool:
        return self.primary_committed and bool(self.failed)

    def record_failure(self, step: str) -> None:
        self.failed.append(step)
