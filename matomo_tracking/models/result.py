from dataclasses import dataclass, field
from typing import Dict


@dataclass
class DispatchResult:
    """Outcome of one call to the collector."""

    status_code: int
    cookies: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300
