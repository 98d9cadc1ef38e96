from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional


@dataclass(frozen=True)
class TrackingContext:
    """Snapshot of the inbound request a visit is tracked for."""

    target_url: str
    referrer_url: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: str = ""
    accept_language: str = ""
    host: str = ""
    cookies: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "cookies", MappingProxyType(dict(self.cookies)))
