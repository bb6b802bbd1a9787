"""State store protocol and the versioned records it holds.

Every record carries a ``version``. Writers read a record, compute the new
value, and call the matching ``cas_*`` method with the version they read;
the write only lands if nobody else wrote in between. Version 0 means "no
record yet", so the first write is an insert that loses to any concurrent
insert.
"""

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional, Protocol

from ..models import BreakerState


@dataclass(frozen=True)
class WindowRecord:
    operation_type: str
    window_start: float
    count: int = 0
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WindowRecord":
        return cls(
            operation_type=data["operation_type"],
            window_start=float(data["window_start"]),
            count=int(data["count"]),
            version=int(data["version"]),
        )


@dataclass(frozen=True)
class BreakerRecord:
    name: str
    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    next_probe_at: Optional[float] = None
    probe_in_flight: bool = False
    probe_started_at: Optional[float] = None
    cooldown_seconds: float = 60.0
    version: int = 0

    def evolve(self, **changes) -> "BreakerRecord":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BreakerRecord":
        return cls(
            name=data["name"],
            state=BreakerState(data["state"]),
            consecutive_failures=int(data["consecutive_failures"]),
            opened_at=data.get("opened_at"),
            next_probe_at=data.get("next_probe_at"),
            probe_in_flight=bool(data.get("probe_in_flight", False)),
            probe_started_at=data.get("probe_started_at"),
            cooldown_seconds=float(data["cooldown_seconds"]),
            version=int(data["version"]),
        )


class StateStore(Protocol):
    """Shared store with atomic compare-and-set on versioned records."""

    def get_window(self, operation_type: str) -> Optional[WindowRecord]:
        ...

    def cas_window(self, record: WindowRecord, expected_version: int) -> bool:
        """Store ``record`` with version ``expected_version + 1`` if the current version matches."""
        ...

    def get_breaker(self, name: str) -> Optional[BreakerRecord]:
        ...

    def cas_breaker(self, record: BreakerRecord, expected_version: int) -> bool:
        ...
