"""
Resolved tenant context.

The per-request outcome of tenant resolution. Never persisted; rebuilt
or served from the resolver cache on every request.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ResolvedTenantContext:
    school_id: int
    namespace: str
    name: str
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolvedTenantContext":
        return cls(
            school_id=int(data["school_id"]),
            namespace=data["namespace"],
            name=data["name"],
            code=data.get("code"),
        )
