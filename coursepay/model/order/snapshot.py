from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Mapping

from ...helpers import format_amount, to_iso

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})
OUTCOMES = TERMINAL_STATUSES

# payment_status values the store has been seen to hold for a paid order
PAID_MIRRORS = frozenset({"paid", "completed"})

# payment_status written alongside each terminal status
PAYMENT_MIRROR = {
    STATUS_COMPLETED: "paid",
    STATUS_FAILED: "failed",
}

WRITABLE_FIELDS = frozenset({"status", "payment_status"})


@dataclass(frozen=True)
class OrderSnapshot:
    id: str
    status: str
    payment_status: str
    version_token: int
    updated_at: float = 0.0
    order_number: str = ""
    program_title: str = ""
    program_slug: str = ""
    email: str = ""
    total_amount: int = 0
    currency: str = "try"
    created_at: float = 0.0

    @property
    def is_completed(self) -> bool:
        return (self.status == STATUS_COMPLETED
                or self.payment_status in PAID_MIRRORS)

    @property
    def is_failed(self) -> bool:
        return not self.is_completed and self.status == STATUS_FAILED

    @property
    def is_terminal(self) -> bool:
        return self.is_completed or self.is_failed

    @property
    def outcome(self) -> str:
        """Terminal outcome, with the paid mirror taking precedence."""
        if self.is_completed:
            return STATUS_COMPLETED
        if self.is_failed:
            return STATUS_FAILED
        return STATUS_PENDING

    def with_fields(self, fields: Mapping[str, Any],
                    updated_at: float) -> "OrderSnapshot":
        return replace(
            self,
            version_token=self.version_token + 1,
            updated_at=updated_at,
            **dict(fields),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["updated_at_iso"] = to_iso(self.updated_at)
        d["amount_display"] = format_amount(self.total_amount, self.currency)
        return d

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "OrderSnapshot":
        return cls(
            id=str(row["id"]),
            status=str(row["status"]),
            payment_status=str(row.get("payment_status") or ""),
            version_token=int(row.get("version", 0) or 0),
            updated_at=float(row.get("updated_at") or 0.0),
            order_number=str(row.get("order_number") or ""),
            program_title=str(row.get("program_title") or ""),
            program_slug=str(row.get("program_slug") or ""),
            email=str(row.get("email") or ""),
            total_amount=int(row.get("total_amount") or 0),
            currency=str(row.get("currency") or "try"),
            created_at=float(row.get("created_at") or 0.0),
        )

    def to_row(self) -> Dict[str, Any]:
        d = asdict(self)
        d["version"] = d.pop("version_token")
        return d
