"""Data types shared by the client, orchestrator, and stores."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, ClassVar, Deque, Dict, List, Optional, Sequence


RECENT_OUTCOMES_LIMIT = 5
LOG_LINES_LIMIT = 50

SKIPPED_DESTINATION_MESSAGE = "Source address matches destination - skipped"
MISSING_SIGNATURE_MESSAGE = "Failed to sign message"

# Orchestrator states
IDLE = "idle"
SIGNING = "signing"
CONSOLIDATING = "consolidating"
COMPLETED = "completed"
STOPPED = "stopped"


# ------------------------ addresses ------------------------

@dataclass(frozen=True)
class SourceAddress:
    index: int
    address: str   # bech32 addr1...

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError(f"address index must be >= 0, got {self.index}")


@dataclass(frozen=True)
class DonationRequestItem:
    source_address: str
    signature: str
    source_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceAddress": self.source_address,
            "signature": self.signature,
            "sourceIndex": self.source_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DonationRequestItem":
        return cls(
            source_address=str(data["sourceAddress"]),
            signature=str(data["signature"]),
            source_index=int(data.get("sourceIndex", -1)),
        )


# ------------------------ outcomes ------------------------

@dataclass(frozen=True)
class DonationOutcome:
    """One terminal result for one source address.

    Concrete outcomes are ``Success``, ``AlreadyDonated``, ``Error`` and
    ``Skipped``; callers switch on ``kind`` or ``isinstance``.
    """

    message: str
    kind: ClassVar[str] = "outcome"

    @property
    def counts_as_success(self) -> bool:
        return False

    @property
    def solutions(self) -> int:
        return 0


@dataclass(frozen=True)
class Success(DonationOutcome):
    solutions_consolidated: int = 0
    kind: ClassVar[str] = "success"

    @property
    def counts_as_success(self) -> bool:
        return True

    @property
    def solutions(self) -> int:
        return self.solutions_consolidated


@dataclass(frozen=True)
class AlreadyDonated(DonationOutcome):
    """HTTP 409 from donate_to; the pair was assigned in an earlier run."""

    kind: ClassVar[str] = "already_donated"

    @property
    def counts_as_success(self) -> bool:
        return True


@dataclass(frozen=True)
class Error(DonationOutcome):
    http_status: Optional[int] = None
    kind: ClassVar[str] = "error"


@dataclass(frozen=True)
class Skipped(DonationOutcome):
    """Never submitted, e.g. the source is the destination itself."""

    kind: ClassVar[str] = "skipped"


@dataclass(frozen=True)
class AddressOutcome:
    source_address: str
    source_index: int
    outcome: DonationOutcome

    @property
    def kind(self) -> str:
        return self.outcome.kind

    def to_dict(self) -> Dict[str, Any]:
        """Result-artifact shape used by the launcher handoff files."""
        o = self.outcome
        data: Dict[str, Any] = {
            "sourceAddress": self.source_address,
            "sourceIndex": self.source_index,
            "success": isinstance(o, Success),
        }
        if isinstance(o, Success):
            data["solutionsConsolidated"] = o.solutions_consolidated
            data["message"] = o.message
        elif isinstance(o, AlreadyDonated):
            data["alreadyDonated"] = True
            data["message"] = o.message
        elif isinstance(o, Skipped):
            data["skipped"] = True
            data["error"] = o.message
        else:
            data["error"] = o.message
        return data


def outcome_from_dict(data: Dict[str, Any]) -> DonationOutcome:
    """Normalize a result-artifact entry into a DonationOutcome."""
    if data.get("success"):
        try:
            solutions = int(data.get("solutionsConsolidated") or 0)
        except (TypeError, ValueError):
            solutions = 0
        return Success(message=str(data.get("message") or "Consolidated successfully"),
                       solutions_consolidated=solutions)
    if data.get("alreadyDonated"):
        return AlreadyDonated(message=str(data.get("message") or data.get("error") or "Already donated"))
    if data.get("skipped"):
        return Skipped(message=str(data.get("error") or data.get("message") or "Skipped"))
    return Error(message=str(data.get("error") or data.get("message") or "Consolidation failed"))


# ------------------------ progress ------------------------

@dataclass
class ConsolidationProgress:
    total: int = 0
    current: int = 0
    successful: int = 0
    failed: int = 0
    current_address: str = ""
    status: str = SIGNING
    total_solutions_consolidated: int = 0
    recent_outcomes: Deque[AddressOutcome] = field(
        default_factory=lambda: deque(maxlen=RECENT_OUTCOMES_LIMIT))
    log_lines: Deque[str] = field(
        default_factory=lambda: deque(maxlen=LOG_LINES_LIMIT))

    def add_log(self, message: str) -> None:
        self.log_lines.append(f"[{time.strftime('%H:%M:%S')}] {message}")

    def push_outcome(self, outcome: AddressOutcome) -> None:
        # most-recent-first; the deque drops the oldest from the right
        self.recent_outcomes.appendleft(outcome)

    def snapshot(self) -> "ConsolidationProgress":
        return replace(
            self,
            recent_outcomes=deque(self.recent_outcomes, maxlen=RECENT_OUTCOMES_LIMIT),
            log_lines=deque(self.log_lines, maxlen=LOG_LINES_LIMIT),
        )


# ------------------------ persisted records ------------------------

@dataclass
class ConsolidationRecord:
    timestamp: str
    source_address: str
    destination_address: str
    destination_mode: str        # wallet | custom
    solutions_consolidated: int
    status: str                  # success | failed
    source_index: Optional[int] = None
    destination_index: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConsolidationRecord":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_outcome(
        cls,
        result: AddressOutcome,
        destination_address: str,
        destination_mode: str = "wallet",
        destination_index: Optional[int] = None,
        timestamp: Optional[str] = None,
    ) -> "ConsolidationRecord":
        o = result.outcome
        if isinstance(o, Success):
            message, error = o.message, None
        elif isinstance(o, AlreadyDonated):
            message, error = o.message or "Already donated", None
        else:
            message, error = None, o.message
        return cls(
            timestamp=timestamp or utc_now_iso(),
            source_address=result.source_address,
            source_index=result.source_index,
            destination_address=destination_address,
            destination_index=destination_index,
            destination_mode=destination_mode,
            solutions_consolidated=o.solutions,
            message=message,
            status="success" if o.counts_as_success else "failed",
            error=error,
            skipped=isinstance(o, Skipped),
        )


# ------------------------ result artifacts ------------------------

@dataclass(frozen=True)
class BatchSummary:
    total: int
    successful: int
    skipped: int
    errors: int
    total_solutions: int

    @classmethod
    def from_outcomes(cls, results: Sequence[AddressOutcome]) -> "BatchSummary":
        kinds = [r.outcome for r in results]
        return cls(
            total=len(kinds),
            successful=sum(1 for o in kinds if isinstance(o, Success)),
            skipped=sum(1 for o in kinds if isinstance(o, (AlreadyDonated, Skipped))),
            errors=sum(1 for o in kinds if isinstance(o, Error)),
            total_solutions=sum(o.solutions for o in kinds),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "successful": self.successful,
            "skipped": self.skipped,
            "errors": self.errors,
            "totalSolutions": self.total_solutions,
        }


def batch_result_payload(destination_address: str, results: Sequence[AddressOutcome]) -> Dict[str, Any]:
    summary = BatchSummary.from_outcomes(results)
    return {
        "success": summary.errors == 0,
        "results": [r.to_dict() for r in results],
        "summary": summary.to_dict(),
        "destinationAddress": destination_address,
    }


def single_result_payload(source_address: str, destination_address: str,
                          outcome: DonationOutcome) -> Dict[str, Any]:
    data: Dict[str, Any] = {"success": isinstance(outcome, Success)}
    if isinstance(outcome, Success):
        data["solutionsConsolidated"] = outcome.solutions_consolidated
        data["message"] = outcome.message
    elif isinstance(outcome, AlreadyDonated):
        data["error"] = outcome.message
        data["alreadyDonated"] = True
    else:
        data["error"] = outcome.message
    data["sourceAddress"] = source_address
    data["destinationAddress"] = destination_address
    return data


def utc_now_iso() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
