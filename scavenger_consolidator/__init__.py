"""Consolidate Scavenger solutions from many addresses into one destination."""

from .errors import (
    AuthenticationError,
    ConsolidatorError,
    LauncherError,
    SigningError,
    WalletError,
)
from .models import (
    AddressOutcome,
    AlreadyDonated,
    ConsolidationProgress,
    ConsolidationRecord,
    DonationOutcome,
    DonationRequestItem,
    Error,
    Skipped,
    SourceAddress,
    Success,
)

__version__ = "0.3.0"

__all__ = [
    "AddressOutcome",
    "AlreadyDonated",
    "AuthenticationError",
    "ConsolidationProgress",
    "ConsolidationRecord",
    "ConsolidatorError",
    "DonationOutcome",
    "DonationRequestItem",
    "Error",
    "LauncherError",
    "SigningError",
    "Skipped",
    "SourceAddress",
    "Success",
    "WalletError",
]
