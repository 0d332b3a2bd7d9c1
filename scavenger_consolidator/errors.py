"""Exception types raised across the consolidator."""

from __future__ import annotations


class ConsolidatorError(Exception):
    """Base class for all consolidator errors."""


class WalletError(ConsolidatorError):
    """Wallet vault is missing, unreadable, or malformed."""


class AuthenticationError(ConsolidatorError):
    """The wallet password did not unlock the vault."""


class SigningError(ConsolidatorError):
    """The signer could not produce a donation signature."""


class LauncherError(ConsolidatorError):
    """The local launcher service refused or could not take a job."""
