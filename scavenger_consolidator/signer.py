"""CIP-8 donation signatures via cardano-signer.

Each donor signs:
  "Assign accumulated Scavenger rights to: <DESTINATION_ADDRESS>"
and the COSE_Sign1 hex goes into the /donate_to URL.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path
from typing import Dict, Protocol, Sequence, Tuple

from .config import DONATE_MESSAGE_PREFIX
from .errors import SigningError, WalletError
from .wallet import WalletVault, ensure_binary, run


logger = logging.getLogger(__name__)


class Signer(Protocol):
    def sign_batch(self, password: str, indices: Sequence[int], destination: str) -> Dict[int, str]:
        """Return {address index: signature}; raise AuthenticationError on a bad password."""
        ...


def donation_message(dest_addr: str) -> str:
    return f"{DONATE_MESSAGE_PREFIX}{dest_addr}"


def json_parse_maybe_trailing(stdout: str) -> dict:
    """Parse JSON, allowing non-JSON noise around the first complete object."""
    s = stdout.strip()
    if not s:
        raise ValueError("No output to parse as JSON")
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        decoder = json.JSONDecoder()
        start = s.find("{")
        while start != -1:
            try:
                return decoder.raw_decode(s, start)[0]
            except json.JSONDecodeError:
                start = s.find("{", start + 1)
        raise


def derive_skey(mnemonic: str, account: int, role: int, index: int, out_dir: Path) -> Path:
    path = f"1852H/1815H/{account}H/{role}/{index}"
    skey_path = out_dir / "skey.skey"
    proc = run([
        "cardano-signer", "keygen",
        "--mnemonics", mnemonic,
        "--path", path,
        "--json-extended",
        "--out-skey", str(skey_path),
    ])
    if proc.returncode != 0:
        raise SigningError(f"cardano-signer keygen failed for {path}: {proc.stderr.strip()}")
    if not skey_path.exists():
        raise SigningError("cardano-signer keygen reported success but skey file missing")
    return skey_path


def cip8_sign(skey_path: Path, original_addr: str, dest_addr: str) -> Tuple[str, str]:
    """Sign the donation message; returns (COSE_Sign1 hex, public key hex)."""
    proc = run([
        "cardano-signer", "sign",
        "--cip8",
        "--data", donation_message(dest_addr),
        "--secret-key", str(skey_path),
        "--address", original_addr,
        "--json-extended",
    ])
    if proc.returncode != 0:
        raise SigningError(f"cardano-signer sign failed: {proc.stderr.strip() or proc.stdout.strip()}")
    try:
        data = json_parse_maybe_trailing(proc.stdout)
    except ValueError as e:
        raise SigningError(f"Unreadable signer output: {e}") from e
    sig_hex = (data.get("output") or {}).get("COSE_Sign1_hex")
    pubkey_hex = data.get("publicKey")
    if not isinstance(sig_hex, str):
        raise SigningError("Missing output.COSE_Sign1_hex in signer output")
    if not isinstance(pubkey_hex, str):
        raise SigningError("Missing publicKey in signer output")
    try:
        int(sig_hex, 16)
        int(pubkey_hex, 16)
    except ValueError as e:
        raise SigningError("Signer output is not hex") from e
    return sig_hex, pubkey_hex


class CardanoSigner:
    """Signer backed by a WalletVault and the cardano-signer binary."""

    def __init__(self, vault: WalletVault) -> None:
        self.vault = vault

    def sign_batch(self, password: str, indices: Sequence[int], destination: str) -> Dict[int, str]:
        mnemonic = self.vault.unlock(password)
        try:
            ensure_binary("cardano-signer")
        except WalletError as e:
            raise SigningError(str(e)) from e

        signatures: Dict[int, str] = {}
        for index in indices:
            try:
                addr = self.vault.address_for(index)
            except KeyError as e:
                raise SigningError(str(e)) from e
            with tempfile.TemporaryDirectory(prefix="donate-to-") as tmpdir:
                try:
                    skey_path = derive_skey(mnemonic, self.vault.account, 0, index, Path(tmpdir))
                    sig_hex, _pubkey_hex = cip8_sign(skey_path, addr.address, destination)
                except RuntimeError as e:
                    raise SigningError(f"Signing failed for index {index}: {e}") from e
            logger.debug("signed index %d for %s", index, destination)
            signatures[index] = sig_hex
        return signatures
