"""Password-protected wallet vault and CIP-1852 address derivation.

The vault is a JSON file holding the mnemonic encrypted under the wallet
password plus the derived addresses, so addresses can be listed without
unlocking. Derivation shells out to ``cardano-address``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .errors import AuthenticationError, WalletError
from .models import SourceAddress


VALID_MNEMONIC_LENGTHS = {12, 15, 18, 21, 24}
VAULT_VERSION = 1


# ------------------------ subprocess helpers ------------------------

def ensure_binary(name: str) -> None:
    """Raise if a required binary is not on PATH."""
    if shutil.which(name) is None:
        raise WalletError(f"required binary not found on PATH: {name}")


def run(cmd: Sequence[str], *, input_text: Optional[str] = None, timeout: Optional[int] = None) -> subprocess.CompletedProcess:
    """Run a command, capturing stdout/stderr."""
    try:
        return subprocess.run(
            list(cmd),
            input=input_text,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            timeout=timeout,
        )
    except OSError as e:
        raise RuntimeError(f"Failed to execute {cmd[0]}: {e}") from e


def normalize_mnemonic(mnemonic: str) -> str:
    words = mnemonic.split()
    if len(words) not in VALID_MNEMONIC_LENGTHS:
        raise WalletError(f"mnemonic has {len(words)} words (expected 12/15/18/21/24)")
    return " ".join(words)


# ------------------------ encryption ------------------------

@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str
    salt: str
    nonce: str
    mac: str

    def to_dict(self) -> Dict[str, str]:
        return {"ciphertext": self.ciphertext, "salt": self.salt, "nonce": self.nonce, "mac": self.mac}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "EncryptedPayload":
        return cls(ciphertext=data["ciphertext"], salt=data["salt"], nonce=data["nonce"], mac=data["mac"])


class PassphraseEncryptor:
    """PBKDF2-derived key, HMAC-SHA256 keystream, encrypt-then-MAC."""

    def __init__(self, iterations: int = 100_000,
                 random_bytes: Optional[Callable[[int], bytes]] = None) -> None:
        self._iterations = iterations
        self._random_bytes = random_bytes or secrets.token_bytes

    def encrypt(self, plaintext: bytes, passphrase: str) -> EncryptedPayload:
        salt = self._random_bytes(16)
        nonce = self._random_bytes(16)
        key = self._derive_key(passphrase, salt, nonce)
        ciphertext = bytes(a ^ b for a, b in zip(plaintext, self._keystream(key, nonce, len(plaintext))))
        mac = hmac.new(key, ciphertext, hashlib.sha256).digest()
        return EncryptedPayload(
            ciphertext=_b64encode(ciphertext),
            salt=_b64encode(salt),
            nonce=_b64encode(nonce),
            mac=_b64encode(mac),
        )

    def decrypt(self, payload: EncryptedPayload, passphrase: str) -> bytes:
        salt = _b64decode(payload.salt)
        nonce = _b64decode(payload.nonce)
        ciphertext = _b64decode(payload.ciphertext)
        key = self._derive_key(passphrase, salt, nonce)
        actual_mac = hmac.new(key, ciphertext, hashlib.sha256).digest()
        if not hmac.compare_digest(actual_mac, _b64decode(payload.mac)):
            raise AuthenticationError("Failed to decrypt wallet. Incorrect password?")
        return bytes(a ^ b for a, b in zip(ciphertext, self._keystream(key, nonce, len(ciphertext))))

    def _derive_key(self, passphrase: str, salt: bytes, nonce: bytes) -> bytes:
        return hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt + nonce,
                                   self._iterations, dklen=32)

    def _keystream(self, key: bytes, nonce: bytes, length: int) -> bytes:
        blocks = []
        counter = 0
        while len(blocks) * 32 < length:
            blocks.append(hmac.new(key, nonce + counter.to_bytes(4, "big"), hashlib.sha256).digest())
            counter += 1
        return b"".join(blocks)[:length]


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))


# ------------------------ vault ------------------------

class WalletVault:
    def __init__(
        self,
        path: Path,
        encrypted_mnemonic: EncryptedPayload,
        addresses: Sequence[SourceAddress],
        account: int = 0,
        network_tag: str = "mainnet",
        encryptor: Optional[PassphraseEncryptor] = None,
    ) -> None:
        self.path = path
        self.encrypted_mnemonic = encrypted_mnemonic
        self.account = account
        self.network_tag = network_tag
        self._addresses = list(addresses)
        self._encryptor = encryptor or PassphraseEncryptor()

    @classmethod
    def create(
        cls,
        path: Path,
        mnemonic: str,
        password: str,
        addresses: Sequence[SourceAddress],
        account: int = 0,
        network_tag: str = "mainnet",
        encryptor: Optional[PassphraseEncryptor] = None,
    ) -> "WalletVault":
        if not password:
            raise WalletError("wallet password must not be empty")
        encryptor = encryptor or PassphraseEncryptor()
        payload = encryptor.encrypt(normalize_mnemonic(mnemonic).encode("utf-8"), password)
        vault = cls(path, payload, addresses, account, network_tag, encryptor)
        vault.save()
        return vault

    @classmethod
    def load(cls, path: Path, encryptor: Optional[PassphraseEncryptor] = None) -> "WalletVault":
        if not path.exists():
            raise WalletError(f"No wallet found at {path}. Run import-wallet first.")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            addresses = [SourceAddress(int(a["index"]), str(a["address"])) for a in data["addresses"]]
            payload = EncryptedPayload.from_dict(data["encrypted_mnemonic"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise WalletError(f"Wallet file {path} is unreadable or corrupted: {e}") from e
        return cls(path, payload, addresses, int(data.get("account", 0)),
                   str(data.get("network_tag", "mainnet")), encryptor)

    def save(self) -> None:
        data = {
            "version": VAULT_VERSION,
            "account": self.account,
            "network_tag": self.network_tag,
            "encrypted_mnemonic": self.encrypted_mnemonic.to_dict(),
            "addresses": [{"index": a.index, "address": a.address} for a in self._addresses],
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def addresses(self) -> List[SourceAddress]:
        return list(self._addresses)

    def address_for(self, index: int) -> SourceAddress:
        for addr in self._addresses:
            if addr.index == index:
                return addr
        raise KeyError(f"Address not found for index {index}")

    def unlock(self, password: str) -> str:
        """Return the mnemonic; raises AuthenticationError on a wrong password."""
        plaintext = self._encryptor.decrypt(self.encrypted_mnemonic, password)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise AuthenticationError("Failed to decrypt wallet. Incorrect password?") from e


# ------------------------ derivation ------------------------

def _cardano_address(args: Sequence[str], input_text: str, what: str) -> str:
    proc = run(["cardano-address", *args], input_text=input_text)
    if proc.returncode != 0:
        raise WalletError(f"cardano-address {what} failed: {proc.stderr.strip()}")
    return proc.stdout.strip()


def derive_addresses(mnemonic: str, account: int, count: int, network_tag: str = "mainnet",
                     start: int = 0) -> List[SourceAddress]:
    """
    Derive external (ROLE=0) base addresses m/1852'/1815'/account'/0/i
    for i in [start, start + count) with cardano-address.
    """
    ensure_binary("cardano-address")

    root_xprv = _cardano_address(["key", "from-recovery-phrase", "Shelley"], mnemonic, "key from-recovery-phrase")
    acct_xprv = _cardano_address(["key", "child", f"1852H/1815H/{account}H"], root_xprv, "key child account")
    stake_xprv = _cardano_address(["key", "child", "2/0"], acct_xprv, "key child stake")
    stake_xpub = _cardano_address(["key", "public", "--with-chain-code"], stake_xprv, "key public (stake)")

    addresses: List[SourceAddress] = []
    for i in range(start, start + count):
        pay_xprv = _cardano_address(["key", "child", f"0/{i}"], acct_xprv, f"key child payment 0/{i}")
        pay_xpub = _cardano_address(["key", "public", "--with-chain-code"], pay_xprv, f"key public (payment {i})")
        enterprise = _cardano_address(["address", "payment", "--network-tag", network_tag], pay_xpub,
                                      f"address payment for index {i}")
        base_addr = _cardano_address(["address", "delegation", stake_xpub], enterprise,
                                     f"address delegation for index {i}")
        addresses.append(SourceAddress(index=i, address=base_addr))
    return addresses
