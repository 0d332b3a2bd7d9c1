import subprocess

import pytest

from scavenger_consolidator import signer as signer_mod
from scavenger_consolidator.errors import AuthenticationError, SigningError, WalletError
from scavenger_consolidator.models import SourceAddress
from scavenger_consolidator.signer import CardanoSigner, cip8_sign, donation_message, json_parse_maybe_trailing
from scavenger_consolidator.wallet import PassphraseEncryptor, WalletVault, normalize_mnemonic


MNEMONIC = " ".join(["abandon"] * 11 + ["about"])


def _vault(tmp_path):
    addresses = [SourceAddress(0, "addr1qzero"), SourceAddress(1, "addr1qone")]
    return WalletVault.create(tmp_path / "wallet.json", MNEMONIC, "hunter2", addresses,
                              encryptor=PassphraseEncryptor(iterations=1000))


def test_encryptor_round_trip():
    enc = PassphraseEncryptor(iterations=1000)
    payload = enc.encrypt(b"secret words " * 10, "pw")
    assert enc.decrypt(payload, "pw") == b"secret words " * 10
    with pytest.raises(AuthenticationError):
        enc.decrypt(payload, "nope")


def test_vault_persists_and_unlocks(tmp_path):
    _vault(tmp_path)
    loaded = WalletVault.load(tmp_path / "wallet.json", encryptor=PassphraseEncryptor(iterations=1000))

    assert [a.index for a in loaded.addresses()] == [0, 1]
    assert loaded.address_for(1).address == "addr1qone"
    assert loaded.unlock("hunter2") == MNEMONIC
    assert "abandon" not in (tmp_path / "wallet.json").read_text()
    with pytest.raises(AuthenticationError):
        loaded.unlock("wrong")


def test_vault_missing_or_corrupt(tmp_path):
    with pytest.raises(WalletError):
        WalletVault.load(tmp_path / "nope.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(WalletError):
        WalletVault.load(bad)


def test_mnemonic_word_count():
    assert normalize_mnemonic("  " + MNEMONIC.replace(" ", "   ") + "\n") == MNEMONIC
    with pytest.raises(WalletError):
        normalize_mnemonic("one two three")


def test_parse_signer_output_with_noise():
    out = 'Warning: something\n{"publicKey": "ab", "output": {"COSE_Sign1_hex": "84a4"}}'
    assert json_parse_maybe_trailing(out)["publicKey"] == "ab"
    assert json_parse_maybe_trailing(out)["output"] == {"COSE_Sign1_hex": "84a4"}


def test_parse_signer_output_with_noise_on_both_sides():
    out = 'note {not json}\n{"publicKey": "cd", "output": {"COSE_Sign1_hex": "84"}}\ndone.'
    assert json_parse_maybe_trailing(out)["publicKey"] == "cd"
    with pytest.raises(ValueError):
        json_parse_maybe_trailing("no json here")


def test_cip8_sign_uses_donation_message(monkeypatch, tmp_path):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen["cmd"] = cmd
        return subprocess.CompletedProcess(cmd, 0, stdout='{"publicKey": "ab12", "output": {"COSE_Sign1_hex": "84a401"}}',
                                           stderr="")

    monkeypatch.setattr(signer_mod, "run", fake_run)
    sig, pub = cip8_sign(tmp_path / "skey", "addr1qzero", "addr1qdest")

    assert (sig, pub) == ("84a401", "ab12")
    assert donation_message("addr1qdest") in seen["cmd"]
    assert donation_message("addr1qdest") == "Assign accumulated Scavenger rights to: addr1qdest"


def test_cip8_sign_failure(monkeypatch, tmp_path):
    monkeypatch.setattr(signer_mod, "run",
                        lambda cmd, **kw: subprocess.CompletedProcess(cmd, 1, stdout="", stderr="bad key"))
    with pytest.raises(SigningError, match="bad key"):
        cip8_sign(tmp_path / "skey", "addr1qzero", "addr1qdest")


def test_cardano_signer_batch(monkeypatch, tmp_path):
    vault = _vault(tmp_path)
    monkeypatch.setattr(signer_mod, "ensure_binary", lambda name: None)
    monkeypatch.setattr(signer_mod, "derive_skey", lambda mnemonic, account, role, index, out_dir: out_dir / f"{index}.skey")
    monkeypatch.setattr(signer_mod, "cip8_sign", lambda skey, addr, dest: (f"sig-{addr}-{dest}", "pub"))

    sigs = CardanoSigner(vault).sign_batch("hunter2", [1, 0], "addr1qdest")

    assert sigs == {1: "sig-addr1qone-addr1qdest", 0: "sig-addr1qzero-addr1qdest"}


def test_cardano_signer_bad_password_before_binaries(monkeypatch, tmp_path):
    vault = _vault(tmp_path)

    def boom(name):
        raise AssertionError("binary lookup should not happen")

    monkeypatch.setattr(signer_mod, "ensure_binary", boom)
    with pytest.raises(AuthenticationError):
        CardanoSigner(vault).sign_batch("wrong", [0], "addr1qdest")


def test_cardano_signer_unknown_index(monkeypatch, tmp_path):
    vault = _vault(tmp_path)
    monkeypatch.setattr(signer_mod, "ensure_binary", lambda name: None)
    with pytest.raises(SigningError, match="index 7"):
        CardanoSigner(vault).sign_batch("hunter2", [7], "addr1qdest")
