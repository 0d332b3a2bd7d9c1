"""
scavenger-consolidator

Consolidate Scavenger solutions from many wallet addresses into one
destination address.

Commands
--------
import-wallet   derive N external addresses from a mnemonic and store them,
                with the mnemonic encrypted under a wallet password
addresses       list wallet addresses and their last recorded consolidation
consolidate     sign every selected address and POST /donate_to for each
submit          one signed donation (the process a launcher spawns)
submit-batch    a JSON batch of signed donations (launcher-spawned)
history         print recorded consolidations or saved session snapshots

Outputs (per run folder under the data root)
--------------------------------------------
<label>/<timestamp>/logs.txt                  every request and response
<label>/<timestamp>/session-info.json         run metadata and totals
<label>/<timestamp>/EstNightTotal.txt         human-readable summary
<label>/<timestamp>/consolidation-result.json batch result payload

Security note
-------------
Passing mnemonics on the CLI can expose them in shell history and process
lists. Omit --mnemonic to be prompted instead.
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from .client import DonationClient, LauncherDonationClient
from .config import Settings
from .errors import AuthenticationError, ConsolidatorError, SigningError
from .models import (
    AddressOutcome,
    ConsolidationProgress,
    DonationRequestItem,
    Error,
    SourceAddress,
    batch_result_payload,
    single_result_payload,
)
from .orchestrator import ConsolidationOrchestrator
from .records import RecordStore
from .session_log import open_session_logger
from .signer import CardanoSigner
from .wallet import WalletVault, derive_addresses, normalize_mnemonic


PASSWORD_ENV = "SCAVENGER_WALLET_PASSWORD"


# ------------------------ helpers ------------------------

def fail(message: str, code: int = 1) -> None:
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(code)


def validate_destination_address(addr: str, network_tag: str) -> str:
    """Basic destination address sanity checks."""
    addr = addr.strip()
    if not addr:
        fail("destination address is empty", 2)
    if len(addr) < 20:
        print("WARNING: destination address looks unusually short", file=sys.stderr)
    if network_tag == "mainnet" and addr.startswith("addr_test1"):
        fail("destination address looks like testnet but the wallet is mainnet", 2)
    if network_tag == "testnet" and addr.startswith("addr1"):
        fail("destination address looks like mainnet but the wallet is testnet", 2)
    return addr


def parse_indices(raw: Optional[str]) -> Optional[List[int]]:
    """'0,1,5-8' -> [0, 1, 5, 6, 7, 8]; None means every wallet address.

    Repeated indices are dropped (first occurrence kept) with a warning.
    """
    if not raw:
        return None
    indices: List[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            if "-" in part:
                lo, hi = (int(x) for x in part.split("-", 1))
                indices.extend(range(lo, hi + 1))
            else:
                indices.append(int(part))
        except ValueError:
            fail(f"invalid index selection: {part!r}", 2)
    unique = list(dict.fromkeys(indices))
    if len(unique) != len(indices):
        print("WARNING: duplicate indices ignored", file=sys.stderr)
    return unique


def read_password(confirm: bool = False) -> str:
    env_value = os.environ.get(PASSWORD_ENV)
    if env_value:
        return env_value
    password = getpass.getpass("Wallet password: ")
    if confirm and getpass.getpass("Repeat password: ") != password:
        fail("passwords do not match", 2)
    return password


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.api_url:
        settings.api_url = args.api_url
    if args.user_agent:
        settings.user_agent = args.user_agent
    if args.data_root:
        settings.data_root = Path(args.data_root).expanduser()
    if getattr(args, "launcher_url", None):
        settings.launcher_url = args.launcher_url
    if getattr(args, "result_file", None):
        settings.result_file = Path(args.result_file).expanduser()
    return settings


def wallet_path(args: argparse.Namespace, settings: Settings) -> Path:
    return Path(args.wallet).expanduser() if args.wallet else settings.wallet_path


def describe(result: AddressOutcome) -> str:
    o = result.outcome
    if o.kind == "success":
        return f"SUCCESS - {o.solutions} solutions consolidated"
    if o.kind == "already_donated":
        return "SKIPPED - Already donated"
    if o.kind == "skipped":
        return f"SKIPPED - {o.message}"
    return f"ERROR - {o.message}"


# ------------------------ commands ------------------------

def cmd_import_wallet(args: argparse.Namespace, settings: Settings) -> int:
    if args.numaddresses <= 0:
        fail("--numaddresses must be > 0", 2)
    raw = args.mnemonic or getpass.getpass("Mnemonic: ")
    mnemonic = normalize_mnemonic(raw)
    path = wallet_path(args, settings)
    if path.exists() and not args.force:
        fail(f"wallet already exists at {path} (use --force to replace it)", 2)

    addresses = derive_addresses(mnemonic, args.account, args.numaddresses, args.network_tag)
    password = read_password(confirm=True)
    WalletVault.create(path, mnemonic, password, addresses, args.account, args.network_tag)

    for a in addresses:
        print(f"{a.index:>4}  {a.address}")
    print(f"\nWrote wallet with {len(addresses)} addresses to {path}")
    return 0


def cmd_addresses(args: argparse.Namespace, settings: Settings) -> int:
    vault = WalletVault.load(wallet_path(args, settings))
    store = RecordStore(settings.records_path, settings.sessions_dir)
    for a in vault.addresses():
        latest = store.latest_for(a.address)
        note = ""
        if latest is not None:
            note = f"  [{latest.status} -> {latest.destination_address[:20]}... at {latest.timestamp}]"
        print(f"{a.index:>4}  {a.address}{note}")
    return 0


def cmd_consolidate(args: argparse.Namespace, settings: Settings) -> int:
    vault = WalletVault.load(wallet_path(args, settings))

    if bool(args.destination_addr) == (args.destination_index is not None):
        fail("give exactly one of --destination-addr or --destination-index", 2)
    if args.destination_index is not None:
        try:
            dest_addr = vault.address_for(args.destination_index).address
        except KeyError as e:
            fail(str(e), 2)
        dest_mode = "wallet"
    else:
        dest_addr = validate_destination_address(args.destination_addr, vault.network_tag)
        dest_mode = "custom"

    selected = parse_indices(args.indices)
    sources: List[SourceAddress] = vault.addresses()
    if selected is not None:
        by_index = {a.index: a for a in sources}
        missing = [i for i in selected if i not in by_index]
        if missing:
            fail(f"indices not in wallet: {', '.join(map(str, missing))}", 2)
        sources = [by_index[i] for i in selected]
    if not sources:
        fail("Nothing to do: wallet has no addresses selected")

    if args.via_launcher:
        client = LauncherDonationClient(settings.launcher_url)
        if not client.health():
            fail(f"launcher not reachable at {settings.launcher_url}")
    else:
        client = DonationClient(settings.api_url, timeout=settings.request_timeout,
                                delay=settings.inter_request_delay, user_agent=settings.user_agent)

    orchestrator = ConsolidationOrchestrator(
        CardanoSigner(vault),
        client,
        record_store=RecordStore(settings.records_path, settings.sessions_dir),
        session_root=settings.log_root,
        result_file=settings.result_file,
    )

    print("Scavenger Consolidator")
    print(f"API URL       : {settings.launcher_url if args.via_launcher else settings.api_url}")
    print(f"Donors total  : {len(sources)}")
    print(f"Destination   : {dest_addr} ({dest_mode})")
    print(f"Data root     : {settings.data_root}")
    print()

    password = read_password()
    last_seen = {"line": None}

    def on_progress(progress: ConsolidationProgress) -> None:
        line = progress.log_lines[-1] if progress.log_lines else None
        if line and line != last_seen["line"]:
            last_seen["line"] = line
            print(f"  [{progress.current}/{progress.total}] {line}")

    def on_sigint(signum, frame) -> None:
        print("\nStop requested; finishing the current address...", file=sys.stderr)
        orchestrator.stop()

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        results = orchestrator.consolidate(
            sources,
            dest_addr,
            password,
            session_label=args.label,
            on_progress=on_progress,
            destination_mode=dest_mode,
            destination_index=args.destination_index,
        )
    except AuthenticationError as e:
        fail(str(e))
    except SigningError as e:
        fail(f"Failed to sign messages: {e}")
    finally:
        signal.signal(signal.SIGINT, previous)

    p = orchestrator.progress
    print()
    print("=" * 72)
    print(f"Consolidation {p.status}")
    print("=" * 72)
    for r in results:
        print(f"#{r.source_index:<4} {r.source_address[:40]}...  {describe(r)}")
    print()
    print(f"Successful (incl. already donated): {p.successful}")
    print(f"Failed / skipped                  : {p.failed}")
    print(f"Total solutions                   : {p.total_solutions_consolidated}")
    return 1 if any(isinstance(r.outcome, Error) for r in results) else 0


def _write_result(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _result_path(settings: Settings) -> Path:
    return settings.result_file or settings.data_root / "consolidation-result.json"


def cmd_submit(args: argparse.Namespace, settings: Settings) -> int:
    if args.source == args.dest:
        fail("Source and destination cannot be the same", 2)
    slog = open_session_logger(args.source, {"mode": "single", "destination_address": args.dest},
                               custom_label=args.label, root=settings.log_root)
    client = DonationClient(settings.api_url, timeout=settings.request_timeout,
                            delay=settings.inter_request_delay, user_agent=settings.user_agent)

    print(f"Source Address:      {args.source}")
    print(f"Destination Address: {args.dest}")
    print(f"Signature:           {args.signature[:64]}...")
    outcome = client.donate_single(args.dest, args.source, args.signature, slog)
    print(describe(AddressOutcome(args.source, -1, outcome)))

    payload = single_result_payload(args.source, args.dest, outcome)
    result_path = _result_path(settings)
    _write_result(result_path, payload)
    slog.copy_artifact(result_path, "consolidation-result.json")
    slog.update_metadata(status="completed", outcome=outcome.kind,
                         solutions_consolidated=outcome.solutions)
    return 1 if isinstance(outcome, Error) else 0


def load_batch(path: Path) -> List[DonationRequestItem]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        fail(f"cannot read batch file {path}: {e}")
    if not isinstance(data, list) or not data:
        fail("Batch data must be a JSON array with at least one address")
    try:
        return [DonationRequestItem.from_dict(item) for item in data]
    except (KeyError, TypeError, ValueError) as e:
        fail(f"malformed batch entry: {e}")


def cmd_submit_batch(args: argparse.Namespace, settings: Settings) -> int:
    batch_path = Path(args.batchfile)
    items = load_batch(batch_path)
    slog = open_session_logger(args.dest, {"mode": "batch", "destination_address": args.dest,
                                           "total_addresses": len(items)},
                               custom_label=args.label, root=settings.log_root)
    client = DonationClient(settings.api_url, timeout=settings.request_timeout,
                            delay=settings.inter_request_delay, user_agent=settings.user_agent)

    print(f"Destination Address: {args.dest}")
    print(f"Total Addresses:     {len(items)}")
    print()
    counter = {"n": 0}

    def on_outcome(result: AddressOutcome) -> None:
        counter["n"] += 1
        print(f"[{counter['n']}/{len(items)}] index {result.source_index}: {describe(result)}")

    results = client.donate_batch(args.dest, items, session_logger=slog, on_outcome=on_outcome)
    payload = batch_result_payload(args.dest, results)
    summary = payload["summary"]

    print()
    print(f"Total Addresses:        {summary['total']}")
    print(f"Successful:             {summary['successful']}")
    print(f"Skipped (already done): {summary['skipped']}")
    print(f"Errors:                 {summary['errors']}")
    print(f"Total Solutions:        {summary['totalSolutions']}")

    result_path = _result_path(settings)
    _write_result(result_path, payload)
    slog.copy_artifact(result_path, "consolidation-result.json")
    slog.update_metadata(status="completed", **summary)
    return 0 if payload["success"] else 1


def cmd_history(args: argparse.Namespace, settings: Settings) -> int:
    store = RecordStore(settings.records_path, settings.sessions_dir)
    if args.sessions:
        for snap in store.sessions():
            print(f"{snap.get('session_id')}  total={snap.get('total_addresses')} "
                  f"ok={snap.get('successful')} failed={snap.get('failed')} "
                  f"solutions={snap.get('total_solutions_consolidated')}")
        return 0
    records = store.records_for(args.address) if args.address else store.all_records()
    if args.limit:
        records = records[-args.limit:]
    for r in records:
        detail = r.message or r.error or ""
        print(f"{r.timestamp}  {r.status:<7}  {r.source_address[:24]}... -> "
              f"{r.destination_address[:24]}...  {r.solutions_consolidated:>5}  {detail}")
    return 0


# ------------------------ main ------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="scavenger-consolidator",
        description="Consolidate Scavenger solutions from many addresses into one destination.",
    )
    ap.add_argument("--api-url", help="Scavenger API base URL")
    ap.add_argument("--user-agent", help="User-Agent header for HTTP requests")
    ap.add_argument("--data-root", help="Folder for wallet, records and session logs (default: ~/NightConsolidation)")
    ap.add_argument("--wallet", help="Wallet vault path (default: <data-root>/wallet.json)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import-wallet", help="Derive addresses and store an encrypted wallet")
    p.add_argument("--mnemonic", help="BIP-style mnemonic (quoted); prompted when omitted")
    p.add_argument("--numaddresses", type=int, default=20, help="Derive this many external addresses (default: 20)")
    p.add_argument("--account", type=int, default=0, help="HD account index (default: 0)")
    p.add_argument("--network-tag", choices=["mainnet", "testnet"], default="mainnet")
    p.add_argument("--force", action="store_true", help="Replace an existing wallet")
    p.set_defaults(func=cmd_import_wallet)

    p = sub.add_parser("addresses", help="List wallet addresses")
    p.set_defaults(func=cmd_addresses)

    p = sub.add_parser("consolidate", help="Sign and donate selected addresses to a destination")
    p.add_argument("--destination-addr", help="Recipient addr1... (custom destination)")
    p.add_argument("--destination-index", type=int, help="Use this wallet address as the destination")
    p.add_argument("--indices", help="Source indices, e.g. 0,1,5-8 (default: every wallet address)")
    p.add_argument("--label", help="Custom session label for the log folder")
    p.add_argument("--via-launcher", action="store_true", help="Submit through the local launcher service")
    p.add_argument("--launcher-url", help="Launcher base URL (default: http://localhost:3002)")
    p.add_argument("--result-file", help="Also write the batch result payload here")
    p.set_defaults(func=cmd_consolidate)

    p = sub.add_parser("submit", help="Submit one signed donation")
    p.add_argument("--source", required=True)
    p.add_argument("--dest", required=True)
    p.add_argument("--signature", required=True)
    p.add_argument("--label", help="Custom session label for the log folder")
    p.add_argument("--result-file", help="Result payload path (default: <data-root>/consolidation-result.json)")
    p.set_defaults(func=cmd_submit)

    p = sub.add_parser("submit-batch", help="Submit a JSON batch of signed donations")
    p.add_argument("--dest", required=True)
    p.add_argument("--batchfile", required=True, help="JSON array of {sourceAddress, signature, sourceIndex}")
    p.add_argument("--label", help="Custom session label for the log folder")
    p.add_argument("--result-file", help="Result payload path (default: <data-root>/consolidation-result.json)")
    p.set_defaults(func=cmd_submit_batch)

    p = sub.add_parser("history", help="Show recorded consolidations")
    p.add_argument("--address", help="Only records for this source address")
    p.add_argument("--limit", type=int, default=0, help="Only the last N records")
    p.add_argument("--sessions", action="store_true", help="List saved session snapshots instead")
    p.set_defaults(func=cmd_history)

    return ap


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = settings_from_args(args)
    except ValueError as e:
        fail(str(e), 2)
    try:
        return args.func(args, settings)
    except ConsolidatorError as e:
        fail(str(e))
    return 1


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    run()
