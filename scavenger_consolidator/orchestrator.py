"""Consolidation run: sign every donor, then submit the signed batch.

States: idle -> signing -> consolidating -> completed | stopped

``stop()`` is cooperative. The flag is checked after signing, before the
submission phase and between submitted addresses; an in-flight request is
never interrupted. Outcomes already collected are always returned.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from .client import DonationClient, LauncherDonationClient, signature_preview
from .errors import AuthenticationError, SigningError
from .models import (
    COMPLETED,
    CONSOLIDATING,
    IDLE,
    MISSING_SIGNATURE_MESSAGE,
    SIGNING,
    SKIPPED_DESTINATION_MESSAGE,
    STOPPED,
    AddressOutcome,
    AlreadyDonated,
    ConsolidationProgress,
    ConsolidationRecord,
    DonationRequestItem,
    Error,
    Skipped,
    SourceAddress,
    Success,
    batch_result_payload,
)
from .records import RecordStore
from .session_log import AnySessionLogger, open_session_logger
from .signer import Signer


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ConsolidationProgress], None]
AnyDonationClient = Union[DonationClient, LauncherDonationClient]

RESULT_ARTIFACT = "consolidation-result.json"
BATCH_ARTIFACT = "batch-data.json"


class ConsolidationOrchestrator:
    def __init__(
        self,
        signer: Signer,
        client: AnyDonationClient,
        record_store: Optional[RecordStore] = None,
        session_root: Optional[Path] = None,
        result_file: Optional[Path] = None,
    ) -> None:
        self.signer = signer
        self.client = client
        self.record_store = record_store
        self.session_root = session_root
        self.result_file = result_file
        self.state = IDLE
        self.progress = ConsolidationProgress()
        self._stop_requested = False
        self._on_progress: Optional[ProgressCallback] = None

    def stop(self) -> None:
        """Request a cooperative stop; takes effect at the next checkpoint."""
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _emit(self) -> None:
        self.progress.status = self.state
        if self._on_progress:
            self._on_progress(self.progress.snapshot())

    def _log(self, message: str, slog: AnySessionLogger) -> None:
        self.progress.add_log(message)
        slog.log(message)

    def _count(self, result: AddressOutcome, slog: AnySessionLogger) -> None:
        o = result.outcome
        self.progress.current += 1
        if isinstance(o, Success):
            self.progress.successful += 1
            self.progress.total_solutions_consolidated += o.solutions_consolidated
            self._log(f"OK   address #{result.source_index}: {o.solutions_consolidated} solutions", slog)
        elif isinstance(o, AlreadyDonated):
            self.progress.successful += 1
            self._log(f"SKIP address #{result.source_index}: already donated", slog)
        elif isinstance(o, Skipped):
            self.progress.failed += 1
            self._log(f"SKIP address #{result.source_index}: {o.message}", slog)
        else:
            self.progress.failed += 1
            self._log(f"FAIL address #{result.source_index}: {o.message or 'Failed'}", slog)
        self.progress.push_outcome(result)

    # ------------------------ run ------------------------

    def consolidate(
        self,
        source_addresses: Sequence[SourceAddress],
        destination_address: str,
        password: str,
        session_label: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        destination_mode: str = "wallet",
        destination_index: Optional[int] = None,
    ) -> List[AddressOutcome]:
        """Run one consolidation; returns outcomes in source-address order.

        Raises AuthenticationError / SigningError when signing fails; no
        address is submitted in that case.
        """
        self._stop_requested = False
        self._on_progress = on_progress
        self.progress = ConsolidationProgress(total=len(source_addresses))
        self.state = SIGNING

        slog = open_session_logger(
            destination_address,
            {
                "destination_address": destination_address,
                "destination_mode": destination_mode,
                "total_addresses": len(source_addresses),
                "status": "created",
            },
            custom_label=session_label,
            root=self.session_root,
        )

        self._log(f"Starting consolidation for {len(source_addresses)} addresses", slog)
        self._log(f"Destination: {destination_address[:20]}...", slog)
        self._emit()

        to_sign = [a for a in source_addresses if a.address != destination_address]
        try:
            signatures = self._sign(to_sign, destination_address, password, slog)
        except (AuthenticationError, SigningError) as e:
            self._log(f"Signing failed: {e}", slog)
            slog.update_metadata(status="failed", error=str(e))
            self.state = IDLE
            raise

        slots: Dict[int, AddressOutcome] = {}
        if self._stop_requested:
            return self._finish(source_addresses, slots, destination_address, destination_mode,
                                destination_index, slog)

        self.state = CONSOLIDATING
        self.progress.current = 0
        self._emit()

        batch: List[DonationRequestItem] = []
        batch_positions: List[int] = []
        for pos, addr in enumerate(source_addresses):
            if addr.address == destination_address:
                slots[pos] = AddressOutcome(addr.address, addr.index, Skipped(message=SKIPPED_DESTINATION_MESSAGE))
                self._count(slots[pos], slog)
                self._emit()
                continue
            signature = signatures.get(addr.index)
            if not signature:
                slots[pos] = AddressOutcome(addr.address, addr.index, Error(message=MISSING_SIGNATURE_MESSAGE))
                self._count(slots[pos], slog)
                self._emit()
                continue
            batch_positions.append(pos)
            batch.append(DonationRequestItem(addr.address, signature, addr.index))

        if batch and not self._stop_requested:
            self._log(f"Batch consolidating {len(batch)} addresses...", slog)
            self.progress.current_address = f"Batch consolidating {len(batch)} addresses..."
            slog.write_artifact(BATCH_ARTIFACT, [
                {"sourceAddress": i.source_address, "sourceIndex": i.source_index,
                 "signature": signature_preview(i.signature)}
                for i in batch
            ])
            self._emit()

            # donate_batch reports outcomes in item order
            remaining = iter(batch_positions)

            def on_outcome(result: AddressOutcome) -> None:
                slots[next(remaining)] = result
                self.progress.current_address = result.source_address
                self._count(result, slog)
                self._emit()

            self.client.donate_batch(destination_address, batch, session_logger=slog,
                                     on_outcome=on_outcome, should_stop=lambda: self._stop_requested)

        return self._finish(source_addresses, slots, destination_address, destination_mode,
                            destination_index, slog)

    def _sign(self, addresses: Sequence[SourceAddress], destination_address: str, password: str,
              slog: AnySessionLogger) -> Dict[int, str]:
        if not addresses:
            return {}
        self._log(f"Signing {len(addresses)} donation messages...", slog)
        signatures = self.signer.sign_batch(password, [a.index for a in addresses], destination_address)
        self._log(f"Signed {len(signatures)}/{len(addresses)} messages", slog)
        return signatures

    def _finish(
        self,
        source_addresses: Sequence[SourceAddress],
        slots: Dict[int, AddressOutcome],
        destination_address: str,
        destination_mode: str,
        destination_index: Optional[int],
        slog: AnySessionLogger,
    ) -> List[AddressOutcome]:
        results = [slots[pos] for pos in sorted(slots)]
        final = STOPPED if self._stop_requested else COMPLETED

        self.progress.current = len(source_addresses)
        self.state = final
        self._log(f"Consolidation {final}: {self.progress.successful} successful, "
                  f"{self.progress.failed} failed", slog)

        self._persist(results, destination_address, destination_mode, destination_index, slog)
        slog.update_metadata(
            status=final,
            processed=len(results),
            successful=self.progress.successful,
            failed=self.progress.failed,
            total_solutions_consolidated=self.progress.total_solutions_consolidated,
        )
        slog.write_summary(self.summary_lines(results, destination_address, final))
        self._emit()
        return results

    def _persist(self, results: Sequence[AddressOutcome], destination_address: str, destination_mode: str,
                 destination_index: Optional[int], slog: AnySessionLogger) -> None:
        payload = batch_result_payload(destination_address, results)
        slog.write_artifact(RESULT_ARTIFACT, payload)
        if self.result_file is not None:
            try:
                self.result_file.parent.mkdir(parents=True, exist_ok=True)
                self.result_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            except OSError as e:
                logger.error("Failed to write result file %s: %s", self.result_file, e)
                slog.log(f"Failed to write result file {self.result_file}: {e}")

        if self.record_store is None:
            return
        records = [
            ConsolidationRecord.from_outcome(r, destination_address, destination_mode, destination_index)
            for r in results
        ]
        for record in records:
            self.record_store.append(record)
        if records:
            session_id = f"{slog.label}-{slog.timestamp}" if slog.timestamp else None
            self.record_store.save_session(records, session_id=session_id,
                                           extra={"destination_address": destination_address})

    def summary_lines(self, results: Sequence[AddressOutcome], destination_address: str,
                      final: str) -> List[str]:
        p = self.progress
        lines: List[str] = []
        lines.append("=== Scavenger Consolidation Summary ===")
        lines.append(f"destination    : {destination_address}")
        lines.append(f"status         : {final}")
        lines.append(f"total_addresses: {p.total}")
        lines.append(f"processed      : {len(results)}")
        lines.append("")
        lines.append("Results:")
        for r in results:
            o = r.outcome
            if isinstance(o, Success):
                lines.append(f"- #{r.source_index} {r.source_address}: {o.solutions_consolidated} solutions")
            elif isinstance(o, AlreadyDonated):
                lines.append(f"- #{r.source_index} {r.source_address}: already donated")
            elif isinstance(o, Skipped):
                lines.append(f"- #{r.source_index} {r.source_address}: skipped ({o.message})")
            else:
                lines.append(f"- #{r.source_index} {r.source_address}: failed ({o.message})")
        lines.append("")
        lines.append(f"successful     : {p.successful}")
        lines.append(f"failed         : {p.failed}")
        lines.append(f"est_night_total: {p.total_solutions_consolidated} solutions")
        return lines
