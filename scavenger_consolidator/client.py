"""donate_to client.

Two call shapes share one status interpretation (``classify_response``):

  * ``DonationClient`` POSTs /donate_to/<dest>/<original>/<signature>
    directly, one address at a time, with a short pause between calls.
  * ``LauncherDonationClient`` hands the batch to the local launcher
    service, which runs ``submit-batch`` in a separate process, and polls
    GET /result for the handoff file.

Status mapping:
  2xx  -> Success (solutions_consolidated, message from the body)
  409  -> AlreadyDonated
  else -> Error (body message, else the status code, else the exception text)
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from .config import (
    DEFAULT_API_URL,
    DEFAULT_LAUNCHER_URL,
    DEFAULT_UA,
    INTER_REQUEST_DELAY,
    LAUNCHER_BATCH_MAX_POLLS,
    LAUNCHER_LAUNCH_TIMEOUT,
    LAUNCHER_POLL_INTERVAL,
    LAUNCHER_SINGLE_MAX_POLLS,
    REQUEST_TIMEOUT,
)
from .errors import LauncherError
from .models import (
    AddressOutcome,
    AlreadyDonated,
    DonationOutcome,
    DonationRequestItem,
    Error,
    Skipped,
    Success,
    outcome_from_dict,
)
from .session_log import AnySessionLogger, NoopSessionLogger


logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_MESSAGE = "Rewards consolidated successfully"
DEFAULT_ALREADY_DONATED_MESSAGE = "Already donated to this address"
SIGNATURE_PREVIEW_LEN = 16

OutcomeCallback = Callable[[AddressOutcome], None]
StopCheck = Callable[[], bool]


# ------------------------ helpers ------------------------

def parse_body(body_text: str) -> Any:
    """Return the decoded JSON body, or the raw text when it isn't JSON."""
    if not body_text:
        return {}
    try:
        return json.loads(body_text)
    except ValueError:
        return body_text


def _field(body: Any, name: str) -> Any:
    return body.get(name) if isinstance(body, dict) else None


def _message(body: Any) -> Optional[str]:
    value = _field(body, "message")
    return str(value) if value not in (None, "") else None


def classify_response(status: int, body: Any) -> DonationOutcome:
    if 200 <= status < 300:
        raw = _field(body, "solutions_consolidated")
        try:
            solutions = int(raw) if raw is not None else 0
        except (TypeError, ValueError):
            solutions = 0
        return Success(message=_message(body) or DEFAULT_SUCCESS_MESSAGE,
                       solutions_consolidated=solutions)
    if status == 409:
        return AlreadyDonated(message=_message(body) or DEFAULT_ALREADY_DONATED_MESSAGE)
    return Error(message=_message(body) or str(status), http_status=status)


def signature_preview(signature: str) -> str:
    if len(signature) <= SIGNATURE_PREVIEW_LEN:
        return signature
    return signature[:SIGNATURE_PREVIEW_LEN] + "..."


def donate_url(api_url: str, dest_addr: str, original_addr: str, sig_hex: str) -> str:
    return f"{api_url.rstrip('/')}/donate_to/{dest_addr}/{original_addr}/{sig_hex}"


def _stopped(should_stop: Optional[StopCheck]) -> bool:
    return bool(should_stop and should_stop())


# ------------------------ direct client ------------------------

class DonationClient:
    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
        delay: float = INTER_REQUEST_DELAY,
        user_agent: str = DEFAULT_UA,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_url = api_url
        self.timeout = timeout
        self.delay = delay
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def donate_single(
        self,
        destination: str,
        source: str,
        signature: str,
        session_logger: Optional[AnySessionLogger] = None,
    ) -> DonationOutcome:
        slog = session_logger or NoopSessionLogger()
        url = donate_url(self.api_url, destination, source, signature)
        slog.log(f"-> POST {donate_url(self.api_url, destination, source, signature_preview(signature))}")
        try:
            resp = self.session.post(url, json={}, headers={"Content-Type": "application/json"},
                                     timeout=self.timeout)
        except requests.Timeout:
            message = f"Request timeout after {self.timeout:g} seconds"
            slog.log(f"<- ERROR {message}")
            return Error(message=message)
        except requests.RequestException as e:
            slog.log(f"<- ERROR {e}")
            return Error(message=str(e) or e.__class__.__name__)

        body_text = resp.text or ""
        slog.log(f"<- {resp.status_code} {body_text[:400]}")
        outcome = classify_response(resp.status_code, parse_body(body_text))
        logger.debug("donate_to %s -> %s (%s)", source, resp.status_code, outcome.kind)
        return outcome

    def donate_batch(
        self,
        destination: str,
        items: Sequence[DonationRequestItem],
        session_logger: Optional[AnySessionLogger] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> List[AddressOutcome]:
        """Submit items in order; stops early (between items) when asked."""
        slog = session_logger or NoopSessionLogger()
        results: List[AddressOutcome] = []
        total = len(items)
        for i, item in enumerate(items):
            if _stopped(should_stop):
                slog.log(f"Stop requested; {total - i} address(es) not submitted")
                break
            slog.log(f"[{i + 1}/{total}] address index {item.source_index}: {item.source_address}")
            outcome = self.donate_single(destination, item.source_address, item.signature, slog)
            result = AddressOutcome(item.source_address, item.source_index, outcome)
            results.append(result)
            if on_outcome:
                on_outcome(result)
            if i < total - 1 and self.delay > 0:
                self._sleep(self.delay)
        return results


# ------------------------ launcher client ------------------------

def _submitted_outcome(data: Dict[str, Any]) -> DonationOutcome:
    """Read a launcher result for an address that was actually submitted.

    The batch script reports a 409 as ``skipped``; for a submitted address
    that means the rights were already donated.
    """
    outcome = outcome_from_dict(data)
    if isinstance(outcome, Skipped):
        message = data.get("message") or data.get("error") or DEFAULT_ALREADY_DONATED_MESSAGE
        return AlreadyDonated(message=str(message))
    return outcome


class LauncherDonationClient:
    """Delegates submission to the local launcher and polls for its result."""

    def __init__(
        self,
        launcher_url: str = DEFAULT_LAUNCHER_URL,
        session: Optional[requests.Session] = None,
        poll_interval: float = LAUNCHER_POLL_INTERVAL,
        single_max_polls: int = LAUNCHER_SINGLE_MAX_POLLS,
        batch_max_polls: int = LAUNCHER_BATCH_MAX_POLLS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.launcher_url = launcher_url.rstrip("/")
        self.session = session or requests.Session()
        self.poll_interval = poll_interval
        self.single_max_polls = single_max_polls
        self.batch_max_polls = batch_max_polls
        self._sleep = sleep

    def health(self) -> bool:
        try:
            resp = self.session.get(f"{self.launcher_url}/health", timeout=LAUNCHER_LAUNCH_TIMEOUT)
        except requests.RequestException:
            return False
        return resp.status_code == 200

    def shutdown(self) -> None:
        try:
            self.session.post(f"{self.launcher_url}/shutdown", timeout=LAUNCHER_LAUNCH_TIMEOUT)
        except requests.RequestException as e:
            logger.info("launcher shutdown request failed: %s", e)

    def _launch(self, path: str, payload: Dict[str, Any]) -> None:
        try:
            resp = self.session.post(f"{self.launcher_url}{path}", json=payload,
                                     timeout=LAUNCHER_LAUNCH_TIMEOUT)
        except requests.RequestException as e:
            raise LauncherError(f"Launcher unreachable at {self.launcher_url}: {e}") from e
        data = parse_body(resp.text or "")
        if resp.status_code != 200 or not _field(data, "success"):
            raise LauncherError(_field(data, "error") or f"Failed to launch ({resp.status_code})")

    def _poll(self, max_polls: int) -> Optional[Dict[str, Any]]:
        for _ in range(max_polls):
            self._sleep(self.poll_interval)
            try:
                resp = self.session.get(f"{self.launcher_url}/result", timeout=LAUNCHER_LAUNCH_TIMEOUT)
                data = resp.json()
            except (requests.RequestException, ValueError):
                # result not ready yet
                continue
            if isinstance(data, dict) and data.get("ready"):
                return data.get("data") or {}
        return None

    def donate_single(
        self,
        destination: str,
        source: str,
        signature: str,
        session_logger: Optional[AnySessionLogger] = None,
    ) -> DonationOutcome:
        slog = session_logger or NoopSessionLogger()
        slog.log(f"-> launcher /consolidate {source} -> {destination} sig={signature_preview(signature)}")
        try:
            self._launch("/consolidate", {"source": source, "dest": destination, "signature": signature})
        except LauncherError as e:
            slog.log(f"<- ERROR {e}")
            return Error(message=str(e))
        result = self._poll(self.single_max_polls)
        if result is None:
            message = f"Consolidation timed out after {self.single_max_polls * self.poll_interval:g} seconds"
            slog.log(f"<- ERROR {message}")
            return Error(message=message)
        slog.log(f"<- result {json.dumps(result)[:400]}")
        return _submitted_outcome(result)

    def donate_batch(
        self,
        destination: str,
        items: Sequence[DonationRequestItem],
        session_logger: Optional[AnySessionLogger] = None,
        on_outcome: Optional[OutcomeCallback] = None,
        should_stop: Optional[StopCheck] = None,
    ) -> List[AddressOutcome]:
        """One launcher job for the whole batch; outcomes come back in input order.

        ``should_stop`` is only consulted before launching: the spawned
        process owns the batch once it starts.
        """
        slog = session_logger or NoopSessionLogger()
        if not items or _stopped(should_stop):
            return []
        slog.log(f"-> launcher /consolidate-batch {len(items)} address(es) -> {destination}")

        failure: Optional[str] = None
        by_source: Dict[str, DonationOutcome] = {}
        try:
            self._launch("/consolidate-batch", {
                "dest": destination,
                "addressBatch": [item.to_dict() for item in items],
            })
        except LauncherError as e:
            failure = str(e)
        else:
            payload = self._poll(self.batch_max_polls)
            if payload is None:
                failure = (f"Batch consolidation timed out after "
                           f"{self.batch_max_polls * self.poll_interval:g} seconds")
            else:
                slog.log(f"<- batch result summary {payload.get('summary')}")
                by_source = {str(entry.get("sourceAddress", "")): _submitted_outcome(entry)
                             for entry in payload.get("results") or [] if isinstance(entry, dict)}

        if failure:
            slog.log(f"<- ERROR {failure}")

        results: List[AddressOutcome] = []
        for item in items:
            outcome = by_source.get(item.source_address)
            if outcome is None:
                outcome = Error(message=failure or "No result returned for address")
            result = AddressOutcome(item.source_address, item.source_index, outcome)
            results.append(result)
            if on_outcome:
                on_outcome(result)
        return results
