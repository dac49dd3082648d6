"""
Block Engine JSON-RPC client.

Submits bundles with `sendBundle` to a block engine endpoint, then polls
`getBundleStatuses` until the bundle is confirmed, fails, or the submission
timeout runs out. Requests are signed with the configured key, the way relay
APIs authenticate searchers.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp
from eth_account import Account
from eth_account.messages import encode_defunct

from mev_pipeline.bundling.bundle_models import Bundle

from .gateway import SubmissionError, SubmissionGateway, SubmissionResult, SubmissionStatus

logger = logging.getLogger(__name__)

LANDED_CONFIRMATIONS = ("confirmed", "finalized")


class BlockEngineClient(SubmissionGateway):
    """aiohttp client for a block engine bundle endpoint."""

    def __init__(
        self,
        url: str,
        private_key: Optional[str] = None,
        timeout_seconds: float = 2.0,
        poll_interval_seconds: float = 0.2
    ):
        """
        Initialize block engine client.

        Args:
            url: JSON-RPC endpoint of the block engine
            private_key: Key used to sign requests (should be a burner wallet)
            timeout_seconds: Upper bound on a submission, inclusion polling included
            poll_interval_seconds: Delay between bundle status checks
        """
        self.url = url
        self.private_key = private_key
        self.account = Account.from_key(private_key) if private_key else None
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

        self.session: Optional[aiohttp.ClientSession] = None
        self._request_id = 0

        self.stats = {
            "bundles_submitted": 0,
            "bundles_accepted": 0,
            "bundles_landed": 0,
            "bundles_rejected": 0,
            "status_checks": 0,
            "timeouts": 0,
            "errors": 0
        }

    async def initialize(self) -> None:
        """Initialize the HTTP session."""
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            headers={
                "Content-Type": "application/json",
                "User-Agent": "mev-pipeline/1.0"
            }
        )
        logger.info(f"Block engine client initialized for {self.url}")

    async def close(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None

    async def submit(self, bundle: Bundle) -> SubmissionResult:
        """
        Submit a bundle and wait for its inclusion.

        Returns:
            Landed once the engine confirms the bundle, Rejected with the
            engine's reason, or Timeout when no final answer arrived in time
        """
        if not self.session:
            raise SubmissionError("Client not initialized")

        self.stats["bundles_submitted"] += 1

        try:
            return await asyncio.wait_for(
                self._submit_and_confirm(bundle),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            self.stats["timeouts"] += 1
            logger.warning(f"Bundle {bundle.bundle_id} not confirmed within {self.timeout_seconds}s")
            return SubmissionResult.timeout(bundle.bundle_id)
        except aiohttp.ClientError as e:
            self.stats["errors"] += 1
            logger.error(f"Bundle {bundle.bundle_id} submission error: {e}")
            return SubmissionResult.rejected(bundle.bundle_id, f"transport error: {e}")

    async def _submit_and_confirm(self, bundle: Bundle) -> SubmissionResult:
        response = await self._post(self._build_request(bundle))
        if "error" in response:
            return self._rejected(bundle, self._error_message(response["error"]))

        payload = response.get("result")

        # Some engines answer with the final status directly
        if isinstance(payload, dict) and "status" in payload:
            return self._parse_status_report(bundle, payload)

        engine_bundle_id = self._accepted_bundle_id(payload)
        if engine_bundle_id is None:
            return self._rejected(bundle, f"malformed sendBundle response: {payload!r}")

        self.stats["bundles_accepted"] += 1
        logger.info(f"Bundle {bundle.bundle_id} accepted by engine as {engine_bundle_id}")
        return await self._await_inclusion(bundle, engine_bundle_id)

    async def _await_inclusion(self, bundle: Bundle, engine_bundle_id: str) -> SubmissionResult:
        """Poll the bundle status until it is confirmed or fails. Bounded by the caller's timeout."""
        while True:
            status = await self.get_bundle_status(engine_bundle_id)
            if status is not None:
                err = status.get("err")
                if self._is_failure(err):
                    return self._rejected(bundle, f"bundle failed: {err}")

                if status.get("confirmation_status") in LANDED_CONFIRMATIONS:
                    self.stats["bundles_landed"] += 1
                    logger.info(f"Bundle {bundle.bundle_id} landed in slot {status.get('slot')}")
                    return SubmissionResult(
                        status=SubmissionStatus.LANDED,
                        bundle_id=bundle.bundle_id,
                        validator_id=status.get("validator"),
                        slot=status.get("slot"),
                        metadata={
                            "engine_bundle_id": engine_bundle_id,
                            "confirmation_status": status.get("confirmation_status")
                        }
                    )

            await asyncio.sleep(self.poll_interval_seconds)

    async def get_bundle_status(self, engine_bundle_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch the engine's status entry for a bundle.

        Returns:
            The status entry, or None while the engine has nothing to report
        """
        self.stats["status_checks"] += 1
        response = await self._post(self._build_status_request(engine_bundle_id))
        if "error" in response:
            logger.debug(f"Status check for {engine_bundle_id} failed: {self._error_message(response['error'])}")
            return None

        result = response.get("result") or {}
        values = result.get("value") if isinstance(result, dict) else None
        if not values or not isinstance(values[0], dict):
            return None
        return values[0]

    async def _post(self, request: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session.post(
            self.url,
            json=request,
            headers=self._signature_headers(request)
        ) as response:
            if response.status != 200:
                error_text = await response.text()
                return {"error": {"message": f"HTTP {response.status}: {error_text}"}}
            return await response.json()

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _build_request(self, bundle: Bundle) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "sendBundle",
            "params": [
                {
                    "bundleId": bundle.bundle_id,
                    "transactions": [
                        {
                            "id": tx.tx_id,
                            "role": tx.role.value,
                            "venue": tx.venue_id,
                            "instrument": tx.instrument_id,
                            "amount": tx.amount,
                            "authored": tx.authored,
                            "params": tx.params
                        }
                        for tx in bundle.transactions
                    ],
                    "tip": bundle.tip
                }
            ]
        }

    def _build_status_request(self, engine_bundle_id: str) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "getBundleStatuses",
            "params": [[engine_bundle_id]]
        }

    def _signature_headers(self, request: Dict[str, Any]) -> Dict[str, str]:
        """Sign the request body with the searcher key."""
        if self.account is None:
            return {}
        message = encode_defunct(text=json.dumps(request))
        signature = Account.sign_message(message, private_key=self.private_key)
        return {"X-Bundle-Signature": f"{self.account.address}:{signature.signature.hex()}"}

    @staticmethod
    def _accepted_bundle_id(payload: Any) -> Optional[str]:
        if isinstance(payload, str) and payload:
            return payload
        if isinstance(payload, dict):
            return payload.get("bundleHash") or payload.get("bundleId")
        return None

    @staticmethod
    def _is_failure(err: Any) -> bool:
        # {"Ok": null} is the engine's way of saying no error
        if err is None:
            return False
        if isinstance(err, dict) and set(err) == {"Ok"}:
            return False
        return True

    @staticmethod
    def _error_message(error: Any) -> str:
        if isinstance(error, dict):
            return error.get("message", "unknown error")
        return str(error)

    def _rejected(self, bundle: Bundle, reason: str) -> SubmissionResult:
        self.stats["bundles_rejected"] += 1
        logger.warning(f"Bundle {bundle.bundle_id} rejected: {reason}")
        return SubmissionResult.rejected(bundle.bundle_id, reason)

    def _parse_status_report(self, bundle: Bundle, payload: Dict[str, Any]) -> SubmissionResult:
        status = payload["status"]
        if status != SubmissionStatus.LANDED.value:
            return self._rejected(bundle, payload.get("reason", status))

        self.stats["bundles_landed"] += 1
        logger.info(f"Bundle {bundle.bundle_id} landed in slot {payload.get('slot')}")
        return SubmissionResult(
            status=SubmissionStatus.LANDED,
            bundle_id=bundle.bundle_id,
            validator_id=payload.get("validator"),
            slot=payload.get("slot"),
            realized_profit=payload.get("realizedProfit")
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get block engine client statistics."""
        stats = self.stats.copy()

        if stats["bundles_submitted"] > 0:
            stats["landing_rate"] = stats["bundles_landed"] / stats["bundles_submitted"] * 100
        else:
            stats["landing_rate"] = 0.0

        return stats
