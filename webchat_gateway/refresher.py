"""Background check that re-captures credentials shortly before they expire."""

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional, Protocol, Set

from webchat_gateway.providers.base import Capability, ProviderAdapter

logger = logging.getLogger(__name__)


class CredentialCapture(Protocol):
    """Interactive capture flow (e.g. an automated browser login).

    Returns a fresh credential payload for the given provider.
    """

    async def capture(self, provider_id: str) -> Dict[str, Any]: ...


class CredentialRefresher:
    def __init__(
        self,
        adapters: Iterable[ProviderAdapter],
        capture: Optional[CredentialCapture] = None,
        lead_minutes: int = 10,
        interval_seconds: float = 60.0,
    ):
        self.adapters = list(adapters)
        self.capture = capture
        self.lead_minutes = lead_minutes
        self.interval_seconds = interval_seconds
        self._task: Optional["asyncio.Task[None]"] = None
        self._refreshing: Set[str] = set()
        self._pending: Set["asyncio.Task[None]"] = set()

    def start(self) -> None:
        self.stop()
        self._task = asyncio.ensure_future(self._loop())
        logger.info(
            "Credential refresher started (lead: %dmin, interval: %ss)",
            self.lead_minutes,
            self.interval_seconds,
        )

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        for task in self._pending:
            task.cancel()

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running(),
            "leadMinutes": self.lead_minutes,
            "intervalSeconds": self.interval_seconds,
            "captureAvailable": self.capture is not None,
            "refreshing": sorted(self._refreshing),
        }

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.check()

    def check(self) -> None:
        """Inspect every expiry-aware provider and schedule refreshes."""
        lead_ms = self.lead_minutes * 60 * 1000
        for adapter in self.adapters:
            if not adapter.supports(Capability.EXPIRY_CHECK):
                continue
            if not adapter.has_credentials():
                continue
            try:
                status = adapter.check_expiry()
            except Exception:
                logger.exception("Expiry check failed for %s", adapter.name)
                continue

            if not status.get("valid"):
                logger.warning("%s credentials have expired", adapter.name)
                continue
            remaining = status.get("remainingMs")
            due = status.get("expiringSoon") or (
                remaining is not None and remaining < lead_ms
            )
            if due and adapter.id not in self._refreshing:
                task = asyncio.ensure_future(self.refresh(adapter))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def refresh(self, adapter: ProviderAdapter) -> Optional[str]:
        """Capture a new payload and add it to the adapter's pool.

        At most one refresh runs per provider; failures are logged only.
        """
        if self.capture is None:
            logger.warning(
                "%s credentials expire soon and no capture flow is configured",
                adapter.name,
            )
            return None
        if adapter.id in self._refreshing:
            return None

        self._refreshing.add(adapter.id)
        logger.info("Refreshing %s credentials", adapter.name)
        try:
            payload = await self.capture.capture(adapter.id)
            entry_id = adapter.add_credentials(payload)
        except Exception as e:
            logger.error("%s credential refresh failed: %s", adapter.name, e)
            return None
        finally:
            self._refreshing.discard(adapter.id)
        logger.info("%s credentials refreshed (%s)", adapter.name, entry_id)
        return entry_id
