"""Out-of-band click accounting.

The redirect handler answers first and only then hands the click to
``ClickRecorder.schedule``, which runs the accounting as a detached asyncio task
with its own database session and its own deadline.

Flow Diagram — one scheduled click
==================================
::
    GET /{code} ──▶ 302 sent
         │
         └─ schedule() ──▶ asyncio task (deadline: CLICK_RECORD_TIMEOUT_SECONDS)
                               │
                               ▼
                      ┌──────────────────┐  NotFound / StorageError
                      │ cache-aside read │ ───────────────────────▶ log, stop
                      └────────┬─────────┘
                               ▼
                      ┌──────────────────┐
                      │ click_count += 1 │ ── failure logged, continue
                      └────────┬─────────┘
                               ▼
                      ┌──────────────────┐
                      │ append click_log │ ── failure logged, continue
                      └────────┬─────────┘
                               ▼
                      ┌──────────────────┐
                      │ locate(ip)       │ ── never raises, "Unknown" fallback
                      └────────┬─────────┘
                               ▼
                      ┌──────────────────┐
                      │ upsert hourly    │ ── failure logged
                      │ access stats     │
                      └──────────────────┘

Key Behaviours
===============
- Every step commits on its own; a later failure never rolls back an earlier one.
- Accounting may under- or over-count when a backend fails; it never raises into
  the caller and never outlives its deadline.
- Pending tasks are strongly referenced until they finish, and ``shutdown`` waits
  for them when the application stops.
"""

import asyncio
import logging
from collections.abc import Callable

import redis.asyncio as redis
from prometheus_client import Counter
from sqlalchemy.ext.asyncio import AsyncSession

from app.code_store import CodeStore
from app.config import Settings, get_settings
from app.enums import ClickStep
from app.exceptions import NotFoundError, ShortCodeError, StorageError
from app.geolocation import Locator, locate
from app.models import utcnow
from app.schemas import IPLocation
from app.stats import StatsAggregator, hour_bucket

__all__ = ["ClickRecorder"]

CLICKS_RECORDED_TOTAL = Counter(
    "shortcode_clicks_recorded_total",
    "Clicks whose accounting completed every step",
)
CLICK_STEP_FAILURES_TOTAL = Counter(
    "shortcode_click_step_failures_total",
    "Click accounting steps that failed and were skipped",
    ["step"],
)


class ClickRecorder:
    """Records clicks, either awaited (``record``) or detached (``schedule``)."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        cache: redis.Redis,
        locator: Locator = locate,
        timeout: float | None = None,
        logger: logging.Logger | logging.LoggerAdapter | None = None,
        settings: Settings | None = None,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._locator = locator
        self._settings = settings or get_settings()
        self._timeout = timeout if timeout is not None else self._settings.CLICK_RECORD_TIMEOUT_SECONDS
        self._logger = logger or logging.getLogger("shortcode")
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, code: str, ip_address: str, user_agent: str = "", referer: str = "") -> asyncio.Task:
        task = asyncio.create_task(
            self._record_with_deadline(code, ip_address, user_agent, referer),
            name=f"click:{code}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def record(self, code: str, ip_address: str, user_agent: str = "", referer: str = "") -> bool:
        """Run every accounting step once; returns True when all of them succeeded.

        Raises:
            NotFoundError: the code does not resolve, so nothing was recorded.
            StorageError: the lookup itself failed.
        """
        async with self._session_factory() as session:
            store = CodeStore(session, self._cache, self._logger, self._settings)
            short_code = await store.get_by_code(code)
            complete = True

            try:
                await store.update_click_count(short_code.id)
            except StorageError as exc:
                complete = self._step_failed(ClickStep.INCREMENT, code, exc)

            clicked_at = utcnow()
            try:
                click_log = await store.log_click(short_code.id, ip_address, user_agent, referer)
                clicked_at = click_log.created_at
            except StorageError as exc:
                complete = self._step_failed(ClickStep.LOG, code, exc)

            location = await self._locate(ip_address)

            try:
                await StatsAggregator(session, self._logger).record_access_stats(
                    short_code.id, ip_address, location, hour_bucket(clicked_at)
                )
            except StorageError as exc:
                complete = self._step_failed(ClickStep.STATS, code, exc)

        if complete:
            CLICKS_RECORDED_TOTAL.inc()
        return complete

    async def shutdown(self, timeout: float | None = None) -> None:
        """Wait for pending click tasks, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        self._logger.info(f"Waiting for {len(pending)} pending click tasks")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()

    # ========================================================================
    # PRIVATE HELPERS
    # ========================================================================

    async def _record_with_deadline(self, code: str, ip_address: str, user_agent: str, referer: str) -> None:
        try:
            await asyncio.wait_for(self.record(code, ip_address, user_agent, referer), timeout=self._timeout)
        except NotFoundError:
            CLICK_STEP_FAILURES_TOTAL.labels(step=ClickStep.LOOKUP).inc()
            self._logger.warning(f"Click for unknown code dropped: {code}")
        except ShortCodeError as exc:
            self._step_failed(ClickStep.LOOKUP, code, exc)
        except asyncio.TimeoutError:
            CLICK_STEP_FAILURES_TOTAL.labels(step=ClickStep.TIMEOUT).inc()
            self._logger.warning(f"Click accounting for {code} exceeded {self._timeout}s")
        except Exception as exc:
            # Detached task: nothing above us would ever observe the exception.
            self._logger.exception(f"Unexpected click accounting error for {code}: {exc}")

    async def _locate(self, ip_address: str) -> IPLocation:
        try:
            return await self._locator(ip_address)
        except Exception as exc:
            self._logger.warning(f"Geolocation failed for {ip_address}: {exc}")
            return IPLocation()

    def _step_failed(self, step: ClickStep, code: str, exc: Exception) -> bool:
        CLICK_STEP_FAILURES_TOTAL.labels(step=step).inc()
        self._logger.error(f"Click accounting step '{step}' failed for {code}: {exc}")
        return False
