# app/services/icm_fetcher.py
"""
Cliente paginado de Glacier /icm/messages.

Supuesto de orden: Glacier devuelve los mensajes en orden cronológico
descendente. El primer mensaje más viejo que la ventana corta la paginación.
Si el orden se rompe se cuentan las violaciones y se loguea warning; con
ICM_FETCH_EXHAUSTIVE=true no se corta en el primer mensaje viejo.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from app.config import settings
from app.core.enums import max_pages_for_window
from app.core.errors import LockLost, PermanentFetchError, ServerError, TransientNetworkError
from app.core.timeutils import as_utc, normalize_epoch_seconds, to_epoch_seconds, utc_now
from app.models.icm_update_state import UpdateProgress

logger = logging.getLogger("icmstats.fetcher")

RETRYABLE_STATUS = (429, 502, 503, 504)

OwnershipCheck = Callable[[], bool]
Heartbeat = Callable[[UpdateProgress], Any]


@dataclass(frozen=True)
class RawMessage:
    source_chain_id: Optional[str]
    destination_chain_id: Optional[str]
    # epoch en segundos (None = Glacier no mandó timestamp)
    timestamp: Optional[int]
    message_id: Optional[str] = None


def _chain_id(msg: Dict[str, Any], *keys: str) -> Optional[str]:
    for k in keys:
        v = msg.get(k)
        if v is not None and str(v).strip() != "":
            return str(v).strip()
    return None


def extract_timestamp(msg: Dict[str, Any]) -> Optional[int]:
    """sourceTransaction.timestamp primero, luego timestamp top-level."""
    src_tx = msg.get("sourceTransaction")
    if isinstance(src_tx, dict):
        ts = normalize_epoch_seconds(src_tx.get("timestamp"))
        if ts is not None:
            return ts
    return normalize_epoch_seconds(msg.get("timestamp"))


def to_raw_message(msg: Dict[str, Any]) -> RawMessage:
    return RawMessage(
        source_chain_id=_chain_id(msg, "sourceEvmChainId", "sourceChainId"),
        destination_chain_id=_chain_id(msg, "destinationEvmChainId", "destinationChainId"),
        timestamp=extract_timestamp(msg),
        message_id=_chain_id(msg, "messageId"),
    )


class IcmMessageFetcher:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        network: Optional[str] = None,
        page_size: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        page_delay_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        heartbeat_every_pages: Optional[int] = None,
        exhaustive: Optional[bool] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.base_url = (base_url or settings.GLACIER_API_BASE).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.GLACIER_API_KEY
        self.network = network or settings.GLACIER_NETWORK
        self.page_size = int(page_size or settings.GLACIER_PAGE_SIZE)
        self.timeout_seconds = float(timeout_seconds or settings.GLACIER_TIMEOUT_SECONDS)
        self.page_delay_seconds = float(
            settings.GLACIER_PAGE_DELAY_SECONDS if page_delay_seconds is None else page_delay_seconds
        )
        self.max_retries = int(settings.GLACIER_MAX_RETRIES if max_retries is None else max_retries)
        self.backoff_base_seconds = float(
            settings.GLACIER_BACKOFF_BASE_SECONDS if backoff_base_seconds is None else backoff_base_seconds
        )
        self.backoff_max_seconds = float(
            settings.GLACIER_BACKOFF_MAX_SECONDS if backoff_max_seconds is None else backoff_max_seconds
        )
        self.heartbeat_every_pages = max(1, int(heartbeat_every_pages or settings.ICM_HEARTBEAT_EVERY_PAGES))
        self.exhaustive = settings.ICM_FETCH_EXHAUSTIVE if exhaustive is None else bool(exhaustive)
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

        if not self.api_key:
            logger.warning("GLACIER_API_KEY not configured (lower rate limits)")

    # ----------------------------
    # HTTP
    # ----------------------------

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": "icmstats-backend"}
        if self.api_key:
            headers["x-glacier-api-key"] = self.api_key
        return headers

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    def backoff_delay(self, attempt: int) -> float:
        """attempt 1 => base, 2 => 2*base, ... tope backoff_max."""
        delay = self.backoff_base_seconds * (2 ** max(0, attempt - 1))
        return min(delay, self.backoff_max_seconds)

    def _get_once(self, client: httpx.Client, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = client.get("/icm/messages", params=params)
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as e:
            raise TransientNetworkError(f"{type(e).__name__}: {e}") from e

        if resp.status_code in RETRYABLE_STATUS:
            raise ServerError(resp.status_code, f"HTTP {resp.status_code} from Glacier")

        if resp.status_code >= 400:
            raise PermanentFetchError(
                f"HTTP {resp.status_code} from Glacier: {resp.text[:300]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise PermanentFetchError(f"invalid JSON from Glacier: {e}", status_code=resp.status_code) from e

        if not isinstance(data, dict):
            raise PermanentFetchError("unexpected Glacier payload (not an object)", status_code=resp.status_code)
        return data

    def get_page(self, client: httpx.Client, params: Dict[str, Any], *, page: int) -> Dict[str, Any]:
        """Una página con retries/backoff para errores transitorios."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._get_once(client, params)
            except (TransientNetworkError, ServerError) as e:
                if attempt > self.max_retries:
                    status = e.status_code if isinstance(e, ServerError) else None
                    raise PermanentFetchError(
                        f"retries exhausted on page {page}: {e}",
                        status_code=status,
                        page=page,
                        attempts=attempt,
                    ) from e
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "page=%d attempt=%d failed (%s), retrying in %.1fs",
                    page, attempt, e, delay,
                )
                self._sleep(delay)
            except PermanentFetchError as e:
                e.page = page
                e.attempts = attempt
                raise

    # ----------------------------
    # Paginación
    # ----------------------------

    def fetch(
        self,
        window_hours: int,
        job_type: str,
        ownership_check: OwnershipCheck,
        *,
        heartbeat: Optional[Heartbeat] = None,
        now: Optional[datetime] = None,
        max_pages: Optional[int] = None,
    ) -> List[RawMessage]:
        """
        Trae los mensajes de [now - window_hours, now].

        Raises:
            LockLost: ownership_check() devolvió False antes de una página.
            PermanentFetchError: respuesta no reintentable o retries agotados.
        """
        end = as_utc(now) or self._clock()
        start = end - timedelta(hours=int(window_hours))
        start_ts = to_epoch_seconds(start)
        end_ts = to_epoch_seconds(end)
        page_limit = int(max_pages or max_pages_for_window(window_hours))

        params: Dict[str, Any] = {
            "network": self.network,
            "pageSize": self.page_size,
            "startTime": start_ts,
            "endTime": end_ts,
        }

        logger.info(
            "[%s] fetching ICM messages window=%dh from=%s to=%s",
            job_type, window_hours, start.isoformat(), end.isoformat(),
        )

        collected: List[RawMessage] = []
        pages = 0
        reached_time_limit = False
        ordering_violations = 0
        prev_ts: Optional[int] = None

        with self._client() as client:
            while True:
                if not ownership_check():
                    logger.warning("[%s] ownership lost before page=%d, aborting fetch", job_type, pages + 1)
                    raise LockLost(str(job_type), page=pages + 1)

                if pages > 0 and self.page_delay_seconds > 0:
                    self._sleep(self.page_delay_seconds)

                pages += 1
                data = self.get_page(client, params, page=pages)
                messages = data.get("messages") or []

                page_valid = 0
                page_dated = 0
                page_old = 0
                for msg in messages:
                    if not isinstance(msg, dict):
                        continue
                    raw = to_raw_message(msg)

                    if raw.timestamp is None:
                        # sin timestamp no se puede saber su edad: se incluye
                        collected.append(raw)
                        page_valid += 1
                        continue

                    page_dated += 1
                    if prev_ts is not None and raw.timestamp > prev_ts:
                        ordering_violations += 1
                    prev_ts = raw.timestamp

                    if raw.timestamp >= start_ts:
                        collected.append(raw)
                        page_valid += 1
                        continue

                    page_old += 1
                    if not self.exhaustive:
                        reached_time_limit = True
                        logger.info(
                            "[%s] message older than window at page=%d (ts=%d < start=%d), stopping",
                            job_type, pages, raw.timestamp, start_ts,
                        )
                        break

                if self.exhaustive and page_dated > 0 and page_old == page_dated:
                    reached_time_limit = True

                next_token = data.get("nextPageToken")
                logger.debug(
                    "[%s] page=%d got=%d valid=%d total=%d has_next=%s",
                    job_type, pages, len(messages), page_valid, len(collected), bool(next_token),
                )

                if heartbeat is not None and pages % self.heartbeat_every_pages == 0:
                    heartbeat(UpdateProgress(pages_fetched=pages, messages_collected=len(collected)))

                if reached_time_limit or not next_token:
                    break

                if pages >= page_limit:
                    logger.warning("[%s] reached max page limit (%d), stopping", job_type, page_limit)
                    break

                params["pageToken"] = next_token

        # heartbeat final con el progreso completo
        if heartbeat is not None and pages % self.heartbeat_every_pages != 0:
            heartbeat(UpdateProgress(pages_fetched=pages, messages_collected=len(collected)))

        if ordering_violations:
            logger.warning(
                "[%s] %d ordering violations detected (Glacier not strictly descending); "
                "early termination may have dropped messages",
                job_type, ordering_violations,
            )

        logger.info(
            "[%s] fetched %d messages from %d pages reached_time_limit=%s",
            job_type, len(collected), pages, reached_time_limit,
        )
        return collected
