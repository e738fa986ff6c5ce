# app/services/chain_names.py
from __future__ import annotations

import logging
import time
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from app.config import settings

logger = logging.getLogger("icmstats.chain_names")

Loader = Callable[[], Mapping[str, str]]


class ChainNameCache:
    """
    Cache chainId -> chainName con TTL (por default 1h).

    Se inyecta donde se necesita (no es un singleton). El mapping es
    inmutable y se reemplaza completo en cada refresh (swap de referencia),
    así un lector nunca ve un mapping a medio actualizar.
    Si el loader falla se conserva el mapping anterior y no se reintenta
    hasta pasados retry_seconds.
    """

    def __init__(
        self,
        loader: Loader,
        *,
        ttl_seconds: Optional[int] = None,
        retry_seconds: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self.ttl_seconds = int(settings.CHAIN_NAMES_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
        self.retry_seconds = int(settings.CHAIN_NAMES_RETRY_SECONDS if retry_seconds is None else retry_seconds)
        self._clock = clock
        self._mapping: Mapping[str, str] = MappingProxyType({})
        self._loaded_at: Optional[float] = None
        self._next_retry_at: Optional[float] = None

    def _is_fresh(self) -> bool:
        if self._loaded_at is None:
            return False
        return (self._clock() - self._loaded_at) < self.ttl_seconds

    def _backing_off(self) -> bool:
        return self._next_retry_at is not None and self._clock() < self._next_retry_at

    def refresh(self) -> Mapping[str, str]:
        try:
            loaded = self._loader() or {}
        except Exception as e:
            self._next_retry_at = self._clock() + self.retry_seconds
            logger.error(
                "chain name refresh failed, keeping previous mapping (retry in %ss): %s: %s",
                self.retry_seconds, type(e).__name__, e,
            )
            return self._mapping

        fresh = MappingProxyType({str(k): str(v) for k, v in loaded.items() if k is not None and v})
        self._mapping = fresh
        self._loaded_at = self._clock()
        self._next_retry_at = None
        logger.info("chain name mapping refreshed (%d chains)", len(fresh))
        return fresh

    def snapshot(self) -> Mapping[str, str]:
        """Mapping vigente; refresca si expiró el TTL (salvo en backoff tras un fallo)."""
        if not self._is_fresh() and not self._backing_off():
            return self.refresh()
        return self._mapping

    def resolve(self, chain_id: Any) -> Optional[str]:
        if chain_id is None:
            return None
        return self.snapshot().get(str(chain_id))


class HttpChainRegistry:
    """Loader default: lee [{chainId, chainName}, ...] del chain registry."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url if url is not None else settings.CHAIN_REGISTRY_URL
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    def __call__(self) -> Dict[str, str]:
        if not self.url:
            return {}

        with httpx.Client(timeout=self.timeout_seconds, transport=self._transport) as client:
            resp = client.get(self.url, headers={"Accept": "application/json"})
            resp.raise_for_status()
            payload = resp.json()

        chains = payload.get("chains", []) if isinstance(payload, dict) else payload
        out: Dict[str, str] = {}
        for ch in chains or []:
            if not isinstance(ch, dict):
                continue
            cid = ch.get("chainId")
            name = ch.get("chainName")
            if cid is not None and name:
                out[str(cid)] = str(name)
        return out
