# app/services/icm_aggregator.py
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.services.chain_names import ChainNameCache
from app.services.icm_fetcher import RawMessage

logger = logging.getLogger("icmstats.aggregator")


@dataclass(frozen=True)
class PairCount:
    source_chain: str
    destination_chain: str
    message_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_chain": self.source_chain,
            "destination_chain": self.destination_chain,
            "message_count": self.message_count,
        }


def chain_label(chain_id: str, name: Optional[str]) -> str:
    return name or f"Chain {chain_id}"


def sort_key(pc: PairCount) -> Tuple[int, str]:
    # count desc; empate => "source|destination" lexicográfico
    return (-pc.message_count, f"{pc.source_chain}|{pc.destination_chain}")


def process_messages(messages: Iterable[RawMessage], names: ChainNameCache) -> List[PairCount]:
    """
    Cuenta mensajes por par (source, destination) ya resuelto a nombre.
    Determinista: cualquier permutación del input da la misma salida.
    """
    counts: Counter = Counter()
    skipped = 0
    total = 0

    mapping = names.snapshot()
    for m in messages:
        total += 1
        if not m.source_chain_id or not m.destination_chain_id:
            skipped += 1
            continue
        src = chain_label(m.source_chain_id, mapping.get(m.source_chain_id))
        dst = chain_label(m.destination_chain_id, mapping.get(m.destination_chain_id))
        counts[(src, dst)] += 1

    result = sorted(
        (PairCount(source_chain=s, destination_chain=d, message_count=n) for (s, d), n in counts.items()),
        key=sort_key,
    )

    logger.info(
        "processed %d messages into %d chain pairs (skipped %d without chain ids)",
        total, len(result), skipped,
    )
    return result
