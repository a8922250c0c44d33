"""
Rate Catalog

Payout rates per (backend family, operation kind):
- input: payout per input token
- output: payout per output token
- base: flat payout per call

Unknown pairs fall back to DEFAULT_RATE. Metering never blocks inference
traffic on a missing rate; the fallback is logged as a classification miss.
"""

from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class Rate:
    """Per-token and flat payout for one (family, kind)."""
    input: float
    output: float
    base: float

    def to_dict(self) -> Dict[str, float]:
        return {"input": self.input, "output": self.output, "base": self.base}


DEFAULT_RATE = Rate(input=0.001, output=0.002, base=0.01)


class RateCatalog:
    """
    Lookup table of payout rates.

    Lookups are a pure map read; update_rate() supports dynamic
    reconfiguration while the node is serving.
    """

    DEFAULT_RATES: Dict[str, Dict[str, Rate]] = {
        "ollama": {
            # Native Ollama routes
            "chat": Rate(0.001, 0.002, 0.01),
            "generate": Rate(0.001, 0.002, 0.01),
            "embeddings": Rate(0.0005, 0.0, 0.005),
            # OpenAI-compatible routes served by Ollama
            "chat/completions": Rate(0.001, 0.002, 0.01),
            "completions": Rate(0.001, 0.002, 0.01),
        },
        "vllm": {
            "chat/completions": Rate(0.0015, 0.003, 0.015),
            "completions": Rate(0.0015, 0.003, 0.015),
            "embeddings": Rate(0.0008, 0.0, 0.008),
        },
    }

    def __init__(
        self,
        rates: Optional[Dict[str, Dict[str, Rate]]] = None,
        default_rate: Rate = DEFAULT_RATE,
    ):
        source = rates if rates is not None else self.DEFAULT_RATES
        self._rates: Dict[Tuple[str, str], Rate] = {
            (family, kind): rate
            for family, kinds in source.items()
            for kind, rate in kinds.items()
        }
        self.default_rate = default_rate
        self._lock = Lock()

    def lookup(self, family: str, kind: str) -> Rate:
        """Get the rate for (family, kind), or the default rate."""
        rate = self._rates.get((family, kind))
        if rate is None:
            logger.warning(
                "classification_miss",
                family=family,
                kind=kind,
                fallback=self.default_rate.to_dict(),
            )
            return self.default_rate
        return rate

    def update_rate(self, family: str, kind: str, rate: Rate) -> None:
        """Set or replace the rate for (family, kind)."""
        with self._lock:
            self._rates[(family, kind)] = rate
        logger.info("rate_updated", family=family, kind=kind, rate=rate.to_dict())

    def families(self) -> List[str]:
        return sorted({family for family, _ in self._rates})

    def kinds(self, family: str) -> List[str]:
        return sorted(kind for fam, kind in self._rates if fam == family)

    def summary(self) -> Dict[str, Any]:
        """Families, kinds and rate ranges across the catalog."""
        rates = list(self._rates.values())
        if not rates:
            return {"families": [], "kinds": [], "rate_ranges": {}}

        return {
            "families": self.families(),
            "kinds": sorted({kind for _, kind in self._rates}),
            "rate_ranges": {
                "input_min": min(r.input for r in rates),
                "input_max": max(r.input for r in rates),
                "output_min": min(r.output for r in rates),
                "output_max": max(r.output for r in rates),
            },
            "default": self.default_rate.to_dict(),
        }

    def to_dict(self) -> Dict[str, Dict[str, Dict[str, float]]]:
        table: Dict[str, Dict[str, Dict[str, float]]] = {}
        for (family, kind), rate in sorted(self._rates.items()):
            table.setdefault(family, {})[kind] = rate.to_dict()
        return table
