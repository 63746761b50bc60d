"""
Benchmark Store

Append-only history of floating-rate benchmarks (MCLR, REPO, T-bill ...).
The current entry of a benchmark is the one with the latest effective date,
ties broken by latest creation. The store is an injected instance backed by
the storage layer; there is no process-wide benchmark state.
"""

from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import re
import threading
import logging

from .config import LoanServicingConfig, get_config
from .currency import round_rate, to_decimal
from .exceptions import NotFoundError, ValidationError
from .storage import StorageInterface

logger = logging.getLogger(__name__)


def normalize_benchmark_name(name: str) -> str:
    """Canonical form: uppercase, runs of non-alphanumerics collapsed to '_'"""
    canonical = re.sub(r'[^A-Z0-9]+', '_', str(name or "").strip().upper()).strip('_')
    if not canonical:
        raise ValidationError("Benchmark name cannot be empty")
    return canonical


@dataclass(frozen=True)
class BenchmarkRate:
    """One published benchmark rate"""
    benchmark_name: str
    rate: Decimal
    effective_date: date
    created_at: datetime
    sequence: int

    @property
    def id(self) -> str:
        return f"{self.benchmark_name}:{self.sequence:08d}"

    @property
    def sort_key(self) -> Tuple[date, int]:
        return self.effective_date, self.sequence

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'benchmark_name': self.benchmark_name,
            'rate': str(self.rate),
            'effective_date': self.effective_date.isoformat(),
            'created_at': self.created_at.isoformat(),
            'sequence': self.sequence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BenchmarkRate':
        return cls(
            benchmark_name=data['benchmark_name'],
            rate=Decimal(data['rate']),
            effective_date=date.fromisoformat(data['effective_date']),
            created_at=datetime.fromisoformat(data['created_at']),
            sequence=data['sequence']
        )


@dataclass(frozen=True)
class Benchmark:
    """A benchmark and its rate history, newest first"""
    name: str
    rates: Tuple[BenchmarkRate, ...]

    @property
    def current(self) -> Optional[BenchmarkRate]:
        return self.rates[0] if self.rates else None

    def rate_as_of(self, as_of: date) -> Optional[BenchmarkRate]:
        for entry in self.rates:
            if entry.effective_date <= as_of:
                return entry
        return None


class BenchmarkStore:
    """
    Storage-backed benchmark history
    """

    def __init__(self, storage: StorageInterface, table_name: str = "benchmark_rates",
                 config: Optional[LoanServicingConfig] = None):
        self.storage = storage
        self.table_name = table_name
        self.config = config or get_config()
        self._lock = threading.Lock()
        records = self.storage.load_all(self.table_name)
        self._sequence = max((r.get('sequence', 0) for r in records), default=0)

    def _entries(self, name: str) -> List[BenchmarkRate]:
        """History of one canonical benchmark, newest first"""
        records = self.storage.find(self.table_name, {'benchmark_name': name})
        entries = [BenchmarkRate.from_dict(r) for r in records]
        entries.sort(key=lambda e: e.sort_key, reverse=True)
        return entries

    def add_rate(self, name: str, rate, effective_date: date) -> BenchmarkRate:
        """
        Append a benchmark rate

        Args:
            name: Benchmark name in any spelling; stored canonically
            rate: Percent per annum
            effective_date: First date the rate applies

        Returns:
            The stored BenchmarkRate

        Raises:
            ValidationError: If the effective date precedes the latest existing entry
        """
        canonical = normalize_benchmark_name(name)
        rate = round_rate(to_decimal(rate, "benchmark rate"), self.config.rate_precision)
        if not isinstance(effective_date, date):
            raise ValidationError("Benchmark effective date is required")

        with self._lock:
            history = self._entries(canonical)
            if history and effective_date < history[0].effective_date:
                raise ValidationError(
                    f"{canonical} effective date {effective_date} is earlier than the latest "
                    f"entry {history[0].effective_date}"
                )

            self._sequence += 1
            entry = BenchmarkRate(
                benchmark_name=canonical,
                rate=rate,
                effective_date=effective_date,
                created_at=datetime.now(timezone.utc),
                sequence=self._sequence
            )
            self.storage.save(self.table_name, entry.id, entry.to_dict())

        logger.info("Benchmark %s set to %s%% effective %s", canonical, rate, effective_date)
        return entry

    def current_rate(self, name: str, as_of: Optional[date] = None) -> BenchmarkRate:
        """
        Latest entry effective on or before as_of (latest overall when as_of is None)

        Raises:
            NotFoundError: If the benchmark has no applicable entry
        """
        canonical = normalize_benchmark_name(name)
        history = self._entries(canonical)
        if as_of is None:
            entry = history[0] if history else None
        else:
            entry = next((e for e in history if e.effective_date <= as_of), None)
        if entry is None:
            when = f" as of {as_of}" if as_of else ""
            raise NotFoundError(f"No {canonical} rate{when}")
        return entry

    def history(self, name: str) -> List[BenchmarkRate]:
        """All entries of a benchmark, newest first"""
        return self._entries(normalize_benchmark_name(name))

    def get_benchmark(self, name: str) -> Benchmark:
        canonical = normalize_benchmark_name(name)
        history = self._entries(canonical)
        if not history:
            raise NotFoundError(f"Benchmark {canonical} not found")
        return Benchmark(name=canonical, rates=tuple(history))

    def list_benchmarks(self) -> List[Benchmark]:
        names = sorted({r['benchmark_name'] for r in self.storage.load_all(self.table_name)})
        return [self.get_benchmark(name) for name in names]
