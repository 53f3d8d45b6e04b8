"""Price records, per-asset series and timestamp normalization."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterator, Sequence

from pydantic import BaseModel, Field


def normalize_timestamp(value: Any) -> float:
    """
    Normalize a timestamp to float epoch seconds.

    Accepts ints, floats, numeric strings, ISO-8601 strings, datetimes
    and dates. Naive datetimes are treated as UTC.

    Args:
        value: Raw timestamp from an ingestion source

    Returns:
        Epoch seconds as a float

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        return float(value)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()

    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp()

    if isinstance(value, str):
        text = value.strip()
        try:
            return float(text)
        except ValueError:
            pass

        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value!r}")
        return normalize_timestamp(parsed)

    raise ValueError(f"Invalid timestamp type: {type(value).__name__}")


@dataclass(frozen=True)
class Record:
    """One OHLCV observation for an asset."""

    timestamp: float
    open: float
    high: float
    low: float
    close: float
    volume: float
    extra: tuple[Any, ...] = ()

    @classmethod
    def from_row(cls, row: Sequence[Any]) -> "Record":
        """
        Build a record from a `[timestamp, open, high, low, close, volume, ...]` row.

        Raises:
            ValueError: If the row is too short or holds non-numeric prices
        """
        if len(row) < 6:
            raise ValueError(f"Record row needs at least 6 fields, got {len(row)}")

        try:
            return cls(
                timestamp=normalize_timestamp(row[0]),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=float(row[5]),
                extra=tuple(row[6:]),
            )
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid record row {list(row)!r}: {e}")

    def to_row(self) -> list[Any]:
        """Convert back to the row format used for ingestion and storage."""
        return [
            self.timestamp,
            self.open,
            self.high,
            self.low,
            self.close,
            self.volume,
            *self.extra,
        ]


@dataclass(frozen=True)
class AssetSeries:
    """
    Ordered, deduplicated records for a single asset.

    Records are strictly increasing by timestamp. Instances are never
    mutated; the store builds a new series on every write.
    """

    asset: str
    records: tuple[Record, ...] = ()
    last_updated: float | None = None
    _timestamps: tuple[float, ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        timestamps = tuple(r.timestamp for r in self.records)
        for prev, curr in zip(timestamps, timestamps[1:]):
            if curr <= prev:
                raise ValueError(
                    f"Series for {self.asset} is not strictly increasing at {curr}"
                )
        object.__setattr__(self, "_timestamps", timestamps)

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, index: int) -> Record:
        return self.records[index]

    def __iter__(self) -> Iterator[Record]:
        return iter(self.records)

    @property
    def timestamps(self) -> tuple[float, ...]:
        """Timestamps of all records in order."""
        return self._timestamps

    @property
    def first_timestamp(self) -> float | None:
        return self._timestamps[0] if self._timestamps else None

    @property
    def last_timestamp(self) -> float | None:
        return self._timestamps[-1] if self._timestamps else None


class SeriesResponse(BaseModel):
    """Response body from the upstream candles endpoint."""

    asset: str
    records: list[list[float | int | str]] = Field(
        default_factory=list,
        description="Rows of [timestamp, open, high, low, close, volume, ...]",
    )

    def to_records(self) -> list[Record]:
        """Parse rows into records."""
        return [Record.from_row(row) for row in self.records]
