"""Global event catalog across many per-asset series."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Sequence, overload

from stock_backtest.data.models import AssetSeries, normalize_timestamp


class CatalogOutOfRangeError(IndexError):
    """Raised when a catalog index is outside the catalog."""

    def __init__(self, index: Any, length: int):
        super().__init__(f"Catalog index {index!r} out of range [0, {length})")
        self.index = index
        self.length = length


@dataclass(frozen=True)
class CatalogEntry:
    """
    One distinct timestamp in the catalog.

    Maps each asset with a record at this timestamp to that record's
    index in the asset's series. Assets without a record are absent.
    """

    timestamp: float
    indices: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "indices", MappingProxyType(dict(self.indices)))

    def __contains__(self, asset: object) -> bool:
        return asset in self.indices

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CatalogEntry):
            return NotImplemented
        return self.timestamp == other.timestamp and dict(self.indices) == dict(other.indices)

    def __hash__(self) -> int:
        return hash((self.timestamp, tuple(sorted(self.indices.items()))))

    @property
    def assets(self) -> tuple[str, ...]:
        """Assets with a record at this timestamp."""
        return tuple(self.indices)

    def index_for(self, asset: str) -> int | None:
        """Get an asset's record index, or None if it has no record here."""
        return self.indices.get(asset)


class EventCatalog(Sequence[CatalogEntry]):
    """
    Ascending, deduplicated timeline of catalog entries.

    Example:
        catalog = EventCatalog.build({"A": series_a, "B": series_b})
        for entry in catalog:
            print(entry.timestamp, dict(entry.indices))
    """

    def __init__(self, entries: Sequence[CatalogEntry] = ()):
        """
        Initialize catalog from prebuilt entries.

        Raises:
            ValueError: If entries are not strictly increasing by timestamp
        """
        self._entries = tuple(entries)
        for prev, curr in zip(self._entries, self._entries[1:]):
            if curr.timestamp <= prev.timestamp:
                raise ValueError(
                    f"Catalog entries must be strictly increasing: "
                    f"{prev.timestamp} then {curr.timestamp}"
                )

    @classmethod
    def build(
        cls,
        series_by_asset: Mapping[str, AssetSeries],
        start: Any = None,
        end: Any = None,
    ) -> "EventCatalog":
        """
        Build the catalog from a set of series.

        Uses a hash map keyed by timestamp for the union, then a single
        sort, so the cost is O(M log M) in the total number of records.

        Args:
            series_by_asset: Mapping of asset to its series
            start: Earliest timestamp to include (inclusive, optional)
            end: Latest timestamp to include (inclusive, optional)

        Returns:
            The catalog; record indices still refer to the full series
        """
        lower = normalize_timestamp(start) if start is not None else None
        upper = normalize_timestamp(end) if end is not None else None

        by_timestamp: dict[float, dict[str, int]] = {}
        for asset in sorted(series_by_asset):
            for index, timestamp in enumerate(series_by_asset[asset].timestamps):
                if lower is not None and timestamp < lower:
                    continue
                if upper is not None and timestamp > upper:
                    continue
                by_timestamp.setdefault(timestamp, {})[asset] = index

        return cls(
            [CatalogEntry(timestamp=ts, indices=by_timestamp[ts]) for ts in sorted(by_timestamp)]
        )

    def at(self, index: int) -> CatalogEntry:
        """
        Get the entry at a step index.

        Raises:
            CatalogOutOfRangeError: If index is outside [0, len)
        """
        if not isinstance(index, int) or isinstance(index, bool):
            raise CatalogOutOfRangeError(index, len(self._entries))
        if index < 0 or index >= len(self._entries):
            raise CatalogOutOfRangeError(index, len(self._entries))
        return self._entries[index]

    @overload
    def __getitem__(self, index: int) -> CatalogEntry: ...

    @overload
    def __getitem__(self, index: slice) -> "EventCatalog": ...

    def __getitem__(self, index: int | slice) -> "CatalogEntry | EventCatalog":
        if isinstance(index, slice):
            return EventCatalog(self._entries[index])
        return self.at(index)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EventCatalog):
            return NotImplemented
        return self._entries == other._entries

    def __hash__(self) -> int:
        return hash(self._entries)

    def __repr__(self) -> str:
        return f"EventCatalog(entries={len(self._entries)})"

    @property
    def entries(self) -> tuple[CatalogEntry, ...]:
        return self._entries

    @property
    def timestamps(self) -> tuple[float, ...]:
        """Timestamps of all entries in order."""
        return tuple(e.timestamp for e in self._entries)

    @property
    def assets(self) -> tuple[str, ...]:
        """All assets that appear anywhere in the catalog, sorted."""
        seen: set[str] = set()
        for entry in self._entries:
            seen.update(entry.indices)
        return tuple(sorted(seen))


def build_catalog(
    series_by_asset: Mapping[str, AssetSeries],
    start: Any = None,
    end: Any = None,
) -> EventCatalog:
    """Build an event catalog. See `EventCatalog.build`."""
    return EventCatalog.build(series_by_asset, start=start, end=end)
