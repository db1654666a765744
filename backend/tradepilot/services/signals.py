"""
External signal sources.

A SignalSource turns a symbol into zero or more Signals. The manager fans a
symbol out to every enabled source, disables a source after repeated
consecutive failures, and caches the last combined result per symbol.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from tradepilot.schemas.trading import Signal


class SignalSource(ABC):
    """A provider of directional signals (news, sentiment, research...)."""

    def __init__(self, source_id: str, name: str, source_type: str = "signals"):
        self.source_id = source_id
        self.name = name
        self.source_type = source_type

    @abstractmethod
    async def fetch(self, symbol: str) -> List[Signal]:
        pass


class StaticSignalSource(SignalSource):
    """Serves a fixed signal table. Useful for paper trading and tests."""

    def __init__(self, source_id: str, name: str, signals: Optional[Dict[str, List[Signal]]] = None):
        super().__init__(source_id, name, source_type="static")
        self.signals = signals or {}

    async def fetch(self, symbol: str) -> List[Signal]:
        return list(self.signals.get(symbol, []))


@dataclass
class SourceState:
    source: SignalSource
    enabled: bool = True
    error_count: int = 0
    last_fetch: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.source.source_id,
            "name": self.source.name,
            "type": self.source.source_type,
            "enabled": self.enabled,
            "error_count": self.error_count,
            "last_fetch": self.last_fetch.isoformat() if self.last_fetch else None,
            "last_error": self.last_error,
        }


class SignalSourceManager:
    """Aggregates signals from every enabled source."""

    def __init__(self, max_error_count: int = 5):
        self.max_error_count = max_error_count
        self._sources: Dict[str, SourceState] = {}
        self._cache: Dict[str, List[Signal]] = {}

    def add_source(self, source: SignalSource) -> None:
        logger.info(f"Adding data source: {source.name}")
        self._sources[source.source_id] = SourceState(source=source)

    def remove_source(self, source_id: str) -> None:
        if self._sources.pop(source_id, None) is not None:
            logger.info(f"Removed data source: {source_id}")

    def set_enabled(self, source_id: str, enabled: bool) -> None:
        state = self._sources[source_id]
        state.enabled = enabled
        if enabled:
            state.error_count = 0

    async def fetch_signals(self, symbol: str) -> List[Signal]:
        """
        Fetch signals for ``symbol`` from every enabled source.

        A failing source contributes nothing; it is disabled once its
        consecutive error count reaches ``max_error_count``.
        """
        collected: List[Signal] = []

        for state in self._sources.values():
            if not state.enabled:
                continue
            try:
                signals = await state.source.fetch(symbol)
            except Exception as e:
                state.error_count += 1
                state.last_error = str(e)
                logger.error(f"Data source {state.source.name} error: {e}")
                if state.error_count >= self.max_error_count:
                    state.enabled = False
                    logger.warning(f"Disabling data source {state.source.name} due to repeated errors")
                continue

            collected.extend(signals)
            state.error_count = 0
            state.last_fetch = datetime.now(timezone.utc)

        self._cache[symbol] = collected
        return list(collected)

    def get_cached_signals(self, symbol: str) -> List[Signal]:
        return list(self._cache.get(symbol, []))

    def get_sources(self) -> List[Dict[str, Any]]:
        return [state.to_dict() for state in self._sources.values()]
