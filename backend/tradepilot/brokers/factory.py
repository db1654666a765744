from typing import Dict, List, Type

from tradepilot.brokers.alpaca import AlpacaBroker
from tradepilot.brokers.base import BaseBroker, BrokerConfig
from tradepilot.brokers.paper import PaperBroker
from tradepilot.core.exceptions import UnsupportedVenue


class BrokerFactory:
    """
    Registry of gateway implementations keyed by venue type.
    """
    _brokers: Dict[str, Type[BaseBroker]] = {
        "alpaca": AlpacaBroker,
        "paper": PaperBroker,
    }

    @classmethod
    def register(cls, venue: str, broker_cls: Type[BaseBroker]) -> None:
        cls._brokers[venue.lower()] = broker_cls

    @classmethod
    def get_broker_class(cls, venue: str) -> Type[BaseBroker]:
        broker_cls = cls._brokers.get(venue.lower().strip())
        if broker_cls is None:
            raise UnsupportedVenue(f"Unsupported broker type: {venue}")
        return broker_cls

    @classmethod
    def create_broker(cls, config: BrokerConfig) -> BaseBroker:
        return cls.get_broker_class(config.venue)(config)

    @classmethod
    def supported_venues(cls) -> List[str]:
        return sorted(cls._brokers.keys())


def create_broker(config: BrokerConfig) -> BaseBroker:
    """Build the gateway registered for ``config.venue``."""
    return BrokerFactory.create_broker(config)
