from currenseen.store.base import RateStore, probe_read
from currenseen.store.memory import InMemoryRateStore
from currenseen.store.sql import SqlRateStore

__all__ = ["InMemoryRateStore", "RateStore", "SqlRateStore", "probe_read"]
