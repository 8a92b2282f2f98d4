# Connection pool: bounded set of feed connections and capacity-aware placement
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from core.logging import get_market_data_logger_safe
from core.utils.exceptions import CapacityExceededError

from .batcher import split_into_batches
from .connection import FeedConnection
from .models import ConnectionStatus, FeedVariant, Instrument

ConnectionFactory = Callable[[int], FeedConnection]


@dataclass
class Placement:
    """One chunk of a subscribe request and the connection that will carry it."""
    connection: FeedConnection
    instruments: List[Instrument]
    batches: List[List[Instrument]] = field(default_factory=list)
    created: bool = False


class ConnectionPool:
    """
    Owns the connections of one feed instance.

    Placement is first-fit in creation order. A request larger than one
    connection's cap is split into cap-sized chunks and each chunk is placed
    separately. Plans are computed before anything is created or recorded, so a
    request that cannot be fully placed leaves the pool untouched.
    """

    def __init__(self, variant: FeedVariant, factory: ConnectionFactory):
        self.variant = variant
        self._factory = factory
        self._connections: Dict[int, FeedConnection] = {}
        self._next_id = 0
        self.logger = get_market_data_logger_safe("market_feed_pool").bind(variant=variant.name)

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[FeedConnection]:
        return iter(list(self._connections.values()))

    @property
    def connections(self) -> List[FeedConnection]:
        return list(self._connections.values())

    def get(self, connection_id: int) -> Optional[FeedConnection]:
        return self._connections.get(connection_id)

    @property
    def total_instruments(self) -> int:
        return sum(c.instrument_count for c in self._connections.values())

    @property
    def free_capacity(self) -> int:
        return self.variant.pool_capacity - self.total_instruments

    def find_or_create(self, requested_count: int) -> FeedConnection:
        """First connection with room for requested_count, else a new one, else capacity error."""
        for connection in self._connections.values():
            if connection.has_capacity_for(requested_count):
                return connection
        if requested_count <= self.variant.per_connection_cap and len(self._connections) < self.variant.max_connections:
            return self._create()
        raise CapacityExceededError(
            f"No connection can take {requested_count} more instruments "
            f"({len(self._connections)}/{self.variant.max_connections} connections in use)",
            requested=requested_count,
            capacity=self.free_capacity,
        )

    def plan(self, instruments: Sequence[Instrument]) -> List[Tuple[Optional[int], int, List[Instrument]]]:
        """Dry-run placement.

        Returns (connection id, new slot, chunk) triples: the id is None when the
        chunk goes to the n-th connection still to be created. Raises
        CapacityExceededError when any chunk does not fit.
        """
        cap = self.variant.per_connection_cap
        counts = {cid: c.instrument_count for cid, c in self._connections.items()}
        new_counts: List[int] = []
        result: List[Tuple[Optional[int], int, List[Instrument]]] = []

        for chunk in split_into_batches(instruments, cap):
            size = len(chunk)
            target = next((cid for cid, count in counts.items() if count + size <= cap), None)
            if target is not None:
                counts[target] += size
                result.append((target, -1, chunk))
                continue
            slot = next((i for i, count in enumerate(new_counts) if count + size <= cap), None)
            if slot is None:
                if len(counts) + len(new_counts) >= self.variant.max_connections:
                    raise CapacityExceededError(
                        f"Subscribing {len(instruments)} instruments exceeds pool capacity "
                        f"({self.free_capacity} of {self.variant.pool_capacity} free)",
                        requested=len(instruments),
                        capacity=self.free_capacity,
                    )
                new_counts.append(0)
                slot = len(new_counts) - 1
            new_counts[slot] += size
            result.append((None, slot, chunk))
        return result

    def allocate(self, instruments: Sequence[Instrument], request_code: int) -> List[Placement]:
        """Place instruments, create connections as needed and record the batches."""
        planned = self.plan(instruments)
        created: Dict[int, FeedConnection] = {}
        placements: List[Placement] = []

        for cid, slot, chunk in planned:
            if cid is not None:
                connection, is_new = self._connections[cid], False
            else:
                if slot not in created:
                    created[slot] = self._create()
                connection, is_new = created[slot], True
            batches = split_into_batches(chunk, self.variant.per_message_cap)
            connection.record_batches(request_code, batches)
            placements.append(Placement(connection, list(chunk), batches, is_new))

        self.logger.info(
            "Instruments placed",
            request_code=request_code,
            instruments=len(instruments),
            connections=[p.connection.connection_id for p in placements],
            pool_size=len(self._connections),
        )
        return placements

    def _create(self) -> FeedConnection:
        connection_id = self._next_id
        self._next_id += 1
        connection = self._factory(connection_id)
        self._connections[connection_id] = connection
        self.logger.info("Connection created", connection_id=connection_id,
                         connection_key=connection.connection_key)
        return connection

    def status(self) -> List[ConnectionStatus]:
        return [c.status() for c in self._connections.values()]

    async def close_all(self) -> None:
        """Intentionally close every connection and empty the pool."""
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await connection.close()
            connection.clear_ledger()
        if connections:
            self.logger.info("Connection pool closed", closed=len(connections))
