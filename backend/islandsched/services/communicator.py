from __future__ import annotations

from collections.abc import Callable, Iterable
import logging
import time
from typing import Any

from islandsched.core.config import Settings
from islandsched.core.exceptions import CommunicationError
from islandsched.services.transport import Message, Transport

logger = logging.getLogger(__name__)


class Communicator:
    """Bounded-retry messaging on top of a transport, with peer failure tracking.

    A peer that cannot be heard from within the retry budget is marked failed
    and left out of every later exchange. Failing to send is different: it
    means this worker's own link is broken, so it is raised to the caller.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.rank = transport.rank
        self.size = transport.size
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        self.failed: dict[int, str] = {}

    @classmethod
    def from_settings(cls, transport: Transport, settings: Settings) -> Communicator:
        return cls(
            transport,
            timeout=settings.exchange_timeout_seconds,
            retry_attempts=settings.exchange_retry_attempts,
            retry_backoff=settings.exchange_retry_backoff_seconds,
        )

    @property
    def live_peers(self) -> list[int]:
        return [peer for peer in range(self.size) if peer != self.rank and peer not in self.failed]

    @property
    def live_ranks(self) -> list[int]:
        return sorted([*self.live_peers, self.rank])

    def mark_failed(self, peer: int, reason: str) -> None:
        if peer == self.rank or peer in self.failed:
            return
        self.failed[peer] = reason
        logger.warning("Rank %d excludes rank %d from further rounds: %s", self.rank, peer, reason)

    def _backoff(self, attempt: int) -> None:
        if self.retry_backoff > 0 and attempt + 1 < self.retry_attempts:
            self._sleep(self.retry_backoff * (2**attempt))

    def send(self, dest: int, kind: str, round_id: int, payload: Any = None) -> None:
        message = Message(kind=kind, round_id=round_id, source=self.rank, payload=payload)
        last_error: CommunicationError | None = None
        for attempt in range(self.retry_attempts):
            try:
                self.transport.send(dest, message)
                return
            except CommunicationError as exc:
                last_error = exc
                logger.debug("Rank %d send attempt %d to rank %d failed: %s", self.rank, attempt + 1, dest, exc)
                self._backoff(attempt)
        raise CommunicationError(
            f"Rank {self.rank} could not deliver {kind} for round {round_id} to rank {dest}",
            details={"dest": dest, "kind": kind, "round": round_id, "attempts": self.retry_attempts},
        ) from last_error

    def receive(
        self,
        source: int,
        kind: str,
        round_id: int,
        validate: Callable[[Message], None] | None = None,
    ) -> Message | None:
        """Return the message from `source`, or None once the peer is marked failed."""
        return self.gather([source], kind, round_id, validate=validate).get(source)

    def gather(
        self,
        sources: Iterable[int],
        kind: str,
        round_id: int,
        validate: Callable[[Message], None] | None = None,
        patience: int = 1,
    ) -> dict[int, Message]:
        """Collect one message per source; all sources share each attempt's deadline.

        `patience` multiplies the retry budget for collectives that may start
        while a live peer is still waiting out a failed one.
        """
        pending = [source for source in sources if source not in self.failed]
        received: dict[int, Message] = {}
        errors: dict[int, CommunicationError] = {}
        attempts = self.retry_attempts * max(1, patience)
        for attempt in range(attempts):
            deadline = time.monotonic() + self.timeout
            for source in list(pending):
                try:
                    message = self.transport.receive(
                        source, kind, round_id, timeout=max(0.0, deadline - time.monotonic())
                    )
                    if validate is not None:
                        validate(message)
                except CommunicationError as exc:
                    errors[source] = exc
                    logger.debug(
                        "Rank %d receive attempt %d from rank %d failed: %s", self.rank, attempt + 1, source, exc
                    )
                    continue
                received[source] = message
                pending.remove(source)
            if not pending:
                return received
            if self.retry_backoff > 0 and attempt + 1 < attempts:
                self._sleep(self.retry_backoff * (2 ** min(attempt, self.retry_attempts - 1)))
        for source in pending:
            error = errors.get(source)
            self.mark_failed(source, error.message if error else "unreachable")
        return received

    def poll(self, source: int, kind: str, round_id: int) -> Message | None:
        try:
            return self.transport.receive(source, kind, round_id, timeout=0.0)
        except CommunicationError:
            return None

    def allgather(self, kind: str, round_id: int, payload: Any, patience: int = 1) -> dict[int, Any]:
        peers = self.live_peers
        for peer in peers:
            self.send(peer, kind, round_id, payload)
        gathered: dict[int, Any] = {self.rank: payload}
        for peer, message in self.gather(peers, kind, round_id, patience=patience).items():
            gathered[peer] = message.payload
        return dict(sorted(gathered.items()))

    def barrier(self, round_id: int) -> list[int]:
        return sorted(self.allgather("barrier", round_id, None))

    def close_round(self, round_id: int) -> None:
        """Forget parked traffic from this round and earlier, and anything from failed peers."""
        dropped = self.transport.discard(round_id + 1, self.failed)
        if dropped:
            logger.debug("Rank %d dropped %d stale message(s) after round %d", self.rank, dropped, round_id)
