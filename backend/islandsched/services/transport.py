from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
import queue
import time
from typing import Any, Protocol

from islandsched.core.exceptions import CommunicationError


@dataclass(frozen=True)
class Message:
    kind: str
    round_id: int
    source: int
    payload: Any = None

    @property
    def key(self) -> tuple[str, int, int]:
        return (self.kind, self.round_id, self.source)


class Inbox(Protocol):
    def put(self, item: Any) -> None: ...

    def get(self, block: bool = True, timeout: float | None = None) -> Any: ...

    def get_nowait(self) -> Any: ...


class Transport(ABC):
    """Reliable point-to-point delivery between workers with fixed ranks."""

    def __init__(self, rank: int, size: int) -> None:
        if not 0 <= rank < size:
            raise ValueError(f"rank {rank} outside world of size {size}")
        self.rank = rank
        self.size = size

    @abstractmethod
    def send(self, dest: int, message: Message) -> None:
        """Deliver `message` to `dest`; raise CommunicationError on failure."""

    @abstractmethod
    def receive(self, source: int, kind: str, round_id: int, timeout: float) -> Message:
        """Return the matching message or raise CommunicationError after `timeout`."""

    def discard(self, before_round: int, sources: Iterable[int] = ()) -> int:
        """Drop buffered messages no exchange will ask for again; return how many."""
        return 0

    def close(self) -> None:
        return None


class QueueTransport(Transport):
    """One inbox per rank; works with `queue.Queue` and multiprocessing queues.

    Messages that arrive ahead of the one being waited for are parked by
    (kind, round, source) and handed out when asked for.
    """

    def __init__(self, rank: int, inboxes: Sequence[Inbox]) -> None:
        super().__init__(rank, len(inboxes))
        self._inboxes = inboxes
        self._pending: dict[tuple[str, int, int], Message] = {}

    def send(self, dest: int, message: Message) -> None:
        if not 0 <= dest < self.size:
            raise CommunicationError(f"Unknown destination rank {dest}", details={"dest": dest})
        try:
            self._inboxes[dest].put(message)
        except (OSError, ValueError) as exc:
            raise CommunicationError(
                f"Rank {self.rank} failed to send {message.kind} to rank {dest}",
                details={"dest": dest, "kind": message.kind, "round": message.round_id},
            ) from exc

    def receive(self, source: int, kind: str, round_id: int, timeout: float) -> Message:
        key = (kind, round_id, source)
        parked = self._pending.pop(key, None)
        if parked is not None:
            return parked

        inbox = self._inboxes[self.rank]
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining > 0:
                    message = inbox.get(timeout=remaining)
                else:
                    message = inbox.get_nowait()
            except queue.Empty as exc:
                raise CommunicationError(
                    f"Rank {self.rank} timed out waiting for {kind} from rank {source}",
                    details={"source": source, "kind": kind, "round": round_id, "timeout": timeout},
                ) from exc
            if message.key == key:
                return message
            self._pending[message.key] = message

    @property
    def parked(self) -> tuple[tuple[str, int, int], ...]:
        return tuple(sorted(self._pending))

    def discard(self, before_round: int, sources: Iterable[int] = ()) -> int:
        """Forget parked messages from rounds before `before_round` and from `sources`.

        Result reports travel outside the round sequence and are kept.
        """
        dropped = set(sources)
        stale = [
            key
            for key, message in self._pending.items()
            if message.round_id >= 0 and (message.round_id < before_round or message.source in dropped)
        ]
        for key in stale:
            del self._pending[key]
        return len(stale)

    def close(self) -> None:
        self._pending.clear()


def local_transports(count: int) -> list[QueueTransport]:
    inboxes = [queue.Queue() for _ in range(count)]
    return [QueueTransport(rank, inboxes) for rank in range(count)]
