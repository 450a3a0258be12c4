from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import hashlib
import logging

from islandsched.core.exceptions import CommunicationError
from islandsched.schemas.settings import Topology
from islandsched.services.chromosome import Chromosome, Gene, structural_defects
from islandsched.services.communicator import Communicator
from islandsched.services.instance import ProblemInstance
from islandsched.services.transport import Message

logger = logging.getLogger(__name__)

MIGRATION_KIND = "migration"


def _digest(genes: tuple[tuple[Gene, ...], ...]) -> str:
    return hashlib.sha256(repr(genes).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class MigrationEnvelope:
    source: int
    round_id: int
    genes: tuple[tuple[Gene, ...], ...]
    digest: str

    @classmethod
    def seal(cls, source: int, round_id: int, chromosomes: Iterable[Chromosome]) -> MigrationEnvelope:
        genes = tuple(item.genes for item in chromosomes)
        return cls(source=source, round_id=round_id, genes=genes, digest=_digest(genes))

    def __len__(self) -> int:
        return len(self.genes)

    def verify(self, instance: ProblemInstance) -> None:
        if _digest(self.genes) != self.digest:
            raise CommunicationError(
                f"Envelope from rank {self.source} failed its integrity check",
                details={"source": self.source, "round": self.round_id},
            )
        for position, genes in enumerate(self.genes):
            if structural_defects(Chromosome(genes), instance):
                raise CommunicationError(
                    f"Envelope from rank {self.source} carries a malformed chromosome",
                    details={"source": self.source, "round": self.round_id, "position": position},
                )

    def chromosomes(self) -> list[Chromosome]:
        return [Chromosome(genes) for genes in self.genes]


def ring_neighbours(rank: int, live_ranks: list[int]) -> tuple[int | None, int | None]:
    """Return (next, previous) around the ring of live ranks; None when alone."""
    if len(live_ranks) < 2:
        return None, None
    position = live_ranks.index(rank)
    return live_ranks[(position + 1) % len(live_ranks)], live_ranks[position - 1]


class MigrationCoordinator:
    def __init__(self, communicator: Communicator, instance: ProblemInstance, topology: Topology = "ring") -> None:
        self.communicator = communicator
        self.instance = instance
        self.topology = topology

    def _validate(self, message: Message) -> None:
        envelope = message.payload
        if not isinstance(envelope, MigrationEnvelope):
            raise CommunicationError(
                f"Rank {message.source} sent a {type(envelope).__name__} instead of an envelope",
                details={"source": message.source, "round": message.round_id},
            )
        if envelope.source != message.source or envelope.round_id != message.round_id:
            raise CommunicationError(
                f"Envelope header from rank {message.source} does not match its message",
                details={"source": message.source, "round": message.round_id},
            )
        envelope.verify(self.instance)

    def peers(self, topology: Topology | None = None) -> tuple[list[int], list[int]]:
        """Return (targets, sources) for this round given the current live set."""
        topology = topology or self.topology
        if topology == "all-to-all":
            live = self.communicator.live_peers
            return live, list(live)
        following, preceding = ring_neighbours(self.communicator.rank, self.communicator.live_ranks)
        if following is None:
            return [], []
        return [following], [preceding]

    def exchange(self, envelope: MigrationEnvelope, topology: Topology | None = None) -> dict[int, MigrationEnvelope]:
        """Send `envelope` to this round's targets and collect one envelope per source.

        Sources that stay silent past the retry budget are marked failed and
        simply missing from the result.
        """
        targets, sources = self.peers(topology)
        for dest in targets:
            self.communicator.send(dest, MIGRATION_KIND, envelope.round_id, envelope)

        messages = self.communicator.gather(sources, MIGRATION_KIND, envelope.round_id, validate=self._validate)
        received = {source: message.payload for source, message in sorted(messages.items())}
        if sources:
            logger.debug(
                "Rank %d round %d migration: sent %d to %s, received from %s",
                self.communicator.rank,
                envelope.round_id,
                len(envelope),
                targets,
                sorted(received),
            )
        return received
