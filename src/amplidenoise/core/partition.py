from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Sequence

from amplidenoise.exceptions import PartitionInvariantError


@dataclass(frozen=True, slots=True)
class Raw:
    """One input unique sequence and its read count."""

    index: int
    sequence: str
    abundance: int


@dataclass(slots=True)
class Family:
    """Raws of one cluster sharing an exact sequence. Rebuilt on every family update."""

    index: int
    cluster: int
    sequence: str
    raws: tuple[int, ...]
    reads: int
    lambda_: float = 0.0
    pvalue: float = 1.0
    singleton_pvalue: float = 1.0

    @property
    def first_raw(self) -> int:
        return self.raws[0]


@dataclass(slots=True)
class Cluster:
    """A set of families explained by one true sequence (the consensus)."""

    index: int
    consensus: str
    center: int
    reads: int
    families: list[int] = field(default_factory=list)
    budded_from: int | None = None


def _most_abundant(raws: Sequence[Raw]) -> tuple[str, int]:
    """Return (sequence, center raw) of the most abundant exact sequence among ``raws``.

    Ties between sequences go to the one seen first in input order; the center is the
    most abundant raw carrying that sequence, earliest on ties.
    """

    totals: dict[str, int] = defaultdict(int)
    first_seen: dict[str, int] = {}
    best_raw: dict[str, Raw] = {}
    for raw in raws:
        totals[raw.sequence] += raw.abundance
        first_seen.setdefault(raw.sequence, raw.index)
        current = best_raw.get(raw.sequence)
        if current is None or (raw.abundance, -raw.index) > (current.abundance, -current.index):
            best_raw[raw.sequence] = raw

    sequence = min(totals, key=lambda seq: (-totals[seq], first_seen[seq]))
    return sequence, best_raw[sequence].index


class Partition:
    """Arena of raws, families and clusters with index-to-index membership maps.

    ``raw_cluster[r]`` and ``raw_family[r]`` give the cluster and family of raw ``r``;
    ``families[f].cluster`` gives the cluster of family ``f``. Clusters are only ever
    appended, never removed, so cluster indices are stable for the whole run.
    """

    def __init__(self, raws: Sequence[Raw]) -> None:
        if not raws:
            raise ValueError("A partition needs at least one raw.")
        self.raws: tuple[Raw, ...] = tuple(raws)
        self.total_reads = sum(raw.abundance for raw in self.raws)
        self.distinct_sequences = len({raw.sequence for raw in self.raws})

        consensus, center = _most_abundant(self.raws)
        self.clusters: list[Cluster] = [
            Cluster(index=0, consensus=consensus, center=center, reads=self.total_reads)
        ]
        self.raw_cluster: list[int] = [0] * len(self.raws)
        self.families: list[Family] = [
            Family(
                index=0,
                cluster=0,
                sequence=consensus,
                raws=tuple(range(len(self.raws))),
                reads=self.total_reads,
            )
        ]
        self.raw_family: list[int] = [0] * len(self.raws)
        self.clusters[0].families = [0]

    @classmethod
    def from_uniques(cls, sequences: Sequence[str], abundances: Sequence[int]) -> "Partition":
        raws = [
            Raw(index=idx, sequence=sequence, abundance=int(abundance))
            for idx, (sequence, abundance) in enumerate(zip(sequences, abundances, strict=True))
        ]
        return cls(raws)

    @property
    def nclust(self) -> int:
        return len(self.clusters)

    def cluster_raws(self, cluster_index: int) -> list[Raw]:
        return [raw for raw in self.raws if self.raw_cluster[raw.index] == cluster_index]

    def is_center_family(self, family: Family) -> bool:
        return family.sequence == self.clusters[family.cluster].consensus

    def update_families(self) -> None:
        """Regroup each cluster's raws into families by exact sequence."""

        grouped: dict[tuple[int, str], list[int]] = {}
        for raw in self.raws:
            key = (self.raw_cluster[raw.index], raw.sequence)
            grouped.setdefault(key, []).append(raw.index)

        ordered = sorted(grouped.items(), key=lambda item: (item[0][0], item[1][0]))
        self.families = []
        for cluster in self.clusters:
            cluster.families = []
            cluster.reads = 0

        for family_index, ((cluster_index, sequence), raw_indices) in enumerate(ordered):
            reads = sum(self.raws[idx].abundance for idx in raw_indices)
            self.families.append(
                Family(
                    index=family_index,
                    cluster=cluster_index,
                    sequence=sequence,
                    raws=tuple(raw_indices),
                    reads=reads,
                )
            )
            cluster = self.clusters[cluster_index]
            cluster.families.append(family_index)
            cluster.reads += reads
            for raw_index in raw_indices:
                self.raw_family[raw_index] = family_index

    def update_consensus(self) -> None:
        """Reset each cluster's consensus to its most abundant exact sequence."""

        for cluster in self.clusters:
            members = self.cluster_raws(cluster.index)
            if not members:
                raise PartitionInvariantError(f"Cluster {cluster.index} has no raws.")
            cluster.consensus, cluster.center = _most_abundant(members)

    def move_family(self, family_index: int, target: int) -> None:
        family = self.families[family_index]
        if family.cluster == target:
            return
        source = self.clusters[family.cluster]
        destination = self.clusters[target]
        for raw_index in family.raws:
            self.raw_cluster[raw_index] = target
        source.families.remove(family_index)
        source.reads -= family.reads
        destination.families.append(family_index)
        destination.reads += family.reads
        family.cluster = target

    def bud(self, family_index: int) -> int:
        """Promote a family to a new cluster whose consensus is the family's sequence."""

        family = self.families[family_index]
        center = max(family.raws, key=lambda idx: (self.raws[idx].abundance, -idx))
        new_index = len(self.clusters)
        self.clusters.append(
            Cluster(
                index=new_index,
                consensus=family.sequence,
                center=center,
                reads=0,
                budded_from=family.cluster,
            )
        )
        self.move_family(family_index, new_index)
        return new_index

    def validate(self) -> None:
        """Check totality of the raw/family/cluster maps and abundance conservation."""

        seen_raws: set[int] = set()
        for family in self.families:
            for raw_index in family.raws:
                if raw_index in seen_raws:
                    raise PartitionInvariantError(f"Raw {raw_index} belongs to more than one family.")
                seen_raws.add(raw_index)
                if self.raw_family[raw_index] != family.index:
                    raise PartitionInvariantError(
                        f"Raw {raw_index} maps to family {self.raw_family[raw_index]}, "
                        f"but is listed in family {family.index}."
                    )
                if self.raw_cluster[raw_index] != family.cluster:
                    raise PartitionInvariantError(
                        f"Raw {raw_index} maps to cluster {self.raw_cluster[raw_index]}, "
                        f"but its family belongs to cluster {family.cluster}."
                    )
        if len(seen_raws) != len(self.raws):
            missing = sorted(set(range(len(self.raws))) - seen_raws)
            raise PartitionInvariantError(f"Raws without a family: {missing}")

        listed: dict[int, int] = {}
        for cluster in self.clusters:
            for family_index in cluster.families:
                if family_index in listed:
                    raise PartitionInvariantError(
                        f"Family {family_index} listed in clusters {listed[family_index]} and {cluster.index}."
                    )
                listed[family_index] = cluster.index
                if self.families[family_index].cluster != cluster.index:
                    raise PartitionInvariantError(
                        f"Family {family_index} is listed in cluster {cluster.index} "
                        f"but points to cluster {self.families[family_index].cluster}."
                    )
            expected = sum(self.families[idx].reads for idx in cluster.families)
            if expected != cluster.reads:
                raise PartitionInvariantError(
                    f"Cluster {cluster.index} holds {cluster.reads} reads, families sum to {expected}."
                )
        if len(listed) != len(self.families):
            raise PartitionInvariantError("Some families are not listed in any cluster.")

        clustered_reads = sum(cluster.reads for cluster in self.clusters)
        if clustered_reads != self.total_reads:
            raise PartitionInvariantError(
                f"Clusters hold {clustered_reads} reads, input holds {self.total_reads}."
            )

        consensuses = [cluster.consensus for cluster in self.clusters]
        if len(set(consensuses)) != len(consensuses):
            raise PartitionInvariantError("Cluster consensus sequences are not pairwise distinct.")
